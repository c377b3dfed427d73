"""
Supplier Config Registry

Central registry of every supplier integration the engine can reconcile.
Each supplier config carries:
- Identity (code, name) and ingestion method
- File schema (header/body/footer field definitions) and adapter selector
- Matching rules (primary keys, secondary fields, fuzzy settings)
- Tolerances, resolution rules, SLA window and alert routing

Configs are loaded once at startup and cached. They are frozen while cached,
so runs cannot mutate them. Administrative edits go through upsert_config /
set_active, which write the database and then refresh the cache; past runs
keep their own snapshot and are not altered.

Lookups fail closed: an unknown or inactive supplier raises ConfigurationMissing.
"""

import json
import logging
from typing import Dict, Any, List, Optional, Tuple
from dataclasses import dataclass, field, asdict

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from reconciliation.exceptions import ConfigurationMissing

logger = logging.getLogger(__name__)

DEFAULT_TIMEZONE = "Africa/Johannesburg"
KNOWN_PRIMARY_FIELDS = ("transaction_id", "reference")
KNOWN_SECONDARY_FIELDS = ("amount", "timestamp", "product_code", "reference")


@dataclass(frozen=True)
class FuzzyMatchRule:
    enabled: bool = False
    min_confidence: float = 0.85


@dataclass(frozen=True)
class MatchingRules:
    """
    Matching configuration for a supplier.

    primary: key fields joined with byte-equality, in precedence order
    secondary: fields joined with tolerance (amount, timestamp, product_code, reference)
    """
    primary: Tuple[str, ...] = ("transaction_id", "reference")
    secondary: Tuple[str, ...] = ("amount", "timestamp", "product_code")
    fuzzy_match: FuzzyMatchRule = field(default_factory=FuzzyMatchRule)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "MatchingRules":
        data = data or {}
        fuzzy = data.get("fuzzy_match") or {}
        primary = tuple(f for f in data.get("primary", cls.primary) if f in KNOWN_PRIMARY_FIELDS)
        secondary = tuple(f for f in data.get("secondary", cls.secondary) if f in KNOWN_SECONDARY_FIELDS)

        ignored = set(data.get("primary", [])) - set(KNOWN_PRIMARY_FIELDS)
        ignored |= set(data.get("secondary", [])) - set(KNOWN_SECONDARY_FIELDS)
        if ignored:
            logger.warning(f"Ignoring unknown matching fields: {sorted(ignored)}")

        return cls(
            primary=primary,
            secondary=secondary,
            fuzzy_match=FuzzyMatchRule(
                enabled=bool(fuzzy.get("enabled", False)),
                min_confidence=float(fuzzy.get("min_confidence", 0.85)),
            ),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "primary": list(self.primary),
            "secondary": list(self.secondary),
            "fuzzy_match": asdict(self.fuzzy_match),
        }


@dataclass(frozen=True)
class ResolutionRules:
    """Auto-resolution parameters (below the critical threshold only)."""
    timing_grace_seconds: int = 300
    rounding_step_cents: int = 10

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ResolutionRules":
        data = data or {}
        return cls(
            timing_grace_seconds=int(data.get("timing_grace_seconds", 300)),
            rounding_step_cents=int(data.get("rounding_step_cents", 10)),
        )


@dataclass(frozen=True)
class AlertRecipient:
    """One notification channel and its recipients."""
    channel: str
    recipients: Tuple[str, ...]


@dataclass(frozen=True)
class SupplierConfig:
    """
    Configuration for one supplier integration.
    """
    supplier_code: str
    supplier_name: str
    adapter_class: str
    file_schema: Dict[str, Any] = field(default_factory=dict, hash=False)
    id: Optional[str] = None
    ingestion_method: str = "sftp"
    file_format: str = "csv"
    file_name_pattern: Optional[str] = None
    delimiter: str = ","
    encoding: str = "utf-8"
    timezone: str = DEFAULT_TIMEZONE
    matching_rules: MatchingRules = field(default_factory=MatchingRules)
    timestamp_tolerance_seconds: int = 300
    amount_tolerance_cents: int = 0
    commission_calculation: Dict[str, Any] = field(default_factory=lambda: {"method": "from_file"}, hash=False)
    resolution_rules: ResolutionRules = field(default_factory=ResolutionRules)
    critical_variance_threshold_cents: int = 100000
    manual_review_alert_ratio: float = 0.10
    sla_hours: int = 24
    delivery_schedule: Optional[Dict[str, Any]] = field(default=None, hash=False)
    alert_recipients: Tuple[AlertRecipient, ...] = ()
    is_active: bool = True

    @property
    def has_commission(self) -> bool:
        return self.commission_calculation.get("method") != "not_applicable"

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "SupplierConfig":
        """Build a config from a recon_supplier_configs row mapping."""
        recipients = tuple(
            AlertRecipient(channel=r["channel"], recipients=tuple(r.get("recipients", [])))
            for r in (_json_value(row.get("alert_recipients")) or [])
        )
        return cls(
            id=str(row["id"]) if row.get("id") else None,
            supplier_code=row["supplier_code"],
            supplier_name=row["supplier_name"],
            adapter_class=row["adapter_class"],
            file_schema=_json_value(row.get("file_schema")) or {},
            ingestion_method=row.get("ingestion_method") or "sftp",
            file_format=row.get("file_format") or "csv",
            file_name_pattern=row.get("file_name_pattern"),
            delimiter=row.get("delimiter") or ",",
            encoding=row.get("encoding") or "utf-8",
            timezone=row.get("timezone") or DEFAULT_TIMEZONE,
            matching_rules=MatchingRules.from_dict(_json_value(row.get("matching_rules"))),
            timestamp_tolerance_seconds=_number(row, "timestamp_tolerance_seconds", 300, int),
            amount_tolerance_cents=_number(row, "amount_tolerance_cents", 0, int),
            commission_calculation=_json_value(row.get("commission_calculation")) or {"method": "from_file"},
            resolution_rules=ResolutionRules.from_dict(_json_value(row.get("resolution_rules"))),
            critical_variance_threshold_cents=_number(row, "critical_variance_threshold_cents", 100000, int),
            manual_review_alert_ratio=_number(row, "manual_review_alert_ratio", 0.10, float),
            sla_hours=_number(row, "sla_hours", 24, int),
            delivery_schedule=_json_value(row.get("delivery_schedule")),
            alert_recipients=recipients,
            is_active=bool(row.get("is_active", True)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "supplier_code": self.supplier_code,
            "supplier_name": self.supplier_name,
            "adapter_class": self.adapter_class,
            "ingestion_method": self.ingestion_method,
            "file_format": self.file_format,
            "file_name_pattern": self.file_name_pattern,
            "delimiter": self.delimiter,
            "encoding": self.encoding,
            "timezone": self.timezone,
            "file_schema": self.file_schema,
            "matching_rules": self.matching_rules.to_dict(),
            "timestamp_tolerance_seconds": self.timestamp_tolerance_seconds,
            "amount_tolerance_cents": self.amount_tolerance_cents,
            "commission_calculation": self.commission_calculation,
            "resolution_rules": asdict(self.resolution_rules),
            "critical_variance_threshold_cents": self.critical_variance_threshold_cents,
            "manual_review_alert_ratio": self.manual_review_alert_ratio,
            "sla_hours": self.sla_hours,
            "delivery_schedule": self.delivery_schedule,
            "alert_recipients": [
                {"channel": r.channel, "recipients": list(r.recipients)}
                for r in self.alert_recipients
            ],
            "is_active": self.is_active,
        }


def _json_value(value: Any) -> Any:
    """JSONB columns come back as str through text() queries."""
    if isinstance(value, str):
        return json.loads(value)
    return value


def _number(row: Dict[str, Any], key: str, default, cast):
    # 0 is a legitimate tolerance, so only None falls back to the default
    value = row.get(key)
    return cast(default if value is None else value)


_CONFIG_COLUMNS = """
    id, supplier_code, supplier_name, ingestion_method, file_format,
    file_name_pattern, delimiter, encoding, file_schema, adapter_class,
    timezone, matching_rules, timestamp_tolerance_seconds, amount_tolerance_cents,
    commission_calculation, resolution_rules, critical_variance_threshold_cents,
    manual_review_alert_ratio, sla_hours, delivery_schedule, alert_recipients,
    is_active
"""

_JSON_FIELDS = (
    "file_schema", "matching_rules", "commission_calculation",
    "resolution_rules", "delivery_schedule", "alert_recipients",
)

_EDITABLE_FIELDS = (
    "supplier_name", "ingestion_method", "file_format", "file_name_pattern",
    "delimiter", "encoding", "file_schema", "adapter_class", "timezone",
    "matching_rules", "timestamp_tolerance_seconds", "amount_tolerance_cents",
    "commission_calculation", "resolution_rules", "critical_variance_threshold_cents",
    "manual_review_alert_ratio", "sla_hours", "delivery_schedule", "alert_recipients",
    "is_active",
)


class SupplierConfigRegistry:
    """
    Central registry for supplier configurations.

    Holds the startup-loaded cache and provides lookup methods for
    the run orchestrator and the admin surface.
    """

    def __init__(self):
        self._configs: Dict[str, SupplierConfig] = {}
        self._loaded = False

    @property
    def is_loaded(self) -> bool:
        return self._loaded

    async def load(self, db: AsyncSession) -> int:
        """Load every supplier config from the database into the cache."""
        result = await db.execute(text(f"SELECT {_CONFIG_COLUMNS} FROM public.recon_supplier_configs"))
        rows = result.mappings().all()

        configs = {}
        for row in rows:
            config = SupplierConfig.from_row(dict(row))
            configs[config.supplier_code] = config

        self._configs = configs
        self._loaded = True
        logger.info(f"Loaded {len(configs)} supplier configs", extra={"suppliers": sorted(configs)})
        return len(configs)

    def register(self, config: SupplierConfig):
        """Put a config into the cache (bootstrap and tests)."""
        self._configs[config.supplier_code.upper()] = config

    def get_config(self, supplier_code: str) -> SupplierConfig:
        """
        Get the active configuration for a supplier.

        Raises:
            ConfigurationMissing: unknown or inactive supplier
        """
        config = self._configs.get((supplier_code or "").upper())
        if config is None:
            raise ConfigurationMissing(supplier_code)
        if not config.is_active:
            raise ConfigurationMissing(supplier_code, f"Supplier '{supplier_code}' is not active")
        return config

    def find_config(self, supplier_code: str) -> Optional[SupplierConfig]:
        """Get a config regardless of active flag (admin reads)."""
        return self._configs.get((supplier_code or "").upper())

    def get_all_configs(self) -> List[SupplierConfig]:
        return [self._configs[code] for code in sorted(self._configs)]

    def get_active_configs(self) -> List[SupplierConfig]:
        return [cfg for cfg in self.get_all_configs() if cfg.is_active]

    # ==================== Admin write path ====================

    async def upsert_config(self, db: AsyncSession, supplier_code: str, values: Dict[str, Any]) -> SupplierConfig:
        """
        Create or update a supplier config, then refresh the cached entry.

        Not to be called mid-run; runs hold their own reference to the
        config object they started with.
        """
        code = supplier_code.upper()
        unknown = set(values) - set(_EDITABLE_FIELDS)
        if unknown:
            raise ValueError(f"Unknown supplier config fields: {sorted(unknown)}")

        existing = self._configs.get(code)
        merged = existing.to_dict() if existing else {}
        merged.update(values)
        merged["supplier_code"] = code

        for required in ("supplier_name", "adapter_class"):
            if not merged.get(required):
                raise ValueError(f"{required} is required")

        # Validate before writing
        candidate = SupplierConfig.from_row(merged)

        params = {name: merged.get(name) for name in _EDITABLE_FIELDS}
        for name in _JSON_FIELDS:
            params[name] = json.dumps(params[name]) if params[name] is not None else None
        params["supplier_code"] = code
        params["is_active"] = candidate.is_active
        params["timestamp_tolerance_seconds"] = candidate.timestamp_tolerance_seconds
        params["amount_tolerance_cents"] = candidate.amount_tolerance_cents
        params["critical_variance_threshold_cents"] = candidate.critical_variance_threshold_cents
        params["manual_review_alert_ratio"] = candidate.manual_review_alert_ratio
        params["sla_hours"] = candidate.sla_hours
        params["ingestion_method"] = candidate.ingestion_method
        params["file_format"] = candidate.file_format
        params["delimiter"] = candidate.delimiter
        params["encoding"] = candidate.encoding
        params["timezone"] = candidate.timezone

        columns = ", ".join(("supplier_code",) + _EDITABLE_FIELDS)
        placeholders = ", ".join(
            f"CAST(:{name} AS JSONB)" if name in _JSON_FIELDS else f":{name}"
            for name in ("supplier_code",) + _EDITABLE_FIELDS
        )
        updates = ", ".join(f"{name} = EXCLUDED.{name}" for name in _EDITABLE_FIELDS)

        query = text(f"""
            INSERT INTO public.recon_supplier_configs ({columns})
            VALUES ({placeholders})
            ON CONFLICT (supplier_code) DO UPDATE
            SET {updates}, updated_at = NOW()
            RETURNING {_CONFIG_COLUMNS}
        """)

        try:
            result = await db.execute(query, params)
            row = result.mappings().fetchone()
            await db.commit()
        except Exception as e:
            logger.error(f"Failed to upsert supplier config {code}: {e}")
            await db.rollback()
            raise

        config = SupplierConfig.from_row(dict(row))
        self._configs[code] = config
        logger.info(f"Supplier config saved: {code}", extra={"supplier_code": code})
        return config

    async def set_active(self, db: AsyncSession, supplier_code: str, is_active: bool) -> SupplierConfig:
        """Activate or deactivate a supplier."""
        if self.find_config(supplier_code) is None:
            raise ValueError(f"Supplier {supplier_code} not found")
        return await self.upsert_config(db, supplier_code, {"is_active": is_active})

    def to_dict(self) -> Dict[str, Any]:
        """Export registry as dictionary."""
        return {code: cfg.to_dict() for code, cfg in sorted(self._configs.items())}


# Global registry instance
supplier_registry = SupplierConfigRegistry()
