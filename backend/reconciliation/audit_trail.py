"""
Audit Trail Writer

Append-only, hash-chained record of every state transition in the
reconciliation pipeline.

Chain:
    event_hash = sha256(event_id | timestamp | canonical_json(envelope) | previous_hash)

where envelope = {event_type, run_id, actor_type, actor_id, entity_type,
entity_id, payload} and previous_hash is "GENESIS" for the first event.

The chain is global. Writers serialise on a transaction-scoped Postgres
advisory lock, so the order of seq values is the order of the chain.
The table itself refuses UPDATE and DELETE (see the migration).
"""

import json
import uuid
import hashlib
import logging
from enum import Enum
from datetime import date, datetime, timezone
from decimal import Decimal
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from reconciliation.exceptions import AuditChainBroken

logger = logging.getLogger(__name__)

GENESIS = "GENESIS"

# Arbitrary constant shared by every writer of recon_audit_trail
AUDIT_CHAIN_LOCK_KEY = 7_310_001


class ReconciliationEventType:
    """Audit event types for reconciliation operations."""
    FILE_RECEIVED = "reconciliation.file_received"
    DUPLICATE_FILE = "reconciliation.duplicate_file"
    FILE_PARSED = "reconciliation.file_parsed"
    RUN_STATUS_CHANGED = "reconciliation.run_status_changed"
    PLATFORM_RECORDS_FETCHED = "reconciliation.platform_records_fetched"
    MATCHING_TIER_COMPLETED = "reconciliation.matching_tier_completed"
    DISCREPANCIES_DETECTED = "reconciliation.discrepancies_detected"
    RESOLUTION_COMPLETED = "reconciliation.resolution_completed"
    RESOLUTION_APPLIED = "reconciliation.resolution_applied"
    MATCH_ESCALATED = "reconciliation.match_escalated"
    RECONCILIATION_COMPLETED = "reconciliation.completed"
    RECONCILIATION_FAILED = "reconciliation.failed"
    ALERT_SENT = "reconciliation.alert_sent"
    DELIVERY_MISSED = "reconciliation.delivery_missed"
    SUPPLIER_CONFIG_UPDATED = "reconciliation.supplier_config_updated"


def log_reconciliation_event(
    event_type: str,
    run_id: Optional[str],
    details: Dict[str, Any],
    supplier_code: Optional[str] = None,
    actor: str = "system"
):
    """Log reconciliation event for the structured application log."""
    log_entry = {
        "event": event_type,
        "run_id": run_id,
        "supplier_code": supplier_code,
        "details": details,
        "actor": actor,
        "timestamp": datetime.now(timezone.utc).isoformat()
    }
    logger.info(f"Reconciliation event: {event_type}", extra=log_entry)


# ==================== HASHING ====================

def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return format_timestamp(value)
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (set, frozenset, tuple)):
        return sorted(value) if isinstance(value, (set, frozenset)) else list(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def canonical_json(value: Any) -> str:
    """Deterministic JSON: sorted keys, no whitespace."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=_json_default, ensure_ascii=False)


def format_timestamp(value: datetime) -> str:
    """Fixed-width UTC timestamp; naive values are taken as UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def hash_event(
    event_id: str,
    event_timestamp: datetime,
    envelope: Dict[str, Any],
    previous_hash: Optional[str]
) -> str:
    material = "|".join([
        str(event_id),
        format_timestamp(event_timestamp),
        canonical_json(envelope),
        previous_hash or GENESIS,
    ])
    return hashlib.sha256(material.encode("utf-8")).hexdigest()


# ==================== EVENTS ====================

@dataclass
class AuditEvent:
    """One row of recon_audit_trail."""
    event_id: str
    event_type: str
    event_timestamp: datetime
    actor_type: str
    actor_id: str
    entity_type: str
    entity_id: Optional[str]
    payload: Dict[str, Any] = field(default_factory=dict)
    run_id: Optional[str] = None
    event_hash: Optional[str] = None
    previous_event_hash: Optional[str] = None
    seq: Optional[int] = None

    @property
    def envelope(self) -> Dict[str, Any]:
        return {
            "event_type": self.event_type,
            "run_id": self.run_id,
            "actor_type": self.actor_type,
            "actor_id": self.actor_id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "payload": self.payload,
        }

    def compute_hash(self) -> str:
        return hash_event(self.event_id, self.event_timestamp, self.envelope, self.previous_event_hash)

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "AuditEvent":
        payload = row.get("payload") or {}
        if isinstance(payload, str):
            payload = json.loads(payload)
        return cls(
            seq=row.get("seq"),
            event_id=str(row["event_id"]),
            run_id=str(row["run_id"]) if row.get("run_id") else None,
            event_type=row["event_type"],
            event_timestamp=row["event_timestamp"],
            actor_type=row["actor_type"],
            actor_id=row["actor_id"],
            entity_type=row["entity_type"],
            entity_id=row.get("entity_id"),
            payload=payload,
            event_hash=row.get("event_hash"),
            previous_event_hash=row.get("previous_event_hash"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "seq": self.seq,
            "event_id": self.event_id,
            "run_id": self.run_id,
            "event_type": self.event_type,
            "event_timestamp": self.event_timestamp.isoformat() if self.event_timestamp else None,
            "actor_type": self.actor_type,
            "actor_id": self.actor_id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "payload": self.payload,
            "event_hash": self.event_hash,
            "previous_event_hash": self.previous_event_hash,
        }


# ==================== VERIFICATION ====================

class ChainVerifier:
    """
    Incremental chain check; feed events in seq order.

    Detects edited rows (hash mismatch), removed or reordered rows (link to
    the wrong predecessor) and a forged genesis.
    """

    def __init__(self):
        self.count = 0
        self._last: Optional[AuditEvent] = None

    def feed(self, event: AuditEvent):
        last = self._last
        if last is None:
            if event.previous_event_hash is not None:
                raise AuditChainBroken(event.seq, GENESIS, event.previous_event_hash, "genesis_has_previous")
        else:
            if event.seq is not None and last.seq is not None and event.seq <= last.seq:
                raise AuditChainBroken(event.seq, f"seq > {last.seq}", str(event.seq), "out_of_order")
            if event.previous_event_hash != last.event_hash:
                raise AuditChainBroken(event.seq, last.event_hash, str(event.previous_event_hash), "broken_link")

        expected = event.compute_hash()
        if expected != event.event_hash:
            raise AuditChainBroken(event.seq, expected, str(event.event_hash), "hash_mismatch")

        self._last = event
        self.count += 1

    @property
    def head_hash(self) -> Optional[str]:
        return self._last.event_hash if self._last else None


def verify_chain(events: Iterable[AuditEvent]) -> int:
    """
    Walk the chain from the first event onward.

    Returns:
        Number of verified events

    Raises:
        AuditChainBroken: at the first event that does not verify
    """
    verifier = ChainVerifier()
    for event in events:
        verifier.feed(event)
    return verifier.count


# ==================== WRITER ====================

_EVENT_COLUMNS = """
    seq, event_id, run_id, event_type, event_timestamp, actor_type, actor_id,
    entity_type, entity_id, payload, event_hash, previous_event_hash
"""


class AuditTrailWriter:
    """
    Appends events to the global audit chain.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def append(
        self,
        event_type: str,
        actor: Dict[str, str],
        entity: Dict[str, Optional[str]],
        payload: Optional[Dict[str, Any]] = None,
        run_id: Optional[str] = None,
        commit: bool = True
    ) -> AuditEvent:
        """
        Append one event.

        Args:
            event_type: ReconciliationEventType value
            actor: {"type": ..., "id": ...}
            entity: {"type": ..., "id": ...}
            payload: structured event data
            run_id: owning run, if any
            commit: commit the append (and release the chain lock) immediately

        Returns:
            The stored AuditEvent with its hash and seq
        """
        # Round-trip through canonical JSON so the hashed payload equals the stored one
        normalised = json.loads(canonical_json(payload or {}))

        event = AuditEvent(
            event_id=str(uuid.uuid4()),
            run_id=str(run_id) if run_id else None,
            event_type=event_type,
            event_timestamp=datetime.now(timezone.utc),
            actor_type=actor.get("type", "system"),
            actor_id=actor.get("id", "system"),
            entity_type=entity.get("type", "run"),
            entity_id=str(entity["id"]) if entity.get("id") is not None else None,
            payload=normalised,
        )

        try:
            await self.db.execute(
                text("SELECT pg_advisory_xact_lock(:key)"),
                {"key": AUDIT_CHAIN_LOCK_KEY}
            )
            result = await self.db.execute(text("""
                SELECT event_hash FROM public.recon_audit_trail
                ORDER BY seq DESC
                LIMIT 1
            """))
            event.previous_event_hash = result.scalar()
            event.event_hash = event.compute_hash()

            result = await self.db.execute(
                text("""
                    INSERT INTO public.recon_audit_trail (
                        event_id, run_id, event_type, event_timestamp, actor_type, actor_id,
                        entity_type, entity_id, payload, event_hash, previous_event_hash
                    ) VALUES (
                        :event_id, :run_id, :event_type, :event_timestamp, :actor_type, :actor_id,
                        :entity_type, :entity_id, CAST(:payload AS JSONB), :event_hash, :previous_event_hash
                    )
                    RETURNING seq
                """),
                {
                    "event_id": event.event_id,
                    "run_id": event.run_id,
                    "event_type": event.event_type,
                    "event_timestamp": event.event_timestamp,
                    "actor_type": event.actor_type,
                    "actor_id": event.actor_id,
                    "entity_type": event.entity_type,
                    "entity_id": event.entity_id,
                    "payload": canonical_json(event.payload),
                    "event_hash": event.event_hash,
                    "previous_event_hash": event.previous_event_hash,
                }
            )
            event.seq = result.scalar()

            if commit:
                await self.db.commit()
        except Exception:
            if commit:
                await self.db.rollback()
            raise

        log_reconciliation_event(
            event_type,
            event.run_id,
            {"entity_type": event.entity_type, "entity_id": event.entity_id, "seq": event.seq},
            actor=event.actor_id,
        )
        return event

    async def get_events(self, run_id: str) -> List[AuditEvent]:
        """Events for one run, in chain order."""
        result = await self.db.execute(
            text(f"""
                SELECT {_EVENT_COLUMNS} FROM public.recon_audit_trail
                WHERE run_id = :run_id
                ORDER BY seq ASC
            """),
            {"run_id": str(run_id)}
        )
        return [AuditEvent.from_row(dict(row)) for row in result.mappings().all()]

    async def iter_chain(self, batch_size: int = 1000) -> AsyncIterator[AuditEvent]:
        """Every event in seq order, read in keyset-paginated batches."""
        after = 0
        while True:
            result = await self.db.execute(
                text(f"""
                    SELECT {_EVENT_COLUMNS} FROM public.recon_audit_trail
                    WHERE seq > :after
                    ORDER BY seq ASC
                    LIMIT :limit
                """),
                {"after": after, "limit": batch_size}
            )
            rows = result.mappings().all()
            if not rows:
                return
            for row in rows:
                event = AuditEvent.from_row(dict(row))
                after = event.seq
                yield event

    async def verify(self, batch_size: int = 1000) -> Dict[str, Any]:
        """
        Verify the stored chain.

        Returns:
            {"valid": bool, "events_verified": int, "head_hash": str|None, "error": dict|None}
        """
        verifier = ChainVerifier()
        try:
            async for event in self.iter_chain(batch_size):
                verifier.feed(event)
        except AuditChainBroken as e:
            logger.error(f"Audit chain verification failed: {e}")
            return {
                "valid": False,
                "events_verified": verifier.count,
                "head_hash": verifier.head_hash,
                "error": {"seq": e.seq, "reason": e.reason, "expected": e.expected, "actual": e.actual},
            }
        return {
            "valid": True,
            "events_verified": verifier.count,
            "head_hash": verifier.head_hash,
            "error": None,
        }
