"""
Schema-driven field parsing shared by the supplier adapters.

A supplier file_schema has header/body/footer sections, each an ordered list
of field definitions:

    {"name": "amount", "column": 4, "type": "amount", "required": true,
     "mapping": "amount_cents"}

Types: string, integer, amount (decimal currency -> cents), datetime, date.
Datetime fields take a strptime "format" or "ISO8601"; naive values are
localised in the supplier timezone and converted to UTC.
"""

import csv
import io
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Dict, Any, List, Optional, Tuple
from dataclasses import dataclass
from zoneinfo import ZoneInfo

from reconciliation.exceptions import SchemaMismatch
from reconciliation.models import SupplierRecord, ParseReport, FileDiscrepancy, RejectedRecord

FIELD_TYPES = ("string", "integer", "amount", "datetime", "date")

# SupplierRecord attributes a body field may map onto
RECORD_ATTRIBUTES = (
    "transaction_id", "reference", "amount_cents", "commission_cents",
    "status", "timestamp", "product_code", "product_name",
)
REQUIRED_RECORD_ATTRIBUTES = ("transaction_id", "amount_cents", "timestamp")

STATUS_ALIASES = {
    "completed": "completed",
    "complete": "completed",
    "success": "completed",
    "successful": "completed",
    "settled": "completed",
    "pending": "pending",
    "processing": "pending",
    "failed": "failed",
    "error": "failed",
    "rejected": "failed",
    "declined": "failed",
    "reversed": "reversed",
    "refunded": "reversed",
}


@dataclass(frozen=True)
class FieldDef:
    name: str
    column: int
    type: str = "string"
    required: bool = False
    format: Optional[str] = None
    mapping: Optional[str] = None


class FieldError(ValueError):
    """A single field failed its declared type or presence rule."""

    def __init__(self, field: str, reason: str):
        self.field = field
        self.reason = reason
        super().__init__(f"{field}: {reason}")


def load_section(schema: Dict[str, Any], section: str) -> List[FieldDef]:
    """Read one schema section into FieldDefs (column defaults to list position)."""
    raw_fields = (schema.get(section) or {}).get("fields") or []
    fields = []
    for position, raw in enumerate(raw_fields):
        field_type = raw.get("type", "string")
        if field_type not in FIELD_TYPES:
            raise SchemaMismatch(f"Unsupported field type '{field_type}' for {section}.{raw.get('name')}")
        fields.append(FieldDef(
            name=raw["name"],
            column=int(raw.get("column", position)),
            type=field_type,
            required=bool(raw.get("required", False)),
            format=raw.get("format"),
            mapping=raw.get("mapping"),
        ))
    return fields


def validate_body_mapping(fields: List[FieldDef]):
    mapped = {f.mapping for f in fields if f.mapping}
    unknown = mapped - set(RECORD_ATTRIBUTES)
    if unknown:
        raise SchemaMismatch(f"Body fields map onto unknown attributes: {sorted(unknown)}")
    missing = [attr for attr in REQUIRED_RECORD_ATTRIBUTES if attr not in mapped]
    if missing:
        raise SchemaMismatch(f"Body schema does not map required attributes: {missing}")


def decode_content(raw_bytes: bytes, encoding: str) -> str:
    codec = "utf-8-sig" if encoding.lower().replace("_", "-") in ("utf-8", "utf8") else encoding
    try:
        return raw_bytes.decode(codec)
    except (UnicodeDecodeError, LookupError) as e:
        raise SchemaMismatch(f"File is not readable as {encoding}: {e}")


def read_rows(content: str, delimiter: str) -> List[Tuple[int, List[str]]]:
    """Split CSV content into (line_number, cells), skipping blank lines."""
    reader = csv.reader(io.StringIO(content), delimiter=delimiter)
    rows = []
    for row in reader:
        if not row or all(not cell.strip() for cell in row):
            continue
        rows.append((reader.line_num, [cell.strip() for cell in row]))
    return rows


def to_cents(value: str) -> int:
    """Convert a decimal currency string to integer cents (half-up)."""
    cleaned = value.replace(" ", "")
    try:
        amount = Decimal(cleaned)
    except InvalidOperation:
        raise ValueError(f"'{value}' is not a decimal amount")
    if not amount.is_finite():
        raise ValueError(f"'{value}' is not a finite amount")
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def parse_timestamp(value: str, fmt: Optional[str], tz_name: str) -> datetime:
    if not fmt or fmt.upper() == "ISO8601":
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    else:
        parsed = datetime.strptime(value, fmt)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=ZoneInfo(tz_name))
    return parsed.astimezone(timezone.utc)


def normalize_status(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    key = value.strip().lower()
    return STATUS_ALIASES.get(key, key)


def coerce_value(raw: Optional[str], fdef: FieldDef, tz_name: str) -> Any:
    """
    Coerce one cell to its declared type.

    Raises:
        FieldError: missing required value or type failure
    """
    if raw is None or raw == "":
        if fdef.required:
            raise FieldError(fdef.name, "missing required field")
        return None

    try:
        if fdef.type == "string":
            return raw
        if fdef.type == "integer":
            return int(raw)
        if fdef.type == "amount":
            return to_cents(raw)
        if fdef.type == "datetime":
            return parse_timestamp(raw, fdef.format, tz_name)
        if fdef.type == "date":
            return datetime.strptime(raw, fdef.format or "%Y-%m-%d").date().isoformat()
    except ValueError as e:
        raise FieldError(fdef.name, f"invalid {fdef.type}: {e}")

    raise FieldError(fdef.name, f"unsupported type {fdef.type}")


def read_fields(cells: List[str], fields: List[FieldDef], tz_name: str) -> Dict[str, Any]:
    """Read every declared field of a row; the first failing field raises FieldError."""
    values = {}
    for fdef in fields:
        raw = cells[fdef.column] if fdef.column < len(cells) else None
        values[fdef.name] = coerce_value(raw, fdef, tz_name)
    return values


def build_record(
    values: Dict[str, Any],
    fields: List[FieldDef],
    ordinal: int,
    line_number: int,
    has_commission: bool = True
) -> SupplierRecord:
    mapped: Dict[str, Any] = {}
    extra: Dict[str, Any] = {}
    for fdef in fields:
        if fdef.mapping:
            mapped[fdef.mapping] = values.get(fdef.name)
        elif values.get(fdef.name) is not None:
            extra[fdef.name] = values[fdef.name]

    # A mapped-but-optional required attribute can still be empty
    for attr in REQUIRED_RECORD_ATTRIBUTES:
        if mapped.get(attr) is None:
            source = next((f.name for f in fields if f.mapping == attr), attr)
            raise FieldError(source, "missing required field")

    return SupplierRecord(
        ordinal=ordinal,
        transaction_id=str(mapped["transaction_id"]),
        amount_cents=mapped["amount_cents"],
        timestamp=mapped["timestamp"],
        reference=mapped.get("reference"),
        commission_cents=mapped.get("commission_cents") if has_commission else None,
        status=normalize_status(mapped.get("status")),
        product_code=mapped.get("product_code"),
        product_name=mapped.get("product_name"),
        line_number=line_number,
        extra=extra,
    )


def parse_body_rows(
    rows: List[Tuple[int, List[str]]],
    fields: List[FieldDef],
    report: ParseReport,
    tz_name: str,
    has_commission: bool = True
) -> List[SupplierRecord]:
    """
    Strictly parse body rows. Failing rows are excluded and reported;
    parsing continues with the next row.
    """
    records: List[SupplierRecord] = []
    for line_number, cells in rows:
        try:
            values = read_fields(cells, fields, tz_name)
            record = build_record(values, fields, len(records), line_number, has_commission)
        except FieldError as e:
            report.rejected.append(RejectedRecord(line_number=line_number, field=e.field, reason=e.reason))
            continue
        records.append(record)

    report.accepted = len(records)
    return records


def calculated_totals(records: List[SupplierRecord], body_count: int) -> Dict[str, Any]:
    commissions = [r.commission_cents for r in records if r.commission_cents is not None]
    return {
        "total_count": body_count,
        "total_amount": sum(r.amount_cents for r in records),
        "total_commission": sum(commissions) if commissions else None,
    }


def check_declared_totals(
    section: str,
    declared: Dict[str, Any],
    calculated: Dict[str, Any],
    report: ParseReport,
    aliases: Optional[Dict[str, str]] = None
):
    """
    Compare declared header/footer totals with what the body actually holds.

    Mismatches are appended to report.file_discrepancies.
    """
    aliases = aliases or {}
    for declared_name, value in declared.items():
        total_name = aliases.get(declared_name, declared_name)
        if total_name not in calculated or value is None:
            continue
        if calculated[total_name] is None:
            continue
        if value != calculated[total_name]:
            report.file_discrepancies.append(FileDiscrepancy(
                section=section,
                field=declared_name,
                declared=value,
                calculated=calculated[total_name],
            ))


def serialisable(values: Dict[str, Any]) -> Dict[str, Any]:
    return {
        key: value.isoformat() if isinstance(value, datetime) else value
        for key, value in values.items()
    }


def parse_column_headed(content: str, config, adapter_name: str) -> Tuple[List[SupplierRecord], ParseReport]:
    """
    Parse a body-only CSV whose first row names the columns.

    There is no declared footer; report.footer carries calculated totals.
    """
    body_fields = load_section(config.file_schema, "body")
    validate_body_mapping(body_fields)

    rows = read_rows(content, config.delimiter)
    report = ParseReport(adapter=adapter_name, total_lines=len(rows))

    if config.file_schema.get("has_column_header", True):
        if not rows:
            raise SchemaMismatch("File is empty")
        _, column_names = rows[0]
        report.header = {"columns": column_names}
        rows = rows[1:]

    records = parse_body_rows(
        rows,
        body_fields,
        report,
        config.timezone,
        has_commission=config.has_commission,
    )
    report.footer = dict(calculated_totals(records, len(rows)), calculated=True)
    return records, report
