"""
MobileMart settlement file adapter.

Positional CSV with three sections:
- Header row: merchant_id, merchant_name, settlement_date,
  total_transactions, total_amount, total_commission
- Body rows: transaction_id, transaction_date (YYYY-MM-DD HH:MM:SS),
  product_code, product_name, amount, commission, status, reference
- Footer row: total_count, total_amount, total_commission

Both the header and the footer declare totals; each is checked against
the parsed body.
"""

from reconciliation.exceptions import SchemaMismatch
from reconciliation.models import ParseReport
from reconciliation.supplier_registry import SupplierConfig
from reconciliation.adapters.registry import register_adapter, ParsedFile
from reconciliation.adapters.schema import (
    FieldError,
    load_section,
    validate_body_mapping,
    read_rows,
    read_fields,
    parse_body_rows,
    calculated_totals,
    check_declared_totals,
    serialisable,
)

HEADER_TOTAL_ALIASES = {"total_transactions": "total_count"}


@register_adapter("mobilemart")
def parse_mobilemart(content: str, config: SupplierConfig) -> ParsedFile:
    schema = config.file_schema
    header_fields = load_section(schema, "header")
    body_fields = load_section(schema, "body")
    footer_fields = load_section(schema, "footer")
    validate_body_mapping(body_fields)

    rows = read_rows(content, config.delimiter)
    report = ParseReport(adapter="mobilemart", total_lines=len(rows))

    if len(rows) < 3:
        raise SchemaMismatch("File must contain a header, at least one transaction, and a footer")

    header_line, header_cells = rows[0]
    footer_line, footer_cells = rows[-1]
    body_rows = rows[1:-1]

    try:
        header = read_fields(header_cells, header_fields, config.timezone)
        footer = read_fields(footer_cells, footer_fields, config.timezone)
    except FieldError as e:
        raise SchemaMismatch(f"Unreadable header/footer: {e}", report.to_dict())

    report.header = serialisable(header)
    report.footer = serialisable(footer)

    records = parse_body_rows(
        body_rows,
        body_fields,
        report,
        config.timezone,
        has_commission=config.has_commission,
    )

    calculated = calculated_totals(records, len(body_rows))
    check_declared_totals("header", header, calculated, report, aliases=HEADER_TOTAL_ALIASES)
    check_declared_totals("footer", footer, calculated, report)

    return records, report
