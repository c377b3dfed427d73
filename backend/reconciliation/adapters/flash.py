"""
Flash settlement file adapter.

Semicolon-delimited CSV with a column-name header row:
Date;Reference;Transaction ID;Transaction Type;Product Code;Product;
Account Number;Account Name;Gross Amount;Fee;Commission;Net Amount;Status;Metadata

Dates use YYYY/MM/DD HH:MM. Flash files carry no footer, so totals are
calculated from the body.
"""

from reconciliation.supplier_registry import SupplierConfig
from reconciliation.adapters.registry import register_adapter, ParsedFile
from reconciliation.adapters.schema import parse_column_headed


@register_adapter("flash")
def parse_flash(content: str, config: SupplierConfig) -> ParsedFile:
    records, report = parse_column_headed(content, config, "flash")

    # Net amounts are informational; keep their sum next to the gross total
    net_total = sum(r.extra.get("net_amount", 0) or 0 for r in records)
    report.footer["total_net_amount"] = net_total
    return records, report
