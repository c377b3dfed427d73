"""
EasyPay settlement file adapter.

Comma-delimited CSV with a column-name header row:
transaction_id, easypay_code, transaction_type, merchant_id, terminal_id,
cashier_id, transaction_timestamp (ISO-8601), gross_amount,
settlement_status, merchant_name, receipt_number

EasyPay does not report commission. Totals and per-type counts are
calculated from the body.
"""

from collections import Counter

from reconciliation.supplier_registry import SupplierConfig
from reconciliation.adapters.registry import register_adapter, ParsedFile
from reconciliation.adapters.schema import parse_column_headed


@register_adapter("easypay")
def parse_easypay(content: str, config: SupplierConfig) -> ParsedFile:
    records, report = parse_column_headed(content, config, "easypay")

    types = Counter((r.product_code or "unknown").lower() for r in records)
    statuses = Counter(r.status or "unknown" for r in records)
    report.footer.update({
        "topup_count": types.get("topup", 0),
        "cashout_count": types.get("cashout", 0),
        "settled_count": statuses.get("completed", 0),
        "pending_count": statuses.get("pending", 0),
        "failed_count": statuses.get("failed", 0),
    })
    return records, report
