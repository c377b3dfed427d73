"""
Unit Tests for Supplier File Adapters

Tests schema-driven parsing of supplier settlement files:
- MobileMart (header / body / footer, declared totals)
- Flash (semicolon-delimited, column header)
- EasyPay (column header, no commission)
- Rejected-record ceiling and file-level discrepancies

Run with: pytest tests/test_adapters.py -v
"""

import pytest
from datetime import datetime, timezone

from reconciliation.exceptions import ConfigurationMissing, SchemaMismatch
from reconciliation.adapters import ADAPTERS, parse_file
from reconciliation.adapters.schema import normalize_status, parse_timestamp, to_cents
from migrations.seed_supplier_configs import MOBILEMART_SCHEMA

from conftest import mobilemart_file

FLASH_HEADER = (
    "Date;Reference;Transaction ID;Transaction Type;Product Code;Product;"
    "Account Number;Account Name;Gross Amount;Fee;Commission;Net Amount;Status;Metadata"
)

EASYPAY_HEADER = (
    "transaction_id,easypay_code,transaction_type,merchant_id,terminal_id,cashier_id,"
    "transaction_timestamp,gross_amount,settlement_status,merchant_name,receipt_number"
)


class TestFieldParsing:
    """Test the shared field coercion helpers."""

    def test_to_cents_rounds_half_up(self):
        assert to_cents("100.00") == 10000
        assert to_cents("0.005") == 1
        assert to_cents("12.344") == 1234
        assert to_cents("-5.50") == -550

    def test_to_cents_rejects_garbage(self):
        with pytest.raises(ValueError):
            to_cents("abc")

    def test_naive_timestamp_is_localised_to_supplier_timezone(self):
        parsed = parse_timestamp("2026-03-02 10:00:00", "%Y-%m-%d %H:%M:%S", "Africa/Johannesburg")
        assert parsed == datetime(2026, 3, 2, 8, 0, 0, tzinfo=timezone.utc)

    def test_iso_timestamp_with_zone_keeps_its_offset(self):
        parsed = parse_timestamp("2026-03-02T08:00:00Z", "ISO8601", "Africa/Johannesburg")
        assert parsed == datetime(2026, 3, 2, 8, 0, 0, tzinfo=timezone.utc)

    def test_status_aliases(self):
        assert normalize_status("Success") == "completed"
        assert normalize_status("SETTLED") == "completed"
        assert normalize_status("declined") == "failed"
        assert normalize_status("something_else") == "something_else"
        assert normalize_status(None) is None


class TestMobileMartAdapter:
    """Test MobileMart header/body/footer parsing."""

    @pytest.fixture
    def config(self, make_config):
        return make_config("MMART")

    def test_adapters_registered(self):
        assert {"mobilemart", "flash", "easypay"} <= set(ADAPTERS)

    def test_parse_valid_file(self, config):
        raw = mobilemart_file([
            ("MM-1001", "2026-03-02 10:00:00", "100.00", "5.00", "success", "REF1"),
            ("MM-1002", "2026-03-02 10:05:00", "50.00", "2.50", "completed", "REF2"),
        ])

        records, report = parse_file(raw, config)

        assert report.adapter == "mobilemart"
        assert report.accepted == 2
        assert report.rejected == []
        assert report.file_discrepancies == []
        assert [r.ordinal for r in records] == [0, 1]

        first = records[0]
        assert first.transaction_id == "MM-1001"
        assert first.amount_cents == 10000
        assert first.commission_cents == 500
        assert first.status == "completed"
        assert first.reference == "REF1"
        assert first.product_code == "AIRTIME"
        assert first.timestamp == datetime(2026, 3, 2, 8, 0, 0, tzinfo=timezone.utc)
        assert first.line_number == 2

        assert report.header["merchant_id"] == "MM001"
        assert report.header["settlement_date"] == "2026-03-02"
        assert report.footer["total_amount"] == 15000

    def test_footer_total_mismatch_is_reported_not_raised(self, config):
        raw = mobilemart_file(
            [("MM-1001", "2026-03-02 10:00:00", "100.00", "5.00", "success", "REF1")],
            footer_amount="101.00",
        )

        records, report = parse_file(raw, config)

        assert len(records) == 1
        assert len(report.file_discrepancies) == 1
        discrepancy = report.file_discrepancies[0]
        assert discrepancy.section == "footer"
        assert discrepancy.field == "total_amount"
        assert discrepancy.declared == 10100
        assert discrepancy.calculated == 10000

    def test_header_count_mismatch_uses_total_transactions_alias(self, config):
        raw = mobilemart_file(
            [("MM-1001", "2026-03-02 10:00:00", "100.00", "5.00", "success", "REF1")],
            header_count=3,
        )

        _, report = parse_file(raw, config)

        fields = {(d.section, d.field) for d in report.file_discrepancies}
        assert ("header", "total_transactions") in fields

    def test_strict_totals_turns_mismatch_into_schema_mismatch(self, make_config):
        schema = dict(MOBILEMART_SCHEMA, strict_totals=True)
        config = make_config("MMART", file_schema=schema)
        raw = mobilemart_file(
            [("MM-1001", "2026-03-02 10:00:00", "100.00", "5.00", "success", "REF1")],
            footer_amount="99.00",
        )

        with pytest.raises(SchemaMismatch) as exc_info:
            parse_file(raw, config)
        assert exc_info.value.report["file_discrepancies"][0]["field"] == "total_amount"

    def test_file_without_footer_is_schema_mismatch(self, config):
        raw = b"MM001,Example Merchant,2026-03-02,1,100.00,5.00\n"

        with pytest.raises(SchemaMismatch):
            parse_file(raw, config)

    def test_rejection_ceiling_breached(self, config):
        raw = mobilemart_file([
            ("MM-1001", "2026-03-02 10:00:00", "100.00", "5.00", "success", "REF1"),
            ("MM-1002", "not-a-date", "50.00", "2.50", "success", "REF2"),
            ("MM-1003", "2026-03-02 10:10:00", "abc", "2.50", "success", "REF3"),
        ])

        with pytest.raises(SchemaMismatch) as exc_info:
            parse_file(raw, config)

        report = exc_info.value.report
        assert report["accepted"] == 1
        assert report["rejected_count"] == 2
        assert {r["field"] for r in report["rejected"]} == {"transaction_date", "amount"}

    def test_rejection_exactly_at_ceiling_is_accepted(self, config):
        rows = [
            (f"MM-{i:04d}", "2026-03-02 10:00:00", "10.00", "0.50", "success", f"REF{i}")
            for i in range(19)
        ]
        rows.append(("MM-BAD", "2026-03-02 10:00:00", "", "0.50", "success", "REFBAD"))

        records, report = parse_file(mobilemart_file(rows), config)

        assert len(records) == 19
        assert len(report.rejected) == 1
        assert report.rejection_ratio == pytest.approx(0.05)
        assert report.rejected[0].reason == "missing required field"

    def test_unknown_adapter_class_is_configuration_missing(self, make_config):
        config = make_config("MMART", adapter_class="does_not_exist")

        with pytest.raises(ConfigurationMissing):
            parse_file(b"anything", config)


class TestFlashAdapter:
    """Test Flash semicolon-delimited files."""

    @pytest.fixture
    def config(self, make_config):
        return make_config("FLASH")

    def test_parse_with_bom_and_column_header(self, config):
        content = "\n".join([
            FLASH_HEADER,
            "2026/03/02 10:00;FR-1;FL-1;sale;AIRTIME;MTN Airtime;0821234567;J Smith;100.00;1.00;4.00;95.00;Success;-",
            "2026/03/02 10:30;FR-2;FL-2;sale;DATA;MTN Data;0821234568;A Jones;20.00;0.20;0.80;19.00;Failed;-",
        ])
        raw = b"\xef\xbb\xbf" + content.encode("utf-8")

        records, report = parse_file(raw, config)

        assert report.adapter == "flash"
        assert report.header["columns"][0] == "Date"
        assert [r.transaction_id for r in records] == ["FL-1", "FL-2"]
        assert records[0].reference == "FR-1"
        assert records[0].amount_cents == 10000
        assert records[0].commission_cents == 400
        assert records[0].extra["net_amount"] == 9500
        assert records[1].status == "failed"
        assert records[0].timestamp == datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)
        assert report.footer["total_amount"] == 12000
        assert report.footer["total_net_amount"] == 11400
        assert report.footer["calculated"] is True


class TestEasyPayAdapter:
    """Test EasyPay comma-delimited files."""

    @pytest.fixture
    def config(self, make_config):
        return make_config("EASYPAY")

    def test_parse_counts_types_and_drops_commission(self, config):
        content = "\n".join([
            EASYPAY_HEADER,
            "EP-1,91234,topup,M1,T1,C1,2026-03-02T08:00:00Z,200.00,settled,Shop,R1",
            "EP-2,91235,cashout,M1,T1,C1,2026-03-02T08:15:00Z,50.00,pending,Shop,R2",
            "EP-3,91236,topup,M1,T2,,2026-03-02T09:00:00+02:00,75.50,settled,Shop,R3",
        ])

        records, report = parse_file(content.encode("utf-8"), config)

        assert report.accepted == 3
        assert all(r.commission_cents is None for r in records)
        assert records[0].reference == "91234"
        assert records[0].product_code == "topup"
        assert records[2].amount_cents == 7550
        assert records[2].timestamp == datetime(2026, 3, 2, 7, 0, tzinfo=timezone.utc)
        assert report.footer["topup_count"] == 2
        assert report.footer["cashout_count"] == 1
        assert report.footer["settled_count"] == 2
        assert report.footer["pending_count"] == 1
        assert report.footer["total_commission"] is None

    def test_header_only_file_is_schema_mismatch(self, config):
        with pytest.raises(SchemaMismatch):
            parse_file(EASYPAY_HEADER.encode("utf-8"), config)
