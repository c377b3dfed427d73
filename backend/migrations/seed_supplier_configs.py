"""
Seed Supplier Configurations

Inserts the built-in supplier integrations (MobileMart, Flash, EasyPay)
when they are not configured yet. Existing rows are left untouched so
operator edits survive re-running the seed.

Run this script directly:
    cd backend && python migrations/seed_supplier_configs.py
"""

import asyncio
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from database.connection import AsyncSessionLocal
from reconciliation.supplier_registry import supplier_registry


FINANCE_RECIPIENTS = [
    {"channel": "email", "recipients": ["finance@example.co.za"]},
]

MOBILEMART_SCHEMA = {
    "header": {"fields": [
        {"name": "merchant_id", "type": "string", "required": True},
        {"name": "merchant_name", "type": "string", "required": True},
        {"name": "settlement_date", "type": "date", "format": "%Y-%m-%d", "required": True},
        {"name": "total_transactions", "type": "integer", "required": True},
        {"name": "total_amount", "type": "amount", "required": True},
        {"name": "total_commission", "type": "amount", "required": True},
    ]},
    "body": {"fields": [
        {"name": "transaction_id", "type": "string", "required": True, "mapping": "transaction_id"},
        {"name": "transaction_date", "type": "datetime", "format": "%Y-%m-%d %H:%M:%S",
         "required": True, "mapping": "timestamp"},
        {"name": "product_code", "type": "string", "required": True, "mapping": "product_code"},
        {"name": "product_name", "type": "string", "required": True, "mapping": "product_name"},
        {"name": "amount", "type": "amount", "required": True, "mapping": "amount_cents"},
        {"name": "commission", "type": "amount", "required": True, "mapping": "commission_cents"},
        {"name": "status", "type": "string", "required": True, "mapping": "status"},
        {"name": "reference", "type": "string", "required": False, "mapping": "reference"},
    ]},
    "footer": {"fields": [
        {"name": "total_count", "type": "integer", "required": True},
        {"name": "total_amount", "type": "amount", "required": True},
        {"name": "total_commission", "type": "amount", "required": True},
    ]},
}

FLASH_SCHEMA = {
    "has_column_header": True,
    "body": {"fields": [
        {"name": "date", "column": 0, "type": "datetime", "format": "%Y/%m/%d %H:%M",
         "required": True, "mapping": "timestamp"},
        {"name": "reference", "column": 1, "type": "string", "required": True, "mapping": "reference"},
        {"name": "transaction_id", "column": 2, "type": "string", "required": True, "mapping": "transaction_id"},
        {"name": "transaction_type", "column": 3, "type": "string"},
        {"name": "product_code", "column": 4, "type": "string", "required": True, "mapping": "product_code"},
        {"name": "product", "column": 5, "type": "string", "required": True, "mapping": "product_name"},
        {"name": "gross_amount", "column": 8, "type": "amount", "required": True, "mapping": "amount_cents"},
        {"name": "fee", "column": 9, "type": "amount", "required": True},
        {"name": "commission", "column": 10, "type": "amount", "required": True, "mapping": "commission_cents"},
        {"name": "net_amount", "column": 11, "type": "amount", "required": True},
        {"name": "status", "column": 12, "type": "string", "required": True, "mapping": "status"},
    ]},
}

EASYPAY_SCHEMA = {
    "has_column_header": True,
    "body": {"fields": [
        {"name": "transaction_id", "column": 0, "type": "string", "required": True, "mapping": "transaction_id"},
        {"name": "easypay_code", "column": 1, "type": "string", "required": True, "mapping": "reference"},
        {"name": "transaction_type", "column": 2, "type": "string", "required": True, "mapping": "product_code"},
        {"name": "merchant_id", "column": 3, "type": "string", "required": True},
        {"name": "terminal_id", "column": 4, "type": "string", "required": True},
        {"name": "cashier_id", "column": 5, "type": "string"},
        {"name": "transaction_timestamp", "column": 6, "type": "datetime", "format": "ISO8601",
         "required": True, "mapping": "timestamp"},
        {"name": "gross_amount", "column": 7, "type": "amount", "required": True, "mapping": "amount_cents"},
        {"name": "settlement_status", "column": 8, "type": "string", "required": True, "mapping": "status"},
        {"name": "merchant_name", "column": 9, "type": "string"},
        {"name": "receipt_number", "column": 10, "type": "string"},
    ]},
}

SUPPLIER_SEEDS = {
    "MMART": {
        "supplier_name": "MobileMart",
        "ingestion_method": "sftp",
        "file_name_pattern": "recon_YYYYMMDD.csv",
        "delimiter": ",",
        "file_schema": MOBILEMART_SCHEMA,
        "adapter_class": "mobilemart",
        "matching_rules": {
            "primary": ["transaction_id", "reference"],
            "secondary": ["amount", "timestamp", "product_code"],
            "fuzzy_match": {"enabled": True, "min_confidence": 0.85},
        },
        "timestamp_tolerance_seconds": 300,
        "amount_tolerance_cents": 0,
        "commission_calculation": {"method": "from_file", "field": "commission", "vat_inclusive": True, "vat_rate": 0.15},
        "critical_variance_threshold_cents": 100000,
        "delivery_schedule": {"expected_time": "06:00"},
        "alert_recipients": FINANCE_RECIPIENTS,
    },
    "FLASH": {
        "supplier_name": "Flash",
        "ingestion_method": "sftp",
        "file_name_pattern": "recon_YYYYMMDD.csv",
        "delimiter": ";",
        "file_schema": FLASH_SCHEMA,
        "adapter_class": "flash",
        "matching_rules": {
            "primary": ["transaction_id", "reference"],
            "secondary": ["amount", "timestamp", "product_code"],
            "fuzzy_match": {"enabled": True, "min_confidence": 0.85},
        },
        "timestamp_tolerance_seconds": 300,
        "amount_tolerance_cents": 0,
        "commission_calculation": {"method": "from_file", "field": "commission", "vat_inclusive": True, "vat_rate": 0.15},
        "critical_variance_threshold_cents": 100000,
        "delivery_schedule": {"expected_time": "06:00"},
        "alert_recipients": FINANCE_RECIPIENTS,
    },
    "EASYPAY": {
        "supplier_name": "EasyPay",
        "ingestion_method": "sftp",
        "file_name_pattern": "easypay_recon_YYYYMMDD.csv",
        "delimiter": ",",
        "file_schema": EASYPAY_SCHEMA,
        "adapter_class": "easypay",
        "matching_rules": {
            "primary": ["transaction_id"],
            "secondary": ["reference", "amount", "timestamp"],
            "fuzzy_match": {"enabled": True, "min_confidence": 0.90},
        },
        "timestamp_tolerance_seconds": 300,
        "amount_tolerance_cents": 1,
        "commission_calculation": {"method": "not_applicable"},
        "critical_variance_threshold_cents": 100000,
        "delivery_schedule": {"expected_time": "07:00"},
        "alert_recipients": FINANCE_RECIPIENTS,
    },
}


async def seed_suppliers():
    """Insert any built-in supplier config that does not exist yet."""
    print("Seeding supplier configurations...")

    async with AsyncSessionLocal() as db:
        await supplier_registry.load(db)
        for code, values in SUPPLIER_SEEDS.items():
            if supplier_registry.find_config(code) is not None:
                print(f"  ✓ {code} (already configured)")
                continue
            await supplier_registry.upsert_config(db, code, values)
            print(f"  ✓ {code} created")

    print("\n✅ Supplier configurations seeded")


if __name__ == "__main__":
    asyncio.run(seed_suppliers())
