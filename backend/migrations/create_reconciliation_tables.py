"""
Database Migration: Create Reconciliation Tables

Creates the supplier reconciliation schema:
- recon_supplier_configs     (one row per supplier integration)
- recon_runs                 (one row per ingested file; UNIQUE supplier + file hash)
- recon_transaction_matches  (one row per pair / unmatched record; UNIQUE run + match_index)
- recon_audit_trail          (append-only, hash-chained)

Run this script directly:
    cd backend && python migrations/create_reconciliation_tables.py
"""

import asyncio
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy import text
from database.connection import engine


SQL_STATEMENTS = [
    # Supplier configuration
    """
    CREATE TABLE IF NOT EXISTS public.recon_supplier_configs (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        supplier_code VARCHAR(50) NOT NULL UNIQUE,
        supplier_name VARCHAR(255) NOT NULL,

        -- Ingestion
        ingestion_method VARCHAR(20) NOT NULL DEFAULT 'sftp',
        file_format VARCHAR(20) NOT NULL DEFAULT 'csv',
        file_name_pattern VARCHAR(255),
        delimiter VARCHAR(5) NOT NULL DEFAULT ',',
        encoding VARCHAR(20) NOT NULL DEFAULT 'utf-8',
        file_schema JSONB NOT NULL,
        adapter_class VARCHAR(100) NOT NULL,
        timezone VARCHAR(64) NOT NULL DEFAULT 'Africa/Johannesburg',

        -- Matching
        matching_rules JSONB NOT NULL,
        timestamp_tolerance_seconds INTEGER NOT NULL DEFAULT 300,
        amount_tolerance_cents BIGINT NOT NULL DEFAULT 0,
        commission_calculation JSONB,
        resolution_rules JSONB,

        -- Alerting
        critical_variance_threshold_cents BIGINT NOT NULL DEFAULT 100000,
        manual_review_alert_ratio DECIMAL(5,4) NOT NULL DEFAULT 0.10,
        sla_hours INTEGER NOT NULL DEFAULT 24,
        delivery_schedule JSONB,
        alert_recipients JSONB NOT NULL DEFAULT '[]'::jsonb,

        -- Status
        is_active BOOLEAN NOT NULL DEFAULT true,
        last_successful_run_at TIMESTAMPTZ,

        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),

        CONSTRAINT recon_supplier_configs_ingestion_check
            CHECK (ingestion_method IN ('sftp', 's3', 'api', 'email')),
        CONSTRAINT recon_supplier_configs_tolerance_check
            CHECK (timestamp_tolerance_seconds >= 0 AND amount_tolerance_cents >= 0)
    )
    """,

    # Reconciliation runs
    """
    CREATE TABLE IF NOT EXISTS public.recon_runs (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        supplier_id UUID NOT NULL REFERENCES public.recon_supplier_configs(id),
        supplier_code VARCHAR(50) NOT NULL,

        -- File
        file_name VARCHAR(500) NOT NULL,
        file_hash VARCHAR(64) NOT NULL,
        file_size BIGINT NOT NULL,
        file_received_at TIMESTAMPTZ NOT NULL,

        -- Lifecycle
        status VARCHAR(20) NOT NULL DEFAULT 'pending',
        started_at TIMESTAMPTZ,
        completed_at TIMESTAMPTZ,
        failure_reason VARCHAR(50),
        is_final BOOLEAN NOT NULL DEFAULT false,

        -- Counts
        total_supplier_records INTEGER NOT NULL DEFAULT 0,
        total_platform_records INTEGER NOT NULL DEFAULT 0,
        matched_exact INTEGER NOT NULL DEFAULT 0,
        matched_fuzzy INTEGER NOT NULL DEFAULT 0,
        unmatched_platform INTEGER NOT NULL DEFAULT 0,
        unmatched_supplier INTEGER NOT NULL DEFAULT 0,
        auto_resolved INTEGER NOT NULL DEFAULT 0,
        manual_review_required INTEGER NOT NULL DEFAULT 0,

        -- Money (cents)
        platform_total_amount_cents BIGINT NOT NULL DEFAULT 0,
        supplier_total_amount_cents BIGINT NOT NULL DEFAULT 0,
        amount_variance_cents BIGINT NOT NULL DEFAULT 0,
        platform_total_commission_cents BIGINT NOT NULL DEFAULT 0,
        supplier_total_commission_cents BIGINT NOT NULL DEFAULT 0,
        commission_variance_cents BIGINT NOT NULL DEFAULT 0,

        -- Detail
        discrepancy_summary JSONB,
        error_log JSONB NOT NULL DEFAULT '[]'::jsonb,
        processing_time_ms INTEGER,
        alerts_sent JSONB NOT NULL DEFAULT '[]'::jsonb,

        created_by VARCHAR(100) NOT NULL DEFAULT 'system',
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),

        CONSTRAINT recon_runs_supplier_file_unique UNIQUE (supplier_id, file_hash),
        CONSTRAINT recon_runs_status_check
            CHECK (status IN ('pending', 'processing', 'completed', 'failed'))
    )
    """,

    # Transaction matches
    """
    CREATE TABLE IF NOT EXISTS public.recon_transaction_matches (
        id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
        run_id UUID NOT NULL REFERENCES public.recon_runs(id),
        match_index INTEGER NOT NULL,

        -- Platform snapshot
        platform_transaction_id VARCHAR(255),
        platform_reference VARCHAR(255),
        platform_amount_cents BIGINT,
        platform_commission_cents BIGINT,
        platform_status VARCHAR(50),
        platform_timestamp TIMESTAMPTZ,
        platform_product_code VARCHAR(100),
        platform_product_name VARCHAR(255),

        -- Supplier snapshot
        supplier_transaction_id VARCHAR(255),
        supplier_reference VARCHAR(255),
        supplier_amount_cents BIGINT,
        supplier_commission_cents BIGINT,
        supplier_status VARCHAR(50),
        supplier_timestamp TIMESTAMPTZ,
        supplier_product_code VARCHAR(100),
        supplier_product_name VARCHAR(255),
        supplier_line_number INTEGER,

        -- Match
        match_status VARCHAR(30) NOT NULL,
        confidence_score DECIMAL(5,2) NOT NULL DEFAULT 0,
        match_method VARCHAR(50) NOT NULL,

        -- Discrepancy
        has_discrepancy BOOLEAN NOT NULL DEFAULT false,
        discrepancy_type VARCHAR(30),
        discrepancy_details JSONB NOT NULL DEFAULT '[]'::jsonb,
        severity VARCHAR(10),

        -- Resolution
        resolution_status VARCHAR(20) NOT NULL DEFAULT 'pending',
        resolution_method VARCHAR(30),
        resolution_notes TEXT,
        resolved_by VARCHAR(100),
        resolved_at TIMESTAMPTZ,

        provisional BOOLEAN NOT NULL DEFAULT true,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),

        CONSTRAINT recon_matches_run_index_unique UNIQUE (run_id, match_index),
        CONSTRAINT recon_matches_status_check
            CHECK (match_status IN ('exact_match', 'fuzzy_match', 'unmatched_platform', 'unmatched_supplier')),
        CONSTRAINT recon_matches_resolution_check
            CHECK (resolution_status IN ('pending', 'auto_resolved', 'manual_review', 'resolved', 'escalated')),
        CONSTRAINT recon_matches_confidence_check
            CHECK (confidence_score >= 0 AND confidence_score <= 1)
    )
    """,

    # Audit trail
    """
    CREATE TABLE IF NOT EXISTS public.recon_audit_trail (
        seq BIGSERIAL PRIMARY KEY,
        event_id UUID NOT NULL UNIQUE,
        run_id UUID,
        event_type VARCHAR(100) NOT NULL,
        event_timestamp TIMESTAMPTZ NOT NULL,
        actor_type VARCHAR(20) NOT NULL,
        actor_id VARCHAR(100) NOT NULL,
        entity_type VARCHAR(50) NOT NULL,
        entity_id VARCHAR(255),
        payload JSONB NOT NULL DEFAULT '{}'::jsonb,
        event_hash VARCHAR(64) NOT NULL UNIQUE,
        previous_event_hash VARCHAR(64)
    )
    """,

    # Append-only enforcement
    """
    CREATE OR REPLACE FUNCTION public.recon_audit_trail_immutable()
    RETURNS trigger AS $$
    BEGIN
        RAISE EXCEPTION 'recon_audit_trail is append-only (% rejected)', TG_OP;
    END;
    $$ LANGUAGE plpgsql
    """,
    "DROP TRIGGER IF EXISTS recon_audit_trail_no_update ON public.recon_audit_trail",
    """
    CREATE TRIGGER recon_audit_trail_no_update
        BEFORE UPDATE OR DELETE ON public.recon_audit_trail
        FOR EACH ROW EXECUTE FUNCTION public.recon_audit_trail_immutable()
    """,
    "REVOKE UPDATE, DELETE, TRUNCATE ON public.recon_audit_trail FROM PUBLIC",

    # Indexes
    "CREATE INDEX IF NOT EXISTS idx_recon_runs_supplier ON public.recon_runs(supplier_code)",
    "CREATE INDEX IF NOT EXISTS idx_recon_runs_status ON public.recon_runs(status)",
    "CREATE INDEX IF NOT EXISTS idx_recon_runs_received ON public.recon_runs(file_received_at)",
    "CREATE INDEX IF NOT EXISTS idx_recon_matches_run ON public.recon_transaction_matches(run_id)",
    "CREATE INDEX IF NOT EXISTS idx_recon_matches_status ON public.recon_transaction_matches(match_status)",
    "CREATE INDEX IF NOT EXISTS idx_recon_matches_resolution ON public.recon_transaction_matches(resolution_status)",
    "CREATE INDEX IF NOT EXISTS idx_recon_matches_discrepancy ON public.recon_transaction_matches(has_discrepancy)",
    "CREATE INDEX IF NOT EXISTS idx_recon_audit_run ON public.recon_audit_trail(run_id)",
    "CREATE INDEX IF NOT EXISTS idx_recon_audit_type ON public.recon_audit_trail(event_type)",
]


async def create_tables():
    """Create the reconciliation tables."""
    print("Creating reconciliation tables...")

    async with engine.begin() as conn:
        for i, sql in enumerate(SQL_STATEMENTS):
            await conn.execute(text(sql))
            print(f"  ✓ Statement {i+1}/{len(SQL_STATEMENTS)} executed")

    print("\n✅ Reconciliation tables created successfully!")


if __name__ == "__main__":
    asyncio.run(create_tables())
