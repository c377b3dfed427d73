"""
Supplier Reconciliation - SQLAlchemy Database Models

Mirrors the tables created by migrations/create_reconciliation_tables.py:
SupplierConfig, ReconciliationRun, TransactionMatch, AuditEvent.

Services query these tables with text() SQL; the models document the
schema and register it on Base.metadata.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Column, String, Text, Boolean, Integer, BigInteger, DateTime, Numeric,
    ForeignKey, Index, UniqueConstraint
)
from sqlalchemy.orm import relationship
from sqlalchemy.dialects.postgresql import UUID, JSONB

from database.connection import Base


# ==================== HELPER FUNCTIONS ====================

def generate_uuid() -> str:
    return str(uuid.uuid4())


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ==================== SUPPLIER CONFIG ====================

class SupplierConfigDB(Base):
    """One supplier integration: file shape, matching rules, tolerances, alert routing."""
    __tablename__ = "recon_supplier_configs"

    id = Column(UUID(as_uuid=False), primary_key=True, default=generate_uuid)
    supplier_code = Column(String(50), nullable=False, unique=True)
    supplier_name = Column(String(255), nullable=False)

    ingestion_method = Column(String(20), nullable=False, default="sftp")
    file_format = Column(String(20), nullable=False, default="csv")
    file_name_pattern = Column(String(255), nullable=True)
    delimiter = Column(String(5), nullable=False, default=",")
    encoding = Column(String(20), nullable=False, default="utf-8")
    file_schema = Column(JSONB, nullable=False)
    adapter_class = Column(String(100), nullable=False)
    timezone = Column(String(64), nullable=False, default="Africa/Johannesburg")

    matching_rules = Column(JSONB, nullable=False)
    timestamp_tolerance_seconds = Column(Integer, nullable=False, default=300)
    amount_tolerance_cents = Column(BigInteger, nullable=False, default=0)
    commission_calculation = Column(JSONB, nullable=True)
    resolution_rules = Column(JSONB, nullable=True)

    critical_variance_threshold_cents = Column(BigInteger, nullable=False, default=100000)
    manual_review_alert_ratio = Column(Numeric(5, 4), nullable=False, default=0.10)
    sla_hours = Column(Integer, nullable=False, default=24)
    delivery_schedule = Column(JSONB, nullable=True)
    alert_recipients = Column(JSONB, nullable=False, default=list)

    is_active = Column(Boolean, nullable=False, default=True)
    last_successful_run_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    runs = relationship("ReconciliationRunDB", back_populates="supplier")


# ==================== RUNS ====================

class ReconciliationRunDB(Base):
    """One ingested file. (supplier_id, file_hash) is unique."""
    __tablename__ = "recon_runs"

    id = Column(UUID(as_uuid=False), primary_key=True, default=generate_uuid)
    supplier_id = Column(UUID(as_uuid=False), ForeignKey("recon_supplier_configs.id"), nullable=False)
    supplier_code = Column(String(50), nullable=False, index=True)

    file_name = Column(String(500), nullable=False)
    file_hash = Column(String(64), nullable=False)
    file_size = Column(BigInteger, nullable=False)
    file_received_at = Column(DateTime(timezone=True), nullable=False, index=True)

    status = Column(String(20), nullable=False, default="pending", index=True)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    failure_reason = Column(String(50), nullable=True)
    is_final = Column(Boolean, nullable=False, default=False)

    total_supplier_records = Column(Integer, nullable=False, default=0)
    total_platform_records = Column(Integer, nullable=False, default=0)
    matched_exact = Column(Integer, nullable=False, default=0)
    matched_fuzzy = Column(Integer, nullable=False, default=0)
    unmatched_platform = Column(Integer, nullable=False, default=0)
    unmatched_supplier = Column(Integer, nullable=False, default=0)
    auto_resolved = Column(Integer, nullable=False, default=0)
    manual_review_required = Column(Integer, nullable=False, default=0)

    platform_total_amount_cents = Column(BigInteger, nullable=False, default=0)
    supplier_total_amount_cents = Column(BigInteger, nullable=False, default=0)
    amount_variance_cents = Column(BigInteger, nullable=False, default=0)
    platform_total_commission_cents = Column(BigInteger, nullable=False, default=0)
    supplier_total_commission_cents = Column(BigInteger, nullable=False, default=0)
    commission_variance_cents = Column(BigInteger, nullable=False, default=0)

    discrepancy_summary = Column(JSONB, nullable=True)
    error_log = Column(JSONB, nullable=False, default=list)
    processing_time_ms = Column(Integer, nullable=True)
    alerts_sent = Column(JSONB, nullable=False, default=list)

    created_by = Column(String(100), nullable=False, default="system")
    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    supplier = relationship("SupplierConfigDB", back_populates="runs")
    matches = relationship("TransactionMatchDB", back_populates="run")

    __table_args__ = (
        UniqueConstraint("supplier_id", "file_hash", name="recon_runs_supplier_file_unique"),
    )


# ==================== MATCHES ====================

class TransactionMatchDB(Base):
    """One pair or unmatched record of a run; (run_id, match_index) is unique."""
    __tablename__ = "recon_transaction_matches"

    id = Column(UUID(as_uuid=False), primary_key=True, default=generate_uuid)
    run_id = Column(UUID(as_uuid=False), ForeignKey("recon_runs.id"), nullable=False, index=True)
    match_index = Column(Integer, nullable=False)

    platform_transaction_id = Column(String(255), nullable=True)
    platform_reference = Column(String(255), nullable=True)
    platform_amount_cents = Column(BigInteger, nullable=True)
    platform_commission_cents = Column(BigInteger, nullable=True)
    platform_status = Column(String(50), nullable=True)
    platform_timestamp = Column(DateTime(timezone=True), nullable=True)
    platform_product_code = Column(String(100), nullable=True)
    platform_product_name = Column(String(255), nullable=True)

    supplier_transaction_id = Column(String(255), nullable=True)
    supplier_reference = Column(String(255), nullable=True)
    supplier_amount_cents = Column(BigInteger, nullable=True)
    supplier_commission_cents = Column(BigInteger, nullable=True)
    supplier_status = Column(String(50), nullable=True)
    supplier_timestamp = Column(DateTime(timezone=True), nullable=True)
    supplier_product_code = Column(String(100), nullable=True)
    supplier_product_name = Column(String(255), nullable=True)
    supplier_line_number = Column(Integer, nullable=True)

    match_status = Column(String(30), nullable=False, index=True)
    confidence_score = Column(Numeric(5, 2), nullable=False, default=0)
    match_method = Column(String(50), nullable=False)

    has_discrepancy = Column(Boolean, nullable=False, default=False, index=True)
    discrepancy_type = Column(String(30), nullable=True)
    discrepancy_details = Column(JSONB, nullable=False, default=list)
    severity = Column(String(10), nullable=True)

    resolution_status = Column(String(20), nullable=False, default="pending", index=True)
    resolution_method = Column(String(30), nullable=True)
    resolution_notes = Column(Text, nullable=True)
    resolved_by = Column(String(100), nullable=True)
    resolved_at = Column(DateTime(timezone=True), nullable=True)

    provisional = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    run = relationship("ReconciliationRunDB", back_populates="matches")

    __table_args__ = (
        UniqueConstraint("run_id", "match_index", name="recon_matches_run_index_unique"),
    )


# ==================== AUDIT ====================

class AuditEventDB(Base):
    """
    Append-only, hash-chained audit event.

    The database rejects UPDATE and DELETE on this table.
    """
    __tablename__ = "recon_audit_trail"

    seq = Column(BigInteger, primary_key=True, autoincrement=True)
    event_id = Column(UUID(as_uuid=False), nullable=False, unique=True, default=generate_uuid)
    run_id = Column(UUID(as_uuid=False), nullable=True, index=True)
    event_type = Column(String(100), nullable=False, index=True)
    event_timestamp = Column(DateTime(timezone=True), nullable=False)
    actor_type = Column(String(20), nullable=False)
    actor_id = Column(String(100), nullable=False)
    entity_type = Column(String(50), nullable=False)
    entity_id = Column(String(255), nullable=True)
    payload = Column(JSONB, nullable=False, default=dict)
    event_hash = Column(String(64), nullable=False, unique=True)
    previous_event_hash = Column(String(64), nullable=True)
