"""
Run Orchestrator

Owns the lifecycle of one reconciliation run:

    registry -> guard -> parse -> platform fetch -> match (tier by tier:
    classify, resolve, persist) -> finalise -> alerting

Run states: pending -> processing -> completed | failed.

Failure policy:
- ConfigurationMissing propagates; no run is created
- AlreadyProcessed is returned as a result, not raised
- SchemaMismatch, Timeout and any unexpected error mark the run failed;
  match rows from completed tiers stay (provisional, belonging to a
  failed run) and aggregates are never finalised
"""

import asyncio
import logging
import time
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from logging_config import set_log_context
from sentry_integration import capture_exception
from reconciliation.exceptions import MatchingError, SchemaMismatch
from reconciliation.models import (
    ParseReport,
    RunStatus,
    RunSummary,
    TransactionMatch,
)
from reconciliation.supplier_registry import SupplierConfig, SupplierConfigRegistry, supplier_registry
from reconciliation.adapters import parse_file
from reconciliation.ingestion_guard import AlreadyProcessed, IngestionGuard
from reconciliation.matching import MatchingEngine
from reconciliation.classifier import DiscrepancyClassifier
from reconciliation.resolution import ResolutionWorkflow
from reconciliation.platform_ledger import PlatformLedger, SqlPlatformLedger, settlement_window
from reconciliation.audit_trail import AuditTrailWriter, ReconciliationEventType
from reconciliation.alerting import AlertDispatcher, AlertingGate, AlertRequest, alerting_gate
from reconciliation.services.reconciliation_store import ReconciliationStore

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = {"type": "system", "id": "reconciliation-engine"}


@dataclass
class RunProcessingResult:
    """Outcome of process_file()."""
    run_id: str
    supplier_code: str
    status: RunStatus
    already_processed: bool = False
    failure_reason: Optional[str] = None
    error: Optional[str] = None
    summary: Optional[Dict[str, Any]] = None
    parse_report: Optional[Dict[str, Any]] = None
    alerts: List[Dict[str, Any]] = field(default_factory=list)
    passed: Optional[bool] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "supplier_code": self.supplier_code,
            "status": self.status.value,
            "already_processed": self.already_processed,
            "failure_reason": self.failure_reason,
            "error": self.error,
            "summary": self.summary,
            "parse_report": self.parse_report,
            "alerts": self.alerts,
            "passed": self.passed,
        }


@dataclass
class _RunContext:
    run_id: str
    config: SupplierConfig
    file_received_at: datetime
    started: float
    report: Optional[ParseReport] = None
    committed_matches: int = 0
    summary: Optional[RunSummary] = None

    @property
    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self.started) * 1000)


def build_discrepancy_summary(matches: List[TransactionMatch], report: Optional[ParseReport]) -> Dict[str, Any]:
    by_type = Counter(
        entry["type"] for m in matches for entry in m.discrepancy_details
    )
    by_severity = Counter(m.severity.value for m in matches if m.severity)
    by_resolution = Counter(m.resolution_status.value for m in matches if m.has_discrepancy)
    by_method = Counter(m.resolution_method.value for m in matches if m.resolution_method)
    summary = {
        "by_type": dict(by_type),
        "by_severity": dict(by_severity),
        "by_resolution_status": dict(by_resolution),
        "by_resolution_method": dict(by_method),
        "matches_with_discrepancy": sum(1 for m in matches if m.has_discrepancy),
    }
    if report is not None:
        summary["file_level"] = [d.to_dict() for d in report.file_discrepancies]
        summary["parse"] = {
            "accepted": report.accepted,
            "rejected_count": len(report.rejected),
            "rejection_ratio": round(report.rejection_ratio, 4),
            "rejected": [r.to_dict() for r in report.rejected],
        }
    return summary


class RunOrchestrator:
    """
    Processes one supplier file start-to-finish on a single session.
    """

    def __init__(
        self,
        db: AsyncSession,
        registry: Optional[SupplierConfigRegistry] = None,
        ledger: Optional[PlatformLedger] = None,
        gate: Optional[AlertingGate] = None,
        dispatcher: Optional[AlertDispatcher] = None,
        timeout_seconds: Optional[float] = None,
        max_rejection_ratio: Optional[float] = None
    ):
        self.db = db
        self.registry = registry or supplier_registry
        self.ledger = ledger or SqlPlatformLedger(db)
        self.gate = gate or alerting_gate
        self.dispatcher = dispatcher or AlertDispatcher()
        self.timeout_seconds = timeout_seconds if timeout_seconds is not None else settings.RECON_RUN_TIMEOUT_SECONDS
        self.max_rejection_ratio = (
            max_rejection_ratio if max_rejection_ratio is not None else settings.RECON_MAX_REJECTION_RATIO
        )
        self.store = ReconciliationStore(db)
        self.audit = AuditTrailWriter(db)
        self.guard = IngestionGuard(db)

    async def process_file(
        self,
        supplier_code: str,
        file_name: str,
        raw_bytes: bytes,
        received_at: Optional[datetime] = None,
        created_by: str = "system"
    ) -> RunProcessingResult:
        """
        Reconcile one supplier file.

        Raises:
            ConfigurationMissing: no active config for the supplier
        """
        config = self.registry.get_config(supplier_code)
        received_at = received_at or datetime.now(timezone.utc)

        claim = await self.guard.claim_run(config, file_name, raw_bytes, received_at, created_by)
        if isinstance(claim, AlreadyProcessed):
            await self.audit.append(
                ReconciliationEventType.DUPLICATE_FILE,
                actor=SYSTEM_ACTOR,
                entity={"type": "run", "id": claim.run_id},
                payload={"file_name": file_name, "file_hash": claim.file_hash, "existing_status": claim.status.value},
                run_id=claim.run_id,
            )
            return RunProcessingResult(
                run_id=claim.run_id,
                supplier_code=config.supplier_code,
                status=claim.status,
                already_processed=True,
            )

        ctx = _RunContext(
            run_id=claim.run_id,
            config=config,
            file_received_at=received_at,
            started=time.monotonic(),
        )
        set_log_context(run_id=ctx.run_id)

        await self.audit.append(
            ReconciliationEventType.FILE_RECEIVED,
            actor={"type": "user" if created_by != "system" else "system", "id": created_by},
            entity={"type": "run", "id": ctx.run_id},
            payload={
                "supplier_code": config.supplier_code,
                "file_name": file_name,
                "file_hash": claim.file_hash,
                "file_size": len(raw_bytes),
                "file_received_at": received_at,
            },
            run_id=ctx.run_id,
        )

        try:
            summary, matches = await asyncio.wait_for(
                self._pipeline(ctx, raw_bytes),
                timeout=self.timeout_seconds
            )
        except asyncio.TimeoutError:
            return await self._fail(ctx, "Timeout", f"Run exceeded {self.timeout_seconds}s")
        except SchemaMismatch as e:
            return await self._fail(ctx, "SchemaMismatch", str(e), e.report)
        except Exception as e:
            error = MatchingError(f"{type(e).__name__}: {e}", ctx.run_id)
            logger.exception(f"Run {ctx.run_id} failed unexpectedly")
            capture_exception(e, run_id=ctx.run_id, supplier_code=config.supplier_code)
            return await self._fail(ctx, "MatchingError", str(error))

        return await self._completed(ctx, summary)

    async def _completed(self, ctx: _RunContext, summary: RunSummary) -> RunProcessingResult:
        config = ctx.config
        alerts = await self._raise_alerts(summary, config)
        return RunProcessingResult(
            run_id=ctx.run_id,
            supplier_code=config.supplier_code,
            status=RunStatus.COMPLETED,
            summary=summary.to_dict(),
            parse_report=ctx.report.to_dict() if ctx.report else None,
            alerts=alerts,
            passed=summary.passed(config.critical_variance_threshold_cents),
        )

    # ==================== PIPELINE ====================

    async def _pipeline(self, ctx: _RunContext, raw_bytes: bytes):
        config = ctx.config

        await self.store.mark_processing(ctx.run_id)
        await self._audit(ctx, ReconciliationEventType.RUN_STATUS_CHANGED, {
            "from_status": RunStatus.PENDING.value,
            "to_status": RunStatus.PROCESSING.value,
        })

        records, report = parse_file(raw_bytes, config, self.max_rejection_ratio)
        ctx.report = report
        await self._audit(ctx, ReconciliationEventType.FILE_PARSED, {
            "adapter": report.adapter,
            "accepted": report.accepted,
            "rejected_count": len(report.rejected),
            "rejection_ratio": round(report.rejection_ratio, 4),
            "file_discrepancies": [d.to_dict() for d in report.file_discrepancies],
        })

        window_start, window_end = settlement_window(records, config, report.header.get("settlement_date"))
        platform_records = await self.ledger.fetch_platform_records(config, window_start, window_end)
        await self._audit(ctx, ReconciliationEventType.PLATFORM_RECORDS_FETCHED, {
            "count": len(platform_records),
            "window_start": window_start,
            "window_end": window_end,
        })

        engine = MatchingEngine(config)
        classifier = DiscrepancyClassifier(config)
        workflow = ResolutionWorkflow(config)

        matches: List[TransactionMatch] = []
        for tier in engine.iter_tiers(records, platform_records):
            await classifier.classify_many(tier.matches)
            now = datetime.now(timezone.utc)
            for match in tier.matches:
                workflow.resolve(match, now)

            await self.store.insert_matches(ctx.run_id, tier.matches)
            ctx.committed_matches += len(tier.matches)
            matches.extend(tier.matches)

            await self._audit(ctx, ReconciliationEventType.MATCHING_TIER_COMPLETED, {
                "tier": tier.tier,
                "matches": len(tier.matches),
                "with_discrepancy": sum(1 for m in tier.matches if m.has_discrepancy),
            })

        discrepancy_summary = build_discrepancy_summary(matches, report)
        await self._audit(ctx, ReconciliationEventType.DISCREPANCIES_DETECTED, {
            "by_type": discrepancy_summary["by_type"],
            "by_severity": discrepancy_summary["by_severity"],
            "file_level": discrepancy_summary["file_level"],
        })
        await self._audit(ctx, ReconciliationEventType.RESOLUTION_COMPLETED, {
            "by_resolution_status": discrepancy_summary["by_resolution_status"],
            "by_resolution_method": discrepancy_summary["by_resolution_method"],
        })

        summary = RunSummary.from_matches(
            ctx.run_id,
            config.supplier_code,
            ctx.file_received_at,
            matches,
            completed_at=datetime.now(timezone.utc),
        )
        await self.store.finalize_run(
            ctx.run_id,
            config.id,
            summary,
            discrepancy_summary,
            ctx.elapsed_ms,
        )
        ctx.summary = summary
        await self._audit(ctx, ReconciliationEventType.RECONCILIATION_COMPLETED, summary.to_dict())

        logger.info(
            f"Reconciliation {ctx.run_id} completed for {config.supplier_code}: "
            f"{summary.match_rate:.2f}% matched",
            extra={"run_id": ctx.run_id, "supplier_code": config.supplier_code}
        )
        return summary, matches

    # ==================== FAILURE / ALERTS ====================

    async def _fail(
        self,
        ctx: _RunContext,
        reason: str,
        message: str,
        report: Optional[Dict[str, Any]] = None
    ) -> RunProcessingResult:
        # A cancelled or failed statement leaves the transaction unusable
        try:
            await self.db.rollback()
        except Exception as e:
            logger.error(f"Rollback after {reason} failed for run {ctx.run_id}: {e}")

        # Finalisation already committed: the run stands as completed
        if ctx.summary is not None and await self.store.get_run_status(ctx.run_id) == RunStatus.COMPLETED:
            logger.warning(
                f"Run {ctx.run_id} hit {reason} after finalisation; keeping it completed",
                extra={"run_id": ctx.run_id, "reason": reason}
            )
            return await self._completed(ctx, ctx.summary)

        if report is None and ctx.report is not None:
            report = ctx.report.to_dict()
        error_entry = {
            "reason": reason,
            "message": message,
            "at": datetime.now(timezone.utc).isoformat(),
            "committed_matches": ctx.committed_matches,
        }
        await self.store.mark_failed(
            ctx.run_id,
            reason,
            error_entry,
            discrepancy_summary={"parse": report} if report else None,
            processing_time_ms=ctx.elapsed_ms,
        )
        await self._audit(ctx, ReconciliationEventType.RECONCILIATION_FAILED, {
            "reason": reason,
            "message": message,
            "committed_matches": ctx.committed_matches,
        })

        summary = RunSummary(
            run_id=ctx.run_id,
            supplier_code=ctx.config.supplier_code,
            status=RunStatus.FAILED,
            file_received_at=ctx.file_received_at,
            completed_at=datetime.now(timezone.utc),
            failure_reason=reason,
        )
        alerts = await self._raise_alerts(summary, ctx.config)

        return RunProcessingResult(
            run_id=ctx.run_id,
            supplier_code=ctx.config.supplier_code,
            status=RunStatus.FAILED,
            failure_reason=reason,
            error=message,
            parse_report=report,
            alerts=alerts,
            passed=False,
        )

    async def _raise_alerts(self, summary: RunSummary, config: SupplierConfig) -> List[Dict[str, Any]]:
        requests: List[AlertRequest] = self.gate.evaluate(summary, config)
        sent = []
        for request in requests:
            delivered = await self.dispatcher.send(request)
            record = dict(request.to_dict(), delivered=delivered)
            record.pop("details", None)
            sent.append(record)
            await self.audit.append(
                ReconciliationEventType.ALERT_SENT,
                actor=SYSTEM_ACTOR,
                entity={"type": "run", "id": summary.run_id},
                payload=record,
                run_id=summary.run_id,
            )
        await self.store.record_alerts(summary.run_id, sent)
        return sent

    async def _audit(self, ctx: _RunContext, event_type: str, payload: Dict[str, Any]):
        await self.audit.append(
            event_type,
            actor=SYSTEM_ACTOR,
            entity={"type": "run", "id": ctx.run_id},
            payload=payload,
            run_id=ctx.run_id,
        )
