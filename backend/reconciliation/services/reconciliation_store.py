"""
Reconciliation Store

Persistence for runs and matches:
- run status transitions (processing, failed)
- provisional match rows, committed tier by tier
- atomic finalisation of counts and totals
- admin reads (runs, matches, analytics)
"""

import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from reconciliation.exceptions import InvalidTransition
from reconciliation.models import (
    MatchStatus,
    ResolutionStatus,
    RunStatus,
    RunSummary,
    TransactionMatch,
    transition_run,
)
from reconciliation.audit_trail import canonical_json

logger = logging.getLogger(__name__)

RUN_JSON_FIELDS = ("discrepancy_summary", "error_log", "alerts_sent")
MATCH_JSON_FIELDS = ("discrepancy_details",)

MATCH_COLUMNS = (
    "match_index", "match_status", "confidence_score", "match_method",
    "platform_transaction_id", "platform_reference", "platform_amount_cents",
    "platform_commission_cents", "platform_status", "platform_timestamp",
    "platform_product_code", "platform_product_name",
    "supplier_transaction_id", "supplier_reference", "supplier_amount_cents",
    "supplier_commission_cents", "supplier_status", "supplier_timestamp",
    "supplier_product_code", "supplier_product_name", "supplier_line_number",
    "has_discrepancy", "discrepancy_type", "discrepancy_details", "severity",
    "resolution_status", "resolution_method", "resolution_notes", "resolved_by", "resolved_at",
)


def _decode(row: Dict[str, Any], json_fields) -> Dict[str, Any]:
    """JSONB columns come back as str through text() queries."""
    data = dict(row)
    for name in json_fields:
        if isinstance(data.get(name), str):
            data[name] = json.loads(data[name])
    for key, value in data.items():
        if (key == "id" or key.endswith("_id")) and value is not None and not isinstance(value, str):
            data[key] = str(value)
    return data


def match_params(run_id: str, match: TransactionMatch) -> Dict[str, Any]:
    """Bind parameters for one recon_transaction_matches row."""
    params = match.to_dict()
    # asyncpg wants datetime objects for TIMESTAMPTZ
    params["platform_timestamp"] = match.platform.timestamp if match.platform else None
    params["supplier_timestamp"] = match.supplier.timestamp if match.supplier else None
    params["resolved_at"] = match.resolved_at
    params["discrepancy_details"] = canonical_json(match.discrepancy_details)
    params["run_id"] = run_id
    return {name: params[name] for name in ("run_id",) + MATCH_COLUMNS}


class ReconciliationStore:
    """
    Run and match persistence.

    Every write commits (or rolls back and re-raises) on its own, so rows
    from completed steps survive a later failure.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    # ==================== RUN LIFECYCLE ====================

    async def mark_processing(self, run_id: str) -> datetime:
        """pending -> processing."""
        started_at = datetime.now(timezone.utc)
        await self._transition(run_id, RunStatus.PENDING, RunStatus.PROCESSING, {"started_at": started_at})
        return started_at

    async def mark_failed(
        self,
        run_id: str,
        reason: str,
        error: Dict[str, Any],
        discrepancy_summary: Optional[Dict[str, Any]] = None,
        processing_time_ms: Optional[int] = None
    ) -> Dict[str, Any]:
        """
        pending|processing -> failed, recording the reason and appending to error_log.

        Aggregates are left as they are; a failed run is never finalised.
        """
        current = await self.get_run_status(run_id)
        if current is None:
            raise ValueError(f"Run {run_id} not found")
        transition_run(current, RunStatus.FAILED)

        query = text("""
            UPDATE public.recon_runs
            SET status = 'failed',
                failure_reason = :reason,
                completed_at = :now,
                error_log = COALESCE(error_log, '[]'::jsonb) || CAST(:error AS JSONB),
                discrepancy_summary = COALESCE(CAST(:summary AS JSONB), discrepancy_summary),
                processing_time_ms = :processing_time_ms,
                updated_at = :now
            WHERE id = :id AND status IN ('pending', 'processing')
            RETURNING id, status, failure_reason
        """)
        try:
            result = await self.db.execute(query, {
                "id": run_id,
                "reason": reason,
                "now": datetime.now(timezone.utc),
                "error": canonical_json([error]),
                "summary": canonical_json(discrepancy_summary) if discrepancy_summary is not None else None,
                "processing_time_ms": processing_time_ms,
            })
            row = result.mappings().fetchone()
            await self.db.commit()
        except Exception as e:
            logger.error(f"Failed to mark run {run_id} failed: {e}")
            await self.db.rollback()
            raise

        if row is None:
            raise InvalidTransition("run", str(current.value), RunStatus.FAILED.value)
        logger.warning(f"Run {run_id} failed: {reason}", extra={"run_id": run_id, "reason": reason})
        return dict(row)

    async def _transition(self, run_id: str, current: RunStatus, target: RunStatus, values: Dict[str, Any]):
        transition_run(current, target)

        assignments = ", ".join(f"{name} = :{name}" for name in values)
        query = text(f"""
            UPDATE public.recon_runs
            SET status = :target, {assignments}, updated_at = NOW()
            WHERE id = :id AND status = :current
            RETURNING id
        """)
        try:
            result = await self.db.execute(query, {
                "id": run_id,
                "current": current.value,
                "target": target.value,
                **values,
            })
            updated = result.scalar()
            await self.db.commit()
        except Exception as e:
            logger.error(f"Run {run_id} transition {current.value}->{target.value} failed: {e}")
            await self.db.rollback()
            raise

        if updated is None:
            actual = await self.get_run_status(run_id)
            raise InvalidTransition("run", actual.value if actual else "missing", target.value)

    # ==================== MATCHES ====================

    async def insert_matches(self, run_id: str, matches: List[TransactionMatch]) -> int:
        """Insert one tier's matches as provisional rows and commit."""
        if not matches:
            return 0

        columns = ", ".join(("run_id",) + MATCH_COLUMNS)
        placeholders = ", ".join(
            f"CAST(:{name} AS JSONB)" if name in MATCH_JSON_FIELDS else f":{name}"
            for name in ("run_id",) + MATCH_COLUMNS
        )
        query = text(f"""
            INSERT INTO public.recon_transaction_matches ({columns}, provisional)
            VALUES ({placeholders}, true)
        """)
        try:
            await self.db.execute(query, [match_params(run_id, m) for m in matches])
            await self.db.commit()
        except Exception as e:
            logger.error(f"Failed to insert matches for run {run_id}: {e}")
            await self.db.rollback()
            raise
        return len(matches)

    # ==================== FINALISATION ====================

    async def finalize_run(
        self,
        run_id: str,
        supplier_id: str,
        summary: RunSummary,
        discrepancy_summary: Dict[str, Any],
        processing_time_ms: int
    ):
        """
        processing -> completed, in one transaction:
        counts and totals written, is_final set, matches made non-provisional,
        and the supplier's last_successful_run_at moved forward.
        """
        transition_run(RunStatus.PROCESSING, RunStatus.COMPLETED)

        try:
            result = await self.db.execute(
                text("""
                    UPDATE public.recon_runs
                    SET status = 'completed',
                        is_final = true,
                        completed_at = :completed_at,
                        total_supplier_records = :total_supplier_records,
                        total_platform_records = :total_platform_records,
                        matched_exact = :matched_exact,
                        matched_fuzzy = :matched_fuzzy,
                        unmatched_platform = :unmatched_platform,
                        unmatched_supplier = :unmatched_supplier,
                        auto_resolved = :auto_resolved,
                        manual_review_required = :manual_review_required,
                        platform_total_amount_cents = :platform_total_amount_cents,
                        supplier_total_amount_cents = :supplier_total_amount_cents,
                        amount_variance_cents = :amount_variance_cents,
                        platform_total_commission_cents = :platform_total_commission_cents,
                        supplier_total_commission_cents = :supplier_total_commission_cents,
                        commission_variance_cents = :commission_variance_cents,
                        discrepancy_summary = CAST(:discrepancy_summary AS JSONB),
                        processing_time_ms = :processing_time_ms,
                        updated_at = :completed_at
                    WHERE id = :id AND status = 'processing'
                    RETURNING id
                """),
                {
                    "id": run_id,
                    "completed_at": summary.completed_at,
                    "total_supplier_records": summary.total_supplier_records,
                    "total_platform_records": summary.total_platform_records,
                    "matched_exact": summary.matched_exact,
                    "matched_fuzzy": summary.matched_fuzzy,
                    "unmatched_platform": summary.unmatched_platform,
                    "unmatched_supplier": summary.unmatched_supplier,
                    "auto_resolved": summary.auto_resolved,
                    "manual_review_required": summary.manual_review_required,
                    "platform_total_amount_cents": summary.platform_total_amount_cents,
                    "supplier_total_amount_cents": summary.supplier_total_amount_cents,
                    "amount_variance_cents": summary.amount_variance_cents,
                    "platform_total_commission_cents": summary.platform_total_commission_cents,
                    "supplier_total_commission_cents": summary.supplier_total_commission_cents,
                    "commission_variance_cents": summary.commission_variance_cents,
                    "discrepancy_summary": canonical_json(discrepancy_summary),
                    "processing_time_ms": processing_time_ms,
                }
            )
            if result.scalar() is None:
                raise InvalidTransition("run", "not processing", RunStatus.COMPLETED.value)

            await self.db.execute(
                text("""
                    UPDATE public.recon_transaction_matches
                    SET provisional = false, updated_at = NOW()
                    WHERE run_id = :run_id
                """),
                {"run_id": run_id}
            )
            await self.db.execute(
                text("""
                    UPDATE public.recon_supplier_configs
                    SET last_successful_run_at = :completed_at
                    WHERE id = :supplier_id
                """),
                {"supplier_id": supplier_id, "completed_at": summary.completed_at}
            )
            await self.db.commit()
        except Exception as e:
            logger.error(f"Failed to finalise run {run_id}: {e}")
            await self.db.rollback()
            raise

        logger.info(
            f"Run {run_id} completed",
            extra={"run_id": run_id, "match_rate": round(summary.match_rate, 2)}
        )

    async def record_alerts(self, run_id: str, alerts: List[Dict[str, Any]]):
        if not alerts:
            return
        try:
            await self.db.execute(
                text("""
                    UPDATE public.recon_runs
                    SET alerts_sent = COALESCE(alerts_sent, '[]'::jsonb) || CAST(:alerts AS JSONB)
                    WHERE id = :id
                """),
                {"id": run_id, "alerts": canonical_json(alerts)}
            )
            await self.db.commit()
        except Exception as e:
            logger.error(f"Failed to record alerts for run {run_id}: {e}")
            await self.db.rollback()
            raise

    # ==================== READS ====================

    async def get_run_status(self, run_id: str) -> Optional[RunStatus]:
        result = await self.db.execute(
            text("SELECT status FROM public.recon_runs WHERE id = :id"),
            {"id": run_id}
        )
        status = result.scalar()
        return RunStatus(status) if status else None

    async def get_run(self, run_id: str) -> Optional[Dict[str, Any]]:
        result = await self.db.execute(
            text("SELECT * FROM public.recon_runs WHERE id = :id"),
            {"id": run_id}
        )
        row = result.mappings().fetchone()
        if row is None:
            return None
        run = _decode(row, RUN_JSON_FIELDS)
        total = max(run.get("total_supplier_records") or 0, run.get("total_platform_records") or 0)
        matched = (run.get("matched_exact") or 0) + (run.get("matched_fuzzy") or 0)
        run["match_rate"] = round(matched / total * 100, 2) if total else None
        return run

    async def list_runs(
        self,
        supplier_code: Optional[str] = None,
        status: Optional[str] = None,
        limit: int = 50,
        offset: int = 0
    ) -> List[Dict[str, Any]]:
        conditions = []
        params: Dict[str, Any] = {"limit": limit, "offset": offset}
        if supplier_code:
            conditions.append("supplier_code = :supplier_code")
            params["supplier_code"] = supplier_code.upper()
        if status:
            conditions.append("status = :status")
            params["status"] = RunStatus(status).value

        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        result = await self.db.execute(
            text(f"""
                SELECT id, supplier_code, file_name, file_hash, file_size, file_received_at,
                       status, started_at, completed_at, failure_reason, is_final,
                       total_supplier_records, total_platform_records, matched_exact, matched_fuzzy,
                       unmatched_platform, unmatched_supplier, auto_resolved, manual_review_required,
                       amount_variance_cents, commission_variance_cents, processing_time_ms
                FROM public.recon_runs
                {where}
                ORDER BY file_received_at DESC
                LIMIT :limit OFFSET :offset
            """),
            params
        )
        return [_decode(row, ()) for row in result.mappings().all()]

    async def get_matches(
        self,
        run_id: str,
        match_status: Optional[str] = None,
        has_discrepancy: Optional[bool] = None,
        resolution_status: Optional[str] = None,
        limit: int = 500,
        offset: int = 0
    ) -> List[Dict[str, Any]]:
        conditions = ["run_id = :run_id"]
        params: Dict[str, Any] = {"run_id": run_id, "limit": limit, "offset": offset}
        if match_status:
            conditions.append("match_status = :match_status")
            params["match_status"] = MatchStatus(match_status).value
        if has_discrepancy is not None:
            conditions.append("has_discrepancy = :has_discrepancy")
            params["has_discrepancy"] = has_discrepancy
        if resolution_status:
            conditions.append("resolution_status = :resolution_status")
            params["resolution_status"] = ResolutionStatus(resolution_status).value

        result = await self.db.execute(
            text(f"""
                SELECT * FROM public.recon_transaction_matches
                WHERE {' AND '.join(conditions)}
                ORDER BY match_index ASC
                LIMIT :limit OFFSET :offset
            """),
            params
        )
        return [_decode(row, MATCH_JSON_FIELDS) for row in result.mappings().all()]

    async def get_match(self, match_id: str) -> Optional[Dict[str, Any]]:
        result = await self.db.execute(
            text("SELECT * FROM public.recon_transaction_matches WHERE id = :id"),
            {"id": match_id}
        )
        row = result.mappings().fetchone()
        return _decode(row, MATCH_JSON_FIELDS) if row else None

    async def count_matches(self, run_id: str) -> int:
        result = await self.db.execute(
            text("SELECT COUNT(*) FROM public.recon_transaction_matches WHERE run_id = :run_id"),
            {"run_id": run_id}
        )
        return result.scalar() or 0

    async def has_delivery(self, supplier_code: str, window_start: datetime, window_end: datetime) -> bool:
        """Whether any file for the supplier was received inside the window."""
        result = await self.db.execute(
            text("""
                SELECT 1 FROM public.recon_runs
                WHERE supplier_code = :supplier_code
                  AND file_received_at >= :window_start
                  AND file_received_at <= :window_end
                LIMIT 1
            """),
            {"supplier_code": supplier_code, "window_start": window_start, "window_end": window_end}
        )
        return result.scalar() is not None

    async def analytics_summary(self, days: int = 30) -> Dict[str, Any]:
        """Per-supplier run statistics over the last N days."""
        since = datetime.now(timezone.utc) - timedelta(days=days)
        result = await self.db.execute(
            text("""
                SELECT supplier_code,
                       COUNT(*) AS total_runs,
                       COUNT(*) FILTER (WHERE status = 'completed') AS completed_runs,
                       COUNT(*) FILTER (WHERE status = 'failed') AS failed_runs,
                       COALESCE(SUM(matched_exact), 0) AS matched_exact,
                       COALESCE(SUM(matched_fuzzy), 0) AS matched_fuzzy,
                       COALESCE(SUM(unmatched_platform), 0) AS unmatched_platform,
                       COALESCE(SUM(unmatched_supplier), 0) AS unmatched_supplier,
                       COALESCE(SUM(auto_resolved), 0) AS auto_resolved,
                       COALESCE(SUM(manual_review_required), 0) AS manual_review_required,
                       COALESCE(SUM(amount_variance_cents), 0) AS amount_variance_cents,
                       AVG(processing_time_ms) AS avg_processing_time_ms
                FROM public.recon_runs
                WHERE file_received_at >= :since
                GROUP BY supplier_code
                ORDER BY supplier_code
            """),
            {"since": since}
        )
        suppliers = []
        for row in result.mappings().all():
            entry = dict(row)
            if entry.get("avg_processing_time_ms") is not None:
                entry["avg_processing_time_ms"] = round(float(entry["avg_processing_time_ms"]), 1)
            suppliers.append(entry)

        open_result = await self.db.execute(text("""
            SELECT resolution_status, COUNT(*) AS count
            FROM public.recon_transaction_matches
            WHERE resolution_status IN ('manual_review', 'escalated')
            GROUP BY resolution_status
        """))
        open_items = {row["resolution_status"]: row["count"] for row in open_result.mappings().all()}

        return {
            "period_days": days,
            "since": since.isoformat(),
            "suppliers": suppliers,
            "open_items": {
                "manual_review": open_items.get("manual_review", 0),
                "escalated": open_items.get("escalated", 0),
            },
        }
