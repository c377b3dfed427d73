"""
Resolution Service

Human decisions on matches under review:
- ApplyResolution(matchId, method, notes, actorId) -> resolved
- Escalate(matchId, reason)                        -> escalated

Only one resolution action applies at a time per match. Each update is
conditional on the resolution_status the caller observed and on the match
belonging to a finalised run; either failing raises ResolutionConflict with
the match's current state.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from reconciliation.exceptions import ResolutionConflict
from reconciliation.models import (
    ResolutionMethod,
    ResolutionStatus,
    transition_resolution,
)
from reconciliation.audit_trail import AuditTrailWriter, ReconciliationEventType
from reconciliation.services.reconciliation_store import ReconciliationStore

logger = logging.getLogger(__name__)


class ResolutionService:
    """Applies manual resolution and escalation to a TransactionMatch."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.store = ReconciliationStore(db)
        self.audit = AuditTrailWriter(db)

    async def apply_resolution(
        self,
        match_id: str,
        method: ResolutionMethod,
        notes: Optional[str],
        actor_id: str
    ) -> Dict[str, Any]:
        """
        Record a human decision and move the match to resolved.

        Raises:
            ValueError: match not found, or an automatic method was given
            InvalidTransition: the match is not awaiting a decision
            ResolutionConflict: another action changed the match first
        """
        method = ResolutionMethod(method)
        if method.is_automatic:
            raise ValueError(f"Resolution method '{method.value}' is reserved for automatic rules")
        if method == ResolutionMethod.ESCALATION:
            raise ValueError("Use escalate to escalate a match")
        if not actor_id:
            raise ValueError("actor_id is required")

        return await self._move(
            match_id,
            ResolutionStatus.RESOLVED,
            {
                "resolution_method": method.value,
                "resolution_notes": notes,
                "resolved_by": actor_id,
                "resolved_at": datetime.now(timezone.utc),
            },
            ReconciliationEventType.RESOLUTION_APPLIED,
            actor_id,
        )

    async def escalate(
        self,
        match_id: str,
        reason: str,
        actor_id: str = "system"
    ) -> Dict[str, Any]:
        """Hand the match to supplier-side correction outside this system."""
        if not reason:
            raise ValueError("An escalation reason is required")

        return await self._move(
            match_id,
            ResolutionStatus.ESCALATED,
            {
                "resolution_method": ResolutionMethod.ESCALATION.value,
                "resolution_notes": reason,
                "resolved_by": actor_id,
                "resolved_at": None,
            },
            ReconciliationEventType.MATCH_ESCALATED,
            actor_id,
        )

    async def _move(
        self,
        match_id: str,
        target: ResolutionStatus,
        values: Dict[str, Any],
        event_type: str,
        actor_id: str
    ) -> Dict[str, Any]:
        current = await self.store.get_match(match_id)
        if current is None:
            raise ValueError(f"Match {match_id} not found")

        expected = ResolutionStatus(current["resolution_status"])
        # Rows of a run still in progress belong to that run until it is finalised
        if current.get("provisional"):
            raise ResolutionConflict(match_id, expected.value, current)
        transition_resolution(expected, target)

        query = text("""
            UPDATE public.recon_transaction_matches
            SET resolution_status = :target,
                resolution_method = :resolution_method,
                resolution_notes = :resolution_notes,
                resolved_by = :resolved_by,
                resolved_at = :resolved_at,
                updated_at = NOW()
            WHERE id = :id AND resolution_status = :expected AND provisional = false
            RETURNING id, run_id, resolution_status
        """)
        try:
            result = await self.db.execute(query, {
                "id": match_id,
                "target": target.value,
                "expected": expected.value,
                **values,
            })
            row = result.mappings().fetchone()
            await self.db.commit()
        except Exception as e:
            logger.error(f"Failed to update resolution for match {match_id}: {e}")
            await self.db.rollback()
            raise

        if row is None:
            latest = await self.store.get_match(match_id)
            if latest is None:
                raise ValueError(f"Match {match_id} not found")
            raise ResolutionConflict(match_id, expected.value, latest)

        await self.audit.append(
            event_type,
            actor={"type": "system" if actor_id == "system" else "user", "id": actor_id},
            entity={"type": "transaction_match", "id": match_id},
            payload={
                "from_status": expected.value,
                "to_status": target.value,
                "resolution_method": values.get("resolution_method"),
                "notes": values.get("resolution_notes"),
            },
            run_id=str(row["run_id"]),
        )

        logger.info(
            f"Match {match_id}: {expected.value} -> {target.value}",
            extra={"match_id": match_id, "actor": actor_id}
        )
        return await self.store.get_match(match_id)
