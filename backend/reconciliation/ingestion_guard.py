"""
Ingestion Guard

Idempotent run creation. The SHA-256 of the raw file bytes is computed
before parsing, and the run row is created under the
UNIQUE (supplier_id, file_hash) constraint in the same statement that
checks for it. Two concurrent deliveries of the same file race on the
constraint; the loser resolves to AlreadyProcessed and never produces a
second set of matches.
"""

import hashlib
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Union

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from reconciliation.models import RunStatus
from reconciliation.supplier_registry import SupplierConfig

logger = logging.getLogger(__name__)


def compute_file_hash(raw_bytes: bytes) -> str:
    """SHA-256 hex digest of the raw file bytes."""
    return hashlib.sha256(raw_bytes).hexdigest()


@dataclass(frozen=True)
class Proceed:
    """A new run was created; the caller owns it."""
    run_id: str
    file_hash: str


@dataclass(frozen=True)
class AlreadyProcessed:
    """The same bytes were already ingested for this supplier."""
    run_id: str
    status: RunStatus
    file_hash: str


ClaimResult = Union[Proceed, AlreadyProcessed]


class IngestionGuard:
    """Creates runs exactly once per (supplier, file content)."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def claim_run(
        self,
        config: SupplierConfig,
        file_name: str,
        raw_bytes: bytes,
        received_at: datetime,
        created_by: str = "system"
    ) -> ClaimResult:
        """
        Create a pending run for this file, or report the run that already exists.

        Returns:
            Proceed(run_id) for a new run, AlreadyProcessed(run_id, status) otherwise
        """
        file_hash = compute_file_hash(raw_bytes)
        run_id = str(uuid.uuid4())

        try:
            result = await self.db.execute(
                text("""
                    INSERT INTO public.recon_runs (
                        id, supplier_id, supplier_code, file_name, file_hash, file_size,
                        file_received_at, status, created_by
                    ) VALUES (
                        :id, :supplier_id, :supplier_code, :file_name, :file_hash, :file_size,
                        :file_received_at, :status, :created_by
                    )
                    ON CONFLICT (supplier_id, file_hash) DO NOTHING
                    RETURNING id
                """),
                {
                    "id": run_id,
                    "supplier_id": config.id,
                    "supplier_code": config.supplier_code,
                    "file_name": file_name,
                    "file_hash": file_hash,
                    "file_size": len(raw_bytes),
                    "file_received_at": received_at,
                    "status": RunStatus.PENDING.value,
                    "created_by": created_by,
                }
            )
            created = result.scalar()
            await self.db.commit()
        except IntegrityError:
            # Lost a race that ON CONFLICT did not absorb
            await self.db.rollback()
            created = None
        except Exception as e:
            logger.error(f"Failed to create run for {config.supplier_code}: {e}")
            await self.db.rollback()
            raise

        if created is not None:
            logger.info(
                f"Run {run_id} created for {config.supplier_code}",
                extra={"run_id": run_id, "supplier_code": config.supplier_code, "file_hash": file_hash}
            )
            return Proceed(run_id=str(created), file_hash=file_hash)

        existing = await self.find_existing(config, file_hash)
        if existing is None:
            # The conflicting row must be visible once the other writer committed
            raise RuntimeError(
                f"Run for {config.supplier_code}/{file_hash} conflicted but could not be read back"
            )
        logger.info(
            f"Duplicate file for {config.supplier_code}; existing run {existing.run_id} ({existing.status.value})",
            extra={"run_id": existing.run_id, "supplier_code": config.supplier_code, "file_hash": file_hash}
        )
        return existing

    async def find_existing(self, config: SupplierConfig, file_hash: str) -> Optional[AlreadyProcessed]:
        result = await self.db.execute(
            text("""
                SELECT id, status FROM public.recon_runs
                WHERE supplier_id = :supplier_id AND file_hash = :file_hash
            """),
            {"supplier_id": config.id, "file_hash": file_hash}
        )
        row = result.mappings().fetchone()
        if row is None:
            return None
        return AlreadyProcessed(
            run_id=str(row["id"]),
            status=RunStatus(row["status"]),
            file_hash=file_hash,
        )
