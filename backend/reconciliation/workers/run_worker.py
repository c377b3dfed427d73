"""
Reconciliation Worker Pool

A bounded pool of asyncio workers draining a queue of supplier files.
Each run is processed start-to-finish by one worker on its own session;
runs for different suppliers (or different files of one supplier) proceed
in parallel. Duplicate deliveries are serialised by the ingestion guard's
unique constraint, not by the pool.

Usage:
    pool = ReconciliationWorkerPool(AsyncSessionLocal, size=4)
    await pool.start()
    result = await pool.submit("MMART", "mm_20260101.csv", raw_bytes)
    await pool.stop()
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional

from config import settings
from reconciliation.services.run_orchestrator import RunOrchestrator, RunProcessingResult

logger = logging.getLogger(__name__)


@dataclass
class RunTask:
    """One queued supplier file."""
    supplier_code: str
    file_name: str
    raw_bytes: bytes
    received_at: Optional[datetime] = None
    created_by: str = "system"
    future: Optional[asyncio.Future] = field(default=None, repr=False)


class ReconciliationWorkerPool:
    """
    Queue-backed worker pool for reconciliation runs.
    """

    def __init__(
        self,
        db_session_factory,
        size: Optional[int] = None,
        orchestrator_factory: Optional[Callable] = None
    ):
        """
        Initialize the pool.

        Args:
            db_session_factory: SQLAlchemy async session factory
            size: Number of concurrent workers
            orchestrator_factory: callable(db) -> RunOrchestrator
        """
        self.db_session_factory = db_session_factory
        self.size = size or settings.RECON_WORKER_POOL_SIZE
        self.orchestrator_factory = orchestrator_factory or RunOrchestrator
        self._queue: asyncio.Queue = asyncio.Queue()
        self._workers: List[asyncio.Task] = []

    @property
    def is_running(self) -> bool:
        return bool(self._workers)

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def start(self):
        if self._workers:
            return
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"recon-worker-{i}")
            for i in range(self.size)
        ]
        logger.info(f"Started reconciliation worker pool (size={self.size})")

    async def stop(self):
        """Let queued runs finish, then stop the workers."""
        if not self._workers:
            return
        await self._queue.join()
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        logger.info("Reconciliation worker pool stopped")

    def submit(
        self,
        supplier_code: str,
        file_name: str,
        raw_bytes: bytes,
        received_at: Optional[datetime] = None,
        created_by: str = "system"
    ) -> asyncio.Future:
        """
        Queue a file for reconciliation.

        Returns:
            Future resolving to the RunProcessingResult, or raising what
            process_file raised (e.g. ConfigurationMissing)
        """
        if not self._workers:
            raise RuntimeError("Worker pool is not running")

        future = asyncio.get_running_loop().create_future()
        self._queue.put_nowait(RunTask(
            supplier_code=supplier_code,
            file_name=file_name,
            raw_bytes=raw_bytes,
            received_at=received_at,
            created_by=created_by,
            future=future,
        ))
        return future

    async def _worker(self, worker_id: int):
        while True:
            task = await self._queue.get()
            try:
                result = await self._process(task)
                if not task.future.done():
                    task.future.set_result(result)
            except asyncio.CancelledError:
                if not task.future.done():
                    task.future.cancel()
                raise
            except Exception as e:
                logger.error(f"Worker {worker_id} failed on {task.supplier_code}/{task.file_name}: {e}")
                if not task.future.done():
                    task.future.set_exception(e)
            finally:
                self._queue.task_done()

    async def _process(self, task: RunTask) -> RunProcessingResult:
        async with self.db_session_factory() as db:
            orchestrator = self.orchestrator_factory(db)
            return await orchestrator.process_file(
                task.supplier_code,
                task.file_name,
                task.raw_bytes,
                received_at=task.received_at,
                created_by=task.created_by,
            )
