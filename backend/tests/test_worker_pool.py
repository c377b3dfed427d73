"""
Unit Tests for the Reconciliation Worker Pool

Tests:
- Submitted files resolve to the orchestrator's result
- Each run gets its own session
- Runs for different suppliers proceed in parallel
- Orchestrator exceptions surface on the returned future

Run with: pytest tests/test_worker_pool.py -v
"""

import asyncio
from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, MagicMock

import pytest

from reconciliation.exceptions import ConfigurationMissing
from reconciliation.models import RunStatus
from reconciliation.services.run_orchestrator import RunProcessingResult
from reconciliation.workers.run_worker import ReconciliationWorkerPool


class SessionFactory:
    """Counts sessions handed out."""

    def __init__(self):
        self.opened = []

    @asynccontextmanager
    async def __call__(self):
        db = AsyncMock()
        self.opened.append(db)
        yield db


def _result(supplier_code: str) -> RunProcessingResult:
    return RunProcessingResult(run_id=f"run-{supplier_code}", supplier_code=supplier_code, status=RunStatus.COMPLETED)


class TestReconciliationWorkerPool:

    @pytest.mark.asyncio
    async def test_submit_requires_running_pool(self):
        pool = ReconciliationWorkerPool(SessionFactory(), size=1, orchestrator_factory=MagicMock())

        with pytest.raises(RuntimeError):
            pool.submit("MMART", "f.csv", b"data")

    @pytest.mark.asyncio
    async def test_submitted_file_resolves_to_result(self):
        sessions = SessionFactory()
        orchestrator = AsyncMock()
        orchestrator.process_file.return_value = _result("MMART")
        factory = MagicMock(return_value=orchestrator)
        pool = ReconciliationWorkerPool(sessions, size=2, orchestrator_factory=factory)

        await pool.start()
        try:
            result = await pool.submit("MMART", "f.csv", b"data", created_by="ops-1")
        finally:
            await pool.stop()

        assert result.run_id == "run-MMART"
        factory.assert_called_once_with(sessions.opened[0])
        orchestrator.process_file.assert_awaited_once_with(
            "MMART", "f.csv", b"data", received_at=None, created_by="ops-1"
        )
        assert pool.is_running is False

    @pytest.mark.asyncio
    async def test_runs_proceed_in_parallel_on_separate_sessions(self):
        sessions = SessionFactory()
        both_started = asyncio.Event()
        in_flight = []

        async def process_file(supplier_code, *args, **kwargs):
            in_flight.append(supplier_code)
            if len(in_flight) == 2:
                both_started.set()
            await asyncio.wait_for(both_started.wait(), timeout=1)
            return _result(supplier_code)

        def factory(db):
            orchestrator = MagicMock()
            orchestrator.process_file = process_file
            return orchestrator

        pool = ReconciliationWorkerPool(sessions, size=2, orchestrator_factory=factory)
        await pool.start()
        try:
            results = await asyncio.gather(
                pool.submit("MMART", "a.csv", b"a"),
                pool.submit("FLASH", "b.csv", b"b"),
            )
        finally:
            await pool.stop()

        assert {r.supplier_code for r in results} == {"MMART", "FLASH"}
        assert len(sessions.opened) == 2
        assert sessions.opened[0] is not sessions.opened[1]

    @pytest.mark.asyncio
    async def test_orchestrator_error_surfaces_on_future(self):
        orchestrator = AsyncMock()
        orchestrator.process_file.side_effect = ConfigurationMissing("NOPE")
        pool = ReconciliationWorkerPool(SessionFactory(), size=1, orchestrator_factory=MagicMock(return_value=orchestrator))

        await pool.start()
        try:
            future = pool.submit("NOPE", "f.csv", b"data")
            with pytest.raises(ConfigurationMissing):
                await future
            # The worker survives and keeps draining the queue
            orchestrator.process_file.side_effect = None
            orchestrator.process_file.return_value = _result("MMART")
            result = await pool.submit("MMART", "f.csv", b"data")
        finally:
            await pool.stop()

        assert result.status == RunStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_stop_drains_queue(self):
        orchestrator = AsyncMock()
        orchestrator.process_file.return_value = _result("MMART")
        pool = ReconciliationWorkerPool(SessionFactory(), size=1, orchestrator_factory=MagicMock(return_value=orchestrator))

        await pool.start()
        futures = [pool.submit("MMART", f"f{i}.csv", b"data") for i in range(3)]
        await pool.stop()

        assert all(f.done() and not f.cancelled() for f in futures)
        assert orchestrator.process_file.await_count == 3
