"""
Unit Tests for the Ingestion Guard

Tests idempotent run creation keyed on (supplier, SHA-256 of file bytes):
- New files create a pending run
- Byte-identical re-deliveries resolve to the existing run
- Concurrent deliveries of the same file create exactly one run

Run with: pytest tests/test_ingestion_guard.py -v
"""

import asyncio
import uuid
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import IntegrityError

from reconciliation.models import RunStatus
from reconciliation.ingestion_guard import (
    AlreadyProcessed,
    IngestionGuard,
    Proceed,
    compute_file_hash,
)

from conftest import mobilemart_file

RECEIVED_AT = datetime(2026, 3, 2, 6, 5, tzinfo=timezone.utc)


class FakeRunTable:
    """
    Minimal stand-in for recon_runs honouring UNIQUE (supplier_id, file_hash).

    Yields to the event loop on every statement so concurrent claims interleave.
    """

    def __init__(self):
        self.rows = {}

    async def execute(self, query, params=None):
        await asyncio.sleep(0)
        sql = str(query)
        result = MagicMock()
        key = (params["supplier_id"], params["file_hash"])
        if sql.lstrip().startswith("INSERT"):
            if key in self.rows:
                result.scalar.return_value = None
            else:
                self.rows[key] = {"id": params["id"], "status": params["status"]}
                result.scalar.return_value = params["id"]
        else:
            result.mappings.return_value.fetchone.return_value = self.rows.get(key)
        return result

    async def commit(self):
        await asyncio.sleep(0)

    async def rollback(self):
        pass


class TestComputeFileHash:

    def test_sha256_of_raw_bytes(self):
        assert compute_file_hash(b"") == "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"

    def test_single_byte_changes_hash(self):
        assert compute_file_hash(b"abc") != compute_file_hash(b"abd")


class TestIngestionGuard:
    """Test claim_run against mocked and fake sessions."""

    @pytest.fixture
    def config(self, make_config):
        return make_config("MMART")

    @pytest.mark.asyncio
    async def test_new_file_proceeds(self, mock_db, config):
        created_id = str(uuid.uuid4())
        result = MagicMock()
        result.scalar.return_value = created_id
        mock_db.execute.return_value = result

        claim = await IngestionGuard(mock_db).claim_run(config, "mm.csv", b"payload", RECEIVED_AT)

        assert claim == Proceed(run_id=created_id, file_hash=compute_file_hash(b"payload"))
        params = mock_db.execute.call_args.args[1]
        assert params["supplier_id"] == config.id
        assert params["status"] == "pending"
        assert params["file_size"] == 7
        assert params["file_received_at"] == RECEIVED_AT
        mock_db.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_duplicate_resolves_to_existing_run(self, mock_db, config, make_result):
        existing_id = str(uuid.uuid4())
        conflict = MagicMock()
        conflict.scalar.return_value = None
        mock_db.execute.side_effect = [
            conflict,
            make_result([{"id": existing_id, "status": "completed"}]),
        ]

        claim = await IngestionGuard(mock_db).claim_run(config, "mm.csv", b"payload", RECEIVED_AT)

        assert isinstance(claim, AlreadyProcessed)
        assert claim.run_id == existing_id
        assert claim.status == RunStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_integrity_error_is_treated_as_duplicate(self, mock_db, config, make_result):
        existing_id = str(uuid.uuid4())
        mock_db.execute.side_effect = [
            IntegrityError("INSERT INTO recon_runs", {}, Exception("duplicate key")),
            make_result([{"id": existing_id, "status": "processing"}]),
        ]

        claim = await IngestionGuard(mock_db).claim_run(config, "mm.csv", b"payload", RECEIVED_AT)

        assert claim.run_id == existing_id
        assert claim.status == RunStatus.PROCESSING
        mock_db.rollback.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_other_errors_propagate(self, mock_db, config):
        mock_db.execute.side_effect = RuntimeError("connection reset")

        with pytest.raises(RuntimeError):
            await IngestionGuard(mock_db).claim_run(config, "mm.csv", b"payload", RECEIVED_AT)
        mock_db.rollback.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_same_hundred_record_file_twice_creates_one_run(self, config):
        rows = [
            (f"MM-{i:04d}", "2026-03-02 10:00:00", "10.00", "0.50", "success", f"REF{i}")
            for i in range(100)
        ]
        raw = mobilemart_file(rows)
        table = FakeRunTable()
        guard = IngestionGuard(table)

        first = await guard.claim_run(config, "recon_20260302.csv", raw, RECEIVED_AT)
        second = await guard.claim_run(config, "recon_20260302_resend.csv", raw, RECEIVED_AT)

        assert isinstance(first, Proceed)
        assert isinstance(second, AlreadyProcessed)
        assert second.run_id == first.run_id
        assert len(table.rows) == 1

    @pytest.mark.asyncio
    async def test_concurrent_deliveries_create_one_run(self, config):
        table = FakeRunTable()

        claims = await asyncio.gather(*(
            IngestionGuard(table).claim_run(config, "mm.csv", b"same bytes", RECEIVED_AT)
            for _ in range(5)
        ))

        proceeds = [c for c in claims if isinstance(c, Proceed)]
        duplicates = [c for c in claims if isinstance(c, AlreadyProcessed)]
        assert len(proceeds) == 1
        assert len(duplicates) == 4
        assert {d.run_id for d in duplicates} == {proceeds[0].run_id}

    @pytest.mark.asyncio
    async def test_different_suppliers_same_bytes_are_independent(self, make_config):
        table = FakeRunTable()

        first = await IngestionGuard(table).claim_run(make_config("MMART"), "a.csv", b"same", RECEIVED_AT)
        second = await IngestionGuard(table).claim_run(make_config("FLASH"), "a.csv", b"same", RECEIVED_AT)

        assert isinstance(first, Proceed)
        assert isinstance(second, Proceed)
        assert first.run_id != second.run_id
