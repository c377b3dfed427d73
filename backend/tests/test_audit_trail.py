"""
Unit Tests for the Hash-Chained Audit Trail

Tests:
- Canonical JSON and event hashing
- Chain verification (edits, deletions, reordering, forged genesis)
- AuditTrailWriter append / verify against a mocked session

Run with: pytest tests/test_audit_trail.py -v
"""

import hashlib
import uuid
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from unittest.mock import MagicMock

import pytest

from reconciliation.exceptions import AuditChainBroken
from reconciliation.audit_trail import (
    GENESIS,
    AuditEvent,
    AuditTrailWriter,
    ReconciliationEventType,
    canonical_json,
    format_timestamp,
    hash_event,
    verify_chain,
)

T0 = datetime(2026, 3, 2, 8, 0, 0, tzinfo=timezone.utc)


def build_chain(count: int, run_id: str = None):
    """A valid chain of `count` events."""
    run_id = run_id or str(uuid.uuid4())
    events = []
    previous = None
    for i in range(count):
        event = AuditEvent(
            seq=i + 1,
            event_id=str(uuid.uuid4()),
            run_id=run_id,
            event_type=ReconciliationEventType.MATCHING_TIER_COMPLETED,
            event_timestamp=T0 + timedelta(seconds=i),
            actor_type="system",
            actor_id="reconciliation-engine",
            entity_type="run",
            entity_id=run_id,
            payload={"tier": "primary", "matches": i},
            previous_event_hash=previous,
        )
        event.event_hash = event.compute_hash()
        previous = event.event_hash
        events.append(event)
    return events


def _row(event: AuditEvent) -> dict:
    row = event.to_dict()
    row["event_timestamp"] = event.event_timestamp
    return row


class TestHashing:
    """Test canonical serialisation and hash material."""

    def test_canonical_json_sorts_keys_without_whitespace(self):
        assert canonical_json({"b": 1, "a": {"d": 2, "c": 3}}) == '{"a":{"c":3,"d":2},"b":1}'

    def test_canonical_json_handles_domain_values(self):
        class Colour(str, Enum):
            RED = "red"

        value = {"when": T0, "colour": Colour.RED, "tags": {"b", "a"}, "id": uuid.UUID(int=1)}
        decoded = canonical_json(value)

        assert '"when":"2026-03-02T08:00:00.000000Z"' in decoded
        assert '"colour":"red"' in decoded
        assert '"tags":["a","b"]' in decoded
        assert '"id":"00000000-0000-0000-0000-000000000001"' in decoded

    def test_format_timestamp_normalises_to_utc(self):
        plus_two = timezone(timedelta(hours=2))
        assert format_timestamp(datetime(2026, 3, 2, 10, 0, tzinfo=plus_two)) == "2026-03-02T08:00:00.000000Z"
        assert format_timestamp(datetime(2026, 3, 2, 8, 0)) == "2026-03-02T08:00:00.000000Z"

    def test_hash_material(self):
        envelope = {"event_type": "x", "payload": {}}
        expected = hashlib.sha256(
            f"e-1|2026-03-02T08:00:00.000000Z|{canonical_json(envelope)}|{GENESIS}".encode("utf-8")
        ).hexdigest()

        assert hash_event("e-1", T0, envelope, None) == expected
        assert hash_event("e-1", T0, envelope, "abc") != expected


class TestChainVerification:
    """Test tamper detection."""

    def test_valid_chain(self):
        events = build_chain(5)
        assert verify_chain(events) == 5
        assert events[0].previous_event_hash is None
        assert events[1].previous_event_hash == events[0].event_hash

    def test_empty_chain(self):
        assert verify_chain([]) == 0

    def test_edited_payload_is_detected(self):
        events = build_chain(4)
        events[2].payload = {"tier": "primary", "matches": 999}

        with pytest.raises(AuditChainBroken) as exc_info:
            verify_chain(events)
        assert exc_info.value.seq == 3
        assert exc_info.value.reason == "hash_mismatch"

    def test_deleted_event_is_detected(self):
        events = build_chain(4)
        del events[1]

        with pytest.raises(AuditChainBroken) as exc_info:
            verify_chain(events)
        assert exc_info.value.reason == "broken_link"

    def test_reordered_events_are_detected(self):
        events = build_chain(3)
        events[1], events[2] = events[2], events[1]

        with pytest.raises(AuditChainBroken) as exc_info:
            verify_chain(events)
        assert exc_info.value.reason == "broken_link"

    def test_repeated_seq_is_detected(self):
        events = build_chain(3)
        events[2].seq = 2

        with pytest.raises(AuditChainBroken) as exc_info:
            verify_chain(events)
        assert exc_info.value.reason == "out_of_order"

    def test_forged_genesis_is_detected(self):
        events = build_chain(3)

        with pytest.raises(AuditChainBroken) as exc_info:
            verify_chain(events[1:])
        assert exc_info.value.reason == "genesis_has_previous"

    def test_rehashed_edit_still_breaks_the_next_link(self):
        events = build_chain(3)
        forged = replace(events[1], payload={"tier": "forged"})
        forged.event_hash = forged.compute_hash()
        events[1] = forged

        with pytest.raises(AuditChainBroken) as exc_info:
            verify_chain(events)
        assert exc_info.value.seq == 3
        assert exc_info.value.reason == "broken_link"


class TestAuditTrailWriter:
    """Test appends and verification through the session."""

    @pytest.fixture
    def writer(self, mock_db):
        return AuditTrailWriter(mock_db)

    def _scalar(self, value):
        result = MagicMock()
        result.scalar.return_value = value
        return result

    @pytest.mark.asyncio
    async def test_append_links_to_previous_head(self, writer, mock_db):
        mock_db.execute.side_effect = [
            self._scalar(None),     # advisory lock
            self._scalar("f" * 64),  # current head
            self._scalar(42),       # RETURNING seq
        ]
        run_id = str(uuid.uuid4())

        event = await writer.append(
            ReconciliationEventType.FILE_RECEIVED,
            actor={"type": "system", "id": "reconciliation-engine"},
            entity={"type": "run", "id": run_id},
            payload={"file_received_at": T0, "file_size": 10},
            run_id=run_id,
        )

        lock_sql = str(mock_db.execute.call_args_list[0].args[0])
        assert "pg_advisory_xact_lock" in lock_sql
        assert event.previous_event_hash == "f" * 64
        assert event.seq == 42
        assert event.event_hash == event.compute_hash()
        # Payload is stored in its canonical form
        assert event.payload == {"file_received_at": "2026-03-02T08:00:00.000000Z", "file_size": 10}
        insert_params = mock_db.execute.call_args_list[2].args[1]
        assert insert_params["payload"] == canonical_json(event.payload)
        assert insert_params["event_hash"] == event.event_hash
        mock_db.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_first_event_is_genesis(self, writer, mock_db):
        mock_db.execute.side_effect = [self._scalar(None), self._scalar(None), self._scalar(1)]

        event = await writer.append(
            ReconciliationEventType.SUPPLIER_CONFIG_UPDATED,
            actor={"type": "user", "id": "ops-1"},
            entity={"type": "supplier_config", "id": "cfg-1"},
        )

        assert event.previous_event_hash is None
        assert verify_chain([event]) == 1

    @pytest.mark.asyncio
    async def test_append_without_commit_leaves_transaction_open(self, writer, mock_db):
        mock_db.execute.side_effect = [self._scalar(None), self._scalar(None), self._scalar(1)]

        await writer.append("reconciliation.test", actor={}, entity={"type": "run", "id": "r"}, commit=False)

        mock_db.commit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_append_failure_rolls_back(self, writer, mock_db):
        mock_db.execute.side_effect = [self._scalar(None), RuntimeError("connection lost")]

        with pytest.raises(RuntimeError):
            await writer.append("reconciliation.test", actor={}, entity={"type": "run", "id": "r"})

        mock_db.rollback.assert_awaited_once()
        mock_db.commit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_verify_walks_batches(self, writer, mock_db, make_result):
        events = build_chain(3)
        mock_db.execute.side_effect = [
            make_result([_row(e) for e in events[:2]]),
            make_result([_row(events[2])]),
            make_result([]),
        ]

        result = await writer.verify(batch_size=2)

        assert result == {
            "valid": True,
            "events_verified": 3,
            "head_hash": events[2].event_hash,
            "error": None,
        }
        assert mock_db.execute.call_args_list[1].args[1] == {"after": 2, "limit": 2}

    @pytest.mark.asyncio
    async def test_verify_reports_break(self, writer, mock_db, make_result):
        events = build_chain(3)
        tampered = _row(events[1])
        tampered["payload"] = '{"tier":"primary","matches":100}'
        mock_db.execute.side_effect = [
            make_result([_row(events[0]), tampered, _row(events[2])]),
            make_result([]),
        ]

        result = await writer.verify()

        assert result["valid"] is False
        assert result["events_verified"] == 1
        assert result["error"]["seq"] == 2
        assert result["error"]["reason"] == "hash_mismatch"

    @pytest.mark.asyncio
    async def test_get_events_decodes_rows(self, writer, mock_db, make_result):
        events = build_chain(2)
        rows = [_row(e) for e in events]
        rows[0]["payload"] = canonical_json(rows[0]["payload"])
        mock_db.execute.return_value = make_result(rows)

        loaded = await writer.get_events(events[0].run_id)

        assert [e.event_id for e in loaded] == [e.event_id for e in events]
        assert loaded[0].payload == events[0].payload
