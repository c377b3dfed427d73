"""
Unit Tests for the Delivery Scheduler

Tests:
- Window planning from delivery_schedule in the supplier's timezone
- Missed-delivery alert once the SLA deadline passes without a file
- At most one alert per window
- Delivered windows never alert

Run with: pytest tests/test_delivery_scheduler.py -v
"""

from contextlib import asynccontextmanager
from datetime import date, datetime, timezone
from unittest.mock import AsyncMock, patch

import pytest

from reconciliation.alerting import AlertReason
from reconciliation.audit_trail import ReconciliationEventType
from reconciliation.supplier_registry import SupplierConfigRegistry
from reconciliation.workers.delivery_scheduler import DeliveryScheduler, window_for

DAY = date(2026, 3, 2)
# MobileMart expects its file at 06:00 SAST, i.e. 04:00 UTC
EXPECTED_UTC = datetime(2026, 3, 2, 4, 0, tzinfo=timezone.utc)
DEADLINE_UTC = datetime(2026, 3, 3, 4, 0, tzinfo=timezone.utc)


def session_factory(db):
    @asynccontextmanager
    async def factory():
        yield db
    return factory


class TestWindowFor:

    def test_window_in_supplier_timezone(self, make_config):
        window = window_for(make_config("MMART"), DAY)

        assert window.expected_at == EXPECTED_UTC
        assert window.deadline == DEADLINE_UTC
        assert window.window_start == datetime(2026, 3, 1, 22, 0, tzinfo=timezone.utc)

    def test_no_schedule_means_no_window(self, make_config):
        assert window_for(make_config("MMART", delivery_schedule={}), DAY) is None

    def test_weekday_filter(self, make_config):
        config = make_config("MMART", delivery_schedule={"expected_time": "06:00", "weekdays": [5, 6]})

        # 2026-03-02 is a Monday
        assert window_for(config, DAY) is None
        assert window_for(config, date(2026, 3, 7)) is not None


class TestDeliveryScheduler:
    """Test tick() against a mocked store."""

    @pytest.fixture
    def dispatcher(self):
        dispatcher = AsyncMock()
        dispatcher.send.return_value = True
        return dispatcher

    @pytest.fixture
    def scheduler(self, make_config, mock_db, dispatcher):
        registry = SupplierConfigRegistry()
        registry.register(make_config("MMART"))
        scheduler = DeliveryScheduler(
            session_factory(mock_db),
            registry=registry,
            dispatcher=dispatcher,
            poll_seconds=1,
        )
        scheduler.plan_windows(DAY)
        return scheduler

    @pytest.fixture
    def store(self):
        store = AsyncMock()
        store.has_delivery.return_value = False
        with patch("reconciliation.workers.delivery_scheduler.ReconciliationStore", return_value=store):
            yield store

    @pytest.fixture
    def audit(self):
        audit = AsyncMock()
        with patch("reconciliation.workers.delivery_scheduler.AuditTrailWriter", return_value=audit):
            yield audit

    @pytest.mark.asyncio
    async def test_missed_delivery_alerts_once(self, scheduler, store, audit, dispatcher):
        now = datetime(2026, 3, 3, 5, 0, tzinfo=timezone.utc)

        first = await scheduler.tick(now)
        second = await scheduler.tick(now)

        assert len(first) == 1
        assert first[0].reasons == [AlertReason.MISSED_DELIVERY]
        assert first[0].supplier_code == "MMART"
        assert second == []
        dispatcher.send.assert_awaited_once()
        audit.append.assert_awaited_once()
        assert audit.append.call_args.args[0] == ReconciliationEventType.DELIVERY_MISSED

    @pytest.mark.asyncio
    async def test_delivery_is_checked_up_to_the_deadline(self, scheduler, store, audit):
        now = datetime(2026, 3, 3, 5, 0, tzinfo=timezone.utc)

        await scheduler.tick(now)

        checked = [call.args for call in store.has_delivery.call_args_list]
        assert ("MMART", datetime(2026, 3, 1, 22, 0, tzinfo=timezone.utc), DEADLINE_UTC) in checked

    @pytest.mark.asyncio
    async def test_delivered_window_never_alerts(self, scheduler, store, audit, dispatcher):
        store.has_delivery.return_value = True

        raised = await scheduler.tick(datetime(2026, 3, 3, 5, 0, tzinfo=timezone.utc))

        assert raised == []
        dispatcher.send.assert_not_awaited()
        window = scheduler.windows[("MMART", EXPECTED_UTC)]
        assert window.delivered is True

    @pytest.mark.asyncio
    async def test_open_window_before_deadline_does_not_alert(self, scheduler, store, audit, dispatcher):
        raised = await scheduler.tick(datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc))

        assert raised == []
        dispatcher.send.assert_not_awaited()
        window = scheduler.windows[("MMART", EXPECTED_UTC)]
        assert window.alerted is False
        assert window.delivered is False

    @pytest.mark.asyncio
    async def test_windows_closed_before_start_are_not_planned(self, make_config, mock_db, dispatcher, store, audit):
        registry = SupplierConfigRegistry()
        registry.register(make_config("MMART"))
        scheduler = DeliveryScheduler(session_factory(mock_db), registry=registry, dispatcher=dispatcher)

        # First tick two days after DAY's deadline: DAY is never judged
        raised = await scheduler.tick(datetime(2026, 3, 5, 5, 0, tzinfo=timezone.utc))
        planned_late = scheduler.plan_windows(DAY)

        assert planned_late == []
        assert ("MMART", EXPECTED_UTC) not in scheduler.windows
        assert all(r.details["expected_at"] != EXPECTED_UTC.isoformat() for r in raised)
