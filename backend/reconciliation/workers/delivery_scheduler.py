"""
Delivery Scheduler

Tracks one expected file-delivery window per supplier per day and raises
a missed_delivery alert when a window's SLA deadline passes without a file.

    window  = [local midnight of the day, expected_time + sla_hours]
    deliver = any run for the supplier with file_received_at in the window

Windows are planned explicitly from each supplier's delivery_schedule
({"expected_time": "06:00", "weekdays": [0, 1, 2, 3, 4]}; weekdays optional,
Monday is 0) in the supplier's timezone. A window alerts at most once.

Usage:
- Lifespan: DeliveryScheduler(AsyncSessionLocal).run_continuous(stop_event)
- Tests: scheduler.plan_windows(day); await scheduler.tick(now)
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Dict, List, Optional, Tuple
from zoneinfo import ZoneInfo

from config import settings
from reconciliation.alerting import AlertDispatcher, AlertingGate, AlertRequest, alerting_gate
from reconciliation.audit_trail import AuditTrailWriter, ReconciliationEventType
from reconciliation.supplier_registry import SupplierConfig, SupplierConfigRegistry, supplier_registry
from reconciliation.services.reconciliation_store import ReconciliationStore

logger = logging.getLogger(__name__)

SCHEDULER_ACTOR = {"type": "scheduler", "id": "delivery-scheduler"}


@dataclass
class DeliveryWindow:
    """One expected delivery for one supplier on one day."""
    supplier_code: str
    expected_at: datetime
    deadline: datetime
    window_start: datetime
    delivered: bool = False
    alerted: bool = False

    @property
    def key(self) -> Tuple[str, datetime]:
        return (self.supplier_code, self.expected_at)

    @property
    def is_settled(self) -> bool:
        return self.delivered or self.alerted


def _parse_expected_time(value: str) -> time:
    hours, minutes = value.split(":")[:2]
    return time(int(hours), int(minutes))


def window_for(config: SupplierConfig, day: date) -> Optional[DeliveryWindow]:
    """The delivery window for a supplier on a local calendar day, if any."""
    schedule = config.delivery_schedule or {}
    expected_time = schedule.get("expected_time")
    if not expected_time:
        return None
    weekdays = schedule.get("weekdays")
    if weekdays is not None and day.weekday() not in weekdays:
        return None

    tz = ZoneInfo(config.timezone or settings.RECON_DEFAULT_TIMEZONE)
    expected_at = datetime.combine(day, _parse_expected_time(expected_time), tzinfo=tz)
    return DeliveryWindow(
        supplier_code=config.supplier_code,
        expected_at=expected_at,
        deadline=expected_at + timedelta(hours=config.sla_hours),
        window_start=datetime.combine(day, time(0, 0), tzinfo=tz),
    )


class DeliveryScheduler:
    """
    Explicit delivery-window scheduler.

    State lives on the instance; stop it by setting the event passed to
    run_continuous().
    """

    def __init__(
        self,
        db_session_factory,
        registry: Optional[SupplierConfigRegistry] = None,
        gate: Optional[AlertingGate] = None,
        dispatcher: Optional[AlertDispatcher] = None,
        poll_seconds: Optional[int] = None
    ):
        self.db_session_factory = db_session_factory
        self.registry = registry or supplier_registry
        self.gate = gate or alerting_gate
        self.dispatcher = dispatcher or AlertDispatcher()
        self.poll_seconds = poll_seconds or settings.RECON_SCHEDULER_POLL_SECONDS
        self.windows: Dict[Tuple[str, datetime], DeliveryWindow] = {}
        self._planned_days: set = set()
        self._started_at: Optional[datetime] = None

    def plan_windows(self, day: date) -> List[DeliveryWindow]:
        """Add one window per active supplier with a delivery schedule for the day."""
        planned = []
        for config in self.registry.get_active_configs():
            window = window_for(config, day)
            if window is None or window.key in self.windows:
                continue
            if self._started_at and window.deadline < self._started_at:
                # Closed before this scheduler existed; not ours to judge
                continue
            self.windows[window.key] = window
            planned.append(window)
        self._planned_days.add(day)
        if planned:
            logger.info(
                f"Planned {len(planned)} delivery windows for {day.isoformat()}",
                extra={"suppliers": [w.supplier_code for w in planned]}
            )
        return planned

    def _ensure_planned(self, now: datetime):
        today = now.astimezone(timezone.utc).date()
        # A deadline can fall on the day after its window opened
        for day in (today - timedelta(days=1), today, today + timedelta(days=1)):
            if day not in self._planned_days:
                self.plan_windows(day)

    def _prune(self, now: datetime):
        horizon = now - timedelta(days=3)
        for key in [k for k, w in self.windows.items() if w.is_settled and w.deadline < horizon]:
            del self.windows[key]

    async def tick(self, now: Optional[datetime] = None) -> List[AlertRequest]:
        """
        Check open windows against received files.

        Returns:
            AlertRequests raised by this tick
        """
        now = now or datetime.now(timezone.utc)
        if self._started_at is None:
            self._started_at = now
        self._ensure_planned(now)

        open_windows = [
            w for w in self.windows.values()
            if not w.is_settled and w.window_start <= now
        ]
        if not open_windows:
            self._prune(now)
            return []

        raised: List[AlertRequest] = []
        async with self.db_session_factory() as db:
            store = ReconciliationStore(db)
            audit = AuditTrailWriter(db)

            for window in sorted(open_windows, key=lambda w: (w.deadline, w.supplier_code)):
                if await store.has_delivery(window.supplier_code, window.window_start, min(now, window.deadline)):
                    window.delivered = True
                    continue
                if now <= window.deadline:
                    continue

                config = self.registry.find_config(window.supplier_code)
                if config is None:
                    window.alerted = True
                    continue

                requests = self.gate.missed_delivery(config, window.expected_at, window.deadline)
                window.alerted = True
                for request in requests:
                    await self.dispatcher.send(request)
                await audit.append(
                    ReconciliationEventType.DELIVERY_MISSED,
                    actor=SCHEDULER_ACTOR,
                    entity={"type": "supplier", "id": window.supplier_code},
                    payload={
                        "expected_at": window.expected_at,
                        "deadline": window.deadline,
                        "alerts": len(requests),
                    },
                )
                logger.warning(
                    f"Missed delivery for {window.supplier_code}: expected {window.expected_at.isoformat()}",
                    extra={"supplier_code": window.supplier_code}
                )
                raised.extend(requests)

        self._prune(now)
        return raised

    async def run_continuous(self, stop_event: asyncio.Event):
        """Tick every poll interval until stop_event is set."""
        logger.info(f"Starting delivery scheduler (poll_interval={self.poll_seconds}s)")
        while not stop_event.is_set():
            try:
                await self.tick()
            except Exception as e:
                logger.error(f"Delivery scheduler tick failed: {e}")
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.poll_seconds)
            except asyncio.TimeoutError:
                pass
        logger.info("Delivery scheduler stopped")
