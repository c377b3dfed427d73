"""
Alerting Gate

Evaluates a finished (or failed) run against the supplier's thresholds and
produces AlertRequests, one per configured recipient channel.

Triggers:
- amount_variance      |amount variance| > critical threshold
- commission_variance  |commission variance| > critical threshold
- manual_review_ratio  manual review count / total transactions > configured ratio
- sla_breach           completed later than received + sla_hours
- run_failed           the run did not complete
- missed_delivery      raised by the delivery scheduler

Delivery is a separate collaborator (AlertDispatcher): fire-and-forget,
failures are logged and never retried here.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import httpx

from config import settings
from reconciliation.models import RunStatus, RunSummary, Severity
from reconciliation.supplier_registry import SupplierConfig

logger = logging.getLogger(__name__)


class AlertReason:
    AMOUNT_VARIANCE = "amount_variance"
    COMMISSION_VARIANCE = "commission_variance"
    MANUAL_REVIEW_RATIO = "manual_review_ratio"
    SLA_BREACH = "sla_breach"
    RUN_FAILED = "run_failed"
    MISSED_DELIVERY = "missed_delivery"


@dataclass
class AlertRequest:
    """One alert for one recipient channel."""
    channel: str
    recipients: List[str]
    severity: Severity
    summary: str
    supplier_code: str
    reasons: List[str] = field(default_factory=list)
    run_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "channel": self.channel,
            "recipients": list(self.recipients),
            "severity": self.severity.value,
            "summary": self.summary,
            "supplier_code": self.supplier_code,
            "reasons": list(self.reasons),
            "run_id": self.run_id,
            "details": self.details,
        }


def alert_severity(summary: RunSummary, threshold_cents: int) -> Severity:
    """
    Grade a run:
        failed, match rate < 95 or variance > 2x threshold -> critical
        match rate < 98 or variance > threshold            -> high
        match rate < 99                                    -> medium
        otherwise                                          -> low
    """
    if summary.status == RunStatus.FAILED:
        return Severity.CRITICAL
    rate = summary.match_rate
    variance = abs(summary.amount_variance_cents)
    if rate < 95 or variance > 2 * threshold_cents:
        return Severity.CRITICAL
    if rate < 98 or variance > threshold_cents:
        return Severity.HIGH
    if rate < 99:
        return Severity.MEDIUM
    return Severity.LOW


class AlertingGate:
    """Turns run outcomes into alert requests."""

    def evaluate(
        self,
        summary: RunSummary,
        config: SupplierConfig,
        now: Optional[datetime] = None
    ) -> List[AlertRequest]:
        """Evaluate(run) -> []AlertRequest; empty when nothing is breached."""
        threshold = config.critical_variance_threshold_cents
        reasons: List[str] = []

        if summary.status == RunStatus.FAILED:
            reasons.append(AlertReason.RUN_FAILED)
        else:
            if abs(summary.amount_variance_cents) > threshold:
                reasons.append(AlertReason.AMOUNT_VARIANCE)
            if config.has_commission and abs(summary.commission_variance_cents) > threshold:
                reasons.append(AlertReason.COMMISSION_VARIANCE)
            total = summary.total_transactions
            if total and summary.manual_review_required / total > config.manual_review_alert_ratio:
                reasons.append(AlertReason.MANUAL_REVIEW_RATIO)

        finished_at = summary.completed_at or now or datetime.now(timezone.utc)
        if finished_at > summary.file_received_at + timedelta(hours=config.sla_hours):
            reasons.append(AlertReason.SLA_BREACH)

        if not reasons:
            return []

        severity = alert_severity(summary, threshold)
        text_summary = self._describe(summary, config, reasons)
        details = summary.to_dict()
        if summary.failure_reason:
            details["failure_reason"] = summary.failure_reason

        return self._fan_out(config, severity, text_summary, reasons, summary.run_id, details)

    def missed_delivery(
        self,
        config: SupplierConfig,
        expected_at: datetime,
        deadline: datetime
    ) -> List[AlertRequest]:
        """Alerts for a delivery window that closed without a file."""
        text_summary = (
            f"{config.supplier_name} settlement file expected at {expected_at.isoformat()} "
            f"was not received by {deadline.isoformat()}"
        )
        return self._fan_out(
            config,
            Severity.HIGH,
            text_summary,
            [AlertReason.MISSED_DELIVERY],
            None,
            {"expected_at": expected_at.isoformat(), "deadline": deadline.isoformat()},
        )

    @staticmethod
    def _fan_out(config, severity, text_summary, reasons, run_id, details) -> List[AlertRequest]:
        return [
            AlertRequest(
                channel=recipient.channel,
                recipients=list(recipient.recipients),
                severity=severity,
                summary=text_summary,
                supplier_code=config.supplier_code,
                reasons=list(reasons),
                run_id=run_id,
                details=details,
            )
            for recipient in config.alert_recipients
        ]

    @staticmethod
    def _describe(summary: RunSummary, config: SupplierConfig, reasons: List[str]) -> str:
        if AlertReason.RUN_FAILED in reasons:
            return f"{config.supplier_name} reconciliation failed ({summary.failure_reason or 'unknown'})"
        return (
            f"{config.supplier_name} reconciliation: {summary.match_rate:.1f}% match rate, "
            f"variance {summary.amount_variance_cents / 100:.2f}, "
            f"{summary.manual_review_required} for manual review ({', '.join(reasons)})"
        )


class AlertDispatcher:
    """
    Send(AlertRequest) to the notification collaborator over HTTP.

    Fire-and-forget: the result is only logged.
    """

    def __init__(self, webhook_url: Optional[str] = None, timeout: Optional[float] = None):
        self.webhook_url = webhook_url if webhook_url is not None else settings.ALERT_WEBHOOK_URL
        self.timeout = timeout if timeout is not None else settings.ALERT_TIMEOUT_SECONDS

    async def send(self, request: AlertRequest) -> bool:
        """Returns True when the collaborator accepted the request."""
        if not self.webhook_url:
            logger.warning(
                f"No alert webhook configured; alert not delivered: {request.summary}",
                extra={"alert": request.to_dict()}
            )
            return False

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(self.webhook_url, json=request.to_dict())
        except httpx.TimeoutException:
            logger.error(f"Alert delivery timed out for {request.supplier_code}")
            return False
        except httpx.HTTPError as e:
            logger.error(f"Alert delivery failed for {request.supplier_code}: {e}")
            return False

        if 200 <= response.status_code < 300:
            logger.info(
                f"Alert sent to {request.channel} for {request.supplier_code}",
                extra={"severity": request.severity.value, "reasons": request.reasons}
            )
            return True

        logger.error(
            f"Alert delivery rejected: HTTP {response.status_code}: {response.text[:200]}"
        )
        return False


alerting_gate = AlertingGate()
