"""
Platform ledger query

Read-only access to the platform's own value-added-service transactions.
The default implementation reads a database view inside a REPEATABLE READ,
READ ONLY transaction, so one run's matching pass sees a stable snapshot.
"""

import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import List, Protocol, Tuple, Union
from zoneinfo import ZoneInfo

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from reconciliation.models import PlatformRecord, SupplierRecord
from reconciliation.adapters.schema import normalize_status
from reconciliation.supplier_registry import SupplierConfig

logger = logging.getLogger(__name__)


class PlatformLedger(Protocol):
    async def fetch_platform_records(
        self,
        config: SupplierConfig,
        window_start: datetime,
        window_end: datetime
    ) -> List[PlatformRecord]:
        ...


def settlement_window(
    records: List[SupplierRecord],
    config: SupplierConfig,
    settlement_date: Union[date, str, None] = None
) -> Tuple[datetime, datetime]:
    """
    The platform-side window for a file.

    Covers every local calendar day the file settles, in the supplier's
    timezone: the declared settlement date when the file has one, otherwise
    the days its records fall on. Widened by the timestamp tolerance plus the
    timing grace window so edge-of-day records still find their counterpart.
    """
    tz = ZoneInfo(config.timezone or settings.RECON_DEFAULT_TIMEZONE)
    margin = timedelta(
        seconds=config.timestamp_tolerance_seconds + config.resolution_rules.timing_grace_seconds
    )
    stamps = [r.timestamp for r in records]

    if isinstance(settlement_date, str):
        settlement_date = date.fromisoformat(settlement_date)
    if settlement_date is not None:
        first_day = last_day = settlement_date
    else:
        days = [stamp.astimezone(tz).date() for stamp in stamps]
        first_day, last_day = min(days), max(days)

    start = datetime.combine(first_day, time.min, tzinfo=tz).astimezone(timezone.utc)
    end = datetime.combine(last_day + timedelta(days=1), time.min, tzinfo=tz).astimezone(timezone.utc)
    # Records dated outside the declared day are still fetched against
    if stamps:
        start = min(start, min(stamps))
        end = max(end, max(stamps))
    return start - margin, end + margin


class SqlPlatformLedger:
    """
    Reads platform transactions for one supplier from the ledger view.

    The view is expected to expose: transaction_id, reference, supplier_code,
    amount_cents, commission_cents, status, transaction_timestamp,
    product_code, product_name.
    """

    def __init__(self, db: AsyncSession, view_name: str = None):
        self.db = db
        self.view_name = view_name or settings.PLATFORM_LEDGER_VIEW

    async def fetch_platform_records(
        self,
        config: SupplierConfig,
        window_start: datetime,
        window_end: datetime
    ) -> List[PlatformRecord]:
        """FetchPlatformRecords(supplier, windowStart, windowEnd), stable for the whole read."""
        # The snapshot must be set before the first query of the transaction
        await self.db.commit()
        await self.db.execute(text("SET TRANSACTION ISOLATION LEVEL REPEATABLE READ, READ ONLY"))
        try:
            result = await self.db.execute(
                text(f"""
                    SELECT transaction_id, reference, amount_cents, commission_cents, status,
                           transaction_timestamp, product_code, product_name
                    FROM {self.view_name}
                    WHERE supplier_code = :supplier_code
                      AND transaction_timestamp >= :window_start
                      AND transaction_timestamp <= :window_end
                    ORDER BY transaction_timestamp ASC, transaction_id ASC
                """),
                {
                    "supplier_code": config.supplier_code,
                    "window_start": window_start,
                    "window_end": window_end,
                }
            )
            rows = result.mappings().all()
        finally:
            await self.db.rollback()

        records = [
            PlatformRecord(
                ordinal=i,
                transaction_id=str(row["transaction_id"]),
                reference=row.get("reference"),
                amount_cents=int(row["amount_cents"]),
                commission_cents=int(row["commission_cents"]) if row.get("commission_cents") is not None else None,
                status=normalize_status(row.get("status")),
                timestamp=row["transaction_timestamp"],
                product_code=row.get("product_code"),
                product_name=row.get("product_name"),
            )
            for i, row in enumerate(rows)
        ]
        logger.info(
            f"Fetched {len(records)} platform records for {config.supplier_code}",
            extra={
                "supplier_code": config.supplier_code,
                "window_start": window_start.isoformat(),
                "window_end": window_end.isoformat(),
            }
        )
        return records
