from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session

from meridian.ai.types import HourlyAnalytics
from meridian.persistence.models import HourlyAnalyticsRow
from meridian.utils.money import as_utc


class AnalyticsRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def upsert_hour(self, instance_id: str, hour: HourlyAnalytics) -> HourlyAnalyticsRow:
        stmt = (
            select(HourlyAnalyticsRow)
            .where(
                HourlyAnalyticsRow.instance_id == instance_id,
                HourlyAnalyticsRow.hour_start == hour.hour_start,
            )
            .limit(1)
        )
        row = self.session.execute(stmt).scalars().first()
        if row is None:
            row = HourlyAnalyticsRow(instance_id=instance_id, hour_start=hour.hour_start)
            self.session.add(row)

        row.open = hour.open
        row.high = hour.high
        row.low = hour.low
        row.close = hour.close
        row.trade_count = hour.trade_count
        row.direction_changes = hour.direction_changes
        row.avg_slippage_bps = hour.avg_slippage_bps
        row.failed_count = hour.failed_count
        self.session.commit()
        return row

    def recent_hours(self, instance_id: str, limit: int = 6) -> list[HourlyAnalytics]:
        """Most recent closed hours, oldest first."""
        stmt = (
            select(HourlyAnalyticsRow)
            .where(HourlyAnalyticsRow.instance_id == instance_id)
            .order_by(HourlyAnalyticsRow.hour_start.desc())
            .limit(limit)
        )
        rows = list(self.session.execute(stmt).scalars())
        return [
            HourlyAnalytics(
                hour_start=as_utc(row.hour_start),
                open=row.open,
                high=row.high,
                low=row.low,
                close=row.close,
                trade_count=row.trade_count,
                direction_changes=row.direction_changes,
                avg_slippage_bps=row.avg_slippage_bps,
                failed_count=row.failed_count,
            )
            for row in reversed(rows)
        ]
