from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Callable

from loguru import logger
from sqlalchemy.orm import Session

from meridian.ai.types import HourlyAnalytics
from meridian.repository.analytics_repository import AnalyticsRepository
from meridian.utils.money import ZERO, truncate_hour

HISTORY_HOURS = 6


@dataclass
class _OpenHour:
    hour_start: datetime
    open: Decimal
    high: Decimal
    low: Decimal
    close: Decimal
    trade_count: int = 0
    failed_count: int = 0
    direction_changes: int = 0
    last_direction: int = 0
    slippages: list[Decimal] = field(default_factory=list)

    def observe(self, price: Decimal) -> None:
        direction = (price > self.close) - (price < self.close)
        if direction and self.last_direction and direction != self.last_direction:
            self.direction_changes += 1
        if direction:
            self.last_direction = direction
        self.high = max(self.high, price)
        self.low = min(self.low, price)
        self.close = price

    def freeze(self) -> HourlyAnalytics:
        avg_slippage = sum(self.slippages, ZERO) / len(self.slippages) if self.slippages else ZERO
        return HourlyAnalytics(
            hour_start=self.hour_start,
            open=self.open,
            high=self.high,
            low=self.low,
            close=self.close,
            trade_count=self.trade_count,
            direction_changes=self.direction_changes,
            avg_slippage_bps=avg_slippage,
            failed_count=self.failed_count,
        )


class HourlyAnalyticsTracker:
    """
    Folds the per-cycle price ticks and fills of one instance into hourly
    rows for the regime classifier. An hour is persisted when the first
    tick of the next hour arrives.
    """

    def __init__(
        self,
        instance_id: str,
        session_factory: Callable[[], Session] | None = None,
        history_hours: int = HISTORY_HOURS,
    ) -> None:
        self.instance_id = instance_id
        self.session_factory = session_factory
        self.history_hours = history_hours
        self._history: list[HourlyAnalytics] = []
        self._current: _OpenHour | None = None

    def load_history(self) -> list[HourlyAnalytics]:
        if self.session_factory is None:
            return self.history
        with self.session_factory() as session:
            self._history = AnalyticsRepository(session).recent_hours(self.instance_id, self.history_hours)
        logger.info(f"📈 Loaded {len(self._history)} analytics hours for {self.instance_id}")
        return self.history

    @property
    def history(self) -> list[HourlyAnalytics]:
        return list(self._history)

    def observe_price(self, now: datetime, price: Decimal) -> None:
        hour = truncate_hour(now)
        if self._current is not None and hour > self._current.hour_start:
            self._close_current()
        if self._current is None:
            self._current = _OpenHour(hour_start=hour, open=price, high=price, low=price, close=price)
            return
        self._current.observe(price)

    def record_fill(self, slippage_bps: Decimal | None = None) -> None:
        if self._current is None:
            return
        self._current.trade_count += 1
        if slippage_bps is not None:
            self._current.slippages.append(slippage_bps)

    def record_failure(self) -> None:
        if self._current is not None:
            self._current.failed_count += 1

    def flush(self) -> None:
        """Persist the open hour as it stands (used on shutdown)."""
        if self._current is not None:
            self._persist(self._current.freeze())

    def _close_current(self) -> None:
        closed = self._current.freeze()
        self._current = None
        self._history.append(closed)
        del self._history[:-self.history_hours]
        logger.debug(
            f"{self.instance_id} hour closed | {closed.hour_start.isoformat()} | range={closed.range_bps:.1f}bps "
            f"| flips={closed.direction_changes} | trades={closed.trade_count}"
        )
        self._persist(closed)

    def _persist(self, hour: HourlyAnalytics) -> None:
        if self.session_factory is None:
            return
        with self.session_factory() as session:
            AnalyticsRepository(session).upsert_hour(self.instance_id, hour)
