from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
import enum


class MarketRegime(str, enum.Enum):
    TRENDING_UP = "TRENDING_UP"
    TRENDING_DOWN = "TRENDING_DOWN"
    CHOP = "CHOP"
    VOLATILE = "VOLATILE"
    UNKNOWN = "UNKNOWN"

    @property
    def is_trending(self) -> bool:
        return self in (MarketRegime.TRENDING_UP, MarketRegime.TRENDING_DOWN)


@dataclass(frozen=True)
class HourlyAnalytics:
    """One closed hour of observed prices and bot activity."""
    hour_start: datetime
    open: Decimal
    high: Decimal
    low: Decimal
    close: Decimal
    trade_count: int = 0
    direction_changes: int = 0
    avg_slippage_bps: Decimal = Decimal("0")
    failed_count: int = 0

    @property
    def range_bps(self) -> Decimal:
        if self.open <= 0:
            return Decimal("0")
        return (self.high - self.low) / self.open * Decimal("10000")


@dataclass(frozen=True)
class RegimeSignal:
    name: str
    value: Decimal
    threshold: Decimal
    weight: Decimal
    met: bool


@dataclass(frozen=True)
class RegimeClassification:
    regime: MarketRegime
    confidence: Decimal
    signals: tuple[RegimeSignal, ...] = field(default_factory=tuple)
    samples: int = 0

    @classmethod
    def unknown(cls, samples: int = 0) -> "RegimeClassification":
        return cls(regime=MarketRegime.UNKNOWN, confidence=Decimal("0"), samples=samples)

    def describe(self) -> str:
        met = ",".join(s.name for s in self.signals if s.met) or "-"
        return f"{self.regime.value} ({self.confidence:.2f}) signals={met} samples={self.samples}"
