from __future__ import annotations

from decimal import Decimal
from typing import Sequence

from loguru import logger

from meridian.ai.types import (
    HourlyAnalytics,
    MarketRegime,
    RegimeClassification,
    RegimeSignal,
)
from meridian.utils.bot_config import StrategyConfig
from meridian.utils.money import BPS_PER_UNIT, ZERO

VOLATILE_SCORE = Decimal("0.5")
CHOP_SCORE = Decimal("0.5")
SLIPPAGE_INSTABILITY_BPS = Decimal("100")
FAILURE_BURST = 3


def _mean(values: Sequence[Decimal]) -> Decimal:
    if not values:
        return ZERO
    return sum(values, ZERO) / len(values)


def _score(signals: Sequence[RegimeSignal]) -> Decimal:
    total = sum((s.weight for s in signals), ZERO)
    if total == 0:
        return ZERO
    return sum((s.weight for s in signals if s.met), ZERO) / total


class RegimeClassifier:
    """
    Deterministic threshold classifier over a window of hourly analytics.

    VOLATILE wins when the range/slippage/failure signals score at least 0.5.
    A trend needs a net move of at least `trend_move_bps` across the window;
    everything else is CHOP. Fewer than `min_samples` hours gives UNKNOWN.
    """

    def __init__(
        self,
        *,
        min_samples: int = 3,
        volatile_range_bps: Decimal = Decimal("300"),
        chop_range_bps: Decimal = Decimal("120"),
        chop_min_reversals: int = 4,
        trend_move_bps: Decimal = Decimal("150"),
    ) -> None:
        self.min_samples = min_samples
        self.volatile_range_bps = volatile_range_bps
        self.chop_range_bps = chop_range_bps
        self.chop_min_reversals = chop_min_reversals
        self.trend_move_bps = trend_move_bps

    @classmethod
    def from_config(cls, config: StrategyConfig) -> "RegimeClassifier":
        return cls(
            min_samples=config.regime_min_samples,
            volatile_range_bps=config.volatile_range_bps,
            chop_range_bps=config.chop_range_bps,
            chop_min_reversals=config.chop_min_reversals,
            trend_move_bps=config.trend_move_bps,
        )

    def classify(self, hours: Sequence[HourlyAnalytics]) -> RegimeClassification:
        if len(hours) < self.min_samples:
            return RegimeClassification.unknown(samples=len(hours))

        hours = sorted(hours, key=lambda h: h.hour_start)
        avg_range = _mean([h.range_bps for h in hours])
        avg_slippage = _mean([h.avg_slippage_bps for h in hours])
        avg_reversals = _mean([Decimal(h.direction_changes) for h in hours])
        failures = sum(h.failed_count for h in hours)

        first_open = hours[0].open
        net_move = ZERO
        if first_open > 0:
            net_move = (hours[-1].close - first_open) / first_open * BPS_PER_UNIT

        # =========================
        # VOLATILE
        # =========================
        volatile_signals = (
            RegimeSignal("range", avg_range, self.volatile_range_bps, Decimal("0.4"),
                         avg_range > self.volatile_range_bps),
            RegimeSignal("slippage", avg_slippage, SLIPPAGE_INSTABILITY_BPS, Decimal("0.3"),
                         avg_slippage > SLIPPAGE_INSTABILITY_BPS),
            RegimeSignal("failures", Decimal(failures), Decimal(FAILURE_BURST), Decimal("0.3"),
                         failures > FAILURE_BURST),
        )
        volatile_score = _score(volatile_signals)
        if volatile_score >= VOLATILE_SCORE:
            return self._result(MarketRegime.VOLATILE, volatile_score, volatile_signals, len(hours))

        # =========================
        # TREND
        # =========================
        abs_move = abs(net_move)
        if abs_move >= self.trend_move_bps:
            trend_signals = (
                RegimeSignal("net_move", abs_move, self.trend_move_bps, Decimal("0.5"), True),
                RegimeSignal("few_reversals", avg_reversals, Decimal(self.chop_min_reversals),
                             Decimal("0.3"), avg_reversals < self.chop_min_reversals),
                RegimeSignal("wide_range", avg_range, self.chop_range_bps, Decimal("0.2"),
                             avg_range >= self.chop_range_bps),
            )
            regime = MarketRegime.TRENDING_UP if net_move > 0 else MarketRegime.TRENDING_DOWN
            return self._result(regime, _score(trend_signals), trend_signals, len(hours))

        # =========================
        # CHOP
        # =========================
        chop_signals = (
            RegimeSignal("tight_range", avg_range, self.chop_range_bps, Decimal("0.4"),
                         avg_range < self.chop_range_bps),
            RegimeSignal("reversals", avg_reversals, Decimal(self.chop_min_reversals), Decimal("0.4"),
                         avg_reversals >= self.chop_min_reversals),
            RegimeSignal("flat", abs_move, self.trend_move_bps, Decimal("0.2"), True),
        )
        return self._result(MarketRegime.CHOP, _score(chop_signals), chop_signals, len(hours))

    def _result(self, regime, confidence, signals, samples) -> RegimeClassification:
        result = RegimeClassification(
            regime=regime,
            confidence=confidence,
            signals=tuple(signals),
            samples=samples,
        )
        logger.debug(f"Regime classified | {result.describe()}")
        return result
