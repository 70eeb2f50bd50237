from __future__ import annotations

import enum
from dataclasses import dataclass, field
from decimal import Decimal

from loguru import logger

from meridian.ai.types import MarketRegime, RegimeClassification
from meridian.utils.bot_config import StrategyConfig
from meridian.utils.money import HUNDRED, ZERO
from meridian.utils.trading_mode import ChaseRegimeGate, RebuyRegimeGate


class ReserveBucket(str, enum.Enum):
    NORMAL = "normal"
    RESCUE = "rescue"
    CHASE = "chase"


@dataclass
class BucketState:
    balance: Decimal
    regime_gated: bool


@dataclass
class ReserveState:
    total: Decimal
    buckets: dict[ReserveBucket, BucketState] = field(default_factory=dict)
    active: ReserveBucket = ReserveBucket.NORMAL
    chase_entry_price: Decimal | None = None
    deployments: int = 0

    def balance(self, bucket: ReserveBucket) -> Decimal:
        return self.buckets[bucket].balance

    def is_consistent(self) -> bool:
        return sum((b.balance for b in self.buckets.values()), ZERO) == self.total


@dataclass(frozen=True)
class ReserveDecision:
    active: ReserveBucket
    changed: bool
    allow_buy: bool
    reason: str


def drawdown_pct(avg_entry_price: Decimal | None, price: Decimal) -> Decimal:
    """Unrealized drop of the current price below the position's average entry, in %."""
    if not avg_entry_price or avg_entry_price <= 0 or price >= avg_entry_price:
        return ZERO
    return (avg_entry_price - price) / avg_entry_price * HUNDRED


class ReserveResetManager:
    """
    Three-bucket capital split for one instance.

    normal  day-to-day trading, capped at its own balance
    rescue  activated by drawdown; only risk-reducing trades while active,
            released only after drawdown recovers past the hysteresis band
    chase   activated by a confirmed non-choppy regime with positive recent
            PnL and a breakout above the last sell; lifts the exposure cap
            to `exposure_cap_pct` of equity

    At most one bucket is active, priority rescue > chase > normal.
    """

    def __init__(self, config: StrategyConfig) -> None:
        self.config = config

    # =========================
    # Allocation
    # =========================
    def initialize(self, total: Decimal) -> ReserveState:
        rescue = total * self.config.rescue_reserve_pct / HUNDRED
        chase = total * self.config.chase_reserve_pct / HUNDRED
        normal = total - rescue - chase
        state = ReserveState(
            total=total,
            buckets={
                ReserveBucket.NORMAL: BucketState(
                    balance=normal,
                    regime_gated=self.config.rebuy_regime_gate != RebuyRegimeGate.NONE,
                ),
                ReserveBucket.RESCUE: BucketState(balance=rescue, regime_gated=False),
                ReserveBucket.CHASE: BucketState(balance=chase, regime_gated=True),
            },
        )
        logger.debug(f"Reserve initialized | normal={normal:.2f} | rescue={rescue:.2f} | chase={chase:.2f}")
        return state

    # =========================
    # Transitions
    # =========================
    def evaluate(
        self,
        state: ReserveState,
        *,
        drawdown: Decimal,
        regime: RegimeClassification,
        recent_pnl: Decimal,
        price: Decimal,
        last_sell_price: Decimal | None,
    ) -> ReserveDecision:
        cfg = self.config
        current = state.active

        rescue_on = drawdown >= cfg.rescue_drawdown_pct
        if current == ReserveBucket.RESCUE:
            # Hysteresis: stay in rescue until drawdown is clearly below the trigger.
            rescue_on = drawdown >= cfg.rescue_drawdown_pct - cfg.rescue_hysteresis_pct

        if rescue_on:
            return self._decision(
                state,
                ReserveBucket.RESCUE,
                allow_buy=False,
                reason=f"drawdown {drawdown:.2f}% (trigger {cfg.rescue_drawdown_pct}%, "
                       f"release below {cfg.rescue_drawdown_pct - cfg.rescue_hysteresis_pct}%)",
            )

        if current == ReserveBucket.CHASE and state.chase_entry_price is not None:
            return self._decision(state, ReserveBucket.CHASE, allow_buy=True, reason="chase position open")

        gate_ok = self.chase_regime_passes(regime)
        breakout = (
            last_sell_price is not None
            and last_sell_price > 0
            and price >= last_sell_price * (1 + cfg.chase_trigger_pct / HUNDRED)
        )
        within_limit = state.deployments < cfg.max_reserve_deployments_per_cycle
        if gate_ok and recent_pnl > 0 and breakout and within_limit and state.balance(ReserveBucket.CHASE) > 0:
            return self._decision(
                state,
                ReserveBucket.CHASE,
                allow_buy=True,
                reason=f"chase: {regime.regime.value} ({regime.confidence:.2f}), recent pnl {recent_pnl:.2f}, "
                       f"price {price:.6f} >= {cfg.chase_trigger_pct}% above last sell",
            )

        return self._decision(state, ReserveBucket.NORMAL, allow_buy=True, reason="normal trading")

    def chase_regime_passes(self, regime: RegimeClassification) -> bool:
        if regime.confidence < self.config.chase_min_confidence:
            return False
        if self.config.chase_regime_gate == ChaseRegimeGate.TREND_UP_ONLY:
            return regime.regime == MarketRegime.TRENDING_UP
        return regime.regime in (MarketRegime.TRENDING_UP, MarketRegime.TRENDING_DOWN, MarketRegime.VOLATILE)

    def _decision(self, state: ReserveState, target: ReserveBucket, *, allow_buy: bool, reason: str) -> ReserveDecision:
        return ReserveDecision(active=target, changed=target != state.active, allow_buy=allow_buy, reason=reason)

    def apply(self, state: ReserveState, decision: ReserveDecision) -> ReserveState:
        if decision.changed:
            logger.info(f"🪣 Reserve bucket {state.active.value} -> {decision.active.value} | {decision.reason}")
            if decision.active != ReserveBucket.CHASE:
                state.chase_entry_price = None
            state.active = decision.active
        return state

    # =========================
    # Exposure
    # =========================
    def exposure_cap(self, state: ReserveState, equity: Decimal) -> Decimal:
        """Maximum base exposure (in quote units) the active bucket allows."""
        if state.active == ReserveBucket.RESCUE:
            return ZERO
        if state.active == ReserveBucket.CHASE:
            return equity * self.config.exposure_cap_pct / HUNDRED
        return state.balance(ReserveBucket.NORMAL)

    def record_chase_entry(self, state: ReserveState, price: Decimal) -> None:
        state.chase_entry_price = price
        state.deployments += 1

    def chase_exit_due(self, state: ReserveState, price: Decimal) -> bool:
        if state.active != ReserveBucket.CHASE or state.chase_entry_price is None:
            return False
        return price >= state.chase_entry_price * (1 + self.config.chase_exit_target_pct / HUNDRED)

    def record_chase_exit(self, state: ReserveState) -> None:
        state.chase_entry_price = None
        state.active = ReserveBucket.NORMAL
        logger.info("🪣 Chase position closed, back to normal bucket")

    def reset_cycle(self, state: ReserveState) -> None:
        state.deployments = 0
