from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Sequence

from loguru import logger

from meridian.ai.regime_classifier import RegimeClassifier
from meridian.ai.types import HourlyAnalytics, MarketRegime, RegimeClassification
from meridian.errors import (
    CircuitBreakerError,
    MeridianError,
    PriceDeviationError,
    QuoteExpiredError,
    SwapError,
)
from meridian.execution.capital_allocator import CapitalAllocator, TradePlan, WalletGuardrailResult
from meridian.execution.capital_tier import CapitalTierEvaluator, TierDecision
from meridian.execution.compounding import CompoundingCalculator
from meridian.execution.cost_calculator import ExecutionCostCalculator, ExecutionCostResult
from meridian.execution.reserve_reset import ReserveBucket, ReserveResetManager, drawdown_pct
from meridian.execution.runner import RunnerDecision, RunnerManager
from meridian.execution.scale_out import ExitKind, PositionStatus, ScaleOutDecision, ScaleOutManager
from meridian.execution.split_executor import ExecutionStatus, SplitExecutionResult
from meridian.providers.venue import BalanceInfo, Quote
from meridian.service.bot_state import StrategyState
from meridian.strategy.actions import Buy, Hold, Pause, Sell, StrategyAction, TradeSize, action_name
from meridian.strategy.pnl import CostBasis, PnLCalculator
from meridian.utils.bot_config import StrategyConfig
from meridian.utils.money import HUNDRED, ZERO, as_utc, deviation_bps
from meridian.utils.order_id import generate_client_order_id
from meridian.utils.trading_mode import (
    CycleMode,
    RebuyRegimeGate,
    Side,
    StartingMode,
    TradeSizeMode,
)

# Action codes that are not error codes
COOLDOWN = "COOLDOWN"
HOURLY_LIMIT = "HOURLY_LIMIT"
DAILY_LIMIT = "DAILY_LIMIT"
MAX_DRAWDOWN = "MAX_DRAWDOWN"
DAILY_LOSS_LIMIT = "DAILY_LOSS_LIMIT"
MAX_FAILURES = "MAX_CONSECUTIVE_FAILURES"
INSUFFICIENT_GAS = "INSUFFICIENT_GAS"
REGIME_GATED = "REGIME_GATED"
RESCUE_ACTIVE = "RESCUE_ACTIVE"
REBUY_LIMIT = "REBUY_LIMIT"
EXPOSURE_CAP = "EXPOSURE_CAP"
BELOW_MINIMUM = "BELOW_MINIMUM"
INSUFFICIENT_BASE = "INSUFFICIENT_BASE"
WALLET_GUARDRAIL = "WALLET_GUARDRAIL"
NO_SIGNAL = "NO_SIGNAL"
POSITION_OPEN = "POSITION_OPEN"
REFERENCE_SET = "REFERENCE_SET"

DIP_BUY = "DIP_BUY"
REBUY = "REBUY"
CHASE_BUY = "CHASE_BUY"
CHASE_EXIT = "CHASE_EXIT"
BOOTSTRAP_BUY = "BOOTSTRAP_BUY"
BOOTSTRAP_SELL = "BOOTSTRAP_SELL"


@dataclass(frozen=True)
class CycleContext:
    """Everything observed for one decision cycle."""
    now: datetime
    balances: BalanceInfo
    price: Decimal
    secondary_price: Decimal | None = None
    quote: Quote | None = None
    analytics: Sequence[HourlyAnalytics] = ()
    available_liquidity: Decimal | None = None

    @property
    def equity(self) -> Decimal:
        return self.balances.quote + self.balances.base * self.price


@dataclass(frozen=True)
class CycleDecision:
    action: StrategyAction
    regime: RegimeClassification
    client_order_id: str | None = None
    tier: TierDecision | None = None
    cost: ExecutionCostResult | None = None
    exit: ScaleOutDecision | None = None
    plan: TradePlan | None = None
    guardrail: WalletGuardrailResult | None = None
    runner: RunnerDecision | None = None

    @property
    def name(self) -> str:
        return action_name(self.action)

    @property
    def chunks(self) -> int:
        return self.tier.mode.chunks if self.tier else 1


class StrategyEngine:
    """
    Produces exactly one StrategyAction per cycle for one instance.

    Guards run first (circuit breakers, data quality, pacing), then exits,
    then entries. Entries pass through compounding, exposure caps, capital
    tiers, the cost gate and finally the shared wallet guardrail, which is
    the only step that reserves anything outside this instance.
    """

    def __init__(
        self,
        config: StrategyConfig,
        *,
        allocator: CapitalAllocator | None = None,
        classifier: RegimeClassifier | None = None,
    ) -> None:
        self.config = config
        self.allocator = allocator or CapitalAllocator()
        self.classifier = classifier or RegimeClassifier.from_config(config)
        self.cost_calculator = ExecutionCostCalculator.from_config(config)
        self.tier_evaluator = CapitalTierEvaluator.from_config(config)
        self.scale_out = ScaleOutManager(config)
        self.reserve = ReserveResetManager(config)
        self.runner = RunnerManager(config, self.cost_calculator)

    # =========================
    # Decision
    # =========================
    def evaluate(self, state: StrategyState, ctx: CycleContext) -> CycleDecision:
        regime = RegimeClassification.unknown()
        try:
            state.roll_counters(ctx.now)
            state.last_price = ctx.price
            self._check_circuit_breakers(state, ctx)

            gas = self._gas_guard(ctx)
            if gas is not None:
                return self._finish(state, CycleDecision(action=gas, regime=regime))

            self._check_data_quality(ctx)

            regime = self.classifier.classify(ctx.analytics)
            self._update_reserve(state, ctx, regime)
            self.scale_out.observe_price(state.position, ctx.price)
            self.runner.observe_price(state.runner, ctx.price)

            pacing = self._pacing(state, ctx)
            if pacing is not None:
                return self._finish(state, CycleDecision(action=pacing, regime=regime))

            impact = self._price_impact(ctx)
            if impact is not None:
                return self._finish(state, CycleDecision(action=impact, regime=regime))

            decision = self._runner_exit(state, ctx, regime)
            if decision is None:
                decision = self._sell_path(state, ctx, regime)
            if decision is None:
                decision = self._buy_path(state, ctx, regime)
            return self._finish(state, decision)

        except MeridianError as e:
            return self._finish(state, CycleDecision(action=self._action_from_error(e), regime=regime))

    def _finish(self, state: StrategyState, decision: CycleDecision) -> CycleDecision:
        action = decision.action
        state.last_action = decision.name
        if isinstance(action, (Buy, Sell)):
            logger.info(f"🎯 {state.instance_id} {decision.name} {action.size} | {action.code} | {action.reason}")
        elif isinstance(action, Pause):
            logger.warning(f"⏸️ {state.instance_id} PAUSE | {action.code} | {action.reason}")
        else:
            logger.debug(f"{state.instance_id} HOLD | {action.code} | {action.reason}")
        return decision

    @staticmethod
    def _action_from_error(error: MeridianError) -> StrategyAction:
        if error.retryable:
            return Hold(reason=error.message, code=error.code)
        return Pause(reason=error.message, code=error.code)

    # =========================
    # Guards
    # =========================
    def _latch(self, state: StrategyState, code: str, reason: str) -> None:
        state.paused = True
        state.pause_reason = f"{code}: {reason}"
        logger.error(f"🚨 Circuit breaker tripped for {state.instance_id} | {state.pause_reason}")
        raise CircuitBreakerError(state.pause_reason, details={"trigger": code})

    def _check_circuit_breakers(self, state: StrategyState, ctx: CycleContext) -> None:
        cfg = self.config
        if state.paused:
            raise CircuitBreakerError(state.pause_reason or "paused until manual reset")

        if state.consecutive_failures >= cfg.max_consecutive_failures:
            self._latch(
                state,
                MAX_FAILURES,
                f"{state.consecutive_failures} consecutive failures (limit {cfg.max_consecutive_failures})",
            )

        equity = ctx.equity
        if state.peak_equity is None or equity > state.peak_equity:
            state.peak_equity = equity
        if cfg.max_drawdown_pct is not None and state.peak_equity > 0:
            dd = (state.peak_equity - equity) / state.peak_equity * HUNDRED
            if dd >= cfg.max_drawdown_pct:
                self._latch(state, MAX_DRAWDOWN, f"drawdown {dd:.2f}% >= {cfg.max_drawdown_pct}%")

        if cfg.daily_loss_limit is not None and -state.daily_realized_pnl >= cfg.daily_loss_limit:
            self._latch(
                state,
                DAILY_LOSS_LIMIT,
                f"daily realized loss {-state.daily_realized_pnl:.2f} >= {cfg.daily_loss_limit}",
            )

    def _gas_guard(self, ctx: CycleContext) -> StrategyAction | None:
        minimum = self.config.min_native_for_gas
        if minimum > 0 and ctx.balances.native_for_gas < minimum:
            return Pause(
                reason=f"native gas balance {ctx.balances.native_for_gas} below {minimum}",
                code=INSUFFICIENT_GAS,
            )
        return None

    def _check_data_quality(self, ctx: CycleContext) -> None:
        if ctx.secondary_price is not None:
            dev = deviation_bps(ctx.price, ctx.secondary_price)
            if dev > self.config.max_price_deviation_bps:
                raise PriceDeviationError(
                    f"secondary price deviates {dev:.1f} bps (limit {self.config.max_price_deviation_bps})",
                    details={"primary": str(ctx.price), "secondary": str(ctx.secondary_price)},
                )
        if ctx.quote is not None and ctx.quote.is_expired(ctx.now):
            raise QuoteExpiredError(f"quote expired at {as_utc(ctx.quote.expires_at).isoformat()}")

    def _pacing(self, state: StrategyState, ctx: CycleContext) -> StrategyAction | None:
        cfg = self.config
        if state.last_trade_at is not None:
            elapsed = (as_utc(ctx.now) - as_utc(state.last_trade_at)).total_seconds()
            if elapsed < cfg.cooldown_seconds:
                return Hold(reason=f"cooldown {elapsed:.0f}s / {cfg.cooldown_seconds}s", code=COOLDOWN)
        if state.trades_this_hour >= cfg.max_trades_per_hour:
            return Hold(reason=f"{state.trades_this_hour} trades this hour (limit {cfg.max_trades_per_hour})", code=HOURLY_LIMIT)
        if cfg.max_trades_per_day is not None and state.trades_today >= cfg.max_trades_per_day:
            return Hold(reason=f"{state.trades_today} trades today (limit {cfg.max_trades_per_day})", code=DAILY_LIMIT)
        return None

    def _price_impact(self, ctx: CycleContext) -> StrategyAction | None:
        limit = self.config.max_price_impact_bps
        quote = ctx.quote
        if limit is None or quote is None or quote.price_impact_bps is None:
            return None
        if quote.price_impact_bps > limit:
            return Hold(
                reason=f"price impact {quote.price_impact_bps:.1f} bps exceeds {limit} bps",
                code="PRICE_IMPACT_EXCEEDED",
            )
        return None

    def _update_reserve(self, state: StrategyState, ctx: CycleContext, regime: RegimeClassification) -> None:
        if not self.config.enable_reserve_reset:
            return
        if state.reserve is None:
            state.reserve = self.reserve.initialize(ctx.equity)
        decision = self.reserve.evaluate(
            state.reserve,
            drawdown=drawdown_pct(state.avg_entry_price, ctx.price),
            regime=regime,
            recent_pnl=state.recent_pnl,
            price=ctx.price,
            last_sell_price=state.last_sell_price,
        )
        self.reserve.apply(state.reserve, decision)

    # =========================
    # Exits
    # =========================
    def _sell_path(self, state: StrategyState, ctx: CycleContext, regime: RegimeClassification) -> CycleDecision | None:
        cfg = self.config
        price = ctx.price
        runner_qty = state.runner.qty if state.runner is not None and state.runner.active else ZERO
        sellable = max(ctx.balances.base - cfg.min_base_reserve - runner_qty, ZERO)

        if state.reserve is not None and self.reserve.chase_exit_due(state.reserve, price):
            qty = min(state.position_qty, sellable)
            if qty <= 0:
                return CycleDecision(action=Hold(reason="chase exit due but no sellable base", code=INSUFFICIENT_BASE), regime=regime)
            return self._sell(
                state, ctx, regime, qty,
                reason=f"chase target {cfg.chase_exit_target_pct}% above entry {state.reserve.chase_entry_price:.6f} reached",
                code=CHASE_EXIT,
                risk_reducing=False,
            )

        exit_decision = self.scale_out.evaluate(state.position, price)
        if exit_decision is not None:
            exit_decision = self.runner.withhold(exit_decision, state.position, state.runner)
            qty = min(exit_decision.sell_qty, sellable)
            if qty <= 0:
                return CycleDecision(
                    action=Hold(reason=f"exit due but base {ctx.balances.base} is at reserve", code=INSUFFICIENT_BASE),
                    regime=regime,
                    exit=exit_decision,
                )
            return self._sell(
                state, ctx, regime, qty,
                reason=exit_decision.reason,
                code=exit_decision.kind.value,
                risk_reducing=exit_decision.is_risk_reducing_only,
                exit_decision=exit_decision,
            )

        if self._needs_bootstrap(state) and cfg.starting_mode == StartingMode.START_BY_SELLING and sellable > 0:
            if cfg.trade_size_mode == TradeSizeMode.FIXED_BASE:
                qty = cfg.trade_size
            elif cfg.trade_size_mode == TradeSizeMode.PERCENT_BALANCE:
                qty = sellable * cfg.trade_size / HUNDRED
            else:
                qty = cfg.trade_size / price
            qty = min(qty, sellable)
            if qty * price < cfg.min_trade_notional:
                return CycleDecision(
                    action=Hold(reason=f"bootstrap sell {qty * price:.2f} below minimum {cfg.min_trade_notional}", code=BELOW_MINIMUM),
                    regime=regime,
                )
            return self._sell(
                state, ctx, regime, qty,
                reason=f"starting by selling {qty} at {price:.6f}",
                code=BOOTSTRAP_SELL,
                risk_reducing=True,
            )
        return None

    def _runner_exit(self, state: StrategyState, ctx: CycleContext, regime: RegimeClassification) -> CycleDecision | None:
        """The runner leg exits on its own schedule; when it has nothing to do the core leg decides."""
        runner = state.runner
        if runner is None or not runner.active:
            return None
        decision = self.runner.evaluate(runner, ctx.price, self._slippage_estimate(ctx))
        if not decision.sells:
            logger.debug(f"{state.instance_id} runner {decision.action.value} | {decision.reason}")
            return None

        qty = min(decision.sell_qty, max(ctx.balances.base - self.config.min_base_reserve, ZERO))
        if qty <= 0:
            logger.warning(f"⚠️ {state.instance_id} runner exit due but base {ctx.balances.base} is at reserve")
            return None
        return CycleDecision(
            action=Sell(size=TradeSize.of_base(qty), reason=decision.reason, code=decision.action.value),
            regime=regime,
            client_order_id=generate_client_order_id(state.instance_id, Side.SELL, ctx.now, state.next_nonce()),
            tier=self.tier_evaluator.evaluate(qty * ctx.price, ctx.available_liquidity),
            cost=decision.cost,
            runner=decision,
        )

    def _sell(
        self,
        state: StrategyState,
        ctx: CycleContext,
        regime: RegimeClassification,
        qty: Decimal,
        *,
        reason: str,
        code: str,
        risk_reducing: bool,
        exit_decision: ScaleOutDecision | None = None,
    ) -> CycleDecision:
        cost = None
        entry = state.avg_entry_price
        if not risk_reducing and entry is not None:
            cost = self.cost_calculator.evaluate_exit(
                price=ctx.price,
                amount=qty,
                avg_entry_price=entry,
                slippage_bps=self._slippage_estimate(ctx),
            )
            if not cost.should_execute:
                return CycleDecision(
                    action=Hold(reason=f"cost-gated: {cost.rejection_reason}", code=cost.rejection_code),
                    regime=regime,
                    cost=cost,
                    exit=exit_decision,
                )

        notional = qty * ctx.price
        tier = self.tier_evaluator.evaluate(notional, ctx.available_liquidity)
        client_order_id = generate_client_order_id(state.instance_id, Side.SELL, ctx.now, state.next_nonce())
        return CycleDecision(
            action=Sell(size=TradeSize.of_base(qty), reason=reason, code=code, risk_reducing=risk_reducing),
            regime=regime,
            client_order_id=client_order_id,
            tier=tier,
            cost=cost,
            exit=exit_decision,
        )

    # =========================
    # Entries
    # =========================
    def _needs_bootstrap(self, state: StrategyState) -> bool:
        return not state.bootstrapped and state.last_buy_price is None and state.last_sell_price is None

    def _buy_path(self, state: StrategyState, ctx: CycleContext, regime: RegimeClassification) -> CycleDecision:
        cfg = self.config
        price = ctx.price
        reserve = state.reserve

        def hold(reason: str, code: str, **extra) -> CycleDecision:
            return CycleDecision(action=Hold(reason=reason, code=code), regime=regime, **extra)

        if reserve is not None and reserve.active == ReserveBucket.RESCUE:
            return hold("rescue reserve active: only risk-reducing trades allowed", RESCUE_ACTIVE)

        if cfg.pause_in_volatile_regime and regime.regime == MarketRegime.VOLATILE:
            return hold(f"volatile regime {regime.describe()}", REGIME_GATED)

        chase = reserve is not None and reserve.active == ReserveBucket.CHASE and reserve.chase_entry_price is None
        holding = state.position is not None and state.position.status.holding

        if chase:
            code, reason = CHASE_BUY, f"chase reserve deploy at {price:.6f} ({regime.describe()})"
        elif holding:
            return hold(f"position {state.position.status.value}, waiting for exit", POSITION_OPEN)
        elif self._needs_bootstrap(state):
            if cfg.starting_mode == StartingMode.START_BY_BUYING:
                code, reason = BOOTSTRAP_BUY, f"starting by buying at {price:.6f}"
            else:
                state.last_sell_price = price
                state.bootstrapped = True
                return hold(f"reference price set to {price:.6f}", REFERENCE_SET)
        elif self._rolling() and state.last_sell_price is not None and state.last_buy_price is not None:
            trigger = state.last_sell_price * (1 - cfg.rebuy_dip_pct / HUNDRED)
            if price > trigger:
                return hold(f"price {price:.6f} above rebuy trigger {trigger:.6f}", NO_SIGNAL)
            if state.rebuy_count >= cfg.max_rebuy_count:
                return hold(f"rebuy limit reached ({state.rebuy_count}/{cfg.max_rebuy_count})", REBUY_LIMIT)
            if cfg.rebuy_regime_gate == RebuyRegimeGate.CHOP_ONLY and regime.regime != MarketRegime.CHOP:
                return hold(f"rebuy needs CHOP regime, got {regime.describe()}", REGIME_GATED)
            code, reason = REBUY, f"rebuy at {price:.6f} <= {trigger:.6f} ({cfg.rebuy_dip_pct}% below last sell)"
        else:
            reference = state.last_sell_price or state.last_buy_price
            trigger = reference * (1 - cfg.buy_dip_pct / HUNDRED)
            if price > trigger:
                return hold(f"price {price:.6f} above buy trigger {trigger:.6f}", NO_SIGNAL)
            code, reason = DIP_BUY, f"dip buy at {price:.6f} <= {trigger:.6f} ({cfg.buy_dip_pct}% below {reference:.6f})"

        # Sizing
        if chase:
            amount = min(reserve.balance(ReserveBucket.CHASE), max(ctx.balances.quote - cfg.min_quote_reserve, ZERO))
            if amount < cfg.min_trade_notional:
                return hold(f"chase size {amount:.2f} below minimum {cfg.min_trade_notional}", BELOW_MINIMUM)
        else:
            sizing = CompoundingCalculator.from_config(cfg, base_size=self._base_size(ctx)).next_size(
                ctx.balances.quote, state.total_realized_pnl
            )
            if sizing.below_minimum:
                return hold(sizing.reason, BELOW_MINIMUM)
            amount = sizing.amount

        # Exposure
        cap = self._exposure_cap(state, ctx)
        if cap is not None:
            room = cap - state.position_qty * price
            if room < cfg.min_trade_notional:
                return hold(f"exposure cap {cap:.2f} leaves {max(room, ZERO):.2f}", EXPOSURE_CAP)
            if amount > room:
                logger.debug(f"Buy clipped by exposure cap | {amount:.2f} -> {room:.2f}")
                amount = room

        tier = self.tier_evaluator.evaluate(amount, ctx.available_liquidity)

        cost = self.cost_calculator.evaluate_entry(
            price=price,
            amount=amount / price,
            target_rise_pct=cfg.sell_rise_pct,
            slippage_bps=self._slippage_estimate(ctx),
        )
        if not cost.should_execute:
            return hold(f"cost-gated: {cost.rejection_reason}", cost.rejection_code, cost=cost, tier=tier)

        client_order_id = generate_client_order_id(state.instance_id, Side.BUY, ctx.now, state.next_nonce())
        plan = TradePlan(
            plan_id=client_order_id,
            instance_id=state.instance_id,
            wallet_id=cfg.wallet_id,
            side=Side.BUY,
            notional=amount,
        )
        guardrail = self.allocator.try_commit(plan, ctx.balances.quote)
        if not guardrail.allowed:
            return hold(f"wallet guardrail: {guardrail.reason}", WALLET_GUARDRAIL, cost=cost, tier=tier, guardrail=guardrail)

        return CycleDecision(
            action=Buy(size=TradeSize.of_quote(amount), reason=reason, code=code),
            regime=regime,
            client_order_id=client_order_id,
            tier=tier,
            cost=cost,
            plan=plan,
            guardrail=guardrail,
        )

    def _rolling(self) -> bool:
        return self.config.cycle_mode == CycleMode.ROLLING_REBUY or self.config.allow_rebuy

    def _base_size(self, ctx: CycleContext) -> Decimal:
        cfg = self.config
        if cfg.trade_size_mode == TradeSizeMode.FIXED_BASE:
            return cfg.trade_size * ctx.price
        if cfg.trade_size_mode == TradeSizeMode.PERCENT_BALANCE:
            available = max(ctx.balances.quote - cfg.min_quote_reserve, ZERO)
            return available * cfg.trade_size / HUNDRED
        return cfg.initial_trade_size or cfg.trade_size

    def _exposure_cap(self, state: StrategyState, ctx: CycleContext) -> Decimal | None:
        if state.reserve is not None:
            return self.reserve.exposure_cap(state.reserve, ctx.equity)
        if self.config.exposure_cap_pct < HUNDRED:
            return ctx.equity * self.config.exposure_cap_pct / HUNDRED
        return None

    def _slippage_estimate(self, ctx: CycleContext) -> Decimal | None:
        if ctx.quote is not None and ctx.quote.price_impact_bps is not None:
            return ctx.quote.price_impact_bps
        return None

    # =========================
    # Outcomes
    # =========================
    def record_fill(
        self,
        state: StrategyState,
        decision: CycleDecision,
        result: SplitExecutionResult,
        now: datetime,
    ) -> None:
        """Fold an execution result into the state. Nothing filled counts as a failure."""
        self.release(decision)
        if result.status == ExecutionStatus.FAILED:
            self.record_failure(state, decision, result.error, now)
            return

        state.consecutive_failures = 0
        state.last_trade_at = now
        state.trades_this_hour += 1
        state.trades_today += 1
        state.bootstrapped = True
        price = result.average_price
        action = decision.action

        if result.side == Side.BUY:
            state.basis = PnLCalculator.apply_buy(state.basis, result.total_base, result.total_quote, result.total_fees)
            state.last_buy_price = price
            # Base left over from a rolling primary sell joins the new ladder at average cost.
            state.position = self.scale_out.open_position(state.avg_entry_price, state.position_qty, now)
            if action.code == REBUY:
                state.rebuy_count += 1
            if action.code == CHASE_BUY and state.reserve is not None:
                self.reserve.record_chase_entry(state.reserve, price)
        elif decision.runner is not None and state.runner is not None:
            pnl = PnLCalculator.apply_sell(state.runner.basis, result.total_base, result.total_quote, result.total_fees)
            state.runner = self.runner.apply_sell(state.runner, decision.runner, pnl.basis)
            state.record_realized(pnl.realized)
            logger.info(f"🏃 {state.instance_id} runner realized {pnl.realized:.4f} | total={state.total_realized_pnl:.4f}")
        else:
            pnl = PnLCalculator.apply_sell(state.basis, result.total_base, result.total_quote, result.total_fees)
            state.basis = pnl.basis
            state.record_realized(pnl.realized)
            state.last_sell_price = price
            if decision.exit is not None and state.position is not None:
                self.scale_out.apply_sell_fill(state.position, decision.exit, result.total_base, price)
            if action.code == CHASE_EXIT and state.reserve is not None:
                self.reserve.record_chase_exit(state.reserve)
                if state.position is not None:
                    state.position.status = PositionStatus.CLOSED
            closed = state.position is not None and state.position.status == PositionStatus.CLOSED
            if closed and state.reserve is not None:
                self.reserve.reset_cycle(state.reserve)
            if closed and decision.exit is not None and decision.exit.kind in (ExitKind.FULL_EXIT, ExitKind.COMPLETION):
                self._split_off_runner(state, price, now)
            logger.info(
                f"💰 {state.instance_id} realized {pnl.realized:.4f} | day={state.daily_realized_pnl:.4f} "
                f"| total={state.total_realized_pnl:.4f}"
            )

        if result.status == ExecutionStatus.PARTIAL:
            logger.warning(f"⚠️ {state.instance_id} partial execution | {result.describe()}")

    def _split_off_runner(self, state: StrategyState, price: Decimal, now: datetime) -> None:
        if state.runner is not None and state.runner.active:
            return
        runner = self.runner.create(state.basis, price, now)
        if runner is not None:
            state.runner = runner
            state.basis = CostBasis()

    def record_failure(
        self,
        state: StrategyState,
        decision: CycleDecision | None,
        error: SwapError | None,
        now: datetime,
    ) -> None:
        if decision is not None:
            self.release(decision)
        state.consecutive_failures += 1
        code = error.code if error else "UNKNOWN_ERROR"
        label = decision.name if decision is not None else "CYCLE"
        logger.warning(
            f"❌ {state.instance_id} failure | {label} | code={code} "
            f"| failures={state.consecutive_failures}/{self.config.max_consecutive_failures}"
        )

    def release(self, decision: CycleDecision) -> None:
        if decision.plan is not None:
            self.allocator.release(decision.plan.wallet_id, decision.plan.plan_id)

    @staticmethod
    def reset(state: StrategyState) -> StrategyState:
        """Manual reset: clears the latched pause and the counters that tripped it."""
        logger.info(f"🔄 Manual reset for {state.instance_id} | was={state.pause_reason}")
        state.paused = False
        state.pause_reason = None
        state.consecutive_failures = 0
        state.peak_equity = None
        state.daily_realized_pnl = ZERO
        return state
