from datetime import timedelta
from decimal import Decimal

from meridian.ai.types import HourlyAnalytics
from meridian.errors import InsufficientBalanceError, RpcError
from meridian.execution.capital_allocator import CapitalAllocator
from meridian.execution.cost_calculator import COST_GATED
from meridian.execution.runner import RunnerAction, RunnerStatus
from meridian.execution.scale_out import ExitKind, PositionStatus
from meridian.execution.split_executor import SplitExecutor
from meridian.providers.venue import BalanceInfo, QuoteRequest
from meridian.service.bot_state import StrategyState
from meridian.strategy import engine as codes
from meridian.strategy.actions import Buy, Hold, Pause, Sell
from meridian.strategy.engine import CycleContext, StrategyEngine
from meridian.strategy.pnl import CostBasis, PnLCalculator
from meridian.utils.trading_mode import CycleMode, RebuyRegimeGate, Side, StartingMode

from conftest import START, build_config


def context(price="100", *, base="0", quote="1000", native="1", now=START, **kwargs):
    return CycleContext(
        now=now,
        balances=BalanceInfo(base=Decimal(base), quote=Decimal(quote), native_for_gas=Decimal(native)),
        price=Decimal(price),
        **kwargs,
    )


def chop_hours():
    return tuple(
        HourlyAnalytics(
            hour_start=START - timedelta(hours=4 - i),
            open=Decimal("100"),
            high=Decimal("100.5"),
            low=Decimal("99.6"),
            close=Decimal("100.1"),
            direction_changes=6,
        )
        for i in range(4)
    )


def traded_state(**kwargs):
    values = dict(instance_id="bot-a", bootstrapped=True)
    values.update(kwargs)
    return StrategyState(**values)


class TestEntries:
    def test_fresh_instance_bootstraps_with_a_buy(self):
        engine = StrategyEngine(build_config())
        state = StrategyState(instance_id="bot-a")
        decision = engine.evaluate(state, context())

        assert isinstance(decision.action, Buy)
        assert decision.action.code == codes.BOOTSTRAP_BUY
        assert decision.action.size.quote == Decimal("100")
        assert decision.client_order_id is not None
        assert engine.allocator.committed("default") == Decimal("100")
        assert state.last_action == "BUY"

    def test_start_neutral_only_records_reference(self):
        engine = StrategyEngine(build_config(starting_mode=StartingMode.START_NEUTRAL))
        state = StrategyState(instance_id="bot-a")
        decision = engine.evaluate(state, context())

        assert decision.action.code == codes.REFERENCE_SET
        assert state.last_sell_price == Decimal("100")
        assert state.bootstrapped

    def test_dip_buy_triggers_at_threshold(self):
        engine = StrategyEngine(build_config(buy_dip_pct=Decimal("0.6")))
        state = traded_state(last_sell_price=Decimal("100"))

        assert engine.evaluate(state, context("99.5")).action.code == codes.NO_SIGNAL
        decision = engine.evaluate(state, context("99.4"))
        assert decision.action.code == codes.DIP_BUY

    def test_gain_below_cost_is_held(self):
        config = build_config(
            venue_fee_pct=Decimal("0.5"),
            expected_slippage_bps=Decimal("50"),
            sell_rise_pct=Decimal("1.2"),
        )
        engine = StrategyEngine(config)
        decision = engine.evaluate(StrategyState(instance_id="bot-a"), context())

        assert isinstance(decision.action, Hold)
        assert decision.action.code == COST_GATED
        assert decision.action.reason.startswith("cost-gated")
        assert decision.client_order_id is None
        assert engine.allocator.committed("default") == Decimal("0")

    def test_below_minimum_balance_holds(self):
        engine = StrategyEngine(build_config())
        decision = engine.evaluate(StrategyState(instance_id="bot-a"), context(quote="5"))
        assert decision.action.code == codes.BELOW_MINIMUM

    def test_open_position_blocks_new_entries(self):
        engine = StrategyEngine(build_config())
        state = traded_state(last_buy_price=Decimal("100"), position_qty=Decimal("1"), cost_basis=Decimal("100"))
        state.position = engine.scale_out.open_position(Decimal("100"), Decimal("1"))
        decision = engine.evaluate(state, context("95", base="1"))
        assert decision.action.code == codes.POSITION_OPEN

    def test_shared_wallet_denies_second_instance(self):
        allocator = CapitalAllocator()
        first = StrategyEngine(build_config(instance_id="bot-a"), allocator=allocator)
        second = StrategyEngine(build_config(instance_id="bot-b"), allocator=allocator)

        a = first.evaluate(StrategyState(instance_id="bot-a"), context(quote="150"))
        b = second.evaluate(StrategyState(instance_id="bot-b"), context(quote="150"))

        assert isinstance(a.action, Buy)
        assert b.action.code == codes.WALLET_GUARDRAIL
        assert not b.guardrail.allowed

        first.release(a)
        assert allocator.committed("default") == Decimal("0")

    def test_exposure_cap_clips_buy(self):
        engine = StrategyEngine(build_config(exposure_cap_pct=Decimal("50"), trade_size=Decimal("150")))
        state = traded_state(last_sell_price=Decimal("100"), position_qty=Decimal("4"), cost_basis=Decimal("400"))
        decision = engine.evaluate(state, context("99", base="4", quote="600"))
        # equity 996, cap 498, held 396
        assert decision.action.size.quote == Decimal("102")


class TestRebuy:
    def _engine(self):
        return StrategyEngine(build_config(
            cycle_mode=CycleMode.ROLLING_REBUY,
            allow_rebuy=True,
            rebuy_dip_pct=Decimal("0.6"),
            rebuy_regime_gate=RebuyRegimeGate.CHOP_ONLY,
            max_rebuy_count=1,
        ))

    def _state(self):
        return traded_state(
            last_buy_price=Decimal("99"),
            last_sell_price=Decimal("100"),
            daily_reset_at=START.replace(hour=0),
        )

    def test_needs_chop_regime(self):
        decision = self._engine().evaluate(self._state(), context("99.3"))
        assert decision.action.code == codes.REGIME_GATED

    def test_rebuy_in_chop(self):
        decision = self._engine().evaluate(self._state(), context("99.3", analytics=chop_hours()))
        assert decision.action.code == codes.REBUY

    def test_rebuy_limit(self):
        state = self._state()
        state.rebuy_count = 1
        decision = self._engine().evaluate(state, context("99.3", analytics=chop_hours()))
        assert decision.action.code == codes.REBUY_LIMIT


class TestGuards:
    def test_three_failures_latch_pause(self):
        engine = StrategyEngine(build_config(max_consecutive_failures=3))
        state = StrategyState(instance_id="bot-a")
        for _ in range(3):
            engine.record_failure(state, None, RpcError("timeout").to_swap_error(), START)

        decision = engine.evaluate(state, context())
        assert isinstance(decision.action, Pause)
        assert state.paused
        assert codes.MAX_FAILURES in state.pause_reason

        # stays latched on later cycles
        assert isinstance(engine.evaluate(state, context()).action, Pause)

        StrategyEngine.reset(state)
        assert not state.paused
        assert state.consecutive_failures == 0
        assert isinstance(engine.evaluate(state, context()).action, Buy)

    def test_failed_trade_releases_its_plan(self):
        engine = StrategyEngine(build_config())
        state = StrategyState(instance_id="bot-a")
        decision = engine.evaluate(state, context())
        engine.record_failure(state, decision, RpcError("timeout").to_swap_error(), START)
        assert engine.allocator.committed("default") == Decimal("0")
        assert state.consecutive_failures == 1

    def test_drawdown_breaker(self):
        engine = StrategyEngine(build_config(max_drawdown_pct=Decimal("10")))
        state = traded_state(last_sell_price=Decimal("100"), peak_equity=Decimal("1000"))
        decision = engine.evaluate(state, context(quote="890"))
        assert isinstance(decision.action, Pause)
        assert codes.MAX_DRAWDOWN in state.pause_reason

    def test_daily_loss_breaker(self):
        engine = StrategyEngine(build_config(daily_loss_limit=Decimal("20")))
        state = traded_state(
            last_sell_price=Decimal("100"),
            daily_realized_pnl=Decimal("-25"),
            daily_reset_at=START.replace(hour=0),
            hourly_reset_at=START,
        )
        assert isinstance(engine.evaluate(state, context()).action, Pause)

    def test_low_gas_pauses_without_latching(self):
        engine = StrategyEngine(build_config(min_native_for_gas=Decimal("0.01")))
        state = StrategyState(instance_id="bot-a")
        decision = engine.evaluate(state, context(native="0"))
        assert decision.action == Pause(reason=decision.action.reason, code=codes.INSUFFICIENT_GAS)
        assert not state.paused
        assert isinstance(engine.evaluate(state, context(native="1")).action, Buy)

    def test_price_deviation_holds(self):
        engine = StrategyEngine(build_config(max_price_deviation_bps=100))
        decision = engine.evaluate(StrategyState(instance_id="bot-a"), context(secondary_price=Decimal("102")))
        assert isinstance(decision.action, Hold)
        assert decision.action.code == "PRICE_DEVIATION"

    def test_expired_quote_holds(self, venue, clock):
        engine = StrategyEngine(build_config())
        quote = venue.get_quote(QuoteRequest(side=Side.BUY, amount=Decimal("100"), amount_is_base=False, slippage_bps=50))
        decision = engine.evaluate(
            StrategyState(instance_id="bot-a"),
            context(now=START + timedelta(seconds=31), quote=quote),
        )
        assert decision.action.code == "QUOTE_EXPIRED"

    def test_cooldown_and_hourly_limit(self):
        engine = StrategyEngine(build_config(cooldown_seconds=90, max_trades_per_hour=2))
        state = traded_state(last_sell_price=Decimal("100"), last_trade_at=START - timedelta(seconds=30))
        assert engine.evaluate(state, context("90")).action.code == codes.COOLDOWN

        state.last_trade_at = START - timedelta(seconds=120)
        state.trades_this_hour = 2
        state.hourly_reset_at = START.replace(minute=0)
        assert engine.evaluate(state, context("90")).action.code == codes.HOURLY_LIMIT

    def test_hour_rollover_clears_counter(self):
        engine = StrategyEngine(build_config(max_trades_per_hour=2))
        state = traded_state(last_sell_price=Decimal("100"), trades_this_hour=2, hourly_reset_at=START.replace(minute=0))
        decision = engine.evaluate(state, context("90", now=START + timedelta(hours=1)))
        assert decision.action.code == codes.DIP_BUY
        assert state.trades_this_hour == 0


class TestRescue:
    def test_rescue_blocks_buys(self):
        engine = StrategyEngine(build_config(enable_reserve_reset=True, rescue_drawdown_pct=Decimal("2.5")))
        state = traded_state(
            last_buy_price=Decimal("100"),
            last_sell_price=Decimal("100"),
            position_qty=Decimal("1"),
            cost_basis=Decimal("100"),
        )
        decision = engine.evaluate(state, context("97", base="1", quote="900"))
        assert decision.action.code == codes.RESCUE_ACTIVE
        assert state.reserve is not None


class TestFullCycle:
    def test_buy_then_exit_at_target(self, venue, clock):
        engine = StrategyEngine(build_config(sell_rise_pct=Decimal("1.2")))
        executor = SplitExecutor(venue, clock=clock, max_slippage_bps=50)
        state = StrategyState(instance_id="bot-a")

        buy = engine.evaluate(state, context(now=clock.now()))
        result = executor.execute(
            side=Side.BUY,
            amount=buy.action.size.amount,
            amount_is_base=False,
            chunks=buy.chunks,
            client_order_id=buy.client_order_id,
        )
        engine.record_fill(state, buy, result, clock.now())

        assert state.position.status == PositionStatus.OPEN
        assert state.position_qty == Decimal("1")
        assert state.trades_this_hour == 1
        assert engine.allocator.committed("default") == Decimal("0")

        clock.advance(minutes=5)
        venue.price = Decimal("101.2")
        balances = venue.get_balances()
        sell = engine.evaluate(
            state,
            CycleContext(now=clock.now(), balances=balances, price=venue.price),
        )
        assert isinstance(sell.action, Sell)
        assert sell.action.code == "FULL_EXIT"
        assert sell.client_order_id != buy.client_order_id

        result = executor.execute(
            side=Side.SELL,
            amount=sell.action.size.amount,
            amount_is_base=True,
            chunks=sell.chunks,
            client_order_id=sell.client_order_id,
        )
        engine.record_fill(state, sell, result, clock.now())

        assert state.position.status == PositionStatus.CLOSED
        assert state.total_realized_pnl == Decimal("1.2")
        assert state.last_sell_price == Decimal("101.2")
        assert state.position_qty == Decimal("0")

    def test_split_exit_aborted_after_one_chunk_keeps_position_open(self, venue, clock):
        engine = StrategyEngine(
            build_config(
                sell_rise_pct=Decimal("1.2"),
                medium_tier_notional=Decimal("50"),
                large_tier_notional=Decimal("60"),
            )
        )
        executor = SplitExecutor(venue, clock=clock, max_slippage_bps=50)
        state = StrategyState(instance_id="bot-a")

        buy = engine.evaluate(state, context(now=clock.now()))
        self._run(engine, executor, state, buy, Side.BUY, clock)
        assert state.position_qty == Decimal("1")

        clock.advance(minutes=5)
        venue.price = Decimal("101.2")
        sell = engine.evaluate(state, CycleContext(now=clock.now(), balances=venue.get_balances(), price=venue.price))
        assert sell.action.code == "FULL_EXIT"
        assert sell.chunks == 2

        venue.swap_outcomes.extend([None, InsufficientBalanceError("order book emptied")])
        result = self._run(engine, executor, state, sell, Side.SELL, clock)
        assert len(result.filled_chunks) == 1

        assert state.position.status != PositionStatus.CLOSED
        assert state.position.remaining_qty == Decimal("0.5")
        assert state.position_qty == Decimal("0.5")

        clock.advance(minutes=1)
        follow_up = engine.evaluate(state, CycleContext(now=clock.now(), balances=venue.get_balances(), price=venue.price))
        assert isinstance(follow_up.action, Sell)
        assert follow_up.action.code == ExitKind.COMPLETION.value
        assert follow_up.action.size.amount == Decimal("0.5")

        self._run(engine, executor, state, follow_up, Side.SELL, clock)
        assert state.position.status == PositionStatus.CLOSED
        assert state.position_qty == Decimal("0")
        assert state.total_realized_pnl == Decimal("1.2")

    def test_runner_leg_is_held_back_and_trails_out(self, venue, clock):
        engine = StrategyEngine(
            build_config(
                sell_rise_pct=Decimal("1.2"),
                runner_enabled=True,
                runner_pct=Decimal("20"),
                runner_trail_activate_pct=Decimal("1.8"),
                runner_trail_stop_pct=Decimal("0.7"),
            )
        )
        executor = SplitExecutor(venue, clock=clock, max_slippage_bps=50)
        state = StrategyState(instance_id="bot-a")

        buy = engine.evaluate(state, context(now=clock.now()))
        self._run(engine, executor, state, buy, Side.BUY, clock)

        clock.advance(minutes=5)
        venue.price = Decimal("101.2")
        core = engine.evaluate(state, CycleContext(now=clock.now(), balances=venue.get_balances(), price=venue.price))
        assert core.action.code == "FULL_EXIT"
        assert core.action.size.amount == Decimal("0.8")
        assert "runner 20% held back" in core.action.reason

        self._run(engine, executor, state, core, Side.SELL, clock)
        assert state.position.status == PositionStatus.CLOSED
        assert state.total_realized_pnl == Decimal("0.96")
        assert state.position_qty == Decimal("0")
        assert state.runner.status == RunnerStatus.ACTIVE
        assert state.runner.qty == Decimal("0.2")
        assert state.runner.cost_basis == Decimal("20")
        assert state.runner.entry_price == Decimal("101.2")

        clock.advance(minutes=5)
        venue.price = Decimal("104")
        hold = engine.evaluate(state, CycleContext(now=clock.now(), balances=venue.get_balances(), price=venue.price))
        assert not isinstance(hold.action, Sell)
        assert state.runner.peak_price == Decimal("104")

        clock.advance(minutes=5)
        venue.price = Decimal("103.2")
        trail = engine.evaluate(state, CycleContext(now=clock.now(), balances=venue.get_balances(), price=venue.price))
        assert trail.action.code == RunnerAction.TRAILING_EXIT.value
        assert trail.action.size.amount == Decimal("0.2")

        self._run(engine, executor, state, trail, Side.SELL, clock)
        assert not state.runner.active
        assert state.total_realized_pnl == Decimal("1.6")
        assert state.last_sell_price == Decimal("101.2")

    @staticmethod
    def _run(engine, executor, state, decision, side, clock):
        result = executor.execute(
            side=side,
            amount=decision.action.size.amount,
            amount_is_base=decision.action.size.is_base,
            chunks=decision.chunks,
            client_order_id=decision.client_order_id,
        )
        engine.record_fill(state, decision, result, clock.now())
        return result

    def test_failed_execution_counts_as_failure(self, venue, clock):
        engine = StrategyEngine(build_config())
        executor = SplitExecutor(venue, clock=clock, max_slippage_bps=50)
        state = StrategyState(instance_id="bot-a")
        decision = engine.evaluate(state, context(now=clock.now()))

        venue.balances = BalanceInfo(base=Decimal("0"), quote=Decimal("1"))
        result = executor.execute(
            side=Side.BUY,
            amount=decision.action.size.amount,
            amount_is_base=False,
            chunks=1,
            client_order_id=decision.client_order_id,
        )
        engine.record_fill(state, decision, result, clock.now())
        assert state.consecutive_failures == 1
        assert state.position is None


class TestPnL:
    def test_average_cost_with_fees(self):
        basis = PnLCalculator.apply_buy(CostBasis(), Decimal("1"), Decimal("100"), Decimal("0.1"))
        basis = PnLCalculator.apply_buy(basis, Decimal("1"), Decimal("98"), Decimal("0.1"))
        assert basis.average_price == Decimal("99.1")

        sold = PnLCalculator.apply_sell(basis, Decimal("1"), Decimal("101"), Decimal("0.1"))
        assert sold.realized == Decimal("101") - Decimal("0.1") - Decimal("99.1")
        assert sold.basis.quantity == Decimal("1")
        assert sold.basis.average_price == Decimal("99.1")

    def test_selling_unowned_inventory_realizes_nothing(self):
        sold = PnLCalculator.apply_sell(CostBasis(), Decimal("1"), Decimal("100"))
        assert sold.realized == Decimal("0")

    def test_summary(self):
        basis = CostBasis(quantity=Decimal("2"), cost=Decimal("200"))
        summary = PnLCalculator.summary(basis, Decimal("2"), Decimal("50"), Decimal("110"), Decimal("3"))
        assert summary.equity == Decimal("270")
        assert summary.unrealized_pnl == Decimal("20")
        assert summary.unrealized_pnl_pct == Decimal("10")


def test_each_decision_gets_a_fresh_order_id():
    nonce_count = 5
    engine = StrategyEngine(build_config())
    ids = set()
    for _ in range(nonce_count):
        state = traded_state(last_sell_price=Decimal("100"))
        state.nonce = len(ids)
        decision = engine.evaluate(state, context("90"))
        ids.add(decision.client_order_id)
        engine.release(decision)
    assert len(ids) == nonce_count
