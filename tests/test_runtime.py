from datetime import timedelta
from decimal import Decimal

import pytest

from meridian.errors import InsufficientBalanceError, RpcError
from meridian.persistence.models import AttemptStatus
from meridian.providers.alerts import AlertDispatcher, AlertSink, AlertType
from meridian.reporting.trade_reporter import TradeReporter, summarize
from meridian.repository.decision_repository import DecisionRepository
from meridian.repository.trade_repository import TradeRepository
from meridian.service.analytics_job import HourlyAnalyticsTracker
from meridian.service.bot_state import StrategyState
from meridian.service.worker import BotWorker
from meridian.state.trade_state import load_state
from meridian.strategy import engine as codes
from meridian.strategy.engine import StrategyEngine

from conftest import START, ScriptedVenue, build_config


class CollectingSink(AlertSink):
    name = "collecting"

    def __init__(self):
        self.events = []

    def deliver(self, event):
        self.events.append(event)
        return True

    @property
    def types(self):
        return [e.type for e in self.events]


# =========================
# Hourly analytics
# =========================
class TestHourlyAnalyticsTracker:
    def test_hour_closes_on_first_tick_of_next_hour(self):
        tracker = HourlyAnalyticsTracker("bot-a")
        for minutes, price in [(0, "100"), (10, "101"), (20, "100.5"), (30, "101")]:
            tracker.observe_price(START + timedelta(minutes=minutes), Decimal(price))
        tracker.record_fill(Decimal("10"))
        tracker.record_fill()
        tracker.record_failure()
        assert tracker.history == []

        tracker.observe_price(START + timedelta(hours=1), Decimal("102"))
        [closed] = tracker.history
        assert closed.hour_start == START
        assert (closed.open, closed.high, closed.low, closed.close) == (
            Decimal("100"), Decimal("101"), Decimal("100"), Decimal("101"),
        )
        assert closed.direction_changes == 2
        assert closed.trade_count == 2
        assert closed.failed_count == 1
        assert closed.avg_slippage_bps == Decimal("10")

    def test_history_is_bounded(self):
        tracker = HourlyAnalyticsTracker("bot-a", history_hours=2)
        for i in range(4):
            tracker.observe_price(START + timedelta(hours=i), Decimal("100") + i)
        assert [h.hour_start for h in tracker.history] == [START + timedelta(hours=1), START + timedelta(hours=2)]

    def test_closed_hours_survive_a_restart(self, session_factory):
        tracker = HourlyAnalyticsTracker("bot-a", session_factory)
        tracker.observe_price(START, Decimal("100"))
        tracker.observe_price(START + timedelta(hours=1), Decimal("101"))

        reloaded = HourlyAnalyticsTracker("bot-a", session_factory).load_history()
        assert [h.hour_start for h in reloaded] == [START]


# =========================
# Trade journal
# =========================
class TestTradeReporter:
    def _record(self, reporter, side, pnl, minutes=0):
        return reporter.record_trade(
            instance_id="bot-a",
            preset="full-exit-scalp",
            symbol="BNBUSDT",
            side=side,
            code="DIP_BUY" if side == "BUY" else "TARGET_EXIT",
            client_order_id=f"id-{side}-{minutes}",
            status="COMPLETE",
            price=Decimal("100"),
            base_qty=Decimal("1"),
            quote_amount=Decimal("100"),
            fees=Decimal("0.1"),
            trade_pnl=Decimal(pnl),
            timestamp=START + timedelta(minutes=minutes),
        )

    def test_cumulative_pnl_carries_across_instances_of_the_journal(self, tmp_path):
        path = tmp_path / "trades.csv"
        reporter = TradeReporter(path)
        self._record(reporter, "BUY", "0")
        self._record(reporter, "SELL", "1.5", minutes=5)
        row = self._record(reporter, "SELL", "-0.5", minutes=10)

        assert row["cumulative_pnl"] == "1.00000000"
        assert TradeReporter(path).cumulative_pnl == Decimal("1")

    def test_queries_and_summary(self, tmp_path):
        reporter = TradeReporter(tmp_path / "trades.csv")
        self._record(reporter, "BUY", "0")
        self._record(reporter, "SELL", "1.5", minutes=5)
        self._record(reporter, "SELL", "-0.5", minutes=10)

        assert len(reporter.get_recent_trades(side="SELL")) == 2
        assert len(reporter.get_trades_since(instance_id="bot-a", since=START + timedelta(minutes=5))) == 2

        summary = summarize(reporter.get_recent_trades(limit=10))
        assert summary["sells"] == 2
        assert summary["win_rate"] == Decimal("0.5")
        assert summary["realized_pnl"] == Decimal("1")
        assert summary["max_drawdown"] == Decimal("0.5")
        assert summary["fees"] == Decimal("0.3")

    def test_missing_journal(self, tmp_path):
        reporter = TradeReporter(tmp_path / "nested" / "trades.csv")
        assert reporter.get_recent_trades() == []
        assert summarize([])["win_rate"] == Decimal("0")


# =========================
# Worker cycle
# =========================
@pytest.fixture
def sink():
    return CollectingSink()


@pytest.fixture
def make_worker(clock, session_factory, sink, tmp_path):
    def _make(state=None, venue=None, **config_overrides):
        return BotWorker(
            engine=StrategyEngine(build_config(**config_overrides)),
            venue=venue or ScriptedVenue(clock),
            state=state or StrategyState(instance_id="bot-a"),
            clock=clock,
            session_factory=session_factory,
            alerts=AlertDispatcher([sink], background=False),
            reporter=TradeReporter(tmp_path / "trades.csv"),
            state_dir=tmp_path / "state",
        )
    return _make


class TestBotWorker:
    def test_cycle_executes_records_and_persists(self, make_worker, session_factory, sink, tmp_path):
        worker = make_worker()
        decision = worker.run_cycle()

        assert decision.action.code == codes.BOOTSTRAP_BUY
        assert worker.venue.balances.quote == Decimal("900")
        assert worker.state.position_qty == Decimal("1")
        assert sink.types == [AlertType.TRADE_EXECUTED]

        saved = load_state("bot-a", tmp_path / "state")
        assert saved.position_qty == Decimal("1")
        assert saved.last_buy_price == Decimal("100")

        with session_factory() as session:
            attempt = TradeRepository(session).get_attempt(decision.client_order_id)
            assert attempt.status == AttemptStatus.COMPLETE
            assert attempt.chunks_filled == 1
            assert DecisionRepository(session).recent("bot-a")[0].code == codes.BOOTSTRAP_BUY

        [row] = worker.reporter.get_recent_trades()
        assert row["side"] == "BUY"

    def test_market_data_failure_counts_toward_breaker(self, make_worker, clock, tmp_path):
        venue = ScriptedVenue(clock)
        venue.balance_errors.extend([RpcError("node down")] * 4)
        worker = make_worker(venue=venue)

        assert worker.run_cycle() is None
        assert worker.state.consecutive_failures == 1
        assert clock.sleeps == [0.5, 1.0, 2.0]
        assert venue.swap_calls == []
        assert load_state("bot-a", tmp_path / "state") is not None

    def test_recorded_order_id_is_never_executed_twice(self, make_worker, clock, sink):
        state = StrategyState(instance_id="bot-a")
        replay = StrategyState.from_dict(state.to_dict())
        make_worker(state=state).run_cycle()

        venue = ScriptedVenue(clock)
        worker = make_worker(state=replay, venue=venue)
        worker.run_cycle()

        assert venue.swap_calls == []
        assert worker.state.consecutive_failures == 1
        assert sink.types[-1] == AlertType.TRADE_FAILED
        assert sink.events[-1].metadata["code"] == "DUPLICATE_ORDER"

    def test_breaker_alerts_once_and_reset_clears_it(self, make_worker, sink, tmp_path):
        worker = make_worker(state=StrategyState(instance_id="bot-a", consecutive_failures=3))

        worker.run_cycle()
        worker.run_cycle()
        assert worker.state.paused
        assert sink.types == [AlertType.CIRCUIT_BREAKER]

        worker.reset()
        assert not load_state("bot-a", tmp_path / "state").paused
        assert worker.run_cycle().action.code == codes.BOOTSTRAP_BUY

    def test_failed_execution_alerts_and_counts(self, make_worker, clock, sink):
        venue = ScriptedVenue(clock)
        venue.swap_outcomes.append(InsufficientBalanceError("account drained"))
        worker = make_worker(venue=venue)
        worker.run_cycle()

        assert worker.state.consecutive_failures == 1
        assert worker.state.position_qty == Decimal("0")
        assert worker.engine.allocator.committed("default") == Decimal("0")
        assert sink.types == [AlertType.TRADE_FAILED]
        assert sink.events[0].metadata["code"] == "INSUFFICIENT_BALANCE"

    def test_database_outage_releases_committed_capital(self, clock, sink, tmp_path):
        def broken_session():
            raise RuntimeError("database unavailable")

        venue = ScriptedVenue(clock)
        worker = BotWorker(
            engine=StrategyEngine(build_config()),
            venue=venue,
            state=StrategyState(instance_id="bot-a"),
            clock=clock,
            session_factory=broken_session,
            alerts=AlertDispatcher([sink], background=False),
            state_dir=tmp_path / "state",
        )

        with pytest.raises(RuntimeError, match="database unavailable"):
            worker.run_cycle()
        assert venue.swap_calls == []
        assert worker.engine.allocator.committed("default") == Decimal("0")

    def test_executor_crash_marks_attempt_failed(self, make_worker, session_factory, monkeypatch):
        worker = make_worker()

        def crash(**kwargs):
            raise RuntimeError("executor crashed")

        monkeypatch.setattr(worker.executor, "execute", crash)
        with pytest.raises(RuntimeError, match="executor crashed"):
            worker.run_cycle()

        assert worker.engine.allocator.committed("default") == Decimal("0")
        with session_factory() as session:
            [attempt] = TradeRepository(session).list_attempts("bot-a")
            assert attempt.status == AttemptStatus.FAILED
            assert attempt.error_code == "UNKNOWN_ERROR"
            assert attempt.error_message == "executor crashed"
