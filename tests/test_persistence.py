from datetime import timedelta
from decimal import Decimal

import pytest

from meridian.ai.types import HourlyAnalytics
from meridian.config.bot_config_store import list_configs, load_config, save_config
from meridian.config.settings import Settings
from meridian.errors import ConfigurationError, DuplicateOrderError
from meridian.execution.runner import RunnerManager
from meridian.execution.scale_out import ScaleOutManager
from meridian.execution.reserve_reset import ReserveBucket, ReserveResetManager
from meridian.execution.split_executor import ChunkResult, SplitExecutionResult
from meridian.persistence.models import AttemptStatus
from meridian.providers.alerts import AlertEvent, AlertType
from meridian.repository.alert_repository import AlertRepository
from meridian.repository.analytics_repository import AnalyticsRepository
from meridian.repository.decision_repository import DecisionRepository
from meridian.repository.trade_repository import TradeRepository
from meridian.service.bot_state import StrategyState
from meridian.service.profiles import apply_preset
from meridian.state.trade_state import clear_state, load_state, save_state
from meridian.strategy.pnl import CostBasis
from meridian.utils.trading_mode import ExitMode, Side

from conftest import START, build_config


def _attempt(repo, client_order_id="abc"):
    return repo.record_attempt(
        client_order_id=client_order_id,
        instance_id="bot-a",
        symbol="BNBUSDT",
        side="BUY",
        action_code="DIP_BUY",
        trading_mode="dry_run",
        requested_amount=Decimal("100"),
        amount_is_base=False,
    )


class TestTradeRepository:
    def test_duplicate_client_order_id_is_rejected(self, session_factory):
        with session_factory() as session:
            repo = TradeRepository(session)
            first = _attempt(repo)
            assert first.status == AttemptStatus.PENDING
            with pytest.raises(DuplicateOrderError):
                _attempt(repo)
            assert len(repo.list_attempts("bot-a")) == 1

    def test_complete_attempt_records_fill(self, session_factory):
        result = SplitExecutionResult(
            client_order_id="abc",
            side=Side.BUY,
            requested_amount=Decimal("100"),
            amount_is_base=False,
            requested_chunks=2,
            chunks=(
                ChunkResult(0, "abc-0", Decimal("50"), True, Decimal("0.5"), Decimal("50"), Decimal("100")),
            ),
            abort_reason="stop requested",
        )
        with session_factory() as session:
            repo = TradeRepository(session)
            _attempt(repo)
            repo.complete_attempt("abc", result, completed_at=START)

        with session_factory() as session:
            attempt = TradeRepository(session).get_attempt("abc")
            assert attempt.status == AttemptStatus.PARTIAL
            assert attempt.chunks_filled == 1
            assert attempt.base_filled == Decimal("0.5")
            assert attempt.average_price == Decimal("100")
            assert attempt.error_message == "stop requested"

    def test_fail_attempt(self, session_factory):
        with session_factory() as session:
            repo = TradeRepository(session)
            _attempt(repo)
            repo.fail_attempt("abc", "RPC_ERROR", "node down")
            assert repo.get_attempt("abc").status == AttemptStatus.FAILED
            assert repo.fail_attempt("missing", "X", "y") is None


class TestDecisionAndAlertRepositories:
    def test_decisions_newest_first(self, session_factory):
        with session_factory() as session:
            repo = DecisionRepository(session)
            for i, code in enumerate(["NO_SIGNAL", "DIP_BUY"]):
                repo.save_decision(
                    instance_id="bot-a",
                    action="HOLD" if i == 0 else "BUY",
                    code=code,
                    reason="test",
                    regime_detected="CHOP",
                    confidence_score=Decimal("0.8"),
                    timestamp=START + timedelta(seconds=i),
                )
            assert [d.code for d in repo.recent("bot-a")] == ["DIP_BUY", "NO_SIGNAL"]

    def test_alert_delivery_flags(self, session_factory):
        event = AlertEvent(
            type=AlertType.TRADE_EXECUTED,
            title="BUY filled",
            message="1 BNB",
            metadata={"instance_id": "bot-a", "price": Decimal("100")},
            timestamp=START,
        )
        with session_factory() as session:
            repo = AlertRepository(session)
            saved = repo.save_alert(event)
            repo.mark_delivered(saved.alert_id, webhook=True)
            stored = repo.recent()[0]
            assert stored.instance_id == "bot-a"
            assert stored.metadata_json == {"instance_id": "bot-a", "price": "100"}
            assert stored.webhook_delivered and not stored.telegram_delivered


class TestAnalyticsRepository:
    def test_upsert_and_window(self, session_factory):
        with session_factory() as session:
            repo = AnalyticsRepository(session)
            for i in range(8):
                repo.upsert_hour("bot-a", HourlyAnalytics(
                    hour_start=START + timedelta(hours=i),
                    open=Decimal("100"), high=Decimal("101"), low=Decimal("99"), close=Decimal("100"),
                ))
            repo.upsert_hour("bot-a", HourlyAnalytics(
                hour_start=START + timedelta(hours=7),
                open=Decimal("100"), high=Decimal("102"), low=Decimal("99"), close=Decimal("101"),
                trade_count=3,
            ))
            hours = repo.recent_hours("bot-a", limit=6)

        assert len(hours) == 6
        assert hours[0].hour_start == START + timedelta(hours=2)
        assert hours[-1].trade_count == 3
        assert hours[-1].high == Decimal("102")


class TestStateStore:
    def test_round_trip_keeps_ladder_and_buckets(self, tmp_path):
        config = build_config(exit_mode=ExitMode.SCALE_OUT, scale_out_steps=3, enable_reserve_reset=True)
        state = StrategyState(
            instance_id="bot-a",
            last_buy_price=Decimal("100"),
            last_trade_at=START,
            position_qty=Decimal("1.5"),
            cost_basis=Decimal("150.3"),
            paused=True,
            pause_reason="MAX_DRAWDOWN: test",
        )
        state.position = ScaleOutManager(config).open_position(Decimal("100.2"), Decimal("1.5"), START)
        state.position.levels[0].triggered = True
        state.reserve = ReserveResetManager(config).initialize(Decimal("1000"))
        state.reserve.active = ReserveBucket.RESCUE
        state.record_realized(Decimal("-1.25"))

        save_state(state, tmp_path)
        loaded = load_state("bot-a", tmp_path)

        assert loaded.paused and loaded.pause_reason == "MAX_DRAWDOWN: test"
        assert loaded.avg_entry_price == Decimal("100.2")
        assert loaded.last_trade_at == START
        assert loaded.position.levels == state.position.levels
        assert loaded.reserve.active == ReserveBucket.RESCUE
        assert loaded.reserve.is_consistent()
        assert loaded.recent_pnls == [Decimal("-1.25")]

    def test_round_trip_keeps_runner_and_unfinished_exit(self, tmp_path):
        config = build_config(runner_enabled=True)
        state = StrategyState(instance_id="bot-a")
        state.position = ScaleOutManager(config).open_position(Decimal("100"), Decimal("1"), START)
        state.position.remaining_qty = Decimal("0.4")
        state.position.unfilled_qty = Decimal("0.4")
        state.position.unfilled_risk_reducing = True
        basis = CostBasis(quantity=Decimal("0.25"), cost=Decimal("25.1"))
        state.runner = RunnerManager(config).create(basis, Decimal("101.2"), START)
        state.runner.peak_price = Decimal("103")
        state.runner.ladder_step = 1

        save_state(state, tmp_path)
        loaded = load_state("bot-a", tmp_path)

        assert loaded.runner == state.runner
        assert loaded.runner.active
        assert loaded.position.unfilled_qty == Decimal("0.4")
        assert loaded.position.unfilled_risk_reducing

        state.runner = None
        save_state(state, tmp_path)
        assert load_state("bot-a", tmp_path).runner is None

    def test_missing_and_cleared(self, tmp_path):
        assert load_state("nobody", tmp_path) is None
        save_state(StrategyState(instance_id="bot-a"), tmp_path)
        clear_state("bot-a", tmp_path)
        assert load_state("bot-a", tmp_path) is None

    def test_counters_roll_on_utc_boundaries(self):
        state = StrategyState(instance_id="bot-a", trades_this_hour=3, trades_today=5, rebuy_count=1)
        state.hourly_reset_at = START.replace(minute=0)
        state.daily_reset_at = START.replace(hour=0, minute=0)

        assert not state.roll_counters(START + timedelta(minutes=30))
        assert state.roll_counters(START + timedelta(hours=1))
        assert state.trades_this_hour == 0 and state.trades_today == 5
        assert state.roll_counters(START + timedelta(days=1))
        assert state.trades_today == 0 and state.rebuy_count == 0


class TestConfigStore:
    def test_round_trip(self, tmp_path):
        config = apply_preset(build_config(instance_id="bot-z"), "adaptive-reserve-reset")
        save_config(config, tmp_path)
        assert list_configs(tmp_path) == ["bot-z"]
        assert load_config("bot-z", tmp_path) == config

    def test_invalid_file_is_rejected(self, tmp_path):
        (tmp_path / "bad.json").write_text(
            '{"instance_id": "bad", "symbol": "X", "base_asset": "X", "quote_asset": "Y", "max_slippage_bps": 0}'
        )
        with pytest.raises(ConfigurationError):
            load_config("bad", tmp_path)


class TestSettings:
    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("BINANCE_API_KEY", "k")
        monkeypatch.setenv("BINANCE_API_SECRET", "s")
        monkeypatch.setenv("TELEGRAM_CHAT_ID", "42")
        monkeypatch.setenv("WALLET_MIN_RESERVE", "12.5")
        monkeypatch.delenv("TELEGRAM_BOT_TOKEN", raising=False)
        settings = Settings.from_env()

        assert settings.has_binance_keys
        assert not settings.has_telegram
        assert settings.wallet_min_reserve == Decimal("12.5")
        assert settings.redacted()["binance_api_secret"] == "***"

    def test_bad_numbers(self, monkeypatch):
        monkeypatch.setenv("BOT_LOOP_INTERVAL_SECONDS", "0")
        with pytest.raises(ConfigurationError):
            Settings.from_env()
