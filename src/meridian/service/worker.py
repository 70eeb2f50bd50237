from __future__ import annotations

import threading
from decimal import Decimal
from pathlib import Path
from typing import Callable

from loguru import logger
from sqlalchemy.orm import Session

from meridian.errors import DuplicateOrderError, MeridianError, as_swap_error
from meridian.execution.reserve_reset import ReserveBucket
from meridian.execution.split_executor import ExecutionStatus, SplitExecutionResult, SplitExecutor
from meridian.providers.alerts import AlertDispatcher, AlertEvent, AlertType
from meridian.providers.venue import BalanceInfo, Quote, QuoteRequest, VenueAdapter
from meridian.reporting.trade_reporter import TradeReporter
from meridian.repository.decision_repository import DecisionRepository
from meridian.repository.trade_repository import TradeRepository
from meridian.service.analytics_job import HourlyAnalyticsTracker
from meridian.service.bot_state import StrategyState
from meridian.state.trade_state import STATE_DIR, save_state
from meridian.strategy.actions import Buy, Pause, is_trade
from meridian.strategy.engine import CycleContext, CycleDecision, StrategyEngine
from meridian.utils.clock import Clock, SystemClock
from meridian.utils.money import ZERO
from meridian.utils.retry import RetryPolicy, retry_call
from meridian.utils.trading_mode import Side, TradeSizeMode

HEARTBEAT_EVERY_SECONDS = 300


class BotWorker(threading.Thread):
    """
    Runs the decision cycle of one instance on its own thread, strictly one
    cycle at a time. `stop()` is honoured between cycles; an execution in
    flight finishes its current chunk first.
    """

    def __init__(
        self,
        *,
        engine: StrategyEngine,
        venue: VenueAdapter,
        state: StrategyState,
        clock: Clock | None = None,
        executor: SplitExecutor | None = None,
        session_factory: Callable[[], Session] | None = None,
        alerts: AlertDispatcher | None = None,
        reporter: TradeReporter | None = None,
        analytics: HourlyAnalyticsTracker | None = None,
        state_dir: Path = STATE_DIR,
        interval_seconds: float = 10.0,
        retry_policy: RetryPolicy | None = None,
        secondary_price_source: Callable[[], Decimal] | None = None,
        liquidity_source: Callable[[Side], Decimal] | None = None,
    ) -> None:
        super().__init__(daemon=True, name=f"bot-{state.instance_id}")
        self.engine = engine
        self.venue = venue
        self.state = state
        self.clock = clock or SystemClock()
        self.retry_policy = retry_policy or RetryPolicy()
        self.executor = executor or SplitExecutor(
            venue,
            clock=self.clock,
            max_slippage_bps=engine.config.max_slippage_bps,
            retry_policy=self.retry_policy,
            price_move_abort_pct=engine.config.price_move_abort_pct,
            chunk_delay_seconds=engine.config.chunk_delay_seconds,
        )
        self.session_factory = session_factory
        self.alerts = alerts or AlertDispatcher()
        self.reporter = reporter
        self.analytics = analytics or HourlyAnalyticsTracker(state.instance_id, session_factory)
        self.state_dir = state_dir
        self.interval_seconds = interval_seconds
        self.secondary_price_source = secondary_price_source
        self.liquidity_source = liquidity_source

        self._stop_event = threading.Event()
        self._lock = threading.Lock()
        self._last_heartbeat = 0.0
        self.last_decision: CycleDecision | None = None

    @property
    def config(self):
        return self.engine.config

    @property
    def instance_id(self) -> str:
        return self.state.instance_id

    # =========================
    # Lifecycle
    # =========================
    def run(self) -> None:
        logger.info(f"🚀 Worker started | {self.instance_id} | {self.config.symbol} | mode={self.config.trading_mode.value}")
        self.analytics.load_history()
        self._alert(AlertType.BOT_STARTED, f"{self.instance_id} started", f"{self.config.symbol} on {self.venue.name}")

        while not self._stop_event.is_set():
            try:
                self._heartbeat()
                self.run_cycle()
            except Exception:
                logger.exception(f"💥 Worker error | {self.instance_id}")
                self.state.last_action = "ERROR"
            self._stop_event.wait(self.interval_seconds)

        self.analytics.flush()
        self._save_state()
        self._alert(AlertType.BOT_STOPPED, f"{self.instance_id} stopped", f"last action {self.state.last_action}")
        logger.info(f"🛑 Worker stopped | {self.instance_id}")

    def stop(self) -> None:
        self._stop_event.set()

    @property
    def stopping(self) -> bool:
        return self._stop_event.is_set()

    def _heartbeat(self) -> None:
        now = self.clock.monotonic()
        if now - self._last_heartbeat >= HEARTBEAT_EVERY_SECONDS:
            logger.info(
                f"💓 Loop alive | {self.instance_id} | action={self.state.last_action} "
                f"| paused={self.state.paused} | position={self.state.position_qty}"
            )
            self._last_heartbeat = now

    # =========================
    # Cycle
    # =========================
    def run_cycle(self) -> CycleDecision | None:
        """One observe, decide, execute, record pass. Returns None when market data could not be read."""
        with self._lock:
            now = self.clock.now()
            was_paused = self.state.paused
            bucket_before = self.state.reserve.active if self.state.reserve else None

            try:
                ctx = self._observe(now)
            except MeridianError as e:
                self.engine.record_failure(self.state, None, e.to_swap_error(), now)
                logger.warning(f"⚠️ {self.instance_id} market data unavailable | code={e.code} | {e.message}")
                self._save_state()
                return None

            self.analytics.observe_price(now, ctx.price)
            decision = self.engine.evaluate(self.state, ctx)
            self.last_decision = decision

            if is_trade(decision.action):
                self._execute(decision, ctx)

            self._log_decision(decision, ctx)
            self._notify_transitions(decision, was_paused, bucket_before)
            self._save_state()
            return decision

    def _observe(self, now) -> CycleContext:
        sleep = self.clock.sleep
        balances = retry_call(self.venue.get_balances, self.retry_policy, sleep, label="balances")
        request = self._reference_request(balances)
        quote = retry_call(lambda: self.venue.get_quote(request), self.retry_policy, sleep, label="quote")

        secondary = None
        if self.secondary_price_source is not None:
            secondary = retry_call(self.secondary_price_source, self.retry_policy, sleep, label="secondary price")

        liquidity = None
        if self.liquidity_source is not None:
            liquidity = retry_call(lambda: self.liquidity_source(Side.BUY), self.retry_policy, sleep, label="liquidity")

        return CycleContext(
            now=now,
            balances=balances,
            price=quote.price,
            secondary_price=secondary,
            quote=quote,
            analytics=tuple(self.analytics.history),
            available_liquidity=liquidity,
        )

    def _reference_request(self, balances: BalanceInfo) -> QuoteRequest:
        """Point quote for the cycle, sized like a typical entry so its impact is meaningful."""
        cfg = self.config
        if cfg.trade_size_mode == TradeSizeMode.FIXED_BASE:
            amount, is_base = cfg.trade_size, True
        elif cfg.trade_size_mode == TradeSizeMode.FIXED_QUOTE:
            amount, is_base = cfg.initial_trade_size or cfg.trade_size, False
        else:
            amount, is_base = max(cfg.min_trade_notional, balances.quote * cfg.trade_size / 100), False
        return QuoteRequest(
            side=Side.BUY,
            amount=amount,
            amount_is_base=is_base,
            slippage_bps=cfg.max_slippage_bps,
            allowed_sources=cfg.allowed_sources,
            excluded_sources=cfg.excluded_sources,
        )

    # =========================
    # Execution
    # =========================
    def _execute(self, decision: CycleDecision, ctx: CycleContext) -> SplitExecutionResult | None:
        action = decision.action
        side = Side.BUY if isinstance(action, Buy) else Side.SELL
        cfg = self.config
        client_order_id = decision.client_order_id

        recorded = False
        try:
            self._record_attempt(decision, side)
            recorded = True
            result = self.executor.execute(
                side=side,
                amount=action.size.amount,
                amount_is_base=action.size.is_base,
                chunks=decision.chunks,
                client_order_id=client_order_id,
                slippage_bps=cfg.max_slippage_bps,
                initial_quote=self._initial_quote(ctx.quote, side),
                stop_event=self._stop_event,
                allowed_sources=cfg.allowed_sources,
                excluded_sources=cfg.excluded_sources,
            )
        except DuplicateOrderError as e:
            logger.error(f"🚨 {self.instance_id} duplicate client order id {client_order_id}, not executing")
            self.engine.record_failure(self.state, decision, e.to_swap_error(), ctx.now)
            self._alert(
                AlertType.TRADE_FAILED,
                f"{self.instance_id} {side.value} rejected",
                e.message,
                code=e.code,
                client_order_id=client_order_id,
            )
            return None
        except Exception as e:
            # Capital committed for this plan must not outlive the cycle.
            self.engine.release(decision)
            if recorded:
                self._fail_attempt(client_order_id, e)
            raise

        realized_before = self.state.total_realized_pnl
        done_at = self.clock.now()
        self.engine.record_fill(self.state, decision, result, done_at)
        realized = self.state.total_realized_pnl - realized_before

        self._complete_attempt(result, realized if side == Side.SELL else None, done_at)

        if result.status == ExecutionStatus.FAILED:
            self.analytics.record_failure()
            error = result.error
            self._alert(
                AlertType.TRADE_FAILED,
                f"{self.instance_id} {side.value} failed",
                error.message if error else (result.abort_reason or "execution failed"),
                code=error.code if error else "UNKNOWN_ERROR",
                retryable=error.retryable if error else False,
                client_order_id=client_order_id,
                failures=self.state.consecutive_failures,
            )
            return result

        slippages = [c.slippage_bps for c in result.filled_chunks if c.slippage_bps is not None]
        self.analytics.record_fill(sum(slippages, ZERO) / len(slippages) if slippages else None)

        if self.reporter is not None:
            self.reporter.record_trade(
                instance_id=self.instance_id,
                preset=cfg.preset,
                symbol=cfg.symbol,
                side=side.value,
                code=action.code,
                client_order_id=client_order_id,
                status=result.status.value,
                price=result.average_price,
                base_qty=result.total_base,
                quote_amount=result.total_quote,
                fees=result.total_fees,
                trade_pnl=realized,
                timestamp=done_at,
            )

        self._alert(
            AlertType.TRADE_EXECUTED,
            f"{self.instance_id} {side.value} {result.status.value}",
            action.reason,
            code=action.code,
            client_order_id=client_order_id,
            price=result.average_price,
            base=result.total_base,
            quote=result.total_quote,
            fees=result.total_fees,
            chunks=f"{len(result.filled_chunks)}/{result.requested_chunks}",
            realized_pnl=realized if side == Side.SELL else None,
        )
        return result

    @staticmethod
    def _initial_quote(quote: Quote | None, side: Side) -> Quote | None:
        if quote is None or quote.side != side:
            return None
        return quote

    def _record_attempt(self, decision: CycleDecision, side: Side) -> None:
        if self.session_factory is None:
            return
        action = decision.action
        with self.session_factory() as session:
            TradeRepository(session).record_attempt(
                client_order_id=decision.client_order_id,
                instance_id=self.instance_id,
                symbol=self.config.symbol,
                side=side.value,
                action_code=action.code,
                trading_mode=self.config.trading_mode.value,
                requested_amount=action.size.amount,
                amount_is_base=action.size.is_base,
                chunks_requested=decision.chunks,
            )

    def _fail_attempt(self, client_order_id: str, exc: Exception) -> None:
        if self.session_factory is None:
            return
        error = as_swap_error(exc)
        logger.error(f"❌ {self.instance_id} attempt {client_order_id} aborted | {error.code}: {error.message}")
        with self.session_factory() as session:
            TradeRepository(session).fail_attempt(client_order_id, error.code, error.message)

    def _complete_attempt(self, result: SplitExecutionResult, realized: Decimal | None, done_at) -> None:
        if self.session_factory is None:
            return
        with self.session_factory() as session:
            TradeRepository(session).complete_attempt(
                result.client_order_id,
                result,
                realized_pnl=realized,
                completed_at=done_at,
            )

    # =========================
    # Records / alerts
    # =========================
    def _log_decision(self, decision: CycleDecision, ctx: CycleContext) -> None:
        if self.session_factory is None:
            return
        action = decision.action
        with self.session_factory() as session:
            DecisionRepository(session).save_decision(
                instance_id=self.instance_id,
                action=decision.name,
                code=action.code,
                reason=action.reason,
                regime_detected=decision.regime.regime.value,
                confidence_score=decision.regime.confidence,
                price=ctx.price,
                client_order_id=decision.client_order_id,
                timestamp=ctx.now,
            )

    def _notify_transitions(self, decision: CycleDecision, was_paused: bool, bucket_before: ReserveBucket | None) -> None:
        state = self.state
        if state.paused and not was_paused:
            self._alert(
                AlertType.CIRCUIT_BREAKER,
                f"{self.instance_id} circuit breaker",
                state.pause_reason or decision.action.reason,
                code=decision.action.code,
                failures=state.consecutive_failures,
                daily_realized_pnl=state.daily_realized_pnl,
            )
        elif isinstance(decision.action, Pause) and not state.paused:
            logger.warning(f"⏸️ {self.instance_id} paused this cycle | {decision.action.code}")

        bucket_after = state.reserve.active if state.reserve else None
        if bucket_before is not None and bucket_after is not None and bucket_after != bucket_before:
            self._alert(
                AlertType.RESERVE_TRANSITION,
                f"{self.instance_id} reserve {bucket_before.value} -> {bucket_after.value}",
                f"regime {decision.regime.describe()}",
                bucket=bucket_after,
                regime=decision.regime.regime,
            )

    def _alert(self, type_: AlertType, title: str, message: str, **metadata) -> None:
        metadata = {"instance_id": self.instance_id, **{k: v for k, v in metadata.items() if v is not None}}
        self.alerts.emit(AlertEvent(type=type_, title=title, message=message, metadata=metadata, timestamp=self.clock.now()))

    def _save_state(self) -> None:
        save_state(self.state, self.state_dir)

    def reset(self) -> StrategyState:
        with self._lock:
            self.engine.reset(self.state)
            self._save_state()
            return self.state

    def snapshot(self) -> dict:
        with self._lock:
            return self.state.to_dict()

