from __future__ import annotations

from typing import Callable

from loguru import logger
from sqlalchemy.orm import Session

from meridian.config.bot_config_store import save_config
from meridian.config.settings import Settings
from meridian.errors import ConfigurationError
from meridian.execution.capital_allocator import CapitalAllocator
from meridian.providers.alerts import AlertDispatcher, AlertEvent, AlertSink, WebhookAlertSink
from meridian.providers.binance import BinanceVenue
from meridian.providers.paper import DryRunVenue
from meridian.providers.Telegram import TelegramNotifier
from meridian.providers.venue import BalanceInfo, VenueAdapter
from meridian.reporting.trade_reporter import TradeReporter
from meridian.repository.alert_repository import AlertRepository
from meridian.service.bot_state import StrategyState
from meridian.service.profiles import apply_preset
from meridian.service.worker import BotWorker
from meridian.state.trade_state import load_state, save_state
from meridian.strategy.engine import StrategyEngine
from meridian.utils.bot_config import StrategyConfig
from meridian.utils.clock import Clock, SystemClock
from meridian.utils.trading_mode import TradingMode

VenueFactory = Callable[[StrategyConfig], VenueAdapter]


def build_alert_dispatcher(
    settings: Settings,
    session_factory: Callable[[], Session] | None = None,
) -> AlertDispatcher:
    sinks: list[AlertSink] = []
    if settings.alert_webhook_url:
        sinks.append(WebhookAlertSink(settings.alert_webhook_url))
    if settings.has_telegram:
        sinks.append(TelegramNotifier.from_token(settings.telegram_bot_token, settings.telegram_chat_id))

    def record(event: AlertEvent, delivered: dict[str, bool]) -> None:
        with session_factory() as session:
            repo = AlertRepository(session)
            saved = repo.save_alert(event)
            repo.mark_delivered(
                saved.alert_id,
                webhook=delivered.get(WebhookAlertSink.name, False),
                telegram=delivered.get(TelegramNotifier.name, False),
            )

    logger.info(f"🔔 Alert sinks: {[s.name for s in sinks] or 'log only'}")
    return AlertDispatcher(sinks, on_recorded=record if session_factory is not None else None)


class BotService:
    """
    Owns the running instances of one process. Every instance gets its own
    engine, state and worker thread; the CapitalAllocator is shared so all
    instances trading from one wallet see the same ledger.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        session_factory: Callable[[], Session] | None = None,
        venue_factory: VenueFactory | None = None,
        alerts: AlertDispatcher | None = None,
        reporter: TradeReporter | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.settings = settings
        self.session_factory = session_factory
        self.venue_factory = venue_factory or self._binance_venue
        self.alerts = alerts or build_alert_dispatcher(settings, session_factory)
        self.reporter = reporter or TradeReporter()
        self.clock = clock or SystemClock()
        self.allocator = CapitalAllocator(min_reserve=settings.wallet_min_reserve)
        self._workers: dict[str, BotWorker] = {}

        logger.info("🧠 BotService initialized")

    # =========================
    # Venues
    # =========================
    def _binance_venue(self, config: StrategyConfig) -> BinanceVenue:
        kwargs = dict(
            symbol=config.symbol,
            base_asset=config.base_asset,
            quote_asset=config.quote_asset,
            clock=self.clock,
            quote_ttl_seconds=config.quote_ttl_seconds,
        )
        if self.settings.has_binance_keys:
            return BinanceVenue.from_keys(self.settings.binance_api_key, self.settings.binance_api_secret, **kwargs)
        if config.trading_mode == TradingMode.LIVE:
            raise ConfigurationError("Missing BINANCE_API_KEY or BINANCE_API_SECRET for live trading")
        # Public market data only; balances must come from paper_balances.
        return BinanceVenue.from_keys(None, None, **kwargs)

    def build_venue(self, config: StrategyConfig, paper_balances: BalanceInfo | None = None) -> VenueAdapter:
        venue = self.venue_factory(config)
        if config.trading_mode == TradingMode.DRY_RUN:
            logger.info(f"🧪 {config.instance_id} runs in DRY_RUN on {venue.name} prices")
            return DryRunVenue(
                venue,
                clock=self.clock,
                fee_pct=config.venue_fee_pct,
                starting_balances=paper_balances,
            )
        return venue

    # =========================
    # Instance lifecycle
    # =========================
    def start_instance(self, config: StrategyConfig, *, paper_balances: BalanceInfo | None = None) -> BotWorker:
        instance_id = config.instance_id
        if instance_id in self._workers:
            raise RuntimeError(f"Instance already running: {instance_id}")

        logger.info(
            f"🚀 Starting instance | {instance_id} | {config.symbol} | preset={config.preset} "
            f"| mode={config.trading_mode.value}"
        )
        save_config(config, self.settings.config_dir)

        state = load_state(instance_id, self.settings.state_dir)
        if state is None:
            state = StrategyState(instance_id=instance_id)
        elif state.paused:
            logger.warning(f"⏸️ {instance_id} resumes paused: {state.pause_reason}")

        venue = self.build_venue(config, paper_balances)
        inner = venue.inner if isinstance(venue, DryRunVenue) else venue
        worker = BotWorker(
            engine=StrategyEngine(config, allocator=self.allocator),
            venue=venue,
            state=state,
            clock=self.clock,
            session_factory=self.session_factory,
            alerts=self.alerts,
            reporter=self.reporter,
            state_dir=self.settings.state_dir,
            interval_seconds=self.settings.loop_interval_seconds,
            secondary_price_source=inner.get_reference_price if isinstance(inner, BinanceVenue) else None,
            liquidity_source=inner.get_liquidity if isinstance(inner, BinanceVenue) else None,
        )
        worker.start()
        self._workers[instance_id] = worker
        return worker

    def stop_instance(self, instance_id: str, timeout: float = 30.0) -> None:
        worker = self._workers.get(instance_id)
        if worker is None:
            raise RuntimeError(f"No running instance {instance_id}")

        logger.warning(f"🛑 Stopping instance | {instance_id}")
        worker.stop()
        worker.join(timeout=timeout)
        if worker.is_alive():
            logger.warning(f"⚠️ {instance_id} still finishing its cycle after {timeout}s")

        released = self.allocator.release_instance(worker.config.wallet_id, instance_id)
        if released:
            logger.info(f"Released {released} open plan(s) for {instance_id}")
        del self._workers[instance_id]

    def stop_all(self) -> None:
        for instance_id in list(self._workers):
            self.stop_instance(instance_id)

    def restart_with_config(self, config: StrategyConfig) -> BotWorker:
        if config.instance_id in self._workers:
            self.stop_instance(config.instance_id)
        return self.start_instance(config)

    def apply_preset(self, instance_id: str, preset_name: str) -> StrategyConfig:
        worker = self._workers.get(instance_id)
        if worker is None:
            raise RuntimeError(f"No running instance {instance_id}")
        config = apply_preset(worker.config, preset_name)
        self.restart_with_config(config)
        return config

    # =========================
    # Inspection / control
    # =========================
    @property
    def running(self) -> list[str]:
        return sorted(i for i, w in self._workers.items() if w.is_alive())

    def get_worker(self, instance_id: str) -> BotWorker | None:
        return self._workers.get(instance_id)

    def get_state(self, instance_id: str) -> StrategyState | None:
        worker = self._workers.get(instance_id)
        if worker is not None:
            return worker.state
        return load_state(instance_id, self.settings.state_dir)

    def reset_instance(self, instance_id: str) -> StrategyState:
        """Clear a latched circuit breaker, live or from the persisted state."""
        worker = self._workers.get(instance_id)
        if worker is not None:
            return worker.reset()

        state = load_state(instance_id, self.settings.state_dir)
        if state is None:
            raise RuntimeError(f"No saved state for {instance_id}")
        StrategyEngine.reset(state)
        save_state(state, self.settings.state_dir)
        return state
