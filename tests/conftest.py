from collections import deque
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from loguru import logger

from meridian.errors import DuplicateOrderError, InsufficientBalanceError, MeridianError
from meridian.persistence.db import create_db_engine, create_session_factory, init_db
from meridian.providers.venue import (
    BalanceInfo,
    ConnectivityStatus,
    Quote,
    QuoteRequest,
    SwapResult,
    VenueAdapter,
    quote_expiry,
)
from meridian.utils.bot_config import StrategyConfig
from meridian.utils.clock import Clock
from meridian.utils.trading_mode import Side

START = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock(Clock):
    """Manual time. `sleep` records the delay and advances time instead of blocking."""

    def __init__(self, start: datetime = START):
        self.current = start
        self.sleeps: list[float] = []
        self._monotonic = 0.0

    def now(self) -> datetime:
        return self.current

    def monotonic(self) -> float:
        return self._monotonic

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.advance(seconds)

    def advance(self, seconds: float = 0, **kwargs) -> datetime:
        delta = timedelta(seconds=seconds, **kwargs)
        self.current += delta
        self._monotonic += delta.total_seconds()
        return self.current


class ScriptedVenue(VenueAdapter):
    """
    In-memory venue. Quotes are taken at `price` (optionally with a fixed
    impact), fills happen at the quoted price unless a scripted outcome is
    queued. Queued errors are raised in order; executed ids are rejected.
    """

    name = "scripted"

    def __init__(
        self,
        clock: FakeClock,
        *,
        price: Decimal = Decimal("100"),
        base: Decimal = Decimal("0"),
        quote: Decimal = Decimal("1000"),
        native: Decimal = Decimal("1"),
        impact_bps: Decimal | None = Decimal("0"),
        ttl_seconds: int = 30,
    ):
        self.clock = clock
        self.price = price
        self.balances = BalanceInfo(base=base, quote=quote, native_for_gas=native)
        self.impact_bps = impact_bps
        self.ttl_seconds = ttl_seconds
        self.balance_errors: deque[Exception] = deque()
        self.quote_errors: deque[Exception] = deque()
        self.swap_outcomes: deque = deque()
        self.quote_prices: deque[Decimal] = deque()
        self.fill_prices: deque[Decimal] = deque()
        self.executed_ids: list[str] = []
        self.swap_calls: list[str] = []
        self.quotes: list[Quote] = []

    def get_balances(self) -> BalanceInfo:
        if self.balance_errors:
            raise self.balance_errors.popleft()
        return self.balances

    def get_quote(self, request: QuoteRequest) -> Quote:
        if self.quote_errors:
            raise self.quote_errors.popleft()
        price = self.quote_prices.popleft() if self.quote_prices else self.price
        if request.amount_is_base:
            base, quote_amt = request.amount, request.amount * price
        else:
            base, quote_amt = request.amount / price, request.amount
        if request.side == Side.BUY:
            input_amount, output_amount = quote_amt, base
        else:
            input_amount, output_amount = base, quote_amt
        quote = Quote(
            request=request,
            input_amount=input_amount,
            output_amount=output_amount,
            price=price,
            price_impact_bps=self.impact_bps,
            expires_at=quote_expiry(self.clock.now(), self.ttl_seconds),
            route=self.name,
        )
        self.quotes.append(quote)
        return quote

    def execute_swap(self, quote: Quote, client_order_id: str) -> SwapResult:
        self.swap_calls.append(client_order_id)
        if client_order_id in self.executed_ids:
            return SwapResult.failure(client_order_id, DuplicateOrderError("already executed").to_swap_error())
        if self.swap_outcomes:
            outcome = self.swap_outcomes.popleft()
            if isinstance(outcome, MeridianError):
                return SwapResult.failure(client_order_id, outcome.to_swap_error())
            if isinstance(outcome, Exception):
                raise outcome

        price = self.fill_prices.popleft() if self.fill_prices else quote.price
        if quote.request.amount_is_base:
            base = quote.request.amount
            quote_amt = base * price
        else:
            quote_amt = quote.request.amount
            base = quote_amt / price

        b = self.balances
        if quote.side == Side.BUY:
            if quote_amt > b.quote:
                return SwapResult.failure(client_order_id, InsufficientBalanceError("no quote").to_swap_error())
            self.balances = BalanceInfo(base=b.base + base, quote=b.quote - quote_amt, native_for_gas=b.native_for_gas)
            input_amount, output_amount = quote_amt, base
        else:
            if base > b.base:
                return SwapResult.failure(client_order_id, InsufficientBalanceError("no base").to_swap_error())
            self.balances = BalanceInfo(base=b.base - base, quote=b.quote + quote_amt, native_for_gas=b.native_for_gas)
            input_amount, output_amount = base, quote_amt

        self.executed_ids.append(client_order_id)
        return SwapResult(
            success=True,
            client_order_id=client_order_id,
            input_amount=input_amount,
            output_amount=output_amount,
            executed_price=price,
            tx_id=f"tx-{len(self.executed_ids)}",
        )

    def check_connectivity(self) -> ConnectivityStatus:
        return ConnectivityStatus(connected=True, latency_ms=1, block_height=self.get_current_block())

    def get_current_block(self) -> int:
        return int(self.clock.now().timestamp())


def build_config(**overrides) -> StrategyConfig:
    values = dict(
        instance_id="bot-a",
        symbol="BNBUSDT",
        base_asset="BNB",
        quote_asset="USDT",
        trade_size=Decimal("100"),
        min_trade_notional=Decimal("10"),
        min_quote_reserve=Decimal("0"),
        cooldown_seconds=0,
        max_trades_per_hour=100,
        venue_fee_pct=Decimal("0.1"),
        chunk_delay_seconds=Decimal("0"),
    )
    values.update(overrides)
    return StrategyConfig(**values)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def venue(clock):
    return ScriptedVenue(clock)


@pytest.fixture
def session_factory(tmp_path):
    engine = create_db_engine(f"sqlite:///{tmp_path / 'meridian.db'}")
    init_db(engine)
    return create_session_factory(engine)


@pytest.fixture
def make_config():
    return build_config


@pytest.fixture
def captured_logs():
    messages: list[str] = []
    handler_id = logger.add(lambda m: messages.append(m.record["message"]), level="DEBUG")
    yield messages
    logger.remove(handler_id)
