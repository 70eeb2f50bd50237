from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal

from meridian.errors import SwapError
from meridian.utils.money import ZERO, as_utc
from meridian.utils.trading_mode import Side

QUOTE_TTL_SECONDS = 30


# =========================
# Value types
# =========================

@dataclass(frozen=True)
class BalanceInfo:
    base: Decimal
    quote: Decimal
    native_for_gas: Decimal = ZERO


@dataclass(frozen=True)
class QuoteRequest:
    side: Side
    amount: Decimal
    amount_is_base: bool
    slippage_bps: int
    allowed_sources: tuple[str, ...] = ()
    excluded_sources: tuple[str, ...] = ()


@dataclass(frozen=True)
class Quote:
    """
    Executable price for one request. BUY spends quote (input) for base
    (output); SELL spends base for quote.
    """
    request: QuoteRequest
    input_amount: Decimal
    output_amount: Decimal
    price: Decimal
    price_impact_bps: Decimal | None
    expires_at: datetime
    route: str = ""
    raw: object = field(default=None, compare=False, repr=False)

    @property
    def side(self) -> Side:
        return self.request.side

    @property
    def base_amount(self) -> Decimal:
        return self.output_amount if self.side == Side.BUY else self.input_amount

    @property
    def quote_amount(self) -> Decimal:
        return self.input_amount if self.side == Side.BUY else self.output_amount

    def is_expired(self, now: datetime) -> bool:
        return as_utc(now) >= as_utc(self.expires_at)


def quote_expiry(now: datetime, ttl_seconds: int = QUOTE_TTL_SECONDS) -> datetime:
    return as_utc(now) + timedelta(seconds=ttl_seconds)


@dataclass(frozen=True)
class SwapResult:
    success: bool
    client_order_id: str
    input_amount: Decimal = ZERO
    output_amount: Decimal = ZERO
    executed_price: Decimal = ZERO
    actual_slippage_bps: Decimal | None = None
    fees_quote: Decimal = ZERO
    tx_id: str | None = None
    error: SwapError | None = None

    @classmethod
    def failure(cls, client_order_id: str, error: SwapError) -> "SwapResult":
        return cls(success=False, client_order_id=client_order_id, error=error)

    def base_filled(self, side: Side) -> Decimal:
        return self.output_amount if side == Side.BUY else self.input_amount

    def quote_filled(self, side: Side) -> Decimal:
        return self.input_amount if side == Side.BUY else self.output_amount


@dataclass(frozen=True)
class ConnectivityStatus:
    connected: bool
    latency_ms: int
    block_height: int | None = None
    errors: tuple[str, ...] = ()


# =========================
# Capability
# =========================

class VenueAdapter:
    """
    Venue capability consumed by the engine. Implementations must reject a
    repeated client_order_id instead of executing it a second time.
    """

    name = "venue"

    def get_balances(self) -> BalanceInfo:
        raise NotImplementedError

    def get_quote(self, request: QuoteRequest) -> Quote:
        raise NotImplementedError

    def execute_swap(self, quote: Quote, client_order_id: str) -> SwapResult:
        raise NotImplementedError

    def check_connectivity(self) -> ConnectivityStatus:
        raise NotImplementedError

    def get_current_block(self) -> int:
        raise NotImplementedError


def adverse_slippage_bps(side: Side, quoted_price: Decimal, executed_price: Decimal) -> Decimal:
    """Positive when the fill is worse than the quote (higher for BUY, lower for SELL)."""
    if quoted_price <= 0:
        return ZERO
    diff = executed_price - quoted_price if side == Side.BUY else quoted_price - executed_price
    return diff / quoted_price * Decimal("10000")
