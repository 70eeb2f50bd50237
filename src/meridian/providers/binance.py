from __future__ import annotations

from decimal import Decimal, ROUND_DOWN

import requests
from binance.client import Client
from binance.exceptions import BinanceAPIException, BinanceRequestException
from loguru import logger

from meridian.errors import (
    DuplicateOrderError,
    InsufficientBalanceError,
    MeridianError,
    QuoteError,
    QuoteExpiredError,
    RateLimitedError,
    RpcError,
    TransactionError,
)
from meridian.providers.venue import (
    QUOTE_TTL_SECONDS,
    BalanceInfo,
    ConnectivityStatus,
    Quote,
    QuoteRequest,
    SwapResult,
    VenueAdapter,
    adverse_slippage_bps,
    quote_expiry,
)
from meridian.utils.clock import Clock, SystemClock
from meridian.utils.money import BPS_PER_UNIT, ZERO
from meridian.utils.rate_limiter import RateLimiter
from meridian.utils.retry import poll_until
from meridian.utils.trading_mode import Side

SOURCE_NAME = "binance"
TERMINAL_STATUSES = {"FILLED", "CANCELED", "EXPIRED", "REJECTED", "EXPIRED_IN_MATCH"}


def map_binance_error(e: Exception) -> MeridianError:
    """Translate python-binance / transport errors into the meridian taxonomy."""
    if isinstance(e, BinanceAPIException):
        message = f"binance {e.code}: {e.message}"
        text = (e.message or "").lower()
        if e.status_code == 429 or e.status_code == 418 or e.code in (-1003, -1015):
            return RateLimitedError(message, details={"code": e.code})
        if e.status_code and e.status_code >= 500:
            return RpcError(message, details={"code": e.code})
        if "duplicate" in text:
            return DuplicateOrderError(message, details={"code": e.code})
        if "insufficient balance" in text or (e.code == -2010 and "balance" in text):
            return InsufficientBalanceError(message, details={"code": e.code})
        if e.code in (-1001, -1007, -1021):
            return RpcError(message, details={"code": e.code})
        return TransactionError(message, details={"code": e.code})
    if isinstance(e, (BinanceRequestException, requests.RequestException)):
        return RpcError(str(e))
    if isinstance(e, MeridianError):
        return e
    return TransactionError(str(e) or type(e).__name__)


class BinanceVenue(VenueAdapter):
    """
    Spot market venue on Binance. Quotes walk the order book, swaps are
    MARKET orders tagged with newClientOrderId so Binance itself rejects a
    repeated id; a repeat of an already filled id returns the original fill.
    """

    name = SOURCE_NAME

    def __init__(
        self,
        client: Client,
        *,
        symbol: str,
        base_asset: str,
        quote_asset: str,
        native_asset: str = "BNB",
        clock: Clock | None = None,
        rate_limiter: RateLimiter | None = None,
        quote_ttl_seconds: int = QUOTE_TTL_SECONDS,
        depth_limit: int = 100,
        confirm_attempts: int = 5,
        confirm_interval: float = 1.0,
    ) -> None:
        logger.debug(f"Initializing Binance venue for {symbol}")
        self._client = client
        self.symbol = symbol.upper()
        self.base_asset = base_asset.upper()
        self.quote_asset = quote_asset.upper()
        self.native_asset = native_asset.upper()
        self.clock = clock or SystemClock()
        self.rate_limiter = rate_limiter or RateLimiter(10, 10, monotonic=self.clock.monotonic, sleep=self.clock.sleep)
        self.quote_ttl_seconds = quote_ttl_seconds
        self.depth_limit = depth_limit
        self.confirm_attempts = confirm_attempts
        self.confirm_interval = confirm_interval
        self._symbol_info: dict | None = None

    @classmethod
    def from_keys(cls, api_key: str, api_secret: str, **kwargs) -> "BinanceVenue":
        return cls(Client(api_key, api_secret), **kwargs)

    # =========================
    # Low-level helpers
    # =========================
    def _call(self, fn, *args, **kwargs):
        self.rate_limiter.acquire()
        try:
            return fn(*args, **kwargs)
        except (BinanceAPIException, BinanceRequestException, requests.RequestException) as e:
            raise map_binance_error(e) from e

    def _get_symbol_info(self) -> dict:
        if self._symbol_info is None:
            info = self._call(self._client.get_symbol_info, self.symbol)
            if not info:
                raise QuoteError(f"Unknown symbol {self.symbol}", retryable=False)
            self._symbol_info = info
        return self._symbol_info

    def _get_filter(self, filter_type: str) -> dict | None:
        for f in self._get_symbol_info().get("filters", []):
            if f.get("filterType") == filter_type:
                return f
        return None

    def _adjust_qty(self, qty: Decimal) -> Decimal:
        """Round a base quantity down to LOT_SIZE stepSize."""
        lot_size = self._get_filter("LOT_SIZE")
        if lot_size is None:
            return qty
        step = Decimal(lot_size["stepSize"])
        return (qty / step).to_integral_value(rounding=ROUND_DOWN) * step

    def _min_notional(self) -> Decimal:
        for name in ("NOTIONAL", "MIN_NOTIONAL"):
            f = self._get_filter(name)
            if f is not None:
                return Decimal(str(f.get("minNotional", "0")))
        return ZERO

    # =========================
    # Balances / prices
    # =========================
    def get_balances(self) -> BalanceInfo:
        account = self._call(self._client.get_account)
        free = {b["asset"]: Decimal(b["free"]) for b in account.get("balances", [])}
        return BalanceInfo(
            base=free.get(self.base_asset, ZERO),
            quote=free.get(self.quote_asset, ZERO),
            native_for_gas=free.get(self.native_asset, ZERO),
        )

    def get_price(self) -> Decimal:
        return Decimal(self._call(self._client.get_symbol_ticker, symbol=self.symbol)["price"])

    def get_reference_price(self) -> Decimal:
        """Exchange rolling average price, used as the secondary source for deviation checks."""
        return Decimal(self._call(self._client.get_avg_price, symbol=self.symbol)["price"])

    def get_liquidity(self, side: Side) -> Decimal:
        """Quote-unit depth on the side a `side` order consumes."""
        book = self._call(self._client.get_order_book, symbol=self.symbol, limit=self.depth_limit)
        levels = book["asks"] if side == Side.BUY else book["bids"]
        return sum((Decimal(p) * Decimal(q) for p, q in levels), ZERO)

    # =========================
    # Quotes
    # =========================
    def get_quote(self, request: QuoteRequest) -> Quote:
        if request.allowed_sources and SOURCE_NAME not in request.allowed_sources:
            raise QuoteError(f"{SOURCE_NAME} not in allowed sources {request.allowed_sources}", retryable=False)
        if SOURCE_NAME in request.excluded_sources:
            raise QuoteError(f"{SOURCE_NAME} is excluded", retryable=False)

        book = self._call(self._client.get_order_book, symbol=self.symbol, limit=self.depth_limit)
        levels = book["asks"] if request.side == Side.BUY else book["bids"]
        if not levels:
            raise QuoteError(f"empty order book for {self.symbol}")

        best = Decimal(levels[0][0])
        base_total, quote_total = self._walk_book(levels, request.amount, request.amount_is_base)
        if base_total <= 0:
            raise QuoteError(f"no fillable depth for {request.amount} on {self.symbol}")

        price = quote_total / base_total
        impact = adverse_slippage_bps(request.side, best, price)
        if request.side == Side.BUY:
            input_amount, output_amount = quote_total, base_total
        else:
            input_amount, output_amount = base_total, quote_total

        return Quote(
            request=request,
            input_amount=input_amount,
            output_amount=output_amount,
            price=price,
            price_impact_bps=impact,
            expires_at=quote_expiry(self.clock.now(), self.quote_ttl_seconds),
            route=SOURCE_NAME,
            raw={"best": str(best)},
        )

    def _walk_book(self, levels: list, amount: Decimal, amount_is_base: bool) -> tuple[Decimal, Decimal]:
        remaining = amount
        base_total = ZERO
        quote_total = ZERO
        for raw_price, raw_qty in levels:
            if remaining <= 0:
                break
            level_price = Decimal(raw_price)
            level_qty = Decimal(raw_qty)
            if amount_is_base:
                take = min(level_qty, remaining)
                remaining -= take
            else:
                take = min(level_qty, remaining / level_price)
                remaining -= take * level_price
            base_total += take
            quote_total += take * level_price
        if remaining > 0:
            raise QuoteError(
                f"order book depth too thin: {remaining} of {amount} unfilled",
                details={"remaining": str(remaining)},
            )
        return base_total, quote_total

    # =========================
    # Execution
    # =========================
    def execute_swap(self, quote: Quote, client_order_id: str) -> SwapResult:
        if quote.is_expired(self.clock.now()):
            return SwapResult.failure(client_order_id, QuoteExpiredError("quote expired before execution").to_swap_error())

        request = quote.request
        params = {
            "symbol": self.symbol,
            "side": request.side.value,
            "type": "MARKET",
            "newClientOrderId": client_order_id,
            "newOrderRespType": "FULL",
        }
        if request.amount_is_base:
            qty = self._adjust_qty(request.amount)
            if qty <= 0:
                return SwapResult.failure(
                    client_order_id,
                    TransactionError(f"quantity {request.amount} below LOT_SIZE step").to_swap_error(),
                )
            params["quantity"] = f"{qty:f}"
        else:
            params["quoteOrderQty"] = f"{request.amount:f}"

        notional = quote.quote_amount
        minimum = self._min_notional()
        if notional < minimum:
            return SwapResult.failure(
                client_order_id,
                TransactionError(f"notional {notional} below exchange minimum {minimum}").to_swap_error(),
            )

        logger.info(f"{request.side.value} | symbol={self.symbol} | id={client_order_id} | {params}")
        try:
            order = self._call(self._client.create_order, **params)
        except DuplicateOrderError as e:
            existing = self._existing_order(client_order_id)
            if existing is not None and existing.get("status") == "FILLED":
                logger.warning(f"Duplicate id {client_order_id} already filled; returning original fill")
                return self._to_result(quote, client_order_id, existing)
            return SwapResult.failure(client_order_id, e.to_swap_error())
        except MeridianError as e:
            logger.warning(f"Order rejected | id={client_order_id} | {e.code} | {e.message}")
            return SwapResult.failure(client_order_id, e.to_swap_error())

        try:
            order = self._confirm(order, client_order_id)
        except MeridianError as e:
            return SwapResult.failure(client_order_id, e.to_swap_error())

        if Decimal(order.get("executedQty", "0")) <= 0:
            return SwapResult.failure(
                client_order_id,
                TransactionError(f"order {client_order_id} ended {order.get('status')} with no fill").to_swap_error(),
            )

        result = self._to_result(quote, client_order_id, order)
        logger.success(
            f"ORDER FILLED | id={client_order_id} | base={result.base_filled(request.side)} "
            f"| quote={result.quote_filled(request.side)} | price={result.executed_price}"
        )
        return result

    def _existing_order(self, client_order_id: str) -> dict | None:
        try:
            return self._call(self._client.get_order, symbol=self.symbol, origClientOrderId=client_order_id)
        except MeridianError as e:
            logger.warning(f"Lookup of {client_order_id} failed: {e.message}")
            return None

    def _confirm(self, order: dict, client_order_id: str) -> dict:
        if order.get("status") in TERMINAL_STATUSES:
            return order

        def check():
            current = self._call(self._client.get_order, symbol=self.symbol, origClientOrderId=client_order_id)
            return current if current.get("status") in TERMINAL_STATUSES else None

        return poll_until(
            check,
            max_attempts=self.confirm_attempts,
            interval=self.confirm_interval,
            sleep=self.clock.sleep,
            label=f"order {client_order_id}",
        )

    def _to_result(self, quote: Quote, client_order_id: str, order: dict) -> SwapResult:
        side = quote.side
        base = Decimal(order.get("executedQty", "0"))
        quote_amt = Decimal(order.get("cummulativeQuoteQty", "0"))
        price = quote_amt / base if base > 0 else ZERO

        fees = ZERO
        for fill in order.get("fills", []):
            commission = Decimal(fill.get("commission", "0"))
            asset = fill.get("commissionAsset", "")
            if asset == self.quote_asset:
                fees += commission
            elif asset == self.base_asset:
                fees += commission * Decimal(fill.get("price", price))

        if side == Side.BUY:
            input_amount, output_amount = quote_amt, base
        else:
            input_amount, output_amount = base, quote_amt

        return SwapResult(
            success=True,
            client_order_id=client_order_id,
            input_amount=input_amount,
            output_amount=output_amount,
            executed_price=price,
            actual_slippage_bps=adverse_slippage_bps(side, quote.price, price),
            fees_quote=fees,
            tx_id=str(order.get("orderId")) if order.get("orderId") is not None else None,
        )

    # =========================
    # Health
    # =========================
    def check_connectivity(self) -> ConnectivityStatus:
        started = self.clock.monotonic()
        try:
            self._call(self._client.ping)
            server_ms = self.get_current_block()
        except MeridianError as e:
            return ConnectivityStatus(connected=False, latency_ms=0, errors=(e.message,))
        latency = int((self.clock.monotonic() - started) * 1000)
        return ConnectivityStatus(connected=True, latency_ms=latency, block_height=server_ms)

    def get_current_block(self) -> int:
        """Binance has no blocks; server time in ms serves as the monotonic height."""
        return int(self._call(self._client.get_server_time)["serverTime"])

    def spread_bps(self) -> Decimal:
        book = self._call(self._client.get_order_book, symbol=self.symbol, limit=5)
        bid = Decimal(book["bids"][0][0])
        ask = Decimal(book["asks"][0][0])
        return (ask - bid) / bid * BPS_PER_UNIT
