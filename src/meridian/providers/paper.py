from __future__ import annotations

import threading
from decimal import Decimal

from loguru import logger

from meridian.errors import DuplicateOrderError, InsufficientBalanceError, QuoteExpiredError
from meridian.providers.venue import (
    BalanceInfo,
    ConnectivityStatus,
    Quote,
    QuoteRequest,
    SwapResult,
    VenueAdapter,
)
from meridian.utils.clock import Clock, SystemClock
from meridian.utils.money import HUNDRED, ZERO
from meridian.utils.trading_mode import Side


class DryRunVenue(VenueAdapter):
    """
    Paper trading on top of a real venue: quotes and connectivity come from
    the wrapped venue, swaps fill synthetically at the quoted price against
    virtual balances. Repeated client order ids are rejected like a live venue.
    """

    name = "dry-run"

    def __init__(
        self,
        inner: VenueAdapter,
        *,
        clock: Clock | None = None,
        fee_pct: Decimal = Decimal("0.1"),
        starting_balances: BalanceInfo | None = None,
    ) -> None:
        self.inner = inner
        self.clock = clock or SystemClock()
        self.fee_pct = fee_pct
        self._balances = starting_balances
        self._seen_ids: set[str] = set()
        self._lock = threading.Lock()

    def get_balances(self) -> BalanceInfo:
        with self._lock:
            if self._balances is None:
                self._balances = self.inner.get_balances()
                logger.info(
                    f"🧪 Dry-run balances seeded from {self.inner.name} | base={self._balances.base} "
                    f"| quote={self._balances.quote}"
                )
            return self._balances

    def get_quote(self, request: QuoteRequest) -> Quote:
        return self.inner.get_quote(request)

    def execute_swap(self, quote: Quote, client_order_id: str) -> SwapResult:
        if quote.is_expired(self.clock.now()):
            return SwapResult.failure(client_order_id, QuoteExpiredError("quote expired before execution").to_swap_error())

        balances = self.get_balances()
        with self._lock:
            if client_order_id in self._seen_ids:
                return SwapResult.failure(
                    client_order_id,
                    DuplicateOrderError(f"client order id {client_order_id} already executed").to_swap_error(),
                )

            side = quote.side
            base = quote.base_amount
            quote_amt = quote.quote_amount
            fee = quote_amt * self.fee_pct / HUNDRED

            if side == Side.BUY:
                if quote_amt > balances.quote:
                    return SwapResult.failure(
                        client_order_id,
                        InsufficientBalanceError(f"need {quote_amt} quote, have {balances.quote}").to_swap_error(),
                    )
                # Buy fees come out of the base received.
                received = base - base * self.fee_pct / HUNDRED
                new_base, new_quote = balances.base + received, balances.quote - quote_amt
                input_amount, output_amount = quote_amt, received
            else:
                if base > balances.base:
                    return SwapResult.failure(
                        client_order_id,
                        InsufficientBalanceError(f"need {base} base, have {balances.base}").to_swap_error(),
                    )
                new_base, new_quote = balances.base - base, balances.quote + quote_amt - fee
                input_amount, output_amount = base, quote_amt

            self._seen_ids.add(client_order_id)
            self._balances = BalanceInfo(base=new_base, quote=new_quote, native_for_gas=balances.native_for_gas)

        logger.info(
            f"🧪 DRY-RUN {side.value} | id={client_order_id} | base={base} | quote={quote_amt:.4f} "
            f"| price={quote.price:.6f}"
        )
        return SwapResult(
            success=True,
            client_order_id=client_order_id,
            input_amount=input_amount,
            output_amount=output_amount,
            executed_price=quote.price,
            actual_slippage_bps=ZERO,
            fees_quote=fee,
            tx_id=f"dry-{client_order_id}",
        )

    def check_connectivity(self) -> ConnectivityStatus:
        return self.inner.check_connectivity()

    def get_current_block(self) -> int:
        return self.inner.get_current_block()
