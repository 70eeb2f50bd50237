from __future__ import annotations

import enum
import threading
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_DOWN

from loguru import logger

from meridian.errors import (
    MeridianError,
    PriceDeviationError,
    QuoteExpiredError,
    SlippageExceededError,
    SwapError,
    as_swap_error,
    error_from_swap,
)
from meridian.providers.venue import (
    Quote,
    QuoteRequest,
    VenueAdapter,
    adverse_slippage_bps,
)
from meridian.utils.clock import Clock
from meridian.utils.money import HUNDRED, ZERO
from meridian.utils.order_id import chunk_order_id
from meridian.utils.retry import BackoffState, RetryPolicy
from meridian.utils.trading_mode import Side

AMOUNT_STEP = Decimal("0.00000001")


class ExecutionStatus(str, enum.Enum):
    COMPLETE = "COMPLETE"
    PARTIAL = "PARTIAL"
    FAILED = "FAILED"


@dataclass(frozen=True)
class ChunkResult:
    index: int
    client_order_id: str
    requested_amount: Decimal
    success: bool
    base_filled: Decimal = ZERO
    quote_filled: Decimal = ZERO
    executed_price: Decimal = ZERO
    slippage_bps: Decimal | None = None
    fees_quote: Decimal = ZERO
    attempts: int = 1
    error: SwapError | None = None


@dataclass(frozen=True)
class SplitExecutionResult:
    client_order_id: str
    side: Side
    requested_amount: Decimal
    amount_is_base: bool
    requested_chunks: int
    chunks: tuple[ChunkResult, ...] = field(default_factory=tuple)
    abort_reason: str | None = None
    error: SwapError | None = None

    @property
    def filled_chunks(self) -> tuple[ChunkResult, ...]:
        return tuple(c for c in self.chunks if c.success)

    @property
    def status(self) -> ExecutionStatus:
        filled = len(self.filled_chunks)
        if filled == 0:
            return ExecutionStatus.FAILED
        if filled == self.requested_chunks:
            return ExecutionStatus.COMPLETE
        return ExecutionStatus.PARTIAL

    @property
    def success(self) -> bool:
        return self.status != ExecutionStatus.FAILED

    @property
    def total_base(self) -> Decimal:
        return sum((c.base_filled for c in self.filled_chunks), ZERO)

    @property
    def total_quote(self) -> Decimal:
        return sum((c.quote_filled for c in self.filled_chunks), ZERO)

    @property
    def total_fees(self) -> Decimal:
        return sum((c.fees_quote for c in self.filled_chunks), ZERO)

    @property
    def input_amount(self) -> Decimal:
        return self.total_quote if self.side == Side.BUY else self.total_base

    @property
    def output_amount(self) -> Decimal:
        return self.total_base if self.side == Side.BUY else self.total_quote

    @property
    def average_price(self) -> Decimal:
        """Size-weighted executed price across filled chunks."""
        base = self.total_base
        if base <= 0:
            return ZERO
        return self.total_quote / base

    def describe(self) -> str:
        text = (
            f"{self.side.value} {self.status.value} | chunks={len(self.filled_chunks)}/{self.requested_chunks} "
            f"| base={self.total_base:.8f} | quote={self.total_quote:.4f} | avg={self.average_price:.6f}"
        )
        if self.abort_reason:
            text += f" | abort={self.abort_reason}"
        return text


def split_amounts(amount: Decimal, chunks: int) -> list[Decimal]:
    """Equal chunks rounded down to 1e-8; the last chunk takes the remainder."""
    if chunks <= 1:
        return [amount]
    each = (amount / chunks).quantize(AMOUNT_STEP, rounding=ROUND_DOWN)
    parts = [each] * (chunks - 1)
    parts.append(amount - each * (chunks - 1))
    return parts


class SplitExecutor:
    """
    Executes one sized trade as sequential chunks against a venue.

    Each chunk re-quotes when its quote is missing or expired, retries
    transient failures with backoff under the same chunk order id, and
    stops the run when a fill slips past `max_slippage_bps` or the price
    drifts past `price_move_abort_pct`. Filled chunks are never reversed.
    A stop signal is honoured only between chunks.
    """

    def __init__(
        self,
        venue: VenueAdapter,
        *,
        clock: Clock,
        max_slippage_bps: int,
        retry_policy: RetryPolicy | None = None,
        price_move_abort_pct: Decimal | None = None,
        chunk_delay_seconds: Decimal = ZERO,
    ) -> None:
        self.venue = venue
        self.clock = clock
        self.max_slippage_bps = Decimal(max_slippage_bps)
        self.retry_policy = retry_policy or RetryPolicy()
        self.price_move_abort_pct = price_move_abort_pct
        self.chunk_delay_seconds = chunk_delay_seconds

    def execute(
        self,
        *,
        side: Side,
        amount: Decimal,
        amount_is_base: bool,
        chunks: int,
        client_order_id: str,
        slippage_bps: int | None = None,
        initial_quote: Quote | None = None,
        stop_event: threading.Event | None = None,
        allowed_sources: tuple[str, ...] = (),
        excluded_sources: tuple[str, ...] = (),
    ) -> SplitExecutionResult:
        amounts = split_amounts(amount, chunks)
        slippage_bps = int(self.max_slippage_bps) if slippage_bps is None else slippage_bps
        results: list[ChunkResult] = []
        reference_price: Decimal | None = None
        abort_reason: str | None = None
        error: SwapError | None = None

        logger.info(
            f"⚙️ Executing {side.value} | id={client_order_id} | amount={amount} "
            f"({'base' if amount_is_base else 'quote'}) | chunks={len(amounts)}"
        )

        for index, chunk_amount in enumerate(amounts):
            if index > 0:
                if stop_event is not None and stop_event.is_set():
                    abort_reason = "stop requested"
                    logger.warning(f"🛑 Split stopped before chunk {index} | id={client_order_id}")
                    break
                if self.chunk_delay_seconds > 0:
                    self.clock.sleep(float(self.chunk_delay_seconds))

            request = QuoteRequest(
                side=side,
                amount=chunk_amount,
                amount_is_base=amount_is_base,
                slippage_bps=slippage_bps,
                allowed_sources=allowed_sources,
                excluded_sources=excluded_sources,
            )
            quote = initial_quote if index == 0 and self._quote_matches(initial_quote, request) else None
            chunk_id = chunk_order_id(client_order_id, index) if len(amounts) > 1 else client_order_id

            chunk, quote = self._execute_chunk(index, chunk_id, request, quote, reference_price)
            results.append(chunk)

            if not chunk.success:
                error = chunk.error
                abort_reason = f"chunk {index} failed: {chunk.error.code if chunk.error else 'unknown'}"
                break

            if reference_price is None:
                reference_price = chunk.executed_price

            if chunk.slippage_bps is not None and chunk.slippage_bps > self.max_slippage_bps:
                if index < len(amounts) - 1:
                    abort_reason = (
                        f"slippage {chunk.slippage_bps:.1f} bps exceeded {self.max_slippage_bps} bps on chunk {index}"
                    )
                    error = SlippageExceededError(abort_reason).to_swap_error()
                    logger.warning(f"⚠️ {abort_reason} | id={client_order_id}")
                break

        result = SplitExecutionResult(
            client_order_id=client_order_id,
            side=side,
            requested_amount=amount,
            amount_is_base=amount_is_base,
            requested_chunks=len(amounts),
            chunks=tuple(results),
            abort_reason=abort_reason,
            error=error,
        )
        logger.info(f"📦 Execution finished | {result.describe()}")
        return result

    def _quote_matches(self, quote: Quote | None, request: QuoteRequest) -> bool:
        if quote is None:
            return False
        requested = quote.request
        return (
            requested.side == request.side
            and requested.amount == request.amount
            and requested.amount_is_base == request.amount_is_base
        )

    def _execute_chunk(
        self,
        index: int,
        chunk_id: str,
        request: QuoteRequest,
        quote: Quote | None,
        reference_price: Decimal | None,
    ) -> tuple[ChunkResult, Quote | None]:
        backoff = BackoffState(self.retry_policy)

        while True:
            try:
                if quote is None or quote.is_expired(self.clock.now()):
                    quote = self.venue.get_quote(request)
                    self._check_price_move(quote, reference_price)

                result = self.venue.execute_swap(quote, chunk_id)
                if not result.success:
                    raise error_from_swap(result.error)

                slippage = result.actual_slippage_bps
                if slippage is None:
                    slippage = adverse_slippage_bps(request.side, quote.price, result.executed_price)

                return ChunkResult(
                    index=index,
                    client_order_id=chunk_id,
                    requested_amount=request.amount,
                    success=True,
                    base_filled=result.base_filled(request.side),
                    quote_filled=result.quote_filled(request.side),
                    executed_price=result.executed_price,
                    slippage_bps=slippage,
                    fees_quote=result.fees_quote,
                    attempts=backoff.attempt + 1,
                ), quote

            except MeridianError as e:
                if isinstance(e, QuoteExpiredError):
                    quote = None
                if not backoff.record_failure(e):
                    logger.error(
                        f"❌ Chunk {index} failed | id={chunk_id} | code={e.code} | attempts={backoff.attempt}"
                    )
                    return self._failed(index, chunk_id, request, backoff.attempt, e.to_swap_error()), quote
                delay = backoff.next_delay
                logger.warning(
                    f"🔁 Chunk {index} retry {backoff.attempt} | id={chunk_id} | code={e.code} | wait={delay:.2f}s"
                )
                self.clock.sleep(delay)

            except Exception as e:
                logger.exception(f"💥 Unexpected venue error on chunk {index} | id={chunk_id}")
                return self._failed(index, chunk_id, request, backoff.attempt + 1, as_swap_error(e)), quote

    def _check_price_move(self, quote: Quote, reference_price: Decimal | None) -> None:
        if reference_price is None or self.price_move_abort_pct is None or reference_price <= 0:
            return
        move_pct = abs(quote.price - reference_price) / reference_price * HUNDRED
        if move_pct > self.price_move_abort_pct:
            raise PriceDeviationError(
                f"price moved {move_pct:.2f}% since first chunk (limit {self.price_move_abort_pct}%)",
                retryable=False,
                details={"reference": str(reference_price), "price": str(quote.price)},
            )

    def _failed(self, index, chunk_id, request, attempts, error: SwapError) -> ChunkResult:
        return ChunkResult(
            index=index,
            client_order_id=chunk_id,
            requested_amount=request.amount,
            success=False,
            attempts=attempts,
            error=error,
        )
