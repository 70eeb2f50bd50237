from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class SwapError:
    """Stable error payload that crosses component boundaries."""
    code: str
    message: str
    retryable: bool


class MeridianError(Exception):
    code = "MERIDIAN_ERROR"
    retryable = False

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        retryable: bool | None = None,
        details: dict | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if retryable is not None:
            self.retryable = retryable
        self.details = details or {}

    def to_swap_error(self) -> SwapError:
        return SwapError(code=self.code, message=self.message, retryable=self.retryable)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code!r}, retryable={self.retryable}, message={self.message!r})"


# =========================
# Venue / network (transient)
# =========================

class QuoteError(MeridianError):
    code = "QUOTE_ERROR"
    retryable = True


class QuoteExpiredError(MeridianError):
    code = "QUOTE_EXPIRED"
    retryable = True


class RpcError(MeridianError):
    code = "RPC_ERROR"
    retryable = True


class RateLimitedError(MeridianError):
    code = "RATE_LIMITED"
    retryable = True


class SlippageExceededError(MeridianError):
    code = "SLIPPAGE_EXCEEDED"
    retryable = True


class PriceDeviationError(MeridianError):
    code = "PRICE_DEVIATION"
    retryable = True


class TransactionError(MeridianError):
    code = "TRANSACTION_ERROR"
    retryable = False


# =========================
# Terminal
# =========================

class InsufficientBalanceError(MeridianError):
    code = "INSUFFICIENT_BALANCE"
    retryable = False


class PriceImpactError(MeridianError):
    code = "PRICE_IMPACT_EXCEEDED"
    retryable = False


class ConfirmationTimeoutError(MeridianError):
    code = "CONFIRMATION_TIMEOUT"
    retryable = False


class CircuitBreakerError(MeridianError):
    code = "CIRCUIT_BREAKER"
    retryable = False


class ConfigurationError(MeridianError):
    code = "CONFIGURATION_ERROR"
    retryable = False


class DuplicateOrderError(MeridianError):
    code = "DUPLICATE_ORDER"
    retryable = False


def as_swap_error(exc: Exception) -> SwapError:
    """Collapse any exception into a SwapError; unknown errors are terminal."""
    if isinstance(exc, MeridianError):
        return exc.to_swap_error()
    return SwapError(code="UNKNOWN_ERROR", message=str(exc) or type(exc).__name__, retryable=False)


ERRORS_BY_CODE: dict[str, type[MeridianError]] = {
    cls.code: cls
    for cls in (
        QuoteError,
        QuoteExpiredError,
        RpcError,
        RateLimitedError,
        SlippageExceededError,
        PriceDeviationError,
        TransactionError,
        InsufficientBalanceError,
        PriceImpactError,
        ConfirmationTimeoutError,
        CircuitBreakerError,
        ConfigurationError,
        DuplicateOrderError,
    )
}


def error_from_swap(error: SwapError) -> MeridianError:
    """Rebuild a raisable error from a SwapError, keeping its retryable flag."""
    cls = ERRORS_BY_CODE.get(error.code, MeridianError)
    return cls(error.message, code=error.code, retryable=error.retryable)
