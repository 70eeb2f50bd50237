from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Union

from meridian.utils.trading_mode import Side


@dataclass(frozen=True)
class TradeSize:
    """Exactly one of `base` or `quote` is set."""
    base: Decimal | None = None
    quote: Decimal | None = None

    def __post_init__(self) -> None:
        if (self.base is None) == (self.quote is None):
            raise ValueError("TradeSize needs exactly one of base or quote")
        value = self.base if self.base is not None else self.quote
        if value <= 0:
            raise ValueError(f"TradeSize must be positive, got {value}")

    @classmethod
    def of_base(cls, amount: Decimal) -> "TradeSize":
        return cls(base=amount)

    @classmethod
    def of_quote(cls, amount: Decimal) -> "TradeSize":
        return cls(quote=amount)

    @property
    def is_base(self) -> bool:
        return self.base is not None

    @property
    def amount(self) -> Decimal:
        return self.base if self.base is not None else self.quote

    def notional(self, price: Decimal) -> Decimal:
        return self.base * price if self.base is not None else self.quote

    def __str__(self) -> str:
        return f"{self.base} base" if self.base is not None else f"{self.quote} quote"


@dataclass(frozen=True)
class Buy:
    size: TradeSize
    reason: str
    code: str = "BUY"

    side = Side.BUY


@dataclass(frozen=True)
class Sell:
    size: TradeSize
    reason: str
    code: str = "SELL"
    risk_reducing: bool = False

    side = Side.SELL


@dataclass(frozen=True)
class Hold:
    reason: str
    code: str = "HOLD"


@dataclass(frozen=True)
class Pause:
    reason: str
    code: str = "PAUSE"


StrategyAction = Union[Buy, Sell, Hold, Pause]


def action_name(action: StrategyAction) -> str:
    return type(action).__name__.upper()


def is_trade(action: StrategyAction) -> bool:
    return isinstance(action, (Buy, Sell))
