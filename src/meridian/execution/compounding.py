from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from loguru import logger

from meridian.utils.bot_config import StrategyConfig
from meridian.utils.money import HUNDRED, ZERO
from meridian.utils.trading_mode import CompoundingMode


@dataclass(frozen=True)
class CompoundingResult:
    amount: Decimal
    mode: CompoundingMode
    below_minimum: bool
    reason: str
    available: Decimal
    compounded: Decimal = ZERO


class CompoundingCalculator:
    """
    Next BUY size in quote units.

    FIXED        base size
    CALCULATED   base size + positive realized gains minus reserve_pct of them
    FULL_BALANCE everything above the quote reserve

    The result is capped by the available balance and never reported below
    `min_trade_notional`: a smaller size comes back as the minimum with
    below_minimum=True so the caller decides whether to skip.
    """

    def __init__(
        self,
        *,
        mode: CompoundingMode,
        base_size: Decimal,
        min_trade_notional: Decimal,
        reserve_pct: Decimal = Decimal("5"),
        min_quote_reserve: Decimal = ZERO,
    ) -> None:
        self.mode = mode
        self.base_size = base_size
        self.min_trade_notional = min_trade_notional
        self.reserve_pct = reserve_pct
        self.min_quote_reserve = min_quote_reserve

    @classmethod
    def from_config(cls, config: StrategyConfig, base_size: Decimal | None = None) -> "CompoundingCalculator":
        return cls(
            mode=config.compounding_mode,
            base_size=base_size if base_size is not None else (config.initial_trade_size or config.trade_size),
            min_trade_notional=config.min_trade_notional,
            reserve_pct=config.compounding_reserve_pct,
            min_quote_reserve=config.min_quote_reserve,
        )

    def next_size(self, quote_balance: Decimal, total_realized_pnl: Decimal = ZERO) -> CompoundingResult:
        available = max(quote_balance - self.min_quote_reserve, ZERO)
        compounded = ZERO

        if self.mode == CompoundingMode.FULL_BALANCE:
            raw = available
            reason = f"full balance {available:.2f} above reserve {self.min_quote_reserve}"
        elif self.mode == CompoundingMode.CALCULATED:
            gains = max(total_realized_pnl, ZERO)
            compounded = gains * (HUNDRED - self.reserve_pct) / HUNDRED
            raw = self.base_size + compounded
            reason = f"base {self.base_size} + compounded {compounded:.2f} ({self.reserve_pct}% of gains held back)"
        else:
            raw = self.base_size
            reason = f"fixed size {self.base_size}"

        amount = min(raw, available)
        if amount < raw:
            reason += f", capped to available {available:.2f}"

        if amount < self.min_trade_notional:
            logger.debug(f"Compounded size {amount:.2f} below minimum {self.min_trade_notional}")
            return CompoundingResult(
                amount=self.min_trade_notional,
                mode=self.mode,
                below_minimum=True,
                reason=f"{reason}; {amount:.2f} below minimum {self.min_trade_notional}",
                available=available,
                compounded=compounded,
            )

        return CompoundingResult(
            amount=amount,
            mode=self.mode,
            below_minimum=False,
            reason=reason,
            available=available,
            compounded=compounded,
        )
