from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from loguru import logger

from meridian.utils.bot_config import StrategyConfig
from meridian.utils.money import BPS_PER_UNIT, HUNDRED, ZERO

COST_GATED = "COST_GATED"
EXECUTION_COST_TOO_HIGH = "EXECUTION_COST_TOO_HIGH"


@dataclass(frozen=True)
class ExecutionCostResult:
    notional: Decimal
    fee_cost: Decimal
    gas_cost: Decimal
    slippage_cost: Decimal
    total_cost: Decimal
    gross_gain: Decimal
    net_edge: Decimal
    should_execute: bool
    rejection_code: str | None = None
    rejection_reason: str | None = None

    @property
    def total_cost_pct(self) -> Decimal:
        if self.notional <= 0:
            return ZERO
        return self.total_cost / self.notional * HUNDRED

    @property
    def net_edge_pct(self) -> Decimal:
        if self.notional <= 0:
            return ZERO
        return self.net_edge / self.notional * HUNDRED

    def describe(self) -> str:
        parts = [
            f"notional={self.notional:.2f}",
            f"fees={self.fee_cost:.4f}",
            f"gas={self.gas_cost:.4f}",
            f"slippage={self.slippage_cost:.4f}",
            f"cost={self.total_cost_pct:.3f}%",
            f"gross={self.gross_gain:.4f}",
            f"edge={self.net_edge:.4f}",
            f"execute={'YES' if self.should_execute else 'NO'}",
        ]
        if self.rejection_reason:
            parts.append(self.rejection_reason)
        return " | ".join(parts)


class ExecutionCostCalculator:
    """
    Round-trip cost of a trade in quote units: venue fee and gas on both legs
    plus the expected slippage on the notional. A trade whose expected gain
    does not clear that cost (net edge <= min_net_edge) is gated, never shrunk.
    """

    def __init__(
        self,
        *,
        venue_fee_pct: Decimal,
        gas_estimate_quote: Decimal = ZERO,
        expected_slippage_bps: Decimal = ZERO,
        min_net_edge_pct: Decimal = ZERO,
        max_execution_cost_pct: Decimal | None = None,
    ) -> None:
        self.venue_fee_pct = venue_fee_pct
        self.gas_estimate_quote = gas_estimate_quote
        self.expected_slippage_bps = expected_slippage_bps
        self.min_net_edge_pct = min_net_edge_pct
        self.max_execution_cost_pct = max_execution_cost_pct

    @classmethod
    def from_config(cls, config: StrategyConfig) -> "ExecutionCostCalculator":
        return cls(
            venue_fee_pct=config.venue_fee_pct,
            gas_estimate_quote=config.gas_estimate_quote,
            expected_slippage_bps=config.expected_slippage_bps,
            min_net_edge_pct=config.min_net_edge_pct,
            max_execution_cost_pct=config.max_execution_cost_pct,
        )

    def estimate_cost(
        self,
        *,
        price: Decimal,
        amount: Decimal,
        slippage_bps: Decimal | None = None,
        gas_estimate_quote: Decimal | None = None,
    ) -> tuple[Decimal, Decimal, Decimal]:
        """Return (fees, gas, slippage) in quote units for a round trip of `amount` base."""
        notional = price * amount
        fee_cost = notional * self.venue_fee_pct / HUNDRED * 2
        gas = self.gas_estimate_quote if gas_estimate_quote is None else gas_estimate_quote
        gas_cost = gas * 2
        bps = self.expected_slippage_bps if slippage_bps is None else slippage_bps
        slippage_cost = price * amount * bps / BPS_PER_UNIT
        return fee_cost, gas_cost, slippage_cost

    def evaluate(
        self,
        *,
        price: Decimal,
        amount: Decimal,
        gross_gain: Decimal,
        slippage_bps: Decimal | None = None,
        gas_estimate_quote: Decimal | None = None,
    ) -> ExecutionCostResult:
        fee_cost, gas_cost, slippage_cost = self.estimate_cost(
            price=price,
            amount=amount,
            slippage_bps=slippage_bps,
            gas_estimate_quote=gas_estimate_quote,
        )
        notional = price * amount
        total = fee_cost + gas_cost + slippage_cost
        net_edge = gross_gain - total
        min_edge = notional * self.min_net_edge_pct / HUNDRED

        code = None
        reason = None
        cost_pct = total / notional * HUNDRED if notional > 0 else ZERO
        if self.max_execution_cost_pct is not None and cost_pct > self.max_execution_cost_pct:
            code = EXECUTION_COST_TOO_HIGH
            reason = f"execution cost {cost_pct:.3f}% exceeds maximum {self.max_execution_cost_pct}%"
        elif net_edge <= min_edge:
            code = COST_GATED
            reason = f"net edge {net_edge:.4f} <= {min_edge:.4f} (gain {gross_gain:.4f}, cost {total:.4f})"

        result = ExecutionCostResult(
            notional=notional,
            fee_cost=fee_cost,
            gas_cost=gas_cost,
            slippage_cost=slippage_cost,
            total_cost=total,
            gross_gain=gross_gain,
            net_edge=net_edge,
            should_execute=code is None,
            rejection_code=code,
            rejection_reason=reason,
        )
        logger.debug(f"Execution cost | {result.describe()}")
        return result

    def evaluate_entry(
        self,
        *,
        price: Decimal,
        amount: Decimal,
        target_rise_pct: Decimal,
        slippage_bps: Decimal | None = None,
    ) -> ExecutionCostResult:
        """Gross gain for a new entry is the configured target move on its notional."""
        gross = price * amount * target_rise_pct / HUNDRED
        return self.evaluate(price=price, amount=amount, gross_gain=gross, slippage_bps=slippage_bps)

    def evaluate_exit(
        self,
        *,
        price: Decimal,
        amount: Decimal,
        avg_entry_price: Decimal,
        slippage_bps: Decimal | None = None,
    ) -> ExecutionCostResult:
        """Gross gain for an exit is the unrealized gain on the sold quantity."""
        gross = (price - avg_entry_price) * amount
        return self.evaluate(price=price, amount=amount, gross_gain=gross, slippage_bps=slippage_bps)
