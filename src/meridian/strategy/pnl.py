from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from meridian.utils.money import HUNDRED, ZERO


@dataclass(frozen=True)
class CostBasis:
    quantity: Decimal = ZERO
    cost: Decimal = ZERO

    @property
    def average_price(self) -> Decimal | None:
        if self.quantity <= 0:
            return None
        return self.cost / self.quantity


@dataclass(frozen=True)
class SellPnl:
    realized: Decimal
    basis: CostBasis
    cost_of_sold: Decimal


@dataclass(frozen=True)
class PortfolioSummary:
    base_balance: Decimal
    quote_balance: Decimal
    price: Decimal
    equity: Decimal
    avg_entry_price: Decimal | None
    unrealized_pnl: Decimal
    unrealized_pnl_pct: Decimal
    realized_pnl: Decimal


class PnLCalculator:
    """Average-cost accounting. Fees are paid in quote and folded into cost or proceeds."""

    @staticmethod
    def apply_buy(basis: CostBasis, base_filled: Decimal, quote_spent: Decimal, fees: Decimal = ZERO) -> CostBasis:
        if base_filled <= 0:
            return basis
        return CostBasis(quantity=basis.quantity + base_filled, cost=basis.cost + quote_spent + fees)

    @staticmethod
    def apply_sell(basis: CostBasis, base_sold: Decimal, quote_received: Decimal, fees: Decimal = ZERO) -> SellPnl:
        if base_sold <= 0:
            return SellPnl(realized=ZERO, basis=basis, cost_of_sold=ZERO)

        avg = basis.average_price
        if avg is None:
            # Selling inventory the bot never bought (START_BY_SELLING): no cost basis to realize against.
            return SellPnl(realized=ZERO, basis=basis, cost_of_sold=ZERO)

        sold = min(base_sold, basis.quantity)
        cost_of_sold = avg * sold
        proceeds = quote_received * sold / base_sold - fees
        remaining_qty = basis.quantity - sold
        remaining_cost = basis.cost - cost_of_sold if remaining_qty > 0 else ZERO
        return SellPnl(
            realized=proceeds - cost_of_sold,
            basis=CostBasis(quantity=remaining_qty, cost=remaining_cost),
            cost_of_sold=cost_of_sold,
        )

    @staticmethod
    def unrealized(basis: CostBasis, price: Decimal) -> Decimal:
        if basis.quantity <= 0:
            return ZERO
        return basis.quantity * price - basis.cost

    @classmethod
    def summary(
        cls,
        basis: CostBasis,
        base_balance: Decimal,
        quote_balance: Decimal,
        price: Decimal,
        realized_pnl: Decimal,
    ) -> PortfolioSummary:
        unrealized = cls.unrealized(basis, price)
        pct = unrealized / basis.cost * HUNDRED if basis.cost > 0 else ZERO
        return PortfolioSummary(
            base_balance=base_balance,
            quote_balance=quote_balance,
            price=price,
            equity=quote_balance + base_balance * price,
            avg_entry_price=basis.average_price,
            unrealized_pnl=unrealized,
            unrealized_pnl_pct=pct,
            realized_pnl=realized_pnl,
        )
