from __future__ import annotations

import threading
from dataclasses import dataclass, field
from decimal import Decimal

from loguru import logger

from meridian.utils.money import ZERO
from meridian.utils.trading_mode import Side


@dataclass(frozen=True)
class TradePlan:
    plan_id: str
    instance_id: str
    wallet_id: str
    side: Side
    notional: Decimal


@dataclass(frozen=True)
class BotCapitalState:
    instance_id: str
    committed: Decimal
    open_plans: int


@dataclass(frozen=True)
class WalletGuardrailResult:
    allowed: bool
    reason: str
    wallet_balance: Decimal
    reserve: Decimal
    committed: Decimal
    requested: Decimal
    headroom: Decimal
    instances: tuple[BotCapitalState, ...] = ()


@dataclass
class WalletLedger:
    """Commitments against one wallet. Callers hold `lock` around check-and-commit."""
    wallet_id: str
    plans: dict[str, TradePlan] = field(default_factory=dict)
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    @property
    def committed(self) -> Decimal:
        return sum((p.notional for p in self.plans.values()), ZERO)

    def snapshot(self) -> tuple[BotCapitalState, ...]:
        per_instance: dict[str, list[TradePlan]] = {}
        for plan in self.plans.values():
            per_instance.setdefault(plan.instance_id, []).append(plan)
        return tuple(
            BotCapitalState(
                instance_id=instance_id,
                committed=sum((p.notional for p in plans), ZERO),
                open_plans=len(plans),
            )
            for instance_id, plans in sorted(per_instance.items())
        )


class CapitalAllocator:
    """
    Cross-instance guardrail for instances that share a wallet.

    Committed BUY notional across all instances on a wallet never exceeds
    `wallet_balance - min_reserve`. A plan that would break this is denied,
    never queued. SELL plans spend base, so they commit nothing.
    """

    def __init__(self, min_reserve: Decimal = ZERO, instance_limits: dict[str, Decimal] | None = None) -> None:
        self.min_reserve = min_reserve
        self.instance_limits = dict(instance_limits or {})
        self._ledgers: dict[str, WalletLedger] = {}
        self._registry_lock = threading.Lock()

    def ledger(self, wallet_id: str) -> WalletLedger:
        with self._registry_lock:
            ledger = self._ledgers.get(wallet_id)
            if ledger is None:
                ledger = WalletLedger(wallet_id=wallet_id)
                self._ledgers[wallet_id] = ledger
            return ledger

    def committed(self, wallet_id: str, instance_id: str | None = None) -> Decimal:
        ledger = self.ledger(wallet_id)
        with ledger.lock:
            if instance_id is None:
                return ledger.committed
            return sum((p.notional for p in ledger.plans.values() if p.instance_id == instance_id), ZERO)

    # =========================
    # Check / commit
    # =========================
    def check(self, plan: TradePlan, wallet_balance: Decimal) -> WalletGuardrailResult:
        """Read-only evaluation; the answer may be stale by the time it is used."""
        ledger = self.ledger(plan.wallet_id)
        with ledger.lock:
            return self._evaluate(ledger, plan, wallet_balance)

    def try_commit(self, plan: TradePlan, wallet_balance: Decimal) -> WalletGuardrailResult:
        ledger = self.ledger(plan.wallet_id)
        with ledger.lock:
            result = self._evaluate(ledger, plan, wallet_balance)
            if result.allowed and plan.side == Side.BUY:
                ledger.plans[plan.plan_id] = plan
                logger.debug(
                    f"Capital committed | wallet={plan.wallet_id} | instance={plan.instance_id} "
                    f"| plan={plan.plan_id} | notional={plan.notional:.2f} | headroom={result.headroom - plan.notional:.2f}"
                )
        if not result.allowed:
            logger.warning(f"🧱 Wallet guardrail denied {plan.plan_id} | {result.reason}")
        return result

    def release(self, wallet_id: str, plan_id: str) -> TradePlan | None:
        ledger = self.ledger(wallet_id)
        with ledger.lock:
            plan = ledger.plans.pop(plan_id, None)
        if plan is not None:
            logger.debug(f"Capital released | wallet={wallet_id} | plan={plan_id} | notional={plan.notional:.2f}")
        return plan

    def release_instance(self, wallet_id: str, instance_id: str) -> int:
        ledger = self.ledger(wallet_id)
        with ledger.lock:
            stale = [pid for pid, p in ledger.plans.items() if p.instance_id == instance_id]
            for pid in stale:
                del ledger.plans[pid]
        return len(stale)

    def _evaluate(self, ledger: WalletLedger, plan: TradePlan, wallet_balance: Decimal) -> WalletGuardrailResult:
        committed = ledger.committed
        cap = wallet_balance - self.min_reserve
        headroom = max(cap - committed, ZERO)
        instances = ledger.snapshot()

        def result(allowed: bool, reason: str) -> WalletGuardrailResult:
            return WalletGuardrailResult(
                allowed=allowed,
                reason=reason,
                wallet_balance=wallet_balance,
                reserve=self.min_reserve,
                committed=committed,
                requested=plan.notional,
                headroom=headroom,
                instances=instances,
            )

        if plan.side == Side.SELL:
            return result(True, "sell plans commit no quote capital")
        if plan.notional <= 0:
            return result(False, f"non-positive notional {plan.notional}")
        if plan.plan_id in ledger.plans:
            return result(False, f"plan {plan.plan_id} already committed")

        limit = self.instance_limits.get(plan.instance_id)
        if limit is not None:
            mine = sum((p.notional for p in ledger.plans.values() if p.instance_id == plan.instance_id), ZERO)
            if mine + plan.notional > limit:
                return result(
                    False,
                    f"instance {plan.instance_id} limit {limit:.2f} exceeded "
                    f"(committed {mine:.2f} + requested {plan.notional:.2f})",
                )

        if committed + plan.notional > cap:
            return result(
                False,
                f"wallet {plan.wallet_id} cap {cap:.2f} exceeded "
                f"(committed {committed:.2f} + requested {plan.notional:.2f})",
            )
        return result(True, f"within cap {cap:.2f}")
