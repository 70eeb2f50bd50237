from __future__ import annotations

import dataclasses
import enum
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from loguru import logger

from meridian.errors import ConfigurationError
from meridian.execution.cost_calculator import ExecutionCostCalculator, ExecutionCostResult
from meridian.execution.scale_out import DUST, ExitKind, PositionState, ScaleOutDecision
from meridian.strategy.pnl import CostBasis
from meridian.utils.bot_config import StrategyConfig
from meridian.utils.money import HUNDRED, ZERO
from meridian.utils.trading_mode import RunnerMode


class RunnerStatus(str, enum.Enum):
    NONE = "NONE"
    ACTIVE = "ACTIVE"


class RunnerAction(str, enum.Enum):
    NONE = "NONE"
    LADDER_STEP = "RUNNER_LADDER_STEP"
    TRAILING_EXIT = "RUNNER_TRAILING_EXIT"
    BLOCKED_COST = "RUNNER_BLOCKED_COST"
    BLOCKED_PROFIT = "RUNNER_BLOCKED_PROFIT"


@dataclass
class RunnerState:
    """The runner leg: base kept back from a core exit, with its own cost basis."""
    status: RunnerStatus = RunnerStatus.NONE
    qty: Decimal = ZERO
    initial_qty: Decimal = ZERO
    cost_basis: Decimal = ZERO
    entry_price: Decimal | None = None
    peak_price: Decimal | None = None
    started_at: datetime | None = None
    ladder_step: int = 0

    @property
    def active(self) -> bool:
        return self.status == RunnerStatus.ACTIVE and self.qty > 0

    @property
    def basis(self) -> CostBasis:
        return CostBasis(quantity=self.qty, cost=self.cost_basis)


@dataclass(frozen=True)
class RunnerDecision:
    action: RunnerAction
    sell_qty: Decimal
    reason: str
    expected_pnl: Decimal = ZERO
    cost: ExecutionCostResult | None = None

    @property
    def sells(self) -> bool:
        return self.action in (RunnerAction.LADDER_STEP, RunnerAction.TRAILING_EXIT)


class RunnerManager:
    """
    Two-leg position model. When a core FULL_EXIT fires, `runner_pct` of the
    position is held back and becomes the runner once the core leg has closed.
    The runner never counts toward core sizing, exposure or rebuys, and it
    exits on its own ladder or trailing stop, only ever at a profit.
    """

    def __init__(self, config: StrategyConfig, cost_calculator: ExecutionCostCalculator | None = None) -> None:
        self.config = config
        self.cost_calculator = cost_calculator or ExecutionCostCalculator.from_config(config)
        self.targets = tuple(config.runner_ladder_targets or ())
        self.percents = tuple(config.runner_ladder_percents or ())

        if config.runner_enabled:
            if not ZERO < config.runner_pct < HUNDRED:
                raise ConfigurationError(f"runner_pct must be between 0 and 100, got {config.runner_pct}")
            if config.runner_mode == RunnerMode.LADDER and self.targets:
                if len(self.targets) != len(self.percents):
                    raise ConfigurationError(
                        f"runner ladder has {len(self.targets)} targets but {len(self.percents)} percents"
                    )
                if sum(self.percents) != HUNDRED:
                    raise ConfigurationError(f"runner ladder percents sum to {sum(self.percents)}, expected 100")

    @property
    def enabled(self) -> bool:
        return self.config.runner_enabled

    # =========================
    # Creation
    # =========================
    def withhold(
        self,
        decision: ScaleOutDecision,
        position: PositionState,
        runner: RunnerState | None,
    ) -> ScaleOutDecision:
        """Shrink a core FULL_EXIT to its core share while no runner is active."""
        if not self.enabled or decision.kind != ExitKind.FULL_EXIT or (runner is not None and runner.active):
            return decision
        core_pct = HUNDRED - self.config.runner_pct
        return dataclasses.replace(
            decision,
            sell_qty=position.remaining_qty * core_pct / HUNDRED,
            reason=f"{decision.reason} (core {core_pct}%, runner {self.config.runner_pct}% held back)",
        )

    def create(self, basis: CostBasis, entry_price: Decimal, now: datetime | None = None) -> RunnerState | None:
        """Turn what is left of a closed core position into the runner leg."""
        if not self.enabled or basis.quantity <= DUST:
            return None
        runner = RunnerState(
            status=RunnerStatus.ACTIVE,
            qty=basis.quantity,
            initial_qty=basis.quantity,
            cost_basis=basis.cost,
            entry_price=entry_price,
            peak_price=entry_price,
            started_at=now,
        )
        logger.info(
            f"🏃 Runner created | qty={runner.qty} | cost={runner.cost_basis:.4f} "
            f"| entry={entry_price:.6f} | mode={self.config.runner_mode.value}"
        )
        return runner

    # =========================
    # Evaluation
    # =========================
    def observe_price(self, runner: RunnerState | None, price: Decimal) -> None:
        if runner is None or not runner.active:
            return
        if runner.peak_price is None or price > runner.peak_price:
            runner.peak_price = price

    def evaluate(self, runner: RunnerState | None, price: Decimal, slippage_bps: Decimal | None = None) -> RunnerDecision:
        if runner is None or not runner.active or runner.entry_price is None:
            return RunnerDecision(RunnerAction.NONE, ZERO, "no active runner")

        avg_cost = runner.cost_basis / runner.qty
        gross = (price - avg_cost) * runner.qty
        if gross < 0:
            return RunnerDecision(
                RunnerAction.BLOCKED_PROFIT,
                ZERO,
                f"runner exit would realize a loss ({gross:.4f})",
                expected_pnl=gross,
            )

        cost = self.cost_calculator.evaluate_exit(
            price=price,
            amount=runner.qty,
            avg_entry_price=avg_cost,
            slippage_bps=slippage_bps,
        )
        minimum = self.config.runner_min_dollar_profit
        if minimum > 0 and cost.net_edge < minimum:
            return RunnerDecision(
                RunnerAction.NONE,
                ZERO,
                f"net profit {cost.net_edge:.4f} below minimum {minimum}",
                expected_pnl=cost.net_edge,
                cost=cost,
            )
        if not cost.should_execute:
            return RunnerDecision(
                RunnerAction.BLOCKED_COST,
                ZERO,
                f"cost-gated: {cost.rejection_reason}",
                expected_pnl=cost.net_edge,
                cost=cost,
            )

        gain_pct = (price - runner.entry_price) / runner.entry_price * HUNDRED
        if self.config.runner_mode == RunnerMode.LADDER:
            return self._ladder(runner, price, gain_pct, cost)
        return self._trailing(runner, price, gain_pct, cost)

    def _ladder(self, runner: RunnerState, price: Decimal, gain_pct: Decimal, cost: ExecutionCostResult) -> RunnerDecision:
        cfg = self.config
        if not self.targets:
            if gain_pct >= cfg.runner_trail_activate_pct:
                return RunnerDecision(
                    RunnerAction.LADDER_STEP,
                    runner.qty,
                    f"runner +{gain_pct:.2f}% reached {cfg.runner_trail_activate_pct}%",
                    expected_pnl=cost.net_edge,
                    cost=cost,
                )
            return RunnerDecision(RunnerAction.NONE, ZERO, f"runner +{gain_pct:.2f}% below {cfg.runner_trail_activate_pct}%")

        step = runner.ladder_step
        if step >= len(self.targets):
            return RunnerDecision(RunnerAction.NONE, ZERO, "all runner ladder steps completed")

        target = self.targets[step]
        if gain_pct < target:
            return RunnerDecision(RunnerAction.NONE, ZERO, f"runner +{gain_pct:.2f}% below step {step + 1} target {target}%")

        last = step == len(self.targets) - 1
        qty = runner.qty if last else min(runner.initial_qty * self.percents[step] / HUNDRED, runner.qty)
        return RunnerDecision(
            RunnerAction.LADDER_STEP,
            qty,
            f"runner step {step + 1}/{len(self.targets)}: +{gain_pct:.2f}% >= {target}%, selling {self.percents[step]}%",
            expected_pnl=cost.net_edge * qty / runner.qty,
            cost=cost,
        )

    def _trailing(self, runner: RunnerState, price: Decimal, gain_pct: Decimal, cost: ExecutionCostResult) -> RunnerDecision:
        cfg = self.config
        if gain_pct < cfg.runner_trail_activate_pct:
            return RunnerDecision(
                RunnerAction.NONE,
                ZERO,
                f"trailing not active: +{gain_pct:.2f}% < {cfg.runner_trail_activate_pct}%",
            )

        peak = max(runner.peak_price or price, price)
        pullback = (peak - price) / peak * HUNDRED
        if pullback >= cfg.runner_trail_stop_pct:
            return RunnerDecision(
                RunnerAction.TRAILING_EXIT,
                runner.qty,
                f"runner trailing stop: {pullback:.2f}% off peak {peak:.6f}",
                expected_pnl=cost.net_edge,
                cost=cost,
            )
        return RunnerDecision(RunnerAction.NONE, ZERO, f"trailing: pullback {pullback:.2f}% < {cfg.runner_trail_stop_pct}%")

    # =========================
    # Mutation (after execution)
    # =========================
    def apply_sell(self, runner: RunnerState, decision: RunnerDecision, remaining: CostBasis) -> RunnerState:
        """Fold a runner fill in; `remaining` is the runner basis after the sale."""
        runner.qty = remaining.quantity
        runner.cost_basis = remaining.cost
        if decision.action == RunnerAction.LADDER_STEP:
            runner.ladder_step += 1

        if runner.qty <= DUST:
            logger.info("🏁 Runner fully exited")
            return RunnerState()
        logger.info(f"🏃 Runner reduced | qty={runner.qty} | step={runner.ladder_step}")
        return runner
