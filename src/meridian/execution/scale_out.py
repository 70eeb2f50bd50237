from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, ROUND_DOWN

from loguru import logger

from meridian.errors import ConfigurationError
from meridian.utils.bot_config import StrategyConfig
from meridian.utils.money import HUNDRED, ZERO
from meridian.utils.trading_mode import CycleMode, ExitMode

PCT_STEP = Decimal("0.0001")
DUST = Decimal("0.00000001")


class PositionStatus(str, enum.Enum):
    NO_POSITION = "NO_POSITION"
    OPEN = "OPEN"
    SCALE_OUT_ACTIVE = "SCALE_OUT_ACTIVE"
    EXTENDED = "EXTENDED"
    CLOSED = "CLOSED"

    @property
    def holding(self) -> bool:
        return self in (PositionStatus.OPEN, PositionStatus.SCALE_OUT_ACTIVE, PositionStatus.EXTENDED)


class ExtensionState(str, enum.Enum):
    NONE = "NONE"
    EXTENDED = "EXTENDED"
    EXITED = "EXITED"


class ExitKind(str, enum.Enum):
    FULL_EXIT = "FULL_EXIT"
    LADDER = "LADDER"
    EXTENSION = "EXTENSION"
    COMPLETION = "EXIT_COMPLETION"


class ExtensionExitType(str, enum.Enum):
    TARGET_HIT = "TARGET_HIT"
    TRAILING_STOP = "TRAILING_STOP"
    PULLBACK_PROTECTION = "PULLBACK_PROTECTION"


@dataclass
class ScaleOutLevel:
    index: int
    trigger_price: Decimal
    exit_pct: Decimal
    cumulative_pct: Decimal
    triggered: bool = False
    is_extension: bool = False


@dataclass
class ExtensionStateData:
    state: ExtensionState = ExtensionState.NONE
    peak_price: Decimal | None = None
    anchor_price: Decimal | None = None
    extensions_added: int = 0


@dataclass
class PositionState:
    status: PositionStatus = PositionStatus.NO_POSITION
    entry_price: Decimal = ZERO
    initial_qty: Decimal = ZERO
    remaining_qty: Decimal = ZERO
    levels: list[ScaleOutLevel] = field(default_factory=list)
    extension: ExtensionStateData = field(default_factory=ExtensionStateData)
    opened_at: datetime | None = None
    # Left over from a closing exit that filled only partly
    unfilled_qty: Decimal = ZERO
    unfilled_risk_reducing: bool = False

    @property
    def triggered_pct(self) -> Decimal:
        return sum((lvl.exit_pct for lvl in self.levels if lvl.triggered), ZERO)

    @property
    def pending_levels(self) -> list[ScaleOutLevel]:
        return [lvl for lvl in self.levels if not lvl.triggered]


@dataclass(frozen=True)
class ExtensionProposal:
    """One extra ladder level carved out of the last level's allotment."""
    trigger_price: Decimal
    exit_pct: Decimal


@dataclass(frozen=True)
class ExtensionExitDecision:
    exit_type: ExtensionExitType
    sell_qty: Decimal
    reason: str


@dataclass(frozen=True)
class ScaleOutDecision:
    kind: ExitKind
    sell_qty: Decimal
    level_indexes: tuple[int, ...]
    next_status: PositionStatus
    reason: str
    extension: ExtensionProposal | None = None
    extension_exit: ExtensionExitDecision | None = None
    risk_reducing: bool = False

    @property
    def is_risk_reducing_only(self) -> bool:
        """Trailing/pullback exits protect gains; they are not profit-taking."""
        if self.risk_reducing:
            return True
        return self.extension_exit is not None and self.extension_exit.exit_type != ExtensionExitType.TARGET_HIT


def ladder_percentages(steps: int, schedule: tuple[Decimal, ...] | None = None) -> list[Decimal]:
    """
    Exit percentage per level. A custom schedule wins over `steps`; otherwise
    100% is split equally and the rounding remainder lands on the last level.
    """
    if schedule:
        if sum(schedule) != HUNDRED:
            raise ConfigurationError(f"scale-out schedule sums to {sum(schedule)}, expected 100")
        return list(schedule)
    if steps < 1:
        raise ConfigurationError("scale-out needs at least one step")
    each = (HUNDRED / steps).quantize(PCT_STEP, rounding=ROUND_DOWN)
    parts = [each] * (steps - 1)
    parts.append(HUNDRED - each * (steps - 1))
    return parts


class ScaleOutManager:
    """
    Exit state machine for one position:
    NO_POSITION -> OPEN -> {SCALE_OUT_ACTIVE | EXTENDED} -> CLOSED.

    `evaluate` is pure and proposes at most one exit per call; the caller
    applies the resulting fill with `apply_sell_fill`. A level is consumed
    once any quantity was sold for it, so it can never be exited twice.
    """

    def __init__(self, config: StrategyConfig) -> None:
        self.config = config
        self.percentages = ladder_percentages(config.ladder_steps, config.scale_out_schedule)

    # =========================
    # Opening
    # =========================
    def build_levels(self, entry_price: Decimal) -> list[ScaleOutLevel]:
        if self.config.exit_mode == ExitMode.FULL_EXIT:
            trigger = entry_price * (1 + self.config.sell_rise_pct / HUNDRED)
            return [ScaleOutLevel(index=0, trigger_price=trigger, exit_pct=HUNDRED, cumulative_pct=HUNDRED)]

        steps = len(self.percentages)
        levels = []
        cumulative = ZERO
        for i, pct in enumerate(self.percentages, start=1):
            cumulative += pct
            offset_pct = self.config.scale_out_range_pct * i / steps
            levels.append(
                ScaleOutLevel(
                    index=i - 1,
                    trigger_price=entry_price * (1 + offset_pct / HUNDRED),
                    exit_pct=pct,
                    cumulative_pct=cumulative,
                )
            )
        return levels

    def open_position(self, entry_price: Decimal, qty: Decimal, now: datetime | None = None) -> PositionState:
        position = PositionState(
            status=PositionStatus.OPEN,
            entry_price=entry_price,
            initial_qty=qty,
            remaining_qty=qty,
            levels=self.build_levels(entry_price),
            opened_at=now,
        )
        logger.info(
            f"📈 Position opened | entry={entry_price:.6f} | qty={qty} | "
            f"levels={[f'{lvl.trigger_price:.6f}@{lvl.exit_pct}%' for lvl in position.levels]}"
        )
        return position

    # =========================
    # Evaluation (pure)
    # =========================
    def evaluate(self, position: PositionState | None, price: Decimal) -> ScaleOutDecision | None:
        if position is None or not position.status.holding or position.remaining_qty <= 0:
            return None

        if position.unfilled_qty > 0:
            return self._complete_exit(position, price)

        if self.config.exit_mode == ExitMode.FULL_EXIT:
            return self._evaluate_full_exit(position, price)

        if position.status == PositionStatus.EXTENDED:
            return self._evaluate_extension(position, price)

        crossed = [lvl for lvl in position.pending_levels if price >= lvl.trigger_price]
        if not crossed:
            return None

        pending_after = [lvl for lvl in position.pending_levels if lvl not in crossed]
        if pending_after:
            pct = sum((lvl.exit_pct for lvl in crossed), ZERO)
            qty = min(position.initial_qty * pct / HUNDRED, position.remaining_qty)
            return ScaleOutDecision(
                kind=ExitKind.LADDER,
                sell_qty=qty,
                level_indexes=tuple(lvl.index for lvl in crossed),
                next_status=PositionStatus.SCALE_OUT_ACTIVE,
                reason=f"scale-out levels {[lvl.index for lvl in crossed]} crossed at {price:.6f} ({pct}%)",
            )

        proposal = self._propose_extension(position, crossed[-1], price)
        if proposal is not None:
            held = proposal.exit_pct
            pct = sum((lvl.exit_pct for lvl in crossed), ZERO) - held
            qty = min(position.initial_qty * pct / HUNDRED, position.remaining_qty)
            return ScaleOutDecision(
                kind=ExitKind.LADDER,
                sell_qty=qty,
                level_indexes=tuple(lvl.index for lvl in crossed),
                next_status=PositionStatus.EXTENDED,
                reason=(
                    f"final level crossed at {price:.6f} with momentum; holding {held}% "
                    f"for extension at {proposal.trigger_price:.6f}"
                ),
                extension=proposal,
            )

        return ScaleOutDecision(
            kind=ExitKind.LADDER,
            sell_qty=position.remaining_qty,
            level_indexes=tuple(lvl.index for lvl in crossed),
            next_status=PositionStatus.CLOSED,
            reason=f"final scale-out level crossed at {price:.6f}",
        )

    def _complete_exit(self, position: PositionState, price: Decimal) -> ScaleOutDecision:
        qty = min(position.unfilled_qty, position.remaining_qty)
        return ScaleOutDecision(
            kind=ExitKind.COMPLETION,
            sell_qty=qty,
            level_indexes=(),
            next_status=PositionStatus.CLOSED,
            reason=f"completing partly filled exit: {qty} left at {price:.6f}",
            risk_reducing=position.unfilled_risk_reducing,
        )

    def _evaluate_full_exit(self, position: PositionState, price: Decimal) -> ScaleOutDecision | None:
        level = position.levels[0] if position.levels else None
        if level is None or level.triggered or price < level.trigger_price:
            return None

        qty = position.remaining_qty
        reason = f"price {price:.6f} reached sell target {level.trigger_price:.6f}"
        if self.config.cycle_mode == CycleMode.ROLLING_REBUY and self.config.primary_sell_pct < HUNDRED:
            qty = position.remaining_qty * self.config.primary_sell_pct / HUNDRED
            reason += f" (primary {self.config.primary_sell_pct}%, runner kept)"

        return ScaleOutDecision(
            kind=ExitKind.FULL_EXIT,
            sell_qty=qty,
            level_indexes=(level.index,),
            next_status=PositionStatus.CLOSED,
            reason=reason,
        )

    def _propose_extension(
        self, position: PositionState, last: ScaleOutLevel, price: Decimal
    ) -> ExtensionProposal | None:
        cfg = self.config
        ext = position.extension
        if not cfg.extension_enabled or ext.extensions_added >= cfg.max_extensions:
            return None

        momentum_price = last.trigger_price * (1 + cfg.extension_trigger_pct / HUNDRED)
        if price < momentum_price:
            return None

        # No retracement: the current price must be the running peak.
        if ext.peak_price is not None and price < ext.peak_price:
            return None

        held = (last.exit_pct * cfg.extension_share_pct / HUNDRED).quantize(PCT_STEP, rounding=ROUND_DOWN)
        if held <= 0:
            return None
        return ExtensionProposal(
            trigger_price=price * (1 + cfg.extension_step_pct / HUNDRED),
            exit_pct=held,
        )

    def _evaluate_extension(self, position: PositionState, price: Decimal) -> ScaleOutDecision | None:
        cfg = self.config
        ext = position.extension
        pending = position.pending_levels
        if not pending:
            return None
        level = pending[-1]
        peak = max(ext.peak_price or price, price)
        indexes = tuple(lvl.index for lvl in pending)

        exit_type = None
        if price >= level.trigger_price:
            exit_type = ExtensionExitType.TARGET_HIT
            reason = f"extension target {level.trigger_price:.6f} hit at {price:.6f}"
            proposal = self._propose_extension(position, level, price)
            if proposal is not None:
                pct = level.exit_pct - proposal.exit_pct
                return ScaleOutDecision(
                    kind=ExitKind.EXTENSION,
                    sell_qty=min(position.initial_qty * pct / HUNDRED, position.remaining_qty),
                    level_indexes=(level.index,),
                    next_status=PositionStatus.EXTENDED,
                    reason=f"{reason}; extending again to {proposal.trigger_price:.6f}",
                    extension=proposal,
                    extension_exit=ExtensionExitDecision(exit_type, position.remaining_qty, reason),
                )
        elif price <= peak * (1 - cfg.extension_trailing_pct / HUNDRED):
            exit_type = ExtensionExitType.TRAILING_STOP
            reason = f"trailing stop: {price:.6f} is {cfg.extension_trailing_pct}% below peak {peak:.6f}"
        elif ext.anchor_price is not None and price < ext.anchor_price:
            exit_type = ExtensionExitType.PULLBACK_PROTECTION
            reason = f"pullback below last ladder level {ext.anchor_price:.6f}"

        if exit_type is None:
            return None

        exit_decision = ExtensionExitDecision(
            exit_type=exit_type,
            sell_qty=position.remaining_qty,
            reason=reason,
        )
        return ScaleOutDecision(
            kind=ExitKind.EXTENSION,
            sell_qty=position.remaining_qty,
            level_indexes=indexes,
            next_status=PositionStatus.CLOSED,
            reason=reason,
            extension_exit=exit_decision,
        )

    # =========================
    # Mutation (after execution)
    # =========================
    def observe_price(self, position: PositionState | None, price: Decimal) -> None:
        if position is None or position.status != PositionStatus.EXTENDED:
            return
        ext = position.extension
        if ext.peak_price is None or price > ext.peak_price:
            ext.peak_price = price

    def apply_sell_fill(
        self,
        position: PositionState,
        decision: ScaleOutDecision,
        filled_qty: Decimal,
        fill_price: Decimal,
    ) -> PositionState:
        """
        Record an executed exit. A partial fill consumes the decision's levels
        and reduces the remaining size. When the exit was meant to close the
        position, the shortfall stays open and is proposed again by `evaluate`;
        for any other exit it is dropped and later levels pick it up.
        """
        if filled_qty <= 0:
            logger.warning(f"Exit produced no fill | levels={decision.level_indexes}")
            return position

        for lvl in position.levels:
            if lvl.index in decision.level_indexes:
                lvl.triggered = True

        position.remaining_qty = max(position.remaining_qty - filled_qty, ZERO)

        if filled_qty < decision.sell_qty:
            logger.warning(
                f"⚠️ Partial exit fill | wanted={decision.sell_qty} | filled={filled_qty} "
                f"| remaining={position.remaining_qty}"
            )

        if decision.extension_exit is not None:
            position.extension.state = ExtensionState.EXITED

        if decision.extension is not None:
            proposal = decision.extension
            last = position.levels[-1]
            last.exit_pct -= proposal.exit_pct
            last.cumulative_pct -= proposal.exit_pct
            position.levels.append(
                ScaleOutLevel(
                    index=len(position.levels),
                    trigger_price=proposal.trigger_price,
                    exit_pct=proposal.exit_pct,
                    cumulative_pct=last.cumulative_pct + proposal.exit_pct,
                    is_extension=True,
                )
            )
            position.extension.state = ExtensionState.EXTENDED
            position.extension.anchor_price = last.trigger_price
            position.extension.peak_price = fill_price
            position.extension.extensions_added += 1
            logger.info(
                f"🚀 Ladder extended | trigger={proposal.trigger_price:.6f} | share={proposal.exit_pct}%"
            )

        shortfall = decision.sell_qty - filled_qty
        closing = decision.next_status == PositionStatus.CLOSED
        if position.remaining_qty <= DUST:
            position.status = PositionStatus.CLOSED
            position.unfilled_qty = ZERO
        elif closing and shortfall > DUST:
            # Stay holding so the rest is still exited.
            position.unfilled_qty = min(shortfall, position.remaining_qty)
            position.unfilled_risk_reducing = decision.is_risk_reducing_only
        else:
            position.status = decision.next_status
            position.unfilled_qty = ZERO

        logger.info(
            f"📉 Exit applied | kind={decision.kind.value} | filled={filled_qty} @ {fill_price:.6f} "
            f"| status={position.status.value} | sold={position.triggered_pct}%"
        )
        return position
