# meridian/service/bot_state.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Optional

from meridian.execution.reserve_reset import BucketState, ReserveBucket, ReserveState
from meridian.execution.runner import RunnerState, RunnerStatus
from meridian.execution.scale_out import (
    ExtensionState,
    ExtensionStateData,
    PositionState,
    PositionStatus,
    ScaleOutLevel,
)
from meridian.strategy.pnl import CostBasis
from meridian.utils.money import ZERO, as_utc, truncate_day, truncate_hour

RECENT_PNL_WINDOW = 10


@dataclass
class StrategyState:
    # Identity
    instance_id: str

    # Reference prices
    last_buy_price: Optional[Decimal] = None
    last_sell_price: Optional[Decimal] = None
    last_trade_at: Optional[datetime] = None
    last_price: Optional[Decimal] = None

    # Failures / circuit breaker
    consecutive_failures: int = 0
    paused: bool = False
    pause_reason: Optional[str] = None

    # Counters
    trades_this_hour: int = 0
    hourly_reset_at: Optional[datetime] = None
    trades_today: int = 0
    daily_reset_at: Optional[datetime] = None
    rebuy_count: int = 0

    # Results
    daily_realized_pnl: Decimal = ZERO
    total_realized_pnl: Decimal = ZERO
    recent_pnls: list[Decimal] = field(default_factory=list)
    peak_equity: Optional[Decimal] = None

    # Cost basis (average cost)
    position_qty: Decimal = ZERO
    cost_basis: Decimal = ZERO

    # Exit ladder / runner leg / reserve buckets
    position: Optional[PositionState] = None
    runner: Optional[RunnerState] = None
    reserve: Optional[ReserveState] = None

    # Meta
    bootstrapped: bool = False
    nonce: int = 0
    last_action: str = "INIT"
    updated_at: Optional[datetime] = None

    @property
    def basis(self) -> CostBasis:
        return CostBasis(quantity=self.position_qty, cost=self.cost_basis)

    @basis.setter
    def basis(self, value: CostBasis) -> None:
        self.position_qty = value.quantity
        self.cost_basis = value.cost

    @property
    def avg_entry_price(self) -> Optional[Decimal]:
        return self.basis.average_price

    @property
    def recent_pnl(self) -> Decimal:
        return sum(self.recent_pnls, ZERO)

    def next_nonce(self) -> int:
        self.nonce += 1
        return self.nonce

    def record_realized(self, pnl: Decimal) -> None:
        self.daily_realized_pnl += pnl
        self.total_realized_pnl += pnl
        self.recent_pnls.append(pnl)
        del self.recent_pnls[:-RECENT_PNL_WINDOW]

    def roll_counters(self, now: datetime) -> bool:
        """
        Reset hourly/daily counters once per UTC boundary crossing.
        Returns True when anything was reset.
        """
        hour = truncate_hour(now)
        day = truncate_day(now)
        rolled = False

        if self.hourly_reset_at is None or hour > as_utc(self.hourly_reset_at):
            self.trades_this_hour = 0
            self.hourly_reset_at = hour
            rolled = True

        if self.daily_reset_at is None or day > as_utc(self.daily_reset_at):
            self.trades_today = 0
            self.daily_realized_pnl = ZERO
            self.rebuy_count = 0
            self.daily_reset_at = day
            rolled = True

        return rolled

    # =========================
    # Serialization
    # =========================
    def to_dict(self) -> dict:
        return {
            "instance_id": self.instance_id,
            "last_buy_price": _dec_out(self.last_buy_price),
            "last_sell_price": _dec_out(self.last_sell_price),
            "last_trade_at": _dt_out(self.last_trade_at),
            "last_price": _dec_out(self.last_price),
            "consecutive_failures": self.consecutive_failures,
            "paused": self.paused,
            "pause_reason": self.pause_reason,
            "trades_this_hour": self.trades_this_hour,
            "hourly_reset_at": _dt_out(self.hourly_reset_at),
            "trades_today": self.trades_today,
            "daily_reset_at": _dt_out(self.daily_reset_at),
            "rebuy_count": self.rebuy_count,
            "daily_realized_pnl": str(self.daily_realized_pnl),
            "total_realized_pnl": str(self.total_realized_pnl),
            "recent_pnls": [str(p) for p in self.recent_pnls],
            "peak_equity": _dec_out(self.peak_equity),
            "position_qty": str(self.position_qty),
            "cost_basis": str(self.cost_basis),
            "position": _position_out(self.position),
            "runner": _runner_out(self.runner),
            "reserve": _reserve_out(self.reserve),
            "bootstrapped": self.bootstrapped,
            "nonce": self.nonce,
            "last_action": self.last_action,
            "updated_at": _dt_out(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "StrategyState":
        return cls(
            instance_id=data["instance_id"],
            last_buy_price=_dec_in(data.get("last_buy_price")),
            last_sell_price=_dec_in(data.get("last_sell_price")),
            last_trade_at=_dt_in(data.get("last_trade_at")),
            last_price=_dec_in(data.get("last_price")),
            consecutive_failures=int(data.get("consecutive_failures", 0)),
            paused=bool(data.get("paused", False)),
            pause_reason=data.get("pause_reason"),
            trades_this_hour=int(data.get("trades_this_hour", 0)),
            hourly_reset_at=_dt_in(data.get("hourly_reset_at")),
            trades_today=int(data.get("trades_today", 0)),
            daily_reset_at=_dt_in(data.get("daily_reset_at")),
            rebuy_count=int(data.get("rebuy_count", 0)),
            daily_realized_pnl=Decimal(data.get("daily_realized_pnl", "0")),
            total_realized_pnl=Decimal(data.get("total_realized_pnl", "0")),
            recent_pnls=[Decimal(p) for p in data.get("recent_pnls", [])],
            peak_equity=_dec_in(data.get("peak_equity")),
            position_qty=Decimal(data.get("position_qty", "0")),
            cost_basis=Decimal(data.get("cost_basis", "0")),
            position=_position_in(data.get("position")),
            runner=_runner_in(data.get("runner")),
            reserve=_reserve_in(data.get("reserve")),
            bootstrapped=bool(data.get("bootstrapped", False)),
            nonce=int(data.get("nonce", 0)),
            last_action=data.get("last_action", "INIT"),
            updated_at=_dt_in(data.get("updated_at")),
        )


def _dec_out(value: Optional[Decimal]) -> Optional[str]:
    return None if value is None else str(value)


def _dec_in(value) -> Optional[Decimal]:
    return None if value is None else Decimal(str(value))


def _dt_out(value: Optional[datetime]) -> Optional[str]:
    return None if value is None else as_utc(value).isoformat()


def _dt_in(value) -> Optional[datetime]:
    return None if not value else as_utc(datetime.fromisoformat(value))


def _position_out(position: Optional[PositionState]) -> Optional[dict]:
    if position is None:
        return None
    return {
        "status": position.status.value,
        "entry_price": str(position.entry_price),
        "initial_qty": str(position.initial_qty),
        "remaining_qty": str(position.remaining_qty),
        "opened_at": _dt_out(position.opened_at),
        "unfilled_qty": str(position.unfilled_qty),
        "unfilled_risk_reducing": position.unfilled_risk_reducing,
        "levels": [
            {
                "index": lvl.index,
                "trigger_price": str(lvl.trigger_price),
                "exit_pct": str(lvl.exit_pct),
                "cumulative_pct": str(lvl.cumulative_pct),
                "triggered": lvl.triggered,
                "is_extension": lvl.is_extension,
            }
            for lvl in position.levels
        ],
        "extension": {
            "state": position.extension.state.value,
            "peak_price": _dec_out(position.extension.peak_price),
            "anchor_price": _dec_out(position.extension.anchor_price),
            "extensions_added": position.extension.extensions_added,
        },
    }


def _position_in(data: Optional[dict]) -> Optional[PositionState]:
    if not data:
        return None
    ext = data.get("extension") or {}
    return PositionState(
        status=PositionStatus(data["status"]),
        entry_price=Decimal(data["entry_price"]),
        initial_qty=Decimal(data["initial_qty"]),
        remaining_qty=Decimal(data["remaining_qty"]),
        opened_at=_dt_in(data.get("opened_at")),
        unfilled_qty=Decimal(data.get("unfilled_qty", "0")),
        unfilled_risk_reducing=bool(data.get("unfilled_risk_reducing", False)),
        levels=[
            ScaleOutLevel(
                index=int(lvl["index"]),
                trigger_price=Decimal(lvl["trigger_price"]),
                exit_pct=Decimal(lvl["exit_pct"]),
                cumulative_pct=Decimal(lvl["cumulative_pct"]),
                triggered=bool(lvl.get("triggered", False)),
                is_extension=bool(lvl.get("is_extension", False)),
            )
            for lvl in data.get("levels", [])
        ],
        extension=ExtensionStateData(
            state=ExtensionState(ext.get("state", ExtensionState.NONE.value)),
            peak_price=_dec_in(ext.get("peak_price")),
            anchor_price=_dec_in(ext.get("anchor_price")),
            extensions_added=int(ext.get("extensions_added", 0)),
        ),
    )


def _runner_out(runner: Optional[RunnerState]) -> Optional[dict]:
    if runner is None:
        return None
    return {
        "status": runner.status.value,
        "qty": str(runner.qty),
        "initial_qty": str(runner.initial_qty),
        "cost_basis": str(runner.cost_basis),
        "entry_price": _dec_out(runner.entry_price),
        "peak_price": _dec_out(runner.peak_price),
        "started_at": _dt_out(runner.started_at),
        "ladder_step": runner.ladder_step,
    }


def _runner_in(data: Optional[dict]) -> Optional[RunnerState]:
    if not data:
        return None
    return RunnerState(
        status=RunnerStatus(data.get("status", RunnerStatus.NONE.value)),
        qty=Decimal(data.get("qty", "0")),
        initial_qty=Decimal(data.get("initial_qty", "0")),
        cost_basis=Decimal(data.get("cost_basis", "0")),
        entry_price=_dec_in(data.get("entry_price")),
        peak_price=_dec_in(data.get("peak_price")),
        started_at=_dt_in(data.get("started_at")),
        ladder_step=int(data.get("ladder_step", 0)),
    )


def _reserve_out(reserve: Optional[ReserveState]) -> Optional[dict]:
    if reserve is None:
        return None
    return {
        "total": str(reserve.total),
        "active": reserve.active.value,
        "chase_entry_price": _dec_out(reserve.chase_entry_price),
        "deployments": reserve.deployments,
        "buckets": {
            bucket.value: {"balance": str(state.balance), "regime_gated": state.regime_gated}
            for bucket, state in reserve.buckets.items()
        },
    }


def _reserve_in(data: Optional[dict]) -> Optional[ReserveState]:
    if not data:
        return None
    return ReserveState(
        total=Decimal(data["total"]),
        active=ReserveBucket(data.get("active", ReserveBucket.NORMAL.value)),
        chase_entry_price=_dec_in(data.get("chase_entry_price")),
        deployments=int(data.get("deployments", 0)),
        buckets={
            ReserveBucket(name): BucketState(
                balance=Decimal(bucket["balance"]),
                regime_gated=bool(bucket.get("regime_gated", False)),
            )
            for name, bucket in data.get("buckets", {}).items()
        },
    )
