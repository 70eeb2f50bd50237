# utils/bot_config.py
from __future__ import annotations

import dataclasses
import typing
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from enum import Enum

from meridian.errors import ConfigurationError
from meridian.utils.trading_mode import (
    ChaseRegimeGate,
    CompoundingMode,
    CycleMode,
    ExitMode,
    RebuyRegimeGate,
    RunnerMode,
    StartingMode,
    TradeSizeMode,
    TradingMode,
)


@dataclass(frozen=True)
class StrategyConfig:
    # Identity
    instance_id: str
    symbol: str
    base_asset: str
    quote_asset: str
    wallet_id: str = "default"
    preset: str | None = None
    trading_mode: TradingMode = TradingMode.DRY_RUN

    # Thresholds
    buy_dip_pct: Decimal = Decimal("0.6")
    sell_rise_pct: Decimal = Decimal("1.2")

    # Sizing
    trade_size_mode: TradeSizeMode = TradeSizeMode.FIXED_QUOTE
    trade_size: Decimal = Decimal("25")
    min_trade_notional: Decimal = Decimal("10")
    min_base_reserve: Decimal = Decimal("0")
    min_quote_reserve: Decimal = Decimal("5")
    starting_mode: StartingMode = StartingMode.START_BY_BUYING

    # Risk limits
    max_slippage_bps: int = 50
    max_price_impact_bps: int | None = None
    max_price_deviation_bps: int = 100
    daily_loss_limit: Decimal | None = None
    max_drawdown_pct: Decimal | None = None
    max_consecutive_failures: int = 3
    min_native_for_gas: Decimal = Decimal("0")

    # Rate limits
    cooldown_seconds: int = 90
    max_trades_per_hour: int = 6
    max_trades_per_day: int | None = None

    # Exit management
    exit_mode: ExitMode = ExitMode.FULL_EXIT
    scale_out_steps: int | None = None
    scale_out_range_pct: Decimal = Decimal("1.8")
    scale_out_schedule: tuple[Decimal, ...] | None = None
    extension_enabled: bool = False
    extension_trigger_pct: Decimal = Decimal("0.3")
    extension_step_pct: Decimal = Decimal("0.6")
    extension_share_pct: Decimal = Decimal("50")
    extension_trailing_pct: Decimal = Decimal("0.5")
    max_extensions: int = 1

    # Cycle mode
    cycle_mode: CycleMode = CycleMode.STANDARD
    primary_sell_pct: Decimal = Decimal("100")
    allow_rebuy: bool = False
    rebuy_dip_pct: Decimal = Decimal("0.6")
    max_rebuy_count: int = 1
    rebuy_regime_gate: RebuyRegimeGate = RebuyRegimeGate.NONE
    exposure_cap_pct: Decimal = Decimal("100")

    # Runner leg
    runner_enabled: bool = False
    runner_pct: Decimal = Decimal("20")
    runner_mode: RunnerMode = RunnerMode.TRAILING
    runner_ladder_targets: tuple[Decimal, ...] | None = None
    runner_ladder_percents: tuple[Decimal, ...] | None = None
    runner_trail_activate_pct: Decimal = Decimal("1.8")
    runner_trail_stop_pct: Decimal = Decimal("0.7")
    runner_min_dollar_profit: Decimal = Decimal("0")

    # Compounding
    compounding_mode: CompoundingMode = CompoundingMode.FIXED
    compounding_reserve_pct: Decimal = Decimal("5")
    initial_trade_size: Decimal | None = None

    # Execution cost
    venue_fee_pct: Decimal = Decimal("0.1")
    gas_estimate_quote: Decimal = Decimal("0")
    expected_slippage_bps: Decimal = Decimal("0")
    min_net_edge_pct: Decimal = Decimal("0")
    max_execution_cost_pct: Decimal | None = None

    # Capital tiers / split execution
    medium_tier_notional: Decimal = Decimal("250")
    large_tier_notional: Decimal = Decimal("1000")
    max_liquidity_share_pct: Decimal | None = None
    max_chunks: int = 10
    chunk_delay_seconds: Decimal = Decimal("2")
    price_move_abort_pct: Decimal | None = Decimal("1.0")

    # Regime
    regime_min_samples: int = 3
    volatile_range_bps: Decimal = Decimal("300")
    chop_range_bps: Decimal = Decimal("120")
    chop_min_reversals: int = 4
    trend_move_bps: Decimal = Decimal("150")
    pause_in_volatile_regime: bool = False

    # Reserve reset (3 buckets)
    enable_reserve_reset: bool = False
    rescue_reserve_pct: Decimal = Decimal("33")
    chase_reserve_pct: Decimal = Decimal("33")
    rescue_drawdown_pct: Decimal = Decimal("2.5")
    rescue_hysteresis_pct: Decimal = Decimal("1.0")
    chase_trigger_pct: Decimal = Decimal("3.0")
    chase_exit_target_pct: Decimal = Decimal("1.2")
    chase_min_confidence: Decimal = Decimal("0.5")
    chase_regime_gate: ChaseRegimeGate = ChaseRegimeGate.TREND_UP_ONLY
    max_reserve_deployments_per_cycle: int = 2

    # Venue
    allowed_sources: tuple[str, ...] = ()
    excluded_sources: tuple[str, ...] = ()
    quote_ttl_seconds: int = 30

    @property
    def ladder_steps(self) -> int:
        if self.scale_out_schedule:
            return len(self.scale_out_schedule)
        return self.scale_out_steps or 1


CONFIG_FIELDS = {f.name: f for f in dataclasses.fields(StrategyConfig)}
_HINTS = typing.get_type_hints(StrategyConfig)


def _unwrap(hint):
    """Return (inner type, optional flag) for `X | None` style hints."""
    args = [a for a in typing.get_args(hint) if a is not type(None)]
    if type(None) in typing.get_args(hint) and len(args) == 1:
        return args[0], True
    return hint, False


def coerce_field(name: str, value):
    """
    Convert a raw value (JSON, env, CLI, preset) into the type declared on
    StrategyConfig. Raises ConfigurationError for unknown fields or bad values.
    """
    if name not in CONFIG_FIELDS:
        raise ConfigurationError(f"Unknown config field: {name}", details={"field": name})

    hint, optional = _unwrap(_HINTS[name])
    if value is None:
        if optional:
            return None
        raise ConfigurationError(f"{name} cannot be null", details={"field": name})

    try:
        if hint is Decimal:
            if isinstance(value, bool):
                raise TypeError("bool is not a decimal")
            return value if isinstance(value, Decimal) else Decimal(str(value))
        if hint is bool:
            if isinstance(value, str):
                return value.strip().lower() in {"1", "true", "yes", "on"}
            return bool(value)
        if hint is int:
            if isinstance(value, bool):
                raise TypeError("bool is not an int")
            return int(value)
        if isinstance(hint, type) and issubclass(hint, Enum):
            return hint(value)
        if typing.get_origin(hint) is tuple:
            item_type = typing.get_args(hint)[0]
            if isinstance(value, str):
                value = [v for v in value.split(",") if v.strip()]
            if item_type is Decimal:
                return tuple(Decimal(str(v)) for v in value)
            return tuple(str(v).strip() for v in value)
        if hint is str:
            return str(value)
    except (InvalidOperation, TypeError, ValueError) as e:
        raise ConfigurationError(
            f"Invalid value for {name}: {value!r}",
            details={"field": name, "value": repr(value)},
        ) from e
    return value


def coerce_fields(values: dict) -> dict:
    return {name: coerce_field(name, value) for name, value in values.items()}


def config_to_dict(config: StrategyConfig) -> dict:
    """JSON friendly dump: Decimals as strings, enums as values."""
    payload = {}
    for name in CONFIG_FIELDS:
        value = getattr(config, name)
        if isinstance(value, Enum):
            value = value.value
        elif isinstance(value, Decimal):
            value = str(value)
        elif isinstance(value, tuple):
            value = [str(v) for v in value]
        payload[name] = value
    return payload
