# service/bot_builder.py
from __future__ import annotations

import dataclasses
from decimal import Decimal

from meridian.errors import ConfigurationError
from meridian.service.profiles import apply_preset, get_preset
from meridian.utils.bot_config import CONFIG_FIELDS, StrategyConfig, coerce_field
from meridian.utils.trading_mode import ExitMode

# (min, max) inclusive; None means unbounded on that side.
RANGES: dict[str, tuple] = {
    "buy_dip_pct": (Decimal("0.1"), Decimal("50")),
    "sell_rise_pct": (Decimal("0.1"), Decimal("100")),
    "min_trade_notional": (Decimal("1"), None),
    "max_slippage_bps": (1, 1000),
    "max_price_impact_bps": (1, 1000),
    "max_price_deviation_bps": (1, 1000),
    "max_drawdown_pct": (Decimal("1"), Decimal("100")),
    "max_consecutive_failures": (1, None),
    "cooldown_seconds": (0, None),
    "max_trades_per_hour": (1, 100),
    "max_trades_per_day": (1, None),
    "min_base_reserve": (Decimal("0"), None),
    "min_quote_reserve": (Decimal("0"), None),
    "scale_out_steps": (1, 20),
    "scale_out_range_pct": (Decimal("0.1"), Decimal("100")),
    "primary_sell_pct": (Decimal("1"), Decimal("100")),
    "exposure_cap_pct": (Decimal("1"), Decimal("500")),
    "compounding_reserve_pct": (Decimal("0"), Decimal("100")),
    "rescue_reserve_pct": (Decimal("0"), Decimal("100")),
    "chase_reserve_pct": (Decimal("0"), Decimal("100")),
    "extension_share_pct": (Decimal("1"), Decimal("99")),
    "max_chunks": (1, 100),
    "regime_min_samples": (1, None),
    "quote_ttl_seconds": (1, 300),
}

POSITIVE = ("trade_size", "daily_loss_limit", "medium_tier_notional", "large_tier_notional")

REQUIRED = ("instance_id", "symbol", "base_asset", "quote_asset")


def validate_config(config: StrategyConfig) -> StrategyConfig:
    problems: list[str] = []

    for name, (low, high) in RANGES.items():
        value = getattr(config, name)
        if value is None:
            continue
        if low is not None and value < low:
            problems.append(f"{name}={value} below {low}")
        if high is not None and value > high:
            problems.append(f"{name}={value} above {high}")

    for name in POSITIVE:
        value = getattr(config, name)
        if value is not None and value <= 0:
            problems.append(f"{name} must be positive")

    if config.medium_tier_notional >= config.large_tier_notional:
        problems.append("medium_tier_notional must be below large_tier_notional")

    if config.rescue_reserve_pct + config.chase_reserve_pct > 100:
        problems.append("rescue_reserve_pct + chase_reserve_pct exceeds 100")

    if config.rescue_hysteresis_pct < 0 or config.rescue_hysteresis_pct >= config.rescue_drawdown_pct:
        problems.append("rescue_hysteresis_pct must be in [0, rescue_drawdown_pct)")

    schedule = config.scale_out_schedule
    if schedule:
        if config.scale_out_steps is not None and config.scale_out_steps != len(schedule):
            problems.append(
                f"scale_out_steps={config.scale_out_steps} conflicts with a "
                f"{len(schedule)}-level scale_out_schedule"
            )
        if any(pct <= 0 for pct in schedule):
            problems.append("scale_out_schedule entries must be positive")
        if sum(schedule) != 100:
            problems.append(f"scale_out_schedule must sum to 100 (got {sum(schedule)})")

    if config.exit_mode == ExitMode.FULL_EXIT and schedule:
        problems.append("scale_out_schedule requires exit_mode=SCALE_OUT")

    if config.runner_enabled:
        if config.exit_mode != ExitMode.FULL_EXIT:
            problems.append("runner_enabled requires exit_mode=FULL_EXIT")
        if not 0 < config.runner_pct < 100:
            problems.append(f"runner_pct must be between 0 and 100 (got {config.runner_pct})")
        targets = config.runner_ladder_targets or ()
        percents = config.runner_ladder_percents or ()
        if len(targets) != len(percents):
            problems.append("runner_ladder_targets and runner_ladder_percents differ in length")
        elif percents and sum(percents) != 100:
            problems.append(f"runner_ladder_percents must sum to 100 (got {sum(percents)})")

    if problems:
        raise ConfigurationError(
            "Invalid strategy config: " + "; ".join(problems),
            details={"instance_id": config.instance_id, "problems": problems},
        )
    return config


class ConfigBuilder:
    def __init__(self):
        self._config: dict = {}
        self._preset: str | None = None

    def with_pair(self, symbol: str, base_asset: str, quote_asset: str):
        self._config["symbol"] = symbol.upper()
        self._config["base_asset"] = base_asset.upper()
        self._config["quote_asset"] = quote_asset.upper()
        return self

    def with_instance(self, instance_id: str, wallet_id: str | None = None):
        self._config["instance_id"] = instance_id
        if wallet_id:
            self._config["wallet_id"] = wallet_id
        return self

    def with_preset(self, preset_name: str):
        get_preset(preset_name)
        self._preset = preset_name
        return self

    def with_overrides(self, **overrides):
        for name, value in overrides.items():
            self._config[name] = coerce_field(name, value)
        return self

    def with_defaults(self):
        self._config.setdefault("wallet_id", "default")
        return self

    def build(self) -> StrategyConfig:
        if "instance_id" not in self._config and "symbol" in self._config:
            suffix = self._preset or "custom"
            self._config["instance_id"] = f"{suffix}_{self._config['symbol'].lower()}"

        missing = [f for f in REQUIRED if f not in self._config]
        if missing:
            raise ConfigurationError(f"Missing StrategyConfig fields: {missing}")

        identity = {k: v for k, v in self._config.items() if k in REQUIRED}
        config = StrategyConfig(**identity)

        # Preset first, explicit overrides win over it.
        if self._preset:
            config = apply_preset(config, self._preset)

        rest = {k: v for k, v in self._config.items() if k not in REQUIRED and k in CONFIG_FIELDS}
        config = dataclasses.replace(config, **rest)

        return validate_config(config)
