# service/profiles.py
from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from types import MappingProxyType

from loguru import logger

from meridian.errors import ConfigurationError
from meridian.utils.bot_config import StrategyConfig, coerce_fields


@dataclass(frozen=True)
class PresetConfig:
    name: str
    version: int
    description: str
    overrides: MappingProxyType = field(default_factory=lambda: MappingProxyType({}))


def _preset(name: str, version: int, description: str, **overrides) -> PresetConfig:
    return PresetConfig(
        name=name,
        version=version,
        description=description,
        overrides=MappingProxyType(coerce_fields(overrides)),
    )


# Thresholds, rate limits and sizing are identical across presets so that the
# exit behaviour is the only variable between instances running side by side.
_SHARED = dict(
    buy_dip_pct="0.6",
    sell_rise_pct="1.2",
    cooldown_seconds=90,
    max_trades_per_hour=6,
    max_slippage_bps=50,
    compounding_mode="CALCULATED",
    compounding_reserve_pct="7",
)

PRESETS: dict[str, PresetConfig] = {
    # =========================
    # 🪜 BASELINE: Scale-out ladder
    # =========================
    "baseline-scale-out": _preset(
        "baseline-scale-out",
        1,
        "3-step ladder exits with calculated sizing.",
        exit_mode="SCALE_OUT",
        scale_out_steps=3,
        scale_out_range_pct="1.8",
        cycle_mode="STANDARD",
        allow_rebuy=False,
        **_SHARED,
    ),

    # =========================
    # 🎯 FULL EXIT: Benchmark
    # =========================
    "full-exit-scalp": _preset(
        "full-exit-scalp",
        1,
        "100% exit at target with the baseline thresholds.",
        exit_mode="FULL_EXIT",
        scale_out_steps=1,
        cycle_mode="STANDARD",
        allow_rebuy=False,
        **_SHARED,
    ),

    # =========================
    # 🔁 ROLLING REBUY: Harvest
    # =========================
    "rolling-rebuy-harvest": _preset(
        "rolling-rebuy-harvest",
        1,
        "80/20 partial sells with a rebuy on dip in choppy markets.",
        exit_mode="FULL_EXIT",
        scale_out_steps=1,
        cycle_mode="ROLLING_REBUY",
        primary_sell_pct="80",
        allow_rebuy=True,
        max_rebuy_count=1,
        exposure_cap_pct="100",
        rebuy_regime_gate="CHOP_ONLY",
        rebuy_dip_pct="0.6",
        **_SHARED,
    ),

    # =========================
    # 🛟 RESERVE RESET: 3 buckets
    # =========================
    "adaptive-reserve-reset": _preset(
        "adaptive-reserve-reset",
        1,
        "Normal/rescue/chase buckets for large directional days.",
        exit_mode="FULL_EXIT",
        scale_out_steps=1,
        cycle_mode="ROLLING_REBUY",
        primary_sell_pct="80",
        allow_rebuy=True,
        max_rebuy_count=1,
        exposure_cap_pct="100",
        rebuy_regime_gate="CHOP_ONLY",
        rebuy_dip_pct="0.6",
        enable_reserve_reset=True,
        rescue_reserve_pct="33",
        chase_reserve_pct="33",
        rescue_drawdown_pct="2.5",
        chase_trigger_pct="3.0",
        chase_exit_target_pct="1.2",
        chase_regime_gate="TREND_UP_ONLY",
        max_reserve_deployments_per_cycle=2,
        **_SHARED,
    ),
}


def get_preset(name: str) -> PresetConfig:
    if name not in PRESETS:
        raise ConfigurationError(f"Unknown preset: {name}", details={"preset": name})
    return PRESETS[name]


def apply_preset(config: StrategyConfig, preset: PresetConfig | str) -> StrategyConfig:
    """
    Shallow opt-in merge: only the fields named by the preset change, every
    other field keeps its current value. Applying the same preset twice
    yields the same config.
    """
    if isinstance(preset, str):
        preset = get_preset(preset)

    merged = dataclasses.replace(config, **dict(preset.overrides), preset=preset.name)
    logger.debug(
        f"Preset applied | instance={config.instance_id} | preset={preset.name} v{preset.version} "
        f"| fields={sorted(preset.overrides)}"
    )
    return merged
