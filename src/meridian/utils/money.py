from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal, ROUND_DOWN, ROUND_HALF_EVEN

ZERO = Decimal("0")
ONE = Decimal("1")
HUNDRED = Decimal("100")
BPS_PER_UNIT = Decimal("10000")


def to_decimal(value) -> Decimal:
    """
    Convert a venue value into Decimal without going through binary floats.
    Floats are passed through str() so 0.1 stays 0.1.
    """
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(str(value))
    if value is None:
        return ZERO
    return Decimal(value)


def quantize(value: Decimal, step: Decimal | str, rounding=ROUND_DOWN) -> Decimal:
    """Round `value` down to a multiple of `step` (LOT_SIZE / tick style)."""
    step = to_decimal(step)
    if step <= 0:
        return value
    return (value / step).to_integral_value(rounding=rounding) * step


def round_money(value: Decimal, places: int = 8) -> Decimal:
    return value.quantize(Decimal(1).scaleb(-places), rounding=ROUND_HALF_EVEN)


# =========================
# Basis points / percent
# =========================

def bps_to_fraction(bps) -> Decimal:
    return to_decimal(bps) / BPS_PER_UNIT


def fraction_to_bps(fraction) -> Decimal:
    return to_decimal(fraction) * BPS_PER_UNIT


def pct_to_bps(pct) -> Decimal:
    return to_decimal(pct) * HUNDRED


def bps_to_pct(bps) -> Decimal:
    return to_decimal(bps) / HUNDRED


def apply_pct(value, pct) -> Decimal:
    """value * (1 + pct/100); negative pct moves down."""
    return to_decimal(value) * (ONE + to_decimal(pct) / HUNDRED)


def pct_of(value, pct) -> Decimal:
    return to_decimal(value) * to_decimal(pct) / HUNDRED


def pct_change(old, new) -> Decimal:
    old = to_decimal(old)
    if old == 0:
        return ZERO
    return (to_decimal(new) - old) / old * HUNDRED


def deviation_bps(primary, secondary) -> Decimal:
    """Absolute deviation of `secondary` from `primary`, in bps of `primary`."""
    primary = to_decimal(primary)
    if primary == 0:
        return ZERO
    return abs(to_decimal(secondary) - primary) / primary * BPS_PER_UNIT


# =========================
# Time buckets
# =========================

def as_utc(ts: datetime) -> datetime:
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def truncate_hour(ts: datetime) -> datetime:
    return as_utc(ts).replace(minute=0, second=0, microsecond=0)


def truncate_day(ts: datetime) -> datetime:
    return as_utc(ts).replace(hour=0, minute=0, second=0, microsecond=0)


def same_hour(a: datetime, b: datetime) -> bool:
    return truncate_hour(a) == truncate_hour(b)


def same_day(a: datetime, b: datetime) -> bool:
    return truncate_day(a) == truncate_day(b)
