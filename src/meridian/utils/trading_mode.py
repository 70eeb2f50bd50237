from enum import Enum


class TradingMode(str, Enum):
    DRY_RUN = "dry_run"
    LIVE = "live"


class Side(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


class TradeSizeMode(str, Enum):
    FIXED_QUOTE = "FIXED_QUOTE"
    FIXED_BASE = "FIXED_BASE"
    PERCENT_BALANCE = "PERCENT_BALANCE"


class StartingMode(str, Enum):
    START_BY_BUYING = "START_BY_BUYING"
    START_BY_SELLING = "START_BY_SELLING"
    START_NEUTRAL = "START_NEUTRAL"


class ExitMode(str, Enum):
    FULL_EXIT = "FULL_EXIT"
    SCALE_OUT = "SCALE_OUT"


class CycleMode(str, Enum):
    STANDARD = "STANDARD"
    ROLLING_REBUY = "ROLLING_REBUY"


class CompoundingMode(str, Enum):
    FIXED = "FIXED"
    CALCULATED = "CALCULATED"
    FULL_BALANCE = "FULL_BALANCE"


class RebuyRegimeGate(str, Enum):
    NONE = "NONE"
    CHOP_ONLY = "CHOP_ONLY"


class ChaseRegimeGate(str, Enum):
    TREND_UP_ONLY = "TREND_UP_ONLY"
    NON_CHOP = "NON_CHOP"


class RunnerMode(str, Enum):
    LADDER = "LADDER"
    TRAILING = "TRAILING"
