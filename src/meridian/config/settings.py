from __future__ import annotations

import os
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from pathlib import Path

from meridian.errors import ConfigurationError
from meridian.persistence.db import DEFAULT_DATABASE_URL


def _env_decimal(name: str, default: str) -> Decimal:
    raw = os.getenv(name, default)
    try:
        return Decimal(raw)
    except InvalidOperation as e:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from e


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from e


def _env_int(name: str) -> int | None:
    raw = os.getenv(name)
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from e


@dataclass(frozen=True)
class Settings:
    """Process-level settings read from the environment (after load_dotenv)."""
    database_url: str = DEFAULT_DATABASE_URL
    binance_api_key: str | None = None
    binance_api_secret: str | None = None
    telegram_bot_token: str | None = None
    telegram_chat_id: int | None = None
    alert_webhook_url: str | None = None
    loop_interval_seconds: float = 10.0
    log_dir: Path = Path("logs")
    state_dir: Path = Path("state")
    config_dir: Path = Path("configs")
    wallet_min_reserve: Decimal = Decimal("5")

    @classmethod
    def from_env(cls) -> "Settings":
        interval = _env_float("BOT_LOOP_INTERVAL_SECONDS", 10.0)
        if interval <= 0:
            raise ConfigurationError("BOT_LOOP_INTERVAL_SECONDS must be positive")
        return cls(
            database_url=os.getenv("DATABASE_URL") or DEFAULT_DATABASE_URL,
            binance_api_key=os.getenv("BINANCE_API_KEY") or None,
            binance_api_secret=os.getenv("BINANCE_API_SECRET") or None,
            telegram_bot_token=os.getenv("TELEGRAM_BOT_TOKEN") or None,
            telegram_chat_id=_env_int("TELEGRAM_CHAT_ID"),
            alert_webhook_url=os.getenv("ALERT_WEBHOOK_URL") or None,
            loop_interval_seconds=interval,
            log_dir=Path(os.getenv("MERIDIAN_LOG_DIR") or "logs"),
            state_dir=Path(os.getenv("MERIDIAN_STATE_DIR") or "state"),
            config_dir=Path(os.getenv("MERIDIAN_CONFIG_DIR") or "configs"),
            wallet_min_reserve=_env_decimal("WALLET_MIN_RESERVE", "5"),
        )

    @property
    def has_binance_keys(self) -> bool:
        return bool(self.binance_api_key and self.binance_api_secret)

    @property
    def has_telegram(self) -> bool:
        return bool(self.telegram_bot_token and self.telegram_chat_id is not None)

    def redacted(self) -> dict:
        from meridian.utils.logging_config import redact

        return redact(
            {
                "database_url": self.database_url,
                "binance_api_key": self.binance_api_key,
                "binance_api_secret": self.binance_api_secret,
                "telegram_bot_token": self.telegram_bot_token,
                "telegram_chat_id": self.telegram_chat_id,
                "alert_webhook_url": self.alert_webhook_url,
                "loop_interval_seconds": self.loop_interval_seconds,
                "log_dir": str(self.log_dir),
                "state_dir": str(self.state_dir),
                "config_dir": str(self.config_dir),
                "wallet_min_reserve": str(self.wallet_min_reserve),
            }
        )
