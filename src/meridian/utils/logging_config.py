from loguru import logger
import sys
from pathlib import Path
from typing import Mapping

SECRET_MARKERS = ("key", "secret", "token", "password")


def setup_logging(log_dir: str | Path = "logs", level: str = "INFO") -> None:
    """
    Configure Loguru for the engine.

    - Console logs (INFO+ by default)
    - File logs (DEBUG+) with rotation and retention
    """

    log_dir = Path(log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)

    logger.remove()

    logger.add(
        sys.stdout,
        level=level,
        format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
               "<level>{level}</level> | "
               "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
               "<level>{message}</level>",
    )

    logger.add(
        log_dir / "meridian.log",
        level="DEBUG",
        rotation="5 MB",
        retention="7 days",
        compression="zip",
        format="{time:YYYY-MM-DD HH:mm:ss} | {level} | {name}:{function}:{line} | {message}",
    )


def redact(values: Mapping[str, object]) -> dict:
    """Mask credential-looking entries before they reach a log line."""
    masked = {}
    for name, value in values.items():
        if value and any(marker in name.lower() for marker in SECRET_MARKERS):
            masked[name] = "***"
        else:
            masked[name] = value
    return masked
