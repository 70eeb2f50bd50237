from __future__ import annotations

import enum
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Sequence

import requests
from loguru import logger


class AlertType(str, enum.Enum):
    TRADE_EXECUTED = "TRADE_EXECUTED"
    TRADE_FAILED = "TRADE_FAILED"
    CIRCUIT_BREAKER = "CIRCUIT_BREAKER"
    RESERVE_TRANSITION = "RESERVE_TRANSITION"
    BOT_STARTED = "BOT_STARTED"
    BOT_STOPPED = "BOT_STOPPED"


@dataclass(frozen=True)
class AlertEvent:
    type: AlertType
    title: str
    message: str
    metadata: dict = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def json_metadata(self) -> dict:
        return {k: _jsonable(v) for k, v in self.metadata.items()}

    def to_payload(self) -> dict:
        return {
            "type": self.type.value,
            "title": self.title,
            "message": self.message,
            "metadata": self.json_metadata(),
            "timestamp": self.timestamp.isoformat(),
        }


def _jsonable(value):
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, Decimal):
        return str(value)
    return str(value)


class AlertSink:
    name = "sink"

    def deliver(self, event: AlertEvent) -> bool:
        raise NotImplementedError


class WebhookAlertSink(AlertSink):
    name = "webhook"

    def __init__(self, url: str, *, timeout: float = 5.0, retries: int = 2, session: requests.Session | None = None):
        self.url = url
        self.timeout = timeout
        self.retries = retries
        self.session = session or requests.Session()

    def deliver(self, event: AlertEvent) -> bool:
        payload = event.to_payload()
        for attempt in range(self.retries + 1):
            try:
                r = self.session.post(self.url, json=payload, timeout=self.timeout)
                r.raise_for_status()
                logger.debug(f"WEBHOOK | delivered {event.type.value} (attempt {attempt + 1})")
                return True
            except requests.RequestException as e:
                logger.warning(f"WEBHOOK | attempt {attempt + 1}/{self.retries + 1} failed: {e}")
        return False


class AlertDispatcher:
    """
    Fan an event out to every sink on a daemon thread. `emit` returns
    immediately; delivery failures are logged and never reach the caller.
    """

    def __init__(
        self,
        sinks: Sequence[AlertSink] = (),
        *,
        on_recorded: Callable[[AlertEvent, dict[str, bool]], None] | None = None,
        background: bool = True,
    ) -> None:
        self.sinks = list(sinks)
        self.on_recorded = on_recorded
        self.background = background

    def emit(self, event: AlertEvent) -> None:
        logger.info(f"🔔 {event.type.value} | {event.title}")
        if not self.sinks and self.on_recorded is None:
            return
        if self.background:
            threading.Thread(target=self._deliver, args=(event,), daemon=True).start()
        else:
            self._deliver(event)

    def _deliver(self, event: AlertEvent) -> None:
        results: dict[str, bool] = {}
        for sink in self.sinks:
            try:
                results[sink.name] = sink.deliver(event)
            except Exception as e:
                logger.warning(f"Alert sink {sink.name} failed: {e}")
                results[sink.name] = False
        if self.on_recorded is not None:
            try:
                self.on_recorded(event, results)
            except Exception as e:
                logger.warning(f"Alert record failed: {e}")
