from __future__ import annotations

import hashlib
from datetime import datetime

CLIENT_ORDER_ID_LENGTH = 32


def _timestamp_ms(timestamp: datetime | int) -> int:
    if isinstance(timestamp, datetime):
        return int(timestamp.timestamp() * 1000)
    return int(timestamp)


def generate_client_order_id(
    instance_id: str,
    side: str,
    timestamp: datetime | int,
    nonce: int | str,
) -> str:
    """
    Deterministic idempotency key for one intended trade.

    The same (instance, side, timestamp, nonce) always yields the same id,
    so a retried submission is recognised by the venue and the trade log
    instead of being executed twice.
    """
    payload = f"{instance_id}:{side.upper()}:{_timestamp_ms(timestamp)}:{nonce}"
    digest = hashlib.sha256(payload.encode("utf-8")).hexdigest()
    return digest[:CLIENT_ORDER_ID_LENGTH]


def chunk_order_id(parent_id: str, index: int) -> str:
    return f"{parent_id}-{index}"
