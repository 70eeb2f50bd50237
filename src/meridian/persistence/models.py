from __future__ import annotations

import enum
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from .db import Base

MONEY = Numeric(28, 12)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =========================
# ENUMS
# =========================

class AttemptStatus(str, enum.Enum):
    PENDING = "PENDING"
    COMPLETE = "COMPLETE"
    PARTIAL = "PARTIAL"
    FAILED = "FAILED"


# =========================
# CORE TABLES
# =========================

class TradeAttempt(Base):
    __tablename__ = "trade_attempt"

    attempt_id: Mapped[int] = mapped_column(primary_key=True)
    client_order_id: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    instance_id: Mapped[str] = mapped_column(String(64), index=True)
    symbol: Mapped[str] = mapped_column(String(20))
    side: Mapped[str] = mapped_column(String(4))
    action_code: Mapped[str] = mapped_column(String(40))
    status: Mapped[AttemptStatus] = mapped_column(Enum(AttemptStatus), default=AttemptStatus.PENDING)
    trading_mode: Mapped[str] = mapped_column(String(10))

    requested_amount: Mapped[Decimal] = mapped_column(MONEY)
    amount_is_base: Mapped[bool] = mapped_column(Boolean)
    chunks_requested: Mapped[int] = mapped_column(Integer, default=1)
    chunks_filled: Mapped[int] = mapped_column(Integer, default=0)

    base_filled: Mapped[Decimal] = mapped_column(MONEY, default=Decimal("0"))
    quote_filled: Mapped[Decimal] = mapped_column(MONEY, default=Decimal("0"))
    average_price: Mapped[Decimal | None] = mapped_column(MONEY, nullable=True)
    fees_quote: Mapped[Decimal] = mapped_column(MONEY, default=Decimal("0"))
    realized_pnl: Mapped[Decimal | None] = mapped_column(MONEY, nullable=True)

    error_code: Mapped[str | None] = mapped_column(String(40), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class DecisionLog(Base):
    __tablename__ = "decision_log"

    decision_id: Mapped[int] = mapped_column(primary_key=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, index=True)
    instance_id: Mapped[str] = mapped_column(String(64), index=True)

    action: Mapped[str] = mapped_column(String(10))
    code: Mapped[str] = mapped_column(String(40))
    reason: Mapped[str] = mapped_column(Text)

    price: Mapped[Decimal | None] = mapped_column(MONEY, nullable=True)
    regime_detected: Mapped[str] = mapped_column(String(30))
    confidence_score: Mapped[Decimal] = mapped_column(Numeric(6, 4))
    client_order_id: Mapped[str | None] = mapped_column(String(64), nullable=True)


class AlertRecord(Base):
    __tablename__ = "alert_event"

    alert_id: Mapped[int] = mapped_column(primary_key=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, index=True)
    instance_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    type: Mapped[str] = mapped_column(String(40))
    title: Mapped[str] = mapped_column(String(200))
    message: Mapped[str] = mapped_column(Text)
    metadata_json: Mapped[dict] = mapped_column(JSON, default=dict)

    webhook_delivered: Mapped[bool] = mapped_column(Boolean, default=False)
    telegram_delivered: Mapped[bool] = mapped_column(Boolean, default=False)


class HourlyAnalyticsRow(Base):
    __tablename__ = "hourly_analytics"
    __table_args__ = (
        UniqueConstraint("instance_id", "hour_start", name="uq_hourly_analytics"),
    )

    row_id: Mapped[int] = mapped_column(primary_key=True)
    instance_id: Mapped[str] = mapped_column(String(64), index=True)
    hour_start: Mapped[datetime] = mapped_column(DateTime(timezone=True))

    open: Mapped[Decimal] = mapped_column(MONEY)
    high: Mapped[Decimal] = mapped_column(MONEY)
    low: Mapped[Decimal] = mapped_column(MONEY)
    close: Mapped[Decimal] = mapped_column(MONEY)

    trade_count: Mapped[int] = mapped_column(Integer, default=0)
    direction_changes: Mapped[int] = mapped_column(Integer, default=0)
    avg_slippage_bps: Mapped[Decimal] = mapped_column(Numeric(12, 4), default=Decimal("0"))
    failed_count: Mapped[int] = mapped_column(Integer, default=0)
