from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from meridian.errors import DuplicateOrderError
from meridian.execution.split_executor import SplitExecutionResult
from meridian.persistence.models import AttemptStatus, TradeAttempt


class TradeRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get_attempt(self, client_order_id: str) -> TradeAttempt | None:
        stmt = select(TradeAttempt).where(TradeAttempt.client_order_id == client_order_id).limit(1)
        return self.session.execute(stmt).scalars().first()

    def record_attempt(
        self,
        *,
        client_order_id: str,
        instance_id: str,
        symbol: str,
        side: str,
        action_code: str,
        trading_mode: str,
        requested_amount: Decimal,
        amount_is_base: bool,
        chunks_requested: int = 1,
    ) -> TradeAttempt:
        """Insert a PENDING attempt. A client_order_id seen before is never accepted again."""
        if self.get_attempt(client_order_id) is not None:
            raise DuplicateOrderError(
                f"client order id {client_order_id} already recorded",
                details={"client_order_id": client_order_id},
            )

        attempt = TradeAttempt(
            client_order_id=client_order_id,
            instance_id=instance_id,
            symbol=symbol,
            side=side,
            action_code=action_code,
            status=AttemptStatus.PENDING,
            trading_mode=trading_mode,
            requested_amount=requested_amount,
            amount_is_base=amount_is_base,
            chunks_requested=chunks_requested,
        )
        self.session.add(attempt)
        try:
            self.session.commit()
        except IntegrityError as e:
            self.session.rollback()
            raise DuplicateOrderError(
                f"client order id {client_order_id} already recorded",
                details={"client_order_id": client_order_id},
            ) from e
        self.session.refresh(attempt)
        return attempt

    def complete_attempt(
        self,
        client_order_id: str,
        result: SplitExecutionResult,
        *,
        realized_pnl: Decimal | None = None,
        completed_at: datetime | None = None,
    ) -> TradeAttempt | None:
        attempt = self.get_attempt(client_order_id)
        if attempt is None:
            return None

        attempt.status = AttemptStatus(result.status.value)
        attempt.chunks_filled = len(result.filled_chunks)
        attempt.base_filled = result.total_base
        attempt.quote_filled = result.total_quote
        attempt.average_price = result.average_price if result.total_base > 0 else None
        attempt.fees_quote = result.total_fees
        attempt.realized_pnl = realized_pnl
        if result.error is not None:
            attempt.error_code = result.error.code
            attempt.error_message = result.error.message
        elif result.abort_reason:
            attempt.error_message = result.abort_reason
        attempt.completed_at = completed_at or datetime.now(timezone.utc)

        self.session.commit()
        return attempt

    def fail_attempt(self, client_order_id: str, code: str, message: str) -> TradeAttempt | None:
        attempt = self.get_attempt(client_order_id)
        if attempt is None:
            return None
        attempt.status = AttemptStatus.FAILED
        attempt.error_code = code
        attempt.error_message = message
        attempt.completed_at = datetime.now(timezone.utc)
        self.session.commit()
        return attempt

    def list_attempts(self, instance_id: str | None = None, limit: int = 50) -> list[TradeAttempt]:
        stmt = select(TradeAttempt).order_by(TradeAttempt.created_at.desc(), TradeAttempt.attempt_id.desc()).limit(limit)
        if instance_id is not None:
            stmt = stmt.where(TradeAttempt.instance_id == instance_id)
        return list(self.session.execute(stmt).scalars())
