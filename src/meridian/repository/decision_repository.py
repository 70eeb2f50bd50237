from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from meridian.persistence.models import DecisionLog


class DecisionRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def save_decision(
        self,
        *,
        instance_id: str,
        action: str,
        code: str,
        reason: str,
        regime_detected: str,
        confidence_score: Decimal,
        price: Decimal | None = None,
        client_order_id: str | None = None,
        timestamp: datetime | None = None,
    ) -> DecisionLog:
        decision = DecisionLog(
            instance_id=instance_id,
            action=action,
            code=code,
            reason=reason,
            regime_detected=regime_detected,
            confidence_score=confidence_score,
            price=price,
            client_order_id=client_order_id,
            timestamp=timestamp or datetime.now(timezone.utc),
        )

        self.session.add(decision)
        self.session.commit()
        self.session.refresh(decision)

        return decision

    def recent(self, instance_id: str, limit: int = 20) -> list[DecisionLog]:
        stmt = (
            select(DecisionLog)
            .where(DecisionLog.instance_id == instance_id)
            .order_by(DecisionLog.timestamp.desc(), DecisionLog.decision_id.desc())
            .limit(limit)
        )
        return list(self.session.execute(stmt).scalars())
