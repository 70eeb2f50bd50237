from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session

from meridian.persistence.models import AlertRecord
from meridian.providers.alerts import AlertEvent


class AlertRepository:
    def __init__(self, session: Session) -> None:
        self.session = session

    def save_alert(self, event: AlertEvent) -> AlertRecord:
        record = AlertRecord(
            timestamp=event.timestamp,
            instance_id=event.metadata.get("instance_id"),
            type=event.type.value,
            title=event.title,
            message=event.message,
            metadata_json=event.json_metadata(),
        )
        self.session.add(record)
        self.session.commit()
        self.session.refresh(record)
        return record

    def mark_delivered(self, alert_id: int, *, webhook: bool = False, telegram: bool = False) -> None:
        record = self.session.get(AlertRecord, alert_id)
        if record is None:
            return
        record.webhook_delivered = record.webhook_delivered or webhook
        record.telegram_delivered = record.telegram_delivered or telegram
        self.session.commit()

    def recent(self, limit: int = 20) -> list[AlertRecord]:
        stmt = select(AlertRecord).order_by(AlertRecord.timestamp.desc()).limit(limit)
        return list(self.session.execute(stmt).scalars())
