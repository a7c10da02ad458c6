# shortlet_engine/infrastructure/repositories/outbox_repository.py

from datetime import datetime

from sqlalchemy import and_, or_, select, update
from sqlalchemy.orm import Session

from shortlet_engine.infrastructure.db.models import OutboxEvent
from shortlet_engine.infrastructure.db.statements import insert_if_absent

SENDING = "SENDING"
PENDING = "PENDING"
DELIVERED = "DELIVERED"


def _redeliverable(now: datetime):
    # PENDING rows, plus SENDING rows whose sender vanished before finishing.
    return or_(
        OutboxEvent.status == PENDING,
        and_(
            OutboxEvent.status == SENDING,
            or_(
                OutboxEvent.claimed_until.is_(None),
                OutboxEvent.claimed_until <= now,
            ),
        ),
    )


class OutboxRepository:

    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, event_id: str) -> OutboxEvent | None:
        stmt = (
            select(OutboxEvent)
            .where(OutboxEvent.id == event_id)
            .execution_options(populate_existing=True)
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def get_by_dedupe_key(self, dedupe_key: str) -> OutboxEvent | None:
        stmt = (
            select(OutboxEvent)
            .where(OutboxEvent.dedupe_key == dedupe_key)
            .execution_options(populate_existing=True)
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def insert_claimed(
        self,
        *,
        event_id: str,
        booking_id: str,
        event_kind: str,
        audience: str,
        recipient_id: str | None,
        payload_json: str,
        dedupe_key: str,
        now: datetime,
        claimed_until: datetime,
    ) -> bool:
        """
        The row is born already claimed (SENDING, one attempt) so only
        the caller whose insert landed goes on to deliver it. The claim
        lapses at claimed_until if that caller never reports back.
        """
        return insert_if_absent(
            self.db,
            OutboxEvent,
            {
                "id": event_id,
                "booking_id": booking_id,
                "event_kind": event_kind,
                "audience": audience,
                "recipient_id": recipient_id,
                "payload": payload_json,
                "dedupe_key": dedupe_key,
                "status": SENDING,
                "attempts": 1,
                "claimed_until": claimed_until,
                "created_at": now,
            },
            conflict_column="dedupe_key",
        )

    def claim_for_redelivery(
        self,
        event_id: str,
        now: datetime,
        claimed_until: datetime,
    ) -> bool:
        stmt = (
            update(OutboxEvent)
            .where(OutboxEvent.id == event_id)
            .where(_redeliverable(now))
            .values(
                status=SENDING,
                attempts=OutboxEvent.attempts + 1,
                claimed_until=claimed_until,
            )
            .execution_options(synchronize_session=False)
        )
        return self.db.execute(stmt).rowcount == 1

    def mark_delivered(self, event_id: str, now: datetime) -> bool:
        stmt = (
            update(OutboxEvent)
            .where(OutboxEvent.id == event_id)
            .where(OutboxEvent.status != DELIVERED)
            .values(status=DELIVERED, delivered_at=now, claimed_until=None, last_error=None)
            .execution_options(synchronize_session=False)
        )
        return self.db.execute(stmt).rowcount == 1

    def release_for_retry(self, event_id: str, error: str) -> None:
        stmt = (
            update(OutboxEvent)
            .where(OutboxEvent.id == event_id)
            .where(OutboxEvent.status == SENDING)
            .values(status=PENDING, claimed_until=None, last_error=error[:2000])
            .execution_options(synchronize_session=False)
        )
        self.db.execute(stmt)

    def list_redeliverable(self, now: datetime, limit: int) -> list[OutboxEvent]:
        stmt = (
            select(OutboxEvent)
            .where(_redeliverable(now))
            .order_by(OutboxEvent.created_at, OutboxEvent.id)
            .limit(limit)
        )
        return list(self.db.execute(stmt).scalars().all())

    def list_by_status(self, status: str, limit: int) -> list[OutboxEvent]:
        stmt = (
            select(OutboxEvent)
            .where(OutboxEvent.status == status)
            .order_by(OutboxEvent.created_at, OutboxEvent.id)
            .limit(limit)
        )
        return list(self.db.execute(stmt).scalars().all())
