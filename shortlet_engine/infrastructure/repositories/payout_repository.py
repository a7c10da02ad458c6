# shortlet_engine/infrastructure/repositories/payout_repository.py

from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from shortlet_engine.domain.values import PayoutStatus
from shortlet_engine.infrastructure.db.models import Payout
from shortlet_engine.infrastructure.db.statements import insert_if_absent


class PayoutRepository:

    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, payout_id: str) -> Payout | None:
        stmt = (
            select(Payout)
            .where(Payout.id == payout_id)
            .execution_options(populate_existing=True)
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def get_by_booking(self, booking_id: str) -> Payout | None:
        stmt = (
            select(Payout)
            .where(Payout.booking_id == booking_id)
            .execution_options(populate_existing=True)
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def insert_eligible(
        self,
        *,
        payout_id: str,
        booking_id: str,
        host_id: str,
        amount_minor: int,
        currency: str,
        now: datetime,
    ) -> bool:
        return insert_if_absent(
            self.db,
            Payout,
            {
                "id": payout_id,
                "booking_id": booking_id,
                "host_id": host_id,
                "amount_minor": max(0, amount_minor),
                "currency": currency,
                "status": PayoutStatus.ELIGIBLE,
                "created_at": now,
                "updated_at": now,
            },
            conflict_column="booking_id",
        )

    def mark_paid(
        self,
        payout_id: str,
        paid_ref: str | None,
        note: str | None,
        now: datetime,
    ) -> bool:
        stmt = (
            update(Payout)
            .where(Payout.id == payout_id)
            .where(Payout.status == PayoutStatus.ELIGIBLE)
            .values(
                status=PayoutStatus.PAID,
                paid_at=now,
                paid_ref=paid_ref,
                note=note,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        return self.db.execute(stmt).rowcount == 1

    def void_for_booking(self, booking_id: str, now: datetime) -> bool:
        stmt = (
            update(Payout)
            .where(Payout.booking_id == booking_id)
            .where(Payout.status == PayoutStatus.ELIGIBLE)
            .values(status=PayoutStatus.VOID, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        return self.db.execute(stmt).rowcount == 1

    def list_by_status(self, status: PayoutStatus, limit: int) -> list[Payout]:
        stmt = (
            select(Payout)
            .where(Payout.status == status)
            .order_by(Payout.created_at, Payout.id)
            .limit(limit)
        )
        return list(self.db.execute(stmt).scalars().all())
