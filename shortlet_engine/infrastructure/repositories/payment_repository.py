# shortlet_engine/infrastructure/repositories/payment_repository.py

from datetime import datetime

from sqlalchemy import func, literal, or_, select, update
from sqlalchemy.orm import Session

from shortlet_engine.domain.state_machine import PaymentStatus
from shortlet_engine.infrastructure.db.models import PaymentAttempt
from shortlet_engine.infrastructure.db.statements import insert_if_absent


class PaymentAttemptRepository:
    """
    Ledger access. Every status change is a conditional UPDATE whose
    WHERE clause encodes the allowed source state; callers read rowcount
    to learn whether they won.
    """

    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, attempt_id: str) -> PaymentAttempt | None:
        stmt = (
            select(PaymentAttempt)
            .where(PaymentAttempt.id == attempt_id)
            .execution_options(populate_existing=True)
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def get_by_reference(
        self,
        provider_reference: str,
        provider: str | None = None,
    ) -> PaymentAttempt | None:
        stmt = (
            select(PaymentAttempt)
            .where(PaymentAttempt.provider_reference == provider_reference)
            .execution_options(populate_existing=True)
        )
        if provider is not None:
            stmt = stmt.where(PaymentAttempt.provider == provider)
        return self.db.execute(stmt).scalar_one_or_none()

    def count_for_booking(self, booking_id: str) -> int:
        stmt = (
            select(func.count())
            .select_from(PaymentAttempt)
            .where(PaymentAttempt.booking_id == booking_id)
        )
        return int(self.db.execute(stmt).scalar_one())

    def has_succeeded(self, booking_id: str) -> bool:
        stmt = (
            select(PaymentAttempt.id)
            .where(PaymentAttempt.booking_id == booking_id)
            .where(PaymentAttempt.status == PaymentStatus.SUCCEEDED)
            .limit(1)
        )
        return self.db.execute(stmt).first() is not None

    def insert_if_absent(
        self,
        *,
        attempt_id: str,
        booking_id: str,
        provider: str,
        provider_reference: str,
        amount_total_minor: int,
        currency: str,
        now: datetime,
    ) -> bool:
        return insert_if_absent(
            self.db,
            PaymentAttempt,
            {
                "id": attempt_id,
                "booking_id": booking_id,
                "provider": provider,
                "provider_reference": provider_reference,
                "status": PaymentStatus.INITIATED,
                "amount_total_minor": amount_total_minor,
                "currency": currency,
                "provider_payload": "{}",
                "verify_attempts": 0,
                "needs_reconcile": False,
                "created_at": now,
                "updated_at": now,
            },
            conflict_column="provider_reference",
        )

    def _update(self, attempt_filter, **values) -> int:
        stmt = (
            update(PaymentAttempt)
            .where(*attempt_filter)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return self.db.execute(stmt).rowcount

    def mark_succeeded(
        self,
        provider: str,
        provider_reference: str,
        payload_json: str,
        provider_tx_id: str | None,
        now: datetime,
    ) -> bool:
        """Returns True only for the caller that moved the row to succeeded."""
        return self._update(
            (
                PaymentAttempt.provider == provider,
                PaymentAttempt.provider_reference == provider_reference,
                PaymentAttempt.status != PaymentStatus.SUCCEEDED,
            ),
            status=PaymentStatus.SUCCEEDED,
            provider_payload=payload_json,
            provider_tx_id=func.coalesce(provider_tx_id, PaymentAttempt.provider_tx_id),
            confirmed_at=func.coalesce(
                PaymentAttempt.confirmed_at,
                literal(now, PaymentAttempt.confirmed_at.type),
            ),
            needs_reconcile=False,
            reconcile_reason=None,
            reconcile_locked_until=None,
            updated_at=now,
        ) == 1

    def update_diagnostics(
        self,
        provider: str,
        provider_reference: str,
        payload_json: str,
        provider_tx_id: str | None,
        now: datetime,
    ) -> None:
        # Never touches status or confirmed_at.
        self._update(
            (
                PaymentAttempt.provider == provider,
                PaymentAttempt.provider_reference == provider_reference,
            ),
            provider_payload=payload_json,
            provider_tx_id=func.coalesce(provider_tx_id, PaymentAttempt.provider_tx_id),
            updated_at=now,
        )

    def mark_failed(
        self,
        provider: str,
        provider_reference: str,
        reason: str | None,
        now: datetime,
        payload_json: str | None = None,
    ) -> bool:
        values = {
            "status": PaymentStatus.FAILED,
            "needs_reconcile": False,
            "reconcile_reason": reason,
            "reconcile_locked_until": None,
            "updated_at": now,
        }
        if payload_json is not None:
            values["provider_payload"] = payload_json
        return self._update(
            (
                PaymentAttempt.provider == provider,
                PaymentAttempt.provider_reference == provider_reference,
                PaymentAttempt.status == PaymentStatus.INITIATED,
            ),
            **values,
        ) == 1

    def flag_needs_reconcile(
        self,
        attempt_id: str,
        reason: str,
        now: datetime,
        payload_json: str | None = None,
        include_failed: bool = False,
    ) -> bool:
        values = {
            "needs_reconcile": True,
            "reconcile_reason": reason,
            "updated_at": now,
        }
        if payload_json is not None:
            values["provider_payload"] = payload_json

        # A settled attempt is final; only open or failed rows get flagged.
        attempt_filter = [
            PaymentAttempt.id == attempt_id,
            PaymentAttempt.status != PaymentStatus.SUCCEEDED,
        ]
        if not include_failed:
            attempt_filter.append(PaymentAttempt.status != PaymentStatus.FAILED)
        return self._update(attempt_filter, **values) == 1

    def flag_stale_initiated(
        self,
        stale_before: datetime,
        now: datetime,
    ) -> int:
        return self._update(
            (
                PaymentAttempt.status == PaymentStatus.INITIATED,
                PaymentAttempt.needs_reconcile.is_(False),
                PaymentAttempt.created_at <= stale_before,
            ),
            needs_reconcile=True,
            reconcile_reason="stale_initiated",
            updated_at=now,
        )

    def list_reconcile_candidates(self, limit: int) -> list[PaymentAttempt]:
        stmt = (
            select(PaymentAttempt)
            .where(PaymentAttempt.needs_reconcile.is_(True))
            .order_by(PaymentAttempt.updated_at, PaymentAttempt.id)
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        return list(self.db.execute(stmt).scalars().all())

    def claim_for_reconcile(
        self,
        attempt_id: str,
        now: datetime,
        locked_until: datetime,
    ) -> bool:
        """At most one sweeper holds an attempt until locked_until passes."""
        return self._update(
            (
                PaymentAttempt.id == attempt_id,
                PaymentAttempt.needs_reconcile.is_(True),
                or_(
                    PaymentAttempt.reconcile_locked_until.is_(None),
                    PaymentAttempt.reconcile_locked_until <= now,
                ),
            ),
            reconcile_locked_until=locked_until,
            updated_at=now,
        ) == 1

    def record_verify_failure(
        self,
        attempt_id: str,
        reason: str,
        now: datetime,
    ) -> bool:
        return self._update(
            (
                PaymentAttempt.id == attempt_id,
                PaymentAttempt.needs_reconcile.is_(True),
            ),
            verify_attempts=PaymentAttempt.verify_attempts + 1,
            last_verified_at=now,
            reconcile_reason=reason,
            reconcile_locked_until=None,
            updated_at=now,
        ) == 1

    def mark_verify_exhausted(self, attempt_id: str, now: datetime) -> bool:
        return self._update(
            (
                PaymentAttempt.id == attempt_id,
                PaymentAttempt.status == PaymentStatus.INITIATED,
            ),
            status=PaymentStatus.FAILED,
            needs_reconcile=False,
            reconcile_reason="verify_exhausted",
            reconcile_locked_until=None,
            last_verified_at=now,
            updated_at=now,
        ) == 1

    def clear_reconcile(self, attempt_id: str, now: datetime) -> None:
        self._update(
            (PaymentAttempt.id == attempt_id,),
            needs_reconcile=False,
            reconcile_reason=None,
            reconcile_locked_until=None,
            last_verified_at=now,
            updated_at=now,
        )

    def store_checkout_payload(
        self,
        attempt_id: str,
        payload_json: str,
        provider_tx_id: str | None,
        now: datetime,
    ) -> None:
        self._update(
            (
                PaymentAttempt.id == attempt_id,
                PaymentAttempt.status == PaymentStatus.INITIATED,
            ),
            provider_payload=payload_json,
            provider_tx_id=func.coalesce(provider_tx_id, PaymentAttempt.provider_tx_id),
            updated_at=now,
        )
