# shortlet_engine/infrastructure/db/models.py

from sqlalchemy import (
    DDL,
    String,
    Integer,
    Boolean,
    Date,
    DateTime,
    Enum,
    Text,
    UniqueConstraint,
    CheckConstraint,
    ForeignKey,
    Index,
    event,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column
from datetime import date, datetime
from uuid import uuid4

from shortlet_engine.infrastructure.db.session import Base
from shortlet_engine.domain.state_machine import BookingStatus, PaymentStatus
from shortlet_engine.domain.values import BlockReason, BookingMode, PayoutStatus


def _enum_values(enum_cls) -> list[str]:
    return [member.value for member in enum_cls]


class Unit(Base):
    """
    Rentable shortlet unit.
    Owned by listing management; this engine only reads it
    (plus the sync upsert).
    """

    __tablename__ = "units"

    id: Mapped[str] = mapped_column(
        String(64),
        primary_key=True,
        default=lambda: str(uuid4()),
    )
    host_id: Mapped[str] = mapped_column(String(64), nullable=False)
    title: Mapped[str] = mapped_column(String(200), nullable=False, default="")
    currency: Mapped[str] = mapped_column(String(8), nullable=False, default="NGN")
    booking_mode: Mapped[BookingMode] = mapped_column(
        Enum(BookingMode, name="booking_mode", values_callable=_enum_values),
        nullable=False,
        default=BookingMode.REQUEST,
    )
    cancellation_policy: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        default="flexible",
    )
    nightly_price_minor: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    cleaning_fee_minor: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    min_nights: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    max_nights: Mapped[int | None] = mapped_column(Integer, nullable=True)
    advance_notice_hours: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    hold_window_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    __table_args__ = (
        CheckConstraint("nightly_price_minor >= 0", name="ck_unit_price_nonnegative"),
        CheckConstraint("cleaning_fee_minor >= 0", name="ck_unit_cleaning_fee_nonnegative"),
        CheckConstraint("min_nights >= 1", name="ck_unit_min_nights_positive"),
        CheckConstraint("advance_notice_hours >= 0", name="ck_unit_notice_nonnegative"),
    )


class Block(Base):
    __tablename__ = "unit_blocks"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid4()),
    )
    unit_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("units.id"),
        nullable=False,
    )
    date_from: Mapped[date] = mapped_column(Date, nullable=False)
    date_to: Mapped[date] = mapped_column(Date, nullable=False)
    reason: Mapped[BlockReason] = mapped_column(
        Enum(BlockReason, name="block_reason", values_callable=_enum_values),
        nullable=False,
        default=BlockReason.HOST_BLOCK,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    __table_args__ = (
        CheckConstraint("date_from < date_to", name="ck_block_range_ordered"),
        Index("ix_unit_blocks_unit_range", "unit_id", "date_from", "date_to"),
    )


class Booking(Base):
    """
    Booking table reflecting domain state.
    Domain controls transitions.
    DB enforces the no-overlap invariant at insert time.
    """

    __tablename__ = "bookings"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid4()),
    )
    unit_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("units.id"),
        nullable=False,
    )
    guest_id: Mapped[str] = mapped_column(String(64), nullable=False)
    host_id: Mapped[str] = mapped_column(String(64), nullable=False)
    date_from: Mapped[date] = mapped_column(Date, nullable=False)
    date_to: Mapped[date] = mapped_column(Date, nullable=False)
    nights: Mapped[int] = mapped_column(Integer, nullable=False)
    booking_mode: Mapped[BookingMode] = mapped_column(
        Enum(BookingMode, name="booking_mode", values_callable=_enum_values),
        nullable=False,
        default=BookingMode.INSTANT,
    )
    status: Mapped[BookingStatus] = mapped_column(
        Enum(BookingStatus, name="booking_status", values_callable=_enum_values),
        nullable=False,
        default=BookingStatus.PENDING_PAYMENT,
    )
    total_amount_minor: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(8), nullable=False)
    pricing_snapshot: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    payment_reference: Mapped[str | None] = mapped_column(String(128), nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    refund_required: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    cancel_reason: Mapped[str | None] = mapped_column(String(255), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    __table_args__ = (
        CheckConstraint("date_from < date_to", name="ck_booking_range_ordered"),
        CheckConstraint("nights > 0", name="ck_booking_nights_positive"),
        CheckConstraint("total_amount_minor >= 0", name="ck_booking_amount_nonnegative"),
        Index("ix_bookings_unit_range", "unit_id", "date_from", "date_to"),
        Index("ix_bookings_status_expires", "status", "expires_at"),
    )


# Second line of defence for concurrent inserts on PostgreSQL: two transactions
# that both pass the NOT EXISTS check cannot both commit.
event.listen(
    Booking.__table__,
    "after_create",
    DDL("CREATE EXTENSION IF NOT EXISTS btree_gist").execute_if(dialect="postgresql"),
)
event.listen(
    Booking.__table__,
    "after_create",
    DDL(
        "ALTER TABLE bookings ADD CONSTRAINT ex_bookings_no_overlap "
        "EXCLUDE USING gist (unit_id WITH =, daterange(date_from, date_to, '[)') WITH &&) "
        "WHERE (status IN ('pending_payment', 'confirmed', 'completed'))"
    ).execute_if(dialect="postgresql"),
)


class PaymentAttempt(Base):
    """
    One row per (provider, provider_reference).
    provider_reference is the idempotency anchor.
    """

    __tablename__ = "payment_attempts"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid4()),
    )
    booking_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("bookings.id"),
        nullable=False,
    )
    provider: Mapped[str] = mapped_column(String(32), nullable=False)
    provider_reference: Mapped[str] = mapped_column(String(128), nullable=False)
    status: Mapped[PaymentStatus] = mapped_column(
        Enum(PaymentStatus, name="payment_status", values_callable=_enum_values),
        nullable=False,
        default=PaymentStatus.INITIATED,
    )
    amount_total_minor: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(8), nullable=False)
    provider_payload: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    provider_tx_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    confirmed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_verified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    verify_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    needs_reconcile: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    reconcile_reason: Mapped[str | None] = mapped_column(String(64), nullable=True)
    reconcile_locked_until: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint(
            "provider_reference",
            name="uq_payment_attempt_provider_reference",
        ),
        CheckConstraint(
            "amount_total_minor >= 0",
            name="ck_payment_amount_nonnegative",
        ),
        Index("ix_payment_attempts_reconcile", "needs_reconcile", "reconcile_locked_until"),
        Index("ix_payment_attempts_booking", "booking_id"),
    )


class OutboxEvent(Base):
    """Side effects keyed by a deterministic dedupe key."""

    __tablename__ = "outbox_events"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid4()),
    )
    booking_id: Mapped[str] = mapped_column(String(36), nullable=False)
    event_kind: Mapped[str] = mapped_column(String(64), nullable=False)
    audience: Mapped[str] = mapped_column(String(16), nullable=False)
    recipient_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    payload: Mapped[str] = mapped_column(Text, nullable=False)
    dedupe_key: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="PENDING")
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    claimed_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("dedupe_key", name="uq_outbox_dedupe_key"),
    )


class Payout(Base):
    """
    Money owed to the host for a confirmed stay.
    At most one row per booking; eligible -> paid is set by an admin.
    """

    __tablename__ = "payouts"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid4()),
    )
    booking_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("bookings.id"),
        nullable=False,
    )
    host_id: Mapped[str] = mapped_column(String(64), nullable=False)
    amount_minor: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(8), nullable=False)
    status: Mapped[PayoutStatus] = mapped_column(
        Enum(PayoutStatus, name="payout_status", values_callable=_enum_values),
        nullable=False,
        default=PayoutStatus.ELIGIBLE,
    )
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    paid_ref: Mapped[str | None] = mapped_column(String(128), nullable=True)
    note: Mapped[str | None] = mapped_column(String(280), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint("booking_id", name="uq_payout_booking"),
        CheckConstraint("amount_minor >= 0", name="ck_payout_amount_nonnegative"),
    )


class SweeperRun(Base):
    """
    Append-only status record written after every sweep.
    The autoincrement id doubles as the version.
    """

    __tablename__ = "sweeper_runs"

    version: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    mode: Mapped[str] = mapped_column(String(16), nullable=False)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    finished_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    summary: Mapped[str] = mapped_column(Text, nullable=False)
