from datetime import date
from typing import Any, Literal

from pydantic import BaseModel, Field


class UnitUpsertRequest(BaseModel):
    host_id: str
    title: str = ""
    currency: str = Field(default="NGN", min_length=3, max_length=8)
    booking_mode: Literal["instant", "request"] = "request"
    cancellation_policy: str = "flexible"
    nightly_price_minor: int = Field(default=0, ge=0)
    cleaning_fee_minor: int = Field(default=0, ge=0)
    min_nights: int = Field(default=1, ge=1)
    max_nights: int | None = Field(default=None, ge=1)
    advance_notice_hours: int = Field(default=0, ge=0)
    hold_window_minutes: int | None = Field(default=None, gt=0)
    is_active: bool = True


class UnitResponse(BaseModel):
    id: str
    host_id: str
    title: str
    currency: str
    booking_mode: str
    cancellation_policy: str
    nightly_price_minor: int
    cleaning_fee_minor: int
    min_nights: int
    max_nights: int | None
    advance_notice_hours: int
    hold_window_minutes: int | None
    is_active: bool


class BlockCreate(BaseModel):
    date_from: date
    date_to: date
    reason: Literal["host_block", "maintenance"] = "host_block"


class BlockResponse(BaseModel):
    id: str
    unit_id: str
    date_from: date
    date_to: date
    reason: str


class RangeResponse(BaseModel):
    source: str
    ref_id: str
    date_from: date
    date_to: date
    detail: str | None = None


class AvailabilityResponse(BaseModel):
    unit_id: str
    date_from: date
    date_to: date
    available: bool
    blocking_ranges: list[RangeResponse]


class CalendarResponse(BaseModel):
    unit_id: str
    date_from: date
    date_to: date
    unavailable_dates: list[date]


class BookingRequest(BaseModel):
    unit_id: str
    guest_id: str
    date_from: date
    date_to: date
    mode: Literal["instant", "request"] | None = None
    pricing_snapshot: dict[str, Any] | None = None


class BookingResponse(BaseModel):
    booking_id: str
    unit_id: str
    guest_id: str
    host_id: str
    date_from: date
    date_to: date
    nights: int
    booking_mode: str
    status: str
    total_amount_minor: int
    currency: str
    pricing_snapshot: dict[str, Any]
    payment_reference: str | None = None
    expires_at: str | None = None
    refund_required: bool = False
    cancel_reason: str | None = None


class CancelRequest(BaseModel):
    actor_id: str
    reason: str | None = Field(default=None, max_length=255)


class RespondRequest(BaseModel):
    actor_id: str
    action: Literal["accept", "decline"]
    reason: str | None = Field(default=None, max_length=255)


class PaymentInitRequest(BaseModel):
    guest_id: str
    provider: str
    customer_email: str | None = None


class PaymentAttemptResponse(BaseModel):
    attempt_id: str
    booking_id: str
    provider: str
    provider_reference: str
    status: str
    amount_total_minor: int
    currency: str
    needs_reconcile: bool
    reconcile_reason: str | None = None
    confirmed_at: str | None = None
    redirect_url: str | None = None
    booking_status: str | None = None


class PaymentNotificationRequest(BaseModel):
    provider: str
    reference: str
    status: Literal["initiated", "succeeded", "failed"] | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    tx_id: str | None = None
    amount_minor: int | None = Field(default=None, ge=0)
    currency: str | None = None


class PaymentResultResponse(BaseModel):
    ok: bool
    already_succeeded: bool
    attempt_id: str
    booking_id: str
    confirmed_at: str | None = None
    booking_status: str | None = None
    reason: str | None = None


class ReconcileRequest(BaseModel):
    provider: str
    reference: str


class SweepRequest(BaseModel):
    mode: Literal["batch", "stuck", "receipts"] = "batch"
    limit: int | None = Field(default=None, ge=1, le=200)


class SweepSummaryResponse(BaseModel):
    mode: str
    scanned: int
    locked: int
    reconciled: int
    failed_marked: int
    flagged: int
    skipped_locked: int
    skipped_terminal: int
    stale_flagged: int
    expired: int
    completed: int
    redelivered: int
    errors: list[str]


class SweepStatusResponse(BaseModel):
    version: int | None = None
    mode: str | None = None
    started_at: str | None = None
    finished_at: str | None = None
    summary: dict[str, Any] | None = None


class OutboxEventResponse(BaseModel):
    id: str
    booking_id: str
    event_kind: str
    audience: str
    recipient_id: str | None = None
    dedupe_key: str
    status: str
    attempts: int
    created_at: str


class PayoutResponse(BaseModel):
    id: str
    booking_id: str
    host_id: str
    amount_minor: int
    currency: str
    status: str
    paid_at: str | None = None
    paid_ref: str | None = None
    note: str | None = None
    created_at: str


class PayoutPaidRequest(BaseModel):
    paid_ref: str | None = Field(default=None, max_length=128)
    note: str | None = Field(default=None, max_length=280)
