from collections.abc import Callable
from datetime import date, datetime
from functools import lru_cache
import json
import logging
from typing import Literal

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from shortlet_engine.api.schemas.schemas import (
    AvailabilityResponse,
    BlockCreate,
    BlockResponse,
    BookingRequest,
    BookingResponse,
    CalendarResponse,
    CancelRequest,
    OutboxEventResponse,
    PaymentAttemptResponse,
    PaymentInitRequest,
    PaymentNotificationRequest,
    PaymentResultResponse,
    PayoutPaidRequest,
    PayoutResponse,
    RangeResponse,
    ReconcileRequest,
    RespondRequest,
    SweepRequest,
    SweepStatusResponse,
    SweepSummaryResponse,
    UnitResponse,
    UnitUpsertRequest,
)
from shortlet_engine.application.availability_service import AvailabilityService
from shortlet_engine.application.booking_service import BookingService
from shortlet_engine.application.payment_service import PaymentService
from shortlet_engine.application.payout_service import PayoutService
from shortlet_engine.application.reconciliation_service import ReconciliationService
from shortlet_engine.application.side_effects import (
    LoggingNotificationSender,
    NotificationSender,
    SideEffectDispatcher,
)
from shortlet_engine.config import Settings, get_settings
from shortlet_engine.domain.exceptions import (
    BookingValidationError,
    DatesUnavailableError,
    ForbiddenError,
    IdempotencyConflictError,
    InvalidBookingStatusError,
    InvalidDateRangeError,
    PaymentNotFoundError,
    PayoutNotFoundError,
    ProviderError,
    ProviderMalformedPayloadError,
    ProviderNotConfiguredError,
    ShortletEngineError,
    UnitNotFoundError,
    BookingNotFoundError,
)
from shortlet_engine.domain.state_machine import PaymentStatus
from shortlet_engine.domain.values import (
    BlockReason,
    BookingMode,
    PaymentResult,
    PayoutStatus,
    ProviderNotification,
)
from shortlet_engine.infrastructure.db.models import Booking, OutboxEvent, PaymentAttempt, Payout, Unit
from shortlet_engine.infrastructure.db.session import SessionLocal, as_utc, utcnow
from shortlet_engine.infrastructure.db.statements import load_json
from shortlet_engine.infrastructure.providers.registry import ProviderRegistry
from shortlet_engine.infrastructure.repositories.outbox_repository import OutboxRepository
from shortlet_engine.infrastructure.repositories.unit_repository import UnitRepository


router = APIRouter()
logger = logging.getLogger(__name__)

_STATUS_BY_ERROR = (
    (
        (UnitNotFoundError, BookingNotFoundError, PaymentNotFoundError, PayoutNotFoundError),
        status.HTTP_404_NOT_FOUND,
    ),
    ((ForbiddenError,), status.HTTP_403_FORBIDDEN),
    (
        (
            DatesUnavailableError,
            InvalidBookingStatusError,
            IdempotencyConflictError,
        ),
        status.HTTP_409_CONFLICT,
    ),
    ((BookingValidationError, ProviderNotConfiguredError), status.HTTP_422_UNPROCESSABLE_ENTITY),
    ((ProviderError,), status.HTTP_502_BAD_GATEWAY),
)


# -----------------------------
# Dependencies
# -----------------------------
def get_db():
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def get_app_settings() -> Settings:
    return get_settings()


def get_clock() -> Callable[[], datetime]:
    return utcnow


@lru_cache
def _default_registry() -> ProviderRegistry:
    return ProviderRegistry.from_settings(get_settings())


def get_provider_registry() -> ProviderRegistry:
    return _default_registry()


def get_notification_sender() -> NotificationSender:
    return LoggingNotificationSender()


def get_dispatcher(
    db: Session = Depends(get_db),
    sender: NotificationSender = Depends(get_notification_sender),
    clock: Callable[[], datetime] = Depends(get_clock),
    settings: Settings = Depends(get_app_settings),
) -> SideEffectDispatcher:
    return SideEffectDispatcher(db, sender, clock, settings)


def get_booking_service(
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
    clock: Callable[[], datetime] = Depends(get_clock),
    dispatcher: SideEffectDispatcher = Depends(get_dispatcher),
) -> BookingService:
    return BookingService(db, settings, clock, dispatcher)


def get_payment_service(
    db: Session = Depends(get_db),
    providers: ProviderRegistry = Depends(get_provider_registry),
    settings: Settings = Depends(get_app_settings),
    clock: Callable[[], datetime] = Depends(get_clock),
    dispatcher: SideEffectDispatcher = Depends(get_dispatcher),
) -> PaymentService:
    return PaymentService(db, providers, settings, clock, dispatcher)


def get_reconciliation_service(
    db: Session = Depends(get_db),
    providers: ProviderRegistry = Depends(get_provider_registry),
    settings: Settings = Depends(get_app_settings),
    clock: Callable[[], datetime] = Depends(get_clock),
    dispatcher: SideEffectDispatcher = Depends(get_dispatcher),
) -> ReconciliationService:
    return ReconciliationService(db, providers, settings, clock, dispatcher)


def get_payout_service(
    db: Session = Depends(get_db),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> PayoutService:
    return PayoutService(db, clock)


def require_admin(
    x_actor_id: str = Header(default=""),
    settings: Settings = Depends(get_app_settings),
) -> str:
    if x_actor_id not in settings.admin_actor_ids:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={"code": ForbiddenError.code, "detail": "Admin actor required"},
        )
    return x_actor_id


# -----------------------------
# Helpers
# -----------------------------
def _http_error(exc: ShortletEngineError) -> HTTPException:
    status_code = status.HTTP_400_BAD_REQUEST
    for error_types, mapped in _STATUS_BY_ERROR:
        if isinstance(exc, error_types):
            status_code = mapped
            break
    return HTTPException(
        status_code=status_code,
        detail={"code": exc.code, "detail": str(exc)},
    )


def _iso(value: datetime | None) -> str | None:
    value = as_utc(value)
    return value.isoformat() if value else None


def _unit_response(unit: Unit) -> UnitResponse:
    return UnitResponse(
        id=unit.id,
        host_id=unit.host_id,
        title=unit.title,
        currency=unit.currency,
        booking_mode=unit.booking_mode.value,
        cancellation_policy=unit.cancellation_policy,
        nightly_price_minor=unit.nightly_price_minor,
        cleaning_fee_minor=unit.cleaning_fee_minor,
        min_nights=unit.min_nights,
        max_nights=unit.max_nights,
        advance_notice_hours=unit.advance_notice_hours,
        hold_window_minutes=unit.hold_window_minutes,
        is_active=unit.is_active,
    )


def _booking_response(booking: Booking, service: BookingService) -> BookingResponse:
    return BookingResponse(
        booking_id=booking.id,
        unit_id=booking.unit_id,
        guest_id=booking.guest_id,
        host_id=booking.host_id,
        date_from=booking.date_from,
        date_to=booking.date_to,
        nights=booking.nights,
        booking_mode=booking.booking_mode.value,
        status=service.effective_status(booking).value,
        total_amount_minor=booking.total_amount_minor,
        currency=booking.currency,
        pricing_snapshot=load_json(booking.pricing_snapshot),
        payment_reference=booking.payment_reference,
        expires_at=_iso(booking.expires_at),
        refund_required=booking.refund_required,
        cancel_reason=booking.cancel_reason,
    )


def _attempt_response(
    attempt: PaymentAttempt,
    redirect_url: str | None = None,
    booking_status: str | None = None,
) -> PaymentAttemptResponse:
    return PaymentAttemptResponse(
        attempt_id=attempt.id,
        booking_id=attempt.booking_id,
        provider=attempt.provider,
        provider_reference=attempt.provider_reference,
        status=attempt.status.value,
        amount_total_minor=attempt.amount_total_minor,
        currency=attempt.currency,
        needs_reconcile=attempt.needs_reconcile,
        reconcile_reason=attempt.reconcile_reason,
        confirmed_at=_iso(attempt.confirmed_at),
        redirect_url=redirect_url,
        booking_status=booking_status,
    )


def _result_response(result: PaymentResult) -> PaymentResultResponse:
    return PaymentResultResponse(
        ok=result.ok,
        already_succeeded=result.already_succeeded,
        attempt_id=result.attempt_id,
        booking_id=result.booking_id,
        confirmed_at=_iso(result.confirmed_at),
        booking_status=result.booking_status.value if result.booking_status else None,
        reason=result.reason,
    )


def _payout_response(payout: Payout) -> PayoutResponse:
    return PayoutResponse(
        id=payout.id,
        booking_id=payout.booking_id,
        host_id=payout.host_id,
        amount_minor=payout.amount_minor,
        currency=payout.currency,
        status=payout.status.value,
        paid_at=_iso(payout.paid_at),
        paid_ref=payout.paid_ref,
        note=payout.note,
        created_at=_iso(payout.created_at),
    )


def _outbox_response(item: OutboxEvent) -> OutboxEventResponse:
    return OutboxEventResponse(
        id=item.id,
        booking_id=item.booking_id,
        event_kind=item.event_kind,
        audience=item.audience,
        recipient_id=item.recipient_id,
        dedupe_key=item.dedupe_key,
        status=item.status,
        attempts=item.attempts,
        created_at=_iso(item.created_at),
    )


# -----------------------------
# Health / outbox
# -----------------------------
@router.get("/health")
def health():
    return {"message": "Shortlet Reservation Engine is running"}


@router.get("/outbox/events", response_model=list[OutboxEventResponse])
def list_outbox_events(
    status_filter: str = "PENDING",
    limit: int = 50,
    db: Session = Depends(get_db),
):
    safe_limit = max(1, min(limit, 200))
    events = OutboxRepository(db).list_by_status(status_filter, safe_limit)
    return [_outbox_response(item) for item in events]


@router.post("/outbox/events/{event_id}/mark-published", response_model=OutboxEventResponse)
def mark_outbox_event_published(
    event_id: str,
    db: Session = Depends(get_db),
    clock: Callable[[], datetime] = Depends(get_clock),
):
    repository = OutboxRepository(db)
    if not repository.get_by_id(event_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"code": "OUTBOX_EVENT_NOT_FOUND", "detail": "Outbox event not found"},
        )

    repository.mark_delivered(event_id, clock())
    db.commit()
    return _outbox_response(repository.get_by_id(event_id))


# -----------------------------
# Units / blocks / availability
# -----------------------------
@router.put("/units/{unit_id}", response_model=UnitResponse)
def upsert_unit(
    unit_id: str,
    request: UnitUpsertRequest,
    db: Session = Depends(get_db),
):
    fields = request.model_dump()
    fields["booking_mode"] = BookingMode(fields["booking_mode"])
    fields["currency"] = fields["currency"].upper()
    unit = UnitRepository(db).upsert(unit_id, **fields)
    db.flush()
    return _unit_response(unit)


@router.post("/units/{unit_id}/blocks", response_model=BlockResponse)
def create_block(
    unit_id: str,
    request: BlockCreate,
    db: Session = Depends(get_db),
):
    repository = UnitRepository(db)
    if not repository.get_by_id(unit_id):
        raise _http_error(UnitNotFoundError(f"Unit {unit_id} not found"))
    if request.date_from >= request.date_to:
        raise _http_error(InvalidDateRangeError("date_from must be before date_to"))

    block = repository.create_block(
        unit_id,
        request.date_from,
        request.date_to,
        BlockReason(request.reason),
    )
    db.flush()
    return BlockResponse(
        id=block.id,
        unit_id=block.unit_id,
        date_from=block.date_from,
        date_to=block.date_to,
        reason=block.reason.value,
    )


@router.delete("/units/{unit_id}/blocks/{block_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_block(
    unit_id: str,
    block_id: str,
    db: Session = Depends(get_db),
):
    if not UnitRepository(db).delete_block(unit_id, block_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"code": "BLOCK_NOT_FOUND", "detail": "Block not found"},
        )


@router.get("/units/{unit_id}/availability", response_model=AvailabilityResponse)
def get_availability(
    unit_id: str,
    date_from: date,
    date_to: date,
    db: Session = Depends(get_db),
):
    try:
        ranges = AvailabilityService(db).list_blocking_ranges(unit_id, date_from, date_to)
    except ShortletEngineError as exc:
        raise _http_error(exc) from exc

    return AvailabilityResponse(
        unit_id=unit_id,
        date_from=date_from,
        date_to=date_to,
        available=not ranges,
        blocking_ranges=[
            RangeResponse(
                source=item.source,
                ref_id=item.ref_id,
                date_from=item.date_from,
                date_to=item.date_to,
                detail=item.detail,
            )
            for item in ranges
        ],
    )


@router.get("/units/{unit_id}/calendar", response_model=CalendarResponse)
def get_calendar(
    unit_id: str,
    date_from: date,
    date_to: date,
    db: Session = Depends(get_db),
):
    try:
        nights = AvailabilityService(db).unavailable_dates(unit_id, date_from, date_to)
    except ShortletEngineError as exc:
        raise _http_error(exc) from exc

    return CalendarResponse(
        unit_id=unit_id,
        date_from=date_from,
        date_to=date_to,
        unavailable_dates=nights,
    )


# -----------------------------
# Bookings
# -----------------------------
@router.post("/bookings", response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
def create_booking(
    request: BookingRequest,
    service: BookingService = Depends(get_booking_service),
):
    try:
        booking = service.create_booking(
            unit_id=request.unit_id,
            guest_id=request.guest_id,
            date_from=request.date_from,
            date_to=request.date_to,
            mode=BookingMode(request.mode) if request.mode else None,
            pricing_snapshot=request.pricing_snapshot,
        )
    except ShortletEngineError as exc:
        raise _http_error(exc) from exc

    return _booking_response(booking, service)


@router.get("/bookings/{booking_id}", response_model=BookingResponse)
def get_booking(
    booking_id: str,
    service: BookingService = Depends(get_booking_service),
):
    try:
        booking = service.get_booking(booking_id)
    except ShortletEngineError as exc:
        raise _http_error(exc) from exc

    return _booking_response(booking, service)


@router.post("/bookings/{booking_id}/cancel", response_model=BookingResponse)
def cancel_booking(
    booking_id: str,
    request: CancelRequest,
    service: BookingService = Depends(get_booking_service),
    settings: Settings = Depends(get_app_settings),
):
    try:
        booking = service.cancel_booking(
            booking_id=booking_id,
            actor_id=request.actor_id,
            reason=request.reason,
            is_admin=request.actor_id in settings.admin_actor_ids,
        )
    except ShortletEngineError as exc:
        raise _http_error(exc) from exc

    return _booking_response(booking, service)


@router.post("/bookings/{booking_id}/respond", response_model=BookingResponse)
def respond_booking(
    booking_id: str,
    request: RespondRequest,
    service: BookingService = Depends(get_booking_service),
    settings: Settings = Depends(get_app_settings),
):
    try:
        booking = service.respond_booking(
            booking_id=booking_id,
            actor_id=request.actor_id,
            action=request.action,
            reason=request.reason,
            is_admin=request.actor_id in settings.admin_actor_ids,
        )
    except ShortletEngineError as exc:
        raise _http_error(exc) from exc

    return _booking_response(booking, service)


@router.post("/bookings/{booking_id}/payments", response_model=PaymentAttemptResponse)
def initiate_payment(
    booking_id: str,
    request: PaymentInitRequest,
    service: PaymentService = Depends(get_payment_service),
):
    try:
        initiation = service.initiate_payment(
            booking_id=booking_id,
            guest_id=request.guest_id,
            provider=request.provider,
            customer_email=request.customer_email,
        )
    except ShortletEngineError as exc:
        raise _http_error(exc) from exc

    booking = service.booking_service.get_booking(booking_id)
    return _attempt_response(
        initiation.attempt,
        redirect_url=initiation.checkout.redirect_url if initiation.checkout else None,
        booking_status=booking.status.value,
    )


# -----------------------------
# Payment notifications
# -----------------------------
@router.post("/payments/notifications", response_model=PaymentResultResponse)
def receive_payment_notification(
    request: PaymentNotificationRequest,
    service: PaymentService = Depends(get_payment_service),
):
    notification = ProviderNotification(
        provider=request.provider.strip().lower(),
        reference=request.reference,
        status=PaymentStatus(request.status) if request.status else None,
        payload=request.payload,
        tx_id=request.tx_id,
        amount_minor=request.amount_minor,
        currency=request.currency,
    )
    try:
        result = service.handle_notification(notification)
    except ShortletEngineError as exc:
        raise _http_error(exc) from exc

    return _result_response(result)


def _apply_webhook(
    provider: str,
    body: bytes,
    headers: dict[str, str],
    providers: ProviderRegistry,
    service: PaymentService,
) -> PaymentResult:
    adapter = providers.get(provider)
    if not adapter.verify_signature(body, headers):
        raise ForbiddenError(f"Invalid {provider} webhook signature")
    try:
        raw = json.loads(body or b"{}")
    except ValueError as exc:
        raise ProviderMalformedPayloadError(f"{provider} webhook body is not JSON") from exc
    if not isinstance(raw, dict):
        raise ProviderMalformedPayloadError(f"{provider} webhook body is not an object")

    return service.handle_notification(adapter.parse_notification(raw))


@router.post("/payments/webhooks/{provider}", response_model=PaymentResultResponse)
async def receive_provider_webhook(
    provider: str,
    request: Request,
    providers: ProviderRegistry = Depends(get_provider_registry),
    service: PaymentService = Depends(get_payment_service),
):
    body = await request.body()
    try:
        # Ledger writes block; keep them off the event loop.
        result = await run_in_threadpool(
            _apply_webhook,
            provider,
            body,
            dict(request.headers),
            providers,
            service,
        )
    except ShortletEngineError as exc:
        logger.warning("Webhook from %s rejected: %s", provider, exc)
        raise _http_error(exc) from exc

    return _result_response(result)


# -----------------------------
# Admin
# -----------------------------
@router.post("/admin/payments/reconcile", response_model=SweepSummaryResponse)
def reconcile_payment(
    request: ReconcileRequest,
    _admin: str = Depends(require_admin),
    service: ReconciliationService = Depends(get_reconciliation_service),
):
    try:
        summary = service.reconcile_reference(request.provider.strip().lower(), request.reference)
    except ShortletEngineError as exc:
        raise _http_error(exc) from exc

    return SweepSummaryResponse(**summary.as_dict())


@router.post("/admin/payments/sweep", response_model=SweepSummaryResponse)
def run_sweep(
    request: SweepRequest,
    _admin: str = Depends(require_admin),
    service: ReconciliationService = Depends(get_reconciliation_service),
):
    summary = service.run_sweep(mode=request.mode, limit=request.limit)
    return SweepSummaryResponse(**summary.as_dict())


@router.get("/admin/payments/sweep/status", response_model=SweepStatusResponse)
def sweep_status(
    _admin: str = Depends(require_admin),
    service: ReconciliationService = Depends(get_reconciliation_service),
):
    run = service.latest_run()
    if not run:
        return SweepStatusResponse()

    return SweepStatusResponse(
        version=run.version,
        mode=run.mode,
        started_at=_iso(run.started_at),
        finished_at=_iso(run.finished_at),
        summary=load_json(run.summary),
    )


@router.get("/admin/payouts", response_model=list[PayoutResponse])
def list_payouts(
    status_filter: Literal["eligible", "paid", "void"] = "eligible",
    limit: int = 50,
    _admin: str = Depends(require_admin),
    service: PayoutService = Depends(get_payout_service),
):
    safe_limit = max(1, min(limit, 200))
    payouts = service.list_payouts(PayoutStatus(status_filter), safe_limit)
    return [_payout_response(payout) for payout in payouts]


@router.post("/admin/payouts/{payout_id}/mark-paid", response_model=PayoutResponse)
def mark_payout_paid(
    payout_id: str,
    request: PayoutPaidRequest,
    _admin: str = Depends(require_admin),
    service: PayoutService = Depends(get_payout_service),
):
    try:
        payout = service.mark_paid(payout_id, request.paid_ref, request.note)
    except ShortletEngineError as exc:
        raise _http_error(exc) from exc

    return _payout_response(payout)
