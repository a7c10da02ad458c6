# shortlet_engine/domain/values.py

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any

from shortlet_engine.domain.state_machine import BookingStatus, PaymentStatus


class BookingMode(str, Enum):
    INSTANT = "instant"
    REQUEST = "request"


class BlockReason(str, Enum):
    HOST_BLOCK = "host_block"
    MAINTENANCE = "maintenance"


class Audience(str, Enum):
    GUEST = "guest"
    HOST = "host"
    ADMIN = "admin"


class EventKind(str, Enum):
    BOOKING_REQUESTED = "booking_requested"
    BOOKING_CONFIRMED = "booking_confirmed"
    BOOKING_DECLINED = "booking_declined"
    PAYOUT_ELIGIBLE = "payout_eligible"
    BOOKING_CANCELLED = "booking_cancelled"
    BOOKING_EXPIRED = "booking_expired"
    REFUND_REQUIRED = "refund_required"


class HostAction(str, Enum):
    ACCEPT = "accept"
    DECLINE = "decline"


class PayoutStatus(str, Enum):
    ELIGIBLE = "eligible"
    PAID = "paid"
    VOID = "void"


class SweepMode(str, Enum):
    BATCH = "batch"
    STUCK = "stuck"
    RECEIPTS = "receipts"


@dataclass(frozen=True)
class Range:
    """A half-open [date_from, date_to) interval that makes a unit unavailable."""

    source: str
    ref_id: str
    date_from: date
    date_to: date
    detail: str | None = None


@dataclass(frozen=True)
class ProviderNotification:
    """
    Uniform shape produced by every provider adapter.
    status is one of initiated / succeeded / failed, or None when the
    provider answer could not be classified.
    """

    provider: str
    reference: str
    status: PaymentStatus | None
    payload: dict[str, Any] = field(default_factory=dict)
    tx_id: str | None = None
    amount_minor: int | None = None
    currency: str | None = None


@dataclass(frozen=True)
class ProviderCheckout:
    """Result of initialising a payment with a provider."""

    payload: dict[str, Any]
    redirect_url: str | None = None
    status: PaymentStatus = PaymentStatus.INITIATED
    tx_id: str | None = None


@dataclass(frozen=True)
class PaymentResult:
    ok: bool
    already_succeeded: bool
    attempt_id: str
    booking_id: str
    confirmed_at: datetime | None
    booking_status: BookingStatus | None = None
    reason: str | None = None


@dataclass
class SweepSummary:
    mode: str
    scanned: int = 0
    locked: int = 0
    reconciled: int = 0
    failed_marked: int = 0
    flagged: int = 0
    skipped_locked: int = 0
    skipped_terminal: int = 0
    stale_flagged: int = 0
    expired: int = 0
    completed: int = 0
    redelivered: int = 0
    errors: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "mode": self.mode,
            "scanned": self.scanned,
            "locked": self.locked,
            "reconciled": self.reconciled,
            "failed_marked": self.failed_marked,
            "flagged": self.flagged,
            "skipped_locked": self.skipped_locked,
            "skipped_terminal": self.skipped_terminal,
            "stale_flagged": self.stale_flagged,
            "expired": self.expired,
            "completed": self.completed,
            "redelivered": self.redelivered,
            "errors": list(self.errors),
        }
