# shortlet_engine/application/pricing.py

from typing import Any

from shortlet_engine.domain.exceptions import BookingValidationError
from shortlet_engine.infrastructure.db.models import Unit


def build_price_snapshot(
    unit: Unit,
    nights: int,
    supplied: dict[str, Any] | None = None,
) -> tuple[int, str, dict[str, Any]]:
    """
    Freeze the price of a stay. A snapshot computed upstream is taken as is
    as long as it carries a usable total; otherwise nightly rate times nights
    plus the cleaning fee.

    Returns (total_amount_minor, currency, snapshot).
    """
    if supplied:
        total = supplied.get("total_amount_minor")
        if isinstance(total, bool) or not isinstance(total, int) or total < 0:
            raise BookingValidationError(
                "pricing snapshot must carry a non-negative integer total_amount_minor"
            )
        currency = str(supplied.get("currency") or unit.currency).upper()
        snapshot = dict(supplied)
        snapshot["currency"] = currency
        snapshot.setdefault("nights", nights)
        return total, currency, snapshot

    subtotal = unit.nightly_price_minor * nights
    total = subtotal + unit.cleaning_fee_minor
    snapshot = {
        "nights": nights,
        "nightly_price_minor": unit.nightly_price_minor,
        "subtotal_minor": subtotal,
        "cleaning_fee_minor": unit.cleaning_fee_minor,
        "total_amount_minor": total,
        "currency": unit.currency,
    }
    return total, unit.currency, snapshot
