from shortlet_engine.domain.values import BookingMode
from shortlet_engine.infrastructure.db.models import Base
from shortlet_engine.infrastructure.db.session import SessionLocal, engine
from shortlet_engine.infrastructure.repositories.unit_repository import UnitRepository


UNITS = [
    {
        "unit_id": "U1",
        "host_id": "host-ada",
        "title": "Lekki Phase 1 two-bedroom",
        "currency": "NGN",
        "booking_mode": BookingMode.INSTANT,
        "nightly_price_minor": 40000,
        "cleaning_fee_minor": 0,
        "min_nights": 1,
    },
    {
        "unit_id": "U2",
        "host_id": "host-ada",
        "title": "Victoria Island studio",
        "currency": "NGN",
        "booking_mode": BookingMode.REQUEST,
        "nightly_price_minor": 25000,
        "cleaning_fee_minor": 5000,
        "min_nights": 2,
        "max_nights": 14,
        "advance_notice_hours": 24,
    },
    {
        "unit_id": "U3",
        "host_id": "host-tunde",
        "title": "Ikoyi penthouse",
        "currency": "NGN",
        "booking_mode": BookingMode.REQUEST,
        "nightly_price_minor": 150000,
        "cleaning_fee_minor": 20000,
        "min_nights": 3,
        "hold_window_minutes": 6 * 60,
    },
]


def seed_units(db) -> None:
    repository = UnitRepository(db)
    for item in UNITS:
        fields = dict(item)
        unit_id = fields.pop("unit_id")
        repository.upsert(unit_id, is_active=True, **fields)


def main() -> None:
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        seed_units(db)
        db.commit()
        print(f"Seed complete: {', '.join(item['unit_id'] for item in UNITS)} upserted.")
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


if __name__ == "__main__":
    main()
