import argparse
import logging
import time

from shortlet_engine.application.reconciliation_service import ReconciliationService
from shortlet_engine.config import get_settings
from shortlet_engine.domain.values import SweepMode
from shortlet_engine.infrastructure.db.session import SessionLocal
from shortlet_engine.infrastructure.providers.registry import ProviderRegistry

logger = logging.getLogger("shortlet_engine.sweeper")


def run_once(providers: ProviderRegistry, mode: SweepMode, limit: int | None) -> None:
    db = SessionLocal()
    try:
        ReconciliationService(db, providers).run_sweep(mode=mode, limit=limit)
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def main() -> None:
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    parser = argparse.ArgumentParser(description="Reconcile payments and expire stale holds.")
    parser.add_argument("--mode", choices=[mode.value for mode in SweepMode], default="batch")
    parser.add_argument("--limit", type=int, default=None)
    parser.add_argument("--once", action="store_true", help="run a single sweep and exit")
    args = parser.parse_args()

    providers = ProviderRegistry.from_settings(settings)
    mode = SweepMode(args.mode)

    while True:
        try:
            run_once(providers, mode, args.limit)
        except Exception:
            if args.once:
                raise
            logger.exception("Sweep failed; retrying in %ss", settings.sweeper_interval_seconds)
        if args.once:
            return
        time.sleep(settings.sweeper_interval_seconds)


if __name__ == "__main__":
    main()
