# shortlet_engine/application/reconciliation_service.py

import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from sqlalchemy.orm import Session

from shortlet_engine.application.payment_service import PaymentService
from shortlet_engine.application.side_effects import SideEffectDispatcher
from shortlet_engine.config import Settings, get_settings
from shortlet_engine.domain.exceptions import PaymentNotFoundError, ProviderError
from shortlet_engine.domain.state_machine import PaymentStatus
from shortlet_engine.domain.values import SweepMode, SweepSummary
from shortlet_engine.infrastructure.db.models import PaymentAttempt, SweeperRun
from shortlet_engine.infrastructure.db.session import utcnow
from shortlet_engine.infrastructure.db.statements import dump_json, load_json
from shortlet_engine.infrastructure.providers.registry import ProviderRegistry
from shortlet_engine.infrastructure.repositories.payment_repository import (
    PaymentAttemptRepository,
)
from shortlet_engine.infrastructure.repositories.sweeper_run_repository import (
    SweeperRunRepository,
)

logger = logging.getLogger(__name__)

MAX_SWEEP_LIMIT = 200


class ReconciliationService:
    """
    Recovery path for everything the synchronous flow can leave behind:
    attempts with no final answer, holds that ran out, confirmed stays
    that ended, and notifications that failed to deliver.
    """

    def __init__(
        self,
        db: Session,
        providers: ProviderRegistry,
        settings: Settings | None = None,
        now: Callable[[], datetime] = utcnow,
        dispatcher: SideEffectDispatcher | None = None,
    ):
        self.db = db
        self.providers = providers
        self.settings = settings or get_settings()
        self.now = now
        self.dispatcher = dispatcher or SideEffectDispatcher(db, now=now, settings=self.settings)
        self.payment_service = PaymentService(db, providers, self.settings, now, self.dispatcher)
        self.booking_service = self.payment_service.booking_service
        self.payment_repository = PaymentAttemptRepository(db)
        self.run_repository = SweeperRunRepository(db)

    def run_sweep(
        self,
        mode: SweepMode | str = SweepMode.BATCH,
        limit: int | None = None,
    ) -> SweepSummary:
        mode = SweepMode(mode)
        limit = max(1, min(limit or self.settings.reconcile_batch_limit, MAX_SWEEP_LIMIT))
        started_at = self.now()
        summary = SweepSummary(mode=mode.value)

        if mode in (SweepMode.BATCH, SweepMode.STUCK):
            stale_before = started_at - timedelta(seconds=self.settings.reconcile_stale_seconds)
            summary.stale_flagged = self.payment_repository.flag_stale_initiated(
                stale_before,
                started_at,
            )
            self.db.commit()

            for attempt in self.payment_repository.list_reconcile_candidates(limit):
                summary.scanned += 1
                self._reconcile_candidate(attempt, summary)

            summary.expired = self.booking_service.expire_due(limit)
            summary.completed = self.booking_service.complete_past(limit)

        if mode in (SweepMode.BATCH, SweepMode.RECEIPTS):
            summary.redelivered = self.dispatcher.redeliver_pending(limit)

        self.run_repository.append(
            mode=mode.value,
            started_at=started_at,
            finished_at=self.now(),
            summary_json=dump_json(summary.as_dict()),
        )
        self.db.commit()
        logger.info("Sweep %s finished: %s", mode.value, summary.as_dict())
        return summary

    def reconcile_reference(self, provider: str, reference: str) -> SweepSummary:
        """Manual reconcile of a single attempt, used by admins."""
        attempt = self.payment_repository.get_by_reference(reference, provider)
        if not attempt:
            raise PaymentNotFoundError(f"No {provider} payment attempt with reference {reference}")

        summary = SweepSummary(mode="manual", scanned=1)
        if attempt.status != PaymentStatus.SUCCEEDED and not attempt.needs_reconcile:
            self.payment_repository.flag_needs_reconcile(
                attempt.id,
                "manual_reconcile",
                self.now(),
                include_failed=True,
            )
            self.db.commit()

        self._reconcile_candidate(self.payment_repository.get_by_id(attempt.id), summary)
        return summary

    def latest_run(self) -> SweeperRun | None:
        return self.run_repository.latest()

    def _reconcile_candidate(self, attempt: PaymentAttempt, summary: SweepSummary) -> None:
        now = self.now()

        if attempt.status == PaymentStatus.SUCCEEDED:
            # Ledger already final; only the booking side may be lagging.
            self.booking_service.confirm_after_payment(attempt.booking_id)
            self.payment_repository.clear_reconcile(attempt.id, now)
            self.db.commit()
            summary.skipped_terminal += 1
            return

        locked_until = now + timedelta(seconds=self.settings.reconcile_lock_seconds)
        if not self.payment_repository.claim_for_reconcile(attempt.id, now, locked_until):
            self.db.rollback()
            summary.skipped_locked += 1
            return
        self.db.commit()
        summary.locked += 1

        try:
            adapter = self.providers.get(attempt.provider)
            notification = adapter.verify(
                reference=attempt.provider_reference,
                tx_id=attempt.provider_tx_id,
                payload=load_json(attempt.provider_payload),
            )
        except ProviderError as exc:
            logger.warning("Verify of %s failed: %s", attempt.provider_reference, exc)
            summary.errors.append(f"{attempt.provider_reference}: {exc.code}")
            self._record_failure(attempt, exc.code.lower(), summary)
            return

        if notification.status == PaymentStatus.SUCCEEDED:
            result = self.payment_service.handle_notification(notification)
            if result.ok:
                summary.reconciled += 1
            else:
                self._record_failure(attempt, result.reason or "provider_mismatch", summary)
            return

        if notification.status == PaymentStatus.FAILED:
            applied = self.payment_service.mark_payment_failed(
                attempt.provider,
                attempt.provider_reference,
                "provider_not_paid",
                notification.payload,
            )
            if not applied:
                self.payment_repository.clear_reconcile(attempt.id, self.now())
            self.db.commit()
            summary.failed_marked += 1
            return

        reason = "provider_not_paid" if notification.status else "provider_status_unknown"
        self._record_failure(attempt, reason, summary)

    def _record_failure(
        self,
        attempt: PaymentAttempt,
        reason: str,
        summary: SweepSummary,
    ) -> None:
        now = self.now()
        self.payment_repository.record_verify_failure(attempt.id, reason, now)
        self.db.commit()

        current = self.payment_repository.get_by_id(attempt.id)
        if current.verify_attempts < self.settings.reconcile_max_verify_attempts:
            summary.flagged += 1
            return

        if self.payment_repository.mark_verify_exhausted(attempt.id, now):
            logger.warning(
                "Giving up on %s after %s verify attempts",
                attempt.provider_reference,
                current.verify_attempts,
            )
            summary.failed_marked += 1
        else:
            self.payment_repository.clear_reconcile(attempt.id, now)
            summary.skipped_terminal += 1
        self.db.commit()
