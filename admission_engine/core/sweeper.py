"""
Pending payment sweeper.

Catches payments whose outcome never reached us (student closed the tab,
webhook lost) and rows orphaned by a crash between insert and compensation.
"""
import uuid
from datetime import datetime, timedelta
from typing import Dict, Optional

import structlog

from admission_engine.config import Settings
from admission_engine.core.errors import NotFound, ProviderError
from admission_engine.core.payments import PaymentReconciler
from admission_engine.database.ledger import LedgerStore, PaymentPatch, StalePendingPayments
from admission_engine.database.models import ConfirmationSource, PaymentStatus, utcnow
from admission_engine.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class PendingPaymentSweeper:
    """
    One pass re-verifies stale referenced payments and deletes stale orphans.

    A payment the provider still reports as undecided is stamped with the
    check time and not asked about again until the grace period has passed,
    so every stale payment gets its turn even when a batch is smaller than
    the backlog.
    """

    def __init__(self, ledger: LedgerStore, reconciler: PaymentReconciler, settings: Settings):
        self.ledger = ledger
        self.reconciler = reconciler
        self.settings = settings

    async def _mark_checked(self, payment_id: uuid.UUID, checked_at: datetime) -> None:
        async with self.ledger.transaction() as tx:
            await tx.conditional_update(
                payment_id,
                PaymentPatch(last_checked_at=checked_at),
                expected={"status": PaymentStatus.PENDING.value},
            )

    async def sweep(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """
        Run one sweep.

        Returns:
            Dict[str, int]: Counts per action (reverified, skipped, deleted_orphans)
        """
        now = now or utcnow()
        cutoff = now - timedelta(minutes=self.settings.pending_payment_grace_minutes)
        limit = self.settings.sweep_batch_size
        counts = {"reverified": 0, "skipped": 0, "deleted_orphans": 0}

        stale = await self.ledger.find_all(
            StalePendingPayments(
                created_before=cutoff, has_reference=True, checked_before=cutoff
            ),
            limit=limit,
        )
        for payment in stale:
            try:
                await self.reconciler.verify(
                    payment.provider_reference, source=ConfirmationSource.SWEEPER
                )
                counts["reverified"] += 1
            except (ProviderError, NotFound) as e:
                counts["skipped"] += 1
                logger.warning(
                    "sweep_verify_skipped",
                    payment_id=str(payment.id),
                    reference=payment.provider_reference,
                    error=str(e),
                )
            # No-op once the payment left PENDING
            await self._mark_checked(payment.id, now)

        orphans = await self.ledger.find_all(
            StalePendingPayments(created_before=cutoff, has_reference=False), limit=limit
        )
        for payment in orphans:
            if await self.reconciler.discard(payment.id):
                counts["deleted_orphans"] += 1

        metrics.record_sweep("reverified", counts["reverified"])
        metrics.record_sweep("skipped", counts["skipped"])
        metrics.record_sweep("deleted_orphan", counts["deleted_orphans"])
        logger.info("pending_payment_sweep_completed", cutoff=cutoff.isoformat(), **counts)
        return counts
