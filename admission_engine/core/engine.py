"""
Reconciliation engine: the composition root used by the HTTP layer.

Wires the slot allocator, application state machine, payment reconciler,
review authority and event bus over one ledger, and runs each operation
under a correlation id so every log line it produces can be joined up.

Compensation happens inside the components before an error surfaces:
a failed insert releases the reserved seat, and a failed provider handoff
deletes the PENDING payment. Callers only ever see whole-operation results.
"""
import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Dict, Mapping, Optional, Tuple

import structlog

from admission_engine.config import Settings, get_settings
from admission_engine.core.applications import ApplicationStateMachine, DraftFields
from admission_engine.core.authorization import LedgerReviewAuthority, ReviewAuthority
from admission_engine.core.errors import EngineError
from admission_engine.core.events import EventBus, log_event
from admission_engine.core.payments import PaymentReconciler
from admission_engine.core.slots import SlotAllocator
from admission_engine.core.sweeper import PendingPaymentSweeper
from admission_engine.database.ledger import LedgerStore
from admission_engine.database.models import (
    Application,
    ApplicationStatus,
    ConfirmationSource,
    Payment,
)
from admission_engine.integrations.provider import PaymentProvider, ProviderHandoff
from admission_engine.integrations.webhook_handler import WebhookVerifier

logger = structlog.get_logger(__name__)


class ReconciliationEngine:
    """Façade over the admission and payment components."""

    def __init__(
        self,
        ledger: LedgerStore,
        provider: PaymentProvider,
        authority: Optional[ReviewAuthority] = None,
        events: Optional[EventBus] = None,
        settings: Optional[Settings] = None,
        webhook_verifier: Optional[WebhookVerifier] = None,
    ):
        self.settings = settings or get_settings()
        self.ledger = ledger
        self.events = events if events is not None else EventBus([log_event])

        self.slots = SlotAllocator(ledger)
        self.applications = ApplicationStateMachine(
            ledger,
            self.slots,
            authority or LedgerReviewAuthority(ledger),
            self.events,
            self.settings,
        )
        self.payments = PaymentReconciler(
            ledger, provider, self.events, self.settings, webhook_verifier
        )
        self.sweeper = PendingPaymentSweeper(ledger, self.payments, self.settings)

        logger.info("reconciliation_engine_initialized", provider=provider.name)

    @asynccontextmanager
    async def _operation(self, name: str, **context: Any) -> AsyncIterator[None]:
        correlation_id = str(uuid.uuid4())
        with structlog.contextvars.bound_contextvars(
            operation=name, correlation_id=correlation_id
        ):
            logger.debug("operation_started", **context)
            try:
                yield
            except EngineError as e:
                logger.info("operation_rejected", code=e.code, error=e.message, **context)
                raise
            except Exception as e:
                logger.error("operation_failed", error=str(e), exc_info=True, **context)
                raise
            logger.debug("operation_completed", **context)

    # Applications

    async def create_application(
        self,
        student_id: uuid.UUID,
        program_id: uuid.UUID,
        draft: Optional[DraftFields] = None,
    ) -> Application:
        async with self._operation(
            "create_application", student_id=str(student_id), program_id=str(program_id)
        ):
            return await self.applications.create(student_id, program_id, draft)

    async def update_draft(
        self, student_id: uuid.UUID, application_id: uuid.UUID, changes: Mapping[str, Any]
    ) -> Application:
        async with self._operation("update_draft", application_id=str(application_id)):
            return await self.applications.update_draft(student_id, application_id, changes)

    async def submit_application(
        self, student_id: uuid.UUID, application_id: uuid.UUID
    ) -> Application:
        async with self._operation("submit_application", application_id=str(application_id)):
            return await self.applications.submit(student_id, application_id)

    async def cancel_application(
        self, student_id: uuid.UUID, application_id: uuid.UUID
    ) -> Application:
        async with self._operation("cancel_application", application_id=str(application_id)):
            return await self.applications.cancel(student_id, application_id)

    async def advance_application(
        self,
        application_id: uuid.UUID,
        target: ApplicationStatus,
        reviewer_id: uuid.UUID,
        notes: Optional[str] = None,
        interview_date: Optional[datetime] = None,
    ) -> Application:
        async with self._operation(
            "advance_application",
            application_id=str(application_id),
            target=ApplicationStatus(target).value,
        ):
            return await self.applications.advance(
                application_id, target, reviewer_id, notes, interview_date
            )

    # Payments

    async def initialize_payment(
        self,
        student_id: uuid.UUID,
        application_id: uuid.UUID,
        customer_email: Optional[str] = None,
        callback_url: Optional[str] = None,
    ) -> Tuple[Payment, ProviderHandoff]:
        async with self._operation("initialize_payment", application_id=str(application_id)):
            return await self.payments.initialize(
                student_id, application_id, customer_email, callback_url
            )

    async def verify_payment(
        self, reference: str, student_id: Optional[uuid.UUID] = None
    ) -> Payment:
        async with self._operation("verify_payment", reference=reference):
            return await self.payments.verify(reference, student_id=student_id)

    async def finalize_payment(
        self,
        provider_reference: str,
        provider_status: str,
        source: ConfirmationSource,
        payment_method: Optional[str] = None,
        amount_minor: Optional[int] = None,
        payment_id_hint: Optional[str] = None,
    ) -> Payment:
        async with self._operation("finalize_payment", reference=provider_reference):
            return await self.payments.finalize(
                provider_reference,
                provider_status,
                source,
                payment_method=payment_method,
                amount_minor=amount_minor,
                payment_id_hint=payment_id_hint,
            )

    async def handle_webhook(self, raw_body: bytes, signature: Optional[str]) -> Optional[Payment]:
        async with self._operation("handle_webhook"):
            return await self.payments.handle_webhook(raw_body, signature)

    async def sweep_pending_payments(self, now: Optional[datetime] = None) -> Dict[str, int]:
        async with self._operation("sweep_pending_payments"):
            return await self.sweeper.sweep(now)

    async def close(self) -> None:
        """Wait for pending event deliveries, then close the provider client."""
        await self.events.drain()
        await self.payments.provider.close()
        logger.info("reconciliation_engine_closed")
