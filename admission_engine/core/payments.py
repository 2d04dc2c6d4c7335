"""
Payment reconciler.

Owns the Payment lifecycle PENDING -> {COMPLETED | FAILED} and merges the
two provider channels (client-driven verify and server-to-server webhook)
through one function, `finalize`. Terminal states are never left, so the
first channel to land wins and every later report is a no-op.
"""
import uuid
from typing import Optional, Tuple

import structlog
from sqlalchemy.exc import IntegrityError

from admission_engine.config import Settings
from admission_engine.core.errors import (
    AlreadyPaid,
    NoPaymentRequired,
    NotFound,
    ProviderError,
    ProviderRejected,
    Unauthorized,
)
from admission_engine.core.events import EventBus, PaymentCompleted
from admission_engine.database.ledger import (
    UNSET,
    CompletedPaymentFor,
    LedgerSession,
    LedgerStore,
    PaymentByReference,
    PaymentPatch,
)
from admission_engine.database.models import (
    Application,
    ConfirmationSource,
    Payment,
    PaymentStatus,
    Program,
    utcnow,
)
from admission_engine.integrations.provider import PaymentProvider, ProviderHandoff
from admission_engine.integrations.webhook_handler import (
    WebhookEvent,
    WebhookHandler,
    WebhookVerifier,
)
from admission_engine.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

SUCCESS_STATUS = "success"

# Provider statuses that mean "not decided yet"
IN_FLIGHT_STATUSES = frozenset({"pending", "ongoing", "processing", "queued", "abandoned"})

WEBHOOK_EVENTS = ("charge.success", "charge.failed")


def _parse_uuid(value: Optional[str]) -> Optional[uuid.UUID]:
    if not value:
        return None
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


class PaymentReconciler:
    """Initializes payments with the provider and reconciles their outcome."""

    def __init__(
        self,
        ledger: LedgerStore,
        provider: PaymentProvider,
        events: EventBus,
        settings: Settings,
        webhook_verifier: Optional[WebhookVerifier] = None,
    ):
        self.ledger = ledger
        self.provider = provider
        self.events = events
        self.settings = settings

        self.webhooks = WebhookHandler(
            webhook_verifier or WebhookVerifier(settings.paystack_secret_key)
        )
        for event_type in WEBHOOK_EVENTS:
            self.webhooks.register_handler(event_type, self._on_charge_event)

    # ------------------------------------------------------------------
    # Initialization
    # ------------------------------------------------------------------

    async def initialize(
        self,
        student_id: uuid.UUID,
        application_id: uuid.UUID,
        customer_email: Optional[str] = None,
        callback_url: Optional[str] = None,
    ) -> Tuple[Payment, ProviderHandoff]:
        """
        Create a PENDING payment and open it with the provider.

        If the provider call fails for any reason the local row is removed
        before the error propagates.

        Raises:
            NotFound, Unauthorized, NoPaymentRequired, AlreadyPaid,
            ProviderUnavailable, ProviderRejected
        """
        async with self.ledger.transaction() as tx:
            application = await tx.get(Application, application_id)
            if application is None:
                raise NotFound("Application not found", application_id=str(application_id))
            if application.student_id != student_id:
                raise Unauthorized("Application belongs to another student")

            program = await tx.get(Program, application.program_id)
            if program is None:
                raise NotFound("Program not found", program_id=str(application.program_id))
            if program.application_fee <= 0:
                raise NoPaymentRequired("This program does not require an application fee")
            if await tx.find_one(CompletedPaymentFor(application.id)) is not None:
                raise AlreadyPaid("Application fee already paid")

            payment = Payment(
                id=uuid.uuid4(),
                student_id=student_id,
                application_id=application.id,
                amount=program.application_fee,
                currency=program.currency or self.settings.default_currency,
                description=f"Application fee for {program.title}",
                provider=self.provider.name,
                status=PaymentStatus.PENDING.value,
            )
            await tx.add(payment)

        log = logger.bind(payment_id=str(payment.id), application_id=str(application_id))

        try:
            handoff = await self.provider.open(
                reference=str(payment.id),
                amount_minor=payment.amount_minor,
                currency=payment.currency,
                metadata={
                    "paymentId": str(payment.id),
                    "applicationId": str(application.id),
                    "studentId": str(student_id),
                    "programTitle": program.title,
                },
                customer_email=customer_email,
                callback_url=callback_url or self.settings.payment_callback_url,
            )
        except Exception as e:
            await self.discard(payment.id)
            outcome = e.code.lower() if isinstance(e, ProviderError) else "error"
            metrics.record_initialization(outcome)
            log.error("payment_initialization_failed", error=str(e), outcome=outcome)
            raise

        try:
            async with self.ledger.transaction() as tx:
                await tx.conditional_update(
                    payment.id,
                    PaymentPatch(provider_reference=handoff.reference, updated_at=utcnow()),
                    expected={"provider_reference": None},
                )
                stored = await tx.get(Payment, payment.id)
        except IntegrityError as e:
            await self.discard(payment.id)
            metrics.record_initialization("reference_collision")
            log.error("provider_reference_collision", reference=handoff.reference)
            raise ProviderRejected(
                "Provider returned a reference already in use", reference=handoff.reference
            ) from e

        metrics.record_initialization("opened")
        log.info("payment_initialized", reference=handoff.reference, amount=str(payment.amount))
        return stored if stored is not None else payment, handoff

    async def discard(self, payment_id: uuid.UUID) -> bool:
        """Delete a PENDING payment that never got a provider reference."""
        async with self.ledger.transaction() as tx:
            deleted = await tx.conditional_delete(
                Payment,
                payment_id,
                expected={"status": PaymentStatus.PENDING.value, "provider_reference": None},
            )
        if deleted:
            logger.info("payment_discarded", payment_id=str(payment_id))
        return bool(deleted)

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    @staticmethod
    async def _locate(
        tx: LedgerSession, reference: str, payment_id_hint: Optional[str]
    ) -> Optional[Payment]:
        payment = await tx.find_one(PaymentByReference(reference))
        if payment is not None:
            return payment

        # Webhook can beat the reference write; match on the id we sent as metadata
        hinted_id = _parse_uuid(payment_id_hint)
        if hinted_id is None:
            return None
        payment = await tx.get(Payment, hinted_id)
        if payment is None or payment.provider_reference not in (None, reference):
            return None
        return payment

    async def _finalize_once(
        self,
        reference: str,
        provider_status: str,
        source: ConfirmationSource,
        payment_method: Optional[str],
        amount_minor: Optional[int],
        payment_id_hint: Optional[str],
    ) -> Tuple[Payment, str]:
        status = (provider_status or "").strip().lower()

        async with self.ledger.transaction() as tx:
            payment = await self._locate(tx, reference, payment_id_hint)
            if payment is None:
                raise NotFound("Payment not found", reference=reference)

            if payment.status != PaymentStatus.PENDING.value:
                return payment, "unchanged"
            if status in IN_FLIGHT_STATUSES:
                return payment, "pending"

            failure_reason = None
            if status == SUCCESS_STATUS:
                if amount_minor is not None and amount_minor != payment.amount_minor:
                    failure_reason = "amount_mismatch"
                elif payment.application_id is not None and await tx.find_one(
                    CompletedPaymentFor(payment.application_id, excluding_payment_id=payment.id)
                ):
                    failure_reason = "duplicate_payment"
            else:
                failure_reason = f"provider_status:{status or 'unknown'}"

            now = utcnow()
            completed = failure_reason is None
            patch = PaymentPatch(
                status=(PaymentStatus.COMPLETED if completed else PaymentStatus.FAILED).value,
                provider_reference=reference if payment.provider_reference is None else UNSET,
                payment_method=payment_method or UNSET,
                confirmed_via=source.value,
                failure_reason=failure_reason or UNSET,
                paid_at=now if completed else UNSET,
                updated_at=now,
            )
            affected = await tx.conditional_update(
                payment.id,
                patch,
                expected={
                    "status": PaymentStatus.PENDING.value,
                    "provider_reference": payment.provider_reference,
                },
            )
            updated = await tx.get(Payment, payment.id)

        if not affected:
            return updated, "unchanged"
        if failure_reason in ("amount_mismatch", "duplicate_payment"):
            logger.error(
                "payment_finalized_as_failed",
                payment_id=str(payment.id),
                reference=reference,
                reason=failure_reason,
                reported_amount_minor=amount_minor,
                expected_amount_minor=payment.amount_minor,
            )
        return updated, "completed" if completed else "failed"

    async def finalize(
        self,
        provider_reference: str,
        provider_status: str,
        source: ConfirmationSource,
        payment_method: Optional[str] = None,
        amount_minor: Optional[int] = None,
        payment_id_hint: Optional[str] = None,
    ) -> Payment:
        """
        Merge one provider report into the payment.

        Idempotent and order-independent: a terminal payment is returned as
        is, and only the PENDING -> COMPLETED write emits PaymentCompleted.
        """
        args = (provider_reference, provider_status, source, payment_method, amount_minor, payment_id_hint)
        try:
            payment, outcome = await self._finalize_once(*args)
        except IntegrityError:
            # Another payment for the application completed concurrently;
            # the second pass sees it and records a duplicate.
            logger.warning("payment_finalize_retry", reference=provider_reference)
            payment, outcome = await self._finalize_once(*args)

        metrics.record_finalization(source.value, outcome)
        logger.info(
            "payment_finalized",
            payment_id=str(payment.id),
            reference=provider_reference,
            source=source.value,
            provider_status=provider_status,
            outcome=outcome,
            status=payment.status,
        )

        if outcome == "completed":
            self.events.emit(
                PaymentCompleted(
                    payment_id=payment.id,
                    student_id=payment.student_id,
                    application_id=payment.application_id,
                    amount=payment.amount,
                    currency=payment.currency,
                    provider_reference=payment.provider_reference or provider_reference,
                    confirmed_via=source.value,
                )
            )
        return payment

    async def verify(
        self,
        reference: str,
        student_id: Optional[uuid.UUID] = None,
        source: ConfirmationSource = ConfirmationSource.VERIFY,
    ) -> Payment:
        """
        Ask the provider for the outcome of `reference` and finalize with it.

        On ProviderUnavailable the payment stays PENDING.
        """
        # Local reference is the payment id, so it doubles as the hint
        async with self.ledger.transaction() as tx:
            payment = await self._locate(tx, reference, reference)
        if payment is None:
            raise NotFound("Payment not found", reference=reference)
        if student_id is not None and payment.student_id != student_id:
            raise Unauthorized("Payment belongs to another student")
        if payment.status != PaymentStatus.PENDING.value:
            metrics.record_finalization(source.value, "unchanged")
            return payment

        transaction = await self.provider.verify(reference)
        return await self.finalize(
            transaction.reference or reference,
            transaction.status,
            source,
            payment_method=transaction.channel,
            amount_minor=transaction.amount_minor,
            payment_id_hint=transaction.payment_id_hint or str(payment.id),
        )

    async def _on_charge_event(self, event: WebhookEvent) -> Optional[Payment]:
        data = event.charge()
        try:
            return await self.finalize(
                data.reference,
                data.status,
                ConfirmationSource.WEBHOOK,
                payment_method=data.channel,
                amount_minor=data.amount,
                payment_id_hint=data.metadata.payment_id,
            )
        except NotFound:
            # Nothing to reconcile; acknowledging stops provider redelivery
            logger.warning("webhook_unknown_reference", reference=data.reference)
            return None

    async def handle_webhook(self, raw_body: bytes, signature: Optional[str]) -> Optional[Payment]:
        """
        Authenticate a webhook delivery and merge it.

        Raises:
            InvalidSignature: Nothing was parsed or changed
        """
        return await self.webhooks.handle(raw_body, signature)

