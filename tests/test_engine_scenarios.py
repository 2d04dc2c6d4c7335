"""
End-to-end scenarios through the reconciliation engine.
"""
import uuid
from datetime import timedelta

import pytest

from admission_engine.core.errors import PaymentRequired, ProviderUnavailable
from admission_engine.core.events import ApplicationSubmitted, PaymentCompleted
from admission_engine.database.ledger import PaymentByReference
from admission_engine.database.models import (
    ApplicationStatus,
    Payment,
    PaymentStatus,
    ReservationState,
    utcnow,
)
from tests.conftest import available_slots, charge_event, sign


class TestApplicationFeeScenario:
    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_pay_by_webhook_then_submit_then_replay(
        self, engine, ledger, recorder, make_program, student_id
    ) -> None:
        """
        Student applies, pays, the webhook confirms, they submit, and the
        provider later redelivers the same webhook.
        """
        program = await make_program(total_slots=10, fee="50.00")

        application = await engine.create_application(student_id, program.id)
        assert await available_slots(ledger, program.id) == 9

        with pytest.raises(PaymentRequired):
            await engine.submit_application(student_id, application.id)

        payment, handoff = await engine.initialize_payment(student_id, application.id)
        body = charge_event(handoff.reference, amount_minor=5000)
        confirmed = await engine.handle_webhook(body, sign(body))
        assert confirmed.status == PaymentStatus.COMPLETED.value

        submitted = await engine.submit_application(student_id, application.id)
        assert submitted.status == ApplicationStatus.SUBMITTED.value
        assert submitted.reservation_state == ReservationState.COMMITTED.value

        replayed = await engine.handle_webhook(body, sign(body))
        await engine.events.drain()

        assert replayed.status == PaymentStatus.COMPLETED.value
        assert replayed.paid_at == confirmed.paid_at
        assert len(recorder.of_type(PaymentCompleted)) == 1
        assert len(recorder.of_type(ApplicationSubmitted)) == 1
        assert await available_slots(ledger, program.id) == 9

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_provider_down_then_recovers(
        self, engine, provider, ledger, make_program, student_id
    ) -> None:
        program = await make_program(fee="50.00")
        application = await engine.create_application(student_id, program.id)

        provider.open_error = ProviderUnavailable("Paystack open timed out")
        with pytest.raises(ProviderUnavailable):
            await engine.initialize_payment(student_id, application.id)
        failed_reference = provider.opened[0]["reference"]
        assert await ledger.find_one(PaymentByReference(failed_reference)) is None

        provider.open_error = None
        payment, handoff = await engine.initialize_payment(student_id, application.id)
        provider.settle(handoff.reference, "success", amount_minor=5000)
        verified = await engine.verify_payment(handoff.reference, student_id=student_id)
        submitted = await engine.submit_application(student_id, application.id)

        assert verified.status == PaymentStatus.COMPLETED.value
        assert submitted.status == ApplicationStatus.SUBMITTED.value


class TestPendingPaymentSweep:
    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_sweep_reverifies_stale_payments(
        self, engine, provider, make_program, student_id
    ) -> None:
        program = await make_program(fee="50.00")
        application = await engine.create_application(student_id, program.id)
        payment, handoff = await engine.initialize_payment(student_id, application.id)
        provider.settle(handoff.reference, "success", amount_minor=5000)

        # Too fresh: untouched
        counts = await engine.sweep_pending_payments()
        assert counts["reverified"] == 0

        counts = await engine.sweep_pending_payments(now=utcnow() + timedelta(hours=1))

        assert counts["reverified"] == 1
        stored = await engine.ledger.get(Payment, payment.id)
        assert stored.status == PaymentStatus.COMPLETED.value
        assert stored.confirmed_via == "sweeper"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_sweep_skips_on_provider_outage(
        self, engine, provider, make_program, student_id
    ) -> None:
        program = await make_program(fee="50.00")
        application = await engine.create_application(student_id, program.id)
        payment, _ = await engine.initialize_payment(student_id, application.id)
        provider.verify_error = ProviderUnavailable("Paystack verify timed out")

        counts = await engine.sweep_pending_payments(now=utcnow() + timedelta(hours=1))

        assert counts == {"reverified": 0, "skipped": 1, "deleted_orphans": 0}
        stored = await engine.ledger.get(Payment, payment.id)
        assert stored.status == PaymentStatus.PENDING.value

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_sweep_deletes_orphans(
        self, engine, ledger, make_program, student_id
    ) -> None:
        program = await make_program(fee="50.00")
        application = await engine.create_application(student_id, program.id)
        orphan = Payment(
            student_id=student_id,
            application_id=application.id,
            amount=program.application_fee,
            currency="GHS",
            status=PaymentStatus.PENDING.value,
        )
        async with ledger.transaction() as tx:
            await tx.add(orphan)

        counts = await engine.sweep_pending_payments(now=utcnow() + timedelta(hours=1))

        assert counts["deleted_orphans"] == 1
        assert await ledger.get(Payment, orphan.id) is None

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_undecided_payments_do_not_starve_the_batch(
        self, engine, provider, test_settings, make_program
    ) -> None:
        """
        Two payments the provider keeps reporting as ongoing must not hold
        every batch while a settled one waits behind them.
        """
        test_settings.sweep_batch_size = 2
        program = await make_program(fee="50.00")
        handoffs = []
        for _ in range(3):
            student = uuid.uuid4()
            application = await engine.create_application(student, program.id)
            _, handoff = await engine.initialize_payment(student, application.id)
            handoffs.append(handoff)
        provider.settle(handoffs[2].reference, "success", amount_minor=5000)
        later = utcnow() + timedelta(hours=1)

        first = await engine.sweep_pending_payments(now=later)
        second = await engine.sweep_pending_payments(now=later)
        third = await engine.sweep_pending_payments(now=later)

        assert first["reverified"] == 2
        assert second["reverified"] == 1
        assert third["reverified"] == 0
        assert provider.verified == [h.reference for h in handoffs]
        settled = await engine.ledger.find_one(PaymentByReference(handoffs[2].reference))
        assert settled.status == PaymentStatus.COMPLETED.value
        assert settled.confirmed_via == "sweeper"

        # Once the grace period passes again the undecided ones are re-asked
        again = await engine.sweep_pending_payments(now=later + timedelta(hours=1))
        assert again["reverified"] == 2
