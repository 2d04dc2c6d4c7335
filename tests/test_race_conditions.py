"""
Race condition tests for concurrent requests against the same rows.

No locks are taken anywhere; these exercise the conditional updates and
unique indexes that keep concurrent requests consistent.
"""
import asyncio
import uuid

import pytest

from admission_engine.core.errors import (
    Conflict,
    DuplicateApplication,
    IllegalTransition,
    SlotUnavailable,
)
from admission_engine.core.events import PaymentCompleted
from admission_engine.database.models import Application, ConfirmationSource, PaymentStatus
from tests.conftest import available_slots, charge_event, sign


class TestRaceConditions:
    """Test suite for race condition scenarios."""

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_creates_for_last_seat(self, engine, ledger, make_program) -> None:
        """
        Ten students race for one seat.

        Exactly one application is created and capacity ends at zero.
        """
        program = await make_program(total_slots=1)
        students = [uuid.uuid4() for _ in range(10)]

        results = await asyncio.gather(
            *(engine.create_application(s, program.id) for s in students),
            return_exceptions=True,
        )

        created = [r for r in results if isinstance(r, Application)]
        failures = [r for r in results if not isinstance(r, Application)]
        assert len(created) == 1
        assert all(isinstance(f, SlotUnavailable) for f in failures)
        assert await available_slots(ledger, program.id) == 0

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_creates_same_student(
        self, engine, ledger, make_program, student_id
    ) -> None:
        """
        One student double-clicks "apply" five times.

        One application exists and only its seat stays taken.
        """
        program = await make_program(total_slots=10)

        results = await asyncio.gather(
            *(engine.create_application(student_id, program.id) for _ in range(5)),
            return_exceptions=True,
        )

        created = [r for r in results if isinstance(r, Application)]
        failures = [r for r in results if not isinstance(r, Application)]
        assert len(created) == 1
        assert all(isinstance(f, (DuplicateApplication, Conflict)) for f in failures)
        assert await available_slots(ledger, program.id) == 9

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_webhook_and_verify_race(
        self, engine, provider, recorder, make_program, student_id
    ) -> None:
        """Both channels report success at once; one wins, one event is emitted."""
        program = await make_program(fee="50.00")
        application = await engine.create_application(student_id, program.id)
        payment, handoff = await engine.initialize_payment(student_id, application.id)
        provider.settle(handoff.reference, "success", amount_minor=5000)
        body = charge_event(handoff.reference, amount_minor=5000)

        via_webhook, via_verify = await asyncio.gather(
            engine.handle_webhook(body, sign(body)),
            engine.verify_payment(handoff.reference),
        )
        await engine.events.drain()

        assert via_webhook.status == PaymentStatus.COMPLETED.value
        assert via_verify.status == PaymentStatus.COMPLETED.value
        assert via_webhook.confirmed_via == via_verify.confirmed_via
        assert len(recorder.of_type(PaymentCompleted)) == 1

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_conflicting_reports_settle_once(
        self, engine, recorder, make_program, student_id
    ) -> None:
        """A success and a failure race; whichever lands first is final."""
        program = await make_program(fee="50.00")
        application = await engine.create_application(student_id, program.id)
        _, handoff = await engine.initialize_payment(student_id, application.id)

        results = await asyncio.gather(
            engine.finalize_payment(handoff.reference, "success", ConfirmationSource.VERIFY),
            engine.finalize_payment(handoff.reference, "failed", ConfirmationSource.WEBHOOK),
        )
        await engine.events.drain()

        statuses = {r.status for r in results}
        assert len(statuses) == 1
        completed = statuses == {PaymentStatus.COMPLETED.value}
        assert len(recorder.of_type(PaymentCompleted)) == (1 if completed else 0)

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_submit(self, engine, make_program, student_id) -> None:
        program = await make_program(fee="0")
        application = await engine.create_application(student_id, program.id)

        results = await asyncio.gather(
            *(engine.submit_application(student_id, application.id) for _ in range(3)),
            return_exceptions=True,
        )

        submitted = [r for r in results if isinstance(r, Application)]
        assert len(submitted) == 1
        assert all(
            isinstance(r, (Conflict, IllegalTransition))
            for r in results
            if not isinstance(r, Application)
        )

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_cancel_releases_once(
        self, engine, ledger, make_program, student_id
    ) -> None:
        program = await make_program(total_slots=3)
        application = await engine.create_application(student_id, program.id)

        await asyncio.gather(
            *(engine.cancel_application(student_id, application.id) for _ in range(3)),
            return_exceptions=True,
        )

        assert await available_slots(ledger, program.id) == 3
