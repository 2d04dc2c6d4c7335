"""
Application state machine.

Every transition is a single-row conditional UPDATE guarded by the status
the caller read. Losing that race raises Conflict; asking for an edge that
does not exist raises IllegalTransition.
"""
import secrets
import string
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, FrozenSet, Mapping, Optional

import structlog
from sqlalchemy.exc import IntegrityError

from admission_engine.config import Settings
from admission_engine.core.authorization import ReviewAuthority
from admission_engine.core.errors import (
    Conflict,
    DuplicateApplication,
    IllegalTransition,
    NotFound,
    PaymentRequired,
    Unauthorized,
)
from admission_engine.core.events import (
    ApplicationStatusChanged,
    ApplicationSubmitted,
    EventBus,
)
from admission_engine.core.slots import SlotAllocator, releases_slot
from admission_engine.database.ledger import (
    UNSET,
    ActiveApplicationFor,
    ApplicationPatch,
    CompletedPaymentFor,
    LedgerSession,
    LedgerStore,
)
from admission_engine.database.models import (
    Application,
    ApplicationStatus,
    Program,
    ReservationState,
    utcnow,
)
from admission_engine.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

S = ApplicationStatus

REVIEW_TRANSITIONS: Dict[ApplicationStatus, FrozenSet[ApplicationStatus]] = {
    S.SUBMITTED: frozenset({S.UNDER_REVIEW}),
    S.UNDER_REVIEW: frozenset({S.SHORTLISTED, S.INTERVIEW_SCHEDULED, S.ACCEPTED, S.REJECTED}),
    S.SHORTLISTED: frozenset({S.INTERVIEW_SCHEDULED, S.ACCEPTED, S.REJECTED}),
    S.INTERVIEW_SCHEDULED: frozenset({S.ACCEPTED, S.REJECTED}),
    S.ACCEPTED: frozenset({S.ENROLLED}),
}

STUDENT_TRANSITIONS: Dict[ApplicationStatus, FrozenSet[ApplicationStatus]] = {
    S.DRAFT: frozenset({S.SUBMITTED, S.CANCELLED}),
    S.SUBMITTED: frozenset({S.CANCELLED}),
}

# Targets that are hiring decisions rather than review progress
HIRING_DECISIONS = frozenset({S.ACCEPTED, S.REJECTED, S.ENROLLED})

DRAFT_FIELDS = ("motivation_letter", "additional_answers")

_NUMBER_ALPHABET = string.ascii_uppercase + string.digits


def can_transition(current: ApplicationStatus, target: ApplicationStatus) -> bool:
    return target in REVIEW_TRANSITIONS.get(current, frozenset()) or target in (
        STUDENT_TRANSITIONS.get(current, frozenset())
    )


def generate_application_number(prefix: str, now: Optional[datetime] = None) -> str:
    """Human-readable number like WS-2026-7K2M9QXA."""
    year = (now or utcnow()).year
    suffix = "".join(secrets.choice(_NUMBER_ALPHABET) for _ in range(8))
    return f"{prefix}-{year}-{suffix}"


@dataclass
class DraftFields:
    motivation_letter: Optional[str] = None
    additional_answers: Dict[str, Any] = field(default_factory=dict)


class ApplicationStateMachine:
    """Owns every Application status change."""

    def __init__(
        self,
        ledger: LedgerStore,
        slots: SlotAllocator,
        authority: ReviewAuthority,
        events: EventBus,
        settings: Settings,
    ):
        self.ledger = ledger
        self.slots = slots
        self.authority = authority
        self.events = events
        self.settings = settings

    @staticmethod
    async def _load_owned(
        tx: LedgerSession, student_id: uuid.UUID, application_id: uuid.UUID
    ) -> Application:
        application = await tx.get(Application, application_id)
        if application is None:
            raise NotFound("Application not found", application_id=str(application_id))
        if application.student_id != student_id:
            raise Unauthorized(
                "Application belongs to another student", application_id=str(application_id)
            )
        return application

    async def create(
        self,
        student_id: uuid.UUID,
        program_id: uuid.UUID,
        draft: Optional[DraftFields] = None,
    ) -> Application:
        """
        Create a DRAFT application holding one seat.

        Raises:
            DuplicateApplication: Student already has an active application here
            SlotUnavailable: Program is full or not open
            NotFound: Program does not exist
        """
        draft = draft or DraftFields()

        existing = await self.ledger.find_one(ActiveApplicationFor(student_id, program_id))
        if existing is not None:
            raise DuplicateApplication(
                "You have already applied to this program",
                application_id=str(existing.id),
            )

        token = await self.slots.reserve(program_id)

        application = Application(
            id=uuid.uuid4(),
            application_number=generate_application_number(
                self.settings.application_number_prefix
            ),
            student_id=student_id,
            program_id=program_id,
            status=S.DRAFT.value,
            reservation_state=ReservationState.HELD.value,
            motivation_letter=draft.motivation_letter,
            additional_answers=draft.additional_answers,
        )
        try:
            async with self.ledger.transaction() as tx:
                await tx.add(application)
        except IntegrityError as e:
            await self.slots.release(token)
            # Lost the unique-index race to a concurrent create
            if await self.ledger.find_one(ActiveApplicationFor(student_id, program_id)):
                raise DuplicateApplication("You have already applied to this program") from e
            raise Conflict("Application could not be created, retry") from e
        except Exception:
            await self.slots.release(token)
            raise

        logger.info(
            "application_created",
            application_id=str(application.id),
            application_number=application.application_number,
            student_id=str(student_id),
            program_id=str(program_id),
        )
        return application

    async def update_draft(
        self,
        student_id: uuid.UUID,
        application_id: uuid.UUID,
        changes: Mapping[str, Any],
    ) -> Application:
        """Patch draft content. Only keys present in `changes` are written."""
        unknown = set(changes) - set(DRAFT_FIELDS)
        if unknown:
            raise ValueError(f"Not draft fields: {sorted(unknown)}")

        async with self.ledger.transaction() as tx:
            application = await self._load_owned(tx, student_id, application_id)
            if application.status != S.DRAFT.value:
                raise IllegalTransition(
                    application.status,
                    S.DRAFT.value,
                    message="Only draft applications can be edited",
                )
            if not changes:
                return application

            patch = ApplicationPatch(
                motivation_letter=changes.get("motivation_letter", UNSET),
                additional_answers=changes.get("additional_answers", UNSET),
                updated_at=utcnow(),
            )
            affected = await tx.conditional_update(
                application.id, patch, expected={"status": S.DRAFT.value}
            )
            if not affected:
                raise Conflict("Application changed while editing")
            updated = await tx.get(Application, application.id)

        logger.info("application_draft_updated", application_id=str(application_id))
        return updated

    async def submit(self, student_id: uuid.UUID, application_id: uuid.UUID) -> Application:
        """
        DRAFT -> SUBMITTED, committing the held seat.

        Raises:
            PaymentRequired: Program charges a fee and no payment has completed
        """
        async with self.ledger.transaction() as tx:
            application = await self._load_owned(tx, student_id, application_id)
            if application.status != S.DRAFT.value:
                raise IllegalTransition(application.status, S.SUBMITTED.value)

            program = await tx.get(Program, application.program_id)
            if program is None:
                raise NotFound("Program not found", program_id=str(application.program_id))
            if program.application_fee > 0:
                paid = await tx.find_one(CompletedPaymentFor(application.id))
                if paid is None:
                    raise PaymentRequired(
                        "Application fee must be paid before submitting",
                        application_id=str(application.id),
                    )

            now = utcnow()
            affected = await tx.conditional_update(
                application.id,
                ApplicationPatch(
                    status=S.SUBMITTED.value,
                    reservation_state=ReservationState.COMMITTED.value,
                    submitted_at=now,
                    updated_at=now,
                ),
                expected={
                    "status": S.DRAFT.value,
                    "reservation_state": ReservationState.HELD.value,
                },
            )
            if not affected:
                raise Conflict("Application changed while submitting")
            submitted = await tx.get(Application, application.id)

        metrics.record_transition(S.DRAFT.value, S.SUBMITTED.value)
        logger.info(
            "application_submitted",
            application_id=str(submitted.id),
            application_number=submitted.application_number,
        )
        self.events.emit(
            ApplicationSubmitted(
                application_id=submitted.id,
                application_number=submitted.application_number,
                student_id=submitted.student_id,
                program_id=submitted.program_id,
                submitted_at=submitted.submitted_at or now,
            )
        )
        return submitted

    async def _check_authority(
        self, reviewer_id: uuid.UUID, program_id: uuid.UUID, target: ApplicationStatus
    ) -> None:
        if not await self.authority.may_review(reviewer_id, program_id):
            raise Unauthorized("Not allowed to review applications for this program")
        if target in HIRING_DECISIONS and not await self.authority.may_approve_hires(
            reviewer_id, program_id
        ):
            raise Unauthorized("Not allowed to make hiring decisions for this program")

    def _review_patch(
        self,
        target: ApplicationStatus,
        reviewer_id: uuid.UUID,
        notes: Optional[str],
        interview_date: Optional[datetime],
        now: datetime,
    ) -> ApplicationPatch:
        stamps: Dict[str, Any] = {}
        if target == S.INTERVIEW_SCHEDULED:
            stamps["interview_date"] = interview_date or now
        elif target == S.ACCEPTED:
            stamps["accepted_at"] = now
        elif target == S.REJECTED:
            stamps["rejected_at"] = now
            stamps["rejection_reason"] = notes
        elif target == S.ENROLLED:
            stamps["enrolled_at"] = now

        return ApplicationPatch(
            status=target.value,
            reviewed_by=reviewer_id,
            reviewed_at=now,
            review_notes=notes if notes is not None else UNSET,
            updated_at=now,
            **stamps,
        )

    async def advance(
        self,
        application_id: uuid.UUID,
        target: ApplicationStatus,
        reviewer_id: uuid.UUID,
        notes: Optional[str] = None,
        interview_date: Optional[datetime] = None,
    ) -> Application:
        """
        Move an application along the review graph.

        Raises:
            Unauthorized: Reviewer lacks authority for the program or the decision
            IllegalTransition: No such edge from the current status
            Conflict: Status changed between read and write
        """
        target = ApplicationStatus(target)

        application = await self.ledger.get(Application, application_id)
        if application is None:
            raise NotFound("Application not found", application_id=str(application_id))

        await self._check_authority(reviewer_id, application.program_id, target)

        current = ApplicationStatus(application.status)
        if target not in REVIEW_TRANSITIONS.get(current, frozenset()):
            raise IllegalTransition(current.value, target.value)

        now = utcnow()
        release = releases_slot(current, target, self.settings)
        async with self.ledger.transaction() as tx:
            affected = await tx.conditional_update(
                application.id,
                self._review_patch(target, reviewer_id, notes, interview_date, now),
                expected={"status": current.value},
            )
            if not affected:
                raise Conflict(
                    "Application status changed concurrently",
                    application_id=str(application_id),
                )
            released = release and await self.slots.release_for_application(tx, application)
            updated = await tx.get(Application, application.id)

        metrics.record_transition(current.value, target.value)
        logger.info(
            "application_advanced",
            application_id=str(application_id),
            from_status=current.value,
            to_status=target.value,
            reviewer_id=str(reviewer_id),
            slot_released=released,
        )
        self.events.emit(
            ApplicationStatusChanged(
                application_id=updated.id,
                student_id=updated.student_id,
                program_id=updated.program_id,
                previous_status=current.value,
                new_status=target.value,
                changed_by=reviewer_id,
                notes=notes,
                slot_released=released,
            )
        )
        return updated

    async def cancel(self, student_id: uuid.UUID, application_id: uuid.UUID) -> Application:
        """Withdraw a DRAFT or SUBMITTED application and hand its seat back."""
        async with self.ledger.transaction() as tx:
            application = await self._load_owned(tx, student_id, application_id)
            current = ApplicationStatus(application.status)
            if S.CANCELLED not in STUDENT_TRANSITIONS.get(current, frozenset()):
                raise IllegalTransition(current.value, S.CANCELLED.value)

            now = utcnow()
            affected = await tx.conditional_update(
                application.id,
                ApplicationPatch(status=S.CANCELLED.value, cancelled_at=now, updated_at=now),
                expected={"status": current.value},
            )
            if not affected:
                raise Conflict("Application status changed concurrently")
            released = False
            if releases_slot(current, S.CANCELLED, self.settings):
                released = await self.slots.release_for_application(tx, application)
            cancelled = await tx.get(Application, application.id)

        metrics.record_transition(current.value, S.CANCELLED.value)
        logger.info(
            "application_cancelled",
            application_id=str(application_id),
            from_status=current.value,
            slot_released=released,
        )
        self.events.emit(
            ApplicationStatusChanged(
                application_id=cancelled.id,
                student_id=cancelled.student_id,
                program_id=cancelled.program_id,
                previous_status=current.value,
                new_status=S.CANCELLED.value,
                changed_by=student_id,
                slot_released=released,
            )
        )
        return cancelled
