"""
Slot allocator: the only writer of a program's available capacity.

Reservation is one conditional decrement (`available_slots > 0` in the
WHERE clause), so concurrent reservations can never drive capacity below
zero and never need a lock.
"""
import uuid
from dataclasses import dataclass, field

import structlog

from admission_engine.config import Settings
from admission_engine.core.errors import NotFound, SlotUnavailable
from admission_engine.database.ledger import ApplicationPatch, LedgerSession, LedgerStore
from admission_engine.database.models import (
    Application,
    ApplicationStatus,
    Program,
    ReservationState,
)
from admission_engine.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


@dataclass
class ReservationToken:
    """
    Proof of one reserved seat.

    Only tokens handed out by `SlotAllocator.reserve` are held; releasing a
    token twice, or one that was never reserved, does nothing.
    """

    program_id: uuid.UUID
    token_id: uuid.UUID = field(default_factory=uuid.uuid4)
    held: bool = False


def releases_slot(
    from_status: ApplicationStatus, to_status: ApplicationStatus, settings: Settings
) -> bool:
    """Whether moving an application between these states hands its seat back."""
    if to_status == ApplicationStatus.CANCELLED:
        return from_status in (ApplicationStatus.DRAFT, ApplicationStatus.SUBMITTED)
    if to_status == ApplicationStatus.REJECTED:
        return settings.release_slot_on_rejection
    return False


class SlotAllocator:
    """Reserves and releases program seats."""

    def __init__(self, ledger: LedgerStore):
        self.ledger = ledger

    async def reserve(self, program_id: uuid.UUID) -> ReservationToken:
        """
        Take one seat from a program.

        Raises:
            NotFound: Program does not exist
            SlotUnavailable: Program is not OPEN or is full
        """
        async with self.ledger.transaction() as tx:
            affected = await tx.take_slot(program_id)
            program = None if affected else await tx.get(Program, program_id)

        if not affected:
            metrics.record_slot_operation("reserve", "unavailable")
            if program is None:
                raise NotFound("Program not found", program_id=str(program_id))
            logger.info(
                "slot_unavailable",
                program_id=str(program_id),
                program_status=program.status,
                available_slots=program.available_slots,
            )
            raise SlotUnavailable(
                "No slots available for this program",
                program_id=str(program_id),
            )

        metrics.record_slot_operation("reserve", "ok")
        logger.info("slot_reserved", program_id=str(program_id))
        return ReservationToken(program_id=program_id, held=True)

    async def release(self, token: ReservationToken) -> bool:
        """
        Hand a reserved seat back. Idempotent per token.

        Returns:
            bool: True if capacity was incremented
        """
        if not token.held:
            metrics.record_slot_operation("release", "noop")
            return False

        async with self.ledger.transaction() as tx:
            affected = await tx.return_slot(token.program_id)
        token.held = False

        metrics.record_slot_operation("release", "ok" if affected else "noop")
        logger.info(
            "slot_released",
            program_id=str(token.program_id),
            token_id=str(token.token_id),
            returned=bool(affected),
        )
        return bool(affected)

    async def release_for_application(self, tx: LedgerSession, application: Application) -> bool:
        """
        Hand back the seat an application holds, inside the caller's transaction.

        The reservation state flips to RELEASED at most once, so repeated
        calls cannot return the same seat twice.
        """
        flipped = await tx.conditional_update(
            application.id,
            ApplicationPatch(reservation_state=ReservationState.RELEASED.value),
            expected={
                "reservation_state": (
                    ReservationState.HELD.value,
                    ReservationState.COMMITTED.value,
                )
            },
        )
        if not flipped:
            metrics.record_slot_operation("release", "noop")
            return False

        await tx.return_slot(application.program_id)
        metrics.record_slot_operation("release", "ok")
        logger.info(
            "slot_released",
            program_id=str(application.program_id),
            application_id=str(application.id),
        )
        return True
