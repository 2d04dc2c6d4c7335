"""
Ledger store: the storage boundary for programs, applications and payments.

Offers point lookup by id, lookup through explicit filter types (one per
supported query), and a single-row conditional update that reports how many
rows it touched. All cross-request correctness in the engine is built on
that conditional update; nothing here takes locks.
"""
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, fields
from datetime import datetime
from typing import (
    Any,
    AsyncIterator,
    ClassVar,
    Dict,
    List,
    Mapping,
    Optional,
    Sequence,
    Type,
    TypeVar,
    Union,
)

import structlog
from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from admission_engine.database.models import (
    Application,
    ApplicationStatus,
    Base,
    Payment,
    PaymentStatus,
    Program,
    ProgramStatus,
    ReviewerGrant,
)

logger = structlog.get_logger(__name__)

ModelT = TypeVar("ModelT", bound=Base)


class _Unset:
    """Marker for a patch field that is absent (distinct from an explicit None)."""

    _instance: Optional["_Unset"] = None

    def __new__(cls) -> "_Unset":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNSET"

    def __bool__(self) -> bool:
        return False


UNSET: Any = _Unset()


# ============================================================================
# FILTERS
# ============================================================================


@dataclass(frozen=True)
class ActiveApplicationFor:
    """The non-cancelled application of a student for a program."""

    model: ClassVar[Type[Base]] = Application

    student_id: uuid.UUID
    program_id: uuid.UUID

    def clauses(self) -> List[Any]:
        return [
            Application.student_id == self.student_id,
            Application.program_id == self.program_id,
            Application.status != ApplicationStatus.CANCELLED.value,
        ]


@dataclass(frozen=True)
class CompletedPaymentFor:
    """The COMPLETED payment of an application, optionally excluding one payment."""

    model: ClassVar[Type[Base]] = Payment

    application_id: uuid.UUID
    excluding_payment_id: Optional[uuid.UUID] = None

    def clauses(self) -> List[Any]:
        clauses = [
            Payment.application_id == self.application_id,
            Payment.status == PaymentStatus.COMPLETED.value,
        ]
        if self.excluding_payment_id is not None:
            clauses.append(Payment.id != self.excluding_payment_id)
        return clauses


@dataclass(frozen=True)
class PaymentByReference:
    model: ClassVar[Type[Base]] = Payment

    provider_reference: str

    def clauses(self) -> List[Any]:
        return [Payment.provider_reference == self.provider_reference]


@dataclass(frozen=True)
class StalePendingPayments:
    """
    PENDING payments created before a cutoff, split by whether the provider
    handed back a reference.

    With `checked_before`, rows the sweeper already asked about since then
    are left out. Rows come oldest first by last check (creation time when
    never checked), so a batch limit cannot pin the sweeper to the same rows.
    """

    model: ClassVar[Type[Base]] = Payment

    created_before: datetime
    has_reference: bool
    checked_before: Optional[datetime] = None

    def clauses(self) -> List[Any]:
        reference_clause = (
            Payment.provider_reference.is_not(None)
            if self.has_reference
            else Payment.provider_reference.is_(None)
        )
        clauses = [
            Payment.status == PaymentStatus.PENDING.value,
            Payment.created_at < self.created_before,
            reference_clause,
        ]
        if self.checked_before is not None:
            clauses.append(
                or_(
                    Payment.last_checked_at.is_(None),
                    Payment.last_checked_at < self.checked_before,
                )
            )
        return clauses

    def ordering(self) -> List[Any]:
        return [
            func.coalesce(Payment.last_checked_at, Payment.created_at).asc(),
            Payment.created_at.asc(),
        ]


@dataclass(frozen=True)
class GrantFor:
    model: ClassVar[Type[Base]] = ReviewerGrant

    principal_id: uuid.UUID
    program_id: uuid.UUID

    def clauses(self) -> List[Any]:
        return [
            ReviewerGrant.principal_id == self.principal_id,
            ReviewerGrant.program_id == self.program_id,
        ]


LedgerFilter = Union[
    ActiveApplicationFor,
    CompletedPaymentFor,
    PaymentByReference,
    StalePendingPayments,
    GrantFor,
]


# ============================================================================
# PATCHES
# ============================================================================


@dataclass(frozen=True)
class Patch:
    """
    Partial update of one row.

    Fields left at UNSET are not written; a field set to None is written as
    NULL.
    """

    model: ClassVar[Type[Base]]

    def values(self) -> Dict[str, Any]:
        return {
            f.name: getattr(self, f.name)
            for f in fields(self)
            if getattr(self, f.name) is not UNSET
        }


@dataclass(frozen=True)
class ApplicationPatch(Patch):
    model: ClassVar[Type[Base]] = Application

    status: Any = UNSET
    reservation_state: Any = UNSET
    motivation_letter: Any = UNSET
    additional_answers: Any = UNSET
    review_notes: Any = UNSET
    reviewed_by: Any = UNSET
    rejection_reason: Any = UNSET
    submitted_at: Any = UNSET
    reviewed_at: Any = UNSET
    interview_date: Any = UNSET
    accepted_at: Any = UNSET
    rejected_at: Any = UNSET
    enrolled_at: Any = UNSET
    cancelled_at: Any = UNSET
    updated_at: Any = UNSET


@dataclass(frozen=True)
class PaymentPatch(Patch):
    model: ClassVar[Type[Base]] = Payment

    status: Any = UNSET
    provider_reference: Any = UNSET
    payment_method: Any = UNSET
    confirmed_via: Any = UNSET
    failure_reason: Any = UNSET
    paid_at: Any = UNSET
    last_checked_at: Any = UNSET
    updated_at: Any = UNSET


def _expectation_clauses(model: Type[Base], expected: Mapping[str, Any]) -> List[Any]:
    """Translate {field: expected} into WHERE clauses (None -> IS NULL, collections -> IN)."""
    clauses = []
    for name, value in expected.items():
        column = getattr(model, name)
        if value is None:
            clauses.append(column.is_(None))
        elif isinstance(value, (tuple, list, set, frozenset)):
            clauses.append(column.in_(list(value)))
        else:
            clauses.append(column == value)
    return clauses


class LedgerSession:
    """Storage primitives bound to one open transaction."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, model: Type[ModelT], entity_id: Any) -> Optional[ModelT]:
        # Conditional updates bypass the identity map, so always reload.
        return await self.session.get(model, entity_id, populate_existing=True)

    async def find_one(self, query: LedgerFilter) -> Optional[Any]:
        stmt = select(query.model).where(*query.clauses()).limit(1)
        result = await self.session.execute(stmt)
        return result.scalars().first()

    async def find_all(self, query: LedgerFilter, limit: Optional[int] = None) -> List[Any]:
        stmt = select(query.model).where(*query.clauses())
        ordering = getattr(query, "ordering", None)
        if ordering is not None:
            stmt = stmt.order_by(*ordering())
        if limit is not None:
            stmt = stmt.limit(limit)
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def add(self, entity: Base) -> None:
        self.session.add(entity)
        await self.session.flush()

    async def conditional_update(
        self,
        entity_id: uuid.UUID,
        patch: Patch,
        expected: Mapping[str, Any],
    ) -> int:
        """
        Apply `patch` to the row iff every expected field currently matches.

        Returns:
            int: Rows affected (0 or 1)
        """
        model = patch.model
        values = patch.values()
        if not values:
            raise ValueError("Empty patch")
        stmt = (
            update(model)
            .where(model.id == entity_id, *_expectation_clauses(model, expected))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount

    async def conditional_delete(
        self,
        model: Type[Base],
        entity_id: uuid.UUID,
        expected: Mapping[str, Any],
    ) -> int:
        stmt = (
            delete(model)
            .where(model.id == entity_id, *_expectation_clauses(model, expected))
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount

    async def take_slot(self, program_id: uuid.UUID) -> int:
        """Decrement available capacity iff the program is OPEN and has a free seat."""
        stmt = (
            update(Program)
            .where(
                Program.id == program_id,
                Program.status == ProgramStatus.OPEN.value,
                Program.available_slots > 0,
            )
            .values(available_slots=Program.available_slots - 1)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount

    async def return_slot(self, program_id: uuid.UUID) -> int:
        """Increment available capacity, never past the program total."""
        stmt = (
            update(Program)
            .where(
                Program.id == program_id,
                Program.available_slots < Program.total_slots,
            )
            .values(available_slots=Program.available_slots + 1)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.rowcount


class LedgerStore:
    """
    Entry point to the ledger.

    Each `transaction()` is a short unit of work committed on exit and
    rolled back if the body raises.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[LedgerSession]:
        async with self._session_factory() as session:
            async with session.begin():
                yield LedgerSession(session)

    async def get(self, model: Type[ModelT], entity_id: Any) -> Optional[ModelT]:
        async with self.transaction() as tx:
            return await tx.get(model, entity_id)

    async def find_one(self, query: LedgerFilter) -> Optional[Any]:
        async with self.transaction() as tx:
            return await tx.find_one(query)

    async def find_all(self, query: LedgerFilter, limit: Optional[int] = None) -> Sequence[Any]:
        async with self.transaction() as tx:
            return await tx.find_all(query, limit=limit)
