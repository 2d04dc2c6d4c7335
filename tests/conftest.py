"""
Pytest configuration and fixtures.
"""
import hashlib
import hmac
import json
import uuid
from decimal import Decimal
from pathlib import Path
from typing import Any, AsyncGenerator, Awaitable, Callable, Dict, List, Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from admission_engine.config import Settings
from admission_engine.core.engine import ReconciliationEngine
from admission_engine.core.events import EngineEvent, EventBus
from admission_engine.database.connection import create_engine_from_settings, create_session_factory
from admission_engine.database.ledger import LedgerStore
from admission_engine.database.models import Base, Program, ProgramStatus, ReviewerGrant
from admission_engine.integrations.provider import ProviderHandoff, ProviderTransaction

TEST_SECRET_KEY = "sk_test_fake_key_for_testing"


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line("markers", "unit: fast tests of a single component")
    config.addinivalue_line("markers", "race: concurrent access tests")
    config.addinivalue_line("markers", "integration: end-to-end flows")


class FakeProvider:
    """In-memory payment provider recording every call."""

    name = "paystack"

    def __init__(self) -> None:
        self.opened: List[Dict[str, Any]] = []
        self.verified: List[str] = []
        self.open_error: Optional[Exception] = None
        self.closed = False
        self.verify_error: Optional[Exception] = None
        self.transactions: Dict[str, ProviderTransaction] = {}

    async def open(
        self,
        reference: str,
        amount_minor: int,
        currency: str,
        metadata: Dict[str, Any],
        customer_email: Optional[str] = None,
        callback_url: Optional[str] = None,
    ) -> ProviderHandoff:
        self.opened.append(
            {
                "reference": reference,
                "amount_minor": amount_minor,
                "currency": currency,
                "metadata": metadata,
                "customer_email": customer_email,
                "callback_url": callback_url,
            }
        )
        if self.open_error is not None:
            raise self.open_error
        return ProviderHandoff(
            reference=reference,
            authorization_url=f"https://checkout.paystack.test/{reference}",
            access_code=f"ac_{reference[:8]}",
        )

    async def verify(self, reference: str) -> ProviderTransaction:
        self.verified.append(reference)
        if self.verify_error is not None:
            raise self.verify_error
        return self.transactions.get(
            reference, ProviderTransaction(reference=reference, status="ongoing")
        )

    def settle(
        self,
        reference: str,
        status: str = "success",
        amount_minor: Optional[int] = None,
        channel: str = "card",
    ) -> None:
        """Make the next verify of `reference` report this outcome."""
        self.transactions[reference] = ProviderTransaction(
            reference=reference,
            status=status,
            channel=channel,
            amount_minor=amount_minor,
            payment_id_hint=reference,
        )

    async def close(self) -> None:
        self.closed = True


class RecordingSubscriber:
    def __init__(self) -> None:
        self.events: List[EngineEvent] = []

    def __call__(self, event: EngineEvent) -> None:
        self.events.append(event)

    def of_type(self, event_cls: type) -> List[EngineEvent]:
        return [e for e in self.events if isinstance(e, event_cls)]


def sign(body: bytes, secret: str = TEST_SECRET_KEY) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha512).hexdigest()


def charge_event(
    reference: str,
    status: str = "success",
    amount_minor: Optional[int] = None,
    payment_id: Optional[str] = None,
    event: Optional[str] = None,
) -> bytes:
    """Raw webhook body shaped like a Paystack charge event."""
    return json.dumps(
        {
            "event": event or ("charge.success" if status == "success" else "charge.failed"),
            "data": {
                "reference": reference,
                "status": status,
                "channel": "mobile_money",
                "amount": amount_minor,
                "metadata": {"paymentId": payment_id or reference},
            },
        }
    ).encode("utf-8")


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    """Create test settings backed by a throwaway SQLite file."""
    return Settings(
        paystack_secret_key=TEST_SECRET_KEY,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'admissions.db'}",
        app_name="admission-engine-test",
        app_env="test",
        log_level="DEBUG",
        debug=True,
        pending_payment_grace_minutes=15,
    )


@pytest_asyncio.fixture
async def session_factory(
    test_settings: Settings,
) -> AsyncGenerator[async_sessionmaker[AsyncSession], Any]:
    engine = create_engine_from_settings(test_settings)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield create_session_factory(engine)

    await engine.dispose()


@pytest.fixture
def ledger(session_factory: async_sessionmaker[AsyncSession]) -> LedgerStore:
    return LedgerStore(session_factory)


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def recorder() -> RecordingSubscriber:
    return RecordingSubscriber()


@pytest.fixture
def engine(
    ledger: LedgerStore,
    provider: FakeProvider,
    recorder: RecordingSubscriber,
    test_settings: Settings,
) -> ReconciliationEngine:
    return ReconciliationEngine(
        ledger=ledger,
        provider=provider,
        events=EventBus([recorder]),
        settings=test_settings,
    )


@pytest.fixture
def make_program(
    ledger: LedgerStore,
) -> Callable[..., Awaitable[Program]]:
    """Insert a program; OPEN with a 50.00 GHS fee unless told otherwise."""

    async def _make(
        total_slots: int = 10,
        available_slots: Optional[int] = None,
        fee: str = "50.00",
        status: ProgramStatus = ProgramStatus.OPEN,
        title: str = "Backend Engineering Internship",
    ) -> Program:
        program = Program(
            id=uuid.uuid4(),
            title=title,
            total_slots=total_slots,
            available_slots=total_slots if available_slots is None else available_slots,
            application_fee=Decimal(fee),
            currency="GHS",
            status=status.value,
        )
        async with ledger.transaction() as tx:
            await tx.add(program)
        return program

    return _make


@pytest.fixture
def grant(ledger: LedgerStore) -> Callable[..., Awaitable[uuid.UUID]]:
    """Give a new reviewer authority over a program and return their id."""

    async def _grant(
        program_id: uuid.UUID, can_review: bool = True, can_approve_hires: bool = True
    ) -> uuid.UUID:
        reviewer_id = uuid.uuid4()
        async with ledger.transaction() as tx:
            await tx.add(
                ReviewerGrant(
                    principal_id=reviewer_id,
                    program_id=program_id,
                    can_review=can_review,
                    can_approve_hires=can_approve_hires,
                )
            )
        return reviewer_id

    return _grant


async def available_slots(ledger: LedgerStore, program_id: uuid.UUID) -> int:
    program = await ledger.get(Program, program_id)
    assert program is not None
    return program.available_slots


@pytest.fixture
def student_id() -> uuid.UUID:
    return uuid.uuid4()
