"""Builds a fully wired engine from settings."""
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from admission_engine.config import Settings, get_settings
from admission_engine.core.engine import ReconciliationEngine
from admission_engine.database.connection import get_session_factory
from admission_engine.database.ledger import LedgerStore
from admission_engine.integrations.paystack_client import PaystackClient
from admission_engine.integrations.provider import PaymentProvider


def build_engine(
    settings: Optional[Settings] = None,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    provider: Optional[PaymentProvider] = None,
) -> ReconciliationEngine:
    settings = settings or get_settings()
    session_factory = session_factory or get_session_factory(settings)
    return ReconciliationEngine(
        ledger=LedgerStore(session_factory),
        provider=provider or PaystackClient(settings),
        settings=settings,
    )
