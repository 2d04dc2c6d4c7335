"""Database package for the admission engine."""
from .connection import close_db, create_engine_from_settings, create_session_factory, init_db
from .ledger import LedgerSession, LedgerStore
from .models import (
    Application,
    ApplicationStatus,
    Base,
    ConfirmationSource,
    Payment,
    PaymentStatus,
    Program,
    ProgramStatus,
    ReservationState,
    ReviewerGrant,
)

__all__ = [
    "Base",
    "Program",
    "ProgramStatus",
    "Application",
    "ApplicationStatus",
    "ReservationState",
    "Payment",
    "PaymentStatus",
    "ConfirmationSource",
    "ReviewerGrant",
    "LedgerSession",
    "LedgerStore",
    "close_db",
    "create_engine_from_settings",
    "create_session_factory",
    "init_db",
]
