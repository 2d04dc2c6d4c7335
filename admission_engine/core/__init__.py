"""Core admission and payment reconciliation logic."""
from .applications import ApplicationStateMachine, DraftFields
from .authorization import LedgerReviewAuthority, ReviewAuthority
from .engine import ReconciliationEngine
from .events import (
    ApplicationStatusChanged,
    ApplicationSubmitted,
    EngineEvent,
    EventBus,
    PaymentCompleted,
)
from .payments import PaymentReconciler
from .slots import ReservationToken, SlotAllocator, releases_slot
from .sweeper import PendingPaymentSweeper

__all__ = [
    "ApplicationStateMachine",
    "ApplicationStatusChanged",
    "ApplicationSubmitted",
    "DraftFields",
    "EngineEvent",
    "EventBus",
    "LedgerReviewAuthority",
    "PaymentCompleted",
    "PaymentReconciler",
    "PendingPaymentSweeper",
    "ReconciliationEngine",
    "ReservationToken",
    "ReviewAuthority",
    "SlotAllocator",
    "releases_slot",
]
