"""
Domain events emitted after a state change has committed.

Delivery is fire-and-forget: each subscriber runs in its own task, so a
slow or failing subscriber never blocks or fails the operation that
produced the event. Subscriber errors are logged and dropped.
"""
import asyncio
import inspect
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Awaitable, Callable, ClassVar, List, Optional, Set, Union

import structlog
from pydantic import BaseModel, ConfigDict, Field

from admission_engine.database.models import utcnow

logger = structlog.get_logger(__name__)


class EngineEvent(BaseModel):
    """Base class for events. Immutable, past tense."""

    model_config = ConfigDict(frozen=True)

    event_type: ClassVar[str] = "engine_event"

    event_id: uuid.UUID = Field(default_factory=uuid.uuid4)
    occurred_at: datetime = Field(default_factory=utcnow)


class ApplicationSubmitted(EngineEvent):
    event_type: ClassVar[str] = "application.submitted"

    application_id: uuid.UUID
    application_number: str
    student_id: uuid.UUID
    program_id: uuid.UUID
    submitted_at: datetime


class ApplicationStatusChanged(EngineEvent):
    """Emitted on every review decision and on cancellation."""

    event_type: ClassVar[str] = "application.status_changed"

    application_id: uuid.UUID
    student_id: uuid.UUID
    program_id: uuid.UUID
    previous_status: str
    new_status: str
    changed_by: Optional[uuid.UUID] = None
    notes: Optional[str] = None
    slot_released: bool = False


class PaymentCompleted(EngineEvent):
    event_type: ClassVar[str] = "payment.completed"

    payment_id: uuid.UUID
    student_id: uuid.UUID
    application_id: Optional[uuid.UUID] = None
    amount: Decimal
    currency: str
    provider_reference: str
    confirmed_via: str


Subscriber = Callable[[EngineEvent], Union[Awaitable[None], None]]


async def log_event(event: EngineEvent) -> None:
    """Default subscriber: one structured log line per event."""
    logger.info(
        "engine_event",
        event_type=event.event_type,
        **event.model_dump(mode="json"),
    )


class EventBus:
    """In-process publisher for engine events."""

    def __init__(self, subscribers: Optional[List[Subscriber]] = None):
        self._subscribers: List[Subscriber] = list(subscribers or [])
        self._pending: Set[asyncio.Task] = set()

    def subscribe(self, subscriber: Subscriber) -> None:
        self._subscribers.append(subscriber)

    async def _deliver(self, subscriber: Subscriber, event: EngineEvent) -> None:
        try:
            result = subscriber(event)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error(
                "event_subscriber_failed",
                event_type=event.event_type,
                event_id=str(event.event_id),
                subscriber=getattr(subscriber, "__name__", repr(subscriber)),
                error=str(e),
                exc_info=True,
            )

    def emit(self, event: EngineEvent) -> None:
        """Schedule delivery to every subscriber and return immediately."""
        for subscriber in self._subscribers:
            task = asyncio.create_task(self._deliver(subscriber, event))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

    async def drain(self) -> None:
        """Wait for in-flight deliveries (shutdown and tests)."""
        while self._pending:
            await asyncio.gather(*list(self._pending))
