"""
Paystack webhook handler with signature verification and event routing.

Implements:
- HMAC-SHA512 signature check over the raw body, before any parsing
- Envelope parsing, with the charge payload typed only for charge handlers
- Event type routing to registered handlers

Deduplication is not done here: finalization is idempotent on the provider
reference, so a redelivered event is a no-op.
"""
import hashlib
import hmac
from typing import Any, Awaitable, Callable, Dict, Optional

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from admission_engine.core.errors import InvalidSignature, InvalidWebhookPayload
from admission_engine.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

SIGNATURE_HEADER = "x-paystack-signature"

WebhookCallback = Callable[["WebhookEvent"], Awaitable[Any]]


class WebhookMetadata(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    payment_id: Optional[str] = Field(default=None, alias="paymentId")
    application_id: Optional[str] = Field(default=None, alias="applicationId")


class WebhookTransaction(BaseModel):
    model_config = ConfigDict(extra="ignore")

    reference: str
    status: str
    channel: Optional[str] = None
    amount: Optional[int] = None
    metadata: WebhookMetadata = Field(default_factory=WebhookMetadata)

    @field_validator("metadata", mode="before")
    @classmethod
    def coerce_metadata(cls, v: Any) -> Any:
        # Paystack sends "" or null when no metadata was attached
        return v if isinstance(v, dict) else {}


class WebhookEvent(BaseModel):
    """
    Signed delivery envelope.

    `data` is kept as the raw object so that event types with other shapes
    are still acknowledged; charge handlers read it through `charge()`.
    """

    model_config = ConfigDict(extra="ignore", frozen=True)

    event: str
    data: Dict[str, Any] = Field(default_factory=dict)

    def charge(self) -> WebhookTransaction:
        """
        Parse `data` as a charge transaction.

        Raises:
            InvalidWebhookPayload: `data` lacks the charge fields
        """
        try:
            return WebhookTransaction.model_validate(self.data)
        except ValidationError as e:
            logger.error("webhook_charge_payload_invalid", event_type=self.event, error=str(e))
            raise InvalidWebhookPayload("Malformed charge payload") from e


class WebhookVerifier:
    """Checks `x-paystack-signature` against the raw request body."""

    def __init__(self, secret: str):
        self._secret = secret.encode("utf-8")

    def compute_signature(self, raw_body: bytes) -> str:
        return hmac.new(self._secret, raw_body, hashlib.sha512).hexdigest()

    def verify(self, raw_body: bytes, signature: Optional[str]) -> WebhookEvent:
        """
        Authenticate and parse a webhook delivery.

        Raises:
            InvalidSignature: Header missing or not matching the body
            InvalidWebhookPayload: Authentic body that is not a valid event
        """
        if not signature:
            logger.warning("webhook_signature_missing")
            raise InvalidSignature("Missing webhook signature")

        expected = self.compute_signature(raw_body)
        if not hmac.compare_digest(expected, signature.strip().lower()):
            logger.warning("webhook_signature_invalid")
            raise InvalidSignature("Invalid webhook signature")

        try:
            event = WebhookEvent.model_validate_json(raw_body)
        except ValidationError as e:
            logger.error("webhook_payload_invalid", error=str(e))
            raise InvalidWebhookPayload("Malformed webhook payload") from e

        logger.info("webhook_signature_verified", event_type=event.event)
        return event


class WebhookHandler:
    """
    Routes verified webhook events to handlers by event type.

    Unregistered event types are acknowledged and ignored.
    """

    def __init__(self, verifier: WebhookVerifier):
        self.verifier = verifier
        self.event_handlers: Dict[str, WebhookCallback] = {}

    def register_handler(self, event_type: str, handler: WebhookCallback) -> None:
        self.event_handlers[event_type] = handler
        logger.info("webhook_handler_registered", event_type=event_type)

    async def handle(self, raw_body: bytes, signature: Optional[str]) -> Optional[Any]:
        """
        Verify, parse and dispatch one delivery.

        Returns:
            The registered handler's result, or None for ignored events
        """
        try:
            event = self.verifier.verify(raw_body, signature)
        except InvalidSignature:
            metrics.record_webhook_event("unknown", "invalid_signature")
            raise
        except InvalidWebhookPayload:
            metrics.record_webhook_event("unknown", "invalid_payload")
            raise

        handler = self.event_handlers.get(event.event)
        if handler is None:
            logger.info("webhook_event_ignored", event_type=event.event)
            metrics.record_webhook_event(event.event, "ignored")
            return None

        try:
            result = await handler(event)
        except InvalidWebhookPayload:
            metrics.record_webhook_event(event.event, "invalid_payload")
            raise
        metrics.record_webhook_event(event.event, "processed")
        return result
