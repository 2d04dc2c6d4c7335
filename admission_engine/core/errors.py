"""
Error taxonomy for the reconciliation engine.

Every error carries a stable machine code and the HTTP status the API layer
answers with. None of them is process-fatal; compensation has already run by
the time one reaches the caller.
"""
from typing import Any, Dict, Optional


class EngineError(Exception):
    """Base exception for engine errors."""

    code = "ENGINE_ERROR"
    status_code = 400
    retryable = False

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = context

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.message, "code": self.code}


class NotFound(EngineError):
    code = "NOT_FOUND"
    status_code = 404


class Unauthorized(EngineError):
    code = "UNAUTHORIZED"
    status_code = 403


class Conflict(EngineError):
    """An optimistic update lost a race. Re-read and retry."""

    code = "CONFLICT"
    status_code = 409
    retryable = True


class IllegalTransition(EngineError):
    """The requested edge does not exist in the state graph."""

    code = "ILLEGAL_TRANSITION"
    status_code = 409

    def __init__(self, current: str, target: str, message: Optional[str] = None, **context: Any):
        super().__init__(
            message or f"Cannot move from {current} to {target}",
            current=current,
            target=target,
            **context,
        )
        self.current = current
        self.target = target


class SlotError(EngineError):
    code = "SLOT_ERROR"
    status_code = 409


class SlotUnavailable(SlotError):
    """Program is not OPEN or has no free capacity."""

    code = "SLOT_UNAVAILABLE"


class DuplicateApplication(EngineError):
    code = "DUPLICATE_APPLICATION"
    status_code = 409


class PaymentRequired(EngineError):
    code = "PAYMENT_REQUIRED"
    status_code = 402


class AlreadyPaid(EngineError):
    code = "ALREADY_PAID"
    status_code = 409


class NoPaymentRequired(EngineError):
    code = "NO_PAYMENT_REQUIRED"
    status_code = 400


class InvalidSignature(EngineError):
    """Webhook body did not match its signature; nothing was parsed or changed."""

    code = "INVALID_SIGNATURE"
    status_code = 401


class ProviderError(EngineError):
    code = "PROVIDER_ERROR"
    status_code = 502


class ProviderUnavailable(ProviderError):
    """Network failure or timeout talking to the provider. Retryable."""

    code = "PROVIDER_UNAVAILABLE"
    status_code = 503
    retryable = True


class ProviderRejected(ProviderError):
    """Provider answered but refused the request."""

    code = "PROVIDER_REJECTED"
    status_code = 502


class InvalidWebhookPayload(EngineError):
    """Authentic webhook whose body could not be parsed."""

    code = "INVALID_WEBHOOK_PAYLOAD"
    status_code = 400
