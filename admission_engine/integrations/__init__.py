"""External integrations: payment provider client and webhook handling."""
from .paystack_client import PaystackClient
from .provider import PaymentProvider, ProviderHandoff, ProviderTransaction
from .webhook_handler import SIGNATURE_HEADER, WebhookEvent, WebhookHandler, WebhookVerifier

__all__ = [
    "PaystackClient",
    "PaymentProvider",
    "ProviderHandoff",
    "ProviderTransaction",
    "SIGNATURE_HEADER",
    "WebhookEvent",
    "WebhookHandler",
    "WebhookVerifier",
]
