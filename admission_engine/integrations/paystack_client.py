"""
Paystack API client with timeouts, retries and error classification.

Implements:
- Transaction initialization (open) with the local payment id as reference
- Transaction verification with exponential backoff on transient errors
- Classification of failures into ProviderUnavailable / ProviderRejected
"""
import time
from typing import Any, Dict, Optional

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from admission_engine.config import Settings, get_settings
from admission_engine.core.errors import ProviderRejected, ProviderUnavailable
from admission_engine.integrations.provider import ProviderHandoff, ProviderTransaction
from admission_engine.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class PaystackClient:
    """
    Wrapper for the Paystack transaction API.

    Every call is bounded by `provider_timeout_seconds`. Only verify is
    retried: it is a read, while a repeated initialize would be rejected as a
    duplicate reference anyway.
    """

    name = "paystack"

    def __init__(
        self,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        retry_wait_multiplier: float = 0.5,
    ):
        """
        Initialize Paystack client.

        Args:
            settings: Optional settings (uses cached settings if not provided)
            http_client: Optional preconfigured httpx client
            retry_wait_multiplier: Backoff multiplier between verify attempts
        """
        self.settings = settings or get_settings()
        self.retry_wait_multiplier = retry_wait_multiplier
        self._client = http_client or httpx.AsyncClient(
            base_url=self.settings.paystack_base_url,
            timeout=self.settings.provider_timeout_seconds,
        )
        self._headers = {
            "Authorization": f"Bearer {self.settings.paystack_secret_key}",
            "Content-Type": "application/json",
        }

        logger.info(
            "paystack_client_initialized",
            base_url=self.settings.paystack_base_url,
            test_mode=self.settings.is_test_mode,
        )

    async def _request(self, operation: str, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        """
        Perform one provider call and return the `data` object.

        Raises:
            ProviderUnavailable: On timeout, network failure, 5xx or unreadable body
            ProviderRejected: On 4xx or `status: false`
        """
        start = time.perf_counter()
        outcome = "error"
        try:
            response = await self._client.request(method, path, headers=self._headers, **kwargs)
            outcome = str(response.status_code)
        except httpx.TimeoutException as e:
            outcome = "timeout"
            logger.warning("paystack_timeout", operation=operation, error=str(e))
            raise ProviderUnavailable(f"Paystack {operation} timed out") from e
        except httpx.TransportError as e:
            outcome = "network_error"
            logger.warning("paystack_network_error", operation=operation, error=str(e))
            raise ProviderUnavailable(f"Paystack {operation} failed: {e}") from e
        finally:
            metrics.record_provider_call(operation, outcome, time.perf_counter() - start)

        if response.status_code >= 500:
            logger.warning(
                "paystack_server_error", operation=operation, status_code=response.status_code
            )
            raise ProviderUnavailable(
                f"Paystack {operation} returned {response.status_code}",
                status_code=response.status_code,
            )

        try:
            body = response.json()
        except ValueError as e:
            logger.warning("paystack_unreadable_response", operation=operation)
            raise ProviderUnavailable(f"Paystack {operation} returned an unreadable body") from e

        if response.status_code >= 400 or not body.get("status"):
            message = body.get("message") or f"Paystack {operation} was rejected"
            logger.error(
                "paystack_request_rejected",
                operation=operation,
                status_code=response.status_code,
                message=message,
            )
            raise ProviderRejected(message, status_code=response.status_code)

        return body.get("data") or {}

    async def open(
        self,
        reference: str,
        amount_minor: int,
        currency: str,
        metadata: Dict[str, Any],
        customer_email: Optional[str] = None,
        callback_url: Optional[str] = None,
    ) -> ProviderHandoff:
        """
        Initialize a transaction.

        Args:
            reference: Local payment id, used as the provider-side reference
            amount_minor: Amount in minor units (pesewas, kobo, cents)
            currency: ISO currency code
            metadata: Correlation data echoed back in verify and webhooks
            customer_email: Payer email, required by Paystack
            callback_url: Where to redirect after checkout

        Returns:
            ProviderHandoff: Provider reference and checkout URL
        """
        logger.info(
            "opening_paystack_transaction",
            reference=reference,
            amount_minor=amount_minor,
            currency=currency,
        )
        data = await self._request(
            "open",
            "POST",
            "/transaction/initialize",
            json={
                "email": customer_email,
                "amount": amount_minor,
                "currency": currency.upper(),
                "reference": reference,
                "callback_url": callback_url or self.settings.payment_callback_url,
                "metadata": metadata,
            },
        )
        handoff = ProviderHandoff(
            reference=data.get("reference") or reference,
            authorization_url=data["authorization_url"],
            access_code=data.get("access_code"),
        )
        logger.info("paystack_transaction_opened", reference=handoff.reference)
        return handoff

    async def _verify_once(self, reference: str) -> ProviderTransaction:
        data = await self._request("verify", "GET", f"/transaction/verify/{reference}")
        metadata = data.get("metadata")
        payment_id_hint = metadata.get("paymentId") if isinstance(metadata, dict) else None
        return ProviderTransaction(
            reference=data.get("reference") or reference,
            status=str(data.get("status", "")),
            channel=data.get("channel"),
            amount_minor=data.get("amount"),
            payment_id_hint=payment_id_hint,
        )

    async def verify(self, reference: str) -> ProviderTransaction:
        """
        Fetch the provider's current view of a transaction.

        Retries ProviderUnavailable with exponential backoff up to
        `provider_verify_max_attempts`, then re-raises it.
        """
        logger.info("verifying_paystack_transaction", reference=reference)
        async for attempt in AsyncRetrying(
            retry=retry_if_exception_type(ProviderUnavailable),
            stop=stop_after_attempt(self.settings.provider_verify_max_attempts),
            wait=wait_exponential(multiplier=self.retry_wait_multiplier, max=4),
            reraise=True,
        ):
            with attempt:
                transaction = await self._verify_once(reference)
        logger.info(
            "paystack_transaction_verified",
            reference=reference,
            status=transaction.status,
        )
        return transaction

    async def close(self) -> None:
        await self._client.aclose()
