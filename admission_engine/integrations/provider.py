"""Payment provider boundary shared by the real client and test doubles."""
from typing import Any, Dict, Optional, Protocol

from pydantic import BaseModel, ConfigDict


class ProviderHandoff(BaseModel):
    """What the student needs to continue checkout on the provider's side."""

    model_config = ConfigDict(frozen=True)

    reference: str
    authorization_url: str
    access_code: Optional[str] = None


class ProviderTransaction(BaseModel):
    """Provider's view of one transaction, as returned by verify."""

    model_config = ConfigDict(frozen=True)

    reference: str
    status: str
    channel: Optional[str] = None
    amount_minor: Optional[int] = None
    payment_id_hint: Optional[str] = None


class PaymentProvider(Protocol):
    """
    External payment provider.

    Implementations raise ProviderUnavailable for timeouts and network
    failures and ProviderRejected when the provider refuses a request.
    """

    name: str

    async def open(
        self,
        reference: str,
        amount_minor: int,
        currency: str,
        metadata: Dict[str, Any],
        customer_email: Optional[str] = None,
        callback_url: Optional[str] = None,
    ) -> ProviderHandoff:
        ...

    async def verify(self, reference: str) -> ProviderTransaction:
        ...

    async def close(self) -> None:
        """Release connections held by the provider client."""
        ...
