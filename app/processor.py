import logging
from abc import ABC, abstractmethod
from typing import TypedDict

import httpx

from .errors import ProcessorError

logger = logging.getLogger(__name__)

COMPLETED_EVENT = "checkout.session.completed"


class CheckoutSession(TypedDict):
    session_id: str
    redirect_url: str


def checkout_metadata(
    event_id: str, ticket_type_id: str, quantity: int, buyer_email: str, buyer_name: str | None
) -> dict[str, str]:
    """Correlation payload the processor echoes back on the confirmation event.

    Processors only carry string metadata, so everything is stringified here
    and re-parsed (and re-validated) by the fulfillment side.
    """
    return {
        "event_id": event_id,
        "ticket_type_id": ticket_type_id,
        "quantity": str(quantity),
        "buyer_email": buyer_email,
        "buyer_name": buyer_name or "",
    }


class PaymentProcessor(ABC):
    @abstractmethod
    async def create_session(
        self, *, amount: int, currency: str, customer_email: str, description: str, metadata: dict[str, str]
    ) -> CheckoutSession: ...


class HttpProcessor(PaymentProcessor):
    def __init__(self, api_url: str, api_key: str, public_base_url: str, timeout: float = 10.0):
        self.api_url = api_url.rstrip("/")
        self.api_key = api_key
        self.public_base_url = public_base_url.rstrip("/")
        self.timeout = timeout

    async def create_session(
        self, *, amount: int, currency: str, customer_email: str, description: str, metadata: dict[str, str]
    ) -> CheckoutSession:
        body = {
            "mode": "payment",
            "amount": amount,
            "currency": currency.lower(),
            "customer_email": customer_email,
            "description": description,
            "metadata": metadata,
            "success_url": f"{self.public_base_url}/success?session_id={{CHECKOUT_SESSION_ID}}",
            "cancel_url": f"{self.public_base_url}/events/{metadata['event_id']}",
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                r = await client.post(
                    f"{self.api_url}/checkout/sessions",
                    json=body,
                    headers={"Authorization": f"Bearer {self.api_key}"},
                )
                r.raise_for_status()
                data = r.json()
            return {"session_id": data["id"], "redirect_url": data["url"]}
        except (httpx.HTTPError, ValueError, KeyError) as e:
            logger.error("checkout session creation failed: %s", e)
            raise ProcessorError(str(e)) from e
