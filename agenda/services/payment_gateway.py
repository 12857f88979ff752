import logging
from decimal import Decimal

import httpx

from agenda.core.config import settings
from agenda.core.exceptions import ExternalServiceUnavailable
from agenda.models import Business

logger = logging.getLogger(__name__)


class MercadoPagoClient:
    """Checkout links and payment lookups against one tenant's MercadoPago account."""

    def __init__(
        self,
        access_token: str,
        base_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.access_token = access_token
        self.base_url = (base_url or settings.MERCADOPAGO_API_URL).rstrip("/")
        self.timeout = timeout or settings.HTTP_TIMEOUT_SECONDS
        self.transport = transport

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self.access_token}",
            "Content-Type": "application/json",
        }

    async def _request(self, method: str, path: str, payload: dict | None = None) -> dict:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.request(
                    method, f"{self.base_url}{path}", json=payload, headers=self._headers()
                )
        except httpx.HTTPError as exc:
            logger.error("MercadoPago request %s %s failed: %s", method, path, exc)
            raise ExternalServiceUnavailable("mercadopago", str(exc)) from exc

        if response.status_code not in (200, 201):
            logger.error("MercadoPago error %s on %s: %s", response.status_code, path, response.text)
            raise ExternalServiceUnavailable("mercadopago", f"HTTP {response.status_code}")

        return response.json()

    async def create_payment_link(
        self,
        amount: Decimal,
        reference: str,
        metadata: dict | None = None,
        notification_url: str | None = None,
        title: str = "Agendamento",
    ) -> str:
        """
        Create a checkout preference and return its payment URL (``init_point``).

        ``reference`` travels as ``external_reference`` and comes back on the
        payment, which is how the approval callback finds the pending draft.
        """
        preference = {
            "items": [
                {
                    "title": title,
                    "quantity": 1,
                    "unit_price": float(amount),
                    "currency_id": "BRL",
                }
            ],
            "external_reference": reference,
            "metadata": metadata or {},
        }
        if notification_url:
            preference["notification_url"] = notification_url

        data = await self._request("POST", "/checkout/preferences", preference)

        url = data.get("init_point") or data.get("sandbox_init_point")
        if not url:
            raise ExternalServiceUnavailable("mercadopago", "preference without init_point")

        logger.info("Payment link created for reference %s", reference)
        return url

    async def get_payment(self, payment_id: str) -> dict:
        """Payment resource: ``status``, ``external_reference``, ``transaction_amount``..."""
        return await self._request("GET", f"/v1/payments/{payment_id}")


def payment_gateway_for(business: Business) -> MercadoPagoClient | None:
    """The tenant's payment client, or None when payments are not configured."""
    if not business or not business.mercadopago_access_token:
        return None
    return MercadoPagoClient(business.mercadopago_access_token)
