import logging

import httpx

from agenda.core.config import settings
from agenda.core.exceptions import ExternalServiceUnavailable
from agenda.models import WhatsappInstance

logger = logging.getLogger(__name__)


class EvolutionGateway:
    """
    Outbound side of the WhatsApp channel (Evolution API).

    Each instance may carry its own api_url/api_key; empty values fall back
    to EVOLUTION_API_URL / EVOLUTION_API_KEY.
    """

    def __init__(self, timeout: float | None = None, transport: httpx.AsyncBaseTransport | None = None):
        self.timeout = timeout or settings.HTTP_TIMEOUT_SECONDS
        self.transport = transport

    def _endpoint(self, instance: WhatsappInstance) -> tuple[str, str]:
        base_url = (instance.api_url or settings.EVOLUTION_API_URL or "").rstrip("/")
        api_key = instance.api_key or settings.EVOLUTION_API_KEY
        if not base_url:
            raise ExternalServiceUnavailable("evolution", "no API url configured")
        return base_url, api_key

    async def _post(self, instance: WhatsappInstance, path: str, payload: dict) -> dict:
        base_url, api_key = self._endpoint(instance)

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(
                    f"{base_url}{path}",
                    json=payload,
                    headers={"apikey": api_key, "Content-Type": "application/json"},
                )
        except httpx.HTTPError as exc:
            logger.error("Evolution API request to %s failed: %s", path, exc)
            raise ExternalServiceUnavailable("evolution", str(exc)) from exc

        if response.status_code not in (200, 201):
            logger.error("Evolution API error %s on %s: %s", response.status_code, path, response.text)
            raise ExternalServiceUnavailable("evolution", f"HTTP {response.status_code}")

        try:
            return response.json()
        except ValueError:
            return {}

    async def send_text(self, instance: WhatsappInstance, number: str, text: str) -> dict:
        """Send a plain text message; raises ExternalServiceUnavailable on failure."""
        logger.info("Sending text to %s via instance %s", number, instance.instance_name)
        return await self._post(
            instance,
            f"/message/sendText/{instance.instance_name}",
            {"number": number, "text": text},
        )

    async def fetch_media_base64(self, instance: WhatsappInstance, message: dict) -> str:
        """Base64 body of a media message the webhook delivered without inline data."""
        data = await self._post(
            instance,
            f"/chat/getBase64FromMediaMessage/{instance.instance_name}",
            {"message": message, "convertToMp4": False},
        )
        media = data.get("base64")
        if not media:
            raise ExternalServiceUnavailable("evolution", "media response without base64")
        return media
