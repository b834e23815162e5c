# /autoreply/services/whatsapp_service.py

import httpx
import logging
import re
import tenacity
from typing import Optional

from autoreply.config.settings import settings
from autoreply.utils.circuit_breaker import CircuitBreaker
from autoreply.utils.metrics import delivery_counter

# DeliveryDispatcher: hands a finished reply to the WhatsApp Cloud API and
# returns the provider's message id. Failures are logged and reported as None.

logger = logging.getLogger(__name__)

MAX_TEXT_BODY = 4096


class WhatsAppService:
    def __init__(self, access_token: Optional[str], phone_id: Optional[str],
                 base_url: str = "https://graph.facebook.com/v18.0", http_client: Optional[httpx.AsyncClient] = None):
        self.access_token = access_token
        self.phone_id = phone_id
        self.base_url = base_url.rstrip("/")
        self.http_client = http_client or httpx.AsyncClient(timeout=15.0)
        self.circuit_breaker = CircuitBreaker(name="whatsapp")

    @tenacity.retry(
        retry=tenacity.retry_if_exception_type((httpx.RequestError, httpx.TimeoutException)),
        stop=tenacity.stop_after_attempt(3),
        wait=tenacity.wait_exponential(multiplier=2, min=1, max=10),
        before_sleep=tenacity.before_sleep_log(logger, logging.WARNING)
    )
    async def resilient_api_call(self, func, *args, **kwargs):
        return await self.circuit_breaker.call(func, *args, **kwargs)

    @staticmethod
    def clean_phone(phone: str) -> str:
        clean = re.sub(r"[^\d+]", "", phone or "")
        if clean and not clean.startswith("+"):
            clean = "+" + clean
        return clean

    async def send(self, destination: str, text: str) -> Optional[str]:
        """Send a text message. Returns the delivery id (wamid) or None on failure."""
        to_phone = self.clean_phone(destination)
        if not to_phone or not text:
            logger.error(f"whatsapp_send_invalid_request: to={destination!r}, empty_text={not text}")
            delivery_counter.labels(status="invalid").inc()
            return None
        if not self.access_token or not self.phone_id:
            logger.error("whatsapp_send_not_configured: access token or phone id missing")
            delivery_counter.labels(status="not_configured").inc()
            return None

        payload = {
            "messaging_product": "whatsapp",
            "recipient_type": "individual",
            "to": to_phone,
            "type": "text",
            "text": {"body": text[:MAX_TEXT_BODY]},
        }
        url = f"{self.base_url}/{self.phone_id}/messages"
        headers = {"Authorization": f"Bearer {self.access_token}", "Content-Type": "application/json"}

        try:
            response = await self.resilient_api_call(self.http_client.post, url, json=payload, headers=headers)
        except Exception as e:
            logger.error(f"whatsapp_send_error to {to_phone}: {e}", exc_info=True)
            delivery_counter.labels(status="error").inc()
            return None

        if response.status_code == 200:
            message_id = (response.json().get("messages") or [{}])[0].get("id")
            logger.info(f"WhatsApp message sent to {to_phone}, wamid: {message_id}")
            delivery_counter.labels(status="sent").inc()
            return message_id

        try:
            error_message = (response.json().get("error") or {}).get("message", "Unknown error")
        except ValueError:
            error_message = response.text
        logger.error(f"whatsapp_send_failed to {to_phone}: {response.status_code} - {error_message}")
        delivery_counter.labels(status="failed").inc()
        return None

    async def close(self):
        await self.http_client.aclose()


whatsapp_service = WhatsAppService(
    settings.whatsapp_access_token,
    settings.whatsapp_phone_id,
    settings.whatsapp_api_base_url,
)
