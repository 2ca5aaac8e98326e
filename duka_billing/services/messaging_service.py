"""SMS and WhatsApp delivery through an HTTP messaging gateway."""

from __future__ import annotations

import logging
from typing import Literal

import httpx

from duka_billing.core.config import settings
from duka_billing.services.email_service import TransportResult

logger = logging.getLogger(__name__)

Channel = Literal["sms", "whatsapp"]


class MessagingService:
    """Posts text messages to the configured gateway for each channel."""

    def __init__(
        self,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.timeout = timeout if timeout is not None else settings.TRANSPORT_TIMEOUT_SECONDS
        self._transport = transport

    def _gateway(self, channel: Channel) -> tuple[str, str]:
        if channel == "whatsapp":
            return settings.WHATSAPP_GATEWAY_URL, settings.WHATSAPP_GATEWAY_TOKEN
        return settings.SMS_GATEWAY_URL, settings.SMS_GATEWAY_TOKEN

    async def send_message(self, to: str, text: str, channel: Channel = "sms") -> TransportResult:
        if not to:
            return TransportResult(success=False, error="Recipient number is empty")

        url, token = self._gateway(channel)
        if not url:
            logger.info("%s gateway not configured, skipping message to %s", channel, to)
            return TransportResult(success=True)

        headers = {"Content-Type": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.post(
                    url,
                    json={"to": to, "message": text, "channel": channel},
                    headers=headers,
                )
        except httpx.HTTPError as exc:
            logger.warning("%s delivery to %s failed: %s", channel, to, exc)
            return TransportResult(success=False, error=str(exc)[:1000] or type(exc).__name__)

        if not 200 <= resp.status_code < 300:
            body = resp.text[:1000] if resp.text else ""
            logger.warning(
                "%s gateway rejected message to %s: HTTP %s %s", channel, to, resp.status_code, body
            )
            return TransportResult(success=False, error=f"HTTP {resp.status_code}: {body}".strip())

        message_id: str | None = None
        try:
            data = resp.json()
        except ValueError:
            data = None
        if isinstance(data, dict):
            raw_id = data.get("message_id") or data.get("id")
            message_id = str(raw_id) if raw_id is not None else None

        logger.info("%s message sent to %s", channel, to)
        return TransportResult(success=True, message_id=message_id)
