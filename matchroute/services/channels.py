from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

from matchroute.core.config import Settings

logger = logging.getLogger(__name__)

_TRANSIENT_STATUS_CODES = {408, 425, 429}


@dataclass(slots=True)
class DeliveryResult:
    success: bool
    transient: bool = False
    error: str | None = None
    provider_message_id: str | None = None


class ChannelProvider(Protocol):
    async def send(
        self,
        *,
        channel: str,
        recipient: str,
        template: str,
        data: dict[str, Any],
    ) -> DeliveryResult: ...


class WebhookChannelProvider:
    """Delivers messages by POSTing to one webhook URL per channel."""

    def __init__(
        self,
        webhooks: dict[str, str],
        *,
        timeout_seconds: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.webhooks = dict(webhooks)
        self.timeout_seconds = timeout_seconds
        self._transport = transport

    async def send(
        self,
        *,
        channel: str,
        recipient: str,
        template: str,
        data: dict[str, Any],
    ) -> DeliveryResult:
        url = self.webhooks.get(channel)
        if not url:
            return DeliveryResult(success=False, transient=False, error=f"no webhook configured for channel {channel}")

        body = {"channel": channel, "recipient": recipient, "template": template, "data": data}
        async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self._transport) as client:
            response = await client.post(url, json=body)

        if response.is_success:
            return DeliveryResult(success=True, provider_message_id=_message_id(response))
        transient = response.status_code >= 500 or response.status_code in _TRANSIENT_STATUS_CODES
        return DeliveryResult(
            success=False,
            transient=transient,
            error=f"provider returned status {response.status_code}",
        )


class LoggingChannelProvider:
    """Development provider that logs instead of delivering."""

    def __init__(self) -> None:
        self.sent: list[dict[str, Any]] = []

    async def send(
        self,
        *,
        channel: str,
        recipient: str,
        template: str,
        data: dict[str, Any],
    ) -> DeliveryResult:
        self.sent.append({"channel": channel, "recipient": recipient, "template": template, "data": data})
        logger.info("notification logged channel=%s recipient=%s template=%s", channel, recipient, template)
        return DeliveryResult(success=True)


def parse_channel_webhooks(raw: str | None) -> dict[str, str]:
    if not raw:
        return {}
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("ignoring malformed channel webhooks json")
        return {}
    if not isinstance(payload, dict):
        return {}
    return {
        channel.strip(): url.strip()
        for channel, url in payload.items()
        if isinstance(channel, str) and isinstance(url, str) and url.strip()
    }


def build_channel_provider(settings: Settings) -> ChannelProvider:
    webhooks = parse_channel_webhooks(settings.notify_channel_webhooks_json)
    if not webhooks:
        return LoggingChannelProvider()
    return WebhookChannelProvider(webhooks, timeout_seconds=settings.notify_send_timeout_seconds)


def _message_id(response: httpx.Response) -> str | None:
    try:
        payload = response.json()
    except ValueError:
        return None
    if isinstance(payload, dict):
        value = payload.get("id") or payload.get("message_id")
        return str(value) if value is not None else None
    return None
