from __future__ import annotations

import logging
from decimal import Decimal
from typing import Optional

import httpx

from smartlink.config import settings

logger = logging.getLogger(__name__)


class AlertDeliveryError(RuntimeError):
    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


def format_high_value_alert(
    *,
    amount_net: Decimal,
    currency: str,
    event_type: str,
    link_name: str,
    fan_username: Optional[str],
    click_id: Optional[str],
) -> str:
    fan = f"@{fan_username}" if fan_username else "an unknown fan"
    attribution = f"click {click_id}" if click_id else "link-level attribution"
    return (
        f":moneybag: High-value {event_type}: {currency} {amount_net:.2f} net from {fan} "
        f"on {link_name} ({attribution})"
    )


class SlackAlertClient:
    def __init__(
        self,
        webhook_url: str,
        *,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.webhook_url = webhook_url
        self.timeout = httpx.Timeout(timeout or settings.OUTBOUND_REQUEST_TIMEOUT_SECONDS)
        self.transport = transport

    @classmethod
    def from_settings(cls, transport: httpx.AsyncBaseTransport | None = None) -> Optional["SlackAlertClient"]:
        if not settings.ALERT_WEBHOOK_URL:
            return None
        return cls(str(settings.ALERT_WEBHOOK_URL), transport=transport)

    async def post_message(self, text: str) -> None:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(self.webhook_url, json={"text": text})
                response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise AlertDeliveryError(
                f"Alert webhook responded with {exc.response.status_code}.",
                status_code=exc.response.status_code,
            ) from exc
        except httpx.RequestError as exc:
            raise AlertDeliveryError(f"Alert webhook request failed: {exc}") from exc
        logger.info("alerts.posted")
