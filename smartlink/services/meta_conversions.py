from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional

import httpx

from smartlink.config import settings
from smartlink.db.enums import ConversionEventTypeEnum

logger = logging.getLogger("meta.conversions")

META_EVENT_NAMES = {
    ConversionEventTypeEnum.subscribe: "Subscribe",
    ConversionEventTypeEnum.purchase: "Purchase",
    ConversionEventTypeEnum.rebill: "Purchase",
    ConversionEventTypeEnum.click: "Lead",
}


class MetaConversionsConfigError(RuntimeError):
    pass


class MetaConversionsError(RuntimeError):
    def __init__(self, message: str, status_code: Optional[int] = None, error_payload: Any = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.error_payload = error_payload


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def build_conversion_event(
    *,
    event_id: str,
    event_type: ConversionEventTypeEnum,
    event_time: datetime,
    click_reference: str,
    value: Decimal,
    currency: str,
) -> dict[str, Any]:
    return {
        "event_name": META_EVENT_NAMES[event_type],
        "event_time": int(_as_utc(event_time).timestamp()),
        "event_id": event_id,
        "action_source": "website",
        "user_data": {"external_id": [click_reference]},
        "custom_data": {"value": float(value), "currency": currency},
    }


class MetaConversionsClient:
    def __init__(
        self,
        *,
        pixel_id: str,
        access_token: str,
        api_version: str,
        base_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not pixel_id or not access_token:
            raise MetaConversionsConfigError("A pixel id and access token are required for the Conversions API.")
        self.pixel_id = pixel_id
        self.access_token = access_token
        self.api_version = api_version
        self.base_url = (base_url or "https://graph.facebook.com").rstrip("/")
        self.timeout = httpx.Timeout(timeout or settings.OUTBOUND_REQUEST_TIMEOUT_SECONDS)
        self.transport = transport

    @classmethod
    def for_tenant(
        cls,
        *,
        pixel_id: str,
        access_token: str,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> "MetaConversionsClient":
        return cls(
            pixel_id=pixel_id,
            access_token=access_token,
            api_version=settings.META_GRAPH_API_VERSION,
            base_url=settings.META_GRAPH_API_BASE_URL,
            transport=transport,
        )

    async def send_events(self, events: list[dict[str, Any]]) -> dict[str, Any]:
        url = f"{self.base_url}/{self.api_version}/{self.pixel_id}/events"
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(
                    url,
                    params={"access_token": self.access_token},
                    json={"data": events},
                )
                response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            error_payload: Any = None
            try:
                error_payload = exc.response.json()
            except ValueError:
                error_payload = {"text": exc.response.text}
            message = f"Meta Conversions API error ({exc.response.status_code})."
            raise MetaConversionsError(
                message, status_code=exc.response.status_code, error_payload=error_payload
            ) from exc
        except httpx.RequestError as exc:
            raise MetaConversionsError(f"Meta Conversions API request failed: {exc}") from exc

        logger.info(
            "meta.conversions.sent",
            extra={"pixel_id": self.pixel_id, "event_ids": [event.get("event_id") for event in events]},
        )
        try:
            return response.json()
        except ValueError as exc:
            raise MetaConversionsError("Meta Conversions API returned a non-JSON response.") from exc
