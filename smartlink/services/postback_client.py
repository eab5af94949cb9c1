from __future__ import annotations

import logging
import re
from typing import Any, Mapping, Optional
from urllib.parse import quote

import httpx

from smartlink.config import settings

logger = logging.getLogger(__name__)

_PLACEHOLDER_RE = re.compile(r"\{([a-z_]+)\}")


class PostbackDeliveryError(RuntimeError):
    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


def render_postback_url(template: str, values: Mapping[str, Any]) -> str:
    """
    Substitute `{name}` placeholders with URL-encoded values.

    Unknown placeholders are left in place; known ones with no value become empty strings.
    """

    def _replace(match: re.Match[str]) -> str:
        name = match.group(1)
        if name not in values:
            return match.group(0)
        value = values[name]
        return quote("" if value is None else str(value), safe="")

    return _PLACEHOLDER_RE.sub(_replace, template)


async def deliver_postback(
    url: str,
    *,
    timeout: float | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> int:
    try:
        async with httpx.AsyncClient(
            timeout=httpx.Timeout(timeout or settings.OUTBOUND_REQUEST_TIMEOUT_SECONDS),
            transport=transport,
            follow_redirects=True,
        ) as client:
            response = await client.get(url)
    except httpx.RequestError as exc:
        raise PostbackDeliveryError(f"Postback request failed: {exc}") from exc

    if response.status_code < 200 or response.status_code >= 300:
        raise PostbackDeliveryError(
            f"Postback endpoint responded with {response.status_code}.",
            status_code=response.status_code,
        )
    logger.info("postback.delivered", extra={"status_code": response.status_code})
    return response.status_code
