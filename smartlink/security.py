from __future__ import annotations

import base64
import hashlib
import hmac

from fastapi import Header, HTTPException, status

from smartlink.config import settings


def _cookie_digest(value: str) -> str:
    digest = hmac.new(
        settings.CLICK_COOKIE_SECRET.encode("utf-8"),
        value.encode("utf-8"),
        hashlib.sha256,
    ).digest()
    return base64.urlsafe_b64encode(digest).decode("utf-8").rstrip("=")


def sign_click_cookie(click_id: str) -> str:
    return f"{click_id}.{_cookie_digest(click_id)}"


def verify_click_cookie(cookie_value: str | None) -> str | None:
    """Return the click id carried by a signed cookie, or None when the signature does not match."""
    if not cookie_value or "." not in cookie_value:
        return None
    click_id, _, supplied = cookie_value.rpartition(".")
    if not click_id or not hmac.compare_digest(_cookie_digest(click_id), supplied):
        return None
    return click_id


def require_internal_api_token(
    authorization: str | None = Header(default=None, alias="Authorization"),
) -> None:
    if not settings.INTERNAL_API_TOKEN:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Internal API token is not configured.",
        )
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing Bearer authorization header",
        )
    token = authorization[7:].strip()
    if not hmac.compare_digest(token, settings.INTERNAL_API_TOKEN):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid internal API token",
        )
