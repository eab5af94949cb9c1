from __future__ import annotations

import logging
import re
import secrets
from dataclasses import dataclass, field
from typing import Mapping, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from smartlink.config import settings
from smartlink.db.enums import DeviceTypeEnum
from smartlink.db.models import Click, LandingPage, Link
from smartlink.db.repositories.clicks import ClicksRepository
from smartlink.db.repositories.links import LinksRepository

logger = logging.getLogger(__name__)

_DEVICE_RULES: tuple[tuple[re.Pattern[str], DeviceTypeEnum], ...] = (
    (re.compile(r"mobile", re.IGNORECASE), DeviceTypeEnum.mobile),
    (re.compile(r"tablet|ipad", re.IGNORECASE), DeviceTypeEnum.tablet),
)

_BROWSER_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"chrome", re.IGNORECASE), "Chrome"),
    (re.compile(r"firefox", re.IGNORECASE), "Firefox"),
    (re.compile(r"safari", re.IGNORECASE), "Safari"),
    (re.compile(r"edge", re.IGNORECASE), "Edge"),
)

_UTM_DEFAULTS = {
    "utm_source": "direct",
    "utm_medium": "none",
    "utm_campaign": "",
    "utm_content": "",
}

_COUNTRY_HEADERS = ("cf-ipcountry", "x-vercel-ip-country")


def generate_click_id(nbytes: int | None = None) -> str:
    nbytes = nbytes or settings.CLICK_ID_BYTES
    if nbytes * 8 < 120:
        raise ValueError("click ids need at least 120 bits of entropy")
    return secrets.token_urlsafe(nbytes)


def classify_device(user_agent: str) -> str:
    for pattern, device_type in _DEVICE_RULES:
        if pattern.search(user_agent):
            return device_type.value
    return DeviceTypeEnum.desktop.value


def classify_browser(user_agent: str) -> str:
    for pattern, browser in _BROWSER_RULES:
        if pattern.search(user_agent):
            return browser
    return "Other"


def append_query_param(url: str, key: str, value: str) -> str:
    parts = urlsplit(url)
    query = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if k != key]
    query.append((key, value))
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment))


@dataclass
class RequestContext:
    user_agent: str = ""
    referrer: str = ""
    country: str = "unknown"
    utm: dict[str, str] = field(default_factory=lambda: dict(_UTM_DEFAULTS))

    @classmethod
    def from_request_parts(
        cls,
        *,
        headers: Mapping[str, str],
        query_params: Mapping[str, str],
    ) -> "RequestContext":
        country = "unknown"
        for header in _COUNTRY_HEADERS:
            value = headers.get(header)
            if value:
                country = value
                break
        utm = {key: (query_params.get(key) or default) for key, default in _UTM_DEFAULTS.items()}
        return cls(
            user_agent=headers.get("user-agent") or "",
            referrer=headers.get("referer") or "",
            country=country,
            utm=utm,
        )


@dataclass
class RedirectTarget:
    url: str
    click_id: str
    persisted: bool


class ClickContextResolver:
    def __init__(self, session: Session) -> None:
        self.links = LinksRepository(session)

    def resolve_link(self, link_id: str) -> Optional[Link]:
        return self.links.get_active(link_id)

    def resolve_landing_page(self, slug: str) -> Optional[tuple[LandingPage, Link]]:
        return self.links.get_published_landing_page(slug)


class ClickRecorder:
    """Mints click ids and records click context without ever blocking the redirect."""

    def __init__(self, session: Session) -> None:
        self.session = session
        self.clicks = ClicksRepository(session)
        self.links = LinksRepository(session)

    def capture(
        self,
        link: Link,
        context: RequestContext,
        *,
        landing_page: LandingPage | None = None,
    ) -> RedirectTarget:
        click_id = generate_click_id()
        click = Click(
            click_id=click_id,
            tenant_id=link.tenant_id,
            link_id=link.id,
            landing_page_id=landing_page.id if landing_page else None,
            utm_source=context.utm["utm_source"],
            utm_medium=context.utm["utm_medium"],
            utm_campaign=context.utm["utm_campaign"],
            utm_content=context.utm["utm_content"],
            country=context.country,
            device_type=classify_device(context.user_agent),
            browser=classify_browser(context.user_agent),
            referrer=context.referrer,
        )
        persisted = self._persist(click, link=link, landing_page=landing_page)
        url = append_query_param(link.tracking_url, settings.CLICK_ID_QUERY_PARAM, click_id)
        return RedirectTarget(url=url, click_id=click_id, persisted=persisted)

    def _persist(self, click: Click, *, link: Link, landing_page: LandingPage | None) -> bool:
        try:
            self.clicks.add(click)
        except SQLAlchemyError as exc:
            self.session.rollback()
            logger.error(
                "click_capture.persist_failed",
                extra={
                    "click_id": click.click_id,
                    "link_id": link.id,
                    "tenant_id": link.tenant_id,
                    "utm_source": click.utm_source,
                    "error": str(exc),
                },
            )
            return False

        try:
            self.links.increment_clicks(link.id)
            if landing_page is not None:
                self.links.increment_landing_page_views(landing_page.id)
        except SQLAlchemyError as exc:
            self.session.rollback()
            logger.warning(
                "click_capture.counter_update_failed",
                extra={"click_id": click.click_id, "link_id": link.id, "error": str(exc)},
            )
        return True
