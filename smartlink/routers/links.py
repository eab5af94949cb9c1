from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import RedirectResponse
from sqlalchemy.orm import Session

from smartlink.config import settings
from smartlink.db.deps import get_session
from smartlink.security import sign_click_cookie
from smartlink.services.click_capture import ClickContextResolver, ClickRecorder, RedirectTarget, RequestContext

logger = logging.getLogger(__name__)

router = APIRouter(tags=["links"])


def _not_found() -> RedirectResponse:
    return RedirectResponse(url=settings.not_found_url, status_code=status.HTTP_302_FOUND)


def _request_context(request: Request) -> RequestContext:
    return RequestContext.from_request_parts(headers=request.headers, query_params=request.query_params)


def _redirect(target: RedirectTarget) -> RedirectResponse:
    return RedirectResponse(url=target.url, status_code=status.HTTP_302_FOUND)


@router.get("/go/{slug}")
def landing_page_redirect(slug: str, request: Request, session: Session = Depends(get_session)):
    resolved = ClickContextResolver(session).resolve_landing_page(slug)
    if resolved is None:
        logger.info("click_capture.landing_page_not_found", extra={"slug": slug})
        return _not_found()

    landing_page, link = resolved
    target = ClickRecorder(session).capture(link, _request_context(request), landing_page=landing_page)
    response = _redirect(target)
    response.set_cookie(
        key=settings.CLICK_COOKIE_NAME,
        value=sign_click_cookie(target.click_id),
        max_age=settings.CLICK_COOKIE_MAX_AGE_SECONDS,
        httponly=True,
        secure=settings.CLICK_COOKIE_SECURE,
        samesite="lax",
    )
    response.set_cookie(
        key=settings.CLICK_DESTINATION_COOKIE_NAME,
        value=target.url,
        max_age=settings.CLICK_COOKIE_MAX_AGE_SECONDS,
        httponly=False,
        secure=settings.CLICK_COOKIE_SECURE,
        samesite="lax",
    )
    return response


@router.get("/r/{link_id}")
def tracking_redirect(link_id: str, request: Request, session: Session = Depends(get_session)):
    link = ClickContextResolver(session).resolve_link(link_id)
    if link is None:
        logger.info("click_capture.link_not_found", extra={"link_id": link_id})
        return _not_found()

    target = ClickRecorder(session).capture(link, _request_context(request))
    return _redirect(target)
