from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status

from smartlink.pipeline.bus import EventPublisher
from smartlink.pipeline.errors import EventPublishError
from smartlink.services.postback_ingestion import PostbackValidationError, parse_postback

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


def get_event_publisher(request: Request) -> EventPublisher:
    return request.app.state.event_publisher


@router.get("/smart-link")
async def smart_link_postback(request: Request, publisher: EventPublisher = Depends(get_event_publisher)):
    try:
        event = parse_postback(request.query_params)
    except PostbackValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    try:
        await publisher.publish(event)
    except EventPublishError as exc:
        logger.error(
            "postback.publish_failed",
            extra={"run_id": event.run_id, "external_event_key": event.external_event_key, "error": str(exc)},
        )
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to accept postback; retry later.",
        ) from exc

    logger.info(
        "postback.accepted",
        extra={"run_id": event.run_id, "conversion_type": event.conversion_type, "link_id": event.smart_link_id},
    )
    return {"received": True}
