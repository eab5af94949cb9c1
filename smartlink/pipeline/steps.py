from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Callable, Optional

from sqlalchemy.orm import Session

from smartlink.config import settings
from smartlink.db.base import run_in_session
from smartlink.db.enums import ConversionEventTypeEnum
from smartlink.db.models import Conversion, Link
from smartlink.db.repositories.clicks import ClicksRepository
from smartlink.db.repositories.conversions import ConversionsRepository
from smartlink.db.repositories.dead_letters import DeadLettersRepository
from smartlink.db.repositories.links import LinksRepository
from smartlink.pipeline.engine import StepContext
from smartlink.pipeline.errors import TerminalStepError

logger = logging.getLogger(__name__)

RESOLVE_ATTRIBUTION = "resolve_attribution"
WRITE_CONVERSION = "write_conversion"

_CENTS = Decimal("0.01")


def normalize_event_type(conversion_type: str, transaction_type: Optional[str]) -> ConversionEventTypeEnum:
    kind = conversion_type.strip().lower()
    if kind in ("new_subscriber", "subscribe"):
        return ConversionEventTypeEnum.subscribe
    if kind in ("new_transaction", "purchase"):
        tx_type = (transaction_type or "").lower()
        if "rebill" in tx_type or "recurring" in tx_type:
            return ConversionEventTypeEnum.rebill
        return ConversionEventTypeEnum.purchase
    if kind == "click":
        return ConversionEventTypeEnum.click
    raise TerminalStepError(f"Unsupported conversion type: {conversion_type}", reason="unsupported_event_type")


def _ownership(link: Link, *, click_id: Optional[str], attributed_via: str) -> dict[str, Any]:
    return {
        "tenant_id": link.tenant_id,
        "creator_id": link.creator_id,
        "link_id": link.id,
        "link_name": link.name,
        "click_id": click_id,
        "attributed_via": attributed_via,
    }


class ConversionSteps:
    """The two sequential steps: attribute the postback, then persist the conversion."""

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self._session_factory = session_factory

    async def _db(self, fn: Callable[[Session], Any]) -> Any:
        return await run_in_session(self._session_factory, fn)

    async def resolve_attribution(self, ctx: StepContext) -> dict[str, Any]:
        event = ctx.event
        references = [ref for ref in dict.fromkeys([event.external_click_id, event.click_id]) if ref]

        def _resolve(session: Session) -> Optional[dict[str, Any]]:
            clicks = ClicksRepository(session)
            for reference in references:
                row = clicks.get_with_link(reference)
                if row is None:
                    continue
                click, link = row
                if not link.is_active:
                    break
                return _ownership(link, click_id=click.click_id, attributed_via="click")

            link = LinksRepository(session).get_active_by_reference(event.smart_link_id)
            if link is None:
                return None
            return _ownership(link, click_id=None, attributed_via="link")

        ownership = await self._db(_resolve)
        if ownership is not None:
            logger.info(
                "pipeline.attribution_resolved",
                extra={"run_id": ctx.run_id, "link_id": ownership["link_id"], "via": ownership["attributed_via"]},
            )
            return ownership

        detail = f"No click for {event.click_reference} and no active link for {event.smart_link_id}"
        await self.record_dead_letter(ctx, detail, reason="unattributable")
        raise TerminalStepError(detail, reason="unattributable")

    async def write_conversion(self, ctx: StepContext) -> dict[str, Any]:
        event = ctx.event
        ownership = ctx.output(RESOLVE_ATTRIBUTION)
        event_type = normalize_event_type(event.conversion_type, event.transaction_type)

        conversion = Conversion(
            tenant_id=ownership["tenant_id"],
            creator_id=ownership["creator_id"],
            link_id=ownership["link_id"],
            click_id=ownership["click_id"],
            external_event_key=event.external_event_key,
            event_type=event_type,
            transaction_type=event.transaction_type,
            amount_gross=(event.amount_gross or Decimal("0")).quantize(_CENTS),
            amount_net=(event.amount_net or Decimal("0")).quantize(_CENTS),
            currency=settings.META_DEFAULT_CURRENCY,
            fan_identifier=event.fan_of_id,
            fan_username=event.fan_username,
            occurred_at=event.conversion_at,
        )

        def _write(session: Session) -> tuple[dict[str, Any], bool]:
            stored, created = ConversionsRepository(session).get_or_create(conversion)
            return (
                {
                    "conversion_id": stored.id,
                    "event_type": stored.event_type.value,
                    "amount_gross": str(Decimal(stored.amount_gross).quantize(_CENTS)),
                    "amount_net": str(Decimal(stored.amount_net).quantize(_CENTS)),
                    "currency": stored.currency,
                },
                created,
            )

        output, created = await self._db(_write)
        output["created"] = created
        if not created:
            logger.info(
                "pipeline.conversion_already_recorded",
                extra={"run_id": ctx.run_id, "conversion_id": output["conversion_id"]},
            )
        return output

    async def record_dead_letter(self, ctx: StepContext, detail: str, *, reason: str = "attribution_failed") -> None:
        event = ctx.event

        def _record(session: Session) -> None:
            DeadLettersRepository(session).record(
                run_id=ctx.run_id,
                external_event_key=event.external_event_key,
                reason=reason,
                detail=detail,
                event_payload=event.model_dump(mode="json"),
            )

        await self._db(_record)
        logger.error(
            "pipeline.dead_lettered",
            extra={"run_id": ctx.run_id, "reason": reason, "external_event_key": event.external_event_key},
        )
