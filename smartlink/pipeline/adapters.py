from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import timezone
from decimal import Decimal
from typing import Any, Callable, Optional

import httpx
from sqlalchemy.orm import Session

from smartlink.config import settings
from smartlink.db.base import run_in_session
from smartlink.db.enums import ConversionEventTypeEnum, SideEffectStatusEnum
from smartlink.db.models import Conversion, Link, Tenant
from smartlink.db.repositories.conversions import ConversionsRepository
from smartlink.db.repositories.links import LinksRepository
from smartlink.pipeline.engine import StepContext, StepSpec
from smartlink.pipeline.errors import RetryableStepError, TerminalStepError
from smartlink.pipeline.steps import RESOLVE_ATTRIBUTION, WRITE_CONVERSION
from smartlink.services.alerts import AlertDeliveryError, SlackAlertClient, format_high_value_alert
from smartlink.services.counters import CounterStore
from smartlink.services.meta_conversions import (
    MetaConversionsClient,
    MetaConversionsError,
    build_conversion_event,
)
from smartlink.services.postback_client import PostbackDeliveryError, deliver_postback, render_postback_url

logger = logging.getLogger(__name__)

_FINAL_STATUSES = (SideEffectStatusEnum.sent, SideEffectStatusEnum.skipped)


@dataclass
class AdapterResult:
    status: SideEffectStatusEnum
    detail: Optional[str] = None


class SideEffectAdapter(ABC):
    """
    One independent consumer of a persisted conversion.

    Subclasses implement `send`. The adapter records its outcome only in its own status column
    on the conversion, and does not send again once that column says sent or skipped.
    """

    name: str = ""
    status_field: str = ""

    def __init__(self, session_factory: Callable[[], Session], *, max_attempts: int | None = None) -> None:
        self._session_factory = session_factory
        self.max_attempts = max_attempts or settings.STEP_MAX_ATTEMPTS

    async def _db(self, fn: Callable[[Session], Any]) -> Any:
        return await run_in_session(self._session_factory, fn)

    @abstractmethod
    async def send(self, conversion: Conversion, ownership: dict[str, Any]) -> AdapterResult:
        """Deliver the side effect for one conversion and report sent or skipped."""

    async def _load_conversion(self, conversion_id: str) -> Conversion:
        conversion = await self._db(lambda session: ConversionsRepository(session).get(conversion_id))
        if conversion is None:
            raise TerminalStepError(f"Conversion {conversion_id} not found")
        return conversion

    async def _load_link_and_tenant(self, link_id: str) -> tuple[Optional[Link], Optional[Tenant]]:
        def _load(session: Session) -> tuple[Optional[Link], Optional[Tenant]]:
            links = LinksRepository(session)
            link = links.get(link_id)
            tenant = links.get_tenant(link.tenant_id) if link else None
            return link, tenant

        return await self._db(_load)

    async def mark(self, conversion_id: str, status: SideEffectStatusEnum) -> None:
        await self._db(
            lambda session: ConversionsRepository(session).mark_side_effect(
                conversion_id, field=self.status_field, status=status
            )
        )

    async def __call__(self, ctx: StepContext) -> dict[str, Any]:
        written = ctx.output(WRITE_CONVERSION)
        ownership = {
            **ctx.output(RESOLVE_ATTRIBUTION),
            "posted_click_id": ctx.event.click_id,
            "click_reference": ctx.event.click_reference,
            "external_click_id": ctx.event.external_click_id,
        }
        conversion = await self._load_conversion(written["conversion_id"])

        existing = getattr(conversion, self.status_field)
        if existing in _FINAL_STATUSES:
            return {"status": existing.value, "detail": "already recorded"}

        result = await self.send(conversion, ownership)
        await self.mark(conversion.id, result.status)
        extra = {"run_id": ctx.run_id, "adapter": self.name, "status": result.status.value, "detail": result.detail}
        if result.status == SideEffectStatusEnum.skipped:
            logger.info("pipeline.side_effect_skipped", extra=extra)
        else:
            logger.info("pipeline.side_effect_sent", extra=extra)
        return {"status": result.status.value, "detail": result.detail}

    async def on_terminal_failure(self, ctx: StepContext, error: str) -> None:
        written = ctx.outputs.get(WRITE_CONVERSION)
        if not written:
            return
        await self.mark(written["conversion_id"], SideEffectStatusEnum.failed)


class AdPlatformNotifier(SideEffectAdapter):
    name = "notify_ad_platform"
    status_field = "ad_platform_status"

    def __init__(
        self,
        session_factory: Callable[[], Session],
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        max_attempts: int | None = None,
    ) -> None:
        super().__init__(session_factory, max_attempts=max_attempts)
        self.transport = transport

    async def send(self, conversion: Conversion, ownership: dict[str, Any]) -> AdapterResult:
        _, tenant = await self._load_link_and_tenant(conversion.link_id)
        if tenant is None or not tenant.meta_pixel_id or not tenant.meta_access_token:
            return AdapterResult(SideEffectStatusEnum.skipped, "ad platform is not configured for tenant")

        client = MetaConversionsClient.for_tenant(
            pixel_id=tenant.meta_pixel_id,
            access_token=tenant.meta_access_token,
            transport=self.transport,
        )
        event = build_conversion_event(
            event_id=conversion.id,
            event_type=conversion.event_type,
            event_time=conversion.occurred_at,
            click_reference=ownership["click_reference"],
            value=Decimal(conversion.amount_gross),
            currency=conversion.currency,
        )
        try:
            response = await client.send_events([event])
        except MetaConversionsError as exc:
            raise RetryableStepError(str(exc)) from exc
        return AdapterResult(SideEffectStatusEnum.sent, f"events_received={response.get('events_received')}")


class CustomPostbackSender(SideEffectAdapter):
    name = "send_custom_postback"
    status_field = "custom_postback_status"

    def __init__(
        self,
        session_factory: Callable[[], Session],
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        max_attempts: int | None = None,
    ) -> None:
        super().__init__(session_factory, max_attempts=max_attempts)
        self.transport = transport

    async def send(self, conversion: Conversion, ownership: dict[str, Any]) -> AdapterResult:
        link, _ = await self._load_link_and_tenant(conversion.link_id)
        if link is None or not link.postback_url:
            return AdapterResult(SideEffectStatusEnum.skipped, "no postback url configured")

        net = Decimal(conversion.amount_net)
        url = render_postback_url(
            link.postback_url,
            {
                "click_id": ownership["posted_click_id"],
                "external_click_id": ownership.get("external_click_id") or ownership["click_reference"],
                "amount": net,
                "net": net,
                "gross": Decimal(conversion.amount_gross),
                "fan_id": conversion.fan_identifier or "",
                "conversion_id": conversion.id,
                "event_type": conversion.event_type.value,
            },
        )
        try:
            status_code = await deliver_postback(url, transport=self.transport)
        except PostbackDeliveryError as exc:
            raise RetryableStepError(str(exc)) from exc
        return AdapterResult(SideEffectStatusEnum.sent, f"status_code={status_code}")


class AlertNotifier(SideEffectAdapter):
    name = "send_alert"
    status_field = "alert_status"

    def __init__(
        self,
        session_factory: Callable[[], Session],
        *,
        client: Optional[SlackAlertClient],
        threshold: Decimal | None = None,
        max_attempts: int | None = None,
    ) -> None:
        super().__init__(session_factory, max_attempts=max_attempts or settings.ALERT_MAX_ATTEMPTS)
        self.client = client
        self.threshold = settings.HIGH_VALUE_ALERT_THRESHOLD if threshold is None else threshold

    async def send(self, conversion: Conversion, ownership: dict[str, Any]) -> AdapterResult:
        link, tenant = await self._load_link_and_tenant(conversion.link_id)
        threshold = self.threshold
        if tenant is not None and tenant.high_value_alert_threshold is not None:
            threshold = Decimal(tenant.high_value_alert_threshold)

        net = Decimal(conversion.amount_net)
        if net < threshold:
            return AdapterResult(SideEffectStatusEnum.skipped, f"below threshold {threshold}")
        if self.client is None:
            return AdapterResult(SideEffectStatusEnum.skipped, "alert webhook is not configured")

        text = format_high_value_alert(
            amount_net=net,
            currency=conversion.currency,
            event_type=conversion.event_type.value,
            link_name=link.name if link else ownership.get("link_name") or conversion.link_id,
            fan_username=conversion.fan_username,
            click_id=conversion.click_id,
        )
        try:
            await self.client.post_message(text)
        except AlertDeliveryError as exc:
            raise RetryableStepError(str(exc)) from exc
        return AdapterResult(SideEffectStatusEnum.sent, f"net {net} >= {threshold}")


class CounterUpdater(SideEffectAdapter):
    name = "update_counters"
    status_field = "counters_status"

    def __init__(
        self,
        session_factory: Callable[[], Session],
        *,
        store: Optional[CounterStore],
        max_attempts: int | None = None,
    ) -> None:
        super().__init__(session_factory, max_attempts=max_attempts)
        self.store = store

    async def send(self, conversion: Conversion, ownership: dict[str, Any]) -> AdapterResult:
        net = Decimal(conversion.amount_net)
        if self.store is not None:
            occurred_at = conversion.occurred_at
            if occurred_at.tzinfo is not None:
                occurred_at = occurred_at.astimezone(timezone.utc)
            await self.store.record_conversion(
                tenant_id=conversion.tenant_id,
                day=occurred_at.date(),
                revenue=net,
                is_subscriber=conversion.event_type == ConversionEventTypeEnum.subscribe,
            )

        revenue_cents = int((net * 100).to_integral_value())
        await self._db(
            lambda session: LinksRepository(session).increment_conversion_totals(
                conversion.link_id, revenue_cents=revenue_cents
            )
        )
        detail = "daily counters and link totals" if self.store is not None else "link totals only"
        return AdapterResult(SideEffectStatusEnum.sent, detail)


def adapter_step(adapter: SideEffectAdapter, *, timeout_seconds: float | None = None) -> StepSpec:
    return StepSpec(
        name=adapter.name,
        fn=adapter,
        max_attempts=adapter.max_attempts,
        timeout_seconds=timeout_seconds or settings.STEP_TIMEOUT_SECONDS,
        on_terminal_failure=adapter.on_terminal_failure,
    )
