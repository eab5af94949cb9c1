from __future__ import annotations

import asyncio
import functools
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

import httpx
from sqlalchemy.orm import Session

from smartlink.config import settings
from smartlink.db.base import SessionLocal
from smartlink.pipeline.adapters import (
    AdPlatformNotifier,
    AlertNotifier,
    CounterUpdater,
    CustomPostbackSender,
    adapter_step,
)
from smartlink.pipeline.engine import StepSpec, WorkflowEngine
from smartlink.pipeline.steps import RESOLVE_ATTRIBUTION, WRITE_CONVERSION, ConversionSteps
from smartlink.services.alerts import SlackAlertClient
from smartlink.services.counters import CounterStore

logger = logging.getLogger(__name__)


@dataclass
class PipelineRuntime:
    engine: WorkflowEngine
    counter_store: Optional[CounterStore] = None

    async def close(self) -> None:
        if self.counter_store is not None:
            await self.counter_store.close()


def build_engine(
    *,
    session_factory: Callable[[], Session] = SessionLocal,
    transport: httpx.AsyncBaseTransport | None = None,
    alert_client: Optional[SlackAlertClient] = None,
    counter_store: Optional[CounterStore] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> WorkflowEngine:
    steps = ConversionSteps(session_factory)
    sequential = [
        StepSpec(
            name=RESOLVE_ATTRIBUTION,
            fn=steps.resolve_attribution,
            max_attempts=settings.STEP_MAX_ATTEMPTS,
            timeout_seconds=settings.STEP_TIMEOUT_SECONDS,
            on_terminal_failure=functools.partial(steps.record_dead_letter, reason="attribution_failed"),
        ),
        StepSpec(
            name=WRITE_CONVERSION,
            fn=steps.write_conversion,
            max_attempts=settings.STEP_MAX_ATTEMPTS,
            timeout_seconds=settings.STEP_TIMEOUT_SECONDS,
            on_terminal_failure=functools.partial(steps.record_dead_letter, reason="conversion_write_failed"),
        ),
    ]
    fanout = [
        adapter_step(AdPlatformNotifier(session_factory, transport=transport)),
        adapter_step(CustomPostbackSender(session_factory, transport=transport)),
        adapter_step(AlertNotifier(session_factory, client=alert_client)),
        adapter_step(CounterUpdater(session_factory, store=counter_store)),
    ]
    return WorkflowEngine(
        session_factory=session_factory,
        sequential_steps=sequential,
        fanout_steps=fanout,
        sleep=sleep,
    )


def build_runtime(*, session_factory: Callable[[], Session] = SessionLocal) -> PipelineRuntime:
    """Wire the engine from settings: Slack alerts and redis counters only when configured."""
    alert_client = SlackAlertClient.from_settings()
    counter_store = CounterStore.from_settings()
    if alert_client is None:
        logger.info("pipeline.alerts_disabled")
    if counter_store is None:
        logger.info("pipeline.counter_store_disabled")
    engine = build_engine(
        session_factory=session_factory,
        alert_client=alert_client,
        counter_store=counter_store,
    )
    return PipelineRuntime(engine=engine, counter_store=counter_store)
