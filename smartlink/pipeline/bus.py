from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Coroutine, Optional, Protocol

from temporalio.client import Client
from temporalio.exceptions import WorkflowAlreadyStartedError

from smartlink.config import settings
from smartlink.pipeline.engine import RunSummary, WorkflowEngine
from smartlink.pipeline.errors import EventPublishError
from smartlink.schemas.postback import PostbackEvent
from smartlink.temporal.workflows.conversion_postback import ConversionPostbackWorkflow

logger = logging.getLogger(__name__)


def workflow_id_for(run_id: str) -> str:
    return f"conversion-postback-{run_id}"


class EventPublisher(Protocol):
    async def publish(self, event: PostbackEvent) -> None: ...


class TemporalEventPublisher:
    """Hands each conversion to a Temporal workflow keyed by its run id."""

    def __init__(self, client_factory: Callable[[], Awaitable[Client]], *, task_queue: str | None = None) -> None:
        self._client_factory = client_factory
        self.task_queue = task_queue or settings.TEMPORAL_TASK_QUEUE

    async def publish(self, event: PostbackEvent) -> None:
        workflow_id = workflow_id_for(event.run_id)
        try:
            client = await self._client_factory()
            await client.start_workflow(
                ConversionPostbackWorkflow.run,
                event.model_dump(mode="json"),
                id=workflow_id,
                task_queue=self.task_queue,
            )
        except WorkflowAlreadyStartedError:
            logger.info("event_bus.duplicate_delivery", extra={"run_id": event.run_id, "workflow_id": workflow_id})
            return
        except Exception as exc:
            logger.error(
                "event_bus.publish_failed",
                extra={"run_id": event.run_id, "workflow_id": workflow_id, "error": str(exc)},
            )
            raise EventPublishError(f"Failed to publish conversion event {event.run_id}") from exc
        logger.info("event_bus.published", extra={"run_id": event.run_id, "workflow_id": workflow_id})


class InlineEventPublisher:
    """Runs the engine as a background task on the serving event loop."""

    def __init__(self, engine: WorkflowEngine) -> None:
        self.engine = engine
        self._tasks: set[asyncio.Task] = set()
        self._sweeper: Optional[asyncio.Task] = None

    def in_flight_run_ids(self) -> set[str]:
        return {task.get_name() for task in self._tasks}

    async def sweep(self) -> list[RunSummary]:
        """Re-drive stranded `running` runs, skipping the ones this process is executing."""
        return await self.engine.resume_incomplete_runs(skip=self.in_flight_run_ids())

    async def _sweep_forever(self, interval_seconds: float) -> None:
        while True:
            try:
                resumed = await self.sweep()
            except Exception:
                logger.exception("event_bus.sweep_failed")
            else:
                if resumed:
                    logger.info("event_bus.sweep_resumed", extra={"runs": len(resumed)})
            await asyncio.sleep(interval_seconds)

    def start_sweeper(self, interval_seconds: float) -> None:
        if self._sweeper is None:
            self._sweeper = asyncio.get_running_loop().create_task(
                self._sweep_forever(interval_seconds), name="run-sweeper"
            )

    async def stop_sweeper(self) -> None:
        sweeper, self._sweeper = self._sweeper, None
        if sweeper is None:
            return
        sweeper.cancel()
        await asyncio.gather(sweeper, return_exceptions=True)

    def submit(self, coro: Coroutine[Any, Any, Any], *, name: str) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    async def publish(self, event: PostbackEvent) -> None:
        coro = self.engine.run(event)
        try:
            self.submit(coro, name=event.run_id)
        except RuntimeError as exc:
            coro.close()
            raise EventPublishError(f"Failed to schedule conversion event {event.run_id}") from exc

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.warning("event_bus.inline_run_cancelled", extra={"run_id": task.get_name()})
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "event_bus.inline_run_failed",
                extra={"run_id": task.get_name(), "error": repr(exc)},
            )

    async def drain(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
