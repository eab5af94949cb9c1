from __future__ import annotations

import asyncio
import logging

from temporalio.worker import Worker

from smartlink.config import settings
from smartlink.db.base import init_db
from smartlink.pipeline.runtime import build_runtime
from smartlink.temporal.activities.conversion_activities import (
    configure_runtime,
    process_conversion_postback_activity,
)
from smartlink.temporal.client import get_temporal_client
from smartlink.temporal.workflows.conversion_postback import ConversionPostbackWorkflow

logger = logging.getLogger(__name__)


async def main() -> None:
    init_db()
    runtime = build_runtime()
    configure_runtime(runtime)
    client = await get_temporal_client()
    worker = Worker(
        client,
        task_queue=settings.TEMPORAL_TASK_QUEUE,
        workflows=[ConversionPostbackWorkflow],
        activities=[process_conversion_postback_activity],
    )
    logger.info("temporal.worker_started", extra={"task_queue": settings.TEMPORAL_TASK_QUEUE})
    try:
        await worker.run()
    finally:
        await runtime.close()


def run() -> None:
    logging.basicConfig(level=logging.INFO)
    asyncio.run(main())


if __name__ == "__main__":
    run()
