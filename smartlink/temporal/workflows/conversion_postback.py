from __future__ import annotations

from datetime import timedelta
from typing import Any, Dict

from temporalio import workflow
from temporalio.common import RetryPolicy

with workflow.unsafe.imports_passed_through():
    from smartlink.config import settings
    from smartlink.temporal.activities.conversion_activities import process_conversion_postback_activity

ACTIVITY_START_TO_CLOSE = timedelta(seconds=settings.TEMPORAL_ACTIVITY_TIMEOUT_SECONDS)
ACTIVITY_MAX_ATTEMPTS = settings.TEMPORAL_ACTIVITY_MAX_ATTEMPTS


@workflow.defn
class ConversionPostbackWorkflow:
    @workflow.run
    async def run(self, event: Dict[str, Any]) -> Dict[str, Any]:
        result = await workflow.execute_activity(
            process_conversion_postback_activity,
            event,
            start_to_close_timeout=ACTIVITY_START_TO_CLOSE,
            retry_policy=RetryPolicy(
                initial_interval=timedelta(seconds=5),
                backoff_coefficient=2.0,
                maximum_interval=timedelta(minutes=5),
                maximum_attempts=ACTIVITY_MAX_ATTEMPTS,
            ),
        )
        workflow.logger.info(
            "conversion_postback.completed",
            extra={"run_id": result.get("run_id"), "status": result.get("status")},
        )
        return result
