from __future__ import annotations

from typing import Any, Dict, Optional

from temporalio import activity

from smartlink.db.enums import WorkflowRunStatusEnum
from smartlink.pipeline.runtime import PipelineRuntime, build_runtime
from smartlink.schemas.postback import PostbackEvent

_runtime: Optional[PipelineRuntime] = None


def configure_runtime(runtime: Optional[PipelineRuntime]) -> None:
    global _runtime
    _runtime = runtime


def get_runtime() -> PipelineRuntime:
    global _runtime
    if _runtime is None:
        _runtime = build_runtime()
    return _runtime


@activity.defn
async def process_conversion_postback_activity(payload: Dict[str, Any]) -> Dict[str, Any]:
    event = PostbackEvent.model_validate(payload)
    info = activity.info()
    activity.logger.info(
        "conversion_postback.activity_started",
        extra={"run_id": event.run_id, "attempt": info.attempt, "workflow_id": info.workflow_id},
    )

    summary = await get_runtime().engine.run(event)
    if summary.status == WorkflowRunStatusEnum.running:
        # Some step is still leased by another worker; Temporal retries and the ledger resumes it.
        raise RuntimeError(f"Workflow run {summary.run_id} has steps still in progress")

    activity.logger.info(
        "conversion_postback.activity_finished",
        extra={"run_id": summary.run_id, "status": summary.status.value},
    )
    return {
        "run_id": summary.run_id,
        "status": summary.status.value,
        "steps": {name: outcome.status for name, outcome in summary.steps.items()},
    }
