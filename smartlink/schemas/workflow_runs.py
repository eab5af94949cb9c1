from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict

from smartlink.db.enums import StepStatusEnum, WorkflowRunStatusEnum


class WorkflowStepResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    step_name: str
    status: StepStatusEnum
    attempts: int
    last_error: Optional[str] = None
    output: Optional[dict[str, Any]] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None


class WorkflowRunResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    external_event_key: str
    status: WorkflowRunStatusEnum
    event_payload: dict[str, Any]
    created_at: datetime
    completed_at: Optional[datetime] = None
    steps: list[WorkflowStepResponse] = []


class DeadLetterResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    run_id: str
    external_event_key: str
    reason: str
    detail: Optional[str] = None
    event_payload: dict[str, Any]
    created_at: datetime
    resolved_at: Optional[datetime] = None
