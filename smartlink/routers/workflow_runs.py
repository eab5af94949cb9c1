from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy.orm import Session

from smartlink.db.deps import get_session
from smartlink.db.repositories.dead_letters import DeadLettersRepository
from smartlink.db.repositories.workflow_runs import WorkflowRunsRepository
from smartlink.pipeline.engine import WorkflowEngine
from smartlink.schemas.workflow_runs import DeadLetterResponse, WorkflowRunResponse, WorkflowStepResponse
from smartlink.security import require_internal_api_token

router = APIRouter(tags=["workflow-runs"], dependencies=[Depends(require_internal_api_token)])


def get_engine(request: Request) -> WorkflowEngine:
    return request.app.state.runtime.engine


def _run_response(repo: WorkflowRunsRepository, run_id: str) -> WorkflowRunResponse:
    run = repo.get(run_id)
    if not run:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Workflow run not found")
    response = WorkflowRunResponse.model_validate(run)
    response.steps = [WorkflowStepResponse.model_validate(step) for step in repo.list_steps(run_id)]
    return response


@router.get("/workflow-runs/{run_id}", response_model=WorkflowRunResponse)
def get_workflow_run(run_id: str, session: Session = Depends(get_session)):
    return _run_response(WorkflowRunsRepository(session), run_id)


@router.post("/workflow-runs/{run_id}/replay", response_model=WorkflowRunResponse)
async def replay_workflow_run(
    run_id: str,
    engine: WorkflowEngine = Depends(get_engine),
    session: Session = Depends(get_session),
):
    summary = await engine.replay_run(run_id)
    if summary is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Workflow run not found")
    session.expire_all()
    return _run_response(WorkflowRunsRepository(session), run_id)


@router.get("/dead-letters", response_model=List[DeadLetterResponse])
def list_dead_letters(
    limit: int = Query(default=100, ge=1, le=500),
    session: Session = Depends(get_session),
):
    return DeadLettersRepository(session).list_unresolved(limit=limit)


@router.post("/dead-letters/{dead_letter_id}/resolve", response_model=DeadLetterResponse)
def resolve_dead_letter(dead_letter_id: str, session: Session = Depends(get_session)):
    dead_letter = DeadLettersRepository(session).resolve(dead_letter_id)
    if not dead_letter:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Dead letter not found")
    return dead_letter
