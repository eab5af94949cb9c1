from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, List, Optional, Sequence, Tuple

from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import IntegrityError

from smartlink.db.enums import StepStatusEnum, WorkflowRunStatusEnum
from smartlink.db.models import WorkflowRun, WorkflowStep
from smartlink.db.repositories.base import Repository

CLAIMABLE_STATUSES = (StepStatusEnum.pending, StepStatusEnum.failed_retryable)


class WorkflowRunsRepository(Repository):
    def get(self, run_id: str) -> Optional[WorkflowRun]:
        return self.session.get(WorkflowRun, run_id)

    def get_or_create(
        self,
        *,
        run_id: str,
        external_event_key: str,
        event_payload: dict[str, Any],
        step_names: Sequence[str],
    ) -> Tuple[WorkflowRun, bool]:
        """
        Create the run and its pending step rows, or return the run already recorded for this key.

        Returns (run, created_flag).
        """
        existing = self.get(run_id)
        if existing:
            return existing, False

        run = WorkflowRun(
            id=run_id,
            external_event_key=external_event_key,
            event_payload=event_payload,
            status=WorkflowRunStatusEnum.running,
        )
        self.session.add(run)
        for position, step_name in enumerate(step_names):
            self.session.add(
                WorkflowStep(
                    run_id=run_id,
                    step_name=step_name,
                    position=position,
                    status=StepStatusEnum.pending,
                    attempts=0,
                )
            )
        try:
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            existing = self.get(run_id)
            if existing:
                return existing, False
            raise
        self.session.refresh(run)
        return run, True

    def list_steps(self, run_id: str) -> List[WorkflowStep]:
        stmt = select(WorkflowStep).where(WorkflowStep.run_id == run_id).order_by(WorkflowStep.position.asc())
        return list(self.session.scalars(stmt).all())

    def get_step(self, run_id: str, step_name: str) -> Optional[WorkflowStep]:
        stmt = select(WorkflowStep).where(WorkflowStep.run_id == run_id, WorkflowStep.step_name == step_name)
        return self.session.scalars(stmt).first()

    def claim_step(self, run_id: str, step_name: str, *, owner: str, lease_seconds: int) -> bool:
        """
        Compare-and-set the step into `running` for `owner`.

        Only pending / retryable steps, or running steps whose lease expired, can be claimed.
        """
        now = datetime.now(timezone.utc)
        stmt = (
            update(WorkflowStep)
            .where(
                WorkflowStep.run_id == run_id,
                WorkflowStep.step_name == step_name,
                or_(
                    WorkflowStep.status.in_(CLAIMABLE_STATUSES),
                    and_(
                        WorkflowStep.status == StepStatusEnum.running,
                        WorkflowStep.lease_expires_at < now,
                    ),
                ),
            )
            .values(
                status=StepStatusEnum.running,
                attempts=WorkflowStep.attempts + 1,
                lease_owner=owner,
                lease_expires_at=now + timedelta(seconds=lease_seconds),
                started_at=now,
            )
        )
        result = self.session.execute(stmt)
        self.session.commit()
        return result.rowcount == 1

    def _owned_step_update(self, run_id: str, step_name: str, owner: str):
        return update(WorkflowStep).where(
            WorkflowStep.run_id == run_id,
            WorkflowStep.step_name == step_name,
            WorkflowStep.status == StepStatusEnum.running,
            WorkflowStep.lease_owner == owner,
        )

    def mark_step_succeeded(self, run_id: str, step_name: str, *, owner: str, output: dict[str, Any]) -> bool:
        now = datetime.now(timezone.utc)
        stmt = self._owned_step_update(run_id, step_name, owner).values(
            status=StepStatusEnum.succeeded,
            output=output,
            last_error=None,
            lease_owner=None,
            lease_expires_at=None,
            finished_at=now,
        )
        result = self.session.execute(stmt)
        self.session.commit()
        return result.rowcount == 1

    def mark_step_failed(
        self,
        run_id: str,
        step_name: str,
        *,
        owner: str,
        error: str,
        terminal: bool,
    ) -> bool:
        now = datetime.now(timezone.utc)
        stmt = self._owned_step_update(run_id, step_name, owner).values(
            status=StepStatusEnum.failed_terminal if terminal else StepStatusEnum.failed_retryable,
            last_error=error[:5000],
            lease_owner=None,
            lease_expires_at=None,
            finished_at=now if terminal else None,
        )
        result = self.session.execute(stmt)
        self.session.commit()
        return result.rowcount == 1

    def block_steps(self, run_id: str, step_names: Sequence[str], *, error: str) -> int:
        """Terminally fail steps that can no longer run because an upstream step did not succeed."""
        if not step_names:
            return 0
        now = datetime.now(timezone.utc)
        stmt = (
            update(WorkflowStep)
            .where(
                WorkflowStep.run_id == run_id,
                WorkflowStep.step_name.in_(list(step_names)),
                WorkflowStep.status.in_(CLAIMABLE_STATUSES),
            )
            .values(status=StepStatusEnum.failed_terminal, last_error=error, finished_at=now)
        )
        result = self.session.execute(stmt)
        self.session.commit()
        return result.rowcount

    def set_status(self, run_id: str, status: WorkflowRunStatusEnum) -> Optional[WorkflowRun]:
        run = self.get(run_id)
        if not run:
            return None
        run.status = status
        run.completed_at = None if status == WorkflowRunStatusEnum.running else datetime.now(timezone.utc)
        self.session.commit()
        self.session.refresh(run)
        return run

    def reset_failed_steps(self, run_id: str) -> int:
        """Return failed steps to `pending` for a replay. Succeeded steps are left untouched."""
        stmt = (
            update(WorkflowStep)
            .where(
                WorkflowStep.run_id == run_id,
                WorkflowStep.status.in_((StepStatusEnum.failed_terminal, StepStatusEnum.failed_retryable)),
            )
            .values(status=StepStatusEnum.pending, attempts=0, finished_at=None)
        )
        result = self.session.execute(stmt)
        self.session.commit()
        return result.rowcount

    def list_resumable(self, *, limit: int = 100, after: Optional[str] = None) -> List[WorkflowRun]:
        """
        Running runs, ordered by id, that no worker holds a live step lease on.

        `after` is the last id of the previous page.
        """
        now = datetime.now(timezone.utc)
        live_lease = (
            select(WorkflowStep.id)
            .where(
                WorkflowStep.run_id == WorkflowRun.id,
                WorkflowStep.status == StepStatusEnum.running,
                WorkflowStep.lease_expires_at >= now,
            )
            .exists()
        )
        stmt = select(WorkflowRun).where(WorkflowRun.status == WorkflowRunStatusEnum.running, ~live_lease)
        if after is not None:
            stmt = stmt.where(WorkflowRun.id > after)
        stmt = stmt.order_by(WorkflowRun.id.asc()).limit(limit)
        return list(self.session.scalars(stmt).all())
