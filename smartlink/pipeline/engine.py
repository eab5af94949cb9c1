from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Awaitable, Callable, Container, Mapping, Optional, Sequence
from uuid import uuid4

from sqlalchemy.orm import Session

from smartlink.config import settings
from smartlink.db.base import run_in_session
from smartlink.db.enums import StepStatusEnum, WorkflowRunStatusEnum
from smartlink.db.repositories.workflow_runs import WorkflowRunsRepository
from smartlink.pipeline.errors import TerminalStepError
from smartlink.schemas.postback import PostbackEvent

logger = logging.getLogger(__name__)

STEP_IN_PROGRESS = "in_progress"

StepFn = Callable[["StepContext"], Awaitable[dict[str, Any]]]
TerminalHook = Callable[["StepContext", str], Awaitable[None]]


@dataclass(frozen=True)
class StepSpec:
    name: str
    fn: StepFn
    max_attempts: int = 3
    timeout_seconds: float = 15.0
    on_terminal_failure: Optional[TerminalHook] = None


@dataclass
class StepContext:
    """What a step sees: the run, the event, and read-only outputs of steps that already succeeded."""

    run_id: str
    event: PostbackEvent
    outputs: Mapping[str, dict[str, Any]]

    def output(self, step_name: str) -> dict[str, Any]:
        try:
            return self.outputs[step_name]
        except KeyError as exc:
            raise TerminalStepError(f"Output of step {step_name} is not available") from exc


@dataclass
class StepOutcome:
    name: str
    status: str
    attempts: int = 0
    output: Optional[dict[str, Any]] = None
    error: Optional[str] = None
    executed: bool = False

    @property
    def succeeded(self) -> bool:
        return self.status == StepStatusEnum.succeeded.value

    @property
    def finished(self) -> bool:
        return self.status in (StepStatusEnum.succeeded.value, StepStatusEnum.failed_terminal.value)


@dataclass
class RunSummary:
    run_id: str
    status: WorkflowRunStatusEnum
    created: bool
    steps: dict[str, StepOutcome] = field(default_factory=dict)


class WorkflowEngine:
    """
    Database-backed step runner for the conversion pipeline.

    Every step has a row in the workflow_steps ledger. A step executes only after it was claimed
    with a conditional UPDATE, and a succeeded step is never executed again; its stored output is
    reused. Sequential steps run in order, then the fan-out steps run concurrently. Database work
    happens in worker threads with short-lived sessions so no session is held across awaits.
    """

    def __init__(
        self,
        *,
        session_factory: Callable[[], Session],
        sequential_steps: Sequence[StepSpec],
        fanout_steps: Sequence[StepSpec],
        lease_seconds: int | None = None,
        retry_base_delay: float | None = None,
        retry_max_delay: float | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        names = [spec.name for spec in (*sequential_steps, *fanout_steps)]
        if len(names) != len(set(names)):
            raise ValueError("Step names must be unique within a workflow.")
        self._session_factory = session_factory
        self.sequential_steps = list(sequential_steps)
        self.fanout_steps = list(fanout_steps)
        self.lease_seconds = lease_seconds or settings.STEP_LEASE_SECONDS
        self.retry_base_delay = (
            settings.STEP_RETRY_BASE_DELAY_SECONDS if retry_base_delay is None else retry_base_delay
        )
        self.retry_max_delay = settings.STEP_RETRY_MAX_DELAY_SECONDS if retry_max_delay is None else retry_max_delay
        self._sleep = sleep

    @property
    def step_names(self) -> list[str]:
        return [spec.name for spec in (*self.sequential_steps, *self.fanout_steps)]

    async def _db(self, fn: Callable[[WorkflowRunsRepository], Any]) -> Any:
        return await run_in_session(self._session_factory, lambda session: fn(WorkflowRunsRepository(session)))

    def backoff_delay(self, attempt: int) -> float:
        return min(self.retry_base_delay * (2 ** max(attempt - 1, 0)), self.retry_max_delay)

    async def run(self, event: PostbackEvent) -> RunSummary:
        run, created = await self._db(
            lambda repo: repo.get_or_create(
                run_id=event.run_id,
                external_event_key=event.external_event_key,
                event_payload=event.model_dump(mode="json"),
                step_names=self.step_names,
            )
        )
        if not created and run.status != WorkflowRunStatusEnum.running:
            logger.info(
                "pipeline.run_already_finished",
                extra={"run_id": run.id, "status": run.status.value},
            )
            return await self.summarize(run.id, created=False)

        logger.info("pipeline.run_started", extra={"run_id": run.id, "run_created": created})
        outputs: dict[str, dict[str, Any]] = {}
        context = StepContext(run_id=run.id, event=event, outputs=MappingProxyType(outputs))
        outcomes: dict[str, StepOutcome] = {}

        for index, spec in enumerate(self.sequential_steps):
            outcome = await self._execute_step(spec, context, outputs)
            outcomes[spec.name] = outcome
            if outcome.succeeded:
                continue
            if outcome.status == STEP_IN_PROGRESS:
                logger.info(
                    "pipeline.run_owned_elsewhere",
                    extra={"run_id": run.id, "step": spec.name},
                )
                return RunSummary(run_id=run.id, status=WorkflowRunStatusEnum.running, created=created, steps=outcomes)
            return await self._halt(run.id, created, spec.name, index, outcomes)

        fanout = await asyncio.gather(
            *(self._execute_step(spec, context, outputs) for spec in self.fanout_steps),
            return_exceptions=True,
        )
        for spec, result in zip(self.fanout_steps, fanout):
            if isinstance(result, BaseException):
                logger.error(
                    "pipeline.fanout_step_crashed",
                    extra={"run_id": run.id, "step": spec.name, "error": repr(result)},
                )
                outcomes[spec.name] = StepOutcome(name=spec.name, status=STEP_IN_PROGRESS, error=repr(result))
            else:
                outcomes[spec.name] = result

        if not all(outcome.finished for outcome in outcomes.values()):
            return RunSummary(run_id=run.id, status=WorkflowRunStatusEnum.running, created=created, steps=outcomes)

        status = (
            WorkflowRunStatusEnum.completed
            if all(outcome.succeeded for outcome in outcomes.values())
            else WorkflowRunStatusEnum.completed_with_failures
        )
        await self._db(lambda repo: repo.set_status(run.id, status))
        logger.info("pipeline.run_finished", extra={"run_id": run.id, "status": status.value})
        return RunSummary(run_id=run.id, status=status, created=created, steps=outcomes)

    async def _halt(
        self,
        run_id: str,
        created: bool,
        failed_step: str,
        index: int,
        outcomes: dict[str, StepOutcome],
    ) -> RunSummary:
        blocked = [spec.name for spec in self.sequential_steps[index + 1 :]] + [
            spec.name for spec in self.fanout_steps
        ]
        error = f"upstream step {failed_step} did not succeed"
        await self._db(lambda repo: repo.block_steps(run_id, blocked, error=error))
        for name in blocked:
            outcomes[name] = StepOutcome(name=name, status=StepStatusEnum.failed_terminal.value, error=error)
        await self._db(lambda repo: repo.set_status(run_id, WorkflowRunStatusEnum.halted))
        logger.warning("pipeline.run_halted", extra={"run_id": run_id, "step": failed_step})
        return RunSummary(run_id=run_id, status=WorkflowRunStatusEnum.halted, created=created, steps=outcomes)

    async def _execute_step(
        self,
        spec: StepSpec,
        context: StepContext,
        outputs: dict[str, dict[str, Any]],
    ) -> StepOutcome:
        run_id = context.run_id
        while True:
            step = await self._db(lambda repo: repo.get_step(run_id, spec.name))
            if step is None:
                return StepOutcome(
                    name=spec.name,
                    status=StepStatusEnum.failed_terminal.value,
                    error="step is not registered for this run",
                )
            if step.status == StepStatusEnum.succeeded:
                outputs[spec.name] = step.output or {}
                return StepOutcome(
                    name=spec.name,
                    status=StepStatusEnum.succeeded.value,
                    attempts=step.attempts,
                    output=step.output,
                )
            if step.status == StepStatusEnum.failed_terminal:
                return StepOutcome(
                    name=spec.name,
                    status=StepStatusEnum.failed_terminal.value,
                    attempts=step.attempts,
                    error=step.last_error,
                )

            owner = uuid4().hex
            claimed = await self._db(
                lambda repo: repo.claim_step(run_id, spec.name, owner=owner, lease_seconds=self.lease_seconds)
            )
            if not claimed:
                return StepOutcome(name=spec.name, status=STEP_IN_PROGRESS, attempts=step.attempts)

            attempt = step.attempts + 1
            if attempt > spec.max_attempts:
                # A crash can leave the last allowed attempt running with an expired lease.
                error = step.last_error or "attempt limit reached"
                return await self._fail(spec, context, owner=owner, attempt=attempt, error=error, terminal=True)

            try:
                output = await asyncio.wait_for(spec.fn(context), timeout=spec.timeout_seconds)
            except TerminalStepError as exc:
                return await self._fail(spec, context, owner=owner, attempt=attempt, error=str(exc), terminal=True)
            except asyncio.TimeoutError:
                error = f"step timed out after {spec.timeout_seconds}s"
                terminal = attempt >= spec.max_attempts
                outcome = await self._fail(spec, context, owner=owner, attempt=attempt, error=error, terminal=terminal)
            except Exception as exc:
                error = f"{type(exc).__name__}: {exc}"
                terminal = attempt >= spec.max_attempts
                outcome = await self._fail(spec, context, owner=owner, attempt=attempt, error=error, terminal=terminal)
            else:
                output = output or {}
                recorded = await self._db(
                    lambda repo: repo.mark_step_succeeded(run_id, spec.name, owner=owner, output=output)
                )
                if not recorded:
                    logger.warning(
                        "pipeline.step_lease_lost",
                        extra={"run_id": run_id, "step": spec.name, "attempt": attempt},
                    )
                    return StepOutcome(name=spec.name, status=STEP_IN_PROGRESS, attempts=attempt, executed=True)
                outputs[spec.name] = output
                logger.info(
                    "pipeline.step_succeeded",
                    extra={"run_id": run_id, "step": spec.name, "attempt": attempt},
                )
                return StepOutcome(
                    name=spec.name,
                    status=StepStatusEnum.succeeded.value,
                    attempts=attempt,
                    output=output,
                    executed=True,
                )

            if outcome.finished:
                return outcome
            delay = self.backoff_delay(attempt)
            logger.warning(
                "pipeline.step_retry_scheduled",
                extra={"run_id": run_id, "step": spec.name, "attempt": attempt, "delay_seconds": delay},
            )
            await self._sleep(delay)

    async def _fail(
        self,
        spec: StepSpec,
        context: StepContext,
        *,
        owner: str,
        attempt: int,
        error: str,
        terminal: bool,
    ) -> StepOutcome:
        run_id = context.run_id
        await self._db(
            lambda repo: repo.mark_step_failed(run_id, spec.name, owner=owner, error=error, terminal=terminal)
        )
        extra = {"run_id": run_id, "step": spec.name, "attempt": attempt, "error": error}
        if not terminal:
            logger.warning("pipeline.step_failed_retryable", extra=extra)
            return StepOutcome(
                name=spec.name,
                status=StepStatusEnum.failed_retryable.value,
                attempts=attempt,
                error=error,
                executed=True,
            )

        logger.error("pipeline.step_failed_terminal", extra=extra)
        if spec.on_terminal_failure is not None:
            try:
                await spec.on_terminal_failure(context, error)
            except Exception:
                logger.exception("pipeline.terminal_hook_failed", extra={"run_id": run_id, "step": spec.name})
        return StepOutcome(
            name=spec.name,
            status=StepStatusEnum.failed_terminal.value,
            attempts=attempt,
            error=error,
            executed=True,
        )

    async def summarize(self, run_id: str, *, created: bool = False) -> RunSummary:
        run = await self._db(lambda repo: repo.get(run_id))
        if run is None:
            raise LookupError(f"Workflow run {run_id} not found")
        steps = await self._db(lambda repo: repo.list_steps(run_id))
        return RunSummary(
            run_id=run.id,
            status=run.status,
            created=created,
            steps={
                step.step_name: StepOutcome(
                    name=step.step_name,
                    status=step.status.value,
                    attempts=step.attempts,
                    output=step.output,
                    error=step.last_error,
                )
                for step in steps
            },
        )

    async def resume_incomplete_runs(
        self,
        *,
        page_size: int = 100,
        skip: Container[str] = (),
    ) -> list[RunSummary]:
        """
        Re-drive runs left `running`, e.g. after a process crash.

        Pages through every such run. Runs with a step under a live lease are left to their
        owner; once that lease expires a later pass picks the run up. Run ids in `skip` are
        being executed by this process already.
        """
        summaries: list[RunSummary] = []
        after: Optional[str] = None
        while True:
            cursor = after
            runs = await self._db(lambda repo: repo.list_resumable(limit=page_size, after=cursor))
            for run in runs:
                if run.id in skip:
                    continue
                event = PostbackEvent.model_validate(run.event_payload)
                try:
                    summaries.append(await self.run(event))
                except Exception:
                    logger.exception("pipeline.resume_failed", extra={"run_id": run.id})
            if len(runs) < page_size:
                break
            after = runs[-1].id
        return summaries

    async def replay_run(self, run_id: str) -> Optional[RunSummary]:
        """Return failed steps of a run to pending and execute it again. Succeeded steps are reused."""
        run = await self._db(lambda repo: repo.get(run_id))
        if run is None:
            return None
        reset = await self._db(lambda repo: repo.reset_failed_steps(run_id))
        await self._db(lambda repo: repo.set_status(run_id, WorkflowRunStatusEnum.running))
        logger.info("pipeline.run_replayed", extra={"run_id": run_id, "reset_steps": reset})
        event = PostbackEvent.model_validate(run.event_payload)
        return await self.run(event)
