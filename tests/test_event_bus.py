from __future__ import annotations

import asyncio

import pytest
from temporalio.exceptions import WorkflowAlreadyStartedError
from temporalio.testing import ActivityEnvironment

from smartlink.db.base import SessionLocal, session_scope
from smartlink.db.enums import WorkflowRunStatusEnum
from smartlink.db.models import Conversion, WorkflowRun
from smartlink.db.repositories.workflow_runs import WorkflowRunsRepository
from smartlink.pipeline.bus import InlineEventPublisher, TemporalEventPublisher, workflow_id_for
from smartlink.pipeline.errors import EventPublishError
from smartlink.pipeline.runtime import PipelineRuntime, build_engine
from smartlink.services.postback_ingestion import parse_postback
from smartlink.temporal.activities import conversion_activities
from smartlink.temporal.workflows.conversion_postback import ConversionPostbackWorkflow


class FakeTemporalHandle:
    def __init__(self, workflow_id: str) -> None:
        self.id = workflow_id


class FakeTemporalClient:
    def __init__(self, error: Exception | None = None) -> None:
        self.started: list[dict] = []
        self.error = error

    async def start_workflow(self, *args, **kwargs) -> FakeTemporalHandle:
        if self.error is not None:
            raise self.error
        self.started.append({"args": args, **kwargs})
        return FakeTemporalHandle(kwargs["id"])


def _event():
    return parse_postback(
        {"click_id": "abc123", "type": "new_subscriber", "link_id": "link_1", "net": "75", "ts": "1767225600"}
    )


def _publisher(client: FakeTemporalClient) -> TemporalEventPublisher:
    async def factory():
        return client

    return TemporalEventPublisher(factory, task_queue="test-queue")


def test_temporal_publisher_starts_workflow_keyed_by_run():
    client = FakeTemporalClient()
    event = _event()

    asyncio.run(_publisher(client).publish(event))

    [started] = client.started
    assert started["id"] == workflow_id_for(event.run_id)
    assert started["task_queue"] == "test-queue"
    assert started["args"][0] == ConversionPostbackWorkflow.run
    assert started["args"][1]["external_event_key"] == event.external_event_key
    assert started["args"][1]["amount_net"] == "75"


def test_temporal_publisher_treats_running_workflow_as_delivered():
    event = _event()
    client = FakeTemporalClient(
        error=WorkflowAlreadyStartedError(workflow_id_for(event.run_id), "ConversionPostbackWorkflow")
    )

    asyncio.run(_publisher(client).publish(event))


def test_temporal_publisher_wraps_other_failures():
    client = FakeTemporalClient(error=RuntimeError("connection refused"))

    with pytest.raises(EventPublishError):
        asyncio.run(_publisher(client).publish(_event()))


def test_inline_publisher_runs_engine_in_background(db_session, seed_link):
    seed_link()

    async def no_sleep(_delay: float) -> None:
        return None

    engine = build_engine(session_factory=SessionLocal, sleep=no_sleep)
    publisher = InlineEventPublisher(engine)

    async def scenario():
        await publisher.publish(_event())
        await publisher.drain()

    asyncio.run(scenario())

    db_session.expire_all()
    assert db_session.query(Conversion).count() == 1
    [run] = db_session.query(WorkflowRun).all()
    assert run.status == WorkflowRunStatusEnum.completed


def test_conversion_activity_runs_pipeline(db_session, seed_link, monkeypatch):
    seed_link()

    async def no_sleep(_delay: float) -> None:
        return None

    runtime = PipelineRuntime(engine=build_engine(session_factory=SessionLocal, sleep=no_sleep))
    monkeypatch.setattr(conversion_activities, "_runtime", runtime)
    event = _event()

    env = ActivityEnvironment()
    result = asyncio.run(
        env.run(conversion_activities.process_conversion_postback_activity, event.model_dump(mode="json"))
    )

    assert result["run_id"] == event.run_id
    assert result["status"] == "completed"
    assert result["steps"]["write_conversion"] == "succeeded"

    again = asyncio.run(
        env.run(conversion_activities.process_conversion_postback_activity, event.model_dump(mode="json"))
    )
    assert again["status"] == "completed"
    db_session.expire_all()
    assert db_session.query(Conversion).count() == 1


def test_sweep_resumes_stranded_runs_but_not_in_flight_ones(db_session, seed_link):
    seed_link()

    async def no_sleep(_delay: float) -> None:
        return None

    engine = build_engine(session_factory=SessionLocal, sleep=no_sleep)
    publisher = InlineEventPublisher(engine)
    stranded = _event()
    busy = parse_postback({"click_id": "busy_1", "type": "purchase", "link_id": "link_1", "ts": "1767225600"})
    with session_scope() as session:
        runs = WorkflowRunsRepository(session)
        for event in (stranded, busy):
            runs.get_or_create(
                run_id=event.run_id,
                external_event_key=event.external_event_key,
                event_payload=event.model_dump(mode="json"),
                step_names=engine.step_names,
            )

    async def scenario():
        gate = asyncio.Event()
        publisher.submit(gate.wait(), name=busy.run_id)
        resumed = await publisher.sweep()
        gate.set()
        await publisher.drain()
        return resumed

    resumed = asyncio.run(scenario())

    assert [summary.run_id for summary in resumed] == [stranded.run_id]
    db_session.expire_all()
    assert db_session.get(WorkflowRun, stranded.run_id).status == WorkflowRunStatusEnum.completed
    assert db_session.get(WorkflowRun, busy.run_id).status == WorkflowRunStatusEnum.running


def test_redelivered_webhook_produces_one_run_and_conversion(api_client, db_session, seed_link):
    seed_link()
    publisher = api_client.app.state.event_publisher
    assert isinstance(publisher, InlineEventPublisher)
    params = {"click_id": "abc123", "type": "new_subscriber", "link_id": "link_1", "net": "75", "ts": "1767225600"}

    for _ in range(2):
        response = api_client.get("/webhooks/smart-link", params=params)
        assert response.status_code == 200
        api_client.portal.call(publisher.drain)

    db_session.expire_all()
    assert db_session.query(WorkflowRun).count() == 1
    assert db_session.query(Conversion).count() == 1
    [run] = db_session.query(WorkflowRun).all()
    assert run.status == WorkflowRunStatusEnum.completed
