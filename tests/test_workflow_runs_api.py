from __future__ import annotations

import asyncio

from smartlink.db.base import SessionLocal
from smartlink.db.models import DeadLetterEvent
from smartlink.pipeline.runtime import build_engine
from smartlink.services.postback_ingestion import parse_postback


async def _no_sleep(_delay: float) -> None:
    return None


def _run_unattributable():
    event = parse_postback(
        {"click_id": "nope", "type": "purchase", "link_id": "link_1", "ts": "2026-03-01T12:00:00Z"}
    )
    engine = build_engine(session_factory=SessionLocal, sleep=_no_sleep)
    asyncio.run(engine.run(event))
    return event


def test_admin_routes_require_token(api_client):
    assert api_client.get("/workflow-runs/run_x").status_code == 401
    assert api_client.get("/dead-letters", headers={"Authorization": "Bearer wrong"}).status_code == 403


def test_get_workflow_run_lists_steps(api_client, db_session, admin_headers):
    event = _run_unattributable()

    response = api_client.get(f"/workflow-runs/{event.run_id}", headers=admin_headers)

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "halted"
    steps = {step["step_name"]: step for step in body["steps"]}
    assert list(steps) == [
        "resolve_attribution",
        "write_conversion",
        "notify_ad_platform",
        "send_custom_postback",
        "send_alert",
        "update_counters",
    ]
    assert steps["resolve_attribution"]["status"] == "failed_terminal"
    assert steps["update_counters"]["last_error"] == "upstream step resolve_attribution did not succeed"


def test_get_unknown_workflow_run_is_404(api_client, admin_headers):
    assert api_client.get("/workflow-runs/run_missing", headers=admin_headers).status_code == 404


def test_replay_completes_run_once_link_exists(api_client, db_session, seed_link, admin_headers):
    event = _run_unattributable()
    seed_link()

    response = api_client.post(f"/workflow-runs/{event.run_id}/replay", headers=admin_headers)

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "completed"
    assert all(step["status"] == "succeeded" for step in body["steps"])


def test_dead_letters_can_be_listed_and_resolved(api_client, db_session, admin_headers):
    event = _run_unattributable()

    listed = api_client.get("/dead-letters", headers=admin_headers)
    assert listed.status_code == 200
    [dead_letter] = listed.json()
    assert dead_letter["run_id"] == event.run_id
    assert dead_letter["reason"] == "unattributable"

    resolved = api_client.post(f"/dead-letters/{dead_letter['id']}/resolve", headers=admin_headers)
    assert resolved.status_code == 200
    assert resolved.json()["resolved_at"] is not None

    db_session.expire_all()
    assert db_session.get(DeadLetterEvent, dead_letter["id"]).resolved_at is not None
    assert api_client.get("/dead-letters", headers=admin_headers).json() == []


def test_health_endpoints(api_client):
    assert api_client.get("/health").json() == {"ok": True}
    assert api_client.get("/health/db").json() == {"db": "ok"}
