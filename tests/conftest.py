import os
import sys
from datetime import date
from decimal import Decimal
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import delete

ROOT_DIR = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT_DIR))

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_smartlink.db")
os.environ.setdefault("EVENT_BUS_BACKEND", "inline")
os.environ.setdefault("INTERNAL_API_TOKEN", "internal_token")
os.environ.setdefault("CLICK_COOKIE_SECRET", "test_cookie_secret")
os.environ.setdefault("CLICK_COOKIE_SECURE", "false")
os.environ.setdefault("PUBLIC_BASE_URL", "https://links.example.com")
os.environ.setdefault("STEP_RETRY_BASE_DELAY_SECONDS", "0")
os.environ.setdefault("STEP_RETRY_MAX_DELAY_SECONDS", "0")
os.environ.setdefault("RUN_SWEEP_INTERVAL_SECONDS", "3600")

from smartlink.db.base import SessionLocal, init_db  # noqa: E402
from smartlink.db.models import (  # noqa: E402
    Click,
    Conversion,
    DeadLetterEvent,
    LandingPage,
    Link,
    Tenant,
    WorkflowRun,
    WorkflowStep,
)

_TABLES = (WorkflowStep, WorkflowRun, DeadLetterEvent, Conversion, Click, LandingPage, Link, Tenant)


def _clear(session) -> None:
    for model in _TABLES:
        session.execute(delete(model))
    session.commit()


@pytest.fixture()
def db_session():
    init_db()
    session = SessionLocal()
    _clear(session)
    try:
        yield session
    finally:
        session.rollback()
        _clear(session)
        session.close()


@pytest.fixture()
def seed_link(db_session):
    def _seed(
        *,
        link_id: str = "link_1",
        tenant_id: str = "tenant_1",
        creator_id: str = "creator_1",
        tracking_url: str = "https://offers.example.com/fan?ref=ad",
        postback_url: str | None = None,
        is_active: bool = True,
        meta_pixel_id: str | None = None,
        meta_access_token: str | None = None,
        alert_threshold: Decimal | None = None,
        external_link_id: str | None = None,
    ) -> Link:
        if db_session.get(Tenant, tenant_id) is None:
            db_session.add(
                Tenant(
                    id=tenant_id,
                    name="Tenant One",
                    meta_pixel_id=meta_pixel_id,
                    meta_access_token=meta_access_token,
                    high_value_alert_threshold=alert_threshold,
                )
            )
        link = Link(
            id=link_id,
            tenant_id=tenant_id,
            creator_id=creator_id,
            name="Spring promo",
            slug=f"slug-{link_id}",
            external_link_id=external_link_id,
            tracking_url=tracking_url,
            postback_url=postback_url,
            is_active=is_active,
        )
        db_session.add(link)
        db_session.commit()
        return link

    return _seed


@pytest.fixture()
def seed_click(db_session):
    def _seed(link: Link, click_id: str = "click_abc") -> Click:
        click = Click(
            click_id=click_id,
            tenant_id=link.tenant_id,
            link_id=link.id,
            device_type="mobile",
            browser="Safari",
        )
        db_session.add(click)
        db_session.commit()
        return click

    return _seed


class FakeCounterStore:
    def __init__(self) -> None:
        self.recorded: list[dict] = []

    async def record_conversion(self, *, tenant_id: str, day: date, revenue: Decimal, is_subscriber: bool) -> None:
        self.recorded.append(
            {"tenant_id": tenant_id, "day": day, "revenue": revenue, "is_subscriber": is_subscriber}
        )

    async def close(self) -> None:
        return None


@pytest.fixture()
def counter_store():
    return FakeCounterStore()


class RecordingPublisher:
    def __init__(self) -> None:
        self.events = []

    async def publish(self, event) -> None:
        self.events.append(event)


@pytest.fixture()
def api_client(db_session):
    from smartlink.main import app

    with TestClient(app) as client:
        yield client


@pytest.fixture()
def recording_publisher(api_client):
    publisher = RecordingPublisher()
    api_client.app.state.event_publisher = publisher
    return publisher


@pytest.fixture()
def admin_headers():
    return {"Authorization": "Bearer internal_token"}
