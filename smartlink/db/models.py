from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from smartlink.db.base import Base
from smartlink.db.enums import (
    ConversionEventTypeEnum,
    SideEffectStatusEnum,
    StepStatusEnum,
    WorkflowRunStatusEnum,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid4().hex


def _side_effect_status_column() -> Mapped[Optional[SideEffectStatusEnum]]:
    return mapped_column(
        Enum(SideEffectStatusEnum, name="side_effect_status", native_enum=False),
        nullable=True,
    )


class Tenant(Base):
    __tablename__ = "tenants"

    id: Mapped[str] = mapped_column(String(length=64), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(length=255), nullable=False)
    meta_pixel_id: Mapped[Optional[str]] = mapped_column(String(length=64), nullable=True)
    meta_access_token: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    high_value_alert_threshold: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class Link(Base):
    __tablename__ = "links"

    id: Mapped[str] = mapped_column(String(length=64), primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(
        ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False, index=True
    )
    creator_id: Mapped[str] = mapped_column(String(length=64), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(length=255), nullable=False)
    slug: Mapped[Optional[str]] = mapped_column(String(length=255), nullable=True, unique=True)
    external_link_id: Mapped[Optional[str]] = mapped_column(String(length=128), nullable=True, index=True)
    tracking_url: Mapped[str] = mapped_column(Text, nullable=False)
    postback_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    total_clicks: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_conversions: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_revenue_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )


class LandingPage(Base):
    __tablename__ = "landing_pages"

    id: Mapped[str] = mapped_column(String(length=64), primary_key=True, default=_new_id)
    link_id: Mapped[str] = mapped_column(ForeignKey("links.id", ondelete="CASCADE"), nullable=False, index=True)
    slug: Mapped[str] = mapped_column(String(length=255), nullable=False, unique=True)
    title: Mapped[Optional[str]] = mapped_column(String(length=255), nullable=True)
    is_published: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    view_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class Click(Base):
    __tablename__ = "clicks"

    click_id: Mapped[str] = mapped_column(String(length=64), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(length=64), nullable=False, index=True)
    link_id: Mapped[str] = mapped_column(ForeignKey("links.id", ondelete="CASCADE"), nullable=False, index=True)
    landing_page_id: Mapped[Optional[str]] = mapped_column(
        ForeignKey("landing_pages.id", ondelete="SET NULL"), nullable=True
    )
    utm_source: Mapped[str] = mapped_column(String(length=255), nullable=False, default="direct")
    utm_medium: Mapped[str] = mapped_column(String(length=255), nullable=False, default="none")
    utm_campaign: Mapped[str] = mapped_column(String(length=255), nullable=False, default="")
    utm_content: Mapped[str] = mapped_column(String(length=255), nullable=False, default="")
    country: Mapped[str] = mapped_column(String(length=16), nullable=False, default="unknown")
    device_type: Mapped[str] = mapped_column(String(length=16), nullable=False)
    browser: Mapped[str] = mapped_column(String(length=32), nullable=False)
    referrer: Mapped[str] = mapped_column(Text, nullable=False, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class Conversion(Base):
    __tablename__ = "conversions"
    __table_args__ = (
        UniqueConstraint("tenant_id", "external_event_key", name="uq_conversion_tenant_event_key"),
    )

    id: Mapped[str] = mapped_column(String(length=64), primary_key=True, default=_new_id)
    tenant_id: Mapped[str] = mapped_column(String(length=64), nullable=False, index=True)
    creator_id: Mapped[str] = mapped_column(String(length=64), nullable=False)
    link_id: Mapped[str] = mapped_column(String(length=64), nullable=False, index=True)
    click_id: Mapped[Optional[str]] = mapped_column(String(length=64), nullable=True)
    external_event_key: Mapped[str] = mapped_column(String(length=512), nullable=False)
    event_type: Mapped[ConversionEventTypeEnum] = mapped_column(
        Enum(ConversionEventTypeEnum, name="conversion_event_type", native_enum=False), nullable=False
    )
    transaction_type: Mapped[Optional[str]] = mapped_column(String(length=64), nullable=True)
    amount_gross: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    amount_net: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    currency: Mapped[str] = mapped_column(String(length=8), nullable=False, default="USD")
    fan_identifier: Mapped[Optional[str]] = mapped_column(String(length=128), nullable=True)
    fan_username: Mapped[Optional[str]] = mapped_column(String(length=255), nullable=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    ad_platform_status: Mapped[Optional[SideEffectStatusEnum]] = _side_effect_status_column()
    custom_postback_status: Mapped[Optional[SideEffectStatusEnum]] = _side_effect_status_column()
    alert_status: Mapped[Optional[SideEffectStatusEnum]] = _side_effect_status_column()
    counters_status: Mapped[Optional[SideEffectStatusEnum]] = _side_effect_status_column()


class WorkflowRun(Base):
    __tablename__ = "workflow_runs"

    id: Mapped[str] = mapped_column(String(length=64), primary_key=True)
    external_event_key: Mapped[str] = mapped_column(String(length=512), nullable=False, unique=True)
    event_payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    status: Mapped[WorkflowRunStatusEnum] = mapped_column(
        Enum(WorkflowRunStatusEnum, name="workflow_run_status", native_enum=False),
        nullable=False,
        default=WorkflowRunStatusEnum.running,
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class WorkflowStep(Base):
    __tablename__ = "workflow_steps"
    __table_args__ = (UniqueConstraint("run_id", "step_name", name="uq_workflow_step_run_step"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[str] = mapped_column(
        ForeignKey("workflow_runs.id", ondelete="CASCADE"), nullable=False, index=True
    )
    step_name: Mapped[str] = mapped_column(String(length=64), nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[StepStatusEnum] = mapped_column(
        Enum(StepStatusEnum, name="workflow_step_status", native_enum=False),
        nullable=False,
        default=StepStatusEnum.pending,
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    output: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)
    lease_owner: Mapped[Optional[str]] = mapped_column(String(length=64), nullable=True)
    lease_expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    finished_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class DeadLetterEvent(Base):
    __tablename__ = "dead_letter_events"

    id: Mapped[str] = mapped_column(String(length=64), primary_key=True, default=_new_id)
    run_id: Mapped[str] = mapped_column(String(length=64), nullable=False, unique=True)
    external_event_key: Mapped[str] = mapped_column(String(length=512), nullable=False)
    reason: Mapped[str] = mapped_column(String(length=128), nullable=False)
    detail: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    event_payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
