"""SQLAlchemy ORM models for the governance tables.

These are *infrastructure* models — they map to database tables but are
separate from domain entities.  Converters in ``repositories`` translate
between the two layers.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """SQLAlchemy declarative base."""

    pass


class BudgetCounterModel(Base):
    __tablename__ = "ai_usage_limits"

    tenant_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    daily_budget_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=500)
    monthly_budget_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=5000)
    daily_request_limit: Mapped[int] = mapped_column(Integer, nullable=False, default=500)
    monthly_token_limit: Mapped[int] = mapped_column(Integer, nullable=False, default=1_000_000)
    hard_stop: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    warning_threshold_percent: Mapped[int] = mapped_column(Integer, nullable=False, default=80)

    cost_today_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    cost_this_month_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    requests_today: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    tokens_used_this_month: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    daily_reset_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    monthly_reset_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_warning_notified_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    last_limit_notified_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )


class UsageRecordModel(Base):
    __tablename__ = "ai_usage_logs"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    user_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    provider: Mapped[str] = mapped_column(String(32), nullable=False)
    model: Mapped[str] = mapped_column(String(64), nullable=False, default="")
    prompt_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    completion_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_tokens: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    message_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    cost_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    source: Mapped[str] = mapped_column(String(32), nullable=False, default="API")
    latency_ms: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    was_failover: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_usage_tenant_created", "tenant_id", "created_at"),
        Index("ix_usage_status", "status"),
    )


class MessagingQuotaModel(Base):
    __tablename__ = "messaging_usage_limits"

    tenant_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    channel: Mapped[str] = mapped_column(String(16), primary_key=True)
    daily_limit: Mapped[int] = mapped_column(Integer, nullable=False, default=100)
    monthly_limit: Mapped[int] = mapped_column(Integer, nullable=False, default=2000)
    queue_on_limit: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    daily_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    monthly_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    cost_this_month_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    daily_reset_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    monthly_reset_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )


class MessageLogModel(Base):
    __tablename__ = "messaging_usage_logs"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    user_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    channel: Mapped[str] = mapped_column(String(16), nullable=False)
    provider: Mapped[str] = mapped_column(String(32), nullable=False)
    message_type: Mapped[str] = mapped_column(String(16), nullable=False, default="TEXT")
    recipient_hash: Mapped[str] = mapped_column(String(32), nullable=False)
    cost_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    related_entity_type: Mapped[str | None] = mapped_column(String(32), nullable=True)
    related_entity_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        Index("ix_messaging_logs_tenant_created", "tenant_id", "created_at"),
        Index("ix_messaging_logs_channel", "channel"),
    )


class CostRateModel(Base):
    __tablename__ = "ai_cost_rates"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    provider: Mapped[str] = mapped_column(String(32), nullable=False)
    model: Mapped[str] = mapped_column(String(64), nullable=False)
    prompt_cost_per_1k_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    completion_cost_per_1k_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    per_message_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (UniqueConstraint("provider", "model", name="uq_cost_rate_provider_model"),)
