"""Concrete repository implementations using SQLAlchemy.

These adapters implement the governance ports.  Every counter mutation is a
single ``UPDATE`` statement (``col = col + :x`` or a conditional ``WHERE`` on
the previously observed stamp), so concurrent callers never lose updates.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from relaygate.domain.entities import (
    LIMIT_FIELDS,
    QUOTA_FIELDS,
    BudgetCounter,
    ChannelQuota,
    CostRate,
    CounterDelta,
    MessageLog,
    UsageRecord,
)
from relaygate.domain.enums import MessageChannel, MessageStatus, NotificationKind, UsageStatus
from relaygate.ports.outbound import BudgetRepository, CostRateRepository, MessagingQuotaRepository

from .models import (
    BudgetCounterModel,
    CostRateModel,
    MessageLogModel,
    MessagingQuotaModel,
    UsageRecordModel,
)


def _aware(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; everything stored is UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


# ── Converters ───────────────────────────────────────────────
def _counter_to_model(c: BudgetCounter) -> BudgetCounterModel:
    return BudgetCounterModel(
        tenant_id=c.tenant_id,
        daily_budget_cents=c.daily_budget_cents,
        monthly_budget_cents=c.monthly_budget_cents,
        daily_request_limit=c.daily_request_limit,
        monthly_token_limit=c.monthly_token_limit,
        hard_stop=c.hard_stop,
        warning_threshold_percent=c.warning_threshold_percent,
        cost_today_cents=c.cost_today_cents,
        cost_this_month_cents=c.cost_this_month_cents,
        requests_today=c.requests_today,
        tokens_used_this_month=c.tokens_used_this_month,
        daily_reset_at=c.daily_reset_at,
        monthly_reset_at=c.monthly_reset_at,
        last_warning_notified_at=c.last_warning_notified_at,
        last_limit_notified_at=c.last_limit_notified_at,
        updated_at=c.updated_at,
    )


def _model_to_counter(m: BudgetCounterModel) -> BudgetCounter:
    return BudgetCounter(
        tenant_id=m.tenant_id,
        daily_budget_cents=m.daily_budget_cents,
        monthly_budget_cents=m.monthly_budget_cents,
        daily_request_limit=m.daily_request_limit,
        monthly_token_limit=m.monthly_token_limit,
        hard_stop=m.hard_stop,
        warning_threshold_percent=m.warning_threshold_percent,
        cost_today_cents=m.cost_today_cents,
        cost_this_month_cents=m.cost_this_month_cents,
        requests_today=m.requests_today,
        tokens_used_this_month=m.tokens_used_this_month,
        daily_reset_at=_aware(m.daily_reset_at),
        monthly_reset_at=_aware(m.monthly_reset_at),
        last_warning_notified_at=_aware(m.last_warning_notified_at),
        last_limit_notified_at=_aware(m.last_limit_notified_at),
        updated_at=_aware(m.updated_at),
    )


def _record_to_model(r: UsageRecord) -> UsageRecordModel:
    return UsageRecordModel(
        id=r.id,
        tenant_id=r.tenant_id,
        user_id=r.user_id,
        provider=r.provider,
        model=r.model,
        prompt_tokens=r.prompt_tokens,
        completion_tokens=r.completion_tokens,
        total_tokens=r.total_tokens,
        message_count=r.message_count,
        cost_cents=r.cost_cents,
        source=r.source,
        latency_ms=r.latency_ms,
        was_failover=r.was_failover,
        status=r.status.value,
        error_message=r.error_message,
        created_at=r.created_at,
    )


def _model_to_record(m: UsageRecordModel) -> UsageRecord:
    return UsageRecord(
        id=m.id,
        tenant_id=m.tenant_id,
        user_id=m.user_id,
        provider=m.provider,
        model=m.model,
        status=UsageStatus(m.status),
        cost_cents=m.cost_cents,
        prompt_tokens=m.prompt_tokens,
        completion_tokens=m.completion_tokens,
        message_count=m.message_count,
        latency_ms=m.latency_ms,
        was_failover=m.was_failover,
        source=m.source,
        error_message=m.error_message,
        created_at=_aware(m.created_at),
    )


def _quota_to_model(q: ChannelQuota) -> MessagingQuotaModel:
    return MessagingQuotaModel(
        tenant_id=q.tenant_id,
        channel=q.channel.value,
        daily_limit=q.daily_limit,
        monthly_limit=q.monthly_limit,
        queue_on_limit=q.queue_on_limit,
        daily_used=q.daily_used,
        monthly_used=q.monthly_used,
        cost_this_month_cents=q.cost_this_month_cents,
        daily_reset_at=q.daily_reset_at,
        monthly_reset_at=q.monthly_reset_at,
        updated_at=q.updated_at,
    )


def _model_to_quota(m: MessagingQuotaModel) -> ChannelQuota:
    return ChannelQuota(
        tenant_id=m.tenant_id,
        channel=MessageChannel(m.channel),
        daily_limit=m.daily_limit,
        monthly_limit=m.monthly_limit,
        queue_on_limit=m.queue_on_limit,
        daily_used=m.daily_used,
        monthly_used=m.monthly_used,
        cost_this_month_cents=m.cost_this_month_cents,
        daily_reset_at=_aware(m.daily_reset_at),
        monthly_reset_at=_aware(m.monthly_reset_at),
        updated_at=_aware(m.updated_at),
    )


def _log_to_model(e: MessageLog) -> MessageLogModel:
    return MessageLogModel(
        id=e.id,
        tenant_id=e.tenant_id,
        user_id=e.user_id,
        channel=e.channel.value,
        provider=e.provider,
        message_type=e.message_type,
        recipient_hash=e.recipient_hash,
        cost_cents=e.cost_cents,
        status=e.status.value,
        error_message=e.error_message,
        related_entity_type=e.related_entity_type,
        related_entity_id=e.related_entity_id,
        created_at=e.created_at,
    )


def _model_to_log(m: MessageLogModel) -> MessageLog:
    return MessageLog(
        id=m.id,
        tenant_id=m.tenant_id,
        user_id=m.user_id,
        channel=MessageChannel(m.channel),
        provider=m.provider,
        message_type=m.message_type,
        recipient_hash=m.recipient_hash,
        cost_cents=m.cost_cents,
        status=MessageStatus(m.status),
        error_message=m.error_message,
        related_entity_type=m.related_entity_type,
        related_entity_id=m.related_entity_id,
        created_at=_aware(m.created_at),
    )


def _model_to_rate(m: CostRateModel) -> CostRate:
    return CostRate(
        provider=m.provider,
        model=m.model,
        prompt_cost_per_1k_cents=m.prompt_cost_per_1k_cents,
        completion_cost_per_1k_cents=m.completion_cost_per_1k_cents,
        per_message_cents=m.per_message_cents,
        is_active=m.is_active,
    )


# ═══════════════════════════════════════════════════════════════
#  SQLAlchemy Budget Repository
# ═══════════════════════════════════════════════════════════════
class SQLAlchemyBudgetRepository(BudgetRepository):
    """Each call runs in its own short transaction."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._factory = session_factory

    async def get_counter(self, tenant_id: str) -> BudgetCounter | None:
        async with self._factory() as session:
            model = await session.get(BudgetCounterModel, tenant_id)
            return _model_to_counter(model) if model else None

    async def create_counter(self, counter: BudgetCounter) -> BudgetCounter:
        try:
            async with self._factory() as session, session.begin():
                session.add(_counter_to_model(counter))
        except IntegrityError:
            # Another caller created it first.
            existing = await self.get_counter(counter.tenant_id)
            if existing is None:
                raise
            return existing
        return counter

    async def increment_counters(self, tenant_id: str, delta: CounterDelta) -> None:
        m = BudgetCounterModel
        stmt = (
            update(m)
            .where(m.tenant_id == tenant_id)
            .values(
                cost_today_cents=m.cost_today_cents + delta.cost_cents,
                cost_this_month_cents=m.cost_this_month_cents + delta.cost_cents,
                requests_today=m.requests_today + delta.requests,
                tokens_used_this_month=m.tokens_used_this_month + delta.tokens,
                updated_at=datetime.now(timezone.utc),
            )
        )
        await self._execute(stmt)

    async def reset_daily(
        self, tenant_id: str, *, expected_reset_at: datetime, now: datetime
    ) -> bool:
        m = BudgetCounterModel
        stmt = (
            update(m)
            .where(m.tenant_id == tenant_id, m.daily_reset_at == expected_reset_at)
            .values(requests_today=0, cost_today_cents=0, daily_reset_at=now, updated_at=now)
        )
        return await self._execute(stmt) == 1

    async def reset_monthly(
        self, tenant_id: str, *, expected_reset_at: datetime, now: datetime
    ) -> bool:
        m = BudgetCounterModel
        stmt = (
            update(m)
            .where(m.tenant_id == tenant_id, m.monthly_reset_at == expected_reset_at)
            .values(
                tokens_used_this_month=0,
                cost_this_month_cents=0,
                last_warning_notified_at=None,
                last_limit_notified_at=None,
                monthly_reset_at=now,
                updated_at=now,
            )
        )
        return await self._execute(stmt) == 1

    async def stamp_notification(
        self,
        tenant_id: str,
        kind: NotificationKind,
        *,
        not_after: datetime,
        now: datetime,
    ) -> bool:
        m = BudgetCounterModel
        column = (
            m.last_limit_notified_at if kind == NotificationKind.LIMIT else m.last_warning_notified_at
        )
        stmt = (
            update(m)
            .where(m.tenant_id == tenant_id, or_(column.is_(None), column <= not_after))
            .values({column.key: now, "updated_at": now})
        )
        return await self._execute(stmt) == 1

    async def update_limits(self, tenant_id: str, updates: dict[str, Any]) -> BudgetCounter | None:
        values = {k: v for k, v in updates.items() if k in LIMIT_FIELDS}
        if values:
            m = BudgetCounterModel
            values["updated_at"] = datetime.now(timezone.utc)
            await self._execute(update(m).where(m.tenant_id == tenant_id).values(**values))
        return await self.get_counter(tenant_id)

    async def save_usage_record(self, record: UsageRecord) -> None:
        async with self._factory() as session, session.begin():
            session.add(_record_to_model(record))

    async def list_usage(
        self,
        tenant_id: str,
        *,
        start: datetime,
        end: datetime,
        status: str | None = None,
    ) -> list[UsageRecord]:
        m = UsageRecordModel
        stmt = (
            select(m)
            .where(m.tenant_id == tenant_id, m.created_at >= start, m.created_at <= end)
            .order_by(m.created_at)
        )
        if status is not None:
            stmt = stmt.where(m.status == status)
        async with self._factory() as session:
            result = await session.execute(stmt)
            return [_model_to_record(row) for row in result.scalars().all()]

    async def _execute(self, stmt: Any) -> int:
        async with self._factory() as session, session.begin():
            result = await session.execute(
                stmt, execution_options={"synchronize_session": False}
            )
            return result.rowcount


# ═══════════════════════════════════════════════════════════════
#  SQLAlchemy Messaging Quota Repository
# ═══════════════════════════════════════════════════════════════
class SQLAlchemyMessagingQuotaRepository(MessagingQuotaRepository):
    """Same single-statement discipline as the budget repository."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._factory = session_factory

    async def get_quota(self, tenant_id: str, channel: MessageChannel) -> ChannelQuota | None:
        async with self._factory() as session:
            model = await session.get(MessagingQuotaModel, (tenant_id, channel.value))
            return _model_to_quota(model) if model else None

    async def create_quota(self, quota: ChannelQuota) -> ChannelQuota:
        try:
            async with self._factory() as session, session.begin():
                session.add(_quota_to_model(quota))
        except IntegrityError:
            existing = await self.get_quota(quota.tenant_id, quota.channel)
            if existing is None:
                raise
            return existing
        return quota

    async def increment_usage(
        self, tenant_id: str, channel: MessageChannel, *, messages: int, cost_cents: int
    ) -> None:
        m = MessagingQuotaModel
        stmt = (
            update(m)
            .where(m.tenant_id == tenant_id, m.channel == channel.value)
            .values(
                daily_used=m.daily_used + messages,
                monthly_used=m.monthly_used + messages,
                cost_this_month_cents=m.cost_this_month_cents + cost_cents,
                updated_at=datetime.now(timezone.utc),
            )
        )
        await self._execute(stmt)

    async def reset_daily(
        self,
        tenant_id: str,
        channel: MessageChannel,
        *,
        expected_reset_at: datetime,
        now: datetime,
    ) -> bool:
        m = MessagingQuotaModel
        stmt = (
            update(m)
            .where(
                m.tenant_id == tenant_id,
                m.channel == channel.value,
                m.daily_reset_at == expected_reset_at,
            )
            .values(daily_used=0, daily_reset_at=now, updated_at=now)
        )
        return await self._execute(stmt) == 1

    async def reset_monthly(
        self,
        tenant_id: str,
        channel: MessageChannel,
        *,
        expected_reset_at: datetime,
        now: datetime,
    ) -> bool:
        m = MessagingQuotaModel
        stmt = (
            update(m)
            .where(
                m.tenant_id == tenant_id,
                m.channel == channel.value,
                m.monthly_reset_at == expected_reset_at,
            )
            .values(monthly_used=0, cost_this_month_cents=0, monthly_reset_at=now, updated_at=now)
        )
        return await self._execute(stmt) == 1

    async def update_limits(
        self, tenant_id: str, channel: MessageChannel, updates: dict[str, Any]
    ) -> ChannelQuota | None:
        values = {k: v for k, v in updates.items() if k in QUOTA_FIELDS}
        if values:
            m = MessagingQuotaModel
            values["updated_at"] = datetime.now(timezone.utc)
            await self._execute(
                update(m).where(m.tenant_id == tenant_id, m.channel == channel.value).values(**values)
            )
        return await self.get_quota(tenant_id, channel)

    async def save_message_log(self, entry: MessageLog) -> None:
        async with self._factory() as session, session.begin():
            session.add(_log_to_model(entry))

    async def list_message_logs(
        self, tenant_id: str, *, start: datetime, end: datetime
    ) -> list[MessageLog]:
        m = MessageLogModel
        stmt = (
            select(m)
            .where(m.tenant_id == tenant_id, m.created_at >= start, m.created_at <= end)
            .order_by(m.created_at)
        )
        async with self._factory() as session:
            result = await session.execute(stmt)
            return [_model_to_log(row) for row in result.scalars().all()]

    async def _execute(self, stmt: Any) -> int:
        async with self._factory() as session, session.begin():
            result = await session.execute(
                stmt, execution_options={"synchronize_session": False}
            )
            return result.rowcount


# ═══════════════════════════════════════════════════════════════
#  SQLAlchemy Cost Rate Repository
# ═══════════════════════════════════════════════════════════════
class SQLAlchemyCostRateRepository(CostRateRepository):
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._factory = session_factory

    async def list_active(self) -> list[CostRate]:
        async with self._factory() as session:
            result = await session.execute(
                select(CostRateModel).where(CostRateModel.is_active.is_(True))
            )
            return [_model_to_rate(row) for row in result.scalars().all()]

    async def upsert(self, rate: CostRate) -> None:
        async with self._factory() as session, session.begin():
            existing = (
                await session.execute(
                    select(CostRateModel).where(
                        CostRateModel.provider == rate.provider,
                        CostRateModel.model == rate.model,
                    )
                )
            ).scalar_one_or_none()
            if existing is None:
                existing = CostRateModel(provider=rate.provider, model=rate.model)
                session.add(existing)
            existing.prompt_cost_per_1k_cents = rate.prompt_cost_per_1k_cents
            existing.completion_cost_per_1k_cents = rate.completion_cost_per_1k_cents
            existing.per_message_cents = rate.per_message_cents
            existing.is_active = rate.is_active
