"""In-memory governance repositories for single-process use and tests.

Each method mutates under one lock with no ``await`` inside the critical
section, mirroring the single-statement atomicity of the SQL versions.
"""

from __future__ import annotations

import dataclasses
import threading
from datetime import datetime, timezone
from typing import Any, Iterable

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
from relaygate.domain.enums import MessageChannel, NotificationKind
from relaygate.ports.outbound import BudgetRepository, CostRateRepository, MessagingQuotaRepository


class InMemoryBudgetRepository(BudgetRepository):
    def __init__(self) -> None:
        self._counters: dict[str, BudgetCounter] = {}
        self._records: list[UsageRecord] = []
        self._lock = threading.Lock()

    @property
    def records(self) -> list[UsageRecord]:
        with self._lock:
            return list(self._records)

    async def get_counter(self, tenant_id: str) -> BudgetCounter | None:
        with self._lock:
            counter = self._counters.get(tenant_id)
            return dataclasses.replace(counter) if counter else None

    async def create_counter(self, counter: BudgetCounter) -> BudgetCounter:
        with self._lock:
            stored = self._counters.setdefault(counter.tenant_id, dataclasses.replace(counter))
            return dataclasses.replace(stored)

    async def increment_counters(self, tenant_id: str, delta: CounterDelta) -> None:
        with self._lock:
            c = self._counters.get(tenant_id)
            if c is None:
                return
            c.cost_today_cents += delta.cost_cents
            c.cost_this_month_cents += delta.cost_cents
            c.requests_today += delta.requests
            c.tokens_used_this_month += delta.tokens
            c.updated_at = datetime.now(timezone.utc)

    async def reset_daily(
        self, tenant_id: str, *, expected_reset_at: datetime, now: datetime
    ) -> bool:
        with self._lock:
            c = self._counters.get(tenant_id)
            if c is None or c.daily_reset_at != expected_reset_at:
                return False
            c.requests_today = 0
            c.cost_today_cents = 0
            c.daily_reset_at = now
            c.updated_at = now
            return True

    async def reset_monthly(
        self, tenant_id: str, *, expected_reset_at: datetime, now: datetime
    ) -> bool:
        with self._lock:
            c = self._counters.get(tenant_id)
            if c is None or c.monthly_reset_at != expected_reset_at:
                return False
            c.tokens_used_this_month = 0
            c.cost_this_month_cents = 0
            c.last_warning_notified_at = None
            c.last_limit_notified_at = None
            c.monthly_reset_at = now
            c.updated_at = now
            return True

    async def stamp_notification(
        self,
        tenant_id: str,
        kind: NotificationKind,
        *,
        not_after: datetime,
        now: datetime,
    ) -> bool:
        attr = "last_limit_notified_at" if kind == NotificationKind.LIMIT else "last_warning_notified_at"
        with self._lock:
            c = self._counters.get(tenant_id)
            if c is None:
                return False
            last = getattr(c, attr)
            if last is not None and last > not_after:
                return False
            setattr(c, attr, now)
            c.updated_at = now
            return True

    async def update_limits(self, tenant_id: str, updates: dict[str, Any]) -> BudgetCounter | None:
        with self._lock:
            c = self._counters.get(tenant_id)
            if c is None:
                return None
            for name, value in updates.items():
                if name in LIMIT_FIELDS:
                    setattr(c, name, value)
            c.updated_at = datetime.now(timezone.utc)
            return dataclasses.replace(c)

    async def save_usage_record(self, record: UsageRecord) -> None:
        with self._lock:
            self._records.append(record)

    async def list_usage(
        self,
        tenant_id: str,
        *,
        start: datetime,
        end: datetime,
        status: str | None = None,
    ) -> list[UsageRecord]:
        with self._lock:
            rows = [
                r
                for r in self._records
                if r.tenant_id == tenant_id
                and start <= r.created_at <= end
                and (status is None or r.status.value == status)
            ]
        return sorted(rows, key=lambda r: r.created_at)


class InMemoryMessagingQuotaRepository(MessagingQuotaRepository):
    def __init__(self) -> None:
        self._quotas: dict[tuple[str, MessageChannel], ChannelQuota] = {}
        self._logs: list[MessageLog] = []
        self._lock = threading.Lock()

    @property
    def logs(self) -> list[MessageLog]:
        with self._lock:
            return list(self._logs)

    async def get_quota(self, tenant_id: str, channel: MessageChannel) -> ChannelQuota | None:
        with self._lock:
            quota = self._quotas.get((tenant_id, channel))
            return dataclasses.replace(quota) if quota else None

    async def create_quota(self, quota: ChannelQuota) -> ChannelQuota:
        with self._lock:
            stored = self._quotas.setdefault(
                (quota.tenant_id, quota.channel), dataclasses.replace(quota)
            )
            return dataclasses.replace(stored)

    async def increment_usage(
        self, tenant_id: str, channel: MessageChannel, *, messages: int, cost_cents: int
    ) -> None:
        with self._lock:
            q = self._quotas.get((tenant_id, channel))
            if q is None:
                return
            q.daily_used += messages
            q.monthly_used += messages
            q.cost_this_month_cents += cost_cents
            q.updated_at = datetime.now(timezone.utc)

    async def reset_daily(
        self,
        tenant_id: str,
        channel: MessageChannel,
        *,
        expected_reset_at: datetime,
        now: datetime,
    ) -> bool:
        with self._lock:
            q = self._quotas.get((tenant_id, channel))
            if q is None or q.daily_reset_at != expected_reset_at:
                return False
            q.daily_used = 0
            q.daily_reset_at = now
            q.updated_at = now
            return True

    async def reset_monthly(
        self,
        tenant_id: str,
        channel: MessageChannel,
        *,
        expected_reset_at: datetime,
        now: datetime,
    ) -> bool:
        with self._lock:
            q = self._quotas.get((tenant_id, channel))
            if q is None or q.monthly_reset_at != expected_reset_at:
                return False
            q.monthly_used = 0
            q.cost_this_month_cents = 0
            q.monthly_reset_at = now
            q.updated_at = now
            return True

    async def update_limits(
        self, tenant_id: str, channel: MessageChannel, updates: dict[str, Any]
    ) -> ChannelQuota | None:
        with self._lock:
            q = self._quotas.get((tenant_id, channel))
            if q is None:
                return None
            for name, value in updates.items():
                if name in QUOTA_FIELDS:
                    setattr(q, name, value)
            q.updated_at = datetime.now(timezone.utc)
            return dataclasses.replace(q)

    async def save_message_log(self, entry: MessageLog) -> None:
        with self._lock:
            self._logs.append(entry)

    async def list_message_logs(
        self, tenant_id: str, *, start: datetime, end: datetime
    ) -> list[MessageLog]:
        with self._lock:
            rows = [
                e
                for e in self._logs
                if e.tenant_id == tenant_id and start <= e.created_at <= end
            ]
        return sorted(rows, key=lambda e: e.created_at)


class InMemoryCostRateRepository(CostRateRepository):
    def __init__(self, rates: Iterable[CostRate] = ()) -> None:
        self._rates = list(rates)
        self.calls = 0

    def add(self, rate: CostRate) -> None:
        self._rates.append(rate)

    async def list_active(self) -> list[CostRate]:
        self.calls += 1
        return [r for r in self._rates if r.is_active]
