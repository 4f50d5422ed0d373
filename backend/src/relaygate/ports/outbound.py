"""Outbound ports — interfaces that infrastructure adapters must implement.

These are the *driven* ports in hexagonal architecture.  The resilience and
governance core depends only on these abstractions, never on concrete
implementations (HTTP clients, database drivers, Redis, etc.).
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import TYPE_CHECKING, Any, ClassVar

if TYPE_CHECKING:
    from relaygate.domain.entities import (
        BudgetCounter,
        ChannelQuota,
        CostRate,
        CounterDelta,
        MessageLog,
        UsageRecord,
    )
    from relaygate.domain.enums import MessageChannel, NotificationKind, ProviderFamily
    from relaygate.shared.providers.types import (
        HealthCheckResult,
        NormalizedResult,
        ProviderConfig,
        ProviderRequest,
    )


# ═══════════════════════════════════════════════════════════════
#  Provider contract
# ═══════════════════════════════════════════════════════════════
class ProviderAdapter(ABC):
    """Uniform contract every vendor adapter implements.

    ``execute`` must never raise for vendor failures: it returns a
    ``NormalizedResult`` whose ``error.retryable`` flag tells the failover
    executor whether another attempt can help (5xx, 429, overload, transport
    errors) or not (auth and validation failures).
    """

    family: ClassVar[ProviderFamily]
    provider_code: ClassVar[str]
    provider_name: ClassVar[str]

    @abstractmethod
    async def initialize(self, config: ProviderConfig) -> None:
        """Validate config and prepare the client; raise ``ConfigurationError``."""
        ...

    @abstractmethod
    async def execute(self, request: ProviderRequest) -> NormalizedResult: ...

    @abstractmethod
    async def health_check(self) -> HealthCheckResult: ...

    @abstractmethod
    def is_healthy(self) -> bool: ...

    async def close(self) -> None:
        return None


# ═══════════════════════════════════════════════════════════════
#  Key → state store (circuit and rate-limit state)
# ═══════════════════════════════════════════════════════════════
class StateStore(ABC):
    """Small key/hash store with atomic primitives.

    Each method is a single atomic operation.  Callers never read a field,
    await, and write it back; they use ``increment`` and ``set_if_absent``.
    """

    @abstractmethod
    async def get(self, key: str) -> dict[str, str] | None: ...

    @abstractmethod
    async def set_fields(self, key: str, fields: dict[str, Any]) -> None: ...

    @abstractmethod
    async def increment(self, key: str, field: str, amount: int = 1) -> int: ...

    @abstractmethod
    async def set_if_absent(self, key: str, value: str, *, ttl_seconds: float) -> bool:
        """Claim ``key`` if nobody holds it; the claim expires after ``ttl_seconds``."""
        ...

    @abstractmethod
    async def delete(self, key: str) -> None: ...

    async def close(self) -> None:
        return None

    async def health_check(self) -> bool:
        return True


# ═══════════════════════════════════════════════════════════════
#  Governance persistence
# ═══════════════════════════════════════════════════════════════
class BudgetRepository(ABC):
    """Tenant counters and the append-only usage log."""

    @abstractmethod
    async def get_counter(self, tenant_id: str) -> BudgetCounter | None: ...

    @abstractmethod
    async def create_counter(self, counter: BudgetCounter) -> BudgetCounter:
        """Insert ``counter``; if the tenant already exists return the stored row."""
        ...

    @abstractmethod
    async def increment_counters(self, tenant_id: str, delta: CounterDelta) -> None:
        """Atomic ``col = col + x`` on the tenant's counters."""
        ...

    @abstractmethod
    async def reset_daily(
        self, tenant_id: str, *, expected_reset_at: datetime, now: datetime
    ) -> bool:
        """Zero daily counters only if ``daily_reset_at`` still equals ``expected_reset_at``."""
        ...

    @abstractmethod
    async def reset_monthly(
        self, tenant_id: str, *, expected_reset_at: datetime, now: datetime
    ) -> bool: ...

    @abstractmethod
    async def stamp_notification(
        self,
        tenant_id: str,
        kind: NotificationKind,
        *,
        not_after: datetime,
        now: datetime,
    ) -> bool:
        """Set the notification stamp unless one newer than ``not_after`` exists."""
        ...

    @abstractmethod
    async def update_limits(self, tenant_id: str, updates: dict[str, Any]) -> BudgetCounter | None: ...

    @abstractmethod
    async def save_usage_record(self, record: UsageRecord) -> None: ...

    @abstractmethod
    async def list_usage(
        self,
        tenant_id: str,
        *,
        start: datetime,
        end: datetime,
        status: str | None = None,
    ) -> list[UsageRecord]: ...


class MessagingQuotaRepository(ABC):
    """Per-tenant channel quotas and the message log."""

    @abstractmethod
    async def get_quota(self, tenant_id: str, channel: MessageChannel) -> ChannelQuota | None: ...

    @abstractmethod
    async def create_quota(self, quota: ChannelQuota) -> ChannelQuota:
        """Insert ``quota``; if the (tenant, channel) row exists return the stored one."""
        ...

    @abstractmethod
    async def increment_usage(
        self, tenant_id: str, channel: MessageChannel, *, messages: int, cost_cents: int
    ) -> None:
        """Atomic ``col = col + x`` on the daily, monthly and cost counters."""
        ...

    @abstractmethod
    async def reset_daily(
        self,
        tenant_id: str,
        channel: MessageChannel,
        *,
        expected_reset_at: datetime,
        now: datetime,
    ) -> bool: ...

    @abstractmethod
    async def reset_monthly(
        self,
        tenant_id: str,
        channel: MessageChannel,
        *,
        expected_reset_at: datetime,
        now: datetime,
    ) -> bool: ...

    @abstractmethod
    async def update_limits(
        self, tenant_id: str, channel: MessageChannel, updates: dict[str, Any]
    ) -> ChannelQuota | None: ...

    @abstractmethod
    async def save_message_log(self, entry: MessageLog) -> None: ...

    @abstractmethod
    async def list_message_logs(
        self, tenant_id: str, *, start: datetime, end: datetime
    ) -> list[MessageLog]: ...


class CostRateRepository(ABC):
    """Read-only cost-rate reference data."""

    @abstractmethod
    async def list_active(self) -> list[CostRate]: ...


class BudgetNotifier(ABC):
    """Receives throttled budget warnings and limit breaches."""

    @abstractmethod
    async def notify(
        self,
        tenant_id: str,
        kind: NotificationKind,
        *,
        period: str,
        percent: float,
    ) -> None: ...
