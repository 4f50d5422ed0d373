"""Governance entities — tenant budget counters, messaging quotas, usage rows
and cost rates.

Entities are plain dataclasses.  Mutation of persisted counters happens only
through the repository's atomic operations, never by editing these objects
and writing them back.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone

from relaygate.domain.enums import MessageChannel, MessageStatus, UsageStatus


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex


# ═══════════════════════════════════════════════════════════════
#  Budget counter
# ═══════════════════════════════════════════════════════════════
@dataclass(frozen=True, slots=True)
class BudgetDefaults:
    """Limits applied to a tenant the first time it is seen."""

    daily_budget_cents: int = 500
    monthly_budget_cents: int = 5000
    daily_request_limit: int = 500
    monthly_token_limit: int = 1_000_000
    hard_stop: bool = False
    warning_threshold_percent: int = 80


@dataclass(slots=True)
class BudgetCounter:
    """Per-tenant limits and rolling usage counters (a read snapshot)."""

    tenant_id: str
    daily_budget_cents: int = 500
    monthly_budget_cents: int = 5000
    daily_request_limit: int = 500
    monthly_token_limit: int = 1_000_000
    hard_stop: bool = False
    warning_threshold_percent: int = 80

    cost_today_cents: int = 0
    cost_this_month_cents: int = 0
    requests_today: int = 0
    tokens_used_this_month: int = 0

    daily_reset_at: datetime = field(default_factory=_utcnow)
    monthly_reset_at: datetime = field(default_factory=_utcnow)
    last_warning_notified_at: datetime | None = None
    last_limit_notified_at: datetime | None = None
    updated_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def with_defaults(
        cls, tenant_id: str, defaults: BudgetDefaults, now: datetime
    ) -> BudgetCounter:
        return cls(
            tenant_id=tenant_id,
            daily_budget_cents=defaults.daily_budget_cents,
            monthly_budget_cents=defaults.monthly_budget_cents,
            daily_request_limit=defaults.daily_request_limit,
            monthly_token_limit=defaults.monthly_token_limit,
            hard_stop=defaults.hard_stop,
            warning_threshold_percent=defaults.warning_threshold_percent,
            daily_reset_at=now,
            monthly_reset_at=now,
            updated_at=now,
        )

    @property
    def daily_percent(self) -> float:
        if self.daily_budget_cents <= 0:
            return 0.0
        return self.cost_today_cents / self.daily_budget_cents * 100

    @property
    def monthly_percent(self) -> float:
        if self.monthly_budget_cents <= 0:
            return 0.0
        return self.cost_this_month_cents / self.monthly_budget_cents * 100


@dataclass(frozen=True, slots=True)
class CounterDelta:
    """Increments applied atomically to a tenant's counters."""

    cost_cents: int = 0
    requests: int = 0
    tokens: int = 0

    def __post_init__(self) -> None:
        if self.cost_cents < 0 or self.requests < 0 or self.tokens < 0:
            raise ValueError("Counter increments must be non-negative")


# Fields a caller may change through ``update_limits``.
LIMIT_FIELDS = frozenset(
    {
        "daily_budget_cents",
        "monthly_budget_cents",
        "daily_request_limit",
        "monthly_token_limit",
        "hard_stop",
        "warning_threshold_percent",
    }
)


# ═══════════════════════════════════════════════════════════════
#  Usage record (append-only)
# ═══════════════════════════════════════════════════════════════
@dataclass(slots=True)
class UsageRecord:
    tenant_id: str
    provider: str
    model: str
    status: UsageStatus
    cost_cents: int = 0
    prompt_tokens: int = 0
    completion_tokens: int = 0
    message_count: int = 0
    latency_ms: int = 0
    was_failover: bool = False
    source: str = "API"
    error_message: str | None = None
    user_id: str | None = None
    id: str = field(default_factory=_new_id)
    created_at: datetime = field(default_factory=_utcnow)

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


# ═══════════════════════════════════════════════════════════════
#  Cost rate (reference data)
# ═══════════════════════════════════════════════════════════════
@dataclass(frozen=True, slots=True)
class CostRate:
    """Unit costs for a provider/model (or provider/channel) pair, in cents."""

    provider: str
    model: str
    prompt_cost_per_1k_cents: int = 0
    completion_cost_per_1k_cents: int = 0
    per_message_cents: int = 0
    is_active: bool = True

    @property
    def key(self) -> str:
        return f"{self.provider}:{self.model}"


# ═══════════════════════════════════════════════════════════════
#  Messaging channel quota
# ═══════════════════════════════════════════════════════════════
@dataclass(frozen=True, slots=True)
class ChannelLimits:
    daily_limit: int
    monthly_limit: int


DEFAULT_CHANNEL_LIMITS: dict[MessageChannel, ChannelLimits] = {
    MessageChannel.WHATSAPP: ChannelLimits(daily_limit=100, monthly_limit=2000),
    MessageChannel.EMAIL: ChannelLimits(daily_limit=500, monthly_limit=10_000),
    MessageChannel.SMS: ChannelLimits(daily_limit=50, monthly_limit=500),
}


@dataclass(slots=True)
class ChannelQuota:
    """Per-tenant, per-channel message allowance and usage (a read snapshot)."""

    tenant_id: str
    channel: MessageChannel
    daily_limit: int = 100
    monthly_limit: int = 2000
    queue_on_limit: bool = False

    daily_used: int = 0
    monthly_used: int = 0
    cost_this_month_cents: int = 0

    daily_reset_at: datetime = field(default_factory=_utcnow)
    monthly_reset_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def with_defaults(
        cls, tenant_id: str, channel: MessageChannel, now: datetime
    ) -> ChannelQuota:
        limits = DEFAULT_CHANNEL_LIMITS[channel]
        return cls(
            tenant_id=tenant_id,
            channel=channel,
            daily_limit=limits.daily_limit,
            monthly_limit=limits.monthly_limit,
            daily_reset_at=now,
            monthly_reset_at=now,
            updated_at=now,
        )

    @property
    def daily_percent(self) -> float:
        if self.daily_limit <= 0:
            return 0.0
        return self.daily_used / self.daily_limit * 100

    @property
    def monthly_percent(self) -> float:
        if self.monthly_limit <= 0:
            return 0.0
        return self.monthly_used / self.monthly_limit * 100


QUOTA_FIELDS = frozenset({"daily_limit", "monthly_limit", "queue_on_limit"})

# Statuses that consume quota and cost.
DELIVERED_STATUSES = frozenset(
    {MessageStatus.SENT, MessageStatus.DELIVERED, MessageStatus.READ}
)


@dataclass(slots=True)
class MessageLog:
    """One outbound message attempt; the recipient is stored only as a hash."""

    tenant_id: str
    channel: MessageChannel
    provider: str
    status: MessageStatus
    recipient_hash: str
    message_type: str = "TEXT"
    cost_cents: int = 0
    error_message: str | None = None
    user_id: str | None = None
    related_entity_type: str | None = None
    related_entity_id: str | None = None
    id: str = field(default_factory=_new_id)
    created_at: datetime = field(default_factory=_utcnow)

    @property
    def delivered(self) -> bool:
        return self.status in DELIVERED_STATUSES
