"""Messaging quota guard — per-tenant, per-channel daily and monthly allowances.

Admission (``check_quota``) denies a send that would push the day's or the
month's count past the channel limit, and warns from 80% utilization.  Errors
inside the check fail open.  Metering (``record_message``) always writes one
message log entry and moves the quota counters only for delivered statuses
(SENT, DELIVERED, READ); its errors are logged and swallowed.

Quota rows are created with per-channel defaults on first use.  Daily and
monthly windows reset lazily with the same conditional update the budget
guard uses, so a boundary is crossed exactly once however many callers race.
"""

from __future__ import annotations

import hashlib
import math
from collections import Counter, defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

import structlog

from relaygate.domain.entities import (
    DEFAULT_CHANNEL_LIMITS,
    QUOTA_FIELDS,
    ChannelLimits,
    ChannelQuota,
    MessageLog,
)
from relaygate.domain.enums import MessageChannel, MessageStatus
from relaygate.ports.outbound import MessagingQuotaRepository
from relaygate.shared.observability.metrics import MESSAGES_RECORDED, QUOTA_DECISIONS

logger = structlog.get_logger(__name__)

QUOTA_WARNING_PERCENT = 80.0
FAIL_OPEN_WARNING = "Quota check failed; message allowed without quota enforcement."

# Per-message cost when the caller does not supply a metered one.
MESSAGE_COSTS: dict[MessageChannel, int] = {
    MessageChannel.WHATSAPP: 5,
    MessageChannel.EMAIL: 0,
    MessageChannel.SMS: 10,
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _round2(value: float) -> float:
    return math.floor(value * 100 + 0.5) / 100


def hash_recipient(recipient: str) -> str:
    """Stable, non-reversible recipient key (first 32 hex chars of SHA-256)."""
    return hashlib.sha256(recipient.strip().lower().encode("utf-8")).hexdigest()[:32]


def parse_channel(value: MessageChannel | str) -> MessageChannel:
    if isinstance(value, MessageChannel):
        return value
    return MessageChannel(value.strip().upper())


# ═══════════════════════════════════════════════════════════════
#  Result types
# ═══════════════════════════════════════════════════════════════
@dataclass(frozen=True)
class QuotaUsage:
    daily: int = 0
    monthly: int = 0


@dataclass(frozen=True)
class QuotaCheckResult:
    allowed: bool
    channel: MessageChannel
    usage: QuotaUsage
    limits: ChannelLimits
    reason: str | None = None
    warning: str | None = None
    can_queue: bool = False


@dataclass(frozen=True)
class MessageInput:
    """One outbound message attempt, as reported by the gateway."""

    tenant_id: str
    channel: MessageChannel | str
    provider: str
    recipient: str
    status: MessageStatus
    message_type: str = "TEXT"
    cost_cents: int | None = None
    error_message: str | None = None
    user_id: str | None = None
    related_entity_type: str | None = None
    related_entity_id: str | None = None


@dataclass(frozen=True)
class ChannelStats:
    quota: ChannelQuota
    daily_percent: float
    monthly_percent: float

    @property
    def cost_this_month_cents(self) -> int:
        return self.quota.cost_this_month_cents


@dataclass(frozen=True)
class MessagingAggregate:
    key: str
    sent: int = 0
    failed: int = 0
    cost_cents: int = 0


@dataclass(frozen=True)
class MessagingBreakdown:
    by_channel: list[MessagingAggregate]
    by_provider: list[MessagingAggregate]
    by_status: dict[str, int]
    daily_trend: list[MessagingAggregate]


# ═══════════════════════════════════════════════════════════════
#  Quota guard
# ═══════════════════════════════════════════════════════════════
class MessagingQuotaGuard:
    def __init__(
        self,
        repository: MessagingQuotaRepository,
        *,
        warning_percent: float = QUOTA_WARNING_PERCENT,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._repo = repository
        self._warning_pct = warning_percent
        self._clock = clock

    # ── Admission ────────────────────────────────────────────
    async def check_quota(
        self,
        tenant_id: str,
        channel: MessageChannel | str,
        message_count: int = 1,
    ) -> QuotaCheckResult:
        """``channel`` must name a known channel; anything else raises ``ValueError``."""
        ch = parse_channel(channel)
        log = logger.bind(tenant_id=tenant_id, channel=ch.value)
        try:
            quota = await self._get_or_create(tenant_id, ch)
            quota = await self.check_and_reset_counters(quota)

            usage = QuotaUsage(daily=quota.daily_used, monthly=quota.monthly_used)
            limits = ChannelLimits(daily_limit=quota.daily_limit, monthly_limit=quota.monthly_limit)

            reason: str | None = None
            if quota.daily_used + message_count > quota.daily_limit:
                reason = f"Daily {ch.value} limit exceeded ({quota.daily_used}/{quota.daily_limit})"
            elif quota.monthly_used + message_count > quota.monthly_limit:
                reason = (
                    f"Monthly {ch.value} limit exceeded ({quota.monthly_used}/{quota.monthly_limit})"
                )
            if reason is not None:
                QUOTA_DECISIONS.labels(channel=ch.value, decision="denied").inc()
                log.warning("messaging_quota_denied", reason=reason, can_queue=quota.queue_on_limit)
                return QuotaCheckResult(
                    allowed=False,
                    channel=ch,
                    usage=usage,
                    limits=limits,
                    reason=reason,
                    can_queue=quota.queue_on_limit,
                )

            warning: str | None = None
            daily_pct = quota.daily_percent
            monthly_pct = quota.monthly_percent
            if daily_pct >= self._warning_pct or monthly_pct >= self._warning_pct:
                period = "daily" if daily_pct > monthly_pct else "monthly"
                highest = max(daily_pct, monthly_pct)
                warning = f"{ch.value} quota warning: {math.floor(highest + 0.5)}% of {period} limit used"
                log.info("messaging_quota_warning", period=period, percent=_round2(highest))

            QUOTA_DECISIONS.labels(channel=ch.value, decision="allowed").inc()
            return QuotaCheckResult(
                allowed=True, channel=ch, usage=usage, limits=limits, warning=warning
            )
        except Exception:
            QUOTA_DECISIONS.labels(channel=ch.value, decision="fail_open").inc()
            log.exception("messaging_quota_check_failed")
            return QuotaCheckResult(
                allowed=True,
                channel=ch,
                usage=QuotaUsage(),
                limits=DEFAULT_CHANNEL_LIMITS[ch],
                warning=FAIL_OPEN_WARNING,
            )

    # ── Metering ─────────────────────────────────────────────
    async def record_message(self, message: MessageInput) -> MessageLog | None:
        """Persist one log entry; quota counters move only for delivered statuses."""
        log = logger.bind(tenant_id=message.tenant_id, provider=message.provider)
        try:
            ch = parse_channel(message.channel)
            cost = MESSAGE_COSTS[ch] if message.cost_cents is None else message.cost_cents
            entry = MessageLog(
                tenant_id=message.tenant_id,
                channel=ch,
                provider=message.provider,
                status=message.status,
                recipient_hash=hash_recipient(message.recipient),
                message_type=message.message_type,
                cost_cents=cost,
                error_message=message.error_message,
                user_id=message.user_id,
                related_entity_type=message.related_entity_type,
                related_entity_id=message.related_entity_id,
                created_at=self._clock(),
            )
            await self._repo.save_message_log(entry)
            MESSAGES_RECORDED.labels(channel=ch.value, status=message.status.value).inc()

            if entry.delivered:
                await self._get_or_create(message.tenant_id, ch)
                await self._repo.increment_usage(
                    message.tenant_id, ch, messages=1, cost_cents=cost
                )

            log.debug(
                "message_recorded",
                channel=ch.value,
                status=message.status.value,
                cost_cents=cost,
            )
            return entry
        except Exception:
            log.exception("message_record_failed", status=message.status.value)
            return None

    # ── Window resets ────────────────────────────────────────
    async def check_and_reset_counters(self, quota: ChannelQuota) -> ChannelQuota:
        now = self._clock()
        touched = False

        daily_at = _as_utc(quota.daily_reset_at)
        if daily_at.date() != now.date() or now - daily_at > timedelta(hours=24):
            touched = True
            if await self._repo.reset_daily(
                quota.tenant_id, quota.channel, expected_reset_at=quota.daily_reset_at, now=now
            ):
                logger.info(
                    "messaging_quota_daily_reset",
                    tenant_id=quota.tenant_id,
                    channel=quota.channel.value,
                )

        monthly_at = _as_utc(quota.monthly_reset_at)
        if (monthly_at.year, monthly_at.month) != (now.year, now.month):
            touched = True
            if await self._repo.reset_monthly(
                quota.tenant_id, quota.channel, expected_reset_at=quota.monthly_reset_at, now=now
            ):
                logger.info(
                    "messaging_quota_monthly_reset",
                    tenant_id=quota.tenant_id,
                    channel=quota.channel.value,
                )

        if not touched:
            return quota
        return await self._repo.get_quota(quota.tenant_id, quota.channel) or quota

    # ── Administration / reporting ───────────────────────────
    async def get_channel_stats(self, tenant_id: str, channel: MessageChannel | str) -> ChannelStats:
        ch = parse_channel(channel)
        quota = await self._get_or_create(tenant_id, ch)
        quota = await self.check_and_reset_counters(quota)
        return ChannelStats(
            quota=quota,
            daily_percent=_round2(quota.daily_percent),
            monthly_percent=_round2(quota.monthly_percent),
        )

    async def get_all_channel_stats(self, tenant_id: str) -> dict[MessageChannel, ChannelStats]:
        return {ch: await self.get_channel_stats(tenant_id, ch) for ch in MessageChannel}

    async def update_channel_limits(
        self,
        tenant_id: str,
        channel: MessageChannel | str,
        *,
        updated_by: str | None = None,
        **updates: Any,
    ) -> ChannelQuota:
        unknown = set(updates) - QUOTA_FIELDS
        if unknown:
            raise ValueError(f"Unknown quota fields: {', '.join(sorted(unknown))}")
        for name, value in updates.items():
            if name == "queue_on_limit":
                if not isinstance(value, bool):
                    raise ValueError("queue_on_limit must be a boolean")
                continue
            if not isinstance(value, int) or isinstance(value, bool) or value < 0:
                raise ValueError(f"{name} must be a non-negative integer")

        ch = parse_channel(channel)
        await self._get_or_create(tenant_id, ch)
        updated = await self._repo.update_limits(tenant_id, ch, dict(updates))
        if updated is None:
            raise LookupError(f"No {ch.value} quota for tenant {tenant_id!r}")
        logger.info(
            "messaging_limits_updated",
            tenant_id=tenant_id,
            channel=ch.value,
            updated_by=updated_by,
            fields=sorted(updates),
        )
        return updated

    async def get_messaging_breakdown(
        self, tenant_id: str, start: datetime, end: datetime
    ) -> MessagingBreakdown:
        """Message log between ``start`` and ``end`` grouped for analytics."""
        rows = await self._repo.list_message_logs(tenant_id, start=start, end=end)
        return MessagingBreakdown(
            by_channel=_aggregate(rows, lambda e: e.channel.value),
            by_provider=_aggregate(rows, lambda e: e.provider or "unknown"),
            by_status=dict(Counter(e.status.value for e in rows)),
            daily_trend=sorted(
                _aggregate(rows, lambda e: _as_utc(e.created_at).date().isoformat()),
                key=lambda a: a.key,
            ),
        )

    # ── Internals ────────────────────────────────────────────
    async def _get_or_create(self, tenant_id: str, channel: MessageChannel) -> ChannelQuota:
        quota = await self._repo.get_quota(tenant_id, channel)
        if quota is not None:
            return quota
        created = await self._repo.create_quota(
            ChannelQuota.with_defaults(tenant_id, channel, self._clock())
        )
        logger.info("messaging_quota_created", tenant_id=tenant_id, channel=channel.value)
        return created


def _aggregate(
    rows: list[MessageLog], key: Callable[[MessageLog], str]
) -> list[MessagingAggregate]:
    """Delivered entries count as sent (with cost); FAILED as failed; others only by status."""
    totals: dict[str, list[int]] = defaultdict(lambda: [0, 0, 0])
    for row in rows:
        bucket = totals[key(row)]
        if row.delivered:
            bucket[0] += 1
            bucket[2] += row.cost_cents
        elif row.status == MessageStatus.FAILED:
            bucket[1] += 1
    return [
        MessagingAggregate(key=k, sent=v[0], failed=v[1], cost_cents=v[2])
        for k, v in totals.items()
    ]
