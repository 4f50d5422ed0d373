"""Budget guard — per-tenant admission checks and post-call metering.

Admission (``check_budget``) denies only when the tenant runs in hard-stop
mode; otherwise over-budget tenants receive warnings.  Errors inside the
check fail open.  Metering (``record_usage``) always writes one usage row and
moves counters only for successful calls; its errors are logged and
swallowed.

Daily and monthly windows are reset lazily on access.  Each reset is a
conditional update keyed on the previously observed reset stamp, so it is
applied exactly once per boundary no matter how many callers race on it.
"""

from __future__ import annotations

import math
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

import structlog

from relaygate.domain.entities import (
    LIMIT_FIELDS,
    BudgetCounter,
    BudgetDefaults,
    CounterDelta,
    UsageRecord,
)
from relaygate.domain.enums import BudgetPeriod, NotificationKind, UsageStatus
from relaygate.ports.outbound import BudgetNotifier, BudgetRepository
from relaygate.shared.governance.cost_rates import CostCalculation, CostRateCache, calculate_cost
from relaygate.shared.observability.metrics import (
    BUDGET_DECISIONS,
    USAGE_COST_CENTS,
    USAGE_RECORDS,
)

logger = structlog.get_logger(__name__)

DEFAULT_ESTIMATED_UNITS = 2000
AVERAGE_COST_PER_1K_CENTS = 200
NOTIFICATION_INTERVAL = timedelta(hours=1)

REASON_DAILY_BUDGET = "daily budget exceeded"
REASON_MONTHLY_BUDGET = "monthly budget exceeded"
REASON_DAILY_REQUESTS = "daily request limit exceeded"
FAIL_OPEN_WARNING = "Budget check failed; request allowed without governance."


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _round2(value: float) -> float:
    return math.floor(value * 100 + 0.5) / 100


# ═══════════════════════════════════════════════════════════════
#  Result types
# ═══════════════════════════════════════════════════════════════
@dataclass(frozen=True)
class BudgetUtilization:
    daily_percent: float = 0.0
    monthly_percent: float = 0.0


@dataclass(frozen=True)
class BudgetCheckResult:
    allowed: bool
    utilization: BudgetUtilization = field(default_factory=BudgetUtilization)
    estimated_cost_cents: int = 0
    reason: str | None = None
    warning: str | None = None


@dataclass(frozen=True)
class UsageInput:
    """One completed (or refused) call, as reported by the gateway."""

    tenant_id: str
    provider: str
    model: str
    status: UsageStatus
    prompt_tokens: int = 0
    completion_tokens: int = 0
    message_count: int = 0
    latency_ms: int = 0
    was_failover: bool = False
    source: str = "API"
    error_message: str | None = None
    user_id: str | None = None


@dataclass(frozen=True)
class PeriodUsage:
    requests: int = 0
    tokens: int = 0
    cost_cents: int = 0


@dataclass(frozen=True)
class TenantUsageStats:
    counter: BudgetCounter
    today: PeriodUsage
    month: PeriodUsage
    utilization: BudgetUtilization


@dataclass(frozen=True)
class UsageAggregate:
    key: str
    requests: int = 0
    tokens: int = 0
    cost_cents: int = 0


@dataclass(frozen=True)
class UsageBreakdown:
    by_provider: list[UsageAggregate]
    by_model: list[UsageAggregate]
    by_source: list[UsageAggregate]
    daily_trend: list[UsageAggregate]


class LoggingBudgetNotifier(BudgetNotifier):
    """Notifier that only writes structured log events."""

    async def notify(
        self,
        tenant_id: str,
        kind: NotificationKind,
        *,
        period: str,
        percent: float,
    ) -> None:
        event = "budget_limit_notification" if kind == NotificationKind.LIMIT else "budget_warning_notification"
        logger.warning(event, tenant_id=tenant_id, period=period, percent=_round2(percent))


# ═══════════════════════════════════════════════════════════════
#  Budget guard
# ═══════════════════════════════════════════════════════════════
class BudgetGuard:
    def __init__(
        self,
        repository: BudgetRepository,
        rates: CostRateCache,
        *,
        defaults: BudgetDefaults | None = None,
        notifier: BudgetNotifier | None = None,
        average_cost_per_1k_cents: int = AVERAGE_COST_PER_1K_CENTS,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._repo = repository
        self._rates = rates
        self._defaults = defaults or BudgetDefaults()
        self._notifier = notifier or LoggingBudgetNotifier()
        self._avg_rate = average_cost_per_1k_cents
        self._clock = clock

    # ── Admission ────────────────────────────────────────────
    async def check_budget(
        self,
        tenant_id: str,
        estimated_units: int = DEFAULT_ESTIMATED_UNITS,
        *,
        provider: str | None = None,
        model: str | None = None,
    ) -> BudgetCheckResult:
        log = logger.bind(tenant_id=tenant_id)
        try:
            counter = await self._get_or_create(tenant_id)
            counter = await self.check_and_reset_counters(counter)
            estimated = await self.estimate_cost(estimated_units, provider=provider, model=model)

            daily_pct = counter.daily_percent
            monthly_pct = counter.monthly_percent
            utilization = BudgetUtilization(_round2(daily_pct), _round2(monthly_pct))

            if counter.hard_stop:
                reason, period = self._hard_stop_reason(counter)
                if reason is not None:
                    if period is not None:
                        percent = daily_pct if period == BudgetPeriod.DAILY else monthly_pct
                        await self._notify(counter, NotificationKind.LIMIT, period, percent)
                    BUDGET_DECISIONS.labels(decision="denied").inc()
                    log.warning("budget_denied", reason=reason, daily_percent=utilization.daily_percent)
                    return BudgetCheckResult(
                        allowed=False,
                        utilization=utilization,
                        estimated_cost_cents=estimated,
                        reason=reason,
                    )

            warning: str | None = None
            threshold = counter.warning_threshold_percent or self._defaults.warning_threshold_percent
            if daily_pct >= threshold or monthly_pct >= threshold:
                period = BudgetPeriod.DAILY if daily_pct > monthly_pct else BudgetPeriod.MONTHLY
                highest = max(daily_pct, monthly_pct)
                warning = f"AI budget warning: {math.floor(highest + 0.5)}% of {period.value} limit used."
                await self._notify(counter, NotificationKind.WARNING, period, highest)

            BUDGET_DECISIONS.labels(decision="allowed").inc()
            return BudgetCheckResult(
                allowed=True,
                utilization=utilization,
                estimated_cost_cents=estimated,
                warning=warning,
            )
        except Exception:
            BUDGET_DECISIONS.labels(decision="fail_open").inc()
            log.exception("budget_check_failed")
            return BudgetCheckResult(allowed=True, warning=FAIL_OPEN_WARNING)

    @staticmethod
    def _hard_stop_reason(counter: BudgetCounter) -> tuple[str | None, BudgetPeriod | None]:
        if counter.daily_budget_cents > 0 and counter.cost_today_cents >= counter.daily_budget_cents:
            return REASON_DAILY_BUDGET, BudgetPeriod.DAILY
        if counter.monthly_budget_cents > 0 and counter.cost_this_month_cents >= counter.monthly_budget_cents:
            return REASON_MONTHLY_BUDGET, BudgetPeriod.MONTHLY
        if counter.daily_request_limit > 0 and counter.requests_today >= counter.daily_request_limit:
            return REASON_DAILY_REQUESTS, None
        return None, None

    async def estimate_cost(
        self,
        estimated_units: int,
        *,
        provider: str | None = None,
        model: str | None = None,
    ) -> int:
        """Pre-call estimate: the known provider/model rate, else the average rate."""
        if provider and model:
            rate = await self._rates.lookup(provider, model)
            if rate is not None:
                if rate.per_message_cents:
                    return estimated_units * rate.per_message_cents
                per_1k = (rate.prompt_cost_per_1k_cents + rate.completion_cost_per_1k_cents) / 2
                return math.ceil(estimated_units / 1000 * per_1k)
        return math.ceil(estimated_units / 1000 * self._avg_rate)

    # ── Metering ─────────────────────────────────────────────
    async def record_usage(self, usage: UsageInput) -> UsageRecord | None:
        """Persist one usage row; counters move only for SUCCESS."""
        log = logger.bind(tenant_id=usage.tenant_id, provider=usage.provider)
        try:
            cost = await self.calculate_cost(
                usage.provider,
                usage.model,
                prompt_tokens=usage.prompt_tokens,
                completion_tokens=usage.completion_tokens,
                message_count=usage.message_count,
            )
            record = UsageRecord(
                tenant_id=usage.tenant_id,
                provider=usage.provider,
                model=usage.model,
                status=usage.status,
                cost_cents=cost.total_cost_cents,
                prompt_tokens=usage.prompt_tokens,
                completion_tokens=usage.completion_tokens,
                message_count=usage.message_count,
                latency_ms=usage.latency_ms,
                was_failover=usage.was_failover,
                source=usage.source,
                error_message=usage.error_message,
                user_id=usage.user_id,
                created_at=self._clock(),
            )
            await self._repo.save_usage_record(record)
            USAGE_RECORDS.labels(status=usage.status.value).inc()

            if usage.status == UsageStatus.SUCCESS:
                await self._get_or_create(usage.tenant_id)
                await self._repo.increment_counters(
                    usage.tenant_id,
                    CounterDelta(
                        cost_cents=cost.total_cost_cents,
                        requests=1,
                        tokens=record.total_tokens,
                    ),
                )
                USAGE_COST_CENTS.labels(provider=usage.provider).inc(cost.total_cost_cents)

            log.debug(
                "usage_recorded",
                status=usage.status.value,
                model=usage.model,
                cost_cents=cost.total_cost_cents,
                tokens=record.total_tokens,
            )
            return record
        except Exception:
            log.exception("usage_record_failed", status=usage.status.value)
            return None

    async def calculate_cost(
        self,
        provider: str,
        model: str,
        *,
        prompt_tokens: int = 0,
        completion_tokens: int = 0,
        message_count: int = 0,
    ) -> CostCalculation:
        rate = await self._rates.get_rate(provider, model)
        return calculate_cost(
            rate,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            message_count=message_count,
        )

    # ── Window resets ────────────────────────────────────────
    async def check_and_reset_counters(self, counter: BudgetCounter) -> BudgetCounter:
        """Apply any pending daily/monthly reset and return the current counter."""
        now = self._clock()
        touched = False

        daily_at = _as_utc(counter.daily_reset_at)
        if daily_at.date() != now.date() or now - daily_at > timedelta(hours=24):
            touched = True
            if await self._repo.reset_daily(
                counter.tenant_id, expected_reset_at=counter.daily_reset_at, now=now
            ):
                logger.info("budget_daily_reset", tenant_id=counter.tenant_id)

        monthly_at = _as_utc(counter.monthly_reset_at)
        if (monthly_at.year, monthly_at.month) != (now.year, now.month):
            touched = True
            if await self._repo.reset_monthly(
                counter.tenant_id, expected_reset_at=counter.monthly_reset_at, now=now
            ):
                logger.info("budget_monthly_reset", tenant_id=counter.tenant_id)

        if not touched:
            return counter
        # Another caller may have won the reset; either way re-read.
        return await self._repo.get_counter(counter.tenant_id) or counter

    # ── Administration / reporting ───────────────────────────
    async def get_tenant_usage_stats(self, tenant_id: str) -> TenantUsageStats:
        counter = await self._get_or_create(tenant_id)
        counter = await self.check_and_reset_counters(counter)
        now = self._clock()

        month_rows = await self._repo.list_usage(
            tenant_id,
            start=counter.monthly_reset_at,
            end=now,
            status=UsageStatus.SUCCESS.value,
        )
        daily_at = _as_utc(counter.daily_reset_at)
        today_tokens = sum(r.total_tokens for r in month_rows if _as_utc(r.created_at) >= daily_at)

        return TenantUsageStats(
            counter=counter,
            today=PeriodUsage(
                requests=counter.requests_today,
                tokens=today_tokens,
                cost_cents=counter.cost_today_cents,
            ),
            month=PeriodUsage(
                requests=len(month_rows),
                tokens=counter.tokens_used_this_month,
                cost_cents=counter.cost_this_month_cents,
            ),
            utilization=BudgetUtilization(
                _round2(counter.daily_percent), _round2(counter.monthly_percent)
            ),
        )

    async def update_tenant_limits(
        self,
        tenant_id: str,
        *,
        updated_by: str | None = None,
        **updates: Any,
    ) -> BudgetCounter:
        unknown = set(updates) - LIMIT_FIELDS
        if unknown:
            raise ValueError(f"Unknown limit fields: {', '.join(sorted(unknown))}")
        for name, value in updates.items():
            if name == "hard_stop":
                if not isinstance(value, bool):
                    raise ValueError("hard_stop must be a boolean")
                continue
            if not isinstance(value, int) or isinstance(value, bool) or value < 0:
                raise ValueError(f"{name} must be a non-negative integer")
        if updates.get("warning_threshold_percent", 0) > 100:
            raise ValueError("warning_threshold_percent must be between 0 and 100")

        await self._get_or_create(tenant_id)
        updated = await self._repo.update_limits(tenant_id, dict(updates))
        if updated is None:
            raise LookupError(f"No budget counter for tenant {tenant_id!r}")
        logger.info(
            "budget_limits_updated",
            tenant_id=tenant_id,
            updated_by=updated_by,
            fields=sorted(updates),
        )
        return updated

    async def get_usage_breakdown(
        self, tenant_id: str, start: datetime, end: datetime
    ) -> UsageBreakdown:
        """Successful usage between ``start`` and ``end`` grouped for analytics."""
        rows = await self._repo.list_usage(
            tenant_id, start=start, end=end, status=UsageStatus.SUCCESS.value
        )
        return UsageBreakdown(
            by_provider=_aggregate(rows, lambda r: r.provider or "unknown"),
            by_model=_aggregate(rows, lambda r: r.model or "unknown"),
            by_source=_aggregate(rows, lambda r: r.source or "unknown"),
            daily_trend=sorted(
                _aggregate(rows, lambda r: _as_utc(r.created_at).date().isoformat()),
                key=lambda a: a.key,
            ),
        )

    # ── Internals ────────────────────────────────────────────
    async def _get_or_create(self, tenant_id: str) -> BudgetCounter:
        counter = await self._repo.get_counter(tenant_id)
        if counter is not None:
            return counter
        created = await self._repo.create_counter(
            BudgetCounter.with_defaults(tenant_id, self._defaults, self._clock())
        )
        logger.info("budget_counter_created", tenant_id=tenant_id)
        return created

    async def _notify(
        self,
        counter: BudgetCounter,
        kind: NotificationKind,
        period: BudgetPeriod,
        percent: float,
    ) -> None:
        """At most one notification per tenant per kind per interval."""
        now = self._clock()
        not_after = now - NOTIFICATION_INTERVAL
        last = (
            counter.last_limit_notified_at
            if kind == NotificationKind.LIMIT
            else counter.last_warning_notified_at
        )
        if last is not None and _as_utc(last) > not_after:
            return
        if not await self._repo.stamp_notification(
            counter.tenant_id, kind, not_after=not_after, now=now
        ):
            return
        await self._notifier.notify(counter.tenant_id, kind, period=period.value, percent=percent)


def _aggregate(
    rows: list[UsageRecord], key: Callable[[UsageRecord], str]
) -> list[UsageAggregate]:
    totals: dict[str, list[int]] = defaultdict(lambda: [0, 0, 0])
    for row in rows:
        bucket = totals[key(row)]
        bucket[0] += 1
        bucket[1] += row.total_tokens
        bucket[2] += row.cost_cents
    return [
        UsageAggregate(key=k, requests=v[0], tokens=v[1], cost_cents=v[2])
        for k, v in totals.items()
    ]
