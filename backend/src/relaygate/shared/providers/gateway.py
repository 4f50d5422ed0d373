"""Provider gateway — the single entry-point for vendor calls.

Composes the tenant rate limiter, the messaging quota guard, the budget
guard, the provider registry, the health tracker and the failover executor.
Callers hand in a tenant and a request; the gateway admits or refuses it,
runs it across providers, and writes exactly one usage row per call,
whatever the outcome.  Message requests also get one message log entry
when a quota guard is configured.

Usage::

    gateway = ProviderGateway(registry, health, budget_guard=guard)
    await gateway.init(descriptors)

    result = await gateway.call("tenant-1", CompletionRequest(messages=...))
    if not result.success:
        ...  # or result.raise_for_error()
"""

from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Iterable

import structlog

from relaygate.domain.entities import UsageRecord
from relaygate.domain.enums import MessageChannel, MessageStatus, UsageStatus
from relaygate.domain.exceptions import (
    AllProvidersFailedError,
    BudgetDeniedError,
    GatewayError,
    QuotaExceededError,
    RateLimitedError,
)
from relaygate.shared.governance.budget_guard import BudgetCheckResult, BudgetGuard, UsageInput
from relaygate.shared.governance.messaging_quota import MessageInput, MessagingQuotaGuard, parse_channel
from relaygate.shared.providers.circuit_breaker import HealthTracker
from relaygate.shared.providers.executor import FailoverExecutor, Sleep
from relaygate.shared.providers.rate_limit import TenantRateLimiter
from relaygate.shared.providers.registry import ProviderRegistry
from relaygate.shared.providers.types import (
    AdapterError,
    ExecutionOutcome,
    FactoryConfig,
    HealthCheckResult,
    MessageRequest,
    ProviderDescriptor,
    ProviderHealthState,
    ProviderRequest,
)

logger = structlog.get_logger(__name__)

_MESSAGE_STATUS = {
    UsageStatus.SUCCESS: MessageStatus.SENT,
    UsageStatus.FAILED: MessageStatus.FAILED,
    UsageStatus.BLOCKED: MessageStatus.BLOCKED,
    UsageStatus.RATE_LIMITED: MessageStatus.BLOCKED,
}


@dataclass
class GatewayResult:
    """What a caller gets back from ``ProviderGateway.call``.

    ``error`` is the normalized error on failure: ``RATE_LIMITED``,
    ``QUOTA_EXCEEDED``, ``BUDGET_EXCEEDED``, ``NO_PROVIDERS`` or
    ``ALL_PROVIDERS_FAILED``.  On total provider failure
    ``audit_meta["last_error"]`` carries the most recent concrete vendor error.
    ``audit_meta["provider"]`` is set on every path, ``"none"`` when no
    provider could be named.
    """

    success: bool
    payload: dict[str, Any] = field(default_factory=dict)
    error: AdapterError | None = None
    used_provider: str | None = None
    was_failover: bool = False
    audit_meta: dict[str, Any] = field(default_factory=dict)

    def raise_for_error(self) -> GatewayResult:
        if self.success or self.error is None:
            return self
        code = self.error.code
        if code == "BUDGET_EXCEEDED":
            raise BudgetDeniedError(self.error.message)
        if code == "QUOTA_EXCEEDED":
            raise QuotaExceededError(
                self.error.message,
                channel=self.audit_meta.get("quota", {}).get("channel", ""),
                can_queue=bool(self.audit_meta.get("can_queue", False)),
            )
        if code == "RATE_LIMITED":
            raise RateLimitedError(
                self.audit_meta.get("tenant_id", ""),
                int(self.audit_meta.get("rate_limit", 0)),
            )
        if code in ("ALL_PROVIDERS_FAILED", "NO_PROVIDERS"):
            raise AllProvidersFailedError(
                self.audit_meta.get("attempted", []),
                self.audit_meta.get("last_error"),
            )
        raise GatewayError(self.error.message, code=code)


class ProviderGateway:
    """Resilient, governed access to one vendor family."""

    def __init__(
        self,
        registry: ProviderRegistry,
        health: HealthTracker,
        *,
        budget_guard: BudgetGuard | None = None,
        quota_guard: MessagingQuotaGuard | None = None,
        rate_limiter: TenantRateLimiter | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._registry = registry
        self._health = health
        self._budget = budget_guard
        self._quota = quota_guard
        self._limiter = rate_limiter
        self._executor = FailoverExecutor(registry, health, sleep=sleep)

    @property
    def registry(self) -> ProviderRegistry:
        return self._registry

    @property
    def health_tracker(self) -> HealthTracker:
        return self._health

    # ── Lifecycle ────────────────────────────────────────────
    async def init(
        self,
        descriptors: Iterable[ProviderDescriptor],
        factory_config: FactoryConfig | None = None,
    ) -> None:
        await self._registry.initialize(descriptors, factory_config)
        await self._sync_health()

    async def reload(self, descriptors: Iterable[ProviderDescriptor]) -> None:
        await self._registry.reload(descriptors)
        await self._sync_health()

    async def shutdown(self) -> None:
        await self._registry.shutdown()

    async def _sync_health(self) -> None:
        """One health state per registered code; drop states of removed providers."""
        current = set(self._registry.codes)
        for code in self._health.codes:
            if code not in current:
                await self._health.unregister(code)
        for code in self._registry.codes:
            await self._health.register(code)

    # ── Main entry-point ─────────────────────────────────────
    async def call(
        self,
        tenant_id: str,
        request: ProviderRequest,
        *,
        preferred: str | None = None,
        source: str = "API",
        user_id: str | None = None,
    ) -> GatewayResult:
        request_id = uuid.uuid4().hex
        log = logger.bind(
            request_id=request_id,
            tenant_id=tenant_id,
            family=self._registry.family.value,
        )
        start = time.monotonic()
        meta: dict[str, Any] = {
            "request_id": request_id,
            "tenant_id": tenant_id,
            "source": source,
            "attempted": [],
            "attempts": 0,
        }
        hint = preferred if preferred in self._registry else self._registry.primary
        model = request.model or self._configured_model(hint)

        # ── Rate limit ──
        if self._limiter is not None and not self._limiter.try_acquire(tenant_id):
            error = AdapterError(
                code="RATE_LIMITED",
                message=f"Rate limit of {self._limiter.limit} requests per minute exceeded",
                retryable=True,
            )
            meta["rate_limit"] = self._limiter.limit
            meta["provider"] = hint or "none"
            await self._record(
                tenant_id, meta["provider"], model, UsageStatus.RATE_LIMITED,
                request=request, source=source, user_id=user_id, error_message=error.message,
            )
            log.warning("gateway_rate_limited")
            return self._finish(GatewayResult(success=False, error=error, audit_meta=meta), start)

        # ── Messaging quota ──
        channel = self._message_channel(request) if self._quota is not None else None
        if self._quota is not None and channel is not None:
            quota = await self._quota.check_quota(tenant_id, channel, request.estimated_units)
            meta["quota"] = {
                "channel": quota.channel.value,
                "daily_used": quota.usage.daily,
                "monthly_used": quota.usage.monthly,
                "daily_limit": quota.limits.daily_limit,
                "monthly_limit": quota.limits.monthly_limit,
            }
            meta["quota_warning"] = quota.warning
            if not quota.allowed:
                reason = quota.reason or "messaging quota exceeded"
                meta["can_queue"] = quota.can_queue
                meta["provider"] = hint or "none"
                await self._record(
                    tenant_id, meta["provider"], model, UsageStatus.BLOCKED,
                    request=request, source=source, user_id=user_id, error_message=reason,
                )
                log.warning("gateway_quota_denied", reason=reason, can_queue=quota.can_queue)
                return self._finish(
                    GatewayResult(
                        success=False,
                        error=AdapterError(code="QUOTA_EXCEEDED", message=reason, retryable=False),
                        audit_meta=meta,
                    ),
                    start,
                )

        # ── Budget admission ──
        check: BudgetCheckResult | None = None
        if self._budget is not None:
            check = await self._budget.check_budget(
                tenant_id,
                request.estimated_units,
                provider=hint,
                model=model or None,
            )
            meta["budget_warning"] = check.warning
            meta["utilization"] = {
                "daily_percent": check.utilization.daily_percent,
                "monthly_percent": check.utilization.monthly_percent,
            }
            meta["estimated_cost_cents"] = check.estimated_cost_cents
            if not check.allowed:
                reason = check.reason or "budget exceeded"
                meta["provider"] = hint or "none"
                await self._record(
                    tenant_id, meta["provider"], model, UsageStatus.BLOCKED,
                    request=request, source=source, user_id=user_id, error_message=reason,
                )
                log.warning("gateway_budget_denied", reason=reason)
                return self._finish(
                    GatewayResult(
                        success=False,
                        error=AdapterError(code="BUDGET_EXCEEDED", message=reason, retryable=False),
                        audit_meta=meta,
                    ),
                    start,
                )

        # ── Failover execution ──
        order = self._registry.get_order(preferred)
        if not order:
            error = AdapterError(
                code="NO_PROVIDERS",
                message=f"No {self._registry.family.value} providers are registered",
                retryable=False,
            )
            meta["provider"] = "none"
            await self._record(
                tenant_id, "none", model, UsageStatus.FAILED,
                request=request, source=source, user_id=user_id, error_message=error.message,
            )
            log.error("gateway_no_providers")
            return self._finish(GatewayResult(success=False, error=error, audit_meta=meta), start)

        factory = self._registry.factory_config
        outcome = await self._executor.execute(
            request,
            order,
            max_retries=factory.max_retries,
            base_delay_s=factory.base_delay_s,
        )
        meta["attempted"] = list(outcome.attempted)
        meta["attempts"] = outcome.attempts

        return self._finish(
            await self._complete(tenant_id, request, outcome, meta, source=source, user_id=user_id),
            start,
        )

    async def _complete(
        self,
        tenant_id: str,
        request: ProviderRequest,
        outcome: ExecutionOutcome,
        meta: dict[str, Any],
        *,
        source: str,
        user_id: str | None,
    ) -> GatewayResult:
        result = outcome.result
        provider = outcome.used_provider or "none"
        model = (result.model if result else "") or request.model or self._configured_model(provider)
        meta["provider"] = provider

        if outcome.success and result is not None:
            record = await self._record(
                tenant_id, provider, model, UsageStatus.SUCCESS,
                request=request,
                source=source,
                user_id=user_id,
                prompt_tokens=result.prompt_tokens,
                completion_tokens=result.completion_tokens,
                message_count=result.message_count,
                latency_ms=result.latency_ms,
                was_failover=outcome.was_failover,
            )
            meta["actual_cost_cents"] = record.cost_cents if record else None
            return GatewayResult(
                success=True,
                payload=result.payload,
                used_provider=outcome.used_provider,
                was_failover=outcome.was_failover,
                audit_meta=meta,
            )

        last_error = result.error if result else None
        meta["last_error"] = last_error
        await self._record(
            tenant_id, provider, model, UsageStatus.FAILED,
            request=request,
            source=source,
            user_id=user_id,
            was_failover=outcome.was_failover,
            error_message=outcome.error.message if outcome.error else None,
        )
        return GatewayResult(
            success=False,
            error=outcome.error,
            used_provider=outcome.used_provider,
            was_failover=outcome.was_failover,
            audit_meta=meta,
        )

    # ── Order / health surface ───────────────────────────────
    async def get_order(self, preferred: str | None = None) -> list[str]:
        """Registry order without providers whose circuit is open (no trial claim)."""
        order = self._registry.get_order(preferred)
        return [code for code in order if await self._health.peek_available(code)]

    async def health(self) -> list[ProviderHealthState]:
        return await self._health.snapshots()

    async def recommended_provider(self) -> str | None:
        """Best-graded provider that can take traffic, ties broken by registry order."""
        return await self._health.recommended_provider(self._registry.get_order())

    async def dashboard(self) -> dict[str, Any]:
        stats = await self._health.dashboard_stats()
        stats["family"] = self._registry.family.value
        stats["recommended"] = await self.recommended_provider()
        return stats

    async def reset_window_metrics(self) -> None:
        """Start a fresh metrics window; circuit state is untouched."""
        await self._health.reset_window_metrics()

    async def run_health_checks(self) -> dict[str, HealthCheckResult]:
        """Probe every provider concurrently; never raises."""
        codes = self._registry.codes
        timeout = self._registry.factory_config.health_check_timeout_s
        results = await asyncio.gather(*(self._probe(code, timeout) for code in codes))
        return dict(zip(codes, results))

    async def _probe(self, code: str, timeout: float) -> HealthCheckResult:
        adapter = self._registry.get(code)
        if adapter is None:
            return HealthCheckResult(is_healthy=False, latency_ms=0.0, message="Provider not registered")
        start = time.monotonic()
        try:
            result = await asyncio.wait_for(adapter.health_check(), timeout=timeout)
        except asyncio.TimeoutError:
            result = HealthCheckResult(
                is_healthy=False,
                latency_ms=(time.monotonic() - start) * 1000,
                message=f"Health check timed out after {timeout}s",
            )
        except Exception as exc:
            result = HealthCheckResult(
                is_healthy=False,
                latency_ms=(time.monotonic() - start) * 1000,
                message=f"{type(exc).__name__}: {exc}",
            )
        logger.info(
            "provider_health_check",
            provider=code,
            healthy=result.is_healthy,
            latency_ms=float(f"{result.latency_ms:.1f}"),
        )
        return result

    async def reset_provider(self, code: str) -> bool:
        if code not in self._registry:
            return False
        await self._health.reset(code)
        return True

    # ── Internals ────────────────────────────────────────────
    def _configured_model(self, code: str | None) -> str:
        descriptor = self._registry.descriptor(code) if code else None
        if descriptor is None:
            return ""
        return getattr(descriptor.config, "model", None) or ""

    async def _record(
        self,
        tenant_id: str,
        provider: str,
        model: str,
        status: UsageStatus,
        *,
        request: ProviderRequest,
        source: str,
        user_id: str | None,
        prompt_tokens: int = 0,
        completion_tokens: int = 0,
        message_count: int = 0,
        latency_ms: float = 0.0,
        was_failover: bool = False,
        error_message: str | None = None,
    ) -> UsageRecord | None:
        """One usage row per call and, for messages, one message log entry."""
        record: UsageRecord | None = None
        if self._budget is not None:
            record = await self._budget.record_usage(
                UsageInput(
                    tenant_id=tenant_id,
                    provider=provider,
                    model=model,
                    status=status,
                    prompt_tokens=prompt_tokens,
                    completion_tokens=completion_tokens,
                    message_count=message_count,
                    latency_ms=int(latency_ms),
                    was_failover=was_failover,
                    source=source,
                    error_message=error_message,
                    user_id=user_id,
                )
            )
        channel = self._message_channel(request) if self._quota is not None else None
        if self._quota is not None and channel is not None:
            assert isinstance(request, MessageRequest)
            await self._quota.record_message(
                MessageInput(
                    tenant_id=tenant_id,
                    channel=channel,
                    provider=provider,
                    recipient=request.to,
                    status=_MESSAGE_STATUS[status],
                    message_type="TEMPLATE" if request.template_name else "TEXT",
                    cost_cents=(record.cost_cents if record else None)
                    if status == UsageStatus.SUCCESS
                    else 0,
                    error_message=error_message,
                    user_id=user_id,
                )
            )
        return record

    @staticmethod
    def _message_channel(request: ProviderRequest) -> MessageChannel | None:
        """Known channel of a message request; ``None`` for completions."""
        if not isinstance(request, MessageRequest):
            return None
        try:
            return parse_channel(request.channel)
        except ValueError:
            logger.warning("message_channel_unknown", channel=request.channel)
            return None

    @staticmethod
    def _finish(result: GatewayResult, start: float) -> GatewayResult:
        result.audit_meta["latency_ms"] = int((time.monotonic() - start) * 1000)
        log = logger.bind(
            request_id=result.audit_meta.get("request_id"),
            tenant_id=result.audit_meta.get("tenant_id"),
        )
        if result.success:
            log.info(
                "gateway_call_completed",
                provider=result.used_provider,
                failover=result.was_failover,
                latency_ms=result.audit_meta["latency_ms"],
            )
        else:
            log.warning(
                "gateway_call_failed",
                error_code=result.error.code if result.error else None,
                attempted=result.audit_meta.get("attempted"),
            )
        return result
