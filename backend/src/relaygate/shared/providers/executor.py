"""Failover executor — ordered attempts with retries, backoff and deadlines.

For each provider in order: skip it when its circuit is not eligible,
otherwise retry it sequentially (tenacity) while the adapter reports a
retryable error.  A non-retryable error moves on immediately without
sleeping.  One failed attempt sequence counts as one circuit failure, no
matter how many retries it used.

A descriptor's own ``max_retries`` (when set) overrides the call-wide
value.  The half-open trial claim is held for the provider's worst-case
sequence: every attempt timing out plus every backoff.

The executor never raises for vendor failures; every outcome comes back as
an ``ExecutionOutcome``.
"""

from __future__ import annotations

import asyncio
import time
from typing import Awaitable, Callable, Sequence

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_result,
    stop_after_attempt,
    wait_exponential,
)

from relaygate.ports.outbound import ProviderAdapter
from relaygate.shared.observability.metrics import (
    ALL_PROVIDERS_FAILED,
    FAILOVERS_TOTAL,
    PROVIDER_ATTEMPTS,
    PROVIDER_LATENCY,
)
from relaygate.shared.providers.circuit_breaker import HealthTracker
from relaygate.shared.providers.registry import ProviderRegistry
from relaygate.shared.providers.types import (
    AdapterError,
    ExecutionOutcome,
    NormalizedResult,
    ProviderRequest,
)

logger = structlog.get_logger(__name__)

Sleep = Callable[[float], Awaitable[None]]

ALL_PROVIDERS_FAILED_CODE = "ALL_PROVIDERS_FAILED"


def _should_retry(result: NormalizedResult) -> bool:
    return not result.success and result.retryable


def _last_result(retry_state: RetryCallState) -> NormalizedResult:
    """Hand back the final failed result instead of raising RetryError."""
    assert retry_state.outcome is not None
    return retry_state.outcome.result()


class FailoverExecutor:
    """Runs one request across an ordered list of provider codes."""

    def __init__(
        self,
        registry: ProviderRegistry,
        health: HealthTracker,
        *,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._registry = registry
        self._health = health
        self._sleep = sleep

    async def execute(
        self,
        request: ProviderRequest,
        ordered_providers: Sequence[str],
        *,
        max_retries: int = 3,
        base_delay_s: float = 1.0,
    ) -> ExecutionOutcome:
        attempted: list[str] = []
        total_attempts = 0
        last_error: AdapterError | None = None

        for index, code in enumerate(ordered_providers):
            adapter = self._registry.get(code)
            if adapter is None:
                continue
            retries, timeout = self._limits_for(code, max_retries)
            trial_ttl = self.worst_case_duration(retries, timeout, base_delay_s)
            if not await self._health.is_eligible(code, trial_ttl_s=trial_ttl):
                continue

            attempted.append(code)
            result, attempts = await self._try_provider(
                code, adapter, request, max_retries=retries, base_delay_s=base_delay_s
            )
            total_attempts += attempts

            if result.success:
                await self._health.record_success(code)
                was_failover = index > 0
                if was_failover:
                    FAILOVERS_TOTAL.labels(provider=code).inc()
                    logger.info(
                        "provider_failover_success",
                        provider=code,
                        position=index,
                        failed_providers=attempted[:-1],
                    )
                return ExecutionOutcome(
                    success=True,
                    result=result,
                    used_provider=code,
                    was_failover=was_failover,
                    attempted=attempted,
                    attempts=total_attempts,
                )

            last_error = result.error
            await self._health.record_failure(code)
            logger.warning(
                "provider_exhausted",
                provider=code,
                attempts=attempts,
                error_code=last_error.code if last_error else None,
                retryable=last_error.retryable if last_error else None,
            )

        ALL_PROVIDERS_FAILED.inc()
        message = "All providers failed"
        if last_error is not None:
            message = f"All providers failed; last error {last_error.code}: {last_error.message}"
        elif not attempted:
            message = "No eligible provider available"
        logger.error(
            "all_providers_failed",
            attempted=attempted,
            order=list(ordered_providers),
            last_error=last_error.code if last_error else None,
        )
        return ExecutionOutcome(
            success=False,
            used_provider=attempted[-1] if attempted else None,
            was_failover=len(attempted) > 1,
            attempted=attempted,
            attempts=total_attempts,
            error=AdapterError(code=ALL_PROVIDERS_FAILED_CODE, message=message, retryable=False),
            result=NormalizedResult(success=False, error=last_error) if last_error else None,
        )

    # ── Per-provider limits ──────────────────────────────────
    def _limits_for(self, code: str, max_retries: int) -> tuple[int, float]:
        """(attempts, per-attempt timeout); the descriptor overrides the call default."""
        descriptor = self._registry.descriptor(code)
        configured = descriptor.config.max_retries if descriptor else None
        retries = max_retries if configured is None else configured
        return max(1, retries), self._timeout_for(code)

    def _timeout_for(self, code: str) -> float:
        descriptor = self._registry.descriptor(code)
        if descriptor is None:
            return self._registry.factory_config.execute_timeout_s
        return descriptor.config.timeout_s

    @staticmethod
    def worst_case_duration(retries: int, timeout_s: float, base_delay_s: float) -> float:
        """Every attempt timing out plus every backoff between them."""
        backoff = sum(base_delay_s * 2**i for i in range(retries - 1))
        return retries * timeout_s + backoff

    # ── Provider-level attempt sequence ──────────────────────
    async def _try_provider(
        self,
        code: str,
        adapter: ProviderAdapter,
        request: ProviderRequest,
        *,
        max_retries: int,
        base_delay_s: float,
    ) -> tuple[NormalizedResult, int]:
        attempts = 0

        async def _attempt() -> NormalizedResult:
            nonlocal attempts
            attempts += 1
            return await self._attempt_once(code, adapter, request, attempts)

        def _before_sleep(retry_state: RetryCallState) -> None:
            delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
            logger.info(
                "provider_retry_scheduled",
                provider=code,
                attempt=retry_state.attempt_number,
                delay_s=delay,
            )

        retrying = AsyncRetrying(
            stop=stop_after_attempt(max_retries),
            wait=wait_exponential(multiplier=base_delay_s, exp_base=2),
            retry=retry_if_result(_should_retry),
            retry_error_callback=_last_result,
            before_sleep=_before_sleep,
            sleep=self._sleep,
        )
        result = await retrying(_attempt)
        return result, attempts

    async def _attempt_once(
        self,
        code: str,
        adapter: ProviderAdapter,
        request: ProviderRequest,
        attempt: int,
    ) -> NormalizedResult:
        timeout = self._timeout_for(code)
        log = logger.bind(provider=code, attempt=attempt)

        start = time.monotonic()
        try:
            result = await asyncio.wait_for(adapter.execute(request), timeout=timeout)
        except asyncio.TimeoutError:
            latency_ms = (time.monotonic() - start) * 1000
            result = NormalizedResult.failure(
                "TIMEOUT", f"Timeout after {timeout}s", retryable=True, latency_ms=latency_ms
            )
        except Exception as exc:
            latency_ms = (time.monotonic() - start) * 1000
            result = NormalizedResult.failure(
                "ADAPTER_EXCEPTION",
                f"{type(exc).__name__}: {exc}",
                retryable=True,
                latency_ms=latency_ms,
            )

        elapsed = time.monotonic() - start
        PROVIDER_LATENCY.labels(provider=code).observe(elapsed)
        if not result.latency_ms:
            result.latency_ms = elapsed * 1000
        await self._health.record_request(
            code,
            success=result.success,
            latency_ms=result.latency_ms,
            error_message=result.error.message if result.error else None,
        )

        if result.success:
            PROVIDER_ATTEMPTS.labels(provider=code, outcome="success").inc()
            log.info("provider_request_success", latency_ms=float(f"{result.latency_ms:.1f}"))
        else:
            outcome = "retryable" if result.retryable else "fatal"
            PROVIDER_ATTEMPTS.labels(provider=code, outcome=outcome).inc()
            log.warning(
                "provider_request_failed",
                error_code=result.error.code if result.error else None,
                error=result.error.message if result.error else None,
                retryable=result.retryable,
            )
        return result
