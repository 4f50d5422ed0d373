"""Tests for FailoverExecutor: ordering, retries, backoff and circuit bookkeeping."""

from __future__ import annotations

import pytest

from conftest import AdapterPool, RecordingSleep, completion
from relaygate.domain.enums import CircuitState, ProviderFamily
from relaygate.shared.providers.circuit_breaker import HealthTracker
from relaygate.shared.providers.executor import ALL_PROVIDERS_FAILED_CODE, FailoverExecutor
from relaygate.shared.providers.registry import ProviderRegistry
from relaygate.shared.providers.types import LLMProviderConfig, ProviderDescriptor

ORDER = ["primary", "secondary", "tertiary"]


@pytest.fixture
async def executor(registry: ProviderRegistry, health: HealthTracker, sleeper: RecordingSleep) -> FailoverExecutor:
    for code in registry.codes:
        await health.register(code)
    return FailoverExecutor(registry, health, sleep=sleeper)


# ═══════════════════════════════════════════════════════════════
#  Happy path
# ═══════════════════════════════════════════════════════════════
class TestFirstProviderSucceeds:
    @pytest.mark.asyncio
    async def test_primary_serves_without_failover(
        self, executor: FailoverExecutor, pool: AdapterPool, sleeper: RecordingSleep
    ) -> None:
        outcome = await executor.execute(completion(), ORDER)
        assert outcome.success is True
        assert outcome.used_provider == "primary"
        assert outcome.was_failover is False
        assert outcome.attempted == ["primary"]
        assert outcome.attempts == 1
        assert outcome.result.payload == {"content": "hello from primary"}
        assert pool["secondary"].calls == 0
        assert sleeper.delays == []

    @pytest.mark.asyncio
    async def test_success_records_health(self, executor: FailoverExecutor, health: HealthTracker) -> None:
        await health.record_failure("primary")
        await executor.execute(completion(), ORDER)
        snap = await health.snapshot("primary")
        assert snap.consecutive_failures == 0
        assert snap.last_success_at is not None


# ═══════════════════════════════════════════════════════════════
#  Retries and failover
# ═══════════════════════════════════════════════════════════════
class TestRetryAndFailover:
    @pytest.mark.asyncio
    async def test_retryable_errors_back_off_then_fail_over(
        self,
        executor: FailoverExecutor,
        pool: AdapterPool,
        health: HealthTracker,
        sleeper: RecordingSleep,
    ) -> None:
        pool["primary"].script = [500, 500, 500]

        outcome = await executor.execute(completion(), ORDER, max_retries=3, base_delay_s=1.0)

        assert outcome.success is True
        assert outcome.used_provider == "secondary"
        assert outcome.was_failover is True
        assert outcome.attempted == ["primary", "secondary"]
        assert outcome.attempts == 4
        assert pool["primary"].calls == 3
        assert sleeper.delays == [1.0, 2.0]
        # One exhausted sequence counts as a single circuit failure.
        assert (await health.snapshot("primary")).consecutive_failures == 1

    @pytest.mark.asyncio
    async def test_recovers_within_retries(
        self, executor: FailoverExecutor, pool: AdapterPool, sleeper: RecordingSleep
    ) -> None:
        pool["primary"].script = [503, "ok"]
        outcome = await executor.execute(completion(), ORDER)
        assert outcome.used_provider == "primary"
        assert outcome.was_failover is False
        assert outcome.attempts == 2
        assert sleeper.delays == [1.0]

    @pytest.mark.asyncio
    async def test_non_retryable_error_skips_straight_to_next(
        self,
        executor: FailoverExecutor,
        pool: AdapterPool,
        health: HealthTracker,
        sleeper: RecordingSleep,
    ) -> None:
        pool["primary"].script = [401]

        outcome = await executor.execute(completion(), ORDER)

        assert outcome.used_provider == "secondary"
        assert pool["primary"].calls == 1
        assert sleeper.delays == []
        assert (await health.snapshot("primary")).consecutive_failures == 1

    @pytest.mark.asyncio
    async def test_backoff_scales_with_base_delay(
        self, executor: FailoverExecutor, pool: AdapterPool, sleeper: RecordingSleep
    ) -> None:
        pool["primary"].script = [429, 429, 429, 429]
        await executor.execute(completion(), ORDER, max_retries=4, base_delay_s=0.5)
        assert sleeper.delays == [0.5, 1.0, 2.0]

    @pytest.mark.asyncio
    async def test_single_attempt_when_retries_is_one(
        self, executor: FailoverExecutor, pool: AdapterPool, sleeper: RecordingSleep
    ) -> None:
        pool["primary"].script = [500]
        outcome = await executor.execute(completion(), ORDER, max_retries=1)
        assert outcome.used_provider == "secondary"
        assert pool["primary"].calls == 1
        assert sleeper.delays == []

    @pytest.mark.asyncio
    async def test_raised_exception_is_retryable(
        self, executor: FailoverExecutor, pool: AdapterPool, sleeper: RecordingSleep
    ) -> None:
        pool["primary"].script = [RuntimeError("socket closed"), "ok"]
        outcome = await executor.execute(completion(), ORDER)
        assert outcome.used_provider == "primary"
        assert outcome.attempts == 2
        assert sleeper.delays == [1.0]

    @pytest.mark.asyncio
    async def test_timeout_becomes_retryable_failure(self, health: HealthTracker, sleeper: RecordingSleep) -> None:
        pool = AdapterPool("slow", "fast")
        pool["slow"].script = ["hang", "hang"]
        reg = ProviderRegistry(pool.factories(), family=ProviderFamily.LLM)
        await reg.initialize(
            [
                ProviderDescriptor(
                    code="slow",
                    display_name="Slow",
                    config=LLMProviderConfig(api_key="k", timeout_s=0.01),
                    is_primary=True,
                ),
                ProviderDescriptor(code="fast", display_name="Fast", config=LLMProviderConfig(api_key="k")),
            ]
        )
        executor = FailoverExecutor(reg, health, sleep=sleeper)

        outcome = await executor.execute(completion(), ["slow", "fast"], max_retries=2)

        assert outcome.used_provider == "fast"
        assert pool["slow"].calls == 2
        assert sleeper.delays == [1.0]

    @pytest.mark.asyncio
    async def test_descriptor_retries_override_call_default(
        self, health: HealthTracker, sleeper: RecordingSleep
    ) -> None:
        pool = AdapterPool("once", "many", "backup")
        pool["once"].script = [500, 500, 500]
        pool["many"].script = [503, 503, 503, "ok"]
        reg = ProviderRegistry(pool.factories(), family=ProviderFamily.LLM)
        await reg.initialize(
            [
                ProviderDescriptor(
                    code="once",
                    display_name="Once",
                    config=LLMProviderConfig(api_key="k", max_retries=1),
                    is_primary=True,
                ),
                ProviderDescriptor(
                    code="many",
                    display_name="Many",
                    config=LLMProviderConfig(api_key="k", max_retries=4),
                ),
                ProviderDescriptor(code="backup", display_name="Backup", config=LLMProviderConfig(api_key="k")),
            ]
        )
        executor = FailoverExecutor(reg, health, sleep=sleeper)

        outcome = await executor.execute(completion(), ["once", "many", "backup"], max_retries=2)

        assert pool["once"].calls == 1
        assert pool["many"].calls == 4
        assert outcome.used_provider == "many"
        assert outcome.attempts == 5
        assert sleeper.delays == [1.0, 2.0, 4.0]

    @pytest.mark.asyncio
    async def test_unset_descriptor_retries_use_call_default(
        self, executor: FailoverExecutor, pool: AdapterPool
    ) -> None:
        pool["primary"].script = [500, 500, 500]
        await executor.execute(completion(), ORDER, max_retries=2)
        assert pool["primary"].calls == 2

    @pytest.mark.asyncio
    async def test_every_attempt_feeds_request_metrics(
        self, executor: FailoverExecutor, pool: AdapterPool, health: HealthTracker
    ) -> None:
        pool["primary"].script = [500, "ok"]
        await executor.execute(completion(), ORDER)
        snap = await health.snapshot("primary")
        assert snap.total_requests == 2
        assert snap.failed_requests == 1
        assert snap.success_rate == 50.0
        assert snap.last_failure_reason == "status 500"

    def test_worst_case_duration(self) -> None:
        assert FailoverExecutor.worst_case_duration(3, 60.0, 1.0) == 183.0
        assert FailoverExecutor.worst_case_duration(1, 5.0, 1.0) == 5.0
        assert FailoverExecutor.worst_case_duration(4, 10.0, 0.5) == 43.5


# ═══════════════════════════════════════════════════════════════
#  Circuit interaction
# ═══════════════════════════════════════════════════════════════
class TestCircuitInteraction:
    @pytest.mark.asyncio
    async def test_open_circuit_is_skipped(
        self, executor: FailoverExecutor, pool: AdapterPool, health: HealthTracker
    ) -> None:
        for _ in range(3):
            await health.record_failure("primary")

        outcome = await executor.execute(completion(), ORDER)

        assert outcome.used_provider == "secondary"
        assert outcome.attempted == ["secondary"]
        assert outcome.was_failover is True
        assert pool["primary"].calls == 0

    @pytest.mark.asyncio
    async def test_three_exhausted_calls_open_the_circuit(
        self, executor: FailoverExecutor, pool: AdapterPool, health: HealthTracker
    ) -> None:
        pool["primary"].script = [400, 400, 400]
        for _ in range(3):
            await executor.execute(completion(), ORDER)
        assert await health.state("primary") == CircuitState.OPEN

        await executor.execute(completion(), ORDER)
        assert pool["primary"].calls == 3

    @pytest.mark.asyncio
    async def test_half_open_trial_success_closes(
        self, executor: FailoverExecutor, pool: AdapterPool, health: HealthTracker, clock
    ) -> None:
        for _ in range(3):
            await health.record_failure("primary")
        clock.advance(60)

        outcome = await executor.execute(completion(), ORDER)

        assert outcome.used_provider == "primary"
        assert await health.state("primary") == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_slow_trial_is_not_joined_by_second_call(self, health: HealthTracker, clock) -> None:
        pool = AdapterPool("primary", "secondary")
        pool["primary"].script = [500, 500, "ok"]
        reg = ProviderRegistry(pool.factories(), family=ProviderFamily.LLM)
        await reg.initialize(
            [
                ProviderDescriptor(
                    code="primary",
                    display_name="Primary",
                    config=LLMProviderConfig(api_key="k", timeout_s=60.0),
                    is_primary=True,
                ),
                ProviderDescriptor(code="secondary", display_name="Secondary", config=LLMProviderConfig(api_key="k")),
            ]
        )
        for code in reg.codes:
            await health.register(code)
        concurrent = []

        async def slow_backoff(delay: float) -> None:
            # Each failed attempt used up its whole timeout before backing off.
            clock.advance(61)
            if not concurrent:
                concurrent.append(await executor.execute(completion(), ["primary", "secondary"]))

        executor = FailoverExecutor(reg, health, sleep=slow_backoff)
        for _ in range(3):
            await health.record_failure("primary")
        clock.advance(60)

        trial = await executor.execute(completion(), ["primary", "secondary"])

        (second,) = concurrent
        assert second.used_provider == "secondary"
        assert second.attempted == ["secondary"]
        assert trial.used_provider == "primary"
        assert trial.attempts == 3
        assert pool["primary"].calls == 3
        assert await health.state("primary") == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_unregistered_codes_are_ignored(self, executor: FailoverExecutor) -> None:
        outcome = await executor.execute(completion(), ["ghost", "secondary"])
        assert outcome.used_provider == "secondary"
        assert outcome.attempted == ["secondary"]
        assert outcome.was_failover is True


# ═══════════════════════════════════════════════════════════════
#  Total failure
# ═══════════════════════════════════════════════════════════════
class TestAllProvidersFailed:
    @pytest.mark.asyncio
    async def test_reports_last_error(self, executor: FailoverExecutor, pool: AdapterPool) -> None:
        pool["primary"].script = [401]
        pool["secondary"].script = [403]
        pool["tertiary"].script = [422]

        outcome = await executor.execute(completion(), ORDER)

        assert outcome.success is False
        assert outcome.error.code == ALL_PROVIDERS_FAILED_CODE
        assert outcome.error.retryable is False
        assert outcome.attempted == ORDER
        assert outcome.attempts == 3
        assert outcome.result.error.code == "HTTP_422"
        assert "HTTP_422" in outcome.error.message

    @pytest.mark.asyncio
    async def test_every_circuit_open(self, executor: FailoverExecutor, health: HealthTracker) -> None:
        for code in ORDER:
            for _ in range(3):
                await health.record_failure(code)

        outcome = await executor.execute(completion(), ORDER)

        assert outcome.success is False
        assert outcome.attempted == []
        assert outcome.attempts == 0
        assert outcome.result is None
        assert outcome.error.code == ALL_PROVIDERS_FAILED_CODE
        assert outcome.error.message == "No eligible provider available"

    @pytest.mark.asyncio
    async def test_empty_order(self, executor: FailoverExecutor) -> None:
        outcome = await executor.execute(completion(), [])
        assert outcome.success is False
        assert outcome.used_provider is None
