"""Shared test fixtures."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from relaygate.adapters.outbound.cache import InMemoryStateStore
from relaygate.adapters.outbound.http import is_retryable_status
from relaygate.domain.enums import ProviderFamily
from relaygate.domain.exceptions import ConfigurationError
from relaygate.ports.outbound import ProviderAdapter
from relaygate.shared.providers.circuit_breaker import HealthTracker
from relaygate.shared.providers.registry import ProviderRegistry
from relaygate.shared.providers.types import (
    ChatMessage,
    CompletionRequest,
    HealthCheckResult,
    LLMProviderConfig,
    NormalizedResult,
    ProviderConfig,
    ProviderDescriptor,
    ProviderRequest,
)


# ═══════════════════════════════════════════════════════════════
#  Test doubles
# ═══════════════════════════════════════════════════════════════
class ScriptedAdapter(ProviderAdapter):
    """Plays back a script of outcomes, one per ``execute`` call.

    Script steps: ``"ok"``, an HTTP status int, an exception instance to
    raise, or ``"hang"`` to block until cancelled.  An exhausted script
    keeps answering ``"ok"``.
    """

    family = ProviderFamily.LLM
    provider_code = "scripted"
    provider_name = "Scripted"

    def __init__(self, code: str, script: list[Any] | None = None) -> None:
        self.code = code
        self.script = list(script or [])
        self.calls = 0
        self.closed = False
        self.config: ProviderConfig | None = None
        self.health = HealthCheckResult(True, 1.0, "OK")

    async def initialize(self, config: ProviderConfig) -> None:
        if getattr(config, "api_key", None) == "invalid":
            raise ConfigurationError(self.code, "API key is required")
        if getattr(config, "api_key", None) == "explode":
            raise RuntimeError("client construction failed")
        self.config = config

    async def execute(self, request: ProviderRequest) -> NormalizedResult:
        self.calls += 1
        step = self.script.pop(0) if self.script else "ok"
        if step == "ok":
            return NormalizedResult(
                success=True,
                payload={"content": f"hello from {self.code}"},
                model=request.model or "gpt-4o",
                prompt_tokens=1000,
                completion_tokens=500,
            )
        if step == "hang":
            await asyncio.sleep(3600)
        if isinstance(step, BaseException):
            raise step
        return NormalizedResult.failure(
            f"HTTP_{step}", f"status {step}", retryable=is_retryable_status(step)
        )

    async def health_check(self) -> HealthCheckResult:
        return self.health

    def is_healthy(self) -> bool:
        return self.health.is_healthy

    async def close(self) -> None:
        self.closed = True


class AdapterPool:
    """Hands the registry pre-built adapters so tests can inspect them."""

    def __init__(self, *codes: str) -> None:
        self.adapters = {code: ScriptedAdapter(code) for code in codes}

    def __getitem__(self, code: str) -> ScriptedAdapter:
        return self.adapters[code]

    def factories(self) -> dict[str, Any]:
        return {code: (lambda c=code: self.adapters[c]) for code in self.adapters}


class RecordingSleep:
    """Stands in for ``asyncio.sleep``; records delays without waiting."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeDateClock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


def descriptor(code: str, *, primary: bool = False, active: bool = True, api_key: str = "sk-test") -> ProviderDescriptor:
    return ProviderDescriptor(
        code=code,
        display_name=code.title(),
        config=LLMProviderConfig(api_key=api_key, model="gpt-4o", timeout_s=5.0),
        is_active=active,
        is_primary=primary,
    )


def completion(text: str = "Say hi", **kwargs: Any) -> CompletionRequest:
    return CompletionRequest(messages=(ChatMessage("user", text),), **kwargs)


# ═══════════════════════════════════════════════════════════════
#  Fixtures
# ═══════════════════════════════════════════════════════════════
@pytest.fixture
def pool() -> AdapterPool:
    return AdapterPool("primary", "secondary", "tertiary")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleeper() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def store(clock: FakeClock) -> InMemoryStateStore:
    return InMemoryStateStore(clock=clock)


@pytest.fixture
def health(store: InMemoryStateStore, clock: FakeClock) -> HealthTracker:
    return HealthTracker(store, failure_threshold=3, recovery_window_s=60.0, clock=clock)


@pytest.fixture
async def registry(pool: AdapterPool) -> ProviderRegistry:
    reg = ProviderRegistry(pool.factories(), family=ProviderFamily.LLM)
    await reg.initialize(
        [descriptor("primary", primary=True), descriptor("secondary"), descriptor("tertiary")]
    )
    return reg


@pytest.fixture
def date_clock() -> FakeDateClock:
    return FakeDateClock(datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc))
