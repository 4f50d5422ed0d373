"""Cost-rate lookup with a five-minute cache over the rate repository."""

from __future__ import annotations

import asyncio
import math
import time
from dataclasses import dataclass
from typing import Callable

import structlog

from relaygate.domain.entities import CostRate
from relaygate.ports.outbound import CostRateRepository

logger = structlog.get_logger(__name__)

CACHE_TTL_SECONDS = 300.0

# Wildcard provider for per-channel messaging rates.
ANY_PROVIDER = "*"

DEFAULT_COST_RATES: tuple[CostRate, ...] = (
    CostRate("openai", "gpt-4o", prompt_cost_per_1k_cents=250, completion_cost_per_1k_cents=1000),
    CostRate("openai", "gpt-4o-mini", prompt_cost_per_1k_cents=15, completion_cost_per_1k_cents=60),
    CostRate("openai", "gpt-4-turbo", prompt_cost_per_1k_cents=1000, completion_cost_per_1k_cents=3000),
    CostRate("openai", "gpt-3.5-turbo", prompt_cost_per_1k_cents=50, completion_cost_per_1k_cents=150),
    CostRate("claude", "claude-3-5-sonnet", prompt_cost_per_1k_cents=300, completion_cost_per_1k_cents=1500),
    CostRate("claude", "claude-3-opus", prompt_cost_per_1k_cents=1500, completion_cost_per_1k_cents=7500),
    CostRate("claude", "claude-3-haiku", prompt_cost_per_1k_cents=25, completion_cost_per_1k_cents=125),
    CostRate("gemini", "gemini-1.5-pro", prompt_cost_per_1k_cents=125, completion_cost_per_1k_cents=500),
    CostRate("gemini", "gemini-1.5-flash", prompt_cost_per_1k_cents=35, completion_cost_per_1k_cents=105),
    CostRate(ANY_PROVIDER, "WHATSAPP", per_message_cents=5),
    CostRate(ANY_PROVIDER, "SMS", per_message_cents=10),
    CostRate(ANY_PROVIDER, "EMAIL", per_message_cents=0),
)


def _key(provider: str, model: str) -> str:
    return f"{provider.lower()}:{model.lower()}"


@dataclass(frozen=True)
class CostCalculation:
    prompt_cost_cents: int
    completion_cost_cents: int
    message_cost_cents: int
    total_cost_cents: int
    rate: CostRate


def calculate_cost(
    rate: CostRate,
    *,
    prompt_tokens: int = 0,
    completion_tokens: int = 0,
    message_count: int = 0,
) -> CostCalculation:
    """Each token part is rounded up to a whole cent independently."""
    prompt = math.ceil(prompt_tokens / 1000 * rate.prompt_cost_per_1k_cents)
    completion = math.ceil(completion_tokens / 1000 * rate.completion_cost_per_1k_cents)
    messages = message_count * rate.per_message_cents
    return CostCalculation(
        prompt_cost_cents=prompt,
        completion_cost_cents=completion,
        message_cost_cents=messages,
        total_cost_cents=prompt + completion + messages,
        rate=rate,
    )


class CostRateCache:
    """Active cost rates, refreshed from the repository once the TTL lapses.

    Lookup order: the exact (provider, model) pair, then the wildcard channel
    rate, each checked in the repository before the built-in defaults.  A
    model id with no exact rate (``claude-3-5-sonnet-20241022``,
    ``gpt-4o-2024-08-06``) then takes the rate of its longest known
    ``<model>-`` prefix for the same provider.  ``get_rate`` finally falls
    back to the first default so metering always has a rate to apply.
    """

    def __init__(
        self,
        repository: CostRateRepository | None = None,
        *,
        ttl_seconds: float = CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._repository = repository
        self._ttl = ttl_seconds
        self._clock = clock
        self._rates: dict[str, CostRate] = {}
        self._expires_at = 0.0
        self._refresh_lock = asyncio.Lock()
        self._defaults = {_key(r.provider, r.model): r for r in DEFAULT_COST_RATES}

    async def lookup(self, provider: str, model: str) -> CostRate | None:
        """A rate that is actually known for this pair, or ``None``."""
        await self._ensure_fresh()
        for key in (_key(provider, model), _key(ANY_PROVIDER, model)):
            rate = self._rates.get(key) or self._defaults.get(key)
            if rate is not None:
                return rate
        return self._longest_prefix(provider, model)

    async def get_rate(self, provider: str, model: str) -> CostRate:
        rate = await self.lookup(provider, model)
        if rate is not None:
            return rate
        fallback = DEFAULT_COST_RATES[0]
        logger.debug("cost_rate_fallback", provider=provider, model=model)
        return CostRate(
            provider=provider,
            model=model,
            prompt_cost_per_1k_cents=fallback.prompt_cost_per_1k_cents,
            completion_cost_per_1k_cents=fallback.completion_cost_per_1k_cents,
        )

    def _longest_prefix(self, provider: str, model: str) -> CostRate | None:
        wanted_provider = provider.lower()
        wanted = model.lower()
        best: CostRate | None = None
        # Repository rates replace defaults with the same key.
        for rate in {**self._defaults, **self._rates}.values():
            if rate.provider.lower() != wanted_provider:
                continue
            if not wanted.startswith(rate.model.lower() + "-"):
                continue
            if best is None or len(rate.model) > len(best.model):
                best = rate
        return best

    def invalidate(self) -> None:
        self._expires_at = 0.0

    async def _ensure_fresh(self) -> None:
        if self._repository is None or self._clock() < self._expires_at:
            return
        async with self._refresh_lock:
            if self._clock() < self._expires_at:
                return
            try:
                rates = await self._repository.list_active()
            except Exception as exc:
                # Keep serving the previous rates; retry on the next lookup.
                logger.warning("cost_rates_refresh_failed", error=str(exc))
                return
            self._rates = {_key(r.provider, r.model): r for r in rates if r.is_active}
            self._expires_at = self._clock() + self._ttl
            logger.debug("cost_rates_refreshed", count=len(self._rates))
