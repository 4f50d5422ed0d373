"""Health tracker — per-provider circuit breaker backed by a StateStore.

State machine:
    CLOSED    → (N consecutive failed attempt sequences) → OPEN
    OPEN      → (recovery window elapses)                → HALF_OPEN
    HALF_OPEN → (the single trial succeeds)              → CLOSED
    HALF_OPEN → (the trial fails)                        → OPEN, window restarts

The state is derived from two stored fields, ``consecutive_failures`` and
``last_failure_at``, so every mutation is one atomic store operation and
readers never see a half-applied transition.  Only one caller at a time holds
the half-open trial claim; the claim lives until the trial is recorded or its
TTL (at least the recovery window, longer when the caller's worst-case trial
needs it) lapses.

Alongside the circuit, the tracker keeps per-attempt request metrics (counts,
latency, last failure reason) used to grade each provider HEALTHY, DEGRADED,
UNHEALTHY or DOWN and to recommend the best available one.
"""

from __future__ import annotations

import time
from collections import deque
from datetime import datetime, timezone
from typing import Any, Callable, Sequence

import structlog

from relaygate.domain.enums import CircuitState, HealthStatus
from relaygate.ports.outbound import StateStore
from relaygate.shared.observability.metrics import CIRCUIT_TRANSITIONS
from relaygate.shared.providers.types import ProviderHealthState

logger = structlog.get_logger(__name__)

LATENCY_SAMPLES = 1000
INCIDENT_WINDOW_S = 24 * 3600.0
MAX_INCIDENTS = 10

HEALTHY_SUCCESS_RATE = 99.0
DEGRADED_SUCCESS_RATE = 95.0
UNHEALTHY_SUCCESS_RATE = 80.0
HEALTHY_LATENCY_MS = 500.0
DEGRADED_LATENCY_MS = 1000.0

_STATUS_RANK = {
    HealthStatus.HEALTHY: 0,
    HealthStatus.DEGRADED: 1,
    HealthStatus.UNHEALTHY: 2,
    HealthStatus.DOWN: 3,
}


def _key(code: str) -> str:
    return f"health:{code}"


def _trial_key(code: str) -> str:
    return f"health:{code}:trial"


def _metrics_key(code: str) -> str:
    return f"health:{code}:metrics"


def _ts(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromtimestamp(float(value), tz=timezone.utc)


def _round2(value: float) -> float:
    return round(value * 100) / 100


def grade(state: CircuitState, success_rate: float, avg_latency_ms: float) -> HealthStatus:
    """Map circuit state and request quality onto a health status."""
    if state == CircuitState.OPEN:
        return HealthStatus.DOWN
    if success_rate >= HEALTHY_SUCCESS_RATE and avg_latency_ms <= HEALTHY_LATENCY_MS:
        return HealthStatus.HEALTHY
    if success_rate >= DEGRADED_SUCCESS_RATE and avg_latency_ms <= DEGRADED_LATENCY_MS:
        return HealthStatus.DEGRADED
    if success_rate >= UNHEALTHY_SUCCESS_RATE:
        return HealthStatus.UNHEALTHY
    return HealthStatus.DOWN


def p95(samples: Sequence[float]) -> float:
    if not samples:
        return 0.0
    ordered = sorted(samples)
    return ordered[min(len(ordered) - 1, int(len(ordered) * 0.95))]


class HealthTracker:
    """Circuit breaker and request-quality metrics for every registered provider code."""

    def __init__(
        self,
        store: StateStore,
        *,
        failure_threshold: int = 3,
        recovery_window_s: float = 60.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._threshold = failure_threshold
        self._recovery = recovery_window_s
        self._clock = clock
        self._codes: list[str] = []
        self._latencies: dict[str, deque[float]] = {}

    @property
    def failure_threshold(self) -> int:
        return self._threshold

    @property
    def recovery_window_s(self) -> float:
        return self._recovery

    @property
    def codes(self) -> list[str]:
        return list(self._codes)

    # ── Registration ─────────────────────────────────────────
    async def register(self, code: str) -> None:
        if code in self._codes:
            return
        self._codes.append(code)
        self._latencies.setdefault(code, deque(maxlen=LATENCY_SAMPLES))
        # A shared store may already hold state written by another instance.
        if await self._store.get(_key(code)) is None:
            await self._store.set_fields(
                _key(code), {"consecutive_failures": 0, "circuit_open": False}
            )

    async def unregister(self, code: str) -> None:
        if code in self._codes:
            self._codes.remove(code)
            self._latencies.pop(code, None)
            await self._store.delete(_key(code))
            await self._store.delete(_trial_key(code))
            await self._store.delete(_metrics_key(code))

    # ── State derivation ─────────────────────────────────────
    def _derive(self, data: dict[str, str] | None) -> CircuitState:
        if not data:
            return CircuitState.CLOSED
        failures = int(data.get("consecutive_failures", "0"))
        if failures < self._threshold:
            return CircuitState.CLOSED
        last_failure = float(data.get("last_failure_at") or 0.0)
        if self._clock() - last_failure >= self._recovery:
            return CircuitState.HALF_OPEN
        return CircuitState.OPEN

    async def state(self, code: str) -> CircuitState:
        return self._derive(await self._store.get(_key(code)))

    async def peek_available(self, code: str) -> bool:
        """CLOSED or HALF_OPEN, without claiming the trial."""
        return await self.state(code) != CircuitState.OPEN

    async def is_eligible(self, code: str, *, trial_ttl_s: float | None = None) -> bool:
        """May ``code`` be attempted now?  Claims the half-open trial slot.

        ``trial_ttl_s`` is the caller's worst-case trial duration; the claim
        is held for at least that long so a slow trial cannot be joined by a
        second one.  An abandoned claim lapses after
        ``max(recovery_window_s, trial_ttl_s)``.
        """
        state = await self.state(code)
        if state == CircuitState.CLOSED:
            return True
        if state == CircuitState.OPEN:
            logger.debug("provider_circuit_open", provider=code)
            return False

        ttl = max(self._recovery, trial_ttl_s or 0.0)
        claimed = await self._store.set_if_absent(_trial_key(code), "1", ttl_seconds=ttl)
        if claimed:
            CIRCUIT_TRANSITIONS.labels(provider=code, state=CircuitState.HALF_OPEN.value).inc()
            logger.info("circuit_breaker_half_open", provider=code, trial_ttl_s=ttl)
        return claimed

    # ── Recording ────────────────────────────────────────────
    async def record_success(self, code: str) -> None:
        """Close the circuit and zero the failure counter."""
        previous = await self.state(code)
        await self._store.set_fields(
            _key(code),
            {
                "consecutive_failures": 0,
                "circuit_open": False,
                "last_success_at": self._clock(),
            },
        )
        await self._store.delete(_trial_key(code))
        if previous != CircuitState.CLOSED:
            CIRCUIT_TRANSITIONS.labels(provider=code, state=CircuitState.CLOSED.value).inc()
            logger.info(
                "circuit_breaker_closed",
                provider=code,
                previous_state=previous.value,
            )

    async def record_failure(self, code: str) -> None:
        """Count one failed attempt sequence; may trip or re-open the circuit."""
        # Stamp first so a reader that sees the new count also sees the new time.
        await self._store.set_fields(_key(code), {"last_failure_at": self._clock()})
        failures = await self._store.increment(_key(code), "consecutive_failures")

        if failures >= self._threshold:
            fields: dict[str, object] = {"circuit_open": True}
            if failures > self._threshold:
                # Failed half-open trial: hold at the threshold, window restarts.
                fields["consecutive_failures"] = self._threshold
                logger.warning("circuit_breaker_reopened", provider=code)
            else:
                logger.warning(
                    "circuit_breaker_opened",
                    provider=code,
                    failures=failures,
                    recovery_window_s=self._recovery,
                )
            await self._store.set_fields(_key(code), fields)
            CIRCUIT_TRANSITIONS.labels(provider=code, state=CircuitState.OPEN.value).inc()
        else:
            logger.info("provider_failure_recorded", provider=code, failures=failures)

        await self._store.delete(_trial_key(code))

    async def reset(self, code: str) -> None:
        """Force-reset the circuit to CLOSED (admin override)."""
        await self._store.set_fields(
            _key(code), {"consecutive_failures": 0, "circuit_open": False}
        )
        await self._store.delete(_trial_key(code))
        logger.info("circuit_breaker_force_reset", provider=code)

    # ── Request metrics ──────────────────────────────────────
    async def record_request(
        self,
        code: str,
        *,
        success: bool,
        latency_ms: float,
        error_message: str | None = None,
    ) -> None:
        """Count one attempt toward the provider's request-quality metrics."""
        key = _metrics_key(code)
        await self._store.increment(key, "total_requests")
        await self._store.increment(key, "latency_total_ms", max(0, int(round(latency_ms))))
        if not success:
            await self._store.increment(key, "failed_requests")
            await self._store.set_fields(
                key, {"last_failure_reason": error_message or "Unknown error"}
            )
        self._latencies.setdefault(code, deque(maxlen=LATENCY_SAMPLES)).append(latency_ms)

    async def reset_window_metrics(self) -> None:
        """Start a fresh metrics window for every provider; circuits are untouched."""
        for code in self._codes:
            await self._store.delete(_metrics_key(code))
            self._latencies[code] = deque(maxlen=LATENCY_SAMPLES)
        logger.info("provider_metrics_window_reset", providers=len(self._codes))

    # ── Snapshots ────────────────────────────────────────────
    async def snapshot(self, code: str) -> ProviderHealthState:
        data = await self._store.get(_key(code)) or {}
        metrics = await self._store.get(_metrics_key(code)) or {}
        state = self._derive(data)

        total = int(metrics.get("total_requests", "0"))
        failed = int(metrics.get("failed_requests", "0"))
        success_rate = _round2((total - failed) / total * 100) if total else 100.0
        avg_latency = _round2(int(metrics.get("latency_total_ms", "0")) / total) if total else 0.0

        return ProviderHealthState(
            code=code,
            consecutive_failures=int(data.get("consecutive_failures", "0")),
            state=state,
            last_failure_at=_ts(data.get("last_failure_at")),
            last_success_at=_ts(data.get("last_success_at")),
            status=grade(state, success_rate, avg_latency),
            total_requests=total,
            failed_requests=failed,
            success_rate=success_rate,
            avg_latency_ms=avg_latency,
            p95_latency_ms=_round2(p95(self._latencies.get(code, ()))),
            last_failure_reason=metrics.get("last_failure_reason"),
        )

    async def snapshots(self) -> list[ProviderHealthState]:
        return [await self.snapshot(code) for code in self._codes]

    async def recommended_provider(self, order: Sequence[str] | None = None) -> str | None:
        """Best-graded provider whose circuit is not open; ties keep ``order``.

        Providers graded DOWN (success rate under the unhealthy threshold) are
        demoted and never recommended.
        """
        candidates = []
        for position, code in enumerate(order if order is not None else self._codes):
            if code not in self._codes:
                continue
            snap = await self.snapshot(code)
            if snap.state == CircuitState.OPEN or snap.status == HealthStatus.DOWN:
                continue
            candidates.append((_STATUS_RANK[snap.status], position, code))
        if not candidates:
            return None
        return min(candidates)[2]

    async def dashboard_stats(self) -> dict[str, Any]:
        """Status counts, mean success rate and recent incidents."""
        snaps = await self.snapshots()
        summary = {"total": len(snaps)}
        for status in HealthStatus:
            summary[status.value.lower()] = sum(1 for s in snaps if s.status == status)

        now = self._clock()
        incidents = sorted(
            (
                {
                    "provider": s.code,
                    "reason": s.last_failure_reason or "Unknown error",
                    "occurred_at": s.last_failure_at,
                }
                for s in snaps
                if s.last_failure_at is not None
                and now - s.last_failure_at.timestamp() < INCIDENT_WINDOW_S
            ),
            key=lambda i: i["occurred_at"],
            reverse=True,
        )[:MAX_INCIDENTS]

        return {
            "summary": summary,
            "avg_success_rate": _round2(sum(s.success_rate for s in snaps) / len(snaps)) if snaps else 0.0,
            "recent_incidents": incidents,
        }
