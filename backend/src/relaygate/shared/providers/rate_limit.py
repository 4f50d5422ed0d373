"""Tenant rate limiter — sliding one-minute request window per tenant.

Requests older than the window are evicted on every check, so a tenant's
allowance replenishes continuously instead of at a fixed boundary.  A tenant
whose window empties is forgotten, and idle tenants are swept once per
window, so memory tracks only recently active tenants.
"""

from __future__ import annotations

import threading
import time
from collections import deque
from typing import Callable

import structlog

from relaygate.shared.observability.metrics import RATE_LIMIT_REJECTIONS

logger = structlog.get_logger(__name__)


class TenantRateLimiter:
    """Per-tenant sliding-window RPM limiter (``requests_per_minute=0`` disables it)."""

    def __init__(
        self,
        *,
        requests_per_minute: int = 0,
        window_seconds: float = 60.0,
        warning_threshold: float = 0.90,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._limit = requests_per_minute
        self._window = window_seconds
        self._warning_thr = warning_threshold
        self._clock = clock

        self._windows: dict[str, deque[float]] = {}
        self._warned: set[str] = set()
        self._last_sweep = clock()
        self._lock = threading.Lock()

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def tracked_tenants(self) -> int:
        with self._lock:
            return len(self._windows)

    def try_acquire(self, tenant_id: str) -> bool:
        """Check and record in one step; ``False`` means the call must not proceed."""
        if self._limit <= 0:
            return True
        with self._lock:
            self._sweep_idle()
            window = self._live_window(tenant_id)

            if len(window) >= self._limit:
                RATE_LIMIT_REJECTIONS.inc()
                logger.warning(
                    "tenant_rate_limited",
                    tenant_id=tenant_id,
                    current=len(window),
                    limit=self._limit,
                )
                return False

            window.append(self._clock())
            self._windows[tenant_id] = window
            self._check_warning(tenant_id, window)
            return True

    def requests_in_window(self, tenant_id: str) -> int:
        with self._lock:
            return len(self._live_window(tenant_id))

    def remaining_pct(self, tenant_id: str) -> float:
        if self._limit <= 0:
            return 100.0
        used = self.requests_in_window(tenant_id)
        return float(f"{(max(0.0, (1.0 - used / self._limit)) * 100):.1f}")

    def reset(self, tenant_id: str | None = None) -> None:
        """Force-reset one tenant, or all of them (admin override)."""
        with self._lock:
            if tenant_id is None:
                self._windows.clear()
                self._warned.clear()
            else:
                self._windows.pop(tenant_id, None)
                self._warned.discard(tenant_id)

    # ── Internals ────────────────────────────────────────────
    def _live_window(self, tenant_id: str) -> deque[float]:
        """Caller holds lock.  An emptied window is dropped from the table."""
        window = self._windows.get(tenant_id)
        if window is None:
            return deque()
        self._evict(tenant_id, window)
        if not window:
            del self._windows[tenant_id]
        return window

    def _sweep_idle(self) -> None:
        """Caller holds lock."""
        now = self._clock()
        if now - self._last_sweep < self._window:
            return
        self._last_sweep = now
        for tenant_id in list(self._windows):
            self._live_window(tenant_id)

    def _evict(self, tenant_id: str, window: deque[float]) -> None:
        """Caller holds lock."""
        cutoff = self._clock() - self._window
        while window and window[0] <= cutoff:
            window.popleft()
        if len(window) / self._limit < self._warning_thr:
            self._warned.discard(tenant_id)

    def _check_warning(self, tenant_id: str, window: deque[float]) -> None:
        """Caller holds lock."""
        if tenant_id in self._warned:
            return
        usage_pct = len(window) / self._limit
        if usage_pct >= self._warning_thr:
            self._warned.add(tenant_id)
            logger.warning(
                "tenant_rate_limit_warning",
                tenant_id=tenant_id,
                usage_pct=float(f"{(usage_pct * 100):.1f}"),
                requests_used=len(window),
                rpm_limit=self._limit,
            )
