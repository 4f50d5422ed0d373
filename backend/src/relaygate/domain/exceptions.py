"""Gateway exception hierarchy.

All exceptions inherit from ``GatewayError`` so callers can catch the entire
family in one clause while still discriminating on subclass.  Expected vendor
failures are *not* exceptions: adapters and the failover executor return them
as tagged results, and only ``GatewayResult.raise_for_error()`` converts a
failed call into one of these.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Sequence

if TYPE_CHECKING:
    from relaygate.shared.providers.types import AdapterError


class GatewayError(Exception):
    """Base class for all gateway errors."""

    def __init__(self, message: str, *, code: str = "GATEWAY_ERROR") -> None:
        self.message = message
        self.code = code
        super().__init__(message)


# ── Configuration ────────────────────────────────────────────
class ConfigurationError(GatewayError):
    """Provider configuration is invalid.

    Fatal only for the single provider being initialized; the registry logs it
    and excludes that provider.
    """

    def __init__(self, provider: str, message: str) -> None:
        self.provider = provider
        super().__init__(f"[{provider}] {message}", code="CONFIGURATION_ERROR")


# ── Execution ────────────────────────────────────────────────
class AllProvidersFailedError(GatewayError):
    """Every provider in the failover order was ineligible or exhausted."""

    def __init__(
        self,
        attempted: Sequence[str],
        last_error: AdapterError | None = None,
    ) -> None:
        self.attempted = list(attempted)
        self.last_error = last_error
        detail = f": {last_error.code} {last_error.message}" if last_error else ""
        providers = ", ".join(self.attempted) or "none"
        super().__init__(
            f"All providers failed ({providers}){detail}",
            code="ALL_PROVIDERS_FAILED",
        )


# ── Governance ───────────────────────────────────────────────
class BudgetDeniedError(GatewayError):
    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(reason, code="BUDGET_EXCEEDED")


class QuotaExceededError(GatewayError):
    """A tenant's daily or monthly messaging channel quota is used up."""

    def __init__(self, reason: str, *, channel: str = "", can_queue: bool = False) -> None:
        self.reason = reason
        self.channel = channel
        self.can_queue = can_queue
        super().__init__(reason, code="QUOTA_EXCEEDED")


class RateLimitedError(GatewayError):
    def __init__(self, tenant_id: str, limit: int) -> None:
        self.tenant_id = tenant_id
        self.limit = limit
        super().__init__(
            f"Tenant {tenant_id!r} exceeded {limit} requests per minute",
            code="RATE_LIMITED",
        )
