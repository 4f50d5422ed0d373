"""Core types for the provider resilience framework.

Every vendor adapter speaks in these types: a request goes in, a
``NormalizedResult`` comes out, and failures are classified into an
``AdapterError`` carrying a ``retryable`` flag that drives failover.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, ClassVar, Union

from relaygate.domain.enums import CircuitState, HealthStatus, ProviderFamily


# ═══════════════════════════════════════════════════════════════
#  Provider configuration (one variant per vendor family)
# ═══════════════════════════════════════════════════════════════
@dataclass(frozen=True)
class LLMProviderConfig:
    """Credentials and connection settings for a completion vendor."""

    family: ClassVar[ProviderFamily] = ProviderFamily.LLM

    api_key: str
    base_url: str | None = None
    model: str | None = None
    organization_id: str | None = None
    api_version: str | None = None
    timeout_s: float = 60.0
    # None defers to the gateway-wide FactoryConfig.max_retries.
    max_retries: int | None = None


@dataclass(frozen=True)
class MessagingProviderConfig:
    """Credentials and connection settings for a WhatsApp-class vendor."""

    family: ClassVar[ProviderFamily] = ProviderFamily.MESSAGING

    access_token: str | None = None
    api_key: str | None = None
    account_sid: str | None = None
    auth_token: str | None = None
    phone_number_id: str | None = None
    from_number: str | None = None
    base_url: str | None = None
    timeout_s: float = 60.0
    max_retries: int | None = None


ProviderConfig = Union[LLMProviderConfig, MessagingProviderConfig]


@dataclass(frozen=True)
class ProviderDescriptor:
    """Registration input for a single provider.

    Attributes:
        code:         Registration key (e.g. "openai", "waba").
        display_name: Human-readable vendor name.
        config:       Family-specific configuration variant.
        is_active:    Inactive descriptors are ignored by the registry.
        is_primary:   The first primary descriptor leads the failover order.
    """

    code: str
    display_name: str
    config: ProviderConfig
    is_active: bool = True
    is_primary: bool = False

    @property
    def family(self) -> ProviderFamily:
        return self.config.family


@dataclass(frozen=True)
class FactoryConfig:
    """Gateway-wide resilience knobs."""

    max_retries: int = 3
    base_delay_s: float = 1.0
    failure_threshold: int = 3
    recovery_window_s: float = 60.0
    execute_timeout_s: float = 60.0
    health_check_timeout_s: float = 10.0


# ═══════════════════════════════════════════════════════════════
#  Requests
# ═══════════════════════════════════════════════════════════════
@dataclass(frozen=True)
class ChatMessage:
    role: str
    content: str


@dataclass(frozen=True)
class CompletionRequest:
    family: ClassVar[ProviderFamily] = ProviderFamily.LLM

    messages: tuple[ChatMessage, ...]
    model: str | None = None
    max_tokens: int = 1024
    temperature: float = 0.0
    response_format: str = "text"

    @property
    def estimated_units(self) -> int:
        """Rough token estimate: ~4 characters per prompt token plus the output cap."""
        prompt_chars = sum(len(m.content) for m in self.messages)
        return prompt_chars // 4 + self.max_tokens


@dataclass(frozen=True)
class MessageRequest:
    family: ClassVar[ProviderFamily] = ProviderFamily.MESSAGING

    to: str
    text: str | None = None
    template_name: str | None = None
    template_language: str = "en"
    template_params: tuple[str, ...] = ()
    channel: str = "WHATSAPP"

    @property
    def model(self) -> str:
        return self.channel

    @property
    def estimated_units(self) -> int:
        return 1


ProviderRequest = Union[CompletionRequest, MessageRequest]


# ═══════════════════════════════════════════════════════════════
#  Results
# ═══════════════════════════════════════════════════════════════
@dataclass(frozen=True)
class AdapterError:
    """Vendor failure normalized by the adapter."""

    code: str
    message: str
    retryable: bool


@dataclass
class NormalizedResult:
    success: bool
    payload: dict[str, Any] = field(default_factory=dict)
    error: AdapterError | None = None
    model: str = ""
    prompt_tokens: int = 0
    completion_tokens: int = 0
    message_count: int = 0
    latency_ms: float = 0.0

    @classmethod
    def failure(
        cls,
        code: str,
        message: str,
        *,
        retryable: bool,
        latency_ms: float = 0.0,
    ) -> NormalizedResult:
        return cls(
            success=False,
            error=AdapterError(code=code, message=message, retryable=retryable),
            latency_ms=latency_ms,
        )

    @property
    def retryable(self) -> bool:
        return self.error is not None and self.error.retryable


@dataclass(frozen=True)
class HealthCheckResult:
    is_healthy: bool
    latency_ms: float
    message: str


@dataclass(frozen=True)
class ProviderHealthState:
    """Read-only snapshot of a provider's circuit and request quality.

    Request metrics cover the current metrics window (attempts since the last
    ``reset_window_metrics``).  ``avg_latency_ms`` is the window mean and
    ``p95_latency_ms`` comes from the most recent in-process samples.
    """

    code: str
    consecutive_failures: int = 0
    state: CircuitState = CircuitState.CLOSED
    last_failure_at: datetime | None = None
    last_success_at: datetime | None = None
    status: HealthStatus = HealthStatus.HEALTHY
    total_requests: int = 0
    failed_requests: int = 0
    success_rate: float = 100.0
    avg_latency_ms: float = 0.0
    p95_latency_ms: float = 0.0
    last_failure_reason: str | None = None

    @property
    def circuit_open(self) -> bool:
        return self.state == CircuitState.OPEN


@dataclass
class ExecutionOutcome:
    """Tagged result of a failover run — the executor never raises."""

    success: bool
    result: NormalizedResult | None = None
    used_provider: str | None = None
    was_failover: bool = False
    attempted: list[str] = field(default_factory=list)
    attempts: int = 0
    error: AdapterError | None = None
