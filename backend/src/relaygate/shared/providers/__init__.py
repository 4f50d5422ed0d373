"""Provider resilience: registry, circuit breaking, failover and the gateway facade."""

from relaygate.shared.providers.types import (
    AdapterError,
    ChatMessage,
    CompletionRequest,
    ExecutionOutcome,
    FactoryConfig,
    HealthCheckResult,
    LLMProviderConfig,
    MessageRequest,
    MessagingProviderConfig,
    NormalizedResult,
    ProviderDescriptor,
    ProviderHealthState,
)
from relaygate.shared.providers.circuit_breaker import HealthTracker
from relaygate.shared.providers.registry import ProviderRegistry
from relaygate.shared.providers.rate_limit import TenantRateLimiter
from relaygate.shared.providers.executor import FailoverExecutor
from relaygate.shared.providers.gateway import GatewayResult, ProviderGateway

__all__ = [
    "AdapterError",
    "ChatMessage",
    "CompletionRequest",
    "ExecutionOutcome",
    "FactoryConfig",
    "FailoverExecutor",
    "GatewayResult",
    "HealthCheckResult",
    "HealthTracker",
    "LLMProviderConfig",
    "MessageRequest",
    "MessagingProviderConfig",
    "NormalizedResult",
    "ProviderDescriptor",
    "ProviderGateway",
    "ProviderHealthState",
    "ProviderRegistry",
    "TenantRateLimiter",
]
