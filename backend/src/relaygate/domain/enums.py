"""Domain enumerations for the provider gateway."""

from __future__ import annotations

import enum


class ProviderFamily(str, enum.Enum):
    """Vendor family an adapter belongs to."""

    LLM = "llm"
    MESSAGING = "messaging"


class UsageStatus(str, enum.Enum):
    """Outcome recorded on every usage row."""

    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    BLOCKED = "BLOCKED"
    RATE_LIMITED = "RATE_LIMITED"


class CircuitState(str, enum.Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class HealthStatus(str, enum.Enum):
    """Request-quality grade of a provider, best first."""

    HEALTHY = "HEALTHY"
    DEGRADED = "DEGRADED"
    UNHEALTHY = "UNHEALTHY"
    DOWN = "DOWN"


class MessageChannel(str, enum.Enum):
    WHATSAPP = "WHATSAPP"
    EMAIL = "EMAIL"
    SMS = "SMS"


class MessageStatus(str, enum.Enum):
    """Delivery status kept on each message log entry."""

    QUEUED = "QUEUED"
    SENT = "SENT"
    DELIVERED = "DELIVERED"
    READ = "READ"
    FAILED = "FAILED"
    BLOCKED = "BLOCKED"


class BudgetPeriod(str, enum.Enum):
    DAILY = "daily"
    MONTHLY = "monthly"


class NotificationKind(str, enum.Enum):
    """Throttled budget notification types."""

    WARNING = "warning"
    LIMIT = "limit"
