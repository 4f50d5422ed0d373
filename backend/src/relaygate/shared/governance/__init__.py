"""Tenant cost governance: budget admission, messaging quotas, metering and cost rates."""

from relaygate.shared.governance.cost_rates import (
    DEFAULT_COST_RATES,
    CostCalculation,
    CostRateCache,
    calculate_cost,
)
from relaygate.shared.governance.budget_guard import (
    BudgetCheckResult,
    BudgetGuard,
    BudgetUtilization,
    LoggingBudgetNotifier,
    TenantUsageStats,
    UsageBreakdown,
    UsageInput,
)
from relaygate.shared.governance.messaging_quota import (
    ChannelStats,
    MessageInput,
    MessagingBreakdown,
    MessagingQuotaGuard,
    QuotaCheckResult,
    hash_recipient,
)

__all__ = [
    "BudgetCheckResult",
    "BudgetGuard",
    "BudgetUtilization",
    "ChannelStats",
    "CostCalculation",
    "CostRateCache",
    "DEFAULT_COST_RATES",
    "LoggingBudgetNotifier",
    "MessageInput",
    "MessagingBreakdown",
    "MessagingQuotaGuard",
    "QuotaCheckResult",
    "TenantUsageStats",
    "UsageBreakdown",
    "UsageInput",
    "calculate_cost",
    "hash_recipient",
]
