"""Prometheus metrics for the provider gateway."""

from __future__ import annotations

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    Counter,
    Histogram,
    generate_latest,
    start_http_server,
)


# ── Provider metrics ─────────────────────────────────────────
PROVIDER_ATTEMPTS = Counter(
    "gateway_provider_attempts_total",
    "Individual attempts sent to a provider",
    ["provider", "outcome"],  # success / retryable / fatal
)

PROVIDER_LATENCY = Histogram(
    "gateway_provider_latency_seconds",
    "Provider attempt latency",
    ["provider"],
    buckets=(0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0),
)

FAILOVERS_TOTAL = Counter(
    "gateway_failovers_total",
    "Calls served by a provider other than the first in order",
    ["provider"],
)

ALL_PROVIDERS_FAILED = Counter(
    "gateway_all_providers_failed_total",
    "Calls where every provider was ineligible or exhausted",
)

CIRCUIT_TRANSITIONS = Counter(
    "gateway_circuit_transitions_total",
    "Circuit breaker state changes",
    ["provider", "state"],
)

# ── Governance metrics ───────────────────────────────────────
BUDGET_DECISIONS = Counter(
    "gateway_budget_decisions_total",
    "Budget admission decisions",
    ["decision"],  # allowed / denied / fail_open
)

RATE_LIMIT_REJECTIONS = Counter(
    "gateway_rate_limit_rejections_total",
    "Calls rejected by the per-tenant rate limiter",
)

USAGE_RECORDS = Counter(
    "gateway_usage_records_total",
    "Usage rows written",
    ["status"],
)

USAGE_COST_CENTS = Counter(
    "gateway_usage_cost_cents_total",
    "Metered cost of successful calls in cents",
    ["provider"],
)

QUOTA_DECISIONS = Counter(
    "gateway_messaging_quota_decisions_total",
    "Messaging quota admission decisions",
    ["channel", "decision"],  # allowed / denied / fail_open
)

MESSAGES_RECORDED = Counter(
    "gateway_messages_recorded_total",
    "Message log entries written",
    ["channel", "status"],
)


def render_metrics() -> tuple[bytes, str]:
    """Current exposition payload and its content type, for a scrape endpoint."""
    return generate_latest(), CONTENT_TYPE_LATEST


def start_metrics_server(port: int) -> None:
    """Serve ``/metrics`` from a background thread on ``port``."""
    start_http_server(port)
