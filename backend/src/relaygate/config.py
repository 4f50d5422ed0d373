"""Relaygate — application configuration."""

from __future__ import annotations

import enum
from typing import Any

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from relaygate.domain.entities import BudgetDefaults
from relaygate.shared.providers.types import FactoryConfig


class Environment(str, enum.Enum):
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


class Settings(BaseSettings):
    """Centralised, validated configuration loaded from environment / .env file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── Application ──────────────────────────────────────────
    app_name: str = "relaygate"
    app_env: Environment = Environment.DEVELOPMENT
    app_debug: bool = False
    log_level: str = "INFO"
    log_json: bool = False

    # ── Database ─────────────────────────────────────────────
    # Empty means in-memory repositories.
    database_url: str = ""
    database_pool_size: int = 20
    database_max_overflow: int = 10

    # ── Redis ────────────────────────────────────────────────
    # Empty means process-local circuit state.
    redis_url: str = ""
    redis_max_connections: int = 50

    # ── LLM providers ────────────────────────────────────────
    ai_provider: str = ""  # openai | claude | gemini; empty → openai leads
    openai_api_key: str = ""
    openai_base_url: str = ""
    openai_model: str = "gpt-4o"
    openai_organization_id: str = ""
    anthropic_api_key: str = ""
    anthropic_model: str = "claude-3-5-sonnet-20241022"
    google_api_key: str = ""
    google_model: str = "gemini-1.5-flash"

    # ── Messaging providers ──────────────────────────────────
    messaging_provider: str = ""  # waba | wati | twilio-whatsapp
    waba_access_token: str = ""
    waba_phone_number_id: str = ""
    wati_api_key: str = ""
    wati_api_endpoint: str = ""
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_whatsapp_number: str = ""

    # ── Provider resilience ──────────────────────────────────
    provider_timeout_seconds: float = 60.0
    provider_max_retries: int = 3
    provider_backoff_base: float = 1.0
    circuit_breaker_failure_threshold: int = 3
    circuit_breaker_recovery_seconds: float = 60.0
    health_check_timeout_seconds: float = 10.0

    # ── Governance ───────────────────────────────────────────
    budget_daily_cents: int = 500
    budget_monthly_cents: int = 5000
    budget_daily_request_limit: int = 500
    budget_monthly_token_limit: int = 1_000_000
    budget_hard_stop: bool = False
    budget_warning_threshold_percent: int = 80
    budget_average_cost_per_1k_cents: int = 200
    tenant_requests_per_minute: int = 0  # 0 = unlimited
    messaging_quota_enabled: bool = True
    messaging_quota_warning_percent: float = 80.0

    # ── Observability ────────────────────────────────────────
    prometheus_enabled: bool = True
    metrics_port: int = 0  # 0 = no standalone scrape server

    # ── Derived helpers ──────────────────────────────────────
    @property
    def is_production(self) -> bool:
        return self.app_env == Environment.PRODUCTION

    @property
    def factory_config(self) -> FactoryConfig:
        return FactoryConfig(
            max_retries=self.provider_max_retries,
            base_delay_s=self.provider_backoff_base,
            failure_threshold=self.circuit_breaker_failure_threshold,
            recovery_window_s=self.circuit_breaker_recovery_seconds,
            execute_timeout_s=self.provider_timeout_seconds,
            health_check_timeout_s=self.health_check_timeout_seconds,
        )

    @property
    def budget_defaults(self) -> BudgetDefaults:
        return BudgetDefaults(
            daily_budget_cents=self.budget_daily_cents,
            monthly_budget_cents=self.budget_monthly_cents,
            daily_request_limit=self.budget_daily_request_limit,
            monthly_token_limit=self.budget_monthly_token_limit,
            hard_stop=self.budget_hard_stop,
            warning_threshold_percent=self.budget_warning_threshold_percent,
        )

    @field_validator("log_level")
    @classmethod
    def _upper_log_level(cls, v: str) -> str:
        return v.upper()

    @field_validator("ai_provider", "messaging_provider")
    @classmethod
    def _lower_provider(cls, v: str) -> str:
        return v.strip().lower()

    @field_validator("database_url")
    @classmethod
    def _validate_database_url(cls, v: str) -> str:
        if v and not v.startswith(("postgresql", "sqlite")):
            raise ValueError("database_url must start with 'postgresql' or 'sqlite'")
        return v

    @field_validator("budget_warning_threshold_percent")
    @classmethod
    def _validate_threshold(cls, v: int) -> int:
        if not 0 <= v <= 100:
            raise ValueError("budget_warning_threshold_percent must be between 0 and 100")
        return v

    @model_validator(mode="after")
    def _guard_resilience_knobs(self) -> Settings:
        if self.provider_max_retries < 1:
            raise ValueError("provider_max_retries must be at least 1")
        if self.circuit_breaker_failure_threshold < 1:
            raise ValueError("circuit_breaker_failure_threshold must be at least 1")
        return self


def get_settings(**overrides: Any) -> Settings:
    """Factory that allows test-time overrides."""
    return Settings(**overrides)
