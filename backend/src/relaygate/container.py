"""Gateway context — wires adapters to ports and owns their lifecycle.

One ``GatewayContext`` replaces process-wide singletons: it builds the state
store, the governance repositories, one budget guard, the messaging quota
guard, and one
``ProviderGateway`` per vendor family, and tears them all down on
``shutdown``.

Usage::

    ctx = GatewayContext.from_settings(get_settings())
    await ctx.init()
    result = await ctx.llm.call("tenant-1", request)
    ...
    await ctx.shutdown()
"""

from __future__ import annotations

import asyncio
from typing import Any, Iterable

import structlog
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from relaygate.adapters.outbound.cache import create_state_store
from relaygate.adapters.outbound.llm import LLM_ADAPTERS, build_llm_descriptors
from relaygate.adapters.outbound.messaging import MESSAGING_ADAPTERS, build_messaging_descriptors
from relaygate.adapters.outbound.persistence.database import (
    create_engine,
    create_session_factory,
    create_tables,
)
from relaygate.adapters.outbound.persistence.memory import (
    InMemoryBudgetRepository,
    InMemoryCostRateRepository,
    InMemoryMessagingQuotaRepository,
)
from relaygate.adapters.outbound.persistence.repositories import (
    SQLAlchemyBudgetRepository,
    SQLAlchemyCostRateRepository,
    SQLAlchemyMessagingQuotaRepository,
)
from relaygate.config import Settings
from relaygate.domain.enums import ProviderFamily
from relaygate.ports.outbound import (
    BudgetNotifier,
    BudgetRepository,
    CostRateRepository,
    MessagingQuotaRepository,
    StateStore,
)
from relaygate.shared.governance import BudgetGuard, CostRateCache, MessagingQuotaGuard
from relaygate.shared.observability import configure_logging
from relaygate.shared.observability.metrics import render_metrics, start_metrics_server
from relaygate.shared.providers import (
    HealthTracker,
    ProviderDescriptor,
    ProviderGateway,
    ProviderRegistry,
    TenantRateLimiter,
)
from relaygate.shared.providers.executor import Sleep

logger = structlog.get_logger(__name__)


class GatewayContext:
    """Explicit-lifecycle owner of both provider gateways."""

    def __init__(
        self,
        settings: Settings,
        *,
        store: StateStore,
        budget_repository: BudgetRepository,
        cost_rate_repository: CostRateRepository,
        messaging_quota_repository: MessagingQuotaRepository | None = None,
        notifier: BudgetNotifier | None = None,
        engine: AsyncEngine | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._settings = settings
        self._store = store
        self._engine = engine
        self._initialized = False
        self._metrics_started = False

        self.budget_guard = BudgetGuard(
            budget_repository,
            CostRateCache(cost_rate_repository),
            defaults=settings.budget_defaults,
            notifier=notifier,
            average_cost_per_1k_cents=settings.budget_average_cost_per_1k_cents,
        )
        self.quota_guard: MessagingQuotaGuard | None = None
        if settings.messaging_quota_enabled:
            self.quota_guard = MessagingQuotaGuard(
                messaging_quota_repository or InMemoryMessagingQuotaRepository(),
                warning_percent=settings.messaging_quota_warning_percent,
            )
        # One limiter for both families: the allowance is per tenant.
        self.rate_limiter = TenantRateLimiter(
            requests_per_minute=settings.tenant_requests_per_minute
        )

        factory = settings.factory_config
        self.llm = ProviderGateway(
            ProviderRegistry(LLM_ADAPTERS, family=ProviderFamily.LLM),
            HealthTracker(
                store,
                failure_threshold=factory.failure_threshold,
                recovery_window_s=factory.recovery_window_s,
            ),
            budget_guard=self.budget_guard,
            rate_limiter=self.rate_limiter,
            sleep=sleep,
        )
        self.messaging = ProviderGateway(
            ProviderRegistry(MESSAGING_ADAPTERS, family=ProviderFamily.MESSAGING),
            HealthTracker(
                store,
                failure_threshold=factory.failure_threshold,
                recovery_window_s=factory.recovery_window_s,
            ),
            budget_guard=self.budget_guard,
            quota_guard=self.quota_guard,
            rate_limiter=self.rate_limiter,
            sleep=sleep,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> GatewayContext:
        """Redis and SQL when configured, in-memory otherwise."""
        store = create_state_store(settings.redis_url, settings.redis_max_connections)
        if settings.database_url:
            engine = create_engine(settings)
            factory = create_session_factory(engine)
            return cls(
                settings,
                store=store,
                budget_repository=SQLAlchemyBudgetRepository(factory),
                cost_rate_repository=SQLAlchemyCostRateRepository(factory),
                messaging_quota_repository=SQLAlchemyMessagingQuotaRepository(factory),
                engine=engine,
            )
        return cls(
            settings,
            store=store,
            budget_repository=InMemoryBudgetRepository(),
            cost_rate_repository=InMemoryCostRateRepository(),
            messaging_quota_repository=InMemoryMessagingQuotaRepository(),
        )

    @property
    def settings(self) -> Settings:
        return self._settings

    def gateway(self, family: ProviderFamily) -> ProviderGateway:
        return self.llm if family == ProviderFamily.LLM else self.messaging

    def metrics(self) -> tuple[bytes, str]:
        """Prometheus exposition for an embedding app's scrape route."""
        return render_metrics()

    async def status(self) -> dict[str, Any]:
        """Backend connectivity plus per-provider circuit state."""
        services: dict[str, str] = {
            "state_store": "connected" if await self._store.health_check() else "disconnected",
        }
        if self._engine is None:
            services["database"] = "memory"
        else:
            try:
                async with self._engine.connect() as conn:
                    await conn.execute(text("SELECT 1"))
                services["database"] = "connected"
            except SQLAlchemyError as exc:
                services["database"] = "disconnected"
                services["database_error"] = str(exc)

        providers = {}
        for family, gw in (("llm", self.llm), ("messaging", self.messaging)):
            providers[family] = [
                {
                    "code": h.code,
                    "state": h.state.value,
                    "consecutive_failures": h.consecutive_failures,
                    "status": h.status.value,
                    "success_rate": h.success_rate,
                }
                for h in await gw.health()
            ]

        # Only an unreachable database degrades the overall status.
        overall = "degraded" if services["database"] == "disconnected" else "ok"
        return {
            "status": overall,
            "environment": self._settings.app_env.value,
            "services": services,
            "providers": providers,
        }

    async def health_dashboard(self) -> dict[str, Any]:
        """Per-family provider health summaries and recommendations."""
        return {"llm": await self.llm.dashboard(), "messaging": await self.messaging.dashboard()}

    # ── Lifecycle ────────────────────────────────────────────
    async def init(
        self,
        llm_descriptors: Iterable[ProviderDescriptor] | None = None,
        messaging_descriptors: Iterable[ProviderDescriptor] | None = None,
    ) -> None:
        """Build both gateways; descriptors default to the environment."""
        s = self._settings
        configure_logging(log_level=s.log_level, json_logs=s.log_json or s.is_production)
        if self._engine is not None:
            await create_tables(self._engine)
        if s.prometheus_enabled and s.metrics_port and not self._metrics_started:
            start_metrics_server(s.metrics_port)
            self._metrics_started = True
            logger.info("metrics_server_started", port=s.metrics_port)

        factory = s.factory_config
        await self.llm.init(
            build_llm_descriptors(s) if llm_descriptors is None else llm_descriptors,
            factory,
        )
        await self.messaging.init(
            build_messaging_descriptors(s) if messaging_descriptors is None else messaging_descriptors,
            factory,
        )
        self._initialized = True
        logger.info(
            "gateway_context_ready",
            app=s.app_name,
            env=s.app_env.value,
            llm=self.llm.registry.codes,
            messaging=self.messaging.registry.codes,
        )

    async def reload(
        self,
        llm_descriptors: Iterable[ProviderDescriptor] | None = None,
        messaging_descriptors: Iterable[ProviderDescriptor] | None = None,
    ) -> None:
        """Swap in new provider generations; health state of kept codes survives."""
        s = self._settings
        await self.llm.reload(
            build_llm_descriptors(s) if llm_descriptors is None else llm_descriptors
        )
        await self.messaging.reload(
            build_messaging_descriptors(s) if messaging_descriptors is None else messaging_descriptors
        )
        logger.info("gateway_context_reloaded")

    async def shutdown(self) -> None:
        for name, close in (
            ("llm", self.llm.shutdown),
            ("messaging", self.messaging.shutdown),
            ("state_store", self._store.close),
        ):
            try:
                await close()
            except Exception as exc:
                logger.warning("gateway_context_close_failed", component=name, error=str(exc))
        if self._engine is not None:
            await self._engine.dispose()
        self._initialized = False
        logger.info("gateway_context_shutdown")

    async def __aenter__(self) -> GatewayContext:
        if not self._initialized:
            await self.init()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.shutdown()
