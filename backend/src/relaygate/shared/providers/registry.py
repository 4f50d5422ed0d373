"""Provider registry — builds adapters from descriptors and fixes the failover order.

A registry *generation* is built in one pass and swapped in wholesale, so a
reload never leaves callers looking at a half-built provider set.  A provider
whose construction or initialization fails is logged and left out; it never
aborts the build.
"""

from __future__ import annotations

from typing import Callable, Iterable, Mapping

import structlog

from relaygate.domain.enums import ProviderFamily
from relaygate.domain.exceptions import ConfigurationError
from relaygate.ports.outbound import ProviderAdapter
from relaygate.shared.providers.types import FactoryConfig, ProviderDescriptor

logger = structlog.get_logger(__name__)

AdapterFactory = Callable[[], ProviderAdapter]


class ProviderRegistry:
    """Holds one initialized adapter per registered provider code."""

    def __init__(
        self,
        adapters: Mapping[str, AdapterFactory],
        *,
        family: ProviderFamily,
    ) -> None:
        self._factories = dict(adapters)
        self._family = family
        self._factory_config = FactoryConfig()

        self._adapters: dict[str, ProviderAdapter] = {}
        self._descriptors: dict[str, ProviderDescriptor] = {}
        self._primary: str | None = None
        self._secondary: str | None = None

    # ── Accessors ────────────────────────────────────────────
    @property
    def family(self) -> ProviderFamily:
        return self._family

    @property
    def factory_config(self) -> FactoryConfig:
        return self._factory_config

    @property
    def primary(self) -> str | None:
        return self._primary

    @property
    def secondary(self) -> str | None:
        return self._secondary

    @property
    def codes(self) -> list[str]:
        """Registered codes in registration order."""
        return list(self._adapters)

    def get(self, code: str) -> ProviderAdapter | None:
        return self._adapters.get(code)

    def descriptor(self, code: str) -> ProviderDescriptor | None:
        return self._descriptors.get(code)

    def __contains__(self, code: object) -> bool:
        return code in self._adapters

    def __len__(self) -> int:
        return len(self._adapters)

    # ── Lifecycle ────────────────────────────────────────────
    async def initialize(
        self,
        descriptors: Iterable[ProviderDescriptor],
        factory_config: FactoryConfig | None = None,
    ) -> None:
        """Build a new generation from ``descriptors`` and swap it in."""
        active = [d for d in descriptors if d.is_active]
        # Stable sort: primary-flagged first, otherwise input order.
        ordered = sorted(active, key=lambda d: not d.is_primary)

        adapters: dict[str, ProviderAdapter] = {}
        registered: dict[str, ProviderDescriptor] = {}
        primary: str | None = None

        for desc in ordered:
            if desc.code in adapters:
                logger.warning("provider_duplicate_descriptor", provider=desc.code)
                continue
            adapter = await self._build(desc)
            if adapter is None:
                continue
            adapters[desc.code] = adapter
            registered[desc.code] = desc
            if desc.is_primary and primary is None:
                primary = desc.code
            logger.info(
                "provider_initialized",
                provider=desc.code,
                name=desc.display_name,
                family=self._family.value,
            )

        if primary is None and adapters:
            primary = next(iter(adapters))
        secondary = next(
            (
                code
                for code, desc in registered.items()
                if code != primary and not desc.is_primary
            ),
            None,
        )

        previous = list(self._adapters.values())
        self._adapters = adapters
        self._descriptors = registered
        self._primary = primary
        self._secondary = secondary
        if factory_config is not None:
            self._factory_config = factory_config

        logger.info(
            "provider_registry_ready",
            family=self._family.value,
            primary=primary,
            secondary=secondary,
            providers=list(adapters),
        )
        await self._close_all(previous)

    async def reload(self, descriptors: Iterable[ProviderDescriptor]) -> None:
        await self.initialize(descriptors, self._factory_config)

    async def shutdown(self) -> None:
        previous = list(self._adapters.values())
        self._adapters = {}
        self._descriptors = {}
        self._primary = None
        self._secondary = None
        await self._close_all(previous)

    # ── Ordering ─────────────────────────────────────────────
    def get_order(self, preferred: str | None = None) -> list[str]:
        """Preferred, primary, secondary, then the rest in registration order."""
        order: list[str] = []
        for code in (preferred, self._primary, self._secondary, *self._adapters):
            if code and code in self._adapters and code not in order:
                order.append(code)
        return order

    # ── Internals ────────────────────────────────────────────
    async def _build(self, desc: ProviderDescriptor) -> ProviderAdapter | None:
        factory = self._factories.get(desc.code)
        if factory is None:
            logger.warning("provider_unknown_code", provider=desc.code)
            return None
        if desc.family != self._family:
            logger.warning(
                "provider_family_mismatch",
                provider=desc.code,
                expected=self._family.value,
                got=desc.family.value,
            )
            return None

        try:
            adapter = factory()
            await adapter.initialize(desc.config)
        except ConfigurationError as exc:
            logger.error("provider_configuration_invalid", provider=desc.code, error=exc.message)
            return None
        except Exception as exc:
            logger.error(
                "provider_initialization_failed",
                provider=desc.code,
                error=f"{type(exc).__name__}: {exc}",
            )
            return None
        return adapter

    @staticmethod
    async def _close_all(adapters: list[ProviderAdapter]) -> None:
        for adapter in adapters:
            try:
                await adapter.close()
            except Exception as exc:
                logger.warning("provider_close_failed", error=str(exc))
