"""
Adapter Registry

Maps integration names to adapter instances. Names must be declared in the
integration catalogue; unknown names are rejected when registering and when
looking up, never skipped silently.
"""

from __future__ import annotations

import structlog

from engimetric.integrations.base import IntegrationAdapter, IntegrationMetadata
from engimetric.integrations.catalogue import INTEGRATION_CATALOGUE
from engimetric.kernel.errors import UnknownIntegrationError

logger = structlog.get_logger()


class AdapterRegistry:
    def __init__(self, catalogue: dict[str, IntegrationMetadata] | None = None) -> None:
        self._catalogue = dict(catalogue if catalogue is not None else INTEGRATION_CATALOGUE)
        self._adapters: dict[str, IntegrationAdapter] = {}

    def register(self, adapter: IntegrationAdapter) -> IntegrationAdapter:
        name = adapter.name
        if name not in self._catalogue:
            raise UnknownIntegrationError(integration=name)
        if name in self._adapters:
            raise ValueError(f"Adapter already registered for integration {name!r}")
        self._adapters[name] = adapter
        logger.info("Registered integration adapter", integration=name)
        return adapter

    def get(self, name: str) -> IntegrationAdapter:
        adapter = self._adapters.get(name)
        if adapter is None:
            raise UnknownIntegrationError(integration=name)
        return adapter

    def has(self, name: str) -> bool:
        return name in self._adapters

    def is_known(self, name: str) -> bool:
        """Declared in the catalogue (an adapter may not exist yet)."""
        return name in self._catalogue

    def names(self) -> list[str]:
        return sorted(self._adapters)

    def metadata_for(self, name: str) -> IntegrationMetadata | None:
        return self._catalogue.get(name)


_registry: AdapterRegistry | None = None


def get_registry() -> AdapterRegistry:
    """Process-wide registry with the built-in adapters."""
    global _registry
    if _registry is None:
        from engimetric.integrations.github import GitHubAdapter

        registry = AdapterRegistry()
        registry.register(GitHubAdapter())
        _registry = registry
    return _registry
