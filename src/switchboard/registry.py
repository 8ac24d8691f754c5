"""Provider registry and the factory contract.

Factories validate configuration before constructing a service, and answer
metadata questions without network access. The registry maps provider
identity to factory and preserves registration order, which is the
tie-break order for selection and the iteration order for fallback.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
import logging
from typing import TYPE_CHECKING

from switchboard.errors import ConfigurationError, ServiceCreationError
from switchboard.validation import ValidationResult

if TYPE_CHECKING:
    import httpx

    from switchboard.capabilities import ProviderInfo
    from switchboard.config import ProviderConfig
    from switchboard.providers.base import AIService

logger = logging.getLogger(__name__)


class AIServiceFactory(ABC):
    """Builds services for one provider identity."""

    def __init__(self, *, transport: httpx.AsyncBaseTransport | None = None) -> None:
        """Optionally pin an HTTP transport for every service this factory builds."""
        self._transport = transport

    @property
    @abstractmethod
    def provider(self) -> str:
        """Provider identity served by this factory."""

    @abstractmethod
    def provider_info(self) -> ProviderInfo:
        """Static metadata; never touches the network."""

    @abstractmethod
    def _create(self, config: ProviderConfig) -> AIService: ...

    @property
    def requires_network(self) -> bool:
        return self.provider_info().requires_network

    def validate_specific(self, config: ProviderConfig) -> ValidationResult:
        """Factory-local checks beyond ``ProviderConfig.validate``."""
        del config
        return ValidationResult()

    def validate_configuration(self, config: ProviderConfig) -> ValidationResult:
        """Return structured errors and warnings; never raises for bad config."""
        result = ValidationResult()
        if config.provider != self.provider:
            result = result.with_error(
                f"Configuration is for {config.provider!r}, factory builds {self.provider!r}"
            )
        if not config.is_enabled:
            result = result.with_error(f"Provider {self.provider} is disabled")
        return result.merge(config.validate()).merge(self.validate_specific(config))

    def create_service(self, config: ProviderConfig) -> AIService:
        """Validate *config*, then build the service."""
        result = self.validate_configuration(config)
        for warning in result.warnings:
            logger.warning("%s configuration: %s", self.provider, warning)
        if not result.is_valid:
            raise ServiceCreationError(
                f"Invalid {self.provider} configuration: {'; '.join(result.errors)}",
                provider=self.provider,
                errors=result.errors,
            )
        logger.debug("Creating %s service", self.provider)
        return self._create(config)


class ProviderRegistry:
    """Ordered map of provider identity to factory."""

    def __init__(self) -> None:
        self._factories: dict[str, AIServiceFactory] = {}

    def register(self, factory: AIServiceFactory, provider: str | None = None) -> None:
        """Register *factory*; *provider*, when given, must match its identity."""
        if factory is None:
            raise ConfigurationError("Cannot register a None factory")
        if provider is not None and provider != factory.provider:
            raise ConfigurationError(
                f"Factory provider mismatch: expected {provider!r}, got {factory.provider!r}"
            )
        if factory.provider in self._factories:
            raise ConfigurationError(
                f"Provider already registered: {factory.provider}",
                hint="Unregister the existing factory first.",
            )
        self._factories[factory.provider] = factory
        logger.info("Registered provider %s", factory.provider)

    def unregister(self, provider: str) -> AIServiceFactory | None:
        factory = self._factories.pop(provider, None)
        if factory is not None:
            logger.info("Unregistered provider %s", provider)
        return factory

    def factory(self, provider: str) -> AIServiceFactory | None:
        return self._factories.get(provider)

    def is_registered(self, provider: str) -> bool:
        return provider in self._factories

    def providers(self) -> list[str]:
        """Registered identities in registration order."""
        return list(self._factories)

    def provider_info(self, provider: str) -> ProviderInfo | None:
        factory = self._factories.get(provider)
        return factory.provider_info() if factory is not None else None

    def all_provider_info(self) -> list[ProviderInfo]:
        return [f.provider_info() for f in self._factories.values()]

    def network_factories(self) -> list[AIServiceFactory]:
        return [f for f in self._factories.values() if f.requires_network]

    def offline_factories(self) -> list[AIServiceFactory]:
        return [f for f in self._factories.values() if not f.requires_network]

    def clear(self) -> None:
        self._factories.clear()

    def __len__(self) -> int:
        return len(self._factories)

    def __contains__(self, provider: object) -> bool:
        return provider in self._factories

    @property
    def is_empty(self) -> bool:
        return not self._factories


def default_registry(*, transport: httpx.AsyncBaseTransport | None = None) -> ProviderRegistry:
    """A registry holding every built-in provider factory."""
    from switchboard.providers import builtin_factories

    registry = ProviderRegistry()
    for factory in builtin_factories(transport=transport):
        registry.register(factory)
    return registry
