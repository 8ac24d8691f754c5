"""Capability negotiation and provider metadata types."""

from __future__ import annotations

from dataclasses import dataclass, field, fields
import time

_CAPABILITY_ALIASES = {"websearch": "web_search"}


@dataclass(frozen=True)
class ProviderCapabilities:
    """Feature flags and limits a provider advertises."""

    streaming: bool = False
    vision: bool = False
    tools: bool = False
    web_search: bool = False
    thinking: bool = False
    multimodal: bool = False
    max_tokens: int = 4096
    supported_formats: tuple[str, ...] = ()

    def supports(self, capability: str) -> bool:
        """Return whether the named boolean capability is advertised."""
        name = _CAPABILITY_ALIASES.get(capability.lower(), capability.lower())
        value = getattr(self, name, None)
        return value is True


@dataclass(frozen=True)
class RequiredCapabilities:
    """Features a request cannot be served without."""

    streaming: bool = False
    vision: bool = False
    tools: bool = False
    web_search: bool = False
    thinking: bool = False
    multimodal: bool = False

    @classmethod
    def none(cls) -> RequiredCapabilities:
        return cls()

    def requires(self, capability: str) -> bool:
        name = _CAPABILITY_ALIASES.get(capability.lower(), capability.lower())
        return getattr(self, name, False) is True

    def required_names(self) -> tuple[str, ...]:
        return tuple(f.name for f in fields(self) if getattr(self, f.name))

    def is_compatible_with(self, capabilities: ProviderCapabilities) -> bool:
        """True when every required flag is supported by *capabilities*."""
        return all(capabilities.supports(name) for name in self.required_names())


@dataclass(frozen=True)
class ProviderInfo:
    """Static provider metadata, answerable without network access."""

    provider: str
    display_name: str
    description: str
    capabilities: ProviderCapabilities
    requires_network: bool = True


@dataclass(frozen=True)
class ModelInfo:
    id: str
    display_name: str
    provider: str
    capabilities: ProviderCapabilities | None = None


@dataclass(frozen=True)
class HealthStatus:
    """Outcome of one health probe; advisory only."""

    healthy: bool
    message: str
    response_time_ms: int = -1
    checked_at: float = field(default_factory=time.time)

    @classmethod
    def ok(cls, response_time_ms: int = 0) -> HealthStatus:
        return cls(True, "OK", response_time_ms)

    @classmethod
    def unhealthy(cls, message: str, response_time_ms: int = -1) -> HealthStatus:
        return cls(False, message, response_time_ms)
