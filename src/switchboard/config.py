"""Configuration: per-provider settings and the global service configuration.

Secrets can be resolved from the environment (``.env`` files are honored via
python-dotenv). Provider-specific validation is pluggable: each provider
family registers a validator instead of extending a central switch.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
import os
from typing import TYPE_CHECKING, Any
from urllib.parse import urlparse

from dotenv import load_dotenv
import httpx

from switchboard.errors import ConfigurationError
from switchboard.retry import RetryPolicy
from switchboard.validation import ValidationResult

if TYPE_CHECKING:
    from collections.abc import Callable

load_dotenv()

# Known provider identities. Adapters may register others.
GEMINI = "gemini"
GEMINI_COOKIE = "gemini-cookie"
QWEN = "qwen"
OPENAI = "openai"
DEEPINFRA = "deepinfra"
AIRFORCE = "airforce"
FREE = "free"

_DEFAULT_BASE_URLS: dict[str, str] = {
    GEMINI: "https://generativelanguage.googleapis.com/v1beta",
    GEMINI_COOKIE: "https://gemini.google.com",
    QWEN: "https://chat.qwen.ai/api/v2",
    OPENAI: "https://api.openai.com/v1",
    DEEPINFRA: "https://api.deepinfra.com/v1/openai",
    AIRFORCE: "https://api.airforce/v1",
    FREE: "https://text.pollinations.ai/openai",
}

# Environment variables consulted by ProviderConfig.from_env.
_API_KEY_ENV_VARS: dict[str, str] = {
    GEMINI: "GEMINI_API_KEY",
    OPENAI: "OPENAI_API_KEY",
    DEEPINFRA: "DEEPINFRA_API_KEY",
    AIRFORCE: "AIRFORCE_API_KEY",
}
_PROVIDER_SPECIFIC_ENV_VARS: dict[str, dict[str, str]] = {
    GEMINI_COOKIE: {"psid": "GEMINI_PSID", "psidts": "GEMINI_PSIDTS"},
}

_validators: dict[str, Callable[[ProviderConfig], ValidationResult]] = {}


def register_config_validator(
    provider: str, validator: Callable[[ProviderConfig], ValidationResult]
) -> None:
    """Install the provider-specific part of ``ProviderConfig.validate``."""
    _validators[provider] = validator


def api_key_env_var(provider: str) -> str | None:
    return _API_KEY_ENV_VARS.get(provider)


@dataclass(frozen=True)
class TimeoutConfig:
    connect_s: float = 30.0
    read_s: float = 60.0
    write_s: float = 30.0
    total_s: float = 300.0

    def validate(self) -> ValidationResult:
        result = ValidationResult()
        for name in ("connect_s", "read_s", "write_s", "total_s"):
            if getattr(self, name) < 0:
                result = result.with_error(f"Timeout {name} cannot be negative")
        return result

    def to_httpx(self) -> httpx.Timeout:
        return httpx.Timeout(
            connect=self.connect_s,
            read=self.read_s,
            write=self.write_s,
            pool=self.total_s,
        )


@dataclass(frozen=True)
class RateLimitConfig:
    """Token-bucket limits applied before each HTTP call of a service."""

    requests_per_second: float = 10.0
    burst: int = 20
    max_queue: int = 100

    @classmethod
    def unlimited(cls) -> RateLimitConfig:
        return cls(requests_per_second=0.0, burst=0, max_queue=0)

    @property
    def is_unlimited(self) -> bool:
        return self.requests_per_second <= 0

    def validate(self) -> ValidationResult:
        result = ValidationResult()
        if self.requests_per_second < 0:
            result = result.with_error("Requests per second cannot be negative")
        if self.burst < 0:
            result = result.with_error("Burst size cannot be negative")
        if self.max_queue < 0:
            result = result.with_error("Queue size cannot be negative")
        return result


@dataclass(frozen=True)
class ProviderConfig:
    """Everything a service needs to talk to one provider.

    Example:
        config = ProviderConfig.defaults("gemini")
        config = config.merge(ProviderConfig(provider="gemini", api_key="..."))
    """

    provider: str
    base_url: str | None = None
    #: Auto-resolved from the provider's env var by ``from_env``.
    api_key: str | None = None
    timeouts: TimeoutConfig | None = None
    retry_policy: RetryPolicy | None = None
    rate_limits: RateLimitConfig | None = None
    custom_headers: dict[str, str] = field(default_factory=dict)
    provider_specific: dict[str, Any] = field(default_factory=dict)
    #: None means "not set"; an unset flag counts as enabled.
    enabled: bool | None = None

    @classmethod
    def defaults(cls, provider: str) -> ProviderConfig:
        """Return a config with the provider's known base URL and stock policies."""
        return cls(
            provider=provider,
            base_url=_DEFAULT_BASE_URLS.get(provider),
            timeouts=TimeoutConfig(),
            retry_policy=RetryPolicy.defaults(),
            rate_limits=RateLimitConfig(),
        )

    @classmethod
    def from_env(cls, provider: str, **overrides: Any) -> ProviderConfig:
        """Defaults plus secrets read from the environment, then *overrides*."""
        base = cls.defaults(provider)
        env_var = _API_KEY_ENV_VARS.get(provider)
        api_key = os.environ.get(env_var) if env_var else None
        specific = {
            key: value
            for key, var in _PROVIDER_SPECIFIC_ENV_VARS.get(provider, {}).items()
            if (value := os.environ.get(var))
        }
        resolved = base.merge(
            cls(provider=provider, api_key=api_key, provider_specific=specific)
        )
        if overrides:
            resolved = resolved.merge(cls(provider=provider, **overrides))
        return resolved

    @property
    def is_enabled(self) -> bool:
        return self.enabled is not False

    @property
    def effective_timeouts(self) -> TimeoutConfig:
        return self.timeouts or TimeoutConfig()

    @property
    def effective_retry_policy(self) -> RetryPolicy:
        return self.retry_policy or RetryPolicy.defaults()

    @property
    def effective_rate_limits(self) -> RateLimitConfig:
        return self.rate_limits or RateLimitConfig()

    def get(self, key: str, default: Any = None) -> Any:
        """Return a provider-specific value."""
        value = self.provider_specific.get(key)
        return default if value is None else value

    def merge(self, other: ProviderConfig | None) -> ProviderConfig:
        """Overlay *other*: fields it sets win, dict fields are combined."""
        if other is None:
            return self
        if other.provider != self.provider:
            raise ConfigurationError(
                f"Cannot merge configs for different providers: "
                f"{self.provider!r} and {other.provider!r}",
                hint="Merge only runtime overrides of the same provider.",
            )
        return replace(
            self,
            base_url=other.base_url or self.base_url,
            api_key=other.api_key or self.api_key,
            timeouts=other.timeouts or self.timeouts,
            retry_policy=other.retry_policy or self.retry_policy,
            rate_limits=other.rate_limits or self.rate_limits,
            custom_headers={**self.custom_headers, **other.custom_headers},
            provider_specific={**self.provider_specific, **other.provider_specific},
            enabled=self.enabled if other.enabled is None else other.enabled,
        )

    def validate(self) -> ValidationResult:
        """Validate without raising; errors block service creation."""
        result = ValidationResult()
        if self.base_url:
            parsed = urlparse(self.base_url)
            if parsed.scheme not in ("http", "https") or not parsed.netloc:
                result = result.with_error(f"Invalid base URL: {self.base_url}")

        validator = _validators.get(self.provider)
        if validator is not None:
            result = result.merge(validator(self))

        if self.timeouts is not None:
            result = result.merge(self.timeouts.validate())
        if self.retry_policy is not None:
            result = result.merge(self.retry_policy.validate())
        if self.rate_limits is not None:
            result = result.merge(self.rate_limits.validate())
        return result

    def __str__(self) -> str:
        """Return a redacted, developer-friendly representation."""
        secret_keys = sorted(self.provider_specific)
        return (
            f"ProviderConfig(provider={self.provider!r}, base_url={self.base_url!r}, "
            f"api_key={'[REDACTED]' if self.api_key else None}, "
            f"provider_specific_keys={secret_keys}, enabled={self.is_enabled})"
        )

    __repr__ = __str__


def _require_api_key(config: ProviderConfig) -> ValidationResult:
    if config.api_key:
        return ValidationResult()
    env_var = _API_KEY_ENV_VARS.get(config.provider)
    suffix = f" (set {env_var})" if env_var else ""
    return ValidationResult(errors=(f"API key is required for {config.provider}{suffix}",))


def _validate_gemini_cookie(config: ProviderConfig) -> ValidationResult:
    result = ValidationResult()
    if not config.get("psid"):
        result = result.with_error(
            "Missing __Secure-1PSID session cookie (provider_specific['psid'])"
        )
    if not config.get("psidts"):
        result = result.with_warning(
            "Missing __Secure-1PSIDTS cookie (provider_specific['psidts']); "
            "sessions may expire sooner"
        )
    return result


register_config_validator(GEMINI, _require_api_key)
register_config_validator(OPENAI, _require_api_key)
register_config_validator(DEEPINFRA, _require_api_key)
register_config_validator(GEMINI_COOKIE, _validate_gemini_cookie)


@dataclass(frozen=True)
class ServiceConfiguration:
    """Global orchestrator settings.

    ``preferred_providers`` earns a selection bonus, in no particular order.
    """

    provider_configs: dict[str, ProviderConfig] = field(default_factory=dict)
    request_timeout_s: float = 300.0
    preferred_providers: tuple[str, ...] = ()
    enable_health_monitoring: bool = True
    health_check_interval_s: float = 60.0
    health_check_timeout_s: float = 10.0

    def __post_init__(self) -> None:
        """Reject values that would make orchestration impossible."""
        if self.request_timeout_s <= 0:
            raise ConfigurationError(
                f"request_timeout_s must be > 0, got {self.request_timeout_s}",
                hint="This bounds the whole request including fallback.",
            )
        if self.health_check_interval_s <= 0:
            raise ConfigurationError(
                f"health_check_interval_s must be > 0, got {self.health_check_interval_s}",
                hint="Disable monitoring with enable_health_monitoring=False instead.",
            )
        if self.health_check_timeout_s <= 0:
            raise ConfigurationError(
                f"health_check_timeout_s must be > 0, got {self.health_check_timeout_s}",
            )
        for key, cfg in self.provider_configs.items():
            if cfg.provider != key:
                raise ConfigurationError(
                    f"provider_configs[{key!r}] holds a config for {cfg.provider!r}",
                    hint="Key each ProviderConfig by its own provider identity.",
                )

    def provider_config(self, provider: str) -> ProviderConfig:
        """Return the configured provider settings layered over env-aware defaults."""
        return ProviderConfig.from_env(provider).merge(self.provider_configs.get(provider))

    def with_provider_config(self, config: ProviderConfig) -> ServiceConfiguration:
        configs = dict(self.provider_configs)
        configs[config.provider] = config
        return replace(self, provider_configs=configs)
