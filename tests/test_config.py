"""Configuration behavior: defaults, env resolution, merge and validation."""

from __future__ import annotations

import httpx
import pytest

from switchboard.config import (
    ProviderConfig,
    RateLimitConfig,
    ServiceConfiguration,
    TimeoutConfig,
)
from switchboard.errors import ConfigurationError, ServiceCreationError
from switchboard.providers.gemini import GeminiServiceFactory
from switchboard.retry import RetryPolicy

pytestmark = pytest.mark.unit


def test_defaults_fill_known_base_url_and_policies() -> None:
    config = ProviderConfig.defaults("openai")
    assert config.base_url == "https://api.openai.com/v1"
    assert config.retry_policy == RetryPolicy()
    assert config.timeouts == TimeoutConfig()
    assert config.api_key is None


def test_unknown_provider_defaults_have_no_base_url() -> None:
    assert ProviderConfig.defaults("custom").base_url is None


def test_from_env_reads_api_key(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("GEMINI_API_KEY", "env-key")
    config = ProviderConfig.from_env("gemini")
    assert config.api_key == "env-key"


def test_from_env_overrides_win(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("GEMINI_API_KEY", "env-key")
    config = ProviderConfig.from_env("gemini", api_key="explicit")
    assert config.api_key == "explicit"


def test_from_env_reads_session_cookies(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("GEMINI_PSID", "psid-value")
    config = ProviderConfig.from_env("gemini-cookie")
    assert config.get("psid") == "psid-value"
    assert config.get("psidts") is None


def test_merge_combines_dicts_and_keeps_unset_fields() -> None:
    base = ProviderConfig(
        provider="qwen",
        base_url="https://a.test",
        custom_headers={"X-A": "1"},
        provider_specific={"max_uses": 10},
    )
    merged = base.merge(
        ProviderConfig(
            provider="qwen", custom_headers={"X-B": "2"}, provider_specific={"max_age_s": 5}
        )
    )
    assert merged.base_url == "https://a.test"
    assert merged.custom_headers == {"X-A": "1", "X-B": "2"}
    assert merged.provider_specific == {"max_uses": 10, "max_age_s": 5}


def test_merge_keeps_disabled_unless_override_sets_enabled() -> None:
    disabled = ProviderConfig(provider="qwen", enabled=False)

    kept = disabled.merge(ProviderConfig(provider="qwen", base_url="https://b.test"))
    assert kept.enabled is False
    assert not kept.is_enabled

    reenabled = disabled.merge(ProviderConfig(provider="qwen", enabled=True))
    assert reenabled.is_enabled

    assert ProviderConfig(provider="qwen").is_enabled


def test_disabled_provider_stays_disabled_through_env_layering() -> None:
    config = ServiceConfiguration().with_provider_config(
        ProviderConfig(provider="gemini", api_key="k", enabled=False)
    )

    resolved = config.provider_config("gemini")

    assert not resolved.is_enabled
    errors = GeminiServiceFactory().validate_configuration(resolved).errors
    assert "Provider gemini is disabled" in errors


def test_merge_rejects_other_provider() -> None:
    with pytest.raises(ConfigurationError, match="different providers"):
        ProviderConfig(provider="qwen").merge(ProviderConfig(provider="gemini"))


def test_validate_reports_bad_url_and_missing_key() -> None:
    result = ProviderConfig(provider="openai", base_url="ftp://nope").validate()
    assert not result.is_valid
    assert any("Invalid base URL" in e for e in result.errors)
    assert any("OPENAI_API_KEY" in e for e in result.errors)


def test_gemini_cookie_validation() -> None:
    missing = ProviderConfig.defaults("gemini-cookie").validate()
    assert any("__Secure-1PSID" in e for e in missing.errors)

    partial = ProviderConfig.defaults("gemini-cookie").merge(
        ProviderConfig(provider="gemini-cookie", provider_specific={"psid": "p"})
    )
    result = partial.validate()
    assert result.is_valid
    assert any("PSIDTS" in w for w in result.warnings)


def test_nested_policy_errors_surface() -> None:
    config = ProviderConfig(
        provider="free",
        retry_policy=RetryPolicy(max_retries=-1),
        rate_limits=RateLimitConfig(burst=-1),
        timeouts=TimeoutConfig(read_s=-1),
    )
    errors = config.validate().errors
    assert "Max retries cannot be negative" in errors
    assert "Burst size cannot be negative" in errors
    assert "Timeout read_s cannot be negative" in errors


def test_str_redacts_secrets() -> None:
    config = ProviderConfig(
        provider="gemini-cookie",
        api_key="sk-secret",
        provider_specific={"psid": "psid-secret-value"},
    )
    text = str(config)
    assert "sk-secret" not in text
    assert "psid-secret-value" not in text
    assert repr(config) == text
    assert "[REDACTED]" in text
    assert "psid" in text


def test_timeout_config_maps_to_httpx() -> None:
    timeout = TimeoutConfig(connect_s=1, read_s=2, write_s=3, total_s=4).to_httpx()
    assert isinstance(timeout, httpx.Timeout)
    assert timeout.connect == 1
    assert timeout.read == 2
    assert timeout.write == 3


def test_unlimited_rate_limits() -> None:
    assert RateLimitConfig.unlimited().is_unlimited
    assert not RateLimitConfig().is_unlimited


# =============================================================================
# ServiceConfiguration
# =============================================================================


@pytest.mark.parametrize(
    "kwargs",
    [
        {"request_timeout_s": 0},
        {"health_check_interval_s": -1},
        {"health_check_timeout_s": 0},
    ],
)
def test_service_configuration_rejects_impossible_values(kwargs: dict) -> None:
    with pytest.raises(ConfigurationError):
        ServiceConfiguration(**kwargs)


def test_service_configuration_rejects_mismatched_keys() -> None:
    with pytest.raises(ConfigurationError, match="holds a config for"):
        ServiceConfiguration(provider_configs={"qwen": ProviderConfig(provider="gemini")})


def test_provider_config_layers_explicit_over_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("OPENAI_API_KEY", "env-key")
    config = ServiceConfiguration().with_provider_config(
        ProviderConfig(provider="openai", base_url="https://proxy.test/v1")
    )

    resolved = config.provider_config("openai")

    assert resolved.api_key == "env-key"
    assert resolved.base_url == "https://proxy.test/v1"


# =============================================================================
# Factory validation
# =============================================================================


def test_factory_refuses_invalid_config() -> None:
    factory = GeminiServiceFactory()
    with pytest.raises(ServiceCreationError) as excinfo:
        factory.create_service(ProviderConfig.defaults("gemini"))
    assert excinfo.value.provider == "gemini"
    assert any("API key" in e for e in excinfo.value.errors)


def test_factory_reports_disabled_and_mismatched_configs() -> None:
    factory = GeminiServiceFactory()
    disabled = ProviderConfig(provider="gemini", api_key="k", enabled=False)
    assert "Provider gemini is disabled" in factory.validate_configuration(disabled).errors

    other = factory.validate_configuration(ProviderConfig(provider="qwen"))
    assert any("factory builds 'gemini'" in e for e in other.errors)
