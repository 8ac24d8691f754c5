from __future__ import annotations

import pytest

from switchboard.capabilities import ProviderCapabilities, RequiredCapabilities
from switchboard.errors import ConfigurationError
from switchboard.models import Attachment, Message
from switchboard.registry import ProviderRegistry, default_registry
from switchboard.request import AIRequest
from switchboard.selector import ProviderSelector
from tests.helpers import FakeFactory, FakeService

pytestmark = pytest.mark.unit


def _registry(*services: FakeService, offline: tuple[str, ...] = ()) -> ProviderRegistry:
    registry = ProviderRegistry()
    for service in services:
        registry.register(
            FakeFactory(service, requires_network=service.provider not in offline)
        )
    return registry


def _request(text: str = "hi", **required: bool) -> AIRequest:
    return AIRequest(
        messages=(Message.user(text),),
        model="m",
        required_capabilities=RequiredCapabilities(**required),
    )


# =============================================================================
# Registry
# =============================================================================


def test_registry_preserves_registration_order() -> None:
    registry = _registry(FakeService("b"), FakeService("a"), FakeService("c"))
    assert registry.providers() == ["b", "a", "c"]
    assert [i.provider for i in registry.all_provider_info()] == ["b", "a", "c"]
    assert len(registry) == 3
    assert "a" in registry


def test_duplicate_registration_is_rejected() -> None:
    registry = _registry(FakeService("a"))
    with pytest.raises(ConfigurationError, match="already registered"):
        registry.register(FakeFactory(FakeService("a")))


def test_register_checks_declared_identity() -> None:
    registry = ProviderRegistry()
    with pytest.raises(ConfigurationError, match="mismatch"):
        registry.register(FakeFactory(FakeService("a")), provider="b")
    with pytest.raises(ConfigurationError):
        registry.register(None)  # type: ignore[arg-type]
    assert registry.is_empty


def test_unregister_and_lookup() -> None:
    registry = _registry(FakeService("a"))
    assert registry.provider_info("missing") is None
    assert registry.unregister("a") is not None
    assert registry.unregister("a") is None
    assert registry.factory("a") is None


def test_network_split() -> None:
    registry = _registry(FakeService("cloud"), FakeService("local"), offline=("local",))
    assert [f.provider for f in registry.network_factories()] == ["cloud"]
    assert [f.provider for f in registry.offline_factories()] == ["local"]


def test_default_registry_holds_builtin_providers() -> None:
    registry = default_registry()
    assert registry.providers() == [
        "gemini",
        "gemini-cookie",
        "qwen",
        "openai",
        "deepinfra",
        "airforce",
        "free",
    ]
    info = registry.provider_info("gemini-cookie")
    assert info is not None
    assert info.display_name == "Google Gemini (Free)"
    assert info.capabilities.web_search


# =============================================================================
# Selection
# =============================================================================


def test_selector_scores_required_capabilities() -> None:
    selector = ProviderSelector(ProviderRegistry(), preferred_providers=("p",))
    caps = ProviderCapabilities(streaming=True, vision=True, tools=True)

    assert selector.score("x", caps, _request()) == 100
    assert selector.score("x", caps, _request(streaming=True, tools=True)) == 200
    assert selector.score("p", caps, _request(vision=True)) == 350


def test_selector_skips_incompatible_providers() -> None:
    registry = _registry(
        FakeService("plain", capabilities=ProviderCapabilities(streaming=True)),
        FakeService("vision", capabilities=ProviderCapabilities(streaming=True, vision=True)),
    )
    selector = ProviderSelector(registry)

    assert selector.select(_request(vision=True)) == "vision"
    assert selector.select(_request(web_search=True)) is None


def test_preference_never_outweighs_a_missing_capability() -> None:
    registry = _registry(
        FakeService("p1", capabilities=ProviderCapabilities(streaming=False, vision=True)),
        FakeService("p2", capabilities=ProviderCapabilities(streaming=True)),
    )
    selector = ProviderSelector(registry, preferred_providers=("p1",))

    assert selector.select(_request(streaming=True)) == "p2"
    assert selector.select(_request()) == "p1"


def test_attachments_need_a_vision_or_multimodal_provider() -> None:
    registry = _registry(
        FakeService("text", capabilities=ProviderCapabilities(streaming=True)),
        FakeService("eyes", capabilities=ProviderCapabilities(multimodal=True)),
    )
    selector = ProviderSelector(registry, preferred_providers=("text",))
    image = Attachment(type="image", data=b"img")
    request = AIRequest(messages=(Message.user("What is this?", image),), model="m")

    assert selector.select(request) == "eyes"
    assert selector.select(request, ["text"]) is None


def test_selector_respects_token_budget() -> None:
    registry = _registry(
        FakeService("small", capabilities=ProviderCapabilities(max_tokens=50)),
        FakeService("large", capabilities=ProviderCapabilities(max_tokens=10_000)),
    )
    selector = ProviderSelector(registry)

    assert selector.select(_request("x" * 1_000)) == "large"
    assert selector.select(_request("short")) == "small"


def test_ties_keep_registry_order() -> None:
    registry = _registry(FakeService("first"), FakeService("second"))
    assert ProviderSelector(registry).select(_request(streaming=True)) == "first"


def test_preferred_provider_wins() -> None:
    registry = _registry(FakeService("first"), FakeService("second"))
    selector = ProviderSelector(registry, preferred_providers=("second",))
    assert selector.select(_request(streaming=True, tools=True)) == "second"


def test_select_limits_to_candidates() -> None:
    registry = _registry(FakeService("first"), FakeService("second"))
    selector = ProviderSelector(registry)
    assert selector.select(_request(), candidates=["second"]) == "second"
    assert selector.select(_request(), candidates=[]) is None
    assert selector.select(_request(), candidates=["unknown"]) is None
