"""Shared pytest setup.

Every test runs without the host's provider credentials and without
``.env`` files; live provider tests only run when ``ENABLE_API_TESTS`` is set.
"""

from __future__ import annotations

from contextlib import suppress
import logging
import os

import pytest

from switchboard.models import Message
from switchboard.request import AIRequest, RequestParameters

GEMINI_MODEL = "gemini-2.5-flash"
OPENAI_MODEL = "gpt-4o-mini"

# Every variable ProviderConfig.from_env may read.
CREDENTIAL_ENV_VARS = (
    "GEMINI_API_KEY",
    "GEMINI_PSID",
    "GEMINI_PSIDTS",
    "OPENAI_API_KEY",
    "DEEPINFRA_API_KEY",
    "AIRFORCE_API_KEY",
)

LIVE_TESTS_FLAG = "ENABLE_API_TESTS"


# =============================================================================
# Hermetic environment
# =============================================================================


@pytest.fixture(autouse=True)
def block_dotenv(request, monkeypatch):
    """Stop python-dotenv from reading .env files (opt out with ``allow_dotenv``)."""
    if request.node.get_closest_marker("allow_dotenv") is None:
        with suppress(ImportError):
            import dotenv

            monkeypatch.setattr(dotenv, "load_dotenv", lambda *a, **kw: False)


@pytest.fixture(autouse=True)
def isolate_provider_env(request, monkeypatch):
    """Drop provider credentials unless the test is live or opts out."""
    keep = request.node.get_closest_marker("allow_env_pollution") or "api" in request.node.keywords
    if not keep:
        for name in CREDENTIAL_ENV_VARS:
            monkeypatch.delenv(name, raising=False)


@pytest.fixture(scope="session", autouse=True)
def quiet_noisy_libraries():
    for name in ("httpx", "httpcore", "asyncio"):
        logging.getLogger(name).setLevel(logging.WARNING)


def pytest_collection_modifyitems(config, items):
    if os.getenv(LIVE_TESTS_FLAG):
        return
    skip = pytest.mark.skip(reason=f"live provider tests need {LIVE_TESTS_FLAG}=1")
    for item in items:
        if "api" in item.keywords:
            item.add_marker(skip)


# =============================================================================
# Requests and credentials
# =============================================================================


@pytest.fixture
def chat_request() -> AIRequest:
    return AIRequest(messages=(Message.user("Hello"),), model="test-model")


@pytest.fixture
def streaming_request(chat_request: AIRequest) -> AIRequest:
    return AIRequest(
        messages=chat_request.messages,
        model=chat_request.model,
        parameters=RequestParameters(stream=True),
    )


@pytest.fixture
def gemini_api_key() -> str:
    key = os.getenv("GEMINI_API_KEY")
    if not key:
        pytest.skip("GEMINI_API_KEY not set")
    return key
