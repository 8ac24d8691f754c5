"""Test helpers (small, reusable doubles).

Keep this file tiny and purpose-built: it exists to prevent test suites from
growing lots of one-off service subclasses as coverage expands.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
import json
from typing import TYPE_CHECKING, Any

import httpx

from switchboard.capabilities import HealthStatus, ProviderCapabilities, ProviderInfo
from switchboard.errors import ServiceCreationError
from switchboard.registry import AIServiceFactory
from switchboard.response import AIResponse, FinishReason, ResponseMetadata

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from switchboard.capabilities import ModelInfo
    from switchboard.config import ProviderConfig
    from switchboard.request import AIRequest

FULL_CAPABILITIES = ProviderCapabilities(
    streaming=True,
    vision=True,
    tools=True,
    web_search=True,
    thinking=True,
    multimodal=True,
    max_tokens=100_000,
)


@dataclass
class FakeService:
    """AIService double with scripted output.

    ``error`` is raised before the first chunk, or after ``fail_after``
    chunks have been yielded. ``delay_s`` sleeps before answering.
    """

    provider: str
    capabilities: ProviderCapabilities = FULL_CAPABILITIES
    chunks: tuple[str, ...] = ("ok",)
    error: BaseException | None = None
    fail_after: int | None = None
    delay_s: float = 0.0
    healthy: bool = True
    execute_calls: int = 0
    shutdown_calls: int = 0
    ended_sessions: list[str | None] = field(default_factory=list)

    async def execute(self, request: AIRequest) -> AsyncIterator[AIResponse]:
        self.execute_calls += 1
        if self.delay_s:
            await asyncio.sleep(self.delay_s)
        if self.error is not None and self.fail_after is None:
            raise self.error
        for idx, text in enumerate(self.chunks):
            if self.error is not None and self.fail_after == idx:
                raise self.error
            if request.is_streaming:
                yield AIResponse.chunk(request.id, text)
        yield AIResponse(
            request_id=request.id,
            content="".join(self.chunks),
            model=request.model,
            metadata=ResponseMetadata(model=request.model, provider=self.provider),
            finish_reason=FinishReason.STOP,
            is_streaming=request.is_streaming,
        )

    async def send_message(self, request: AIRequest) -> AsyncIterator[AIResponse]:
        async for response in self.execute(request):
            yield response

    def can_handle(self, request: AIRequest) -> bool:
        return request.required_capabilities.is_compatible_with(self.capabilities)

    def optimize_request(self, request: AIRequest) -> AIRequest:
        return request.optimized_for(self.provider)

    async def get_models(self) -> list[ModelInfo]:
        return []

    async def health_check(self) -> HealthStatus:
        if self.healthy:
            return HealthStatus.ok(1)
        return HealthStatus.unhealthy("Health check failed", 1)

    def end_session(self, session_id: str | None) -> bool:
        self.ended_sessions.append(session_id)
        return True

    async def shutdown(self) -> None:
        self.shutdown_calls += 1


class FakeFactory(AIServiceFactory):
    """Factory that hands out a prepared FakeService (or refuses to)."""

    def __init__(
        self,
        service: FakeService,
        *,
        fail_creation: bool = False,
        requires_network: bool = True,
    ) -> None:
        super().__init__()
        self.service = service
        self.fail_creation = fail_creation
        self._requires_network = requires_network
        self.create_calls = 0

    @property
    def provider(self) -> str:
        return self.service.provider

    def provider_info(self) -> ProviderInfo:
        return ProviderInfo(
            provider=self.service.provider,
            display_name=self.service.provider.title(),
            description=f"Fake {self.service.provider} provider",
            capabilities=self.service.capabilities,
            requires_network=self._requires_network,
        )

    def create_service(self, config: ProviderConfig) -> Any:
        self.create_calls += 1
        if self.fail_creation:
            raise ServiceCreationError(
                f"Invalid {self.provider} configuration: missing credentials",
                provider=self.provider,
                errors=("missing credentials",),
            )
        return super().create_service(config)

    def _create(self, config: ProviderConfig) -> FakeService:
        return self.service


# =============================================================================
# HTTP doubles
# =============================================================================


def sse_body(*events: Any, done: bool = True) -> bytes:
    """Encode events as an SSE body; dicts are JSON-encoded."""
    lines = []
    for event in events:
        payload = event if isinstance(event, str) else json.dumps(event)
        lines.append(f"data: {payload}\n\n")
    if done:
        lines.append("data: [DONE]\n\n")
    return "".join(lines).encode()


@dataclass
class RecordingTransport:
    """Routes requests to a handler and keeps every request it saw."""

    handler: Callable[[httpx.Request], httpx.Response]
    requests: list[httpx.Request] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.transport = httpx.MockTransport(self._handle)

    def _handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.handler(request)

    def bodies(self) -> list[Any]:
        return [json.loads(r.content) if r.content else None for r in self.requests]
