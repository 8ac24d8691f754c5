"""Service contract and the template-method base every provider adapter extends.

The lifecycle is fixed for all providers:

1. validate   request checks plus ``can_handle``; no network on failure
2. build      adapter hook turning the request into a ``WireRequest``
3. execute    shared pooled HTTP client, rate limiter, bounded retries
4. parse      one-shot parse, or incremental stream folded with the merge law
5. callback   ``send_message`` resolves every failure into one error response

Adapters implement only the protocol translation hooks.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass, field, replace
import logging
import time
from typing import TYPE_CHECKING, Any, ClassVar, Protocol, runtime_checkable

import httpx

from switchboard._http import is_success
from switchboard.capabilities import HealthStatus
from switchboard.errors import (
    ParseError,
    RequestBuildError,
    ServiceError,
    ServiceUnavailableError,
    SwitchboardError,
    ValidationError,
)
from switchboard.models import Message
from switchboard.providers._errors import error_for_status, wrap_http_error
from switchboard.rate_limit import RateLimiter
from switchboard.request import AIRequest, RequestParameters
from switchboard.response import AIError, AIResponse, FinishReason, ResponseMetadata
from switchboard.retry import retry_async

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from switchboard.capabilities import ModelInfo, ProviderCapabilities
    from switchboard.config import ProviderConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WireRequest:
    """A fully built HTTP request, independent of the HTTP library."""

    method: str
    url: str
    headers: dict[str, str] = field(default_factory=dict)
    json: Any = None
    data: dict[str, str] | None = None
    files: dict[str, tuple[str, bytes, str]] | None = None
    params: dict[str, str] | None = None
    stream: bool = False


@runtime_checkable
class AIService(Protocol):
    """What the orchestrator needs from a provider service."""

    @property
    def provider(self) -> str:
        """Provider identity this service talks to."""
        ...

    @property
    def capabilities(self) -> ProviderCapabilities:
        """Return supported feature flags."""
        ...

    def send_message(self, request: AIRequest) -> AsyncIterator[AIResponse]:
        """Yield responses; failures arrive as one terminal error response."""
        ...

    def execute(self, request: AIRequest) -> AsyncIterator[AIResponse]:
        """Yield responses; failures are raised as Switchboard errors."""
        ...

    async def get_models(self) -> list[ModelInfo]:
        """List models, or an empty list when listing fails."""
        ...

    async def health_check(self) -> HealthStatus:
        """Probe the backend once."""
        ...

    def can_handle(self, request: AIRequest) -> bool:
        """Whether capabilities and token budget allow *request*."""
        ...

    def optimize_request(self, request: AIRequest) -> AIRequest:
        """Return a provider-tailored copy of *request*."""
        ...

    async def shutdown(self) -> None:
        """Release network resources."""
        ...


class BaseAIService(ABC):
    """Template-method base for provider adapters.

    Subclasses implement ``capabilities``, ``build_request`` and one or both
    of ``parse_response`` / ``iter_stream``. Stateful adapters override
    ``request_scope`` to hold per-session state for the whole exchange.
    """

    #: Statuses that trigger one credential refresh and a resend.
    reauth_statuses: ClassVar[frozenset[int]] = frozenset()
    #: Model used by the default health probe.
    default_model: ClassVar[str] = ""

    def __init__(
        self,
        config: ProviderConfig,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        rate_limiter: RateLimiter | None = None,
    ) -> None:
        """Initialize with a provider config; the HTTP client is created lazily."""
        self.config = config
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._rate_limiter = rate_limiter or RateLimiter(config.effective_rate_limits)
        self._closed = False

    # -- identity --------------------------------------------------------

    @property
    def provider(self) -> str:
        return self.config.provider

    @property
    @abstractmethod
    def capabilities(self) -> ProviderCapabilities:
        """Return supported feature flags."""

    @property
    def is_shut_down(self) -> bool:
        return self._closed

    def _get_client(self) -> httpx.AsyncClient:
        """Lazily create the pooled client shared by all requests of this service."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.config.effective_timeouts.to_httpx(),
                headers=dict(self.config.custom_headers),
                transport=self._transport,
                follow_redirects=True,
            )
        return self._client

    # -- adapter hooks ---------------------------------------------------

    @asynccontextmanager
    async def request_scope(self, request: AIRequest) -> AsyncIterator[Any]:
        """Hold whatever per-request state the adapter needs; default none."""
        del request
        yield None

    @abstractmethod
    async def build_request(self, request: AIRequest, scope: Any) -> WireRequest:
        """Translate the universal request into a wire request."""

    async def parse_response(
        self, request: AIRequest, response: httpx.Response, scope: Any
    ) -> AIResponse:
        """Parse a non-streaming response body."""
        raise NotImplementedError(f"{type(self).__name__} does not parse complete bodies")

    def iter_stream(
        self, request: AIRequest, response: httpx.Response, scope: Any
    ) -> AsyncIterator[AIResponse]:
        """Yield one chunk response per incremental piece of a streamed body."""
        raise NotImplementedError(f"{type(self).__name__} does not stream")

    async def refresh_credentials(self) -> None:
        """Drop cached tokens so the next build fetches fresh ones."""
        return None

    async def list_models(self) -> list[ModelInfo]:
        """Fetch the provider's model list; default is no listing."""
        return []

    def optimize_parameters(self, parameters: RequestParameters) -> RequestParameters:
        return parameters

    def optimize_messages(self, messages: tuple[Message, ...]) -> tuple[Message, ...]:
        return messages

    # -- public contract -------------------------------------------------

    def can_handle(self, request: AIRequest) -> bool:
        caps = self.capabilities
        if not request.required_capabilities.is_compatible_with(caps):
            return False
        if request.has_attachments and not (caps.vision or caps.multimodal):
            return False
        return request.estimated_tokens() <= caps.max_tokens

    def optimize_request(self, request: AIRequest) -> AIRequest:
        try:
            return request.optimized_for(
                self.provider,
                parameters=self.optimize_parameters(request.parameters),
                messages=self.optimize_messages(request.messages),
            )
        except Exception as exc:
            logger.warning("Request optimization failed for %s: %s", self.provider, exc)
            return request

    async def send_message(self, request: AIRequest) -> AsyncIterator[AIResponse]:
        """Run the lifecycle; every failure ends in one error response."""
        try:
            async for response in self.execute(request):
                yield response
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.debug("Request %s failed on %s: %s", request.id, self.provider, exc)
            yield AIResponse.failure(request.id, AIError.from_exception(exc))

    async def execute(self, request: AIRequest) -> AsyncIterator[AIResponse]:
        """Run the lifecycle, raising typed errors (used by the orchestrator)."""
        if self._closed:
            raise ServiceUnavailableError(
                "Service has been shut down", provider=self.provider, phase="validate"
            )
        self._validate(request)

        started = time.monotonic()
        async with self.request_scope(request) as scope:
            async for response in self._exchange(request, scope, started):
                yield response

    async def get_models(self) -> list[ModelInfo]:
        try:
            return await self.list_models()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("Model listing failed for %s: %s", self.provider, exc)
            return []

    async def health_check(self) -> HealthStatus:
        started = time.monotonic()
        try:
            healthy = await self.probe_health()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            return HealthStatus.unhealthy(
                f"Health check error: {exc}", _elapsed_ms(started)
            )
        if healthy:
            return HealthStatus.ok(_elapsed_ms(started))
        return HealthStatus.unhealthy("Health check failed", _elapsed_ms(started))

    async def probe_health(self) -> bool:
        """Send a minimal one-token request; True when it succeeds."""
        model = self.config.get("health_check_model", self.default_model)
        request = AIRequest(
            messages=(Message.user("Hi"),),
            model=model,
            parameters=RequestParameters(max_tokens=1),
        )
        async for response in self.execute(request):
            if response.is_complete:
                return not response.has_error
        return False

    async def shutdown(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._client is not None:
            client, self._client = self._client, None
            try:
                await client.aclose()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                # Cleanup should never mask the primary failure.
                logger.warning("HTTP client cleanup failed for %s: %s", self.provider, exc)

    async def __aenter__(self) -> BaseAIService:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.shutdown()

    # -- lifecycle internals ---------------------------------------------

    def _validate(self, request: AIRequest) -> None:
        request.validate().raise_for_errors(what="Request")
        caps = self.capabilities
        if not request.required_capabilities.is_compatible_with(caps):
            missing = [
                name
                for name in request.required_capabilities.required_names()
                if not caps.supports(name)
            ]
            raise ValidationError(
                f"{self.provider} does not support required capabilities: {', '.join(missing)}",
                errors=(f"Unsupported capabilities: {', '.join(missing)}",),
            )
        estimated = request.estimated_tokens()
        if estimated > caps.max_tokens:
            raise ValidationError(
                f"Request needs ~{estimated} tokens; {self.provider} allows {caps.max_tokens}",
                errors=("Request exceeds provider token budget",),
            )

    async def _build(self, request: AIRequest, scope: Any) -> WireRequest:
        try:
            return await self.build_request(request, scope)
        except asyncio.CancelledError:
            raise
        except SwitchboardError:
            raise
        except Exception as exc:
            raise RequestBuildError(
                f"Failed to build {self.provider} request: {exc}"
            ) from exc

    async def send_wire(self, wire: WireRequest, *, phase: str = "execute") -> httpx.Response:
        """Send *wire* under the rate limiter with bounded retries.

        Non-2xx statuses raise ServiceError; for streamed wires the caller
        owns closing the returned response.
        """
        client = self._get_client()

        async def _attempt() -> httpx.Response:
            await self._rate_limiter.acquire()
            http_request = client.build_request(
                wire.method,
                wire.url,
                headers=wire.headers,
                params=wire.params,
                json=wire.json,
                data=wire.data,
                files=wire.files,
            )
            try:
                response = await client.send(http_request, stream=wire.stream)
            except httpx.HTTPError as exc:
                raise wrap_http_error(exc, provider=self.provider, phase=phase) from exc
            if not is_success(response.status_code):
                body = await response.aread()
                await response.aclose()
                raise error_for_status(
                    response,
                    provider=self.provider,
                    phase=phase,
                    body_text=body.decode("utf-8", errors="replace"),
                )
            return response

        return await retry_async(_attempt, policy=self.config.effective_retry_policy)

    async def _send_with_reauth(
        self, request: AIRequest, scope: Any, wire: WireRequest
    ) -> httpx.Response:
        try:
            return await self.send_wire(wire)
        except ServiceError as exc:
            if exc.status_code not in self.reauth_statuses:
                raise
            logger.info(
                "%s rejected credentials (status=%s); refreshing once",
                self.provider,
                exc.status_code,
            )
            await self.refresh_credentials()
            wire = await self._build(request, scope)
            return await self.send_wire(wire)

    async def _exchange(
        self, request: AIRequest, scope: Any, started: float
    ) -> AsyncIterator[AIResponse]:
        wire = await self._build(request, scope)
        response = await self._send_with_reauth(request, scope, wire)

        if not wire.stream:
            try:
                parsed = await self.parse_response(request, response, scope)
            except SwitchboardError:
                raise
            except Exception as exc:
                raise ParseError(f"Failed to parse {self.provider} response: {exc}") from exc
            yield self._finalize(replace(parsed, is_streaming=False), request, started)
            return

        running: AIResponse | None = None
        chunks = 0
        try:
            async for chunk in self.iter_stream(request, response, scope):
                chunks += 1
                running = chunk if running is None else running.merge(chunk)
                if request.is_streaming:
                    yield replace(chunk, is_streaming=True, is_complete=False)
        except SwitchboardError:
            raise
        except httpx.HTTPError as exc:
            raise wrap_http_error(exc, provider=self.provider, phase="stream") from exc
        except Exception as exc:
            raise ParseError(f"Failed to parse {self.provider} stream: {exc}") from exc
        finally:
            await response.aclose()

        logger.debug("%s streamed %d chunks for request %s", self.provider, chunks, request.id)
        final = running or AIResponse(request_id=request.id)
        yield self._finalize(
            replace(final, is_streaming=request.is_streaming), request, started
        )

    def _finalize(self, response: AIResponse, request: AIRequest, started: float) -> AIResponse:
        metadata = response.metadata or ResponseMetadata()
        metadata = replace(
            metadata,
            model=metadata.model or response.model or request.model,
            provider=metadata.provider or self.provider,
            processing_time_ms=_elapsed_ms(started),
        )
        finish = response.finish_reason
        if finish is None:
            finish = FinishReason.TOOL_CALLS if response.tool_calls else FinishReason.STOP
        return replace(
            response,
            request_id=request.id,
            model=response.model or request.model,
            metadata=metadata,
            finish_reason=finish,
            is_complete=True,
        )


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
