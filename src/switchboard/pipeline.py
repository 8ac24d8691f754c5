"""Request pipeline: interceptors before a provider call, processors after.

Interceptors run in ascending ``priority`` (registration order breaks ties)
and may reject a request by raising ``PipelineError``. Processors observe
responses; they cannot alter them and their failures never reach the caller.
"""

from __future__ import annotations

import asyncio
from collections import defaultdict
from dataclasses import dataclass, field
import logging
import time
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from switchboard.errors import PipelineError

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from switchboard.providers.base import AIService
    from switchboard.request import AIRequest
    from switchboard.response import AIResponse

logger = logging.getLogger(__name__)


@dataclass
class InterceptorContext:
    """Per-request scratch space shared by interceptors and processors."""

    request: AIRequest
    provider: str
    attributes: dict[str, Any] = field(default_factory=dict)
    started_at: float = field(default_factory=time.monotonic)

    @property
    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self.started_at) * 1000)


@runtime_checkable
class RequestInterceptor(Protocol):
    """Runs before the provider sees the request."""

    name: str
    priority: int

    async def intercept(self, request: AIRequest, context: InterceptorContext) -> None:
        """Inspect *request*; raise ``PipelineError`` to reject it."""
        ...


@runtime_checkable
class ResponseProcessor(Protocol):
    """Observes every response a provider yields."""

    name: str
    supports_streaming: bool

    async def process(self, response: AIResponse, context: InterceptorContext) -> None: ...


class RequestPipeline:
    """Ordered interceptor and processor chains around ``AIService.execute``."""

    def __init__(self) -> None:
        self._interceptors: list[RequestInterceptor] = []
        self._processors: list[ResponseProcessor] = []

    def add_interceptor(self, interceptor: RequestInterceptor) -> None:
        if any(i is interceptor for i in self._interceptors):
            return
        self._interceptors.append(interceptor)
        # sort() is stable, so equal priorities keep registration order.
        self._interceptors.sort(key=lambda i: getattr(i, "priority", 100))

    def remove_interceptor(self, interceptor: RequestInterceptor) -> bool:
        for idx, existing in enumerate(self._interceptors):
            if existing is interceptor:
                del self._interceptors[idx]
                return True
        return False

    def add_processor(self, processor: ResponseProcessor) -> None:
        if any(p is processor for p in self._processors):
            return
        self._processors.append(processor)

    def remove_processor(self, processor: ResponseProcessor) -> bool:
        for idx, existing in enumerate(self._processors):
            if existing is processor:
                del self._processors[idx]
                return True
        return False

    def clear(self) -> None:
        self._interceptors.clear()
        self._processors.clear()

    @property
    def interceptor_count(self) -> int:
        return len(self._interceptors)

    @property
    def processor_count(self) -> int:
        return len(self._processors)

    @property
    def interceptors(self) -> tuple[RequestInterceptor, ...]:
        return tuple(self._interceptors)

    async def execute(
        self, service: AIService, request: AIRequest
    ) -> AsyncIterator[AIResponse]:
        """Run interceptors, then stream *service*'s responses through processors.

        Service errors propagate unchanged so the caller can decide on fallback.
        """
        context = InterceptorContext(request=request, provider=service.provider)
        await self._run_interceptors(request, context)
        async for response in service.execute(request):
            await self._run_processors(response, context)
            yield response

    async def _run_interceptors(
        self, request: AIRequest, context: InterceptorContext
    ) -> None:
        for interceptor in self._interceptors:
            try:
                await interceptor.intercept(request, context)
            except asyncio.CancelledError:
                raise
            except PipelineError:
                logger.info("Interceptor %s rejected request %s", interceptor.name, request.id)
                raise
            except Exception as exc:
                raise PipelineError(
                    f"Interceptor {interceptor.name} failed: {exc}"
                ) from exc

    async def _run_processors(
        self, response: AIResponse, context: InterceptorContext
    ) -> None:
        for processor in self._processors:
            if not response.is_complete and not processor.supports_streaming:
                continue
            try:
                await processor.process(response, context)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("Response processor %s failed: %s", processor.name, exc)


# =============================================================================
# Shipped hooks
# =============================================================================


class LoggingInterceptor:
    name = "logging"
    priority = 0

    def __init__(self, level: int = logging.DEBUG) -> None:
        self.level = level

    async def intercept(self, request: AIRequest, context: InterceptorContext) -> None:
        logger.log(
            self.level,
            "-> %s request %s model=%s messages=%d stream=%s",
            context.provider,
            request.id,
            request.model,
            len(request.messages),
            request.is_streaming,
        )


class LoggingProcessor:
    name = "logging"
    supports_streaming = False

    def __init__(self, level: int = logging.DEBUG) -> None:
        self.level = level

    async def process(self, response: AIResponse, context: InterceptorContext) -> None:
        logger.log(
            self.level,
            "<- %s response for %s in %dms finish=%s error=%s",
            context.provider,
            response.request_id,
            context.elapsed_ms,
            response.finish_reason.value if response.finish_reason else None,
            response.error.code if response.error else None,
        )


@dataclass
class ProviderUsage:
    requests: int = 0
    failures: int = 0
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class UsageMetricsProcessor:
    """Counts completed requests and token usage per provider."""

    name = "usage-metrics"
    supports_streaming = False

    def __init__(self) -> None:
        self._usage: defaultdict[str, ProviderUsage] = defaultdict(ProviderUsage)

    async def process(self, response: AIResponse, context: InterceptorContext) -> None:
        usage = self._usage[context.provider]
        usage.requests += 1
        if response.has_error:
            usage.failures += 1
        if response.usage is not None:
            usage.prompt_tokens += response.usage.prompt_tokens
            usage.completion_tokens += response.usage.completion_tokens
            usage.total_tokens += response.usage.total_tokens

    def usage(self, provider: str) -> ProviderUsage:
        return self._usage.get(provider) or ProviderUsage()

    def snapshot(self) -> dict[str, ProviderUsage]:
        return {p: ProviderUsage(**vars(u)) for p, u in self._usage.items()}

    def reset(self) -> None:
        self._usage.clear()
