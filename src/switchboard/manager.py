"""The orchestrator: provider choice, execution, fallback and lifecycle.

``execute_request`` drives one request end to end:

1. the pinned provider, if its service can handle the request;
2. otherwise the highest-scoring compatible provider;
3. no candidate fails fast with ``ServiceUnavailableError``;
4. execution through the request pipeline, bounded by ``request_timeout_s``
   (covering fallback too; expiry reports ``ServiceTimeoutError``);
5. on an execution failure before any partial chunk was delivered, the
   remaining providers are tried in registry order.

Every request ends in exactly one terminal callback: the complete response
via ``on_response`` or one error via ``on_error``.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
import inspect
import logging
from typing import TYPE_CHECKING, Any

from switchboard._singleflight import SingleFlight
from switchboard.capabilities import HealthStatus
from switchboard.circuit_breaker import CircuitBreakerRegistry
from switchboard.config import ServiceConfiguration
from switchboard.errors import (
    ConfigurationError,
    PipelineError,
    RequestCancelledError,
    ServiceCreationError,
    ServiceError,
    ServiceTimeoutError,
    ServiceUnavailableError,
    SwitchboardError,
    ValidationError,
)
from switchboard.health import HealthMonitor
from switchboard.pipeline import RequestPipeline
from switchboard.registry import ProviderRegistry, default_registry
from switchboard.selector import ProviderSelector
from switchboard.session import SessionStore

if TYPE_CHECKING:
    from switchboard.capabilities import ProviderInfo
    from switchboard.providers.base import AIService
    from switchboard.registry import AIServiceFactory
    from switchboard.request import AIRequest
    from switchboard.response import AIResponse
    from switchboard.session import ConversationState

logger = logging.getLogger(__name__)

ResponseCallback = Callable[["AIResponse"], "Awaitable[None] | None"]
ErrorCallback = Callable[[SwitchboardError], "Awaitable[None] | None"]

# Failures that describe the request itself; another provider would fail too.
_NO_FALLBACK = (ValidationError, PipelineError, ConfigurationError)


async def _invoke(callback: Callable[[Any], Any] | None, arg: Any) -> None:
    if callback is None:
        return
    try:
        result = callback(arg)
        if inspect.isawaitable(result):
            await result
    except asyncio.CancelledError:
        raise
    except Exception:
        # A broken listener must not turn a delivered response into a failure.
        logger.exception("Callback %r raised", callback)


def _as_switchboard_error(exc: Exception, provider: str | None) -> SwitchboardError:
    if isinstance(exc, SwitchboardError):
        return exc
    err = ServiceError(
        f"{provider or 'provider'} failed unexpectedly: {exc}",
        retryable=False,
        provider=provider,
        phase="execute",
    )
    err.__cause__ = exc
    return err


class _Attempt:
    """Delivery bookkeeping for one request across fallback attempts."""

    def __init__(self, on_response: ResponseCallback | None) -> None:
        self.on_response = on_response
        self.delivered_partial = False

    async def deliver(self, response: AIResponse) -> None:
        if not response.is_complete:
            self.delivered_partial = True
        await _invoke(self.on_response, response)


class AIServiceManager:
    """Owns services for every registered provider and routes requests to them."""

    def __init__(
        self,
        config: ServiceConfiguration | None = None,
        registry: ProviderRegistry | None = None,
        pipeline: RequestPipeline | None = None,
        *,
        breakers: CircuitBreakerRegistry | None = None,
    ) -> None:
        """Use the built-in providers unless a *registry* is supplied."""
        self.config = config or ServiceConfiguration()
        self.registry = registry if registry is not None else default_registry()
        self.pipeline = pipeline or RequestPipeline()
        self.breakers = breakers or CircuitBreakerRegistry()
        self.selector = ProviderSelector(self.registry, self.config.preferred_providers)
        self._services: dict[str, AIService] = {}
        self._creating: SingleFlight[str, AIService] = SingleFlight(self._services)
        self._current: str | None = None
        self._monitor: HealthMonitor | None = None
        self._monitoring_disabled = not self.config.enable_health_monitoring
        self._closed = False

    # -- providers -------------------------------------------------------

    def register_provider(self, factory: AIServiceFactory) -> None:
        self.registry.register(factory)

    @property
    def current_provider(self) -> str | None:
        return self._current

    def switch_provider(self, provider: str) -> None:
        """Pin *provider* for subsequent requests."""
        if not self.registry.is_registered(provider):
            raise ConfigurationError(
                f"Provider not registered: {provider}",
                hint=f"Registered providers: {', '.join(self.registry.providers()) or 'none'}",
            )
        self._current = provider
        logger.info("Switched current provider to %s", provider)

    def available_providers(self) -> list[ProviderInfo]:
        return self.registry.all_provider_info()

    async def get_service(self, provider: str) -> AIService:
        """Return the provider's service, creating it once under concurrency."""
        if self._closed:
            raise ServiceUnavailableError("Service manager has been shut down")

        async def _create() -> AIService:
            factory = self.registry.factory(provider)
            if factory is None:
                raise ConfigurationError(f"Provider not registered: {provider}")
            return factory.create_service(self.config.provider_config(provider))

        return await self._creating.get(provider, _create)

    # -- execution -------------------------------------------------------

    async def execute_request(
        self,
        request: AIRequest,
        on_response: ResponseCallback | None = None,
        on_error: ErrorCallback | None = None,
    ) -> None:
        """Route *request*; report through the callbacks and never raise for failures.

        Cancellation is reported to *on_error* once, then re-raised.
        """
        self._ensure_monitoring()
        attempt = _Attempt(on_response)
        try:
            async with asyncio.timeout(self.config.request_timeout_s) as deadline:
                await self._run(request, attempt)
        except TimeoutError as exc:
            if not deadline.expired():
                await _invoke(on_error, _as_switchboard_error(exc, None))
                return
            logger.warning(
                "Request %s timed out after %ss", request.id, self.config.request_timeout_s
            )
            await _invoke(
                on_error,
                ServiceTimeoutError(
                    f"Request timed out after {self.config.request_timeout_s}s",
                    retryable=True,
                    phase="execute",
                ),
            )
        except SwitchboardError as exc:
            await _invoke(on_error, exc)
        except asyncio.CancelledError:
            logger.info("Request %s cancelled", request.id)
            await _invoke(
                on_error,
                RequestCancelledError("Request cancelled", retryable=False, phase="execute"),
            )
            raise

    async def execute(self, request: AIRequest) -> AIResponse:
        """Await the complete response, raising the terminal error instead."""
        final: list[AIResponse] = []
        errors: list[SwitchboardError] = []

        def _keep(response: AIResponse) -> None:
            if response.is_complete:
                final.append(response)

        await self.execute_request(request, _keep, errors.append)
        if errors:
            raise errors[0]
        return final[-1]

    async def _run(self, request: AIRequest, attempt: _Attempt) -> None:
        provider, service = await self._choose(request)
        try:
            await self._attempt(provider, service, request, attempt)
            return
        except asyncio.CancelledError:
            raise
        except _NO_FALLBACK:
            raise
        except Exception as exc:
            original = _as_switchboard_error(exc, provider)
            if attempt.delivered_partial:
                raise original from None
            logger.info("Provider %s failed (%s); trying fallbacks", provider, original)

        for fallback in self.registry.providers():
            if fallback == provider or not self.breakers.allows(fallback):
                continue
            try:
                service = await self.get_service(fallback)
            except SwitchboardError as exc:
                logger.debug("Skipping fallback %s: %s", fallback, exc)
                continue
            if not service.can_handle(request):
                continue
            try:
                await self._attempt(fallback, service, request, attempt)
            except asyncio.CancelledError:
                raise
            except _NO_FALLBACK as exc:
                logger.debug("Fallback %s rejected request: %s", fallback, exc)
                continue
            except Exception as exc:
                if attempt.delivered_partial:
                    raise _as_switchboard_error(exc, fallback) from None
                logger.info("Fallback %s failed: %s", fallback, exc)
                continue
            logger.info("Request %s served by fallback %s", request.id, fallback)
            return

        raise original

    async def _choose(self, request: AIRequest) -> tuple[str, AIService]:
        pinned = self._current
        if pinned is not None and self.breakers.allows(pinned):
            try:
                service = await self.get_service(pinned)
            except SwitchboardError as exc:
                logger.warning("Pinned provider %s unavailable: %s", pinned, exc)
            else:
                if service.can_handle(request):
                    return pinned, service
                logger.debug("Pinned provider %s cannot handle request %s", pinned, request.id)

        candidates = [p for p in self.registry.providers() if self.breakers.allows(p)]
        while True:
            provider = self.selector.select(request, candidates)
            if provider is None:
                raise ServiceUnavailableError(
                    "No provider can handle this request",
                    hint="Check required capabilities, credentials and registered providers.",
                    phase="select",
                )
            try:
                return provider, await self.get_service(provider)
            except ServiceCreationError as exc:
                logger.warning("Cannot create service for %s: %s", provider, exc)
                candidates.remove(provider)

    async def _attempt(
        self, provider: str, service: AIService, request: AIRequest, attempt: _Attempt
    ) -> None:
        breaker = self.breakers.get(provider)
        optimized = service.optimize_request(request)
        logger.debug("Executing request %s on %s", request.id, provider)
        try:
            async for response in self.pipeline.execute(service, optimized):
                await attempt.deliver(response)
        except asyncio.CancelledError:
            raise
        except _NO_FALLBACK:
            raise
        except Exception:
            breaker.record_failure()
            raise
        breaker.record_success()

    # -- health ----------------------------------------------------------

    async def health_check(self, provider: str) -> HealthStatus:
        try:
            service = await self.get_service(provider)
        except SwitchboardError as exc:
            return HealthStatus.unhealthy(f"Service unavailable: {exc}")
        return await service.health_check()

    async def health_check_all(self) -> dict[str, HealthStatus]:
        providers = self.registry.providers()
        results = await asyncio.gather(*(self.health_check(p) for p in providers))
        return dict(zip(providers, results))

    @property
    def health_monitor(self) -> HealthMonitor | None:
        return self._monitor

    def start_health_monitoring(self) -> None:
        """Start periodic checks of the providers that have live services."""
        self._monitoring_disabled = False
        if self._monitor is None:
            self._monitor = HealthMonitor(
                self.health_check,
                lambda: list(self._services),
                interval_s=self.config.health_check_interval_s,
                timeout_s=self.config.health_check_timeout_s,
            )
        self._monitor.start()

    async def stop_health_monitoring(self) -> None:
        self._monitoring_disabled = True
        if self._monitor is not None:
            await self._monitor.stop()

    def _ensure_monitoring(self) -> None:
        if self._monitoring_disabled or self._closed:
            return
        if self._monitor is None or not self._monitor.is_running:
            self.start_health_monitoring()

    # -- sessions and lifecycle ------------------------------------------

    def end_session(self, session_id: str | None) -> bool:
        """Drop conversation state for *session_id* on every stateful service."""
        ended = False
        for service in self._services.values():
            end = getattr(service, "end_session", None)
            if end is not None and end(session_id):
                ended = True
        return ended

    def conversation_state(
        self, provider: str, session_id: str | None
    ) -> ConversationState | None:
        """Snapshot of a stateful provider's conversation for *session_id*."""
        sessions = getattr(self._services.get(provider), "sessions", None)
        if not isinstance(sessions, SessionStore):
            return None
        state = sessions.get(session_id)
        return state.snapshot() if state is not None else None

    async def shutdown(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self.stop_health_monitoring()
        services = dict(self._services)
        self._services.clear()
        for provider, service in services.items():
            try:
                await service.shutdown()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("Shutdown of %s failed: %s", provider, exc)
        logger.info("Service manager shut down")

    async def __aenter__(self) -> AIServiceManager:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.shutdown()
