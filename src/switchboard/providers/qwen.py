"""Qwen web chat, a stateful provider with server-side conversations.

Each session owns a server conversation id and the id of the last response
(the parent for the next turn). Requests carry an anti-bot "midtoken"
fetched from a separate endpoint and reused for a bounded number of calls.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
import json
import logging
import re
import time
from typing import TYPE_CHECKING, Any
import uuid

from pydantic import BaseModel, ConfigDict, Field

from switchboard._http import iter_sse_data
from switchboard.capabilities import ModelInfo, ProviderCapabilities, ProviderInfo
from switchboard.config import QWEN
from switchboard.errors import ParseError, RequestBuildError
from switchboard.models import Role, ThinkingContent, TokenUsage, ToolCall, WebSource
from switchboard.providers.base import BaseAIService, WireRequest
from switchboard.registry import AIServiceFactory
from switchboard.response import AIResponse, FinishReason
from switchboard.session import ConversationState, SessionStore

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    import httpx

    from switchboard.config import ProviderConfig
    from switchboard.request import AIRequest

logger = logging.getLogger(__name__)

MIDTOKEN_URL = "https://sg-wum.alibaba.com/w/wu.json"
_MIDTOKEN_RE = re.compile(r"(?:umx\.wu|__fycb)\('([^']+)'\)")
_BX_VERSION = "2.5.31"
_ORIGIN = "https://chat.qwen.ai"
_USER_AGENT = (
    "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/138.0.0.0 Safari/537.36"
)
_THINKING_BUDGET = 38912

# Attachments are not uploaded; "files" is always empty.
CAPABILITIES = ProviderCapabilities(
    streaming=True,
    vision=False,
    tools=True,
    web_search=True,
    thinking=True,
    multimodal=False,
    max_tokens=131_072,
    supported_formats=("text",),
)


# =============================================================================
# Wire schema
# =============================================================================


class _Wire(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class _NewChatData(_Wire):
    id: str


class NewChatResponse(_Wire):
    success: bool = False
    data: _NewChatData | None = None


class _SearchInfo(_Wire):
    url: str = ""
    title: str | None = None
    snippet: str = ""
    hostlogo: str | None = None


class _DeltaExtra(_Wire):
    web_search_info: list[_SearchInfo] = Field(default_factory=list)


class _ToolFunction(_Wire):
    name: str = ""
    arguments: str | dict[str, Any] = ""


class _DeltaToolCall(_Wire):
    id: str | None = None
    function: _ToolFunction | None = None


class _Delta(_Wire):
    content: str = ""
    phase: str = ""
    status: str = ""
    extra: _DeltaExtra | None = None
    tool_calls: list[_DeltaToolCall] = Field(default_factory=list)


class _Choice(_Wire):
    delta: _Delta = Field(default_factory=_Delta)


class _Created(_Wire):
    chat_id: str | None = None
    response_id: str | None = None


class _Usage(_Wire):
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0


class StreamEvent(_Wire):
    created: _Created | None = Field(default=None, alias="response.created")
    choices: list[_Choice] = Field(default_factory=list)
    usage: _Usage | None = None


class _ModelCapabilities(_Wire):
    vision: bool = False
    thinking: bool = False


class _ModelMeta(_Wire):
    capabilities: _ModelCapabilities = Field(default_factory=_ModelCapabilities)
    chat_type: list[str] = Field(default_factory=list)


class _ModelInfoBlock(_Wire):
    meta: _ModelMeta = Field(default_factory=_ModelMeta)


class _ModelEntry(_Wire):
    id: str
    name: str | None = None
    info: _ModelInfoBlock = Field(default_factory=_ModelInfoBlock)


class _ModelList(_Wire):
    data: list[_ModelEntry] = Field(default_factory=list)


# =============================================================================
# Midtoken cache
# =============================================================================


class MidToken:
    """Reusable anti-bot token with a use budget and a maximum age."""

    def __init__(self, *, max_uses: int, max_age_s: float, clock: Any = time.monotonic) -> None:
        self.max_uses = max_uses
        self.max_age_s = max_age_s
        self._clock = clock
        self.value: str | None = None
        self.uses = 0
        self._fetched_at = 0.0

    def take(self) -> str | None:
        """Return the cached token and count one use, or None if it is spent."""
        if self.value is None:
            return None
        if self.uses >= self.max_uses or (self._clock() - self._fetched_at) >= self.max_age_s:
            logger.debug("Qwen midtoken expired after %d uses", self.uses)
            self.invalidate()
            return None
        self.uses += 1
        return self.value

    def store(self, value: str) -> str:
        self.value = value
        self.uses = 1
        self._fetched_at = self._clock()
        return value

    def invalidate(self) -> None:
        self.value = None
        self.uses = 0


# =============================================================================
# Request / response translation
# =============================================================================


def _chat_type(request: AIRequest) -> str:
    return "search" if request.required_capabilities.web_search else "t2t"


def _latest_user_text(request: AIRequest) -> str:
    for message in reversed(request.messages):
        if message.role in (Role.USER, Role.TOOL) and message.content:
            return message.content
    return ""


def build_chat_body(request: AIRequest, state: ConversationState) -> dict[str, Any]:
    """Build the completion payload; the server already holds earlier turns."""
    thinking = request.required_capabilities.thinking
    chat_type = _chat_type(request)
    feature_config: dict[str, Any] = {"thinking_enabled": thinking, "output_schema": "phase"}
    if request.required_capabilities.web_search:
        feature_config["search_version"] = "v2"
    if thinking:
        feature_config["thinking_budget"] = _THINKING_BUDGET

    now = int(time.time())
    body: dict[str, Any] = {
        "stream": True,
        "incremental_output": True,
        "chat_id": state.conversation_id,
        "chat_mode": "normal",
        "model": request.model,
        "parent_id": state.last_parent_id,
        "timestamp": now,
        "messages": [
            {
                "role": "user",
                "content": _latest_user_text(request),
                "user_action": "chat",
                "files": [],
                "timestamp": now,
                "models": [request.model],
                "chat_type": chat_type,
                "feature_config": feature_config,
                "fid": str(uuid.uuid4()),
                "parentId": state.last_parent_id,
                "childrenIds": [],
            }
        ],
    }
    if request.tools:
        body["tools"] = [{"type": "function", "function": t.to_dict()} for t in request.tools]
        body["tool_choice"] = {"type": "auto"}
    return body


def _tool_call(call: _DeltaToolCall) -> ToolCall | None:
    if call.function is None or not call.function.name:
        return None
    args = call.function.arguments
    return ToolCall(
        id=call.id or uuid.uuid4().hex,
        name=call.function.name,
        arguments=args if isinstance(args, str) and args else json.dumps(args or {}),
    )


def event_to_chunk(
    event: StreamEvent, request_id: str, seen_urls: set[str]
) -> AIResponse | None:
    """Translate one stream event; ``None`` for events carrying no output."""
    if not event.choices:
        if event.usage is None:
            return None
        return AIResponse.chunk(request_id, "", usage=_usage(event.usage))

    delta = event.choices[0].delta
    content = ""
    thinking = None
    sources: list[WebSource] = []
    if delta.phase == "think" and delta.content:
        thinking = ThinkingContent(delta.content)
    elif delta.phase == "answer":
        content = delta.content
    elif delta.phase == "web_search" and delta.extra is not None:
        for info in delta.extra.web_search_info:
            if not info.url or info.url in seen_urls:
                continue
            seen_urls.add(info.url)
            sources.append(
                WebSource(
                    url=info.url,
                    title=info.title or info.url,
                    snippet=info.snippet,
                    favicon=info.hostlogo,
                )
            )

    calls = tuple(c for c in map(_tool_call, delta.tool_calls) if c is not None)
    finish = None
    if delta.status == "finished":
        finish = FinishReason.TOOL_CALLS if calls else FinishReason.STOP

    return AIResponse.chunk(
        request_id,
        content,
        thinking=thinking,
        web_sources=tuple(sources),
        tool_calls=calls,
        finish_reason=finish,
        usage=_usage(event.usage) if event.usage is not None else None,
    )


def _usage(usage: _Usage) -> TokenUsage:
    return TokenUsage(
        prompt_tokens=usage.input_tokens,
        completion_tokens=usage.output_tokens,
        total_tokens=usage.total_tokens or usage.input_tokens + usage.output_tokens,
    )


# =============================================================================
# Service + factory
# =============================================================================


class QwenService(BaseAIService):
    """Adapter for chat.qwen.ai: conversation bootstrap plus phase-tagged SSE."""

    reauth_statuses = frozenset({401, 429})
    default_model = "qwen3-235b-a22b"

    def __init__(
        self,
        config: ProviderConfig,
        *,
        sessions: SessionStore | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Any = time.monotonic,
    ) -> None:
        """Midtoken reuse is bounded by ``max_uses`` and ``max_age_s`` in provider_specific."""
        super().__init__(config, transport=transport)
        self.sessions = sessions or SessionStore()
        self._midtoken = MidToken(
            max_uses=int(config.get("max_uses", 50)),
            max_age_s=float(config.get("max_age_s", 300)),
            clock=clock,
        )
        self._midtoken_lock = asyncio.Lock()

    @property
    def capabilities(self) -> ProviderCapabilities:
        return CAPABILITIES

    def _base_url(self) -> str:
        return (self.config.base_url or "").rstrip("/")

    async def ensure_midtoken(self) -> str:
        async with self._midtoken_lock:
            cached = self._midtoken.take()
            if cached is not None:
                return cached
            wire = WireRequest(
                method="GET",
                url=str(self.config.get("midtoken_url", MIDTOKEN_URL)),
                headers={"User-Agent": _USER_AGENT, "Accept": "*/*"},
            )
            response = await self.send_wire(wire, phase="midtoken")
            m = _MIDTOKEN_RE.search(response.text)
            if not m:
                raise RequestBuildError(
                    "Failed to extract Qwen midtoken",
                    hint="The anti-bot endpoint changed format or blocked this client.",
                )
            logger.debug("Fetched new Qwen midtoken")
            return self._midtoken.store(m.group(1))

    async def refresh_credentials(self) -> None:
        async with self._midtoken_lock:
            logger.info("Invalidating Qwen midtoken")
            self._midtoken.invalidate()

    def _headers(self, midtoken: str, conversation_id: str | None) -> dict[str, str]:
        return {
            "Authorization": "Bearer",
            "Content-Type": "application/json",
            "Accept": "*/*",
            "bx-umidtoken": midtoken,
            "bx-v": _BX_VERSION,
            "Source": "web",
            "Origin": _ORIGIN,
            "Referer": f"{_ORIGIN}/c/{conversation_id}" if conversation_id else f"{_ORIGIN}/",
            "User-Agent": _USER_AGENT,
        }

    async def _create_conversation(self, request: AIRequest, midtoken: str) -> str:
        wire = WireRequest(
            method="POST",
            url=f"{self._base_url()}/chats/new",
            headers=self._headers(midtoken, None),
            json={
                "title": "New Chat",
                "models": [request.model],
                "chat_mode": "normal",
                "chat_type": _chat_type(request),
                "timestamp": int(time.time() * 1000),
            },
        )
        response = await self.send_wire(wire, phase="create_conversation")
        created = NewChatResponse.model_validate(response.json())
        if not created.success or created.data is None:
            raise RequestBuildError("Qwen did not create a conversation")
        logger.debug("Created Qwen conversation %s", created.data.id)
        return created.data.id

    @asynccontextmanager
    async def request_scope(self, request: AIRequest) -> AsyncIterator[ConversationState]:
        async with self.sessions.session(request.session_id) as state:
            yield state

    async def build_request(self, request: AIRequest, scope: Any) -> WireRequest:
        state: ConversationState = scope if scope is not None else ConversationState()
        midtoken = await self.ensure_midtoken()
        if state.is_new:
            state.conversation_id = await self._create_conversation(request, midtoken)
            state.last_parent_id = None
        return WireRequest(
            method="POST",
            url=f"{self._base_url()}/chat/completions",
            params={"chat_id": state.conversation_id or ""},
            headers=self._headers(midtoken, state.conversation_id),
            json=build_chat_body(request, state),
            stream=True,
        )

    async def iter_stream(
        self, request: AIRequest, response: httpx.Response, scope: Any
    ) -> AsyncIterator[AIResponse]:
        seen_urls: set[str] = set()
        async for data in iter_sse_data(response):
            try:
                event = StreamEvent.model_validate_json(data)
            except ValueError as exc:
                raise ParseError(f"Malformed Qwen stream event: {data[:200]}") from exc
            if event.created is not None:
                if scope is not None:
                    if event.created.chat_id:
                        scope.conversation_id = event.created.chat_id
                    if event.created.response_id:
                        scope.last_parent_id = event.created.response_id
                continue
            chunk = event_to_chunk(event, request.id, seen_urls)
            if chunk is not None:
                yield chunk

    async def list_models(self) -> list[ModelInfo]:
        midtoken = await self.ensure_midtoken()
        wire = WireRequest(
            method="GET",
            url=f"{self._base_url()}/models",
            headers=self._headers(midtoken, None),
        )
        response = await self.send_wire(wire, phase="models")
        listing = _ModelList.model_validate(response.json())
        models = []
        for entry in listing.data:
            meta = entry.info.meta
            models.append(
                ModelInfo(
                    id=entry.id,
                    display_name=entry.name or entry.id,
                    provider=self.provider,
                    capabilities=ProviderCapabilities(
                        streaming=True,
                        vision=meta.capabilities.vision,
                        tools=True,
                        web_search="search" in meta.chat_type,
                        thinking=meta.capabilities.thinking,
                        multimodal=meta.capabilities.vision,
                        max_tokens=CAPABILITIES.max_tokens,
                    ),
                )
            )
        return models

    def end_session(self, session_id: str | None) -> bool:
        """Forget the server conversation bound to *session_id*."""
        return self.sessions.end_session(session_id)

    async def shutdown(self) -> None:
        self.sessions.clear()
        await super().shutdown()


class QwenServiceFactory(AIServiceFactory):
    @property
    def provider(self) -> str:
        return QWEN

    def provider_info(self) -> ProviderInfo:
        return ProviderInfo(
            provider=QWEN,
            display_name="Qwen",
            description="chat.qwen.ai web conversations with thinking and web search",
            capabilities=CAPABILITIES,
        )

    def _create(self, config: ProviderConfig) -> QwenService:
        return QwenService(config, transport=self._transport)
