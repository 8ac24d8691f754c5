"""Generic OpenAI-compatible chat-completions adapter.

One adapter serves every backend speaking the chat-completions dialect;
per-backend differences are limited to capabilities, auth requirements and
a small table of header/body quirks applied as the last build step.
"""

from __future__ import annotations

import base64
from dataclasses import replace
import logging
import random
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field

from switchboard._http import BROWSER_USER_AGENT, iter_sse_data
from switchboard.capabilities import ModelInfo, ProviderCapabilities, ProviderInfo
from switchboard.config import AIRFORCE, DEEPINFRA, FREE, OPENAI
from switchboard.models import Attachment, Message, Role, ThinkingContent, TokenUsage, ToolCall
from switchboard.providers.base import BaseAIService, WireRequest
from switchboard.registry import AIServiceFactory
from switchboard.response import AIResponse, FinishReason
from switchboard.validation import ValidationResult

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable

    import httpx

    from switchboard.config import ProviderConfig
    from switchboard.request import AIRequest

logger = logging.getLogger(__name__)

_FINISH_REASONS: dict[str, FinishReason] = {
    "stop": FinishReason.STOP,
    "length": FinishReason.LENGTH,
    "tool_calls": FinishReason.TOOL_CALLS,
    "function_call": FinishReason.TOOL_CALLS,
    "content_filter": FinishReason.CONTENT_FILTER,
}


# =============================================================================
# Wire schema (responses)
# =============================================================================


class _Wire(BaseModel):
    model_config = ConfigDict(extra="ignore")


class _FunctionPayload(_Wire):
    name: str | None = None
    arguments: str | None = None


class _ToolCallPayload(_Wire):
    index: int | None = None
    id: str | None = None
    function: _FunctionPayload = Field(default_factory=_FunctionPayload)


class _ChatMessage(_Wire):
    role: str | None = None
    content: str | None = None
    reasoning_content: str | None = None
    tool_calls: list[_ToolCallPayload] = Field(default_factory=list)


class _Choice(_Wire):
    index: int = 0
    message: _ChatMessage | None = None
    delta: _ChatMessage | None = None
    finish_reason: str | None = None


class _Usage(_Wire):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class ChatCompletion(_Wire):
    id: str | None = None
    model: str | None = None
    choices: list[_Choice] = Field(default_factory=list)
    usage: _Usage | None = None


class _ModelEntry(_Wire):
    id: str


class _ModelList(_Wire):
    data: list[_ModelEntry] = Field(default_factory=list)


# =============================================================================
# Request translation
# =============================================================================


def _image_url(attachment: Attachment) -> str | None:
    if attachment.data is not None:
        mime = attachment.mime_type or "image/png"
        return f"data:{mime};base64,{base64.b64encode(attachment.data).decode('ascii')}"
    return attachment.url


def _message_content(message: Message, extra: tuple[Attachment, ...] = ()) -> Any:
    attachments = message.attachments + extra
    if not attachments:
        return message.content
    content: list[dict[str, Any]] = []
    if message.content:
        content.append({"type": "text", "text": message.content})
    for attachment in attachments:
        url = _image_url(attachment)
        if url:
            content.append({"type": "image_url", "image_url": {"url": url}})
    return content


def build_messages(request: AIRequest) -> list[dict[str, Any]]:
    last_user = max(
        (i for i, m in enumerate(request.messages) if m.role is Role.USER), default=None
    )
    out: list[dict[str, Any]] = []
    for i, message in enumerate(request.messages):
        extra = request.attachments if i == last_user else ()
        entry: dict[str, Any] = {
            "role": message.role.value,
            "content": _message_content(message, extra),
        }
        if message.role is Role.TOOL:
            entry["tool_call_id"] = message.name
        elif message.name:
            entry["name"] = message.name
        if message.tool_calls:
            entry["tool_calls"] = [
                {
                    "id": call.id,
                    "type": "function",
                    "function": {"name": call.name, "arguments": call.arguments},
                }
                for call in message.tool_calls
            ]
        out.append(entry)
    return out


def build_body(request: AIRequest) -> dict[str, Any]:
    params = request.parameters
    body: dict[str, Any] = {
        "model": request.model,
        "messages": build_messages(request),
        "stream": request.is_streaming,
    }
    optional = {
        "temperature": params.temperature,
        "max_tokens": params.max_tokens,
        "top_p": params.top_p,
        "presence_penalty": params.presence_penalty,
        "frequency_penalty": params.frequency_penalty,
        "seed": params.seed,
    }
    body.update({k: v for k, v in optional.items() if v is not None})
    if params.stop_sequences:
        body["stop"] = list(params.stop_sequences)
    if params.response_format == "json":
        body["response_format"] = {"type": "json_object"}
    if request.tools:
        body["tools"] = [
            {"type": "function", "function": tool.to_dict()} for tool in request.tools
        ]
    return body


def _deepinfra_quirks(wire: WireRequest) -> WireRequest:
    return replace(wire, headers={**wire.headers, "User-Agent": BROWSER_USER_AGENT})


def _pollinations_quirks(wire: WireRequest) -> WireRequest:
    headers = {
        **wire.headers,
        "Origin": "https://pollinations.ai",
        "Referer": "https://pollinations.ai/",
    }
    body = dict(wire.json or {})
    body.setdefault("seed", random.randint(1, 2**31 - 1))  # noqa: S311
    body["referrer"] = "https://pollinations.ai/"
    return replace(wire, headers=headers, json=body)


_QUIRKS: dict[str, Callable[[WireRequest], WireRequest]] = {
    DEEPINFRA: _deepinfra_quirks,
    FREE: _pollinations_quirks,
}


# =============================================================================
# Response translation
# =============================================================================


def _tool_calls(payloads: list[_ToolCallPayload]) -> tuple[ToolCall, ...]:
    return tuple(
        ToolCall(
            id=p.id or f"call_{i}",
            name=p.function.name or "",
            arguments=p.function.arguments or "{}",
        )
        for i, p in enumerate(payloads)
    )


def _usage(usage: _Usage | None) -> TokenUsage | None:
    if usage is None:
        return None
    return TokenUsage(usage.prompt_tokens, usage.completion_tokens, usage.total_tokens)


def to_ai_response(payload: ChatCompletion, request_id: str) -> AIResponse:
    content = ""
    thinking = None
    tool_calls: tuple[ToolCall, ...] = ()
    finish = None
    if payload.choices:
        choice = payload.choices[0]
        if choice.message is not None:
            content = choice.message.content or ""
            if choice.message.reasoning_content:
                thinking = ThinkingContent(choice.message.reasoning_content)
            tool_calls = _tool_calls(choice.message.tool_calls)
        if choice.finish_reason:
            finish = _FINISH_REASONS.get(choice.finish_reason, FinishReason.STOP)
    return AIResponse(
        request_id=request_id,
        content=content,
        model=payload.model,
        usage=_usage(payload.usage),
        finish_reason=finish,
        tool_calls=tool_calls,
        thinking=thinking,
    )


class _ToolCallAccumulator:
    """Reassembles tool calls streamed as indexed fragments."""

    def __init__(self) -> None:
        self._calls: dict[int, dict[str, str]] = {}

    def add(self, fragments: list[_ToolCallPayload]) -> None:
        for position, fragment in enumerate(fragments):
            index = fragment.index if fragment.index is not None else position
            call = self._calls.setdefault(index, {"id": "", "name": "", "arguments": ""})
            if fragment.id:
                call["id"] = fragment.id
            if fragment.function.name:
                call["name"] += fragment.function.name
            if fragment.function.arguments:
                call["arguments"] += fragment.function.arguments

    def calls(self) -> tuple[ToolCall, ...]:
        return tuple(
            ToolCall(
                id=c["id"] or f"call_{i}",
                name=c["name"],
                arguments=c["arguments"] or "{}",
            )
            for i, c in sorted(self._calls.items())
        )


# =============================================================================
# Service + factory
# =============================================================================


class OpenAICompatibleService(BaseAIService):
    """Chat-completions adapter for OpenAI and compatible backends."""

    default_model = "gpt-4o-mini"

    def __init__(
        self,
        config: ProviderConfig,
        *,
        capabilities: ProviderCapabilities,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Create a service advertising *capabilities* for this backend."""
        super().__init__(config, transport=transport)
        self._capabilities = capabilities

    @property
    def capabilities(self) -> ProviderCapabilities:
        return self._capabilities

    def _url(self, path: str) -> str:
        return f"{(self.config.base_url or '').rstrip('/')}/{path}"

    def _headers(self, *, stream: bool) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "text/event-stream" if stream else "application/json",
        }
        if self.config.api_key:
            headers["Authorization"] = f"Bearer {self.config.api_key}"
        return headers

    async def build_request(self, request: AIRequest, scope: Any) -> WireRequest:
        wire = WireRequest(
            method="POST",
            url=self._url("chat/completions"),
            headers=self._headers(stream=request.is_streaming),
            json=build_body(request),
            stream=request.is_streaming,
        )
        quirk = _QUIRKS.get(self.provider)
        return quirk(wire) if quirk is not None else wire

    async def parse_response(
        self, request: AIRequest, response: httpx.Response, scope: Any
    ) -> AIResponse:
        return to_ai_response(ChatCompletion.model_validate(response.json()), request.id)

    async def iter_stream(
        self, request: AIRequest, response: httpx.Response, scope: Any
    ) -> AsyncIterator[AIResponse]:
        pending = _ToolCallAccumulator()
        finished = False
        async for data in iter_sse_data(response):
            payload = ChatCompletion.model_validate_json(data)
            usage = _usage(payload.usage)
            if not payload.choices:
                if usage is not None:
                    yield AIResponse.chunk(request.id, usage=usage, model=payload.model)
                continue
            choice = payload.choices[0]
            delta = choice.delta or choice.message or _ChatMessage()
            pending.add(delta.tool_calls)
            finish = (
                _FINISH_REASONS.get(choice.finish_reason, FinishReason.STOP)
                if choice.finish_reason
                else None
            )
            finished = finished or finish is not None
            yield AIResponse.chunk(
                request.id,
                delta.content or "",
                model=payload.model,
                usage=usage,
                finish_reason=finish,
                thinking=(
                    ThinkingContent(delta.reasoning_content)
                    if delta.reasoning_content
                    else None
                ),
                tool_calls=pending.calls() if finish is not None else (),
            )
        # Some backends end the stream without a finish_reason.
        if not finished and pending.calls():
            yield AIResponse.chunk(request.id, tool_calls=pending.calls())

    async def list_models(self) -> list[ModelInfo]:
        wire = WireRequest(method="GET", url=self._url("models"), headers=self._headers(stream=False))
        response = await self.send_wire(wire, phase="models")
        listing = _ModelList.model_validate(response.json())
        return [
            ModelInfo(id=m.id, display_name=m.id, provider=self.provider)
            for m in listing.data
        ]

    async def probe_health(self) -> bool:
        """Model listing first; a one-token chat when listing is unavailable."""
        if await self.get_models():
            return True
        return await super().probe_health()


class OpenAICompatibleServiceFactory(AIServiceFactory):
    """Factory for one chat-completions backend identity."""

    def __init__(
        self,
        provider: str,
        *,
        display_name: str,
        description: str,
        capabilities: ProviderCapabilities,
        api_key_required: bool = True,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Describe one backend; nothing is contacted until a service is created."""
        super().__init__(transport=transport)
        self._provider = provider
        self._display_name = display_name
        self._description = description
        self._capabilities = capabilities
        self._api_key_required = api_key_required

    @property
    def provider(self) -> str:
        return self._provider

    def provider_info(self) -> ProviderInfo:
        return ProviderInfo(
            provider=self._provider,
            display_name=self._display_name,
            description=self._description,
            capabilities=self._capabilities,
        )

    def validate_specific(self, config: ProviderConfig) -> ValidationResult:
        result = ValidationResult()
        if not config.base_url:
            result = result.with_error(f"Base URL is required for {self._provider}")
        if self._api_key_required and not config.api_key:
            result = result.with_error(f"API key is required for {self._provider}")
        return result

    def _create(self, config: ProviderConfig) -> OpenAICompatibleService:
        return OpenAICompatibleService(
            config, capabilities=self._capabilities, transport=self._transport
        )


def openai_compatible_factories(
    *, transport: httpx.AsyncBaseTransport | None = None
) -> list[OpenAICompatibleServiceFactory]:
    """Factories for the built-in chat-completions backends."""
    return [
        OpenAICompatibleServiceFactory(
            OPENAI,
            display_name="OpenAI",
            description="OpenAI chat completions",
            capabilities=ProviderCapabilities(
                streaming=True, vision=True, tools=True, multimodal=True, max_tokens=128_000
            ),
            transport=transport,
        ),
        OpenAICompatibleServiceFactory(
            DEEPINFRA,
            display_name="DeepInfra",
            description="DeepInfra OpenAI-compatible endpoint",
            capabilities=ProviderCapabilities(
                streaming=True, tools=True, thinking=True, max_tokens=128_000
            ),
            transport=transport,
        ),
        OpenAICompatibleServiceFactory(
            AIRFORCE,
            display_name="Api.Airforce",
            description="Api.Airforce OpenAI-compatible endpoint",
            capabilities=ProviderCapabilities(streaming=True, max_tokens=32_768),
            transport=transport,
        ),
        OpenAICompatibleServiceFactory(
            FREE,
            display_name="Free (Pollinations)",
            description="Keyless Pollinations text endpoint",
            capabilities=ProviderCapabilities(streaming=True, max_tokens=32_768),
            api_key_required=False,
            transport=transport,
        ),
    ]
