"""Gemini provider: the official token-authenticated Generative Language API."""

from __future__ import annotations

import base64
import json
from typing import TYPE_CHECKING, Any
import uuid

from pydantic import BaseModel, ConfigDict, Field

from switchboard._http import iter_sse_data
from switchboard.capabilities import ModelInfo, ProviderCapabilities, ProviderInfo
from switchboard.config import GEMINI
from switchboard.errors import RequestBuildError
from switchboard.models import Citation, Message, Role, ThinkingContent, TokenUsage, ToolCall
from switchboard.providers.base import BaseAIService, WireRequest
from switchboard.registry import AIServiceFactory
from switchboard.response import AIResponse, FinishReason

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    import httpx

    from switchboard.config import ProviderConfig
    from switchboard.request import AIRequest

_SAFETY_CATEGORIES = (
    "HARM_CATEGORY_HARASSMENT",
    "HARM_CATEGORY_HATE_SPEECH",
    "HARM_CATEGORY_SEXUALLY_EXPLICIT",
    "HARM_CATEGORY_DANGEROUS_CONTENT",
)

_FINISH_REASONS: dict[str, FinishReason] = {
    "STOP": FinishReason.STOP,
    "MAX_TOKENS": FinishReason.LENGTH,
    "SAFETY": FinishReason.CONTENT_FILTER,
    "RECITATION": FinishReason.CONTENT_FILTER,
    "BLOCKLIST": FinishReason.CONTENT_FILTER,
    "PROHIBITED_CONTENT": FinishReason.CONTENT_FILTER,
    "SPII": FinishReason.CONTENT_FILTER,
}

CAPABILITIES = ProviderCapabilities(
    streaming=True,
    vision=True,
    tools=True,
    web_search=False,
    thinking=True,
    multimodal=True,
    max_tokens=2_097_152,
    supported_formats=("text", "image", "audio", "video", "pdf"),
)


# =============================================================================
# Wire schema (responses)
# =============================================================================


class _Wire(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class _FunctionCall(_Wire):
    name: str
    args: dict[str, Any] = Field(default_factory=dict)


class _Part(_Wire):
    text: str | None = None
    thought: bool | None = None
    function_call: _FunctionCall | None = Field(default=None, alias="functionCall")


class _Content(_Wire):
    role: str | None = None
    parts: list[_Part] = Field(default_factory=list)


class _CitationSource(_Wire):
    start_index: int = Field(default=0, alias="startIndex")
    end_index: int = Field(default=0, alias="endIndex")
    uri: str | None = None
    license: str | None = None


class _CitationMetadata(_Wire):
    citation_sources: list[_CitationSource] = Field(
        default_factory=list, alias="citationSources"
    )


class _Candidate(_Wire):
    content: _Content | None = None
    finish_reason: str | None = Field(default=None, alias="finishReason")
    citation_metadata: _CitationMetadata | None = Field(
        default=None, alias="citationMetadata"
    )


class _UsageMetadata(_Wire):
    prompt_token_count: int = Field(default=0, alias="promptTokenCount")
    candidates_token_count: int = Field(default=0, alias="candidatesTokenCount")
    total_token_count: int = Field(default=0, alias="totalTokenCount")


class GenerateContentResponse(_Wire):
    candidates: list[_Candidate] = Field(default_factory=list)
    usage_metadata: _UsageMetadata | None = Field(default=None, alias="usageMetadata")
    model_version: str | None = Field(default=None, alias="modelVersion")


class _ModelEntry(_Wire):
    name: str
    display_name: str | None = Field(default=None, alias="displayName")


class _ModelList(_Wire):
    models: list[_ModelEntry] = Field(default_factory=list)


# =============================================================================
# Request translation
# =============================================================================


def _attachment_part(attachment: Any) -> dict[str, Any] | None:
    if attachment.data is not None:
        return {
            "inlineData": {
                "mimeType": attachment.mime_type or "application/octet-stream",
                "data": base64.b64encode(attachment.data).decode("ascii"),
            }
        }
    if attachment.url:
        return {
            "fileData": {
                "mimeType": attachment.mime_type or "application/octet-stream",
                "fileUri": attachment.url,
            }
        }
    return None


def _tool_names_by_call_id(messages: tuple[Message, ...]) -> dict[str, str]:
    names: dict[str, str] = {}
    for message in messages:
        for call in message.tool_calls:
            names[call.id] = call.name
    return names


def build_contents(request: AIRequest) -> tuple[list[dict[str, Any]], str | None]:
    """Return Gemini ``contents`` plus the joined system instruction."""
    system_texts: list[str] = []
    contents: list[dict[str, Any]] = []
    call_names = _tool_names_by_call_id(request.messages)
    last_user_idx: int | None = None

    for message in request.messages:
        if message.role is Role.SYSTEM:
            if message.content:
                system_texts.append(message.content)
            continue

        parts: list[dict[str, Any]] = []
        if message.role is Role.TOOL:
            call_id = message.name or ""
            parts.append(
                {
                    "functionResponse": {
                        "name": call_names.get(call_id, call_id),
                        "response": {"content": message.content},
                    }
                }
            )
            contents.append({"role": "user", "parts": parts})
            continue

        if message.content:
            parts.append({"text": message.content})
        for attachment in message.attachments:
            part = _attachment_part(attachment)
            if part is not None:
                parts.append(part)
        for call in message.tool_calls:
            parts.append(
                {"functionCall": {"name": call.name, "args": call.parsed_arguments()}}
            )
        if not parts:
            continue

        role = "model" if message.role is Role.ASSISTANT else "user"
        contents.append({"role": role, "parts": parts})
        if role == "user":
            last_user_idx = len(contents) - 1

    if request.attachments:
        extra = [p for a in request.attachments if (p := _attachment_part(a)) is not None]
        if last_user_idx is None:
            contents.append({"role": "user", "parts": extra})
        else:
            contents[last_user_idx]["parts"].extend(extra)

    system = "\n\n".join(system_texts) if system_texts else None
    return contents, system


def build_generation_config(request: AIRequest) -> dict[str, Any]:
    params = request.parameters
    config: dict[str, Any] = {}
    if params.temperature is not None:
        config["temperature"] = params.temperature
    if params.max_tokens is not None:
        config["maxOutputTokens"] = params.max_tokens
    if params.top_p is not None:
        config["topP"] = params.top_p
    if params.top_k is not None:
        config["topK"] = params.top_k
    if params.stop_sequences:
        config["stopSequences"] = list(params.stop_sequences)
    if params.seed is not None:
        config["seed"] = params.seed
    if params.response_format == "json":
        config["responseMimeType"] = "application/json"
    if request.required_capabilities.thinking:
        config["thinkingConfig"] = {"includeThoughts": True}
    return config


def build_body(request: AIRequest) -> dict[str, Any]:
    contents, system = build_contents(request)
    body: dict[str, Any] = {"contents": contents}
    if system:
        body["systemInstruction"] = {"parts": [{"text": system}]}
    generation_config = build_generation_config(request)
    if generation_config:
        body["generationConfig"] = generation_config
    if request.tools:
        body["tools"] = [
            {"functionDeclarations": [tool.to_dict() for tool in request.tools]}
        ]
    body["safetySettings"] = [
        {"category": category, "threshold": "BLOCK_NONE"}
        for category in _SAFETY_CATEGORIES
    ]
    return body


# =============================================================================
# Response translation
# =============================================================================


def to_ai_response(
    payload: GenerateContentResponse, request_id: str, *, chunk: bool = False
) -> AIResponse:
    """Convert one Gemini response (or stream event) into an AIResponse."""
    texts: list[str] = []
    thoughts: list[str] = []
    tool_calls: list[ToolCall] = []
    citations: list[Citation] = []
    finish: FinishReason | None = None

    if payload.candidates:
        candidate = payload.candidates[0]
        if candidate.content is not None:
            for part in candidate.content.parts:
                if part.function_call is not None:
                    tool_calls.append(
                        ToolCall(
                            id=uuid.uuid4().hex,
                            name=part.function_call.name,
                            arguments=json.dumps(part.function_call.args),
                        )
                    )
                elif part.text:
                    (thoughts if part.thought else texts).append(part.text)
        if candidate.finish_reason:
            finish = _FINISH_REASONS.get(candidate.finish_reason, FinishReason.STOP)
        if candidate.citation_metadata is not None:
            citations.extend(
                Citation(s.start_index, s.end_index, s.uri or "", s.license)
                for s in candidate.citation_metadata.citation_sources
            )

    if tool_calls and finish in (None, FinishReason.STOP):
        finish = FinishReason.TOOL_CALLS

    usage = None
    if payload.usage_metadata is not None:
        u = payload.usage_metadata
        usage = TokenUsage(
            prompt_tokens=u.prompt_token_count,
            completion_tokens=u.candidates_token_count,
            total_tokens=u.total_token_count,
        )

    return AIResponse(
        request_id=request_id,
        content="".join(texts),
        model=payload.model_version,
        usage=usage,
        finish_reason=finish,
        tool_calls=tuple(tool_calls),
        citations=tuple(citations),
        thinking=ThinkingContent("".join(thoughts)) if thoughts else None,
        is_streaming=chunk,
        is_complete=not chunk,
    )


# =============================================================================
# Service + factory
# =============================================================================


class GeminiService(BaseAIService):
    """Stateless adapter for ``generateContent`` / ``streamGenerateContent``."""

    default_model = "gemini-2.5-flash"

    @property
    def capabilities(self) -> ProviderCapabilities:
        return CAPABILITIES

    def _base_url(self) -> str:
        return (self.config.base_url or "").rstrip("/")

    def _require_key(self) -> str:
        if not self.config.api_key:
            raise RequestBuildError(
                "Gemini API key is missing",
                hint="Set GEMINI_API_KEY or ProviderConfig.api_key.",
            )
        return self.config.api_key

    async def build_request(self, request: AIRequest, scope: Any) -> WireRequest:
        key = self._require_key()
        action = "streamGenerateContent" if request.is_streaming else "generateContent"
        params = {"key": key}
        if request.is_streaming:
            params["alt"] = "sse"
        return WireRequest(
            method="POST",
            url=f"{self._base_url()}/models/{request.model}:{action}",
            headers={"Content-Type": "application/json"},
            json=build_body(request),
            params=params,
            stream=request.is_streaming,
        )

    async def parse_response(
        self, request: AIRequest, response: httpx.Response, scope: Any
    ) -> AIResponse:
        payload = GenerateContentResponse.model_validate(response.json())
        return to_ai_response(payload, request.id)

    async def iter_stream(
        self, request: AIRequest, response: httpx.Response, scope: Any
    ) -> AsyncIterator[AIResponse]:
        async for data in iter_sse_data(response):
            payload = GenerateContentResponse.model_validate_json(data)
            yield to_ai_response(payload, request.id, chunk=True)

    async def list_models(self) -> list[ModelInfo]:
        wire = WireRequest(
            method="GET",
            url=f"{self._base_url()}/models",
            params={"key": self._require_key()},
        )
        response = await self.send_wire(wire, phase="models")
        listing = _ModelList.model_validate(response.json())
        return [
            ModelInfo(
                id=entry.name.removeprefix("models/"),
                display_name=entry.display_name or entry.name,
                provider=self.provider,
                capabilities=CAPABILITIES,
            )
            for entry in listing.models
        ]


class GeminiServiceFactory(AIServiceFactory):
    @property
    def provider(self) -> str:
        return GEMINI

    def provider_info(self) -> ProviderInfo:
        return ProviderInfo(
            provider=GEMINI,
            display_name="Google Gemini (API)",
            description="Official Gemini API authenticated with an API key",
            capabilities=CAPABILITIES,
        )

    def _create(self, config: ProviderConfig) -> GeminiService:
        return GeminiService(config, transport=self._transport)
