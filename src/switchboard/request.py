"""Request model: generation parameters, execution context and AIRequest."""

from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from enum import Enum
import time
from typing import Any
import uuid

from switchboard.capabilities import RequiredCapabilities
from switchboard.models import Attachment, Message
from switchboard.validation import ValidationResult

_MAX_TOKENS_WARNING = 1_000_000


@dataclass(frozen=True)
class RequestParameters:
    """Generation parameters; unset fields are left to the provider default.

    Out-of-range values are validation errors. Nothing is clamped.
    """

    temperature: float | None = None
    max_tokens: int | None = None
    top_p: float | None = None
    top_k: int | None = None
    presence_penalty: float | None = None
    frequency_penalty: float | None = None
    stop_sequences: tuple[str, ...] = ()
    stream: bool = False
    seed: int | None = None
    response_format: str | None = None

    @classmethod
    def creative(cls) -> RequestParameters:
        return cls(temperature=0.9, top_p=0.9)

    @classmethod
    def deterministic(cls) -> RequestParameters:
        return cls(temperature=0.1, top_p=0.1)

    @classmethod
    def code_generation(cls) -> RequestParameters:
        return cls(temperature=0.2, top_p=0.95)

    def validate(self) -> ValidationResult:
        result = ValidationResult()
        if self.temperature is not None and not 0.0 <= self.temperature <= 2.0:
            result = result.with_error("Temperature must be between 0.0 and 2.0")
        if self.max_tokens is not None:
            if self.max_tokens <= 0:
                result = result.with_error("Max tokens must be positive")
            elif self.max_tokens > _MAX_TOKENS_WARNING:
                result = result.with_warning("Max tokens is very high, may cause issues")
        if self.top_p is not None and not 0.0 <= self.top_p <= 1.0:
            result = result.with_error("Top-p must be between 0.0 and 1.0")
        if self.top_k is not None and self.top_k <= 0:
            result = result.with_error("Top-k must be positive")
        if self.presence_penalty is not None and not -2.0 <= self.presence_penalty <= 2.0:
            result = result.with_error("Presence penalty must be between -2.0 and 2.0")
        if (
            self.frequency_penalty is not None
            and not -2.0 <= self.frequency_penalty <= 2.0
        ):
            result = result.with_error("Frequency penalty must be between -2.0 and 2.0")
        return result

    def merge(self, other: RequestParameters | None) -> RequestParameters:
        """Return parameters where every field *other* sets wins."""
        if other is None:
            return self
        defaults = RequestParameters()
        changes = {
            f.name: getattr(other, f.name)
            for f in fields(self)
            if getattr(other, f.name) != getattr(defaults, f.name)
        }
        return replace(self, **changes)


class Permission(str, Enum):
    FILE_READ = "file_read"
    FILE_WRITE = "file_write"
    FILE_DELETE = "file_delete"
    NETWORK_ACCESS = "network_access"
    DATABASE_ACCESS = "database_access"


FILE_PERMISSIONS: frozenset[Permission] = frozenset(
    {Permission.FILE_READ, Permission.FILE_WRITE, Permission.FILE_DELETE}
)


@dataclass(frozen=True)
class ExecutionContext:
    """Who is asking, in which session, against which project root.

    ``permissions`` is what tools may do on behalf of this context; it
    defaults to read-only file access.
    """

    user_id: str | None = None
    session_id: str | None = None
    project_dir: str | None = None
    permissions: frozenset[Permission] = frozenset({Permission.FILE_READ})

    def grants(self, required: frozenset[Permission] | set[Permission]) -> bool:
        return set(required).issubset(self.permissions)


@dataclass(frozen=True)
class ToolSpec:
    """A tool declaration as sent to a provider (JSON-schema parameters)."""

    name: str
    description: str
    parameters: dict[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters,
        }


def _new_request_id() -> str:
    return uuid.uuid4().hex


@dataclass(frozen=True)
class AIRequest:
    """A provider-agnostic request.

    Construct through ``AIRequest.builder()`` to get validation on build.
    Direct construction is allowed so that ``validate()`` can report on
    incomplete requests.
    """

    messages: tuple[Message, ...] = ()
    model: str = ""
    parameters: RequestParameters = field(default_factory=RequestParameters)
    required_capabilities: RequiredCapabilities = field(
        default_factory=RequiredCapabilities
    )
    attachments: tuple[Attachment, ...] = ()
    tools: tuple[ToolSpec, ...] = ()
    metadata: dict[str, Any] = field(default_factory=dict)
    context: ExecutionContext = field(default_factory=ExecutionContext)
    id: str = field(default_factory=_new_request_id)
    timestamp: float = field(default_factory=time.time)

    @staticmethod
    def builder() -> AIRequestBuilder:
        return AIRequestBuilder()

    def validate(self) -> ValidationResult:
        result = ValidationResult()
        if not self.messages:
            result = result.with_error("Request must contain at least one message")
        if not self.model or not self.model.strip():
            result = result.with_error("Model must be specified")

        for i, message in enumerate(self.messages):
            if message.is_empty:
                result = result.with_warning(f"Message {i} has no content or attachments")

        for i, attachment in enumerate(self.attachments):
            if not attachment.type:
                result = result.with_error(f"Attachment {i} missing type")

        return result.merge(self.parameters.validate())

    @property
    def is_streaming(self) -> bool:
        return self.parameters.stream

    @property
    def has_attachments(self) -> bool:
        return bool(self.attachments) or any(m.has_attachments for m in self.messages)

    @property
    def has_tools(self) -> bool:
        return bool(self.tools)

    @property
    def session_id(self) -> str | None:
        return self.context.session_id

    def requires(self, capability: str) -> bool:
        return self.required_capabilities.requires(capability)

    def estimated_tokens(self) -> int:
        return sum(m.estimated_tokens() for m in self.messages)

    def optimized_for(
        self,
        provider: str,
        *,
        parameters: RequestParameters | None = None,
        messages: tuple[Message, ...] | None = None,
    ) -> AIRequest:
        """Return a new request tailored for *provider*; self is untouched."""
        metadata = dict(self.metadata)
        metadata["optimized_for"] = provider
        return replace(
            self,
            parameters=parameters if parameters is not None else self.parameters,
            messages=tuple(messages) if messages is not None else self.messages,
            metadata=metadata,
        )


class AIRequestBuilder:
    """Fluent builder; ``build()`` validates and raises on errors."""

    def __init__(self) -> None:
        self._messages: list[Message] = []
        self._model = ""
        self._parameters = RequestParameters()
        self._required = RequiredCapabilities()
        self._attachments: list[Attachment] = []
        self._tools: list[ToolSpec] = []
        self._metadata: dict[str, Any] = {}
        self._context = ExecutionContext()

    def with_model(self, model: str) -> AIRequestBuilder:
        self._model = model
        return self

    def add_message(self, message: Message) -> AIRequestBuilder:
        self._messages.append(message)
        return self

    def with_messages(self, messages: list[Message] | tuple[Message, ...]) -> AIRequestBuilder:
        self._messages = list(messages)
        return self

    def with_parameters(self, parameters: RequestParameters) -> AIRequestBuilder:
        self._parameters = parameters
        return self

    def with_streaming(self, stream: bool = True) -> AIRequestBuilder:
        self._parameters = replace(self._parameters, stream=stream)
        return self

    def requiring(self, capabilities: RequiredCapabilities) -> AIRequestBuilder:
        self._required = capabilities
        return self

    def add_attachment(self, attachment: Attachment) -> AIRequestBuilder:
        self._attachments.append(attachment)
        return self

    def with_tools(self, tools: list[ToolSpec] | tuple[ToolSpec, ...]) -> AIRequestBuilder:
        self._tools = list(tools)
        return self

    def with_metadata(self, key: str, value: Any) -> AIRequestBuilder:
        self._metadata[key] = value
        return self

    def with_context(self, context: ExecutionContext) -> AIRequestBuilder:
        self._context = context
        return self

    def build(self) -> AIRequest:
        request = AIRequest(
            messages=tuple(self._messages),
            model=self._model,
            parameters=self._parameters,
            required_capabilities=self._required,
            attachments=tuple(self._attachments),
            tools=tuple(self._tools),
            metadata=dict(self._metadata),
            context=self._context,
        )
        request.validate().raise_for_errors(what="Request")
        return request
