"""Bridge between a chat UI and the service manager.

``build_chat_request`` turns what a UI holds (text, history, project
context, toggles) into an ``AIRequest``. ``AssistantSession`` runs it and
translates the response stream into listener events.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import json
import logging
import re
from typing import TYPE_CHECKING, Any, Protocol

from switchboard.capabilities import RequiredCapabilities
from switchboard.models import Message
from switchboard.request import AIRequest, ExecutionContext, Permission

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

    from switchboard.errors import SwitchboardError
    from switchboard.manager import AIServiceManager
    from switchboard.models import ThinkingContent, WebSource
    from switchboard.request import ToolSpec
    from switchboard.response import AIResponse
    from switchboard.session import ConversationState

logger = logging.getLogger(__name__)

_JSON_BLOCK_RE = re.compile(r"```json\s*([\s\S]*?)```", re.IGNORECASE)
_CHANGE_KEYS = ("proposed_changes", "operations", "file_changes")


class AssistantListener(Protocol):
    """UI callbacks; all are invoked on the event loop thread."""

    def on_request_started(self) -> None: ...

    def on_stream_update(self, text: str, is_thinking: bool) -> None:
        """Receive the accumulated answer or thinking text so far."""
        ...

    def on_web_sources_update(self, sources: list[WebSource]) -> None: ...

    def on_actions_processed(
        self,
        raw_response: str,
        explanation: str,
        suggestions: list[str],
        proposed_changes: list[dict[str, Any]],
        model_name: str,
        thinking: ThinkingContent | None,
        web_sources: list[WebSource],
    ) -> None: ...

    def on_error(self, message: str) -> None: ...

    def on_request_completed(self) -> None: ...

    def on_conversation_state_updated(self, state: ConversationState) -> None: ...


@dataclass(frozen=True)
class ActionEnvelope:
    explanation: str
    suggestions: list[str] = field(default_factory=list)
    proposed_changes: list[dict[str, Any]] = field(default_factory=list)


def parse_action_envelope(text: str) -> ActionEnvelope:
    """Read a structured answer from a ```json block or a bare JSON object.

    Anything that is not such an object is treated as a plain explanation.
    """
    match = _JSON_BLOCK_RE.search(text)
    candidate = match.group(1).strip() if match else text.strip()
    if not candidate.startswith("{"):
        return ActionEnvelope(explanation=text)
    try:
        data = json.loads(candidate)
    except ValueError:
        return ActionEnvelope(explanation=text)
    if not isinstance(data, dict):
        return ActionEnvelope(explanation=text)

    suggestions = data.get("suggestions")
    changes: list[dict[str, Any]] = []
    for key in _CHANGE_KEYS:
        value = data.get(key)
        if isinstance(value, list):
            changes = [c for c in value if isinstance(c, dict)]
            break
    return ActionEnvelope(
        explanation=str(data.get("explanation", "")),
        suggestions=[str(s) for s in suggestions] if isinstance(suggestions, list) else [],
        proposed_changes=changes,
    )


def build_chat_request(
    user_text: str,
    *,
    model: str,
    history: Iterable[Message] = (),
    session_id: str | None = None,
    project_dir: str | None = None,
    active_file: str | None = None,
    tools: Sequence[ToolSpec] = (),
    thinking: bool = False,
    web_search: bool = False,
    stream: bool = True,
    permissions: frozenset[Permission] = frozenset({Permission.FILE_READ}),
) -> AIRequest:
    builder = AIRequest.builder().with_model(model).with_streaming(stream)
    if active_file:
        builder.add_message(Message.system(f"The user is currently editing: {active_file}"))
    for message in history:
        builder.add_message(message)
    builder.add_message(Message.user(user_text))
    builder.requiring(
        RequiredCapabilities(
            streaming=stream,
            tools=bool(tools),
            thinking=thinking,
            web_search=web_search,
        )
    )
    if tools:
        builder.with_tools(tuple(tools))
    builder.with_context(
        ExecutionContext(
            session_id=session_id, project_dir=project_dir, permissions=permissions
        )
    )
    return builder.build()


class AssistantSession:
    """Runs requests through a manager and reports progress to a listener."""

    def __init__(self, manager: AIServiceManager, listener: AssistantListener) -> None:
        self.manager = manager
        self.listener = listener

    async def send(self, request: AIRequest) -> AIResponse | None:
        """Run *request*; returns the complete response, or None on error."""
        answer: list[str] = []
        thoughts: list[str] = []
        sources: dict[str, WebSource] = {}
        final: list[AIResponse] = []

        def on_response(response: AIResponse) -> None:
            if response.is_complete:
                final.append(response)
                return
            if response.thinking is not None and response.thinking.content:
                thoughts.append(response.thinking.content)
                self.listener.on_stream_update("".join(thoughts), True)
            if response.content:
                answer.append(response.content)
                self.listener.on_stream_update("".join(answer), False)
            added = False
            for source in response.web_sources:
                if source.url not in sources:
                    sources[source.url] = source
                    added = True
            if added:
                self.listener.on_web_sources_update(list(sources.values()))

        def on_error(error: SwitchboardError) -> None:
            message = str(error)
            if error.hint:
                message = f"{message} ({error.hint})"
            self.listener.on_error(message)

        self.listener.on_request_started()
        try:
            await self.manager.execute_request(request, on_response, on_error)
            if not final:
                return None
            response = final[-1]
            self._report(response, sources)
            self._report_state(request, response)
            return response
        finally:
            self.listener.on_request_completed()

    def _report(self, response: AIResponse, streamed_sources: dict[str, WebSource]) -> None:
        envelope = parse_action_envelope(response.content)
        web_sources = list(streamed_sources.values())
        for source in response.web_sources:
            if source.url not in streamed_sources:
                web_sources.append(source)
        model_name = response.model or ""
        if response.metadata is not None and response.metadata.model:
            model_name = response.metadata.model
        self.listener.on_actions_processed(
            response.content,
            envelope.explanation,
            envelope.suggestions,
            envelope.proposed_changes,
            model_name,
            response.thinking,
            web_sources,
        )

    def _report_state(self, request: AIRequest, response: AIResponse) -> None:
        provider = response.metadata.provider if response.metadata else None
        if provider is None:
            return
        state = self.manager.conversation_state(provider, request.session_id)
        if state is not None:
            self.listener.on_conversation_state_updated(state)
