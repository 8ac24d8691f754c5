"""Per-session conversation state for stateful providers.

Each session id owns one mutable ``ConversationState`` and one lock. Callers
hold the lock for the whole read-modify-write of a turn so two concurrent
requests on the same session cannot interleave their parent-id updates.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
import logging
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

logger = logging.getLogger(__name__)

DEFAULT_SESSION_ID = "default"


@dataclass
class ConversationState:
    """Server-side continuity tokens for one session."""

    conversation_id: str | None = None
    last_parent_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def is_new(self) -> bool:
        return self.conversation_id is None

    def snapshot(self) -> ConversationState:
        """Return a detached copy safe to hand to callbacks."""
        return ConversationState(
            conversation_id=self.conversation_id,
            last_parent_id=self.last_parent_id,
            metadata=dict(self.metadata),
        )


class SessionStore:
    """Explicitly owned map of session id to conversation state."""

    def __init__(self) -> None:
        self._states: dict[str, ConversationState] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def __len__(self) -> int:
        return len(self._states)

    def get(self, session_id: str | None) -> ConversationState | None:
        return self._states.get(session_id or DEFAULT_SESSION_ID)

    @asynccontextmanager
    async def session(self, session_id: str | None) -> AsyncIterator[ConversationState]:
        """Yield the session's state with its lock held, creating both on first use."""
        key = session_id or DEFAULT_SESSION_ID
        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            state = self._states.get(key)
            if state is None:
                state = ConversationState()
                self._states[key] = state
                logger.debug("Created conversation state for session %s", key)
            yield state

    def end_session(self, session_id: str | None) -> bool:
        """Evict a session's state; returns whether it existed.

        The lock stays, so a turn still in flight keeps excluding the next
        turn on the same id. That next turn starts from a fresh state.
        """
        key = session_id or DEFAULT_SESSION_ID
        return self._states.pop(key, None) is not None

    def clear(self) -> None:
        self._states.clear()
        self._locks.clear()
