"""
Request controller — one in-flight stream per conversation.

Owns the StreamSession registry and the cancellation tokens. The session
layer rejects a second submit before it gets here; `start` raising
BusyError is the backstop.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import AsyncIterator
from uuid import uuid4

from orchestrate.cancellation import CancellationToken
from orchestrate.errors import BusyError
from orchestrate.models import Citation, StreamEvent

logger = logging.getLogger(__name__)


class StreamStatus(str, Enum):
    ACTIVE = "active"
    DONE = "done"
    ABORTED = "aborted"
    ERRORED = "errored"


@dataclass
class StreamSession:
    """
    State for one streaming request, from dispatch to a terminal status.

    `persisted_length` is how much of `accumulated_content` the store has
    seen, so checkpoints can be bounded. With `overwrite_only` the
    target must already have a durable record; it is never appended.
    """
    conversation_id: str
    token: CancellationToken = field(default_factory=CancellationToken)
    target_index: int = -1
    search_enabled: bool = False
    overwrite_only: bool = False
    accumulated_content: str = ""
    accumulated_citations: list[Citation] = field(default_factory=list)
    persisted_length: int = 0
    finalized: bool = False
    status: StreamStatus = StreamStatus.ACTIVE
    id: str = field(default_factory=lambda: uuid4().hex[:12])
    started_at: float = field(default_factory=time.monotonic)

    @property
    def terminal(self) -> bool:
        return self.status is not StreamStatus.ACTIVE

    @property
    def elapsed_ms(self) -> float:
        return (time.monotonic() - self.started_at) * 1000


class RequestController:
    """Registry of active StreamSessions keyed by conversation id."""

    def __init__(self):
        self._active: dict[str, StreamSession] = {}

    def start(self, conversation_id: str, search_enabled: bool = False) -> StreamSession:
        """Register a new stream. Raises BusyError if one is already active."""
        if conversation_id in self._active:
            raise BusyError(conversation_id)
        session = StreamSession(conversation_id=conversation_id, search_enabled=search_enabled)
        self._active[conversation_id] = session
        logger.debug("Stream %s registered for conversation %s", session.id, conversation_id)
        return session

    def open(
        self,
        session: StreamSession,
        backend,
        history: list[dict],
        model: str,
    ) -> AsyncIterator[StreamEvent]:
        """Issue the completion call for `session`, bound to its token."""
        logger.info(
            "Stream %s: %d messages -> %s (search=%s)",
            session.id, len(history), model, session.search_enabled,
        )
        return backend.stream_completion(
            history, model, search_enabled=session.search_enabled, token=session.token,
        )

    def get(self, conversation_id: str) -> StreamSession | None:
        return self._active.get(conversation_id)

    def is_busy(self, conversation_id: str | None) -> bool:
        return conversation_id is not None and conversation_id in self._active

    def cancel(self, session: StreamSession) -> bool:
        """Signal the session's token. False if it was already cancelled or finished."""
        if session.terminal:
            return False
        cancelled = session.token.cancel()
        if cancelled:
            logger.info("Stream %s cancel requested", session.id)
        return cancelled

    def cancel_conversation(self, conversation_id: str) -> bool:
        session = self._active.get(conversation_id)
        return self.cancel(session) if session else False

    def finish(self, session: StreamSession, status: StreamStatus):
        """Move `session` to a terminal status and release the conversation."""
        session.status = status
        if self._active.get(session.conversation_id) is session:
            del self._active[session.conversation_id]
        logger.info(
            "Stream %s %s after %.0fms (%d chars)",
            session.id, status.value, session.elapsed_ms, len(session.accumulated_content),
        )
