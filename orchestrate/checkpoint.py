"""
Checkpointer — bounded durable writes of streaming content.

Every write sets the message's full content, never a delta, so writes that
complete out of order still leave a valid record. A failed write is logged
and dropped; the in-memory transcript stays correct either way.
"""

from __future__ import annotations

import logging

from orchestrate.controller import StreamSession
from orchestrate.models import Message

logger = logging.getLogger(__name__)

DEFAULT_CHECKPOINT_EVERY = 100


class Checkpointer:
    """
    Persists a StreamSession's content through a ConversationStore.

    `every` is the checkpoint granularity in characters: a write happens
    once that many characters have accumulated since the last one.
    """

    def __init__(self, store, every: int = DEFAULT_CHECKPOINT_EVERY):
        if every < 1:
            raise ValueError("checkpoint granularity must be at least 1")
        self.store = store
        self.every = every

    async def maybe_persist(self, session: StreamSession, message: Message) -> bool:
        """Write the accumulated content if the threshold has been crossed."""
        if session.finalized:
            return False
        pending = len(session.accumulated_content) - session.persisted_length
        if pending < self.every:
            return False
        return await self._write(session, message, session.accumulated_content)

    async def finalize(self, session: StreamSession, message: Message, content: str | None = None) -> bool:
        """
        Write the terminal content exactly once. Later calls are no-ops.

        `content` overrides the accumulated content (sealed notices).
        """
        if session.finalized:
            logger.debug("Stream %s already finalized, skipping", session.id)
            return False
        session.finalized = True
        final = session.accumulated_content if content is None else content
        return await self._write(session, message, final)

    async def _write(self, session: StreamSession, message: Message, content: str) -> bool:
        if message.id is None and session.overwrite_only:
            logger.debug("Stream %s has no record to overwrite, not persisting", session.id)
            return False
        try:
            if message.id is None:
                message.id = await self.store.append_message(
                    session.conversation_id, content, message.source,
                )
                logger.debug("Checkpoint created message %s (%d chars)", message.id, len(content))
            else:
                ok = await self.store.update_message_content(message.id, content)
                if not ok:
                    logger.warning("Checkpoint for message %s found no record", message.id)
                    return False
                logger.debug("Checkpoint updated message %s (%d chars)", message.id, len(content))
        except Exception as e:
            logger.warning("Checkpoint write failed for stream %s: %s", session.id, e)
            return False

        session.persisted_length = len(content)
        return True
