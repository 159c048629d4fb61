"""
Storage contract for the conversation engine.

Every operation is async and fallible. Implementations raise
PersistenceError when the underlying write or read fails; "not found" is
reported through the boolean return value, not an exception.
"""

from __future__ import annotations

import abc

from orchestrate.models import Conversation, Message

DEFAULT_TITLE = "New Chat"


class ConversationStore(abc.ABC):
    """Durable home for conversations and their messages."""

    @abc.abstractmethod
    async def create_conversation(self, title: str = DEFAULT_TITLE) -> str:
        """Create a conversation and return its id."""
        ...

    @abc.abstractmethod
    async def append_message(self, conversation_id: str, content: str, source: str) -> str:
        """
        Append a message and return its id.
        `source` is "user", "system", or the assistant's model id.
        """
        ...

    @abc.abstractmethod
    async def update_message_content(self, message_id: str, content: str) -> bool:
        """Overwrite a message's content. False if the message doesn't exist."""
        ...

    @abc.abstractmethod
    async def delete_message(self, message_id: str) -> bool:
        ...

    @abc.abstractmethod
    async def delete_conversation(self, conversation_id: str) -> bool:
        """Delete a conversation and all of its messages."""
        ...

    @abc.abstractmethod
    async def list_messages(self, conversation_id: str) -> list[Message]:
        """All messages of a conversation in conversation order."""
        ...

    @abc.abstractmethod
    async def rename_conversation(self, conversation_id: str, title: str) -> bool:
        ...

    @abc.abstractmethod
    async def get_conversation(self, conversation_id: str) -> Conversation | None:
        ...

    @abc.abstractmethod
    async def list_conversations(self, limit: int = 50, offset: int = 0) -> list[Conversation]:
        """Conversations with the most recent activity first."""
        ...
