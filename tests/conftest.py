"""
Shared fakes: an in-memory store and a scripted streaming backend.
"""

import asyncio
from uuid import uuid4

import pytest

from orchestrate.errors import PersistenceError
from orchestrate.models import Conversation, Message, StreamEvent
from orchestrate.storage.base import DEFAULT_TITLE, ConversationStore


class MemoryStore(ConversationStore):
    """ConversationStore kept in dicts. `writes` records every content write in order."""

    def __init__(self):
        self.conversations: dict[str, Conversation] = {}
        self.messages: dict[str, dict] = {}
        self.writes: list[tuple[str, str, str]] = []
        self.fail_appends = False
        self.fail_updates = False

    async def create_conversation(self, title=DEFAULT_TITLE):
        conversation_id = uuid4().hex
        self.conversations[conversation_id] = Conversation(id=conversation_id, title=title)
        return conversation_id

    async def append_message(self, conversation_id, content, source):
        if self.fail_appends:
            raise PersistenceError("disk full")
        if conversation_id not in self.conversations:
            raise PersistenceError(f"Unknown conversation {conversation_id}")
        message_id = uuid4().hex
        self.messages[message_id] = {
            "conversation_id": conversation_id, "source": source, "content": content,
        }
        self.writes.append(("append", message_id, content))
        return message_id

    async def update_message_content(self, message_id, content):
        if self.fail_updates:
            raise PersistenceError("disk full")
        if message_id not in self.messages:
            return False
        self.messages[message_id]["content"] = content
        self.writes.append(("update", message_id, content))
        return True

    async def delete_message(self, message_id):
        return self.messages.pop(message_id, None) is not None

    async def delete_conversation(self, conversation_id):
        if conversation_id not in self.conversations:
            return False
        del self.conversations[conversation_id]
        for message_id in [k for k, v in self.messages.items() if v["conversation_id"] == conversation_id]:
            del self.messages[message_id]
        return True

    async def list_messages(self, conversation_id):
        return [
            Message.from_source(row["content"], row["source"], message_id=message_id)
            for message_id, row in self.messages.items()
            if row["conversation_id"] == conversation_id
        ]

    async def rename_conversation(self, conversation_id, title):
        if conversation_id not in self.conversations:
            return False
        self.conversations[conversation_id].title = title
        return True

    async def get_conversation(self, conversation_id):
        return self.conversations.get(conversation_id)

    async def list_conversations(self, limit=50, offset=0):
        return list(self.conversations.values())[offset:offset + limit]


class ScriptedBackend:
    """
    Backend that replays a fixed list of StreamEvents.

    With `pause_after=n` it stops after yielding n events and waits on
    `release` (through the cancellation token, like a real network read),
    setting `paused` so tests can abort at a known point. `error` is raised
    after the script runs out.
    """

    name = "scripted"
    url = "scripted://"
    timeout = 1

    def __init__(self, events=None, error=None, pause_after=None, models=None):
        self.events = list(events or [])
        self.error = error
        self.pause_after = pause_after
        self.models = models or []
        self.paused = asyncio.Event()
        self.release = asyncio.Event()
        self.calls: list[dict] = []

    async def stream_completion(self, history, model, search_enabled=False, token=None):
        self.calls.append({"history": history, "model": model, "search_enabled": search_enabled})
        for i, event in enumerate(self.events):
            if self.pause_after is not None and i == self.pause_after:
                await self._pause(token)
            if token is not None:
                token.raise_if_cancelled()
            yield event
        if self.pause_after is not None and self.pause_after >= len(self.events):
            await self._pause(token)
        if self.error is not None:
            raise self.error

    async def _pause(self, token):
        self.paused.set()
        if token is not None:
            await token.guard(self.release.wait())
        else:
            await self.release.wait()

    async def list_models(self):
        return self.models


def content_events(*parts, model=None):
    return [StreamEvent(content=part, model=model) for part in parts]


@pytest.fixture
def memory_store():
    return MemoryStore()
