"""
ConversationSession — the conversation state machine.

    Idle → Sending → Streaming → Finalizing → Idle
                        ├──── abort ──→ Aborted ─→ Idle
    Sending/Streaming ──┴──── error ──→ Errored ─→ Idle

The session owns the transcript. Presentation layers subscribe to it for
incremental updates and drive the session through submit / retry / abort /
edit_message / delete_message. Every stream ends with the assistant message
sealed as a full answer, a partial answer with a stopped notice, or an
error notice; stream-phase errors never escape `submit` or `retry`.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import aclosing
from enum import Enum
from typing import Callable, Iterator

from orchestrate.accumulator import AccumulationEngine
from orchestrate.checkpoint import DEFAULT_CHECKPOINT_EVERY, Checkpointer
from orchestrate.commands import parse_chat_command, strip_command
from orchestrate.controller import RequestController, StreamSession, StreamStatus
from orchestrate.errors import BusyError, StreamAborted, TransportError
from orchestrate.models import ASSISTANT_ROLE, USER_ROLE, Message
from orchestrate.storage.base import DEFAULT_TITLE, ConversationStore

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "google/gemini-2.0-flash-001"
TITLE_LENGTH = 25

# listener(kind, index, message); kind is "append", "update", "remove" or "reset"
TranscriptListener = Callable[[str, "int | None", "Message | None"], None]


class SessionState(str, Enum):
    IDLE = "idle"
    SENDING = "sending"
    STREAMING = "streaming"
    FINALIZING = "finalizing"
    ABORTED = "aborted"
    ERRORED = "errored"


def derive_title(text: str) -> str:
    """Conversation title from the first message."""
    text = text.strip()
    if len(text) > TITLE_LENGTH:
        return text[:TITLE_LENGTH] + "..."
    return text


class Transcript:
    """
    Ordered messages of the active conversation, observable.

    Only ConversationSession mutates it. Listener errors are logged and
    skipped so a broken subscriber never stalls a stream.
    """

    def __init__(self, messages: list[Message] | None = None):
        self._messages: list[Message] = list(messages or [])
        self._listeners: list[TranscriptListener] = []

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self) -> Iterator[Message]:
        return iter(self._messages)

    def __getitem__(self, index):
        return self._messages[index]

    @property
    def messages(self) -> list[Message]:
        return list(self._messages)

    def subscribe(self, listener: TranscriptListener) -> Callable[[], None]:
        """Register a listener; returns a callable that unsubscribes it."""
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, kind: str, index: int | None, message: Message | None):
        for listener in list(self._listeners):
            try:
                listener(kind, index, message)
            except Exception as e:
                logger.warning("Transcript listener %r failed: %s", listener, e)

    def append(self, message: Message) -> int:
        self._messages.append(message)
        index = len(self._messages) - 1
        self._emit("append", index, message)
        return index

    def notify(self, index: int):
        """Announce an in-place change to the message at `index`."""
        self._emit("update", index, self._messages[index])

    def position(self, message: Message) -> int | None:
        """Current index of `message` by identity, or None once it is gone."""
        for i, candidate in enumerate(self._messages):
            if candidate is message:
                return i
        return None

    def touch(self, message: Message):
        """Announce an in-place change to `message`, wherever it now sits."""
        index = self.position(message)
        if index is not None:
            self._emit("update", index, message)

    def remove(self, index: int) -> Message:
        message = self._messages.pop(index)
        self._emit("remove", index, message)
        return message

    def reset(self, messages: list[Message]):
        self._messages = list(messages)
        self._emit("reset", None, None)

    def index_of(self, message_id: str) -> int | None:
        for i, message in enumerate(self._messages):
            if message.id == message_id:
                return i
        return None

    def streaming_message(self) -> Message | None:
        for message in self._messages:
            if message.is_streaming:
                return message
        return None

    def snapshot(self) -> list[dict]:
        return [m.to_dict() for m in self._messages]


class ConversationSession:
    """One conversation's transcript plus the machinery to extend it."""

    def __init__(
        self,
        store: ConversationStore,
        backend,
        controller: RequestController | None = None,
        *,
        conversation_id: str | None = None,
        model: str = DEFAULT_MODEL,
        checkpoint_every: int = DEFAULT_CHECKPOINT_EVERY,
    ):
        self.store = store
        self.backend = backend
        self.controller = controller or RequestController()
        self.checkpointer = Checkpointer(store, every=checkpoint_every)
        self.conversation_id = conversation_id
        self.model = model
        self.transcript = Transcript()
        self._state = SessionState.IDLE
        self._stream: StreamSession | None = None

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def busy(self) -> bool:
        return self._state is not SessionState.IDLE or self.controller.is_busy(self.conversation_id)

    def _set_state(self, state: SessionState):
        if state is not self._state:
            logger.debug("Session %s: %s -> %s", self.conversation_id, self._state.value, state.value)
            self._state = state

    def _check_idle(self):
        if self.busy:
            raise BusyError(self.conversation_id)

    def set_model(self, model: str):
        self.model = model

    # ------------------------------------------------------------------
    # Loading and conversation-level operations
    # ------------------------------------------------------------------

    async def load(self, conversation_id: str) -> list[Message]:
        """
        Replace the transcript with a stored conversation. The session adopts
        the model of the latest assistant reply.
        """
        self._check_idle()
        messages = await self.store.list_messages(conversation_id)
        self.conversation_id = conversation_id
        self.transcript.reset(messages)
        for message in reversed(messages):
            if message.role == ASSISTANT_ROLE and message.model:
                self.model = message.model
                break
        logger.info("Loaded conversation %s (%d messages)", conversation_id, len(messages))
        return messages

    async def rename(self, title: str) -> bool:
        if not self.conversation_id:
            logger.warning("Rename ignored: no active conversation")
            return False
        try:
            return await self.store.rename_conversation(self.conversation_id, title)
        except Exception as e:
            logger.warning("Rename of %s failed: %s", self.conversation_id, e)
            return False

    async def delete_conversation(self) -> bool:
        """Delete the active conversation; the transcript is cleared on success."""
        self._check_idle()
        if not self.conversation_id:
            return False
        try:
            deleted = await self.store.delete_conversation(self.conversation_id)
        except Exception as e:
            logger.warning("Delete of conversation %s failed: %s", self.conversation_id, e)
            return False
        if deleted:
            logger.info("Deleted conversation %s", self.conversation_id)
            self.conversation_id = None
            self.transcript.reset([])
        return deleted

    # ------------------------------------------------------------------
    # Submit / retry / abort
    # ------------------------------------------------------------------

    async def submit(self, text: str, *, search: bool = False) -> Message:
        """
        Send a user message and stream the reply into a new assistant message.

        Raises BusyError if a stream is active, ValueError for an empty
        message, and PersistenceError if the user message can't be stored
        (the transcript is left as it was). Returns the sealed assistant
        message.
        """
        self._check_idle()
        command = parse_chat_command(text)
        search = search or command.search

        self._set_state(SessionState.SENDING)
        user_index = None
        stream = None
        try:
            if self.conversation_id is None:
                self.conversation_id = await self.store.create_conversation(DEFAULT_TITLE)
            stream = self.controller.start(self.conversation_id, search_enabled=search)
            self._stream = stream

            first_message = len(self.transcript) == 0
            user = Message(role=USER_ROLE, content=command.display)
            user_index = self.transcript.append(user)
            user.id = await self.store.append_message(self.conversation_id, command.display, USER_ROLE)
            self.transcript.notify(user_index)
        except BaseException:
            if user_index is not None:
                self.transcript.remove(user_index)
            if stream is not None:
                self.controller.finish(stream, StreamStatus.ERRORED)
            self._stream = None
            self._set_state(SessionState.IDLE)
            raise

        if first_message:
            await self._title_from(command.display)

        history = self._history(self.transcript.messages[:user_index])
        history.append({"role": USER_ROLE, "content": command.message})

        assistant = Message(role=ASSISTANT_ROLE, model=self.model, is_streaming=True)
        stream.target_index = self.transcript.append(assistant)
        await self._run_stream(stream, assistant, history)
        return assistant

    async def retry(self, turn_index: int) -> Message:
        """
        Regenerate the assistant reply that follows the user message at
        `turn_index`, overwriting it in place and keeping its durable id.
        Only messages 0..turn_index are sent to the provider.
        """
        self._check_idle()
        target = self.retry_target(turn_index)
        user = self.transcript[turn_index]

        try:
            search = parse_chat_command(user.content).search
        except ValueError:
            search = False

        stream = self.controller.start(self.conversation_id, search_enabled=search)
        stream.target_index = turn_index + 1
        stream.overwrite_only = True
        if target.id is None:
            logger.warning(
                "Retry of message %d in %s: reply was never stored, regenerated text stays in memory",
                turn_index + 1, self.conversation_id,
            )
        self._stream = stream
        self._set_state(SessionState.SENDING)

        target.content = ""
        target.citations = []
        target.model = self.model
        target.is_streaming = True
        self.transcript.notify(stream.target_index)

        history = self._history(self.transcript.messages[:turn_index + 1])
        await self._run_stream(stream, target, history)
        return target

    def retry_target(self, turn_index: int) -> Message:
        """The reply `retry(turn_index)` would overwrite. Raises ValueError if there is none."""
        if not (0 <= turn_index < len(self.transcript) - 1):
            raise ValueError(f"No reply to retry after message {turn_index}")
        user = self.transcript[turn_index]
        target = self.transcript[turn_index + 1]
        if user.role != USER_ROLE or target.role != ASSISTANT_ROLE:
            raise ValueError(f"Message {turn_index} is not a user turn followed by a reply")
        if self.conversation_id is None:
            raise ValueError("Nothing to retry: conversation has not been saved")
        return target

    def abort(self) -> bool:
        """Request cancellation of the active stream. False if nothing is streaming."""
        if self._stream is None:
            return False
        return self.controller.cancel(self._stream)

    @staticmethod
    def _history(messages: list[Message]) -> list[dict]:
        history = []
        for message in messages:
            entry = message.to_openai_format()
            if message.role == USER_ROLE:
                entry["content"] = strip_command(message.content)
            history.append(entry)
        return history

    async def _title_from(self, text: str):
        try:
            await self.store.rename_conversation(self.conversation_id, derive_title(text))
        except Exception as e:
            logger.warning("Could not title conversation %s: %s", self.conversation_id, e)

    async def _run_stream(self, stream: StreamSession, message: Message, history: list[dict]):
        """Drive one stream to a terminal state. Never raises for stream-phase errors."""
        engine = AccumulationEngine(message, stream)
        status = StreamStatus.ERRORED
        try:
            events = self.controller.open(stream, self.backend, history, self.model)
            async with aclosing(events):
                async for event in events:
                    if self._state is SessionState.SENDING:
                        self._set_state(SessionState.STREAMING)
                    grew = engine.apply(event)
                    self.transcript.touch(message)
                    if grew:
                        await self.checkpointer.maybe_persist(stream, message)

            self._set_state(SessionState.FINALIZING)
            content = engine.finalize()
            self.transcript.touch(message)
            await self.checkpointer.finalize(stream, message, content)
            self.transcript.touch(message)
            status = StreamStatus.DONE
        except StreamAborted:
            self._set_state(SessionState.ABORTED)
            await self._seal(engine, stream, message, aborted=True)
            status = StreamStatus.ABORTED
        except asyncio.CancelledError:
            # The task driving us was cancelled (client went away); seal as stopped.
            self._set_state(SessionState.ABORTED)
            await self._seal(engine, stream, message, aborted=True)
            status = StreamStatus.ABORTED
            raise
        except TransportError as e:
            logger.warning("Stream %s failed: %s", stream.id, e)
            self._set_state(SessionState.ERRORED)
            await self._seal(engine, stream, message, aborted=False)
        except Exception:
            logger.exception("Stream %s failed unexpectedly", stream.id)
            self._set_state(SessionState.ERRORED)
            await self._seal(engine, stream, message, aborted=False)
        finally:
            message.is_streaming = False
            self.controller.finish(stream, status)
            self._stream = None
            self._set_state(SessionState.IDLE)

    async def _seal(self, engine: AccumulationEngine, stream: StreamSession, message: Message, aborted: bool):
        content = engine.seal(aborted)
        await self.checkpointer.finalize(stream, message, content)
        self.transcript.touch(message)

    # ------------------------------------------------------------------
    # Edit / delete
    # ------------------------------------------------------------------

    async def edit_message(self, message_id: str, content: str) -> bool:
        """
        Replace a message's content in place and persist it. Downstream
        replies are left alone. Returns False for an unknown id, empty
        content, or a failed write. Raises BusyError while a stream is active.
        """
        self._check_idle()
        index = self.transcript.index_of(message_id) if message_id else None
        if index is None:
            logger.warning("Edit ignored: no message %r", message_id)
            return False
        message = self.transcript[index]
        content = (content or "").strip()
        if not content:
            logger.warning("Edit ignored: empty content for %s", message_id)
            return False

        message.content = content
        self.transcript.notify(index)
        try:
            ok = await self.store.update_message_content(message_id, content)
        except Exception as e:
            logger.warning("Edit of message %s not persisted: %s", message_id, e)
            return False
        if not ok:
            logger.warning("Edit of message %s not persisted: no record", message_id)
        return ok

    async def delete_message(self, message_id: str) -> bool:
        """
        Delete a message from the store, then from the transcript.
        Raises BusyError while a stream is active.
        """
        self._check_idle()
        if not message_id or self.transcript.index_of(message_id) is None:
            logger.warning("Delete ignored: invalid message id %r", message_id)
            return False
        try:
            deleted = await self.store.delete_message(message_id)
        except Exception as e:
            logger.warning("Delete of message %s failed: %s", message_id, e)
            return False
        if not deleted:
            logger.warning("Delete of message %s: no record", message_id)
            return False

        index = self.transcript.index_of(message_id)
        if index is not None:
            self.transcript.remove(index)
        return True
