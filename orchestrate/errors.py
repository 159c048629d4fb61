"""
Error taxonomy for the conversation engine.

Stream-phase errors never leave ConversationSession: they are turned into a
sealed assistant message. PersistenceError is logged and swallowed during
checkpointing. BusyError is raised straight back to the caller.
"""


class OrchestrateError(Exception):
    """Base for everything this package raises on purpose."""


class TransportError(OrchestrateError):
    """The completion request failed (non-success response, connection error, server error event)."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class DecodeError(OrchestrateError):
    """A stream payload could not be parsed. Dropped by the decoder."""


class StreamAborted(OrchestrateError):
    """The user cancelled the stream. Not an error from the user's point of view."""


class PersistenceError(OrchestrateError):
    """A write or read against the durable store failed."""


class BusyError(OrchestrateError):
    """A stream is already active for this conversation."""

    def __init__(self, conversation_id: str | None = None):
        super().__init__(f"A response is already streaming for conversation {conversation_id!r}")
        self.conversation_id = conversation_id
