"""
Base backend abstraction.
All completion providers implement this interface so the session can
treat them uniformly.
"""

from __future__ import annotations

import abc
import logging
from typing import AsyncIterator

from orchestrate.cancellation import CancellationToken
from orchestrate.models import StreamEvent

logger = logging.getLogger(__name__)


class BaseBackend(abc.ABC):
    """
    Abstract base for streaming completion providers.
    Each backend knows how to open a stream and list its models.
    """

    def __init__(self, name: str, url: str, timeout: int = 120):
        self.name = name
        self.url = url.rstrip("/")
        self.timeout = timeout

    @abc.abstractmethod
    def stream_completion(
        self,
        history: list[dict],
        model: str,
        search_enabled: bool = False,
        token: CancellationToken | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """
        Stream a chat completion.
        History is OpenAI-format messages. Yields StreamEvents in arrival
        order. Raises TransportError before yielding anything if the
        provider rejects the request, and StreamAborted once `token` fires.
        """
        ...

    @abc.abstractmethod
    async def list_models(self) -> list[dict]:
        """Return the provider's model catalogue (dicts with at least an "id")."""
        ...

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} name={self.name!r} url={self.url!r}>"
