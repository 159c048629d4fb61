"""
Retry wrapper for backends with exponential backoff.

Wraps any backend to add retry logic for transient failures that happen
before the first event arrives:
- 429: Rate limited
- 5xx: Server errors
- Connection errors and timeouts (no status code)

Never retried:
- 400, 401, 402, 403, 404: bad request, auth, credits, unknown model
- Anything after the first event has been yielded (the caller already
  has partial content)
- Cancellation
"""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator

from orchestrate.backends.base import BaseBackend
from orchestrate.cancellation import CancellationToken
from orchestrate.errors import TransportError
from orchestrate.models import StreamEvent

logger = logging.getLogger(__name__)

RETRYABLE_STATUS = (429, 500, 502, 503, 504)


class RetryableBackendWrapper:
    """
    Wraps any backend with exponential backoff retry logic.

    Exposes the same interface as the wrapped backend.
    """

    def __init__(
        self,
        backend: BaseBackend,
        max_retries: int = 2,
        backoff_base: float = 1.5,
        backoff_max: float = 10.0,
    ):
        self.backend = backend
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max

        self.name = backend.name
        self.url = backend.url
        self.timeout = backend.timeout

    def _is_retryable(self, error: TransportError) -> bool:
        """Connection-level failures have no status code and are worth another try."""
        return error.status_code is None or error.status_code in RETRYABLE_STATUS

    def _backoff_seconds(self, attempt: int) -> float:
        """Calculate backoff time for attempt N (exponential)."""
        delay = self.backoff_base ** attempt
        return min(delay, self.backoff_max)

    async def stream_completion(
        self,
        history: list[dict],
        model: str,
        search_enabled: bool = False,
        token: CancellationToken | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Stream with retry on failures that happen before the first event."""
        for attempt in range(self.max_retries + 1):
            started = False
            try:
                async for event in self.backend.stream_completion(
                    history, model, search_enabled=search_enabled, token=token,
                ):
                    started = True
                    yield event
                return
            except TransportError as e:
                if started or not self._is_retryable(e):
                    raise
                if attempt >= self.max_retries:
                    logger.error("Backend '%s' exhausted retries for '%s': %s", self.name, model, e)
                    raise

                backoff = self._backoff_seconds(attempt + 1)
                logger.warning(
                    "Backend '%s' transient error for '%s', retry in %.1fs (%d/%d): %s",
                    self.name, model, backoff, attempt + 1, self.max_retries, e,
                )
                if token is not None:
                    await token.guard(asyncio.sleep(backoff))
                else:
                    await asyncio.sleep(backoff)

    async def list_models(self) -> list[dict]:
        """Delegate to wrapped backend."""
        return await self.backend.list_models()
