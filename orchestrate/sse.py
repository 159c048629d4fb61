"""
Server-sent events decoding for streaming completions.

The provider answers with a text/event-stream body:

    : OPENROUTER PROCESSING
    data: {"model": "...", "choices": [{"delta": {"content": "Hel"}}]}
    data: {"model": "...", "choices": [{"delta": {"content": "lo"}}]}
    data: [DONE]

SSEDecoder turns raw bytes into parsed JSON payloads. Lines without the
`data:` marker (comments, keep-alives, event names) are ignored, payloads
that fail to parse are dropped, and `[DONE]` ends the stream on the spot.
"""

from __future__ import annotations

import codecs
import json
import logging
from typing import AsyncIterator

from orchestrate.cancellation import CancellationToken
from orchestrate.errors import DecodeError

logger = logging.getLogger(__name__)

DATA_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"


class SSEDecoder:
    """
    Incremental decoder. Feed it chunks as they arrive; it returns the
    payloads completed by each chunk.

    Once the sentinel has been seen `done` is True and everything after it,
    including the rest of the buffer, is discarded.
    """

    def __init__(self):
        self._buffer = ""
        self._utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self.done = False

    def feed(self, data: bytes | str) -> list[dict]:
        if self.done:
            return []
        self._buffer += data if isinstance(data, str) else self._utf8.decode(data)

        payloads: list[dict] = []
        while True:
            end = self._buffer.find("\n")
            if end == -1:
                break
            line = self._buffer[:end].rstrip("\r")
            self._buffer = self._buffer[end + 1:]

            payload = self._extract_payload(line)
            if payload is None:
                continue
            if payload.strip() == DONE_SENTINEL:
                self.done = True
                self._buffer = ""
                break
            try:
                payloads.append(self._parse(payload))
            except DecodeError as e:
                logger.debug("Dropped stream payload: %s", e)
        return payloads

    @staticmethod
    def _extract_payload(line: str) -> str | None:
        if not line.startswith(DATA_PREFIX):
            return None
        payload = line[len(DATA_PREFIX):]
        if payload.startswith(" "):
            payload = payload[1:]
        return payload

    @staticmethod
    def _parse(payload: str) -> dict:
        try:
            data = json.loads(payload)
        except json.JSONDecodeError as e:
            raise DecodeError(f"not JSON: {payload[:80]!r}") from e
        if not isinstance(data, dict):
            raise DecodeError(f"expected an object, got {type(data).__name__}")
        return data


async def _next_chunk(chunks: AsyncIterator[bytes]) -> bytes | None:
    try:
        return await chunks.__anext__()
    except StopAsyncIteration:
        return None


async def iter_payloads(
    chunks: AsyncIterator[bytes],
    token: CancellationToken | None = None,
) -> AsyncIterator[dict]:
    """
    Decode a byte stream into payload dicts.

    Each call starts a fresh decoder. The sequence ends at the sentinel or
    when the byte stream is exhausted; both count as a normal finish. The
    token is checked before every buffer scan and every chunk read, so a
    cancel tears down the read and raises StreamAborted.
    """
    decoder = SSEDecoder()
    iterator = chunks.__aiter__()
    while not decoder.done:
        if token is not None:
            token.raise_if_cancelled()
            chunk = await token.guard(_next_chunk(iterator))
        else:
            chunk = await _next_chunk(iterator)
        if chunk is None:
            break

        if token is not None:
            token.raise_if_cancelled()
        for payload in decoder.feed(chunk):
            yield payload
            if token is not None:
                token.raise_if_cancelled()
