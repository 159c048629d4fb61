"""
Tests for the SSE stream decoder.
Run with: pytest tests/test_sse.py
"""

import asyncio
import json

import pytest

from orchestrate.cancellation import CancellationToken
from orchestrate.errors import StreamAborted
from orchestrate.sse import SSEDecoder, iter_payloads


def _line(payload) -> str:
    return f"data: {json.dumps(payload)}\n"


async def _chunks(*parts):
    for part in parts:
        yield part.encode() if isinstance(part, str) else part


async def _collect(agen):
    return [item async for item in agen]


# ---------------------------------------------------------------------------
# SSEDecoder
# ---------------------------------------------------------------------------

class TestSSEDecoder:
    def test_single_payload(self):
        d = SSEDecoder()
        assert d.feed(_line({"a": 1})) == [{"a": 1}]

    def test_payload_split_across_chunks(self):
        d = SSEDecoder()
        raw = _line({"content": "hello"})
        assert d.feed(raw[:10]) == []
        assert d.feed(raw[10:]) == [{"content": "hello"}]

    def test_multibyte_character_split_across_chunks(self):
        d = SSEDecoder()
        raw = ('data: {"c": "é"}\n').encode()
        cut = raw.index(b"\xc3") + 1
        assert d.feed(raw[:cut]) == []
        assert d.feed(raw[cut:]) == [{"c": "é"}]

    def test_non_data_lines_ignored(self):
        d = SSEDecoder()
        out = d.feed(": OPENROUTER PROCESSING\n\nevent: message\n" + _line({"x": 1}))
        assert out == [{"x": 1}]

    def test_crlf_line_endings(self):
        d = SSEDecoder()
        assert d.feed('data: {"x": 2}\r\n') == [{"x": 2}]

    def test_no_space_after_prefix(self):
        d = SSEDecoder()
        assert d.feed('data:{"x": 3}\n') == [{"x": 3}]

    def test_malformed_line_dropped(self):
        d = SSEDecoder()
        out = d.feed(_line({"n": 1}) + "data: {not json\n" + _line({"n": 2}))
        assert out == [{"n": 1}, {"n": 2}]

    def test_non_object_json_dropped(self):
        d = SSEDecoder()
        assert d.feed("data: [1, 2]\ndata: 42\n") == []

    def test_sentinel_stops_decoding(self):
        d = SSEDecoder()
        out = d.feed(_line({"n": 1}) + "data: [DONE]\n" + _line({"n": 2}))
        assert out == [{"n": 1}]
        assert d.done
        assert d.feed(_line({"n": 3})) == []

    def test_unterminated_trailing_line_not_emitted(self):
        d = SSEDecoder()
        assert d.feed('data: {"n": 1}') == []


# ---------------------------------------------------------------------------
# iter_payloads
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_iter_payloads_ends_at_sentinel():
    """Nothing after [DONE] is yielded even when more bytes follow."""
    out = await _collect(iter_payloads(_chunks(
        _line({"n": 1}),
        _line({"n": 2}) + "data: [DONE]\n",
        _line({"n": 3}),
    )))
    assert out == [{"n": 1}, {"n": 2}]


@pytest.mark.asyncio
async def test_iter_payloads_ends_on_eof_without_sentinel():
    out = await _collect(iter_payloads(_chunks(_line({"n": 1}), 'data: {"n": 2}')))
    assert out == [{"n": 1}]


@pytest.mark.asyncio
async def test_iter_payloads_malformed_between_valid():
    """Dropping malformed lines must not drop their valid neighbours."""
    out = await _collect(iter_payloads(_chunks(
        _line({"n": 1}), "data: oops\n", _line({"n": 2}), "data: [DONE]\n",
    )))
    assert out == [{"n": 1}, {"n": 2}]


@pytest.mark.asyncio
async def test_iter_payloads_cancelled_before_start():
    token = CancellationToken()
    token.cancel()
    with pytest.raises(StreamAborted):
        await _collect(iter_payloads(_chunks(_line({"n": 1})), token))


@pytest.mark.asyncio
async def test_iter_payloads_cancel_interrupts_pending_read():
    """A cancel while waiting on the network tears the read down."""
    token = CancellationToken()
    gate = asyncio.Event()
    torn_down = []

    async def slow_chunks():
        yield _line({"n": 1}).encode()
        try:
            await gate.wait()
        except asyncio.CancelledError:
            torn_down.append(True)
            raise
        yield _line({"n": 2}).encode()

    received = []

    async def consume():
        async for payload in iter_payloads(slow_chunks(), token):
            received.append(payload)

    task = asyncio.create_task(consume())
    await asyncio.sleep(0.01)
    token.cancel()
    with pytest.raises(StreamAborted):
        await task
    assert received == [{"n": 1}]
    assert torn_down == [True]


@pytest.mark.asyncio
async def test_iter_payloads_cancel_between_payloads_in_one_chunk():
    """Payloads buffered in the same chunk are not yielded after a cancel."""
    token = CancellationToken()
    received = []
    with pytest.raises(StreamAborted):
        async for payload in iter_payloads(
            _chunks(_line({"n": 1}) + _line({"n": 2}) + _line({"n": 3})), token,
        ):
            received.append(payload)
            token.cancel()
    assert received == [{"n": 1}]
