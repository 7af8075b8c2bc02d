"""Unit tests for SSE framing and keepalives."""

import asyncio
import json

import pytest

from session_runner.sse import KEEPALIVE, format_sse_comment, format_sse_event, with_keepalive


def test_format_event_with_id():
    frame = format_sse_event("session_event", {"a": 1}, event_id=7)
    assert frame == 'id: 7\nevent: session_event\ndata: {"a": 1}\n\n'


def test_format_event_without_id():
    frame = format_sse_event("session_done", {"status": "completed", "duration_ms": 5})
    lines = frame.rstrip("\n").split("\n")
    assert lines[0] == "event: session_done"
    assert json.loads(lines[1][len("data: "):]) == {"status": "completed", "duration_ms": 5}


def test_multiline_string_payload_split():
    frame = format_sse_event("note", "one\ntwo")
    assert frame == "event: note\ndata: one\ndata: two\n\n"


def test_format_comment():
    assert format_sse_comment() == ": keepalive\n\n"


async def slow_source(delays):
    for i, delay in enumerate(delays):
        await asyncio.sleep(delay)
        yield i


@pytest.mark.asyncio
async def test_keepalive_emitted_while_quiet():
    items = [item async for item in with_keepalive(slow_source([0, 0.35, 0]), interval=0.1)]

    values = [item for item in items if item is not KEEPALIVE]
    assert values == [0, 1, 2]
    assert items.count(KEEPALIVE) >= 2
    assert items.index(1) > items.index(KEEPALIVE)


@pytest.mark.asyncio
async def test_no_keepalive_for_busy_source():
    items = [item async for item in with_keepalive(slow_source([0] * 5), interval=10)]
    assert items == [0, 1, 2, 3, 4]


@pytest.mark.asyncio
async def test_closing_early_closes_source():
    closed = asyncio.Event()

    async def source():
        try:
            while True:
                await asyncio.sleep(1)
                yield "tick"
        finally:
            closed.set()

    stream = with_keepalive(source(), interval=0.05)
    assert await stream.__anext__() is KEEPALIVE
    await stream.aclose()

    assert closed.is_set()
