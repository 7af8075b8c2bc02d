"""Unit tests for the CLI stream-json parser."""

import json

import pytest

from session_runner.parser import (
    CliEventParser,
    format_duration,
    summarize_result,
    truncate_output,
)


@pytest.fixture
def parser():
    return CliEventParser(max_tool_result_lines=200)


def line(payload):
    return json.dumps(payload)


def test_format_duration():
    assert format_duration(0) == "0s"
    assert format_duration(42_500) == "42s"
    assert format_duration(65_000) == "1m 5s"
    assert format_duration(30 * 60 * 1000) == "30m 0s"


def test_truncate_output_keeps_short_output():
    text, truncated = truncate_output("a\nb\nc", 200)
    assert text == "a\nb\nc"
    assert truncated is False


def test_truncate_output_adds_marker():
    output = "\n".join(str(i) for i in range(300))
    text, truncated = truncate_output(output, 200)

    assert truncated is True
    lines = text.split("\n")
    assert len(lines) == 201
    assert lines[199] == "199"
    assert lines[-1] == "[... truncated, 300 total lines]"


def test_non_json_line_is_ignored(parser):
    parsed = parser.parse_line("not json at all")
    assert parsed.events == []
    assert parsed.result is None
    assert parsed.session_id is None


def test_system_line_captures_session_id(parser):
    parsed = parser.parse_line(line({"type": "system", "subtype": "init", "session_id": "abc"}))

    assert parsed.session_id == "abc"
    assert parsed.events == [("system", {"message": "Agent initialized"})]


def test_streamed_text_is_not_duplicated(parser):
    """Text already sent as deltas must not be emitted again from the assistant message."""
    parser.parse_line(line({"type": "content_block_start", "index": 0, "content_block": {"type": "text"}}))
    delta = parser.parse_line(line({
        "type": "content_block_delta",
        "index": 0,
        "delta": {"type": "text_delta", "text": "Hel"},
    }))
    parser.parse_line(line({"type": "content_block_stop", "index": 0}))
    full = parser.parse_line(line({
        "type": "assistant",
        "message": {"content": [
            {"type": "text", "text": "Hello"},
            {"type": "text", "text": "Second block"},
        ]},
    }))

    assert delta.events == [("assistant_text", {"text": "Hel", "delta": True})]
    # Block 0 was streamed, block 1 was not
    assert full.events == [("assistant_text", {"text": "Second block"})]


def test_tool_result_attributed_to_last_tool(parser):
    use = parser.parse_line(line({
        "type": "assistant",
        "message": {"content": [{"type": "tool_use", "name": "Read", "input": {"path": "a.py"}}]},
    }))
    result = parser.parse_line(line({"type": "tool_result", "content": "file body"}))

    assert use.events == [("tool_use", {"tool": "Read", "input": {"path": "a.py"}})]
    assert result.events == [
        ("tool_result", {"tool": "Read", "output": "file body", "truncated": False})
    ]


def test_tool_result_truncated(parser):
    content = "\n".join(str(i) for i in range(500))
    parsed = parser.parse_line(line({"type": "tool_result", "content": content}))

    (event_type, data), = parsed.events
    assert event_type == "tool_result"
    assert data["truncated"] is True
    assert data["output"].endswith("[... truncated, 500 total lines]")


def test_non_string_tool_result_is_serialized(parser):
    parsed = parser.parse_line(line({"type": "tool_result", "content": [{"type": "text", "text": "x"}]}))
    data = parsed.events[0][1]
    assert json.loads(data["output"]) == [{"type": "text", "text": "x"}]


def test_result_line(parser):
    parsed = parser.parse_line(line({
        "type": "result",
        "session_id": "abc",
        "duration_ms": 65000,
        "cost_usd": 0.12,
    }))

    assert parsed.events == []
    assert parsed.session_id == "abc"
    assert parsed.result["duration_ms"] == 65000


def test_unknown_type_is_ignored(parser):
    assert parser.parse_line(line({"type": "user", "message": {}})).events == []


def test_reset_clears_turn_state(parser):
    parser.parse_line(line({
        "type": "assistant",
        "message": {"content": [{"type": "tool_use", "name": "Bash", "input": {}}]},
    }))
    parser.parse_line(line({"type": "content_block_start", "index": 0, "content_block": {"type": "text"}}))
    parser.reset()

    result = parser.parse_line(line({"type": "tool_result", "content": "out"}))
    text = parser.parse_line(line({
        "type": "assistant",
        "message": {"content": [{"type": "text", "text": "fresh"}]},
    }))

    assert result.events[0][1]["tool"] == ""
    assert text.events == [("assistant_text", {"text": "fresh"})]


def test_summarize_result():
    assert summarize_result(2, {"duration_ms": 65000, "cost_usd": 0.12}) == (
        "Turn 2 completed (1m 5s, cost: $0.12)"
    )
    assert summarize_result(1, {}) == "Turn 1 completed"
