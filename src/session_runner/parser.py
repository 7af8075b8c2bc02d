"""Parser for the agent CLI's ``stream-json`` output."""

import json
import logging
from typing import Any, Dict, List, Optional, Set, Tuple

from .config import settings
from .types import RawEvent

logger = logging.getLogger(__name__)


def format_duration(ms: float) -> str:
    """Render milliseconds as ``"42s"`` or ``"3m 5s"``."""
    total_seconds = int(ms // 1000)
    minutes, seconds = divmod(total_seconds, 60)
    if minutes == 0:
        return f"{seconds}s"
    return f"{minutes}m {seconds}s"


def truncate_output(output: Any, max_lines: int) -> Tuple[str, bool]:
    """
    Keep at most ``max_lines`` lines of tool output.

    Returns:
        (text, truncated) where a truncated text ends with a marker line
        giving the original line count.
    """
    if not isinstance(output, str):
        return str(output), False
    lines = output.split("\n")
    if len(lines) <= max_lines:
        return output, False
    kept = "\n".join(lines[:max_lines])
    return f"{kept}\n[... truncated, {len(lines)} total lines]", True


def scrub_text(value: Any) -> Any:
    """
    Replace lone surrogates with U+FFFD, recursing into dicts and lists.

    JSON escapes like ``"\\ud800"`` decode to strings that cannot be encoded
    as UTF-8, so every event payload passes through here before it is logged.
    """
    if isinstance(value, str):
        return value.encode("utf-8", "surrogatepass").decode("utf-8", "replace")
    if isinstance(value, dict):
        return {scrub_text(k): scrub_text(v) for k, v in value.items()}
    if isinstance(value, list):
        return [scrub_text(v) for v in value]
    return value


class ParsedLine:
    """Outcome of parsing one output line."""

    __slots__ = ("events", "session_id", "result")

    def __init__(self) -> None:
        self.events: List[RawEvent] = []
        self.session_id: Optional[str] = None
        self.result: Optional[Dict[str, Any]] = None


class CliEventParser:
    """
    Turns CLI output lines into domain events.

    Holds the per-turn state needed to avoid duplicating text that was already
    streamed as deltas, and to attribute tool results to the last tool used.
    Call ``reset()`` at every turn boundary.
    """

    def __init__(self, max_tool_result_lines: Optional[int] = None):
        self.max_tool_result_lines = max_tool_result_lines or settings.MAX_TOOL_RESULT_LINES
        self.last_tool_name = ""
        self._streamed_block_ids: Set[int] = set()
        self._current_block_index = -1

    def reset(self) -> None:
        self.last_tool_name = ""
        self._streamed_block_ids.clear()
        self._current_block_index = -1

    def parse_line(self, line: str) -> ParsedLine:
        parsed = ParsedLine()
        try:
            data = json.loads(line)
        except json.JSONDecodeError:
            logger.debug(f"Skipping non-JSON CLI output: {line[:200]}")
            return parsed
        if not isinstance(data, dict):
            return parsed

        msg_type = data.get("type")

        if msg_type == "system":
            if isinstance(data.get("session_id"), str):
                parsed.session_id = data["session_id"]
            parsed.events.append(("system", {"message": "Agent initialized"}))

        elif msg_type == "content_block_start":
            block = data.get("content_block") or {}
            index = data.get("index")
            if isinstance(block, dict) and block.get("type") == "text" and isinstance(index, int):
                self._current_block_index = index
                self._streamed_block_ids.add(index)

        elif msg_type == "content_block_delta":
            delta = data.get("delta") or {}
            if isinstance(delta, dict) and delta.get("type") == "text_delta":
                text = delta.get("text")
                if isinstance(text, str):
                    parsed.events.append(("assistant_text", {"text": text, "delta": True}))

        elif msg_type == "content_block_stop":
            self._current_block_index = -1

        elif msg_type == "assistant":
            self._parse_assistant(data, parsed)

        elif msg_type == "tool_result":
            raw = data.get("content")
            content = raw if isinstance(raw, str) else json.dumps(raw if raw is not None else "")
            text, truncated = truncate_output(content, self.max_tool_result_lines)
            parsed.events.append((
                "tool_result",
                {"tool": self.last_tool_name, "output": text, "truncated": truncated},
            ))

        elif msg_type == "result":
            if isinstance(data.get("session_id"), str):
                parsed.session_id = data["session_id"]
            parsed.result = data

        return parsed

    def _parse_assistant(self, data: Dict[str, Any], parsed: ParsedLine) -> None:
        message = data.get("message") or {}
        content = message.get("content") if isinstance(message, dict) else None
        if not isinstance(content, list):
            return

        for index, block in enumerate(content):
            if not isinstance(block, dict):
                continue
            block_type = block.get("type")
            if block_type == "text" and isinstance(block.get("text"), str):
                if index not in self._streamed_block_ids:
                    parsed.events.append(("assistant_text", {"text": block["text"]}))
            elif block_type == "tool_use":
                self.last_tool_name = block.get("name") or "unknown"
                tool_input = block.get("input")
                parsed.events.append((
                    "tool_use",
                    {
                        "tool": self.last_tool_name,
                        "input": tool_input if isinstance(tool_input, dict) else {},
                    },
                ))
        self._streamed_block_ids.clear()


def summarize_result(turn_number: int, result: Dict[str, Any]) -> str:
    """Human-readable turn summary, e.g. ``"Turn 2 completed (1m 5s, cost: $0.12)"``."""
    duration_ms = result.get("duration_ms")
    cost_usd = result.get("cost_usd")
    details = []
    if duration_ms:
        details.append(format_duration(duration_ms))
    if isinstance(cost_usd, (int, float)):
        details.append(f"cost: ${cost_usd:.2f}")
    summary = f"Turn {turn_number} completed"
    if details:
        summary += f" ({', '.join(details)})"
    return summary
