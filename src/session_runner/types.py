"""Common type definitions for the session runner.

This module provides TypedDict definitions for stream and work-log payloads
and the callback signatures used by runner listeners.
"""

from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Tuple, TypedDict, Union

if TYPE_CHECKING:
    from .models.session import SessionEvent, SessionMetadata


# (type, data) pair produced by the CLI parser before sequencing
RawEvent = Tuple[str, Dict[str, Any]]


class DoneSignal(TypedDict):
    """Terminal stream signal carrying the final session outcome."""
    status: str
    duration_ms: Optional[int]


class WorkLogSessionSummary(TypedDict):
    """Per-session summary returned alongside a project's work log."""
    id: str
    started_at: str
    ended_at: Optional[str]
    duration_ms: Optional[int]
    status: str
    event_count: int


class WorkLog(TypedDict):
    """All events across a project's sessions."""
    events: List[Dict[str, Any]]
    sessions: List[WorkLogSessionSummary]
    total_events: int


# (SSE event name, payload) items produced by subscriptions
StreamItem = Tuple[str, Union["SessionEvent", DoneSignal]]

EventListener = Callable[["SessionEvent"], None]
EndListener = Callable[["SessionMetadata"], None]
