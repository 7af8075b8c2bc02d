"""Data models for the session runner."""

from .messages import (
    ErrorMessage,
    SendMessageRequest,
    SendMessageResponse,
    StartSessionRequest,
)
from .session import (
    TERMINAL_STATUSES,
    EventType,
    RunnerState,
    SessionEvent,
    SessionMetadata,
    SessionStatus,
)

__all__ = [
    "ErrorMessage",
    "SendMessageRequest",
    "SendMessageResponse",
    "StartSessionRequest",
    "TERMINAL_STATUSES",
    "EventType",
    "RunnerState",
    "SessionEvent",
    "SessionMetadata",
    "SessionStatus",
]
