"""Session state models."""

from datetime import datetime, timezone
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, Field

SessionStatus = Literal["running", "completed", "failed", "stopped", "timed-out"]

RunnerState = Literal["processing", "idle", "ended"]

EventType = Literal[
    "assistant_text",
    "tool_use",
    "tool_result",
    "system",
    "error",
    "turn_start",
    "turn_end",
    "waiting_for_input",
    "user_message",
]

TERMINAL_STATUSES = frozenset({"completed", "failed", "stopped", "timed-out"})


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SessionEvent(BaseModel):
    """One permanently logged unit of observable progress."""

    id: int = Field(..., ge=0, description="Gapless 0-based sequence number")
    timestamp: datetime = Field(default_factory=utc_now)
    type: EventType
    data: Dict[str, Any] = Field(default_factory=dict)

    def to_line(self) -> str:
        """Serialize as one line of the append-only event log."""
        return self.model_dump_json() + "\n"


class SessionMetadata(BaseModel):
    """Durable status record of a session, rewritten on every transition."""

    id: str = Field(..., description="Unique session identifier")
    project_id: str = Field(..., description="Owning project")
    status: SessionStatus = "running"
    started_at: datetime = Field(default_factory=utc_now)
    ended_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    event_count: int = 0
    exit_code: Optional[int] = None
    error: Optional[str] = None
    pid: Optional[int] = None
    cli_session_id: Optional[str] = Field(
        None, description="Continuation token reported by the agent CLI"
    )
    turn_count: int = 1
    state: RunnerState = "processing"

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def elapsed_ms(self, until: Optional[datetime] = None) -> int:
        """Milliseconds between start and ``until`` (default: now)."""
        until = until or utc_now()
        return int((until - self.started_at).total_seconds() * 1000)
