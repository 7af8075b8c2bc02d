"""HTTP request and response models."""

from typing import Optional

from pydantic import BaseModel, Field

from .session import RunnerState


class StartSessionRequest(BaseModel):
    """Start a new agent session for a project."""

    prompt: str = Field(..., min_length=1, description="Initial prompt for the first turn")
    working_directory: Optional[str] = Field(
        None, description="Directory the agent runs in (defaults to the service cwd)"
    )


class SendMessageRequest(BaseModel):
    """Follow-up message delivered as the next turn."""

    message: str = Field("", description="User's follow-up message")


class SendMessageResponse(BaseModel):
    """Acknowledgement that a follow-up turn has started."""

    turn_number: int
    state: RunnerState = "processing"


class ErrorMessage(BaseModel):
    """Error body returned by the HTTP layer."""

    code: str = Field(..., description="Error code")
    message: str = Field(..., description="Human-readable error message")
    detail: Optional[str] = Field(None, description="Additional error details")
