"""Custom exception classes for the session runner."""


class SessionRunnerError(Exception):
    """Base exception for session runner errors."""

    def __init__(self, message: str, code: str = "internal", detail: str = ""):
        self.message = message
        self.code = code
        self.detail = detail
        super().__init__(message)


class AdmissionError(SessionRunnerError):
    """A new session was rejected before any process was spawned."""

    pass


class AlreadyRunningError(AdmissionError):
    """The project already owns a running session."""

    def __init__(self, project_id: str):
        super().__init__(
            "A session is already running for this project",
            code="already_running",
            detail=project_id,
        )


class CapacityExceededError(AdmissionError):
    """The global concurrent session ceiling was reached."""

    def __init__(self, limit: int):
        super().__init__(
            f"Maximum concurrent sessions ({limit}) reached",
            code="capacity_exceeded",
        )


class SessionError(SessionRunnerError):
    """Errors related to an individual session."""

    pass


class SessionNotFoundError(SessionError):
    """Session not found (or not registered as running)."""

    def __init__(self, session_id: str):
        super().__init__(f"Session not found: {session_id}", code="session_not_found")


class NotIdleError(SessionError):
    """A turn is already in flight, or the session has ended."""

    def __init__(self, session_id: str, state: str):
        super().__init__(
            f"Session {session_id} is not idle (state: {state})",
            code="not_idle",
        )


class SessionNotRunningError(SessionError):
    """The session is terminal or no longer tracked."""

    def __init__(self, session_id: str, detail: str = ""):
        super().__init__(
            f"Session {session_id} is not running",
            code="not_running",
            detail=detail,
        )


class RunnerError(SessionRunnerError):
    """The agent subprocess cannot be driven as configured."""

    pass


class InvalidRequestError(SessionRunnerError):
    """A request payload was rejected before reaching a session."""

    def __init__(self, message: str, detail: str = ""):
        super().__init__(message, code="invalid_request", detail=detail)
