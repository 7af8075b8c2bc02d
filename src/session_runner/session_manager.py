"""Process-wide registry of running sessions with admission control."""

import asyncio
import logging
from typing import Dict, Optional

from .config import settings
from .exceptions import AlreadyRunningError, CapacityExceededError, SessionNotFoundError
from .models.session import SessionMetadata
from .runners import BaseSessionRunner

logger = logging.getLogger(__name__)


class SessionManager:
    """
    Maps session id -> runner and project id -> session id.

    Invariants:
    - at most one running session per project
    - at most ``max_concurrent`` running sessions overall

    Both maps are mutated in exactly two places: ``try_start_session`` (the
    only way in) and the end listener it installs (the only way out). Every
    method is synchronous up to its first await, so on the single event loop
    admission is atomic with respect to other callers.
    """

    def __init__(self, max_concurrent: Optional[int] = None):
        self.max_concurrent = max_concurrent or settings.MAX_CONCURRENT_SESSIONS
        self._runners: Dict[str, BaseSessionRunner] = {}
        self._project_sessions: Dict[str, str] = {}

        logger.info(f"Initialized SessionManager (max concurrent sessions: {self.max_concurrent})")

    @property
    def running_count(self) -> int:
        return len(self._runners)

    def check_admission(self, project_id: str) -> None:
        """
        Raise if a new session for ``project_id`` would be rejected.

        Raises:
            AlreadyRunningError: the project already owns a running session
            CapacityExceededError: the global ceiling is reached
        """
        if project_id in self._project_sessions:
            raise AlreadyRunningError(project_id)
        if len(self._runners) >= self.max_concurrent:
            raise CapacityExceededError(self.max_concurrent)

    def can_start_session(self, project_id: str) -> bool:
        try:
            self.check_admission(project_id)
        except (AlreadyRunningError, CapacityExceededError):
            return False
        return True

    def try_start_session(self, session_id: str, project_id: str, runner: BaseSessionRunner) -> None:
        """
        Admit and register a session, or raise without side effects.

        On success the runner's completion removes both registry entries.
        """
        self.check_admission(project_id)

        self._runners[session_id] = runner
        self._project_sessions[project_id] = session_id

        def _release(_metadata: SessionMetadata) -> None:
            if self._runners.get(session_id) is runner:
                del self._runners[session_id]
            if self._project_sessions.get(project_id) == session_id:
                del self._project_sessions[project_id]
            logger.info(
                f"Released session {session_id} for project {project_id} "
                f"({len(self._runners)} running)"
            )

        runner.add_end_listener(_release)
        logger.info(
            f"Admitted session {session_id} for project {project_id} "
            f"({len(self._runners)}/{self.max_concurrent} running)"
        )

    def get_runner(self, session_id: str) -> Optional[BaseSessionRunner]:
        return self._runners.get(session_id)

    def get_runner_by_project(self, project_id: str) -> Optional[BaseSessionRunner]:
        session_id = self._project_sessions.get(project_id)
        return self._runners.get(session_id) if session_id else None

    def require_runner(self, session_id: str) -> BaseSessionRunner:
        runner = self._runners.get(session_id)
        if runner is None:
            raise SessionNotFoundError(session_id)
        return runner

    async def send_message(self, session_id: str, message: str) -> BaseSessionRunner:
        """
        Deliver a follow-up turn to a registered session.

        Raises:
            SessionNotFoundError: not registered
            NotIdleError: a turn is already in flight
        """
        runner = self.require_runner(session_id)
        await runner.send_message(message)
        return runner

    def stop_session(self, session_id: str) -> bool:
        """Forward a stop request. Returns False if the session isn't registered."""
        runner = self._runners.get(session_id)
        if runner is None:
            return False
        runner.stop()
        return True

    def finish_session(self, session_id: str) -> bool:
        """Gracefully complete an idle session. Returns False if not registered."""
        runner = self._runners.get(session_id)
        if runner is None:
            return False
        runner.finish()
        return True

    async def stop_all(self) -> None:
        """Stop every running session and wait for all of them to end."""
        runners = list(self._runners.values())
        if not runners:
            return
        logger.info(f"Stopping {len(runners)} running session(s)...")
        for runner in runners:
            runner.stop()
        results = await asyncio.gather(
            *(runner.wait_ended() for runner in runners), return_exceptions=True
        )
        for runner, result in zip(runners, results):
            if isinstance(result, Exception):
                logger.error(f"Error while stopping session {runner.session_id}: {result}")
        logger.info("All sessions stopped")
