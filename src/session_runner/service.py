"""Session orchestration shared by the HTTP routes and the CLI."""

import asyncio
import logging
from pathlib import Path
from typing import Any, AsyncIterator, Dict, List, Optional

from .config import settings
from .exceptions import (
    AdmissionError,
    InvalidRequestError,
    SessionNotFoundError,
    SessionNotRunningError,
)
from .models.session import SessionMetadata
from .project_store import ProjectStore
from .recovery import recover_orphaned_sessions
from .runners import BaseSessionRunner, RunnerOptions, create_runner
from .session_manager import SessionManager
from .session_store import SessionStore
from .types import StreamItem, WorkLog

logger = logging.getLogger(__name__)


class SessionService:
    """
    Ties the file store, the project back-references and the session registry
    together.

    Admission is all-or-nothing: a rejected or failed start removes the
    session's files and back-reference before the error propagates.
    """

    def __init__(
        self,
        store: SessionStore,
        project_store: ProjectStore,
        manager: Optional[SessionManager] = None,
        mode: Optional[str] = None,
        runner_options: Optional[Dict[str, Any]] = None,
        settle_seconds: Optional[float] = None,
        max_message_length: Optional[int] = None,
    ):
        self.store = store
        self.project_store = project_store
        self.manager = manager or SessionManager()
        self.mode = mode or settings.RUNNER_MODE
        # Per-runner overrides (command, timeouts, limits)
        self.runner_options = runner_options or {}
        self.settle_seconds = (
            settings.STOP_SETTLE_SECONDS if settle_seconds is None else settle_seconds
        )
        self.max_message_length = max_message_length or settings.MAX_MESSAGE_LENGTH
        self._tasks: "set[asyncio.Task[Any]]" = set()
        # Released from the registry but still flushing their final writes
        self._ending: Dict[str, BaseSessionRunner] = {}

    async def start_session(
        self,
        project_id: str,
        prompt: str,
        working_directory: Optional[str] = None,
    ) -> SessionMetadata:
        """
        Create, admit and start a new session.

        Raises:
            AlreadyRunningError: the project already has a running session
            CapacityExceededError: the global ceiling is reached
        """
        # Fast rejection before touching the disk
        self.manager.check_admission(project_id)

        session_id, metadata_path, event_log_path = await self.store.create_session_files(project_id)
        options = RunnerOptions(
            session_id=session_id,
            project_id=project_id,
            prompt=prompt,
            metadata_path=metadata_path,
            event_log_path=event_log_path,
            working_directory=Path(working_directory) if working_directory else Path.cwd(),
            **self.runner_options,
        )
        runner = create_runner(options, self.mode)

        try:
            self.manager.try_start_session(session_id, project_id, runner)
        except AdmissionError:
            await self.store.delete_session_files(project_id, session_id)
            raise

        runner.add_end_listener(lambda _metadata: self._on_runner_end(runner))
        await self._set_project_session(project_id, session_id)

        try:
            await runner.start()
        except Exception:
            logger.error(f"Failed to start session {session_id}", exc_info=True)
            runner.stop()
            await runner.wait_ended()
            await self._release_project(project_id, session_id)
            await self.store.delete_session_files(project_id, session_id)
            raise

        return runner.metadata

    async def send_message(self, project_id: str, session_id: str, message: str) -> Dict[str, Any]:
        """
        Start the next turn of an idle session.

        Raises:
            InvalidRequestError: empty, oversized or malformed message
            SessionNotFoundError: not a running session of this project
            NotIdleError: a turn is already in flight
        """
        if not message.strip():
            raise InvalidRequestError("Message must not be empty")
        if len(message) > self.max_message_length:
            raise InvalidRequestError(
                f"Message too long (max {self.max_message_length} characters)",
                detail=str(len(message)),
            )
        try:
            message.encode("utf-8")
        except UnicodeEncodeError as e:
            raise InvalidRequestError(
                "Message contains malformed unicode", detail=f"position {e.start}"
            ) from None

        self._require_live_runner(project_id, session_id)
        runner = await self.manager.send_message(session_id, message.strip())
        return {"turn_number": runner.turn_count, "state": runner.state}

    async def stop_session(self, project_id: str, session_id: str) -> SessionMetadata:
        """
        Stop a running session and return its metadata once it settles.

        Raises:
            SessionNotFoundError: no such session
            SessionNotRunningError: already terminal, or not tracked by this server
        """
        runner = await self._require_running(project_id, session_id)
        self.manager.stop_session(session_id)
        return await self._settle(runner)

    async def finish_session(self, project_id: str, session_id: str) -> SessionMetadata:
        """
        Gracefully complete an idle session.

        Raises:
            SessionNotFoundError: no such session
            SessionNotRunningError: already terminal, or not tracked by this server
            NotIdleError: a turn is in flight
        """
        runner = await self._require_running(project_id, session_id)
        self.manager.finish_session(session_id)
        return await self._settle(runner)

    async def stream_events(
        self, project_id: str, session_id: str, offset: int = 0
    ) -> AsyncIterator[StreamItem]:
        """
        Events from ``offset`` onward followed by a ``session_done`` item.

        Live sessions are followed until they end; anything else is replayed
        from disk.
        """
        # Looked up first: the runner still serves its own replay after it ends
        runner = self._tracked_runner(project_id, session_id)
        metadata = await self.store.read_metadata(project_id, session_id)
        if runner is not None:
            async for item in runner.subscribe(offset):
                yield item
            return

        for event in await self.store.read_events(project_id, session_id, offset):
            yield ("session_event", event)

        # Not tracked here but still claiming running: its process is gone
        status = "failed" if metadata.status == "running" else metadata.status
        yield ("session_done", {"status": status, "duration_ms": metadata.duration_ms})

    @staticmethod
    def resolve_offset(offset: Optional[int] = None, last_event_id: Optional[str] = None) -> int:
        """Explicit offset wins, then the event after ``Last-Event-ID``, else 0."""
        if offset is not None:
            return max(0, offset)
        if last_event_id:
            try:
                return max(0, int(last_event_id) + 1)
            except ValueError:
                logger.warning(f"Ignoring malformed Last-Event-ID: {last_event_id!r}")
        return 0

    async def list_sessions(self, project_id: str) -> List[SessionMetadata]:
        sessions = await self.store.list_sessions(project_id)
        return [self._freshest(metadata) for metadata in sessions]

    async def get_session(self, project_id: str, session_id: str) -> SessionMetadata:
        return self._freshest(await self.store.read_metadata(project_id, session_id))

    async def get_work_log(self, project_id: str, offset: int = 0) -> WorkLog:
        return await self.store.get_work_log(project_id, offset)

    async def get_active_session(self, project_id: str) -> Optional[str]:
        return await self.project_store.get_active_session(project_id)

    async def recover(self) -> int:
        """Reconcile sessions left ``running`` by a previous server process."""
        return await recover_orphaned_sessions(self.store, self.project_store)

    async def shutdown(self) -> None:
        """Stop every running session and finish pending bookkeeping."""
        await self.manager.stop_all()
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _tracked_runner(self, project_id: str, session_id: str) -> Optional[BaseSessionRunner]:
        runner = self.manager.get_runner(session_id) or self._ending.get(session_id)
        if runner is None or runner.project_id != project_id:
            return None
        return runner

    def _freshest(self, metadata: SessionMetadata) -> SessionMetadata:
        # A runner's in-memory record may be ahead of its queued writes
        runner = self._tracked_runner(metadata.project_id, metadata.id)
        return runner.metadata if runner is not None else metadata

    def _require_live_runner(self, project_id: str, session_id: str) -> BaseSessionRunner:
        runner = self.manager.get_runner(session_id)
        if runner is None or runner.project_id != project_id:
            raise SessionNotFoundError(session_id)
        return runner

    async def _require_running(self, project_id: str, session_id: str) -> BaseSessionRunner:
        metadata = await self.get_session(project_id, session_id)
        runner = self.manager.get_runner(session_id)
        if metadata.is_terminal:
            raise SessionNotRunningError(session_id, detail=metadata.status)
        if runner is None or runner.project_id != project_id:
            raise SessionNotRunningError(session_id, detail="not tracked by this server")
        return runner

    async def _settle(self, runner: BaseSessionRunner) -> SessionMetadata:
        """Give a terminating session a short window to end, then report it."""
        try:
            await asyncio.wait_for(asyncio.shield(runner.wait_ended()), timeout=self.settle_seconds)
        except asyncio.TimeoutError:
            logger.debug(f"Session {runner.session_id} still ending after {self.settle_seconds}s")
        return runner.metadata

    def _on_runner_end(self, runner: BaseSessionRunner) -> None:
        self._ending[runner.session_id] = runner
        self._spawn_task(self._after_end(runner))

    async def _after_end(self, runner: BaseSessionRunner) -> None:
        try:
            await runner.wait_ended()
        finally:
            self._ending.pop(runner.session_id, None)
        await self._release_project(runner.project_id, runner.session_id)

    async def _set_project_session(self, project_id: str, session_id: str) -> None:
        try:
            await self.project_store.set_active_session(project_id, session_id)
        except Exception as e:
            logger.error(f"Failed to record active session for project {project_id}: {e}")

    async def _release_project(self, project_id: str, session_id: str) -> None:
        try:
            await self.project_store.clear_active_session(project_id, session_id)
        except Exception as e:
            logger.error(f"Failed to clear active session for project {project_id}: {e}")

    def _spawn_task(self, coro: Any) -> "asyncio.Task[Any]":
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task
