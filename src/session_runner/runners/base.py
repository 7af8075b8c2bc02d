"""Abstract base class for session runners.

A runner owns one session's agent subprocess (or sequence of subprocesses)
for the life of the session and drives it through the turn state machine::

    processing --(turn complete)--> idle --(send_message)--> processing
         \\                          /
          `---------> ended <-------'   (stop, timeouts, failure, finish)

Strategies decide what a process exit or a ``result`` line means for that
machine; everything else (sequencing, logging, fan-out, timers, two-phase
kill, finalization) lives here.
"""

import asyncio
import logging
import os
from abc import ABC, abstractmethod
from pathlib import Path
from collections import deque
from typing import Any, AsyncIterator, Callable, Deque, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field

from ..config import settings
from ..event_log import SessionLog, read_event_log
from ..exceptions import NotIdleError
from ..models.session import (
    RunnerState,
    SessionEvent,
    SessionMetadata,
    SessionStatus,
    utc_now,
)
from ..parser import CliEventParser, format_duration, scrub_text, summarize_result
from ..types import DoneSignal, EndListener, EventListener, StreamItem

logger = logging.getLogger(__name__)

STDERR_EXCERPT_CHARS = 1000
OUTPUT_DRAIN_SECONDS = 5.0

_END = object()


def is_debug() -> bool:
    """Check if debug logging is enabled."""
    return logger.isEnabledFor(logging.DEBUG)


class RunnerOptions(BaseModel):
    """Everything a runner needs to drive one session."""

    session_id: str
    project_id: str
    prompt: str
    metadata_path: Path
    event_log_path: Path
    working_directory: Path = Field(default_factory=Path.cwd)
    command: List[str] = Field(default_factory=lambda: list(settings.CLI_COMMAND))
    env: Dict[str, str] = Field(default_factory=dict)
    turn_timeout: float = Field(default_factory=lambda: settings.TURN_TIMEOUT_SECONDS)
    session_timeout: float = Field(default_factory=lambda: settings.SESSION_TIMEOUT_SECONDS)
    idle_timeout: float = Field(default_factory=lambda: settings.IDLE_TIMEOUT_SECONDS)
    kill_grace: float = Field(default_factory=lambda: settings.KILL_GRACE_SECONDS)
    max_events: int = Field(default_factory=lambda: settings.MAX_EVENTS)
    max_tool_result_lines: int = Field(default_factory=lambda: settings.MAX_TOOL_RESULT_LINES)
    stream_limit: int = Field(default_factory=lambda: settings.STREAM_LIMIT_BYTES)


class BaseSessionRunner(ABC):
    """
    Turn-based supervisor for one agent session.

    Concrete strategies implement:
    - spawn_turn: start the work for the first turn
    - deliver_message: hand a follow-up message to the agent
    - on_process_exit: decide what a subprocess exit means
    and may override handle_result (turn completion on a ``result`` line),
    close_session (graceful completion) and kill_process.
    """

    mode = "base"

    def __init__(self, options: RunnerOptions, log: Optional[SessionLog] = None):
        self.options = options
        self.process: Optional[asyncio.subprocess.Process] = None
        self.cli_session_id: Optional[str] = None

        self._metadata = SessionMetadata(id=options.session_id, project_id=options.project_id)
        self._log = log or SessionLog(options.event_log_path, options.metadata_path)
        self._parser = CliEventParser(options.max_tool_result_lines)

        self._state: RunnerState = "processing"
        self._started = False
        self._turn_count = 0
        self._event_counter = 0
        self._killed = False
        self._closing = False
        self._pending_status: Optional[SessionStatus] = None
        self._stderr_tail: Deque[str] = deque()
        self._stderr_chars = 0

        self._turn_timer: Optional[asyncio.TimerHandle] = None
        self._idle_timer: Optional[asyncio.TimerHandle] = None
        self._session_timer: Optional[asyncio.TimerHandle] = None
        self._kill_timer: Optional[asyncio.TimerHandle] = None

        self._event_listeners: List[EventListener] = []
        self._end_listeners: List[EndListener] = []
        self._subscribers: List["asyncio.Queue[Any]"] = []
        self._tasks: "set[asyncio.Task[Any]]" = set()
        self._ended = asyncio.Event()

    # --- Public API ---

    @property
    def session_id(self) -> str:
        return self.options.session_id

    @property
    def project_id(self) -> str:
        return self.options.project_id

    @property
    def state(self) -> RunnerState:
        return self._state

    @property
    def turn_count(self) -> int:
        return self._turn_count

    @property
    def event_count(self) -> int:
        return self._event_counter

    @property
    def pid(self) -> Optional[int]:
        if self.process is not None and self.process.returncode is None:
            return self.process.pid
        return None

    @property
    def metadata(self) -> SessionMetadata:
        """Snapshot of the current session metadata."""
        return self._metadata.model_copy()

    def add_event_listener(self, listener: EventListener) -> None:
        self._event_listeners.append(listener)

    def remove_event_listener(self, listener: EventListener) -> None:
        if listener in self._event_listeners:
            self._event_listeners.remove(listener)

    def add_end_listener(self, listener: EndListener) -> None:
        """Register a callback run once, synchronously, when the session ends."""
        self._end_listeners.append(listener)

    async def start(self) -> None:
        """Begin the first turn with the session's initial prompt."""
        if self._started:
            return
        self._started = True
        if self._state == "ended":
            return

        self._turn_count = 1
        self._metadata.turn_count = 1
        logger.info(
            f"Starting session {self.session_id} for project {self.project_id} ({self.mode} mode)"
        )

        self.emit_event("system", {"message": "Session started"})
        self.emit_event("turn_start", {"turn_number": 1})

        self._session_timer = self._schedule(self.options.session_timeout, self._on_session_timeout)
        self._write_metadata()

        await self.spawn_turn(scrub_text(self.options.prompt))

    async def send_message(self, message: str) -> None:
        """
        Deliver a follow-up turn.

        Raises:
            NotIdleError: a turn is in flight or the session has ended; nothing
                is emitted and metadata is left untouched.
        """
        if self._state != "idle" or self._killed or self._closing:
            raise NotIdleError(self.session_id, self._state)

        message = scrub_text(message)

        self._cancel_timer("_idle_timer")
        self._set_state("processing")
        self._turn_count += 1
        self._metadata.turn_count = self._turn_count

        self.emit_event(
            "user_message",
            {"message": message[:500], "turn_number": self._turn_count},
        )
        self.emit_event("turn_start", {"turn_number": self._turn_count})
        self._write_metadata()

        await self.deliver_message(message)

    def stop(self) -> None:
        """Request graceful termination. Idempotent."""
        self._terminate("stopped")

    def finish(self) -> None:
        """
        Complete an idle session gracefully.

        Raises:
            NotIdleError: a turn is in flight or the session is terminating.
        """
        if self._state != "idle" or self._killed or self._closing:
            raise NotIdleError(self.session_id, self._state)
        self._closing = True
        self._cancel_timer("_idle_timer")
        logger.info(f"Finishing session {self.session_id}")
        self.close_session()

    async def wait_ended(self) -> None:
        """Wait until the session has ended and its log is fully written."""
        await self._ended.wait()

    def done_signal(self) -> DoneSignal:
        return {"status": self._metadata.status, "duration_ms": self._metadata.duration_ms}

    async def subscribe(self, offset: int = 0) -> AsyncIterator[StreamItem]:
        """
        Replay logged events from ``offset``, then follow live events.

        Live events are attached before the replay boundary is taken, so the
        replay (ids below the boundary) and the live phase (ids at or above it)
        never overlap and never leave a gap. Ends with a ``session_done`` item.
        """
        queue: "asyncio.Queue[Any]" = asyncio.Queue()
        boundary = self._event_counter
        already_ended = self._state == "ended"
        if not already_ended:
            self._subscribers.append(queue)

        try:
            await self._log.flush()
            for event in await read_event_log(self.options.event_log_path, offset):
                if event.id < boundary:
                    yield ("session_event", event)

            if already_ended:
                yield ("session_done", self.done_signal())
                return

            live_from = max(offset, boundary)
            while True:
                item = await queue.get()
                if item is _END:
                    yield ("session_done", self.done_signal())
                    return
                if item.id >= live_from:
                    yield ("session_event", item)
        finally:
            if queue in self._subscribers:
                self._subscribers.remove(queue)

    # --- Strategy extension points ---

    @abstractmethod
    async def spawn_turn(self, prompt: str) -> None:
        """Start the agent work for a turn."""

    @abstractmethod
    async def deliver_message(self, message: str) -> None:
        """Hand a follow-up message to the agent."""

    @abstractmethod
    def on_process_exit(self, exit_code: int) -> None:
        """React to the attached subprocess exiting."""

    def handle_result(self, result: Dict[str, Any]) -> None:
        """Called when the CLI reports a ``result`` line. Default: no-op."""

    def close_session(self) -> None:
        """Graceful completion while idle. Default: nothing attached, complete now."""
        self.finalize("completed")

    # --- Process management ---

    async def _launch(self, args: List[str]) -> Optional[asyncio.subprocess.Process]:
        """Spawn the agent CLI; on failure the session is finalized as failed."""
        cmd = [*self.options.command, *args]
        if is_debug():
            logger.debug(f"[{self.session_id}] Spawning: {' '.join(cmd)}")
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(self.options.working_directory),
                env={**os.environ, **self.options.env},
                limit=self.options.stream_limit,
            )
        except OSError as e:
            self.on_spawn_error(e)
            return None

        if self._state == "ended" or self._killed:
            # Terminated while the spawn was in flight
            logger.info(f"[{self.session_id}] Discarding process {proc.pid} spawned after termination")
            proc.kill()
            self._spawn_task(proc.wait())
            return None

        self.process = proc
        self._stderr_tail.clear()
        self._stderr_chars = 0
        self._metadata.pid = proc.pid
        self._write_metadata()
        self._spawn_task(self._pump(proc))
        logger.info(f"[{self.session_id}] Agent process started (pid {proc.pid})")
        return proc

    def kill_process(self) -> None:
        """Two-phase kill: SIGTERM now, SIGKILL after the grace window."""
        proc = self.process
        if proc is None or proc.returncode is not None:
            return
        try:
            proc.terminate()
        except ProcessLookupError:
            return
        self._cancel_timer("_kill_timer")
        self._kill_timer = self._schedule(self.options.kill_grace, self._force_kill, proc)

    def _force_kill(self, proc: asyncio.subprocess.Process) -> None:
        self._kill_timer = None
        if proc.returncode is not None:
            return
        logger.warning(
            f"[{self.session_id}] Process {proc.pid} ignored SIGTERM for "
            f"{self.options.kill_grace}s, sending SIGKILL"
        )
        try:
            proc.kill()
        except ProcessLookupError:
            pass

    def on_spawn_error(self, error: Exception) -> None:
        logger.error(f"[{self.session_id}] Failed to spawn agent CLI: {error}")
        self.emit_event("error", {"message": f"Failed to spawn claude process: {error}"})
        self._metadata.error = str(error)
        self.finalize("failed")

    async def _pump(self, proc: asyncio.subprocess.Process) -> None:
        """Feed stdout lines to the parser until the process exits."""
        stdout_task = asyncio.create_task(self._read_stdout(proc))
        stderr_task = asyncio.create_task(self._read_stderr(proc))

        exit_code = await proc.wait()
        for task in (stdout_task, stderr_task):
            try:
                await asyncio.wait_for(task, timeout=OUTPUT_DRAIN_SECONDS)
            except asyncio.TimeoutError:
                logger.warning(f"[{self.session_id}] Output pipe still open after exit, abandoning it")

        self._cancel_timer("_kill_timer")
        if self.process is proc:
            self.process = None
        logger.info(f"[{self.session_id}] Agent process {proc.pid} exited with code {exit_code}")
        self.on_process_exit(exit_code)

    async def _read_stdout(self, proc: asyncio.subprocess.Process) -> None:
        if proc.stdout is None:
            return
        while True:
            try:
                raw = await proc.stdout.readline()
            except ValueError as e:
                logger.error(f"[{self.session_id}] Discarding oversized output line: {e}")
                continue
            if not raw:
                return
            line = raw.decode("utf-8", errors="replace").strip()
            if not line:
                continue
            if is_debug():
                logger.debug(f"[{self.session_id}] CLI OUTPUT: {line}")
            self._handle_line(line)

    async def _read_stderr(self, proc: asyncio.subprocess.Process) -> None:
        if proc.stderr is None:
            return
        async for raw in proc.stderr:
            line = raw.decode("utf-8", errors="replace").rstrip()
            if line:
                self._remember_stderr(line)
                if is_debug():
                    logger.debug(f"[{self.session_id}] CLI STDERR: {line}")

    def _remember_stderr(self, line: str) -> None:
        """Keep only as many trailing lines as the excerpt can show."""
        self._stderr_tail.append(line)
        self._stderr_chars += len(line) + 1
        while len(self._stderr_tail) > 1:
            oldest = len(self._stderr_tail[0]) + 1
            if self._stderr_chars - oldest < STDERR_EXCERPT_CHARS:
                break
            self._stderr_tail.popleft()
            self._stderr_chars -= oldest

    def stderr_excerpt(self) -> Optional[str]:
        """The last ``STDERR_EXCERPT_CHARS`` characters of stderr, if any."""
        text = "\n".join(self._stderr_tail).strip()
        return text[-STDERR_EXCERPT_CHARS:] if text else None

    def _handle_line(self, line: str) -> None:
        if self._state == "ended":
            return
        parsed = self._parser.parse_line(line)
        cli_session_id = scrub_text(parsed.session_id)
        if cli_session_id and cli_session_id != self.cli_session_id:
            self.cli_session_id = cli_session_id
            self._metadata.cli_session_id = cli_session_id
            logger.debug(f"[{self.session_id}] CLI session: {cli_session_id}")

        for event_type, data in parsed.events:
            self.emit_event(event_type, data)

        if parsed.result is not None:
            self.emit_event(
                "system",
                {"message": summarize_result(self._turn_count, parsed.result)},
            )
            self.handle_result(parsed.result)

    # --- Turn lifecycle (called by strategies) ---

    def on_turn_complete(
        self,
        exit_code: Optional[int],
        duration_ms: Optional[int] = None,
        cost_usd: Optional[float] = None,
    ) -> None:
        """Close the current turn and wait for the next message."""
        self._cancel_timer("_turn_timer")
        # Termination in progress: the exit path finalizes
        if self._killed or self._state != "processing":
            return

        turn_end: Dict[str, Any] = {"turn_number": self._turn_count, "exit_code": exit_code}
        if duration_ms is not None:
            turn_end["duration_ms"] = duration_ms
        if cost_usd is not None:
            turn_end["cost_usd"] = cost_usd
        self.emit_event("turn_end", turn_end)

        if exit_code is not None and exit_code != 0:
            self.emit_event(
                "error",
                {"message": f"Turn {self._turn_count} failed (exit code {exit_code})"},
            )
        if self._killed:
            return

        self._set_state("idle")
        self.emit_event("waiting_for_input", {"turn_number": self._turn_count})
        self._parser.reset()
        self._idle_timer = self._schedule(self.options.idle_timeout, self._on_idle_timeout)
        self._write_metadata()

    def arm_turn_timeout(self) -> None:
        self._cancel_timer("_turn_timer")
        if self._killed or self._state == "ended":
            return
        self._turn_timer = self._schedule(self.options.turn_timeout, self._on_turn_timeout)

    # --- Event emission ---

    def emit_event(self, event_type: str, data: Dict[str, Any]) -> Optional[SessionEvent]:
        """Sequence, log and publish one event. Returns None once the cap is hit."""
        max_events = self.options.max_events
        if self._event_counter >= max_events:
            if self._event_counter == max_events:
                self._publish(*self._sequence(
                    "error",
                    {"message": f"Event limit reached ({max_events}). Session terminated."},
                ))
                logger.warning(f"[{self.session_id}] Event limit ({max_events}) reached")
                # Hit by finalize's own lifecycle event: the outcome is already settled
                if self._state != "ended":
                    self._metadata.error = f"Event limit reached ({max_events})"
                    self._terminate("failed")
            return None

        event, line = self._sequence(event_type, data)
        self._publish(event, line)
        return event

    def _sequence(self, event_type: str, data: Dict[str, Any]) -> Tuple[SessionEvent, str]:
        # Serialize before consuming the id so a payload can never leave a gap
        event = SessionEvent(id=self._event_counter, type=event_type, data=scrub_text(data))
        line = event.to_line()
        self._event_counter += 1
        self._metadata.event_count = self._event_counter
        return event, line

    def _publish(self, event: SessionEvent, line: str) -> None:
        self._log.append(line)
        for queue in self._subscribers:
            queue.put_nowait(event)
        for listener in list(self._event_listeners):
            try:
                listener(event)
            except Exception as e:
                logger.error(f"[{self.session_id}] Event listener failed: {e}", exc_info=True)

    # --- Termination and finalization ---

    def _terminate(self, status: SessionStatus) -> None:
        """Shared path for stop, timeouts and the event cap."""
        if self._state == "ended" or self._killed:
            return
        self._killed = True
        self._pending_status = status
        self._clear_timers()
        logger.info(f"[{self.session_id}] Terminating session ({status})")

        if self.process is not None and self.process.returncode is None:
            # The exit handler finalizes once the process is gone
            self.kill_process()
        else:
            self.finalize(status)

    def finalize(self, status: SessionStatus) -> None:
        """Move to ``ended`` exactly once and notify everyone."""
        if self._state == "ended":
            return
        self._set_state("ended")
        self._clear_timers()

        ended_at = utc_now()
        self._metadata.status = status
        self._metadata.ended_at = ended_at
        self._metadata.duration_ms = self._metadata.elapsed_ms(ended_at)
        self._metadata.pid = None

        if status == "completed":
            self.emit_event(
                "system",
                {"message": f"Session completed ({format_duration(self._metadata.duration_ms)})"},
            )
        elif status == "timed-out":
            self.emit_event("error", {"message": "Session timed out"})
        elif status == "stopped":
            self.emit_event("system", {"message": "Session stopped by user"})
        else:
            self.emit_event("error", {"message": "Session failed"})

        self._write_metadata()
        logger.info(
            f"Session {self.session_id} ended: {status} "
            f"({format_duration(self._metadata.duration_ms)}, {self._event_counter} events)"
        )

        for queue in self._subscribers:
            queue.put_nowait(_END)

        final = self.metadata
        for listener in list(self._end_listeners):
            try:
                listener(final)
            except Exception as e:
                logger.error(f"[{self.session_id}] End listener failed: {e}", exc_info=True)

        self._spawn_task(self._close_log())

    async def _close_log(self) -> None:
        try:
            await self._log.aclose()
        finally:
            self._ended.set()

    # --- Timers ---

    def _on_turn_timeout(self) -> None:
        self._turn_timer = None
        logger.warning(f"[{self.session_id}] Turn {self._turn_count} timed out")
        self._metadata.error = f"Turn {self._turn_count} timed out after {self.options.turn_timeout:g}s"
        self._terminate("timed-out")

    def _on_idle_timeout(self) -> None:
        self._idle_timer = None
        self.emit_event("system", {"message": "Session timed out (idle)"})
        self._terminate("timed-out")

    def _on_session_timeout(self) -> None:
        self._session_timer = None
        self.emit_event(
            "system",
            {"message": f"Session reached maximum lifetime ({format_duration(self.options.session_timeout * 1000)})"},
        )
        self._terminate("timed-out")

    def _schedule(self, delay: float, callback: Callable[..., None], *args: Any) -> asyncio.TimerHandle:
        return asyncio.get_running_loop().call_later(delay, callback, *args)

    def _cancel_timer(self, name: str) -> None:
        handle: Optional[asyncio.TimerHandle] = getattr(self, name)
        if handle is not None:
            handle.cancel()
            setattr(self, name, None)

    def _clear_timers(self) -> None:
        # The kill timer survives: it must still fire if the process ignores SIGTERM
        for name in ("_turn_timer", "_idle_timer", "_session_timer"):
            self._cancel_timer(name)

    # --- Helpers ---

    def _set_state(self, state: RunnerState) -> None:
        self._state = state
        self._metadata.state = state

    def _write_metadata(self) -> None:
        self._log.write_metadata(self._metadata)

    def _spawn_task(self, coro: Any) -> "asyncio.Task[Any]":
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task
