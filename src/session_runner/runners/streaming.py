"""Streaming runner - one long-lived agent process for the whole session."""

import json
import logging
from typing import Any, Dict

from .base import BaseSessionRunner

logger = logging.getLogger(__name__)

STREAMING_ARGS = [
    "-p",
    "--input-format", "stream-json",
    "--output-format", "stream-json",
    "--verbose",
    "--include-partial-messages",
    "--dangerously-skip-permissions",
]


def encode_user_message(text: str) -> bytes:
    """One NDJSON user message for the CLI's stream-json input."""
    payload = {"type": "user", "message": {"role": "user", "content": text}}
    return (json.dumps(payload) + "\n").encode("utf-8")


class StreamingRunner(BaseSessionRunner):
    """
    Runner keeping a single ``claude -p --input-format stream-json`` process alive.

    Each turn is written to the still-open stdin; the CLI marks the end of a
    turn with a ``result`` line and keeps running. The process is only expected
    to exit after we close stdin (finish) or kill it, so any other exit fails
    the session.
    """

    mode = "streaming"

    async def spawn_turn(self, prompt: str) -> None:
        proc = await self._launch(STREAMING_ARGS)
        if proc is None:
            return
        self.arm_turn_timeout()
        await self._write_stdin(prompt)

    async def deliver_message(self, message: str) -> None:
        self.arm_turn_timeout()
        await self._write_stdin(message)

    async def _write_stdin(self, text: str) -> None:
        proc = self.process
        if proc is None or proc.stdin is None or proc.stdin.is_closing():
            self._protocol_violation("agent process stdin is not available")
            return
        try:
            proc.stdin.write(encode_user_message(text))
            await proc.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            self._protocol_violation(f"failed to write to agent process stdin: {e}")

    def _protocol_violation(self, reason: str) -> None:
        logger.error(f"[{self.session_id}] Protocol violation: {reason}")
        self.emit_event("error", {"message": f"Agent process unavailable: {reason}"})
        self._metadata.error = reason
        self._terminate("failed")

    def handle_result(self, result: Dict[str, Any]) -> None:
        # The process stays alive: a result ends the turn, not the session
        self.on_turn_complete(0, result.get("duration_ms"), result.get("cost_usd"))

    def close_session(self) -> None:
        proc = self.process
        if proc is None or proc.returncode is not None:
            self.finalize("completed")
            return
        if proc.stdin is not None and not proc.stdin.is_closing():
            proc.stdin.close()
        # Bound the wait for the CLI to wind down after EOF
        self.arm_turn_timeout()

    def kill_process(self) -> None:
        proc = self.process
        if proc is not None and proc.stdin is not None and not proc.stdin.is_closing():
            # Graceful first: EOF on stdin, then the signal ladder
            proc.stdin.close()
        super().kill_process()

    def on_process_exit(self, exit_code: int) -> None:
        if self.state == "ended":
            return
        self._metadata.pid = None

        if self._killed:
            self.finalize(self._pending_status or "stopped")
            return

        self._metadata.exit_code = exit_code
        if self._closing and exit_code == 0:
            self.finalize("completed")
            return

        stderr = self.stderr_excerpt()
        self._metadata.error = stderr or f"Agent process exited unexpectedly (exit code {exit_code})"
        logger.error(
            f"[{self.session_id}] Agent process exited unexpectedly with code {exit_code}"
        )
        self.finalize("failed")
