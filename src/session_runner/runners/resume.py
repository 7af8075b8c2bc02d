"""Resume runner - one agent process per turn, chained by ``--resume``."""

import logging

from .base import BaseSessionRunner

logger = logging.getLogger(__name__)

RESUME_ARGS = [
    "-p",
    "--output-format", "stream-json",
    "--verbose",
    "--include-partial-messages",
    "--dangerously-skip-permissions",
]


class ResumeRunner(BaseSessionRunner):
    """
    Runner spawning ``claude -p`` once per turn.

    Conversation state lives in the CLI: every turn after the first passes the
    continuation token reported by the previous process. Process exit is the
    turn boundary, and nothing is running between turns.
    """

    mode = "resume"

    def build_args(self) -> list:
        args = list(RESUME_ARGS)
        if self.cli_session_id:
            args.extend(["--resume", self.cli_session_id])
        return args

    async def spawn_turn(self, prompt: str) -> None:
        proc = await self._launch(self.build_args())
        if proc is None or proc.stdin is None:
            return
        self.arm_turn_timeout()

        # Single turn per process: write the prompt and close stdin
        try:
            proc.stdin.write(prompt.encode("utf-8"))
            await proc.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            # The exit handler reports the failed turn
            logger.warning(f"[{self.session_id}] Agent process closed stdin early: {e}")
        finally:
            if not proc.stdin.is_closing():
                proc.stdin.close()

    async def deliver_message(self, message: str) -> None:
        await self.spawn_turn(message)

    def on_process_exit(self, exit_code: int) -> None:
        if self.state == "ended":
            return
        self._metadata.pid = None

        if self._killed:
            self.finalize(self._pending_status or "stopped")
            return

        self._metadata.exit_code = exit_code
        if exit_code != 0:
            self._metadata.error = (
                self.stderr_excerpt() or f"Turn {self.turn_count} exited with code {exit_code}"
            )
            logger.warning(
                f"[{self.session_id}] Turn {self.turn_count} failed with exit code {exit_code}"
            )

        # Turn over, session continues
        self.on_turn_complete(exit_code)
