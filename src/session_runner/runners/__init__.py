"""Session runner strategies.

Two interchangeable ways of mapping turns onto agent processes:

- ``streaming``: one long-lived process, stdin kept open between turns (default)
- ``resume``: one process per turn, chained with ``--resume <session_id>``

Both expose the same public API via BaseSessionRunner. The default comes from
``RUNNER_MODE``.
"""

import logging
from typing import Optional

from ..config import settings
from ..exceptions import RunnerError
from .base import BaseSessionRunner, RunnerOptions
from .resume import ResumeRunner
from .streaming import StreamingRunner

logger = logging.getLogger(__name__)

RUNNERS = {
    "streaming": StreamingRunner,
    "resume": ResumeRunner,
}


def create_runner(options: RunnerOptions, mode: Optional[str] = None) -> BaseSessionRunner:
    """Build the runner for ``mode`` (defaults to the configured RUNNER_MODE)."""
    mode = mode or settings.RUNNER_MODE
    runner_cls = RUNNERS.get(mode)
    if runner_cls is None:
        raise RunnerError(
            f"Unknown runner mode: {mode}. Use one of: {', '.join(RUNNERS)}",
            code="unknown_mode",
        )
    logger.debug(f"Creating {mode} runner for session {options.session_id}")
    return runner_cls(options)


__all__ = [
    "BaseSessionRunner",
    "ResumeRunner",
    "RunnerOptions",
    "StreamingRunner",
    "create_runner",
]
