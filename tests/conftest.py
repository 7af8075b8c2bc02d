"""Shared fixtures for the session runner tests."""

import asyncio
import shutil
import sys
import tempfile
from pathlib import Path

import pytest

from session_runner.runners import RunnerOptions, create_runner
from session_runner.session_store import SessionStore

FAKE_CLAUDE = Path(__file__).parent / "fake_claude.py"
FAKE_COMMAND = [sys.executable, str(FAKE_CLAUDE)]


@pytest.fixture
def temp_dir():
    """Create temporary data directory."""
    path = tempfile.mkdtemp()
    yield Path(path)
    shutil.rmtree(path, ignore_errors=True)


@pytest.fixture
def store(temp_dir):
    return SessionStore(temp_dir / "sessions")


@pytest.fixture
async def make_runner(store):
    """Factory building a runner wired to the fake CLI, with files on disk."""
    runners = []

    async def _make(mode="streaming", prompt="hello", project_id="proj", **overrides):
        session_id, metadata_path, event_log_path = await store.create_session_files(project_id)
        options = dict(
            session_id=session_id,
            project_id=project_id,
            prompt=prompt,
            metadata_path=metadata_path,
            event_log_path=event_log_path,
            command=FAKE_COMMAND,
            kill_grace=1.0,
        )
        options.update(overrides)
        runner = create_runner(RunnerOptions(**options), mode)
        runners.append(runner)
        return runner

    yield _make

    # Never leave fake CLI processes behind
    for runner in runners:
        runner.stop()
    await asyncio.gather(
        *(asyncio.wait_for(r.wait_ended(), timeout=10) for r in runners),
        return_exceptions=True,
    )


async def wait_for_state(runner, state, timeout=10.0):
    """Poll until the runner reaches ``state``."""
    async def _poll():
        while runner.state != state:
            await asyncio.sleep(0.01)

    await asyncio.wait_for(_poll(), timeout=timeout)
