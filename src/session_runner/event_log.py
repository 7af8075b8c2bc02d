"""Append-only per-session event log and metadata writer."""

import asyncio
import json
import logging
from pathlib import Path
from typing import List, Optional, Tuple, Union

import aiofiles
import aiofiles.os

from .models.session import SessionEvent, SessionMetadata

logger = logging.getLogger(__name__)

_EVENT = "event"
_METADATA = "metadata"
_STOP = "stop"

_Op = Tuple[str, Optional[str]]


class SessionLog:
    """
    Serialized, fire-and-forget writer for one session's files.

    Callers enqueue event appends and metadata rewrites synchronously; a single
    background task applies them in submission order, so the on-disk log order
    always matches sequence ids. Write failures are logged and dropped: the live
    stream never waits on, or fails because of, storage.
    """

    def __init__(self, event_log_path: Union[str, Path], metadata_path: Union[str, Path]):
        self.event_log_path = Path(event_log_path)
        self.metadata_path = Path(metadata_path)
        self._queue: "asyncio.Queue[_Op]" = asyncio.Queue()
        self._writer_task: Optional[asyncio.Task[None]] = None
        self._closed = False

    def append(self, line: str) -> None:
        """Queue one serialized event line (see ``SessionEvent.to_line``)."""
        self._enqueue((_EVENT, line))

    def write_metadata(self, metadata: SessionMetadata) -> None:
        """Queue a wholesale rewrite of the metadata file."""
        self._enqueue((_METADATA, metadata.model_dump_json(indent=2)))

    async def flush(self) -> None:
        """Wait until every queued write has been attempted."""
        if self._writer_task is None:
            return
        await self._queue.join()

    async def aclose(self) -> None:
        """Drain pending writes and stop the writer task."""
        if self._closed:
            return
        self._closed = True
        if self._writer_task is None:
            return
        self._queue.put_nowait((_STOP, None))
        await self._writer_task

    def _enqueue(self, op: _Op) -> None:
        if self._closed:
            logger.warning(f"Dropping write to closed session log {self.event_log_path}")
            return
        self._queue.put_nowait(op)
        if self._writer_task is None:
            self._writer_task = asyncio.create_task(self._run())

    async def _run(self) -> None:
        while True:
            op = await self._queue.get()
            batch = [op]
            # Coalesce everything already queued into one pass
            while not self._queue.empty():
                batch.append(self._queue.get_nowait())
            try:
                stop = await self._apply(batch)
            finally:
                for _ in batch:
                    self._queue.task_done()
            if stop:
                return

    async def _apply(self, batch: List[_Op]) -> bool:
        pending_lines: List[str] = []
        for kind, payload in batch:
            if kind == _EVENT:
                pending_lines.append(payload or "")
                continue
            # Keep events and metadata in submission order
            await self._append_lines(pending_lines)
            pending_lines = []
            if kind == _METADATA:
                await self._replace_metadata(payload or "")
            elif kind == _STOP:
                return True
        await self._append_lines(pending_lines)
        return False

    async def _append_lines(self, lines: List[str]) -> None:
        if not lines:
            return
        try:
            async with aiofiles.open(self.event_log_path, "a", encoding="utf-8") as f:
                await f.write("".join(lines))
        except OSError as e:
            logger.error(f"Failed to append {len(lines)} event(s) to {self.event_log_path}: {e}")

    async def _replace_metadata(self, content: str) -> None:
        try:
            await write_text_atomic(self.metadata_path, content)
        except OSError as e:
            logger.error(f"Failed to write session metadata {self.metadata_path}: {e}")


async def read_event_log(path: Union[str, Path], offset: int = 0) -> List[SessionEvent]:
    """
    Read every logged event with ``id >= offset``, in ascending id order.

    Missing files yield an empty list; blank or corrupt lines are skipped.
    """
    try:
        async with aiofiles.open(path, "r", encoding="utf-8") as f:
            raw = await f.read()
    except FileNotFoundError:
        return []

    events: List[SessionEvent] = []
    for line in raw.splitlines():
        if not line.strip():
            continue
        try:
            event = SessionEvent.model_validate(json.loads(line))
        except ValueError as e:
            logger.warning(f"Skipping corrupt event line in {path}: {e}")
            continue
        if event.id >= offset:
            events.append(event)
    events.sort(key=lambda e: e.id)
    return events


async def write_text_atomic(path: Union[str, Path], content: str) -> None:
    """Replace ``path`` with ``content`` through a sibling temp file."""
    path = Path(path)
    tmp_path = path.with_name(f".{path.name}.tmp")
    async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
        await f.write(content)
    await aiofiles.os.replace(tmp_path, path)
