"""Flat-file store for session metadata and event logs.

Layout (per project, per session)::

    <sessions_dir>/<project_id>/<session_id>.json     metadata, rewritten wholesale
    <sessions_dir>/<project_id>/<session_id>.ndjson   append-only event log
"""

import json
import logging
import uuid
from pathlib import Path
from typing import Iterator, List, Tuple, Union

import aiofiles
import aiofiles.os

from .event_log import read_event_log, write_text_atomic
from .exceptions import SessionNotFoundError
from .models.session import SessionEvent, SessionMetadata
from .types import WorkLog, WorkLogSessionSummary

logger = logging.getLogger(__name__)


class SessionStore:
    """
    Per-project directory of session metadata files and NDJSON event logs.

    Only the owning runner mutates a live session's files; this store creates
    them, reads them back, and removes them when an admission is rolled back.
    """

    def __init__(self, sessions_dir: Union[str, Path]):
        self.sessions_dir = Path(sessions_dir)

    def project_dir(self, project_id: str) -> Path:
        return self.sessions_dir / project_id

    def metadata_path(self, project_id: str, session_id: str) -> Path:
        return self.project_dir(project_id) / f"{session_id}.json"

    def event_log_path(self, project_id: str, session_id: str) -> Path:
        return self.project_dir(project_id) / f"{session_id}.ndjson"

    async def create_session_files(self, project_id: str) -> Tuple[str, Path, Path]:
        """
        Allocate a session id and create its metadata file and empty event log.

        Returns:
            (session_id, metadata_path, event_log_path)
        """
        session_id = str(uuid.uuid4())
        await aiofiles.os.makedirs(self.project_dir(project_id), exist_ok=True)

        metadata = SessionMetadata(id=session_id, project_id=project_id)
        metadata_path = self.metadata_path(project_id, session_id)
        event_log_path = self.event_log_path(project_id, session_id)

        await write_text_atomic(metadata_path, metadata.model_dump_json(indent=2))
        async with aiofiles.open(event_log_path, "w", encoding="utf-8"):
            pass

        logger.debug(f"Created session files for {session_id} (project {project_id})")
        return session_id, metadata_path, event_log_path

    async def delete_session_files(self, project_id: str, session_id: str) -> None:
        """Remove both files of a session; missing files are ignored."""
        for path in (
            self.metadata_path(project_id, session_id),
            self.event_log_path(project_id, session_id),
        ):
            try:
                await aiofiles.os.remove(path)
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.warning(f"Failed to remove {path}: {e}")

    async def read_metadata(self, project_id: str, session_id: str) -> SessionMetadata:
        """Load one session's metadata, raising SessionNotFoundError if absent or corrupt."""
        path = self.metadata_path(project_id, session_id)
        try:
            return await load_metadata(path)
        except FileNotFoundError:
            raise SessionNotFoundError(session_id)
        except ValueError as e:
            logger.error(f"Corrupt metadata for session {session_id}: {e}")
            raise SessionNotFoundError(session_id)

    async def list_sessions(self, project_id: str) -> List[SessionMetadata]:
        """All sessions of a project, newest first. Corrupt files are skipped."""
        project_dir = self.project_dir(project_id)
        if not project_dir.is_dir():
            return []

        sessions: List[SessionMetadata] = []
        for path in sorted(project_dir.glob("*.json")):
            try:
                sessions.append(await load_metadata(path))
            except (OSError, ValueError) as e:
                logger.warning(f"Skipping unreadable session metadata {path}: {e}")
        sessions.sort(key=lambda m: m.started_at, reverse=True)
        return sessions

    async def read_events(
        self, project_id: str, session_id: str, offset: int = 0
    ) -> List[SessionEvent]:
        return await read_event_log(self.event_log_path(project_id, session_id), offset)

    def iter_metadata_paths(self) -> Iterator[Path]:
        """Every session metadata file across all projects."""
        if not self.sessions_dir.is_dir():
            return
        for project_dir in sorted(self.sessions_dir.iterdir()):
            if not project_dir.is_dir():
                continue
            yield from sorted(project_dir.glob("*.json"))

    async def get_work_log(self, project_id: str, offset: int = 0) -> WorkLog:
        """
        Every event of every session in a project, oldest session first.

        Each event is tagged with its ``session_id`` and ``session_index`` so a
        client can render one continuous history; ``offset`` skips that many
        events of the combined log.
        """
        sessions = await self.list_sessions(project_id)
        sessions.sort(key=lambda m: m.started_at)

        all_events = []
        for index, session in enumerate(sessions):
            for event in await self.read_events(project_id, session.id):
                all_events.append({
                    **event.model_dump(mode="json"),
                    "session_id": session.id,
                    "session_index": index,
                })

        summaries: List[WorkLogSessionSummary] = [
            {
                "id": s.id,
                "started_at": s.started_at.isoformat(),
                "ended_at": s.ended_at.isoformat() if s.ended_at else None,
                "duration_ms": s.duration_ms,
                "status": s.status,
                "event_count": s.event_count,
            }
            for s in sessions
        ]

        return {
            "events": all_events[offset:] if offset > 0 else all_events,
            "sessions": summaries,
            "total_events": len(all_events),
        }


async def load_metadata(path: Union[str, Path]) -> SessionMetadata:
    async with aiofiles.open(path, "r", encoding="utf-8") as f:
        raw = await f.read()
    return SessionMetadata.model_validate(json.loads(raw))
