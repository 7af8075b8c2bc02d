"""SQLite store for project -> active session back-references."""

import asyncio
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Optional, Union

import aiosqlite

logger = logging.getLogger(__name__)


class ProjectStore:
    """
    Lightweight SQLite store tracking which session a project points at.

    The dashboard reads ``active_session_id`` to find a project's live session.
    It is set when a session is admitted and cleared when it ends, or by the
    recovery sweep so a project is never left pointing at a dead session.
    """

    def __init__(self, db_path: Union[str, Path]):
        self.db_path = Path(db_path)
        self._initialized = False
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Initialize database schema (idempotent)."""
        async with self._lock:
            if self._initialized:
                return

            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            async with aiosqlite.connect(self.db_path) as db:
                await db.execute("""
                    CREATE TABLE IF NOT EXISTS projects (
                        project_id TEXT PRIMARY KEY,
                        active_session_id TEXT,
                        updated_at TEXT NOT NULL
                    )
                """)

                await db.execute("""
                    CREATE INDEX IF NOT EXISTS idx_projects_active_session
                    ON projects(active_session_id)
                """)

                await db.commit()
                logger.info(f"ProjectStore initialized at {self.db_path}")
                self._initialized = True

    async def set_active_session(self, project_id: str, session_id: str) -> None:
        """Point a project at its running session."""
        await self.initialize()

        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO projects (project_id, active_session_id, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(project_id) DO UPDATE SET
                    active_session_id = excluded.active_session_id,
                    updated_at = excluded.updated_at
                """,
                (project_id, session_id, _now()),
            )
            await db.commit()
        logger.debug(f"Project {project_id} active session -> {session_id}")

    async def get_active_session(self, project_id: str) -> Optional[str]:
        await self.initialize()

        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                "SELECT active_session_id FROM projects WHERE project_id = ?",
                (project_id,),
            )
            row = await cursor.fetchone()
            return row[0] if row else None

    async def clear_active_session(self, project_id: str, session_id: Optional[str] = None) -> bool:
        """
        Clear a project's back-reference.

        With ``session_id`` the reference is only cleared while it still points
        at that session, so a late clear never detaches a newer session.

        Returns:
            True if a reference was cleared
        """
        await self.initialize()

        query = "UPDATE projects SET active_session_id = NULL, updated_at = ? WHERE project_id = ?"
        params: tuple = (_now(), project_id)
        if session_id is not None:
            query += " AND active_session_id = ?"
            params += (session_id,)
        else:
            query += " AND active_session_id IS NOT NULL"

        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(query, params)
            await db.commit()
            cleared = cursor.rowcount > 0

        if cleared:
            logger.debug(f"Cleared active session for project {project_id}")
        return cleared

    async def list_active(self) -> Dict[str, str]:
        """All projects that currently point at a session."""
        await self.initialize()

        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                "SELECT project_id, active_session_id FROM projects "
                "WHERE active_session_id IS NOT NULL"
            )
            rows = await cursor.fetchall()
            return {row[0]: row[1] for row in rows}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()
