"""Startup sweep reconciling persisted session state after a restart."""

import logging
from pathlib import Path
from typing import Optional, Union

from .event_log import write_text_atomic
from .models.session import SessionMetadata, utc_now
from .project_store import ProjectStore
from .session_store import SessionStore, load_metadata

logger = logging.getLogger(__name__)

RESTARTED_BETWEEN_TURNS = "Server restarted between turns"
RESTARTED_WHILE_RUNNING = "Server restarted while session was running"


def reconcile(metadata: SessionMetadata) -> SessionMetadata:
    """
    Terminal state for a session that was ``running`` when the server died.

    A session that was idle between turns had no process attached, so nothing
    was lost mid-flight: it becomes ``stopped``. Anything else had a live
    process whose exit code and output are gone: it becomes ``failed``.
    """
    now = utc_now()
    updated = metadata.model_copy()
    if metadata.state == "idle":
        updated.status = "stopped"
        updated.error = RESTARTED_BETWEEN_TURNS
    else:
        updated.status = "failed"
        updated.error = RESTARTED_WHILE_RUNNING
    updated.state = "ended"
    updated.ended_at = now
    updated.pid = None
    updated.duration_ms = max(0, metadata.elapsed_ms(now))
    return updated


async def recover_orphaned_sessions(
    store: Union[SessionStore, str, Path],
    project_store: Optional[ProjectStore] = None,
) -> int:
    """
    Mark every session still claiming ``running`` as ended.

    Must run once at startup, before any session is admitted: at that point no
    runner exists, so a ``running`` record can only be a leftover.

    Returns:
        Number of sessions reconciled
    """
    if not isinstance(store, SessionStore):
        store = SessionStore(store)
    recovered = 0

    for path in store.iter_metadata_paths():
        try:
            metadata = await load_metadata(path)
        except (OSError, ValueError) as e:
            logger.warning(f"Skipping unreadable session metadata {path}: {e}")
            continue

        if metadata.status != "running":
            continue

        updated = reconcile(metadata)
        try:
            await write_text_atomic(path, updated.model_dump_json(indent=2))
        except OSError as e:
            logger.error(f"Failed to rewrite recovered session {metadata.id}: {e}")
            continue

        if project_store is not None:
            try:
                await project_store.clear_active_session(metadata.project_id)
            except Exception as e:
                logger.error(
                    f"Failed to clear active session for project {metadata.project_id}: {e}"
                )

        logger.info(
            f"Recovered session {metadata.id} (project {metadata.project_id}) as {updated.status}"
        )
        recovered += 1

    if recovered > 0:
        logger.info(f"Recovered {recovered} orphaned session(s) from previous server run")
    return recovered
