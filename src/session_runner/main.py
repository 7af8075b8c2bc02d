"""Main FastAPI application: session lifecycle routes and SSE event streams."""

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional

from fastapi import FastAPI, Header, Query, Request
from fastapi.responses import JSONResponse, StreamingResponse

from .config import settings
from .exceptions import SessionRunnerError
from .logging_config import setup_logging
from .models.messages import (
    ErrorMessage,
    SendMessageRequest,
    SendMessageResponse,
    StartSessionRequest,
)
from .models.session import SessionEvent, SessionMetadata
from .project_store import ProjectStore
from .service import SessionService
from .session_store import SessionStore
from .sse import KEEPALIVE, format_sse_comment, format_sse_event, with_keepalive

logger = logging.getLogger(__name__)

# Domain error code -> HTTP status
ERROR_STATUS = {
    "already_running": 409,
    "capacity_exceeded": 429,
    "not_idle": 409,
    "not_running": 409,
    "session_not_found": 404,
    "invalid_request": 400,
}

# Global service (initialized in lifespan)
session_service: SessionService


def create_service() -> SessionService:
    """Build the service from the current settings."""
    store = SessionStore(settings.sessions_dir)
    project_store = ProjectStore(settings.projects_db_path)
    return SessionService(store, project_store)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: startup and shutdown."""
    setup_logging(level=settings.LOG_LEVEL, debug=settings.DEBUG)
    logger.info(f"Starting {settings.PROJECT_NAME}...")

    global session_service
    session_service = create_service()
    await session_service.project_store.initialize()

    logger.info(f"Sessions directory: {settings.sessions_dir}")
    logger.info(f"Runner mode: {settings.RUNNER_MODE}")

    # Must finish before the first session is admitted
    recovered = await session_service.recover()
    if recovered > 0:
        logger.info(f"Recovered {recovered} orphaned session(s)")

    logger.info(f"{settings.PROJECT_NAME} started successfully")

    yield

    logger.info("Shutting down gracefully...")
    await session_service.shutdown()
    logger.info("Shutdown complete")


app = FastAPI(
    title=settings.PROJECT_NAME,
    version="0.1.0",
    lifespan=lifespan,
)


@app.exception_handler(SessionRunnerError)
async def session_runner_error_handler(request: Request, exc: SessionRunnerError):
    status_code = ERROR_STATUS.get(exc.code, 500)
    if status_code >= 500:
        logger.error(f"Unhandled session error on {request.url.path}: {exc.message}")
    body = ErrorMessage(code=exc.code, message=exc.message, detail=exc.detail or None)
    return JSONResponse(status_code=status_code, content=body.model_dump())


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "ok",
        "service": settings.PROJECT_NAME,
        "running_sessions": session_service.manager.running_count,
        "max_concurrent_sessions": session_service.manager.max_concurrent,
    }


@app.post("/api/projects/{project_id}/sessions", status_code=201, response_model=SessionMetadata)
async def start_session(project_id: str, request: StartSessionRequest):
    """Start a new agent session. 409 if the project already has one, 429 at capacity."""
    return await session_service.start_session(
        project_id, request.prompt, request.working_directory
    )


@app.get("/api/projects/{project_id}/sessions", response_model=List[SessionMetadata])
async def list_sessions(project_id: str):
    """All sessions of a project, newest first."""
    return await session_service.list_sessions(project_id)


@app.get("/api/projects/{project_id}/sessions/{session_id}", response_model=SessionMetadata)
async def get_session(project_id: str, session_id: str):
    return await session_service.get_session(project_id, session_id)


@app.get("/api/projects/{project_id}/sessions/{session_id}/events")
async def stream_session_events(
    project_id: str,
    session_id: str,
    offset: Optional[int] = Query(None, ge=0),
    last_event_id: Optional[str] = Header(None, alias="Last-Event-ID"),
):
    """
    Stream a session's events as Server-Sent Events.

    Resumes from ``offset`` or, on reconnect, from the event after
    ``Last-Event-ID``. Each event carries its sequence id in the ``id:`` field;
    the stream ends with a ``session_done`` event.
    """
    # 404 before the stream starts
    await session_service.get_session(project_id, session_id)
    start = session_service.resolve_offset(offset, last_event_id)
    source = session_service.stream_events(project_id, session_id, start)

    async def event_generator() -> AsyncIterator[str]:
        async for item in with_keepalive(source, settings.SSE_KEEPALIVE_SECONDS):
            if item is KEEPALIVE:
                yield format_sse_comment("keepalive")
                continue
            name, payload = item
            if isinstance(payload, SessionEvent):
                yield format_sse_event(name, payload.model_dump_json(), event_id=payload.id)
            else:
                yield format_sse_event(name, payload)

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@app.post(
    "/api/projects/{project_id}/sessions/{session_id}/message",
    status_code=202,
    response_model=SendMessageResponse,
)
async def send_message(project_id: str, session_id: str, request: SendMessageRequest):
    """Deliver a follow-up message. 409 unless the session is idle."""
    result = await session_service.send_message(project_id, session_id, request.message)
    return SendMessageResponse(**result)


@app.post("/api/projects/{project_id}/sessions/{session_id}/stop", response_model=SessionMetadata)
async def stop_session(project_id: str, session_id: str):
    return await session_service.stop_session(project_id, session_id)


@app.post("/api/projects/{project_id}/sessions/{session_id}/finish", response_model=SessionMetadata)
async def finish_session(project_id: str, session_id: str):
    """Gracefully complete an idle session."""
    return await session_service.finish_session(project_id, session_id)


@app.get("/api/projects/{project_id}/work-log")
async def get_work_log(project_id: str, offset: int = Query(0, ge=0)) -> Dict[str, Any]:
    """Every event of every session in the project, oldest session first."""
    work_log = await session_service.get_work_log(project_id, offset)
    active = await session_service.get_active_session(project_id)
    return {**work_log, "active_session_id": active}
