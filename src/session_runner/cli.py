"""Typer CLI interface for the session runner."""

import asyncio
import os
import signal
import sys
from pathlib import Path
from typing import Optional

import httpx
import typer
import uvicorn
from rich.console import Console
from rich.panel import Panel

app = typer.Typer(
    name="session-runner",
    help="Session Runner - supervised, resumable agent CLI sessions over HTTP",
    add_completion=False,
)
console = Console()

RUNNER_MODES = ("streaming", "resume")


async def check_service_running(port: int) -> bool:
    """Check if service is already running on port."""
    try:
        async with httpx.AsyncClient() as client:
            resp = await client.get(f"http://localhost:{port}/health", timeout=2.0)
            return resp.status_code == 200
    except httpx.HTTPError:
        return False


def _prepare_data_dir(data_dir: str) -> Path:
    data_path = Path(data_dir).resolve()
    if data_path.exists() and not data_path.is_dir():
        console.print(f"[red]Error:[/red] Data path is not a directory: {data_path}")
        raise typer.Exit(1)
    data_path.mkdir(parents=True, exist_ok=True)
    return data_path


@app.command()
def serve(
    data_dir: str = typer.Option(
        "data", "--data-dir", "-d", help="Directory for session logs and the project database"
    ),
    mode: str = typer.Option(
        "streaming",
        "--mode",
        "-m",
        help="Runner strategy: 'streaming' (one long-lived process) or 'resume' (one process per turn)",
    ),
    max_sessions: Optional[int] = typer.Option(
        None, "--max-sessions", help="Maximum concurrent running sessions"
    ),
    port: int = typer.Option(3002, "--port", help="HTTP port"),
    host: str = typer.Option("localhost", "--host", help="Bind address"),
    debug: bool = typer.Option(False, "--debug", help="Enable debug logging"),
    reload: bool = typer.Option(
        False, "--reload", help="Enable auto-reload (dev mode)"
    ),
):
    """Start the session runner service."""
    data_path = _prepare_data_dir(data_dir)

    if mode not in RUNNER_MODES:
        console.print(
            f"[red]Error:[/red] Invalid mode: {mode}. Use one of: {', '.join(RUNNER_MODES)}"
        )
        raise typer.Exit(1)

    if max_sessions is not None and max_sessions < 1:
        console.print("[red]Error:[/red] --max-sessions must be at least 1")
        raise typer.Exit(1)

    # Set environment variables BEFORE importing settings to ensure they're picked up
    os.environ["DATA_DIR"] = str(data_path)
    os.environ["RUNNER_MODE"] = mode
    os.environ["DEBUG"] = "true" if debug else "false"
    if max_sessions is not None:
        os.environ["MAX_CONCURRENT_SESSIONS"] = str(max_sessions)

    if asyncio.run(check_service_running(port)):
        console.print(f"[red]Error:[/red] Service already running on port {port}")
        raise typer.Exit(1)

    def signal_handler(sig, frame):
        console.print("\n[yellow]Shutting down gracefully...[/yellow]")
        sys.exit(0)

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    from .config import settings

    console.print(
        Panel.fit(
            f"[bold]Session Runner[/bold]\n\n"
            f"📁 Data: {data_path}\n"
            f"🤖 Mode: {mode} ({' '.join(settings.CLI_COMMAND)})\n"
            f"🚦 Max sessions: {settings.MAX_CONCURRENT_SESSIONS}\n"
            f"📡 HTTP: http://{host}:{port}\n"
            f"🔍 Debug: {'enabled' if debug else 'disabled'}",
            border_style="green",
        )
    )

    uvicorn.run(
        "session_runner.main:app",
        host=host,
        port=port,
        log_level="debug" if debug else "info",
        reload=reload,
        access_log=debug,
        timeout_keep_alive=120,
    )


@app.command()
def recover(
    data_dir: str = typer.Option(
        "data", "--data-dir", "-d", help="Directory for session logs and the project database"
    ),
):
    """Reconcile sessions left running by a crashed server (server must be stopped)."""
    data_path = _prepare_data_dir(data_dir)
    os.environ["DATA_DIR"] = str(data_path)

    from .config import settings
    from .logging_config import setup_logging
    from .project_store import ProjectStore
    from .recovery import recover_orphaned_sessions
    from .session_store import SessionStore

    setup_logging(level=settings.LOG_LEVEL, debug=settings.DEBUG)
    count = asyncio.run(
        recover_orphaned_sessions(
            SessionStore(settings.sessions_dir), ProjectStore(settings.projects_db_path)
        )
    )
    if count:
        console.print(f"[green]✓[/green] Recovered {count} orphaned session(s)")
    else:
        console.print("[green]✓[/green] No orphaned sessions")


if __name__ == "__main__":
    app()
