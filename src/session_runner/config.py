"""Application configuration with environment variable support."""

from pathlib import Path
from typing import List, Literal, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings with environment variable support.

    Priority: ENV > .env.local > .env > defaults
    .env.local is gitignored for local overrides
    """

    model_config = SettingsConfigDict(
        env_file=(".env", ".env.local"),
        env_file_encoding="utf-8",
        case_sensitive=True,
    )

    # Service configuration
    PROJECT_NAME: str = "Session Runner"
    DATA_DIR: Path = Path("data")
    SESSIONS_DIR: Optional[Path] = None  # Defaults to DATA_DIR / "sessions"
    DEBUG: bool = False
    HOST: str = "localhost"
    PORT: int = 3002
    LOG_LEVEL: str = "INFO"

    # Agent CLI
    RUNNER_MODE: Literal["streaming", "resume"] = "streaming"
    CLI_COMMAND: List[str] = ["claude"]
    STREAM_LIMIT_BYTES: int = 16 * 1024 * 1024  # Max length of one stdout line

    # Admission control
    MAX_CONCURRENT_SESSIONS: int = 3

    # Runner limits
    MAX_EVENTS: int = 5000
    MAX_TOOL_RESULT_LINES: int = 200
    MAX_MESSAGE_LENGTH: int = 100_000
    TURN_TIMEOUT_SECONDS: float = 1800.0
    SESSION_TIMEOUT_SECONDS: float = 1800.0
    IDLE_TIMEOUT_SECONDS: float = 1800.0
    KILL_GRACE_SECONDS: float = 10.0

    # Streaming
    SSE_KEEPALIVE_SECONDS: float = 15.0
    STOP_SETTLE_SECONDS: float = 0.5

    @property
    def sessions_dir(self) -> Path:
        """Directory holding per-project session metadata and event logs."""
        return self.SESSIONS_DIR or self.DATA_DIR / "sessions"

    @property
    def projects_db_path(self) -> Path:
        return self.DATA_DIR / "projects.db"


# Global settings instance
settings = Settings()
