"""Server-level configuration from environment variables.

Contains settings needed before the database is available (database URL,
server host/port, debug mode) and the scheduling/network policy constants.
All fields have defaults; no .env file is required.

Policy constants are fixed for the lifetime of the process; they are not
user-adjustable at runtime. User-editable settings (tool path, library and
FTP locations) live in the database via AppConfig (models/app_config.py).
"""

import sys
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_database_url() -> str:
    """Return the default database URL, using ~/.reelix/ for frozen builds."""
    if getattr(sys, "frozen", False):
        db_dir = Path.home() / ".reelix"
        db_dir.mkdir(parents=True, exist_ok=True)
        db_path = db_dir / "reelix.db"
        return f"sqlite+aiosqlite:///{db_path}"
    return "sqlite+aiosqlite:///./reelix.db"


class Settings(BaseSettings):
    """Server infrastructure settings. Loaded from environment variables; optionally from .env."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Database
    database_url: str = _default_database_url()

    # Server
    host: str = "127.0.0.1"
    port: int = 8000
    debug: bool = False

    # Rip scheduling
    max_concurrent_rips: int = 2
    job_history_capacity: int = 100
    termination_timeout_seconds: float = 10.0
    diagnostic_buffer_lines: int = 200

    # Disc scanning
    scan_timeout_seconds: float = 120.0
    min_title_length_seconds: int = 45

    # Progress fan-out (per subscriber)
    event_queue_size: int = 256

    # FTP
    ftp_timeout_seconds: float = 30.0
    ftp_max_retries: int = 3
    ftp_retry_base_delay: float = 1.0


settings = Settings()
