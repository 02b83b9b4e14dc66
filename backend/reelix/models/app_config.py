"""Application configuration stored in SQLite.

This model stores user-configurable settings that persist across restarts
and can be modified via the UI.
"""

from sqlmodel import Field, SQLModel


class AppConfig(SQLModel, table=True):
    """User-configurable application settings stored in database."""

    __tablename__ = "app_config"

    id: int | None = Field(default=None, primary_key=True)

    # MakeMKV Configuration
    makemkv_path: str = ""  # Auto-detected on startup

    # Paths - where rips are staged and where finished files land
    staging_path: str = ""  # Platform-aware default set on first run
    library_movies_path: str = ""
    library_tv_path: str = ""

    # FTP server holding already-ripped files
    ftp_host: str = ""  # "host" or "host:port"
    ftp_user: str = ""
    ftp_pass: str = ""
    ftp_movie_upload_path: str = ""
    ftp_tv_upload_path: str = ""

    # Onboarding
    setup_complete: bool = False
