"""Configuration service for managing app settings.

Provides functions to get and update configuration stored in SQLite.
"""

import logging
import sys
from pathlib import Path

from sqlmodel import select

from reelix.database import async_session
from reelix.models.app_config import AppConfig

logger = logging.getLogger(__name__)

# Blank values for these never overwrite a stored secret
SENSITIVE_FIELDS = {"ftp_pass"}


def _platform_default_paths() -> dict[str, str]:
    """Return platform-aware default paths for first-run config."""
    home = Path.home()
    if sys.platform == "win32":
        base = home / "Reelix"
        return {
            "staging_path": str(base / "Staging"),
            "library_movies_path": str(base / "Movies"),
            "library_tv_path": str(base / "TV Shows"),
        }
    base = home / "reelix"
    return {
        "staging_path": str(base / "staging"),
        "library_movies_path": str(base / "movies"),
        "library_tv_path": str(base / "tv"),
    }


async def get_config() -> AppConfig:
    """Get the current configuration, creating defaults if none exists."""
    async with async_session() as session:
        result = await session.execute(select(AppConfig).limit(1))
        config = result.scalar_one_or_none()

        if config is None:
            defaults = _platform_default_paths()
            config = AppConfig(**defaults)
            session.add(config)
            await session.commit()
            await session.refresh(config)
            logger.info(f"Created default configuration with platform paths: {defaults}")

        return config


async def update_config(**kwargs) -> AppConfig:
    """Update configuration with provided values.

    Unknown keys and None values are ignored.

    Returns:
        Updated AppConfig instance
    """
    async with async_session() as session:
        result = await session.execute(select(AppConfig).limit(1))
        config = result.scalar_one_or_none()

        if config is None:
            config = AppConfig(**_platform_default_paths())
            session.add(config)

        for key, value in kwargs.items():
            if key == "id" or not hasattr(config, key):
                continue
            if value is None:
                continue
            if key in SENSITIVE_FIELDS and isinstance(value, str) and not value.strip():
                continue
            setattr(config, key, value)

        await session.commit()
        await session.refresh(config)

        await ensure_paths_exist(config)

        logger.info(f"Updated configuration: {list(kwargs.keys())}")
        return config


async def ensure_paths_exist(config: AppConfig) -> None:
    """Create the local staging and library directories if they don't exist."""
    paths_to_create = [
        config.staging_path,
        config.library_movies_path,
        config.library_tv_path,
    ]

    for path_str in paths_to_create:
        if not path_str:
            continue
        path = Path(path_str).expanduser()
        try:
            path.mkdir(parents=True, exist_ok=True)
            logger.debug(f"Ensured directory exists: {path}")
        except OSError as e:
            logger.warning(f"Could not create directory {path}: {e}")
