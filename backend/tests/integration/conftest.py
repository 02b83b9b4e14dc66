"""Shared fixtures and configuration for integration tests.

The FastAPI app is exercised over httpx's ASGI transport. Every test gets an
in-memory settings database and fresh service singletons, so no state leaks
between tests and nothing touches reelix.db.
"""

import importlib
import sys
from pathlib import Path
from types import SimpleNamespace

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel

from reelix.main import app
from reelix.models import AppConfig
from reelix.services import runtime
from reelix.services.assignment_store import TitleAssignmentStore
from reelix.services.rip_scheduler import RipJobScheduler
from reelix.services.upload_queue import UploadQueue

FAKE_TOOL = Path(__file__).parent.parent / "fixtures" / "fake_makemkvcon.py"

INTEGRATION_DB_URL = "sqlite+aiosqlite:///:memory:"

_engine = create_async_engine(
    INTEGRATION_DB_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
_session_factory = sessionmaker(_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture(autouse=True)
async def integration_database(monkeypatch, tmp_path):
    """In-memory settings database seeded with a config rooted in tmp_path."""
    async with _engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

    import reelix.database as _db_mod

    _config_mod = importlib.import_module("reelix.services.config_service")
    _upload_mod = importlib.import_module("reelix.services.upload_queue")
    monkeypatch.setattr(_db_mod, "async_session", _session_factory)
    monkeypatch.setattr(_config_mod, "async_session", _session_factory)
    monkeypatch.setattr(_upload_mod, "async_session", _session_factory)

    async with _session_factory() as session:
        session.add(
            AppConfig(
                makemkv_path="makemkvcon",
                staging_path=str(tmp_path / "staging"),
                library_movies_path=str(tmp_path / "movies"),
                library_tv_path=str(tmp_path / "tv"),
                ftp_host="nas.local",
                ftp_user="rip",
                ftp_pass="s3cret",
                ftp_tv_upload_path="/tv",
            )
        )
        await session.commit()

    yield _session_factory

    async with _engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.drop_all)


@pytest.fixture
async def services(monkeypatch, tmp_path, event_bus, broadcaster, static_catalog, library):
    """Fresh runtime singletons; rips block until ``services.release()``."""
    release_file = tmp_path / "release"

    def gated(makemkv_path, source_spec, title_index, output_dir, min_length):
        return [sys.executable, str(FAKE_TOOL), "gated", str(output_dir), str(release_file)]

    scheduler = RipJobScheduler(
        static_catalog,
        broadcaster,
        max_concurrent=2,
        termination_timeout=5.0,
        config_loader=library,
        command_factory=gated,
    )
    assignments = TitleAssignmentStore(broadcaster)
    uploads = UploadQueue(broadcaster, config_loader=library)

    monkeypatch.setattr(runtime, "event_bus", event_bus)
    monkeypatch.setattr(runtime, "broadcaster", broadcaster)
    monkeypatch.setattr(runtime, "disk_catalog", static_catalog)
    monkeypatch.setattr(runtime, "assignment_store", assignments)
    monkeypatch.setattr(runtime, "rip_scheduler", scheduler)
    monkeypatch.setattr(runtime, "upload_queue", uploads)

    yield SimpleNamespace(
        bus=event_bus,
        broadcaster=broadcaster,
        catalog=static_catalog,
        assignments=assignments,
        scheduler=scheduler,
        uploads=uploads,
        release=release_file.touch,
    )

    await scheduler.shutdown()
    await uploads.shutdown()


@pytest.fixture
async def client(services):
    """Provide async HTTP client for integration tests."""
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
