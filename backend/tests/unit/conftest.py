"""Shared fixtures for unit tests.

Patches async_session everywhere so no unit test touches reelix.db.
"""

import importlib

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel

_unit_engine = create_async_engine(
    "sqlite+aiosqlite:///:memory:",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

_unit_session_factory = sessionmaker(_unit_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture(autouse=True)
async def isolate_database(monkeypatch):
    """Patch async_session everywhere so no unit test touches reelix.db."""
    async with _unit_engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

    # Patch via direct module references to avoid name-shadowing in __init__.py
    import reelix.database as _db_mod

    _config_mod = importlib.import_module("reelix.services.config_service")
    _upload_mod = importlib.import_module("reelix.services.upload_queue")

    monkeypatch.setattr(_db_mod, "async_session", _unit_session_factory)
    monkeypatch.setattr(_config_mod, "async_session", _unit_session_factory)
    monkeypatch.setattr(_upload_mod, "async_session", _unit_session_factory)

    yield

    async with _unit_engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.drop_all)


@pytest.fixture
def unit_session_factory():
    """The in-memory session factory the patched modules use."""
    return _unit_session_factory


@pytest.fixture
def unit_engine():
    return _unit_engine
