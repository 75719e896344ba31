"""
tests/conftest.py -- Shared test fixtures for the MDM backend.

This module provides:
  - make_services(): the full service graph on a fresh in-memory database
  - services: function-scoped make_services() for store unit tests
  - file_services: the same on a SQLite file, for multi-threaded tests
  - _patch_lifespan(): wires test services into app.state, bypassing real startup
  - api_client: TestClient in queue mode
  - whitelist_client: TestClient in whitelist mode

Device builders live in tests/factories.py.

Design: Named shared-memory SQLite URIs (not plain :memory:) are used for the
API clients because TestClient runs sync route handlers in a thread pool.
Plain :memory: DBs are per-connection and would present a blank schema to
each worker thread. The named URI format
(file:name?mode=memory&cache=shared&uri=true) shares one in-memory instance
across all connections in the same process.
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient

from api.main import app, init_services
from audit.sink import AuditSink
from auth.tokens import TokenService
from commands.queue import CommandQueue
from commands.whitelist import WhitelistStore
from core.config import Settings
from core.db import make_engine
from devices.store import DeviceStore

# ---------------------------------------------------------------------------
# Service helpers
# ---------------------------------------------------------------------------


def make_settings(**overrides) -> Settings:
    return Settings(**overrides)


def make_services(db_url: str = "sqlite:///:memory:", **overrides) -> SimpleNamespace:
    """Build settings, engine, and every service against db_url."""
    settings = make_settings(database_url=db_url, **overrides)
    engine = make_engine(db_url, settings.db_lock_timeout_seconds)
    audit = AuditSink(engine, system_actor=settings.system_actor)
    tokens = TokenService(settings)
    devices = DeviceStore(engine, tokens, audit)
    return SimpleNamespace(
        settings=settings,
        engine=engine,
        audit=audit,
        tokens=tokens,
        devices=devices,
        commands=CommandQueue(engine, devices, audit),
        whitelists=WhitelistStore(engine, devices, audit),
    )


@pytest.fixture
def services() -> Generator[SimpleNamespace, None, None]:
    """Isolated in-memory service graph per test."""
    svc = make_services()
    yield svc
    svc.engine.dispose()


@pytest.fixture
def file_services(tmp_path) -> Generator[SimpleNamespace, None, None]:
    """Service graph on a SQLite file, so worker threads get separate connections."""
    svc = make_services(f"sqlite:///{tmp_path / 'mdm.db'}")
    yield svc
    svc.engine.dispose()


# ---------------------------------------------------------------------------
# API client fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan(settings: Settings, engine):
    """Return an async context manager that replaces the real lifespan.

    The maintenance_task is a long-sleeping coroutine so shutdown has a real
    asyncio.Task to cancel.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        init_services(app, settings, engine)
        app.state.maintenance_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.maintenance_task.cancel()

    return test_lifespan


def _client(db_suffix: str, **overrides) -> Generator[tuple[TestClient, SimpleNamespace], None, None]:
    db_url = f"sqlite:///file:test_mdm_{db_suffix}?mode=memory&cache=shared&uri=true"
    settings = make_settings(database_url=db_url, **overrides)
    engine = make_engine(db_url, settings.db_lock_timeout_seconds)
    app.router.lifespan_context = _patch_lifespan(settings, engine)
    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, app.state
    engine.dispose()


@pytest.fixture(scope="module")
def api_client() -> Generator[tuple[TestClient, SimpleNamespace], None, None]:
    """Yield (client, app.state) for queue-mode integration tests."""
    yield from _client(f"api_{uuid.uuid4().hex[:8]}", command_mode="queue")


@pytest.fixture(scope="module")
def whitelist_client() -> Generator[tuple[TestClient, SimpleNamespace], None, None]:
    """Yield (client, app.state) for whitelist-mode integration tests."""
    yield from _client(f"wl_{uuid.uuid4().hex[:8]}", command_mode="whitelist")
