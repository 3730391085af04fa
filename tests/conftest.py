"""
AWOC — Test Fixtures
======================
Shared pytest fixtures.

Stores are the in-memory repository unless a test asks for the SQLite
backed SQLAlchemy repository; worker channels run over loopback transports.
"""

from __future__ import annotations

import os
from unittest.mock import AsyncMock

import pytest


# ── Override settings BEFORE any app import ──────────────────────────────
@pytest.fixture(autouse=True)
def _clear_settings_cache():
    """Ensure a fresh Settings instance for each test."""
    from awoc.core.config import get_settings
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def settings():
    """Return a settings instance with test defaults."""
    os.environ.setdefault("AWOC_ENVIRONMENT", "development")
    os.environ.setdefault("AWOC_LOG_LEVEL", "DEBUG")
    os.environ.setdefault("AWOC_LOG_FORMAT", "console")
    from awoc.core.config import get_settings
    return get_settings()


# ── Stores ───────────────────────────────────────────────────────────────
@pytest.fixture
def repository():
    from awoc.db.memory_repository import InMemoryRepository
    return InMemoryRepository()


@pytest.fixture
async def sql_repository(tmp_path):
    """SQLAlchemy repository on a throwaway SQLite file."""
    from awoc.db import session as sess_mod
    from awoc.db.sql_repository import SqlAlchemyRepository

    await sess_mod.init_db(f"sqlite+aiosqlite:///{tmp_path / 'awoc.db'}")
    await sess_mod.create_schema()
    yield SqlAlchemyRepository(sess_mod.get_db_session)
    await sess_mod.close_db()


@pytest.fixture
def lifecycle(repository):
    from awoc.orchestrator.lifecycle import TaskLifecycleManager
    return TaskLifecycleManager(repository)


# ── Registries ───────────────────────────────────────────────────────────
@pytest.fixture
def modules():
    """
    ``billing`` emits invoice events; ``ledger``, ``audit`` and ``reports``
    subscribe to ``billing:invoice_created``.  ``reports`` is restricted to
    folder ``f_reports``.
    """
    from awoc.models.tasks import HandlerKind
    from awoc.orchestrator.authorization import (
        ModuleDefinition,
        ModuleRegistry,
        TaskDefinition,
    )

    return ModuleRegistry(
        [
            ModuleDefinition(
                identifier="billing",
                emits={"billing:invoice_created", "billing:*"},
            ),
            ModuleDefinition(
                identifier="ledger",
                tasks=[
                    TaskDefinition(
                        task_identifier="record_invoice",
                        handler_kind=HandlerKind.WORKER,
                        handler_identifier="recorder",
                        subscribed_event_key="billing:invoice_created",
                        on_complete=["notify_accounting"],
                    ),
                    TaskDefinition(
                        task_identifier="notify_accounting",
                        handler_kind=HandlerKind.WORKER,
                        handler_identifier="notifier",
                    ),
                ],
            ),
            ModuleDefinition(
                identifier="audit",
                subscribes={"billing:invoice_created"},
            ),
            ModuleDefinition(
                identifier="reports",
                subscribes={"billing:invoice_created"},
                folder_scope={"f_reports"},
            ),
        ]
    )


@pytest.fixture
def broadcaster():
    from awoc.services.signals import SignalBroadcaster
    return SignalBroadcaster()


@pytest.fixture
def bus(repository, modules, broadcaster):
    from awoc.orchestrator.events import EventBus
    return EventBus(repository, modules, broadcaster)


# ── Worker channel ───────────────────────────────────────────────────────
@pytest.fixture
async def channel_pair():
    """A started (core, worker) channel pair over loopback transports."""
    from awoc.channel.messages import ChannelRole
    from awoc.channel.protocol import WorkerChannel
    from awoc.channel.transport import LoopbackTransport

    core_end, worker_end = LoopbackTransport.pair()
    core = WorkerChannel(core_end, ChannelRole.CORE, name="core", default_timeout=2.0)
    worker = WorkerChannel(worker_end, ChannelRole.WORKER, name="worker", default_timeout=2.0)
    await core.start()
    await worker.start()
    yield core, worker
    await core.close("test teardown")
    await worker.close("test teardown")


# ── Mock Redis ───────────────────────────────────────────────────────────
@pytest.fixture
def mock_redis_client():
    """Provide a mock RedisClient for tests that don't need real Redis."""
    from awoc.core.redis import RedisClient
    inner = AsyncMock()
    inner.ping = AsyncMock(return_value=True)
    inner.publish = AsyncMock(return_value=1)
    inner.aclose = AsyncMock()
    return RedisClient(inner)
