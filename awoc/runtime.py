"""
AWOC — Runtime Wiring
=======================
Builds the orchestration core from settings and owns its lifecycle.

Startup: configure logging, connect the store (and Redis when signals
are published there), wire registries, adapters and the orchestrator,
start the worker loops.
Shutdown: stop the orchestrator, close worker pools, Redis and the DB.

Usage:
    async with open_runtime(modules, processors=processors) as runtime:
        await runtime.bus.emit_event("billing", "billing:invoice_created", {...})
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncGenerator

from awoc.core.config import get_settings
from awoc.core.logging import configure_logging, get_logger
from awoc.core.redis import close_redis, init_redis
from awoc.db.repository import BaseRepository
from awoc.db.session import close_db, create_schema, get_db_session, init_db
from awoc.db.sql_repository import SqlAlchemyRepository
from awoc.dispatch.docker import (
    ContainerProfileRegistry,
    DockerRuntimeAdapter,
    DockerRuntimeClient,
)
from awoc.dispatch.worker_pool import ServerlessWorkerAdapter, WorkerPoolRegistry
from awoc.orchestrator.authorization import ModuleRegistry
from awoc.orchestrator.events import EventBus
from awoc.orchestrator.lifecycle import TaskLifecycleManager
from awoc.orchestrator.orchestrator import Orchestrator
from awoc.orchestrator.processors import CoreTaskAdapter, ProcessorRegistry
from awoc.services.signals import SignalBroadcaster


@dataclass
class Runtime:
    """Everything a host process needs to drive the core."""

    repository: BaseRepository
    lifecycle: TaskLifecycleManager
    bus: EventBus
    orchestrator: Orchestrator
    modules: ModuleRegistry
    processors: ProcessorRegistry
    pools: WorkerPoolRegistry
    profiles: ContainerProfileRegistry
    broadcaster: SignalBroadcaster
    owned_resources: list[str] = field(default_factory=list)


@asynccontextmanager
async def open_runtime(
    modules: ModuleRegistry,
    *,
    processors: ProcessorRegistry | None = None,
    pools: WorkerPoolRegistry | None = None,
    profiles: ContainerProfileRegistry | None = None,
    repository: BaseRepository | None = None,
    docker_client: DockerRuntimeClient | None = None,
    redis_signals: bool = False,
    create_tables: bool = False,
) -> AsyncGenerator[Runtime, None]:
    """
    Start the core and stop it again on exit.

    A ``repository`` may be supplied (e.g. ``InMemoryRepository``);
    otherwise the SQLAlchemy store from ``AWOC_DATABASE_URL`` is used.
    """
    logger = get_logger("awoc.runtime")

    # ── Startup ──────────────────────────────────────────────────────
    configure_logging()
    settings = get_settings()
    logger.info("runtime.starting", environment=settings.environment.value)
    owned: list[str] = []
    processors = processors or ProcessorRegistry()
    pools = pools or WorkerPoolRegistry()
    profiles = profiles or ContainerProfileRegistry()
    orchestrator: Orchestrator | None = None

    try:
        if repository is None:
            await init_db()
            owned.append("db")
            if create_tables:
                await create_schema()
            repository = SqlAlchemyRepository(get_db_session)
            logger.info("db.connected")

        redis = None
        if redis_signals:
            redis = await init_redis()
            owned.append("redis")
            logger.info("redis.connected")

        broadcaster = SignalBroadcaster(redis=redis)
        lifecycle = TaskLifecycleManager(repository)
        bus = EventBus(repository, modules, broadcaster)
        adapters = [
            CoreTaskAdapter(processors, lifecycle),
            ServerlessWorkerAdapter(pools, lifecycle),
        ]
        if profiles.profiles:
            adapters.append(
                DockerRuntimeAdapter(
                    docker_client or DockerRuntimeClient.from_settings(),
                    profiles,
                    lifecycle,
                )
            )
        orchestrator = Orchestrator(lifecycle, bus, modules, adapters)

        runtime = Runtime(
            repository=repository,
            lifecycle=lifecycle,
            bus=bus,
            orchestrator=orchestrator,
            modules=modules,
            processors=processors,
            pools=pools,
            profiles=profiles,
            broadcaster=broadcaster,
            owned_resources=owned,
        )
        await orchestrator.start()
        logger.info("runtime.started", adapters=[a.kind.value for a in adapters])
        yield runtime
    finally:
        # ── Shutdown ─────────────────────────────────────────────────
        # also reached when startup fails part way
        logger.info("runtime.stopping")
        if orchestrator is not None:
            await orchestrator.stop()
        await pools.close_all()
        if "redis" in owned:
            await close_redis()
        if "db" in owned:
            await close_db()
        logger.info("runtime.stopped")
