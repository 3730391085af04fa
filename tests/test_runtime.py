"""
Runtime Wiring Tests
======================
Validates:
- open_runtime wires store, bus, adapters and starts the orchestrator
- Work flows end to end and shutdown stops the loops
- A startup failure still closes connections opened before it
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest

from awoc import runtime as runtime_mod
from awoc.core.config import get_settings
from awoc.core.exceptions import ConfigurationError
from awoc.db.memory_repository import InMemoryRepository
from awoc.dispatch.docker import ContainerProfile, ContainerProfileRegistry
from awoc.models.tasks import HandlerKind, TaskState
from awoc.orchestrator.authorization import (
    ModuleDefinition,
    ModuleRegistry,
    TaskDefinition,
)
from awoc.orchestrator.processors import ProcessorRegistry
from awoc.runtime import open_runtime


def _core_modules() -> ModuleRegistry:
    return ModuleRegistry(
        [
            ModuleDefinition(
                identifier="core",
                tasks=[
                    TaskDefinition(
                        task_identifier="purge_receipts",
                        handler_kind=HandlerKind.CORE,
                        subscribed_event_key="maintenance:nightly",
                    )
                ],
            ),
            ModuleDefinition(identifier="scheduler", emits={"maintenance:*"}),
        ]
    )


async def test_event_drives_core_task(settings):
    processors = ProcessorRegistry()
    seen = []

    @processors.processor("purge_receipts")
    async def purge(task):
        seen.append(task.trigger.event_key)
        return {"purged": 0}

    async with open_runtime(
        _core_modules(), processors=processors, repository=InMemoryRepository()
    ) as runtime:
        assert runtime.orchestrator.running
        assert runtime.owned_resources == []

        await runtime.bus.emit_event("scheduler", "maintenance:nightly", {})
        for _ in range(200):
            tasks = await runtime.lifecycle.list_tasks("core")
            if tasks and tasks[0].is_terminal:
                break
            await asyncio.sleep(0.01)

        [task] = await runtime.lifecycle.list_tasks("core")
        assert task.state == TaskState.COMPLETED
        assert task.output == {"purged": 0}
        assert seen == ["maintenance:nightly"]

    assert not runtime.orchestrator.running


async def test_core_task_without_processor_fails(settings):
    async with open_runtime(
        _core_modules(), repository=InMemoryRepository()
    ) as runtime:
        task = await runtime.orchestrator.invoke("core", "purge_receipts", actor="ops")
        final = await runtime.orchestrator.run_task(task.id)
        assert final.error.code == "HANDLER_NOT_FOUND"


async def test_failed_startup_releases_connections(monkeypatch, settings):
    monkeypatch.setenv("AWOC_DOCKER_AUTH_SCHEME", "basic")
    monkeypatch.delenv("AWOC_DOCKER_USERNAME", raising=False)
    get_settings.cache_clear()
    close_redis = AsyncMock()
    monkeypatch.setattr(runtime_mod, "init_redis", AsyncMock(return_value=AsyncMock()))
    monkeypatch.setattr(runtime_mod, "close_redis", close_redis)
    profiles = ContainerProfileRegistry()
    profiles.register(ContainerProfile(name="media", image="media:1", command=["run"]))

    with pytest.raises(ConfigurationError):
        async with open_runtime(
            _core_modules(),
            profiles=profiles,
            repository=InMemoryRepository(),
            redis_signals=True,
        ):
            pass

    close_redis.assert_awaited_once()
