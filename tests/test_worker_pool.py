"""
Serverless Worker Pool Tests
==============================
Validates:
- Pool readiness follows ``init`` and channel state
- Registry resolves owner → pool with a default fallback
- Adapter: not-ready fails fast, the task is started before
  ``execute_task``, channel failures fail the task with
  WORKER_DISPATCH_FAILED, worker failure envelopes pass through
"""

from __future__ import annotations

import asyncio

import pytest

from awoc.channel.messages import ChannelAction, SystemRequest
from awoc.core.envelope import ErrorClass, ErrorOrigin
from awoc.core.exceptions import (
    AppWorkerError,
    ConfigurationError,
    NotReadyError,
    WorkerDispatchFailedError,
)
from awoc.dispatch.worker_pool import (
    WORKER_UNAVAILABLE,
    ServerlessWorkerAdapter,
    WorkerPool,
    WorkerPoolRegistry,
    spawn_worker_pool,
)
from awoc.models.tasks import HandlerKind, ManualTrigger, TaskState
from awoc.orchestrator.orchestrator import Orchestrator


async def _init(req):
    return None


@pytest.fixture
async def pool(channel_pair):
    core, worker = channel_pair
    worker.register_handler(ChannelAction.INIT, _init)
    pool = WorkerPool("default", core, instance_id="inst-1")
    await pool.start({"ledger": "ui-hash"}, {"ledger": "worker-hash"})
    return pool


@pytest.fixture
def pools(pool):
    registry = WorkerPoolRegistry()
    registry.register(pool, default=True)
    return registry


async def _worker_task(lifecycle):
    return await lifecycle.create_task(
        owner_identifier="ledger",
        task_identifier="record_invoice",
        handler_kind=HandlerKind.WORKER,
        handler_identifier="recorder",
        trigger=ManualTrigger(actor="ops"),
        input_data={"invoice_id": "42"},
    )


# ── Pool ────────────────────────────────────────────────────────────────


class TestPool:
    async def test_ready_after_init(self, pool):
        assert pool.ready is True
        assert pool.app_worker_hash_mapping == {"ledger": "worker-hash"}

    async def test_init_payload(self, channel_pair):
        core, worker = channel_pair
        received = []

        async def init(req):
            received.append(req)

        worker.register_handler(ChannelAction.INIT, init)
        await WorkerPool("p", core, instance_id="inst-9", server_base_url="https://core").start()
        assert received[0].instance_id == "inst-9"
        assert received[0].server_base_url == "https://core"

    async def test_init_failure_leaves_pool_not_ready(self, channel_pair):
        core, worker = channel_pair

        async def init(req):
            raise AppWorkerError("bad bundle", code="BUNDLE_INVALID")

        worker.register_handler(ChannelAction.INIT, init)
        pool = WorkerPool("p", core)
        with pytest.raises(Exception):
            await pool.start()
        assert pool.ready is False

    async def test_channel_loss_marks_not_ready(self, pool, channel_pair):
        _, worker = channel_pair
        await worker.close("worker manager exited")
        await asyncio.sleep(0.02)
        assert pool.ready is False

    async def test_update_hash_mapping(self, pool, channel_pair):
        _, worker = channel_pair
        seen = []

        async def update(req):
            seen.append(req.app_worker_hash_mapping)

        worker.register_handler(ChannelAction.UPDATE_APP_HASH_MAPPING, update)
        await pool.update_hash_mapping({}, {"ledger": "v2"})
        assert seen == [{"ledger": "v2"}]
        assert pool.app_worker_hash_mapping == {"ledger": "v2"}

    async def test_analyze_object(self, pool, channel_pair):
        _, worker = channel_pair

        async def analyze(req):
            return {"content_hash": "abc", "content_metadata": {"mime": "image/png"}}

        worker.register_handler(ChannelAction.ANALYZE_OBJECT, analyze)
        result = await pool.analyze_object("f_1", "cat.png")
        assert result.content_hash == "abc"

    async def test_execute_system_request(self, pool, channel_pair):
        _, worker = channel_pair

        async def system_request(req):
            return {"status": 200, "status_text": "OK", "body": req.request.url}

        worker.register_handler(ChannelAction.EXECUTE_SYSTEM_REQUEST, system_request)
        result = await pool.execute_system_request(
            "ledger", "recorder", SystemRequest(url="/hooks/sync", method="POST")
        )
        assert result.status == 200
        assert result.body == "/hooks/sync"


class TestRegistry:
    async def test_owner_mapping_and_default(self, pool, channel_pair):
        registry = WorkerPoolRegistry()
        dedicated = WorkerPool("dedicated", channel_pair[0])
        registry.register(pool, default=True)
        registry.register(dedicated, owners=["ledger"])

        assert registry.resolve("ledger") is dedicated
        assert registry.resolve("audit") is pool

    async def test_unregister_clears_default(self, pool):
        registry = WorkerPoolRegistry()
        registry.register(pool, default=True)
        assert registry.unregister("default") is pool
        assert registry.resolve("ledger") is None

    async def test_spawn_requires_command(self, monkeypatch):
        monkeypatch.delenv("AWOC_WORKER_MANAGER_COMMAND", raising=False)
        with pytest.raises(ConfigurationError):
            await spawn_worker_pool("p")


# ── Adapter ─────────────────────────────────────────────────────────────


class TestAdapter:
    async def test_no_pool_fails_fast(self, lifecycle):
        adapter = ServerlessWorkerAdapter(WorkerPoolRegistry(), lifecycle)
        task = await _worker_task(lifecycle)
        with pytest.raises(NotReadyError) as exc_info:
            await adapter.run(task)
        assert exc_info.value.code == WORKER_UNAVAILABLE
        assert (await lifecycle.get_task(task.id)).state == TaskState.CREATED

    async def test_success(self, pools, channel_pair, lifecycle):
        _, worker = channel_pair
        received = []

        async def execute(req):
            received.append((req, (await lifecycle.get_task(req.task.id)).state))

        worker.register_handler(ChannelAction.EXECUTE_TASK, execute)
        adapter = ServerlessWorkerAdapter(pools, lifecycle)
        task = await _worker_task(lifecycle)
        outcome = await adapter.run(task)

        assert outcome.completion.success is True
        assert outcome.start_context == {"executor": "serverless", "pool": "default"}
        request, state_at_delivery = received[0]
        assert state_at_delivery == TaskState.STARTED
        assert request.task.id == task.id
        assert request.task.data == {"invoice_id": "42"}
        assert request.app_identifier == "ledger"
        assert request.worker_identifier == "recorder"

    async def test_app_failure_passes_envelope_through(self, pools, channel_pair, lifecycle):
        _, worker = channel_pair

        async def execute(req):
            raise AppWorkerError("ledger locked", code="LEDGER_LOCKED", retry=True)

        worker.register_handler(ChannelAction.EXECUTE_TASK, execute)
        adapter = ServerlessWorkerAdapter(pools, lifecycle)
        outcome = await adapter.run(await _worker_task(lifecycle))

        error = outcome.completion.error
        assert outcome.completion.success is False
        assert error.code == "LEDGER_LOCKED"
        assert error.origin == ErrorOrigin.APP
        assert error.retry is True

    async def test_channel_failure_fails_task(self, pools, channel_pair, lifecycle):
        _, worker = channel_pair

        async def execute(req):
            await worker.close("worker crashed")

        worker.register_handler(ChannelAction.EXECUTE_TASK, execute)
        adapter = ServerlessWorkerAdapter(pools, lifecycle)
        task = await _worker_task(lifecycle)

        with pytest.raises(WorkerDispatchFailedError) as exc_info:
            await adapter.run(task)
        assert exc_info.value.recorded is True
        assert exc_info.value.cause.code == "CHANNEL_DISCONNECTED"

        stored = await lifecycle.get_task(task.id)
        assert stored.state == TaskState.FAILED
        assert stored.error.code == "WORKER_DISPATCH_FAILED"
        assert stored.error.origin == ErrorOrigin.INTERNAL
        assert stored.error.cause.code == "CHANNEL_DISCONNECTED"


class TestUnavailableThroughOrchestrator:
    async def test_not_ready_pool_fails_task(self, channel_pair, lifecycle, bus, modules):
        """A pool that never finished ``init`` is not ready; the task fails."""
        core, _ = channel_pair
        registry = WorkerPoolRegistry()
        registry.register(WorkerPool("cold", core), default=True)
        orchestrator = Orchestrator(
            lifecycle, bus, modules, [ServerlessWorkerAdapter(registry, lifecycle)]
        )
        task = await orchestrator.invoke("ledger", "record_invoice", actor="ops")
        final = await orchestrator.run_task(task.id)

        assert final.state == TaskState.FAILED
        assert final.error.code == "SERVERLESS_WORKER_UNAVAILABLE"
        assert final.error.origin == ErrorOrigin.INTERNAL
        assert final.error.error_class == ErrorClass.TRANSIENT
