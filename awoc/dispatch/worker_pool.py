"""
AWOC — Serverless Worker Pools
================================
Worker pools reached over the worker channel, the registry mapping owners
to pools, and the adapter that runs ``worker`` tasks on them.

A pool owns one channel.  It becomes ready once the worker manager has
acknowledged ``init`` and stops being ready when the channel closes.

Usage:
    pool = await spawn_worker_pool("default")
    pools = WorkerPoolRegistry()
    pools.register(pool, default=True)
    adapter = ServerlessWorkerAdapter(pools, lifecycle)
"""

from __future__ import annotations

import shlex
import uuid
from typing import TYPE_CHECKING, Iterable

from awoc.channel.messages import (
    AnalyzeObjectRequest,
    AnalyzeObjectResult,
    ChannelAction,
    ExecuteSystemRequest,
    ExecuteTaskRequest,
    ExecutionOptions,
    InitRequest,
    SystemRequest,
    SystemRequestResult,
    TaskDTO,
    UpdateAppHashMappingRequest,
)
from awoc.channel.protocol import RequestHandler, WorkerChannel, open_subprocess_channel
from awoc.core.config import get_settings
from awoc.core.exceptions import (
    ChannelError,
    ConfigurationError,
    NotReadyError,
    WorkerDispatchFailedError,
)
from awoc.core.logging import get_logger
from awoc.core.tracing import create_span
from awoc.dispatch.base import DispatchAdapter, DispatchOutcome
from awoc.models.tasks import HandlerKind, Task, TaskCompletion

if TYPE_CHECKING:
    from awoc.orchestrator.lifecycle import TaskLifecycleManager

logger = get_logger(__name__)

WORKER_UNAVAILABLE = "SERVERLESS_WORKER_UNAVAILABLE"


class WorkerPool:
    """One worker manager process (or in-process peer) behind a channel."""

    def __init__(
        self,
        name: str,
        channel: WorkerChannel,
        *,
        instance_id: str | None = None,
        server_base_url: str | None = None,
        execution_options: ExecutionOptions | None = None,
    ) -> None:
        self.name = name
        self._channel = channel
        self._instance_id = instance_id or uuid.uuid4().hex
        self._server_base_url = server_base_url
        self._execution_options = execution_options
        self._ready = False
        self.app_ui_hash_mapping: dict[str, str] = {}
        self.app_worker_hash_mapping: dict[str, str] = {}
        channel.on_close(self._on_channel_closed)

    @property
    def channel(self) -> WorkerChannel:
        return self._channel

    @property
    def ready(self) -> bool:
        return self._ready and self._channel.is_open

    async def start(
        self,
        app_ui_hash_mapping: dict[str, str] | None = None,
        app_worker_hash_mapping: dict[str, str] | None = None,
    ) -> None:
        """Open the channel and send ``init``; ready on success."""
        self.app_ui_hash_mapping = dict(app_ui_hash_mapping or {})
        self.app_worker_hash_mapping = dict(app_worker_hash_mapping or {})
        await self._channel.start()
        await self._channel.request_result(
            ChannelAction.INIT,
            InitRequest(
                instance_id=self._instance_id,
                app_ui_hash_mapping=self.app_ui_hash_mapping,
                app_worker_hash_mapping=self.app_worker_hash_mapping,
                server_base_url=self._server_base_url,
                execution_options=self._execution_options,
            ),
        )
        self._ready = True
        logger.info("worker_pool.ready", pool=self.name, instance_id=self._instance_id)

    async def update_hash_mapping(
        self,
        app_ui_hash_mapping: dict[str, str],
        app_worker_hash_mapping: dict[str, str],
    ) -> None:
        await self._channel.request_result(
            ChannelAction.UPDATE_APP_HASH_MAPPING,
            UpdateAppHashMappingRequest(
                app_ui_hash_mapping=app_ui_hash_mapping,
                app_worker_hash_mapping=app_worker_hash_mapping,
            ),
        )
        self.app_ui_hash_mapping = dict(app_ui_hash_mapping)
        self.app_worker_hash_mapping = dict(app_worker_hash_mapping)
        logger.info(
            "worker_pool.mapping_updated",
            pool=self.name,
            apps=len(app_worker_hash_mapping),
        )

    async def analyze_object(self, folder_id: str, object_key: str) -> AnalyzeObjectResult:
        return await self._channel.request_result(
            ChannelAction.ANALYZE_OBJECT,
            AnalyzeObjectRequest(folder_id=folder_id, object_key=object_key),
        )

    async def execute_system_request(
        self,
        app_identifier: str,
        worker_identifier: str,
        request: SystemRequest,
    ) -> SystemRequestResult:
        return await self._channel.request_result(
            ChannelAction.EXECUTE_SYSTEM_REQUEST,
            ExecuteSystemRequest(
                app_identifier=app_identifier,
                worker_identifier=worker_identifier,
                request=request,
            ),
        )

    async def stop(self, reason: str = "pool stopped") -> None:
        self._ready = False
        await self._channel.close(reason)

    def _on_channel_closed(self, reason: str) -> None:
        if self._ready:
            logger.warning("worker_pool.lost", pool=self.name, reason=reason)
        self._ready = False


async def spawn_worker_pool(
    name: str,
    command: list[str] | None = None,
    *,
    handlers: dict[ChannelAction, RequestHandler] | None = None,
    app_ui_hash_mapping: dict[str, str] | None = None,
    app_worker_hash_mapping: dict[str, str] | None = None,
) -> WorkerPool:
    """Spawn a worker manager process and initialise a pool on it."""
    if command is None:
        configured = get_settings().worker_manager_command
        if not configured:
            raise ConfigurationError(
                "AWOC_WORKER_MANAGER_COMMAND is required to spawn a worker pool"
            )
        command = shlex.split(configured)
    channel = await open_subprocess_channel(command, name=name, handlers=handlers)
    pool = WorkerPool(name, channel)
    await pool.start(app_ui_hash_mapping, app_worker_hash_mapping)
    return pool


class WorkerPoolRegistry:
    """Owner identifier → pool, with an optional default pool."""

    def __init__(self) -> None:
        self._pools: dict[str, WorkerPool] = {}
        self._owners: dict[str, str] = {}
        self._default: str | None = None

    def register(
        self,
        pool: WorkerPool,
        owners: Iterable[str] = (),
        *,
        default: bool = False,
    ) -> None:
        self._pools[pool.name] = pool
        for owner in owners:
            self._owners[owner] = pool.name
        if default:
            self._default = pool.name

    def unregister(self, name: str) -> WorkerPool | None:
        pool = self._pools.pop(name, None)
        self._owners = {o: p for o, p in self._owners.items() if p != name}
        if self._default == name:
            self._default = None
        return pool

    def resolve(self, owner_identifier: str) -> WorkerPool | None:
        name = self._owners.get(owner_identifier, self._default)
        return self._pools.get(name) if name else None

    @property
    def pools(self) -> list[WorkerPool]:
        return list(self._pools.values())

    async def close_all(self) -> None:
        for pool in list(self._pools.values()):
            await pool.stop("registry closed")


class ServerlessWorkerAdapter(DispatchAdapter):
    """
    Runs ``worker`` tasks on the owner's worker pool.

    - Pool missing or not ready → ``NotReadyError`` (fail fast, task
      untouched).
    - Ready → the task is marked started, then ``execute_task`` is sent.
    - Channel failure → the task is failed with ``WORKER_DISPATCH_FAILED``
      and the same error is raised.
    - Failure response → outcome carrying the worker's envelope.
    """

    kind = HandlerKind.WORKER

    def __init__(
        self,
        pools: WorkerPoolRegistry,
        lifecycle: TaskLifecycleManager,
    ) -> None:
        super().__init__()
        self._pools = pools
        self._lifecycle = lifecycle

    async def run(self, task: Task) -> DispatchOutcome:
        pool = self._pools.resolve(task.owner_identifier)
        if pool is None or not pool.ready:
            raise NotReadyError(
                f"No ready worker pool for '{task.owner_identifier}'",
                code=WORKER_UNAVAILABLE,
                task_id=str(task.id),
                details={"pool": pool.name if pool else None},
            )

        start_context = {"executor": "serverless", "pool": pool.name}
        started = await self._lifecycle.start_task(task.id, start_context)

        with create_span("worker.execute_task", task_id=str(task.id)) as span:
            try:
                response = await pool.channel.request(
                    ChannelAction.EXECUTE_TASK,
                    ExecuteTaskRequest(
                        task=TaskDTO.from_task(started),
                        app_identifier=task.owner_identifier,
                        worker_identifier=task.handler_identifier or task.task_identifier,
                    ),
                )
            except ChannelError as exc:
                error = WorkerDispatchFailedError(
                    f"Failed to deliver task {task.id} to pool '{pool.name}'",
                    cause=exc,
                    task_id=str(task.id),
                    details={"pool": pool.name},
                )
                logger.error(
                    "worker.dispatch_failed",
                    task_id=str(task.id),
                    pool=pool.name,
                    cause=exc.code,
                )
                await self._lifecycle.complete_task(
                    task.id, TaskCompletion.failed(error.to_envelope())
                )
                error.recorded = True
                raise error from exc

        logger.info(
            "worker.task_executed",
            task_id=str(task.id),
            pool=pool.name,
            success=response.success,
            duration_ms=span.duration_ms,
        )
        if response.success:
            return DispatchOutcome(
                completion=TaskCompletion.succeeded(), start_context=start_context
            )
        return DispatchOutcome(
            completion=TaskCompletion.failed(response.error),
            start_context=start_context,
        )
