"""
AWOC — Dispatch Adapters
==========================
Executors selected by handler kind.

Public API:
    DispatchAdapter, DispatchOutcome
    DockerRuntimeAdapter, DockerRuntimeClient, ContainerProfile, ContainerProfileRegistry
    ServerlessWorkerAdapter, WorkerPool, WorkerPoolRegistry, spawn_worker_pool
    HttpWorkerClient, HttpJobHandle
"""

from awoc.dispatch.base import DispatchAdapter, DispatchOutcome
from awoc.dispatch.docker import (
    BasicAuth,
    BearerAuth,
    ContainerInterface,
    ContainerProfile,
    ContainerProfileRegistry,
    DockerRuntimeAdapter,
    DockerRuntimeClient,
    NoAuth,
)
from awoc.dispatch.http_worker import HttpJobHandle, HttpWorkerClient
from awoc.dispatch.worker_pool import (
    ServerlessWorkerAdapter,
    WorkerPool,
    WorkerPoolRegistry,
    spawn_worker_pool,
)

__all__ = [
    "BasicAuth",
    "BearerAuth",
    "ContainerInterface",
    "ContainerProfile",
    "ContainerProfileRegistry",
    "DispatchAdapter",
    "DispatchOutcome",
    "DockerRuntimeAdapter",
    "DockerRuntimeClient",
    "HttpJobHandle",
    "HttpWorkerClient",
    "NoAuth",
    "ServerlessWorkerAdapter",
    "WorkerPool",
    "WorkerPoolRegistry",
    "spawn_worker_pool",
]
