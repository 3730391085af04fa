"""
AWOC — Container Runtime Adapter
==================================
Dispatches ``docker`` tasks to a Docker-compatible control API.

Two container profile interfaces:
- ``exec``  — one container per job.  The job payload and result-file path
  are passed with the exec-style convention; the task is marked started,
  then the container is created and started and the adapter returns
  without waiting.  A failed launch removes the container and records
  the failure on the task.  Completion arrives
  through the orchestrator's external completion hook (or
  :meth:`DockerRuntimeAdapter.collect_result` when the result directory
  is shared).
- ``http``  — a long-running worker container reachable over HTTP.  Jobs
  are submitted with :class:`HttpWorkerClient`; completion is delivered to
  the bound completion sink.

Handler identifiers take the form ``profile:job_class``.

Usage:
    client = DockerRuntimeClient.from_settings()
    profiles = ContainerProfileRegistry()
    profiles.register(ContainerProfile(name="media", image="media:1", command=["run"]))
    adapter = DockerRuntimeAdapter(client, profiles, lifecycle)
"""

from __future__ import annotations

import base64
from enum import StrEnum
from typing import TYPE_CHECKING, Annotated, Any, Literal, Union

import httpx
from pydantic import BaseModel, Field, SecretStr

from awoc.core.config import ContainerAuthScheme, get_settings
from awoc.core.exceptions import (
    ConfigurationError,
    ContainerRuntimeError,
    DispatchError,
    HandlerNotFoundError,
    NotReadyError,
)
from awoc.core.logging import get_logger
from awoc.core.tracing import TracingContext, create_span
from awoc.dispatch.base import DispatchAdapter, DispatchOutcome
from awoc.dispatch.exec_convention import build_exec_invocation, read_result_file
from awoc.dispatch.http_worker import HttpWorkerClient
from awoc.models.tasks import HandlerKind, Task, TaskCompletion

if TYPE_CHECKING:
    from awoc.orchestrator.lifecycle import TaskLifecycleManager

logger = get_logger(__name__)

CREATE_CONTAINER_ERROR = "DOCKER_CREATE_CONTAINER_ERROR"
START_CONTAINER_ERROR = "DOCKER_START_CONTAINER_ERROR"
REMOVE_CONTAINER_ERROR = "DOCKER_REMOVE_CONTAINER_ERROR"


# ── Authentication ──────────────────────────────────────────────────────


class NoAuth(BaseModel):
    type: Literal["none"] = "none"

    def headers(self) -> dict[str, str]:
        return {}


class BasicAuth(BaseModel):
    type: Literal["basic"] = "basic"
    username: str
    password: SecretStr

    def headers(self) -> dict[str, str]:
        raw = f"{self.username}:{self.password.get_secret_value()}"
        token = base64.b64encode(raw.encode("utf-8")).decode("ascii")
        return {"Authorization": f"Basic {token}"}


class BearerAuth(BaseModel):
    type: Literal["bearer"] = "bearer"
    api_key: SecretStr

    def headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key.get_secret_value()}"}


DockerAuth = Annotated[Union[NoAuth, BasicAuth, BearerAuth], Field(discriminator="type")]


# ── Control API client ──────────────────────────────────────────────────


class DockerRuntimeClient:
    """
    Minimal client for the container runtime control API.

    ``host`` is an ``http(s)://`` URL, a ``unix://`` URL or a bare socket path.
    Every call carries a timeout; timeouts and transport failures raise a
    transient :class:`DispatchError`, non-2xx answers a
    :class:`ContainerRuntimeError`.
    """

    def __init__(
        self,
        host: str,
        *,
        api_version: str = "1.43",
        auth: NoAuth | BasicAuth | BearerAuth | None = None,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if host.startswith(("http://", "https://")):
            self._base_url = host.rstrip("/")
            self._socket_path = None
        elif host.startswith("unix://") or host.startswith("/"):
            self._socket_path = host.removeprefix("unix://")
            self._base_url = "http://docker"
        else:
            raise ConfigurationError(
                f"Unsupported container runtime endpoint: {host!r}",
                details={"host": host},
            )
        self._api_version = api_version
        self._auth = auth or NoAuth()
        self._timeout = timeout
        self._transport = transport

    @classmethod
    def from_settings(cls) -> DockerRuntimeClient:
        """Create a client from application settings."""
        settings = get_settings()
        auth: NoAuth | BasicAuth | BearerAuth
        if settings.docker_auth_scheme == ContainerAuthScheme.BASIC:
            if not settings.docker_username or settings.docker_password is None:
                raise ConfigurationError(
                    "AWOC_DOCKER_USERNAME and AWOC_DOCKER_PASSWORD are required "
                    "for basic auth"
                )
            auth = BasicAuth(
                username=settings.docker_username,
                password=settings.docker_password,
            )
        elif settings.docker_auth_scheme == ContainerAuthScheme.BEARER:
            if settings.docker_api_key is None:
                raise ConfigurationError(
                    "AWOC_DOCKER_API_KEY is required for bearer auth"
                )
            auth = BearerAuth(api_key=settings.docker_api_key)
        else:
            auth = NoAuth()
        return cls(
            settings.docker_host,
            api_version=settings.docker_api_version,
            auth=auth,
            timeout=settings.docker_timeout_seconds,
        )

    @property
    def socket_path(self) -> str | None:
        return self._socket_path

    def _client(self) -> httpx.AsyncClient:
        transport = self._transport
        if transport is None and self._socket_path is not None:
            transport = httpx.AsyncHTTPTransport(uds=self._socket_path)
        return httpx.AsyncClient(
            base_url=self._base_url,
            timeout=self._timeout,
            transport=transport,
        )

    def _path(self, path: str) -> str:
        return f"/v{self._api_version}{path}"

    async def _request(
        self,
        method: str,
        path: str,
        *,
        error_code: str,
        error_message: str,
        json: Any = None,
        params: dict[str, str] | None = None,
        accept: tuple[int, ...] = (),
    ) -> httpx.Response:
        headers = TracingContext.current().inject_headers(self._auth.headers())
        url = self._path(path)
        try:
            async with self._client() as client:
                response = await client.request(
                    method, url, json=json, params=params, headers=headers
                )
        except httpx.TimeoutException as exc:
            raise DispatchError(
                f"{error_message}: timed out after {self._timeout}s",
                code=error_code,
                details={"path": url},
            ) from exc
        except httpx.TransportError as exc:
            raise DispatchError(
                f"{error_message}: {exc}",
                code=error_code,
                details={"path": url},
            ) from exc

        if not response.is_success and response.status_code not in accept:
            raise ContainerRuntimeError(
                error_message,
                status_code=response.status_code,
                body=response.text,
                code=error_code,
            )
        return response

    async def create_container(
        self,
        image: str,
        *,
        command: list[str] | None = None,
        env: dict[str, str] | None = None,
        labels: dict[str, str] | None = None,
        name: str | None = None,
    ) -> str:
        """Create a container and return its id.  A taken ``name`` is a 409."""
        body: dict[str, Any] = {"Image": image}
        if command:
            body["Cmd"] = command
        if env:
            body["Env"] = [f"{key}={value}" for key, value in env.items()]
        if labels:
            body["Labels"] = labels

        response = await self._request(
            "POST",
            "/containers/create",
            json=body,
            params={"name": name} if name else None,
            error_code=CREATE_CONTAINER_ERROR,
            error_message="Failed to create container",
        )
        try:
            container_id = response.json()["Id"]
        except (ValueError, KeyError, TypeError) as exc:
            raise ContainerRuntimeError(
                "Container create response has no Id",
                status_code=response.status_code,
                body=response.text,
                code=CREATE_CONTAINER_ERROR,
            ) from exc
        logger.info("docker.container_created", container_id=container_id, image=image)
        return container_id

    async def start_container(self, container_id: str) -> None:
        # 304: already started
        await self._request(
            "POST",
            f"/containers/{container_id}/start",
            error_code=START_CONTAINER_ERROR,
            error_message="Failed to start container",
            accept=(304,),
        )
        logger.info("docker.container_started", container_id=container_id)

    async def remove_container(self, container_id: str) -> None:
        """Force-remove a container; an already missing one is fine."""
        await self._request(
            "DELETE",
            f"/containers/{container_id}",
            params={"force": "true"},
            error_code=REMOVE_CONTAINER_ERROR,
            error_message="Failed to remove container",
            accept=(404,),
        )
        logger.info("docker.container_removed", container_id=container_id)

    async def version(self) -> dict[str, Any]:
        response = await self._request(
            "GET",
            "/version",
            error_code="DOCKER_CONNECTION_ERROR",
            error_message="Failed to query container runtime version",
        )
        return response.json()

    async def test_connection(self) -> bool:
        try:
            info = await self.version()
        except (DispatchError, ValueError) as exc:
            logger.warning("docker.connection_failed", error=str(exc))
            return False
        logger.info("docker.connection_ok", version=info.get("Version"))
        return True


# ── Profiles ────────────────────────────────────────────────────────────


class ContainerInterface(StrEnum):
    EXEC = "exec"
    HTTP = "http"


class ContainerProfile(BaseModel):
    """How jobs for one profile are run."""

    name: str = Field(pattern=r"^[a-z0-9_\-]+$")
    interface: ContainerInterface = ContainerInterface.EXEC
    image: str | None = None
    command: list[str] = Field(default_factory=list)
    environment: dict[str, str] = Field(default_factory=dict)
    labels: dict[str, str] = Field(default_factory=dict)
    base_url: str | None = None


class ContainerProfileRegistry:
    """Profiles addressable by the ``profile`` half of a handler identifier."""

    def __init__(self) -> None:
        self._profiles: dict[str, ContainerProfile] = {}

    def register(self, profile: ContainerProfile) -> None:
        if profile.interface == ContainerInterface.EXEC and (
            not profile.image or not profile.command
        ):
            raise ConfigurationError(
                f"Exec profile '{profile.name}' needs an image and a command"
            )
        if profile.interface == ContainerInterface.HTTP and not profile.base_url:
            raise ConfigurationError(
                f"HTTP profile '{profile.name}' needs a base_url"
            )
        self._profiles[profile.name] = profile

    def get(self, name: str) -> ContainerProfile | None:
        return self._profiles.get(name)

    @property
    def profiles(self) -> list[ContainerProfile]:
        return list(self._profiles.values())

    def resolve(self, handler_identifier: str | None) -> tuple[ContainerProfile, str]:
        """Split ``profile:job_class`` and return the profile and job class."""
        name, sep, job_class = (handler_identifier or "").partition(":")
        if not sep or not job_class:
            raise HandlerNotFoundError(
                f"Container handler '{handler_identifier}' is not of the form "
                "'profile:job_class'",
                details={"handler_identifier": handler_identifier},
            )
        profile = self._profiles.get(name)
        if profile is None:
            raise HandlerNotFoundError(
                f"Unknown container profile '{name}'",
                details={"handler_identifier": handler_identifier},
            )
        return profile, job_class


# ── Adapter ─────────────────────────────────────────────────────────────


def container_name(task: Task) -> str:
    """Exec containers are named after their task; one container per task."""
    return f"awoc-task-{task.id}"


class DockerRuntimeAdapter(DispatchAdapter):
    """
    Runs ``docker`` tasks.  The task is marked started before any container
    or job submission, so only one runner ever launches it.
    """

    kind = HandlerKind.DOCKER

    def __init__(
        self,
        client: DockerRuntimeClient,
        profiles: ContainerProfileRegistry,
        lifecycle: TaskLifecycleManager,
        *,
        result_dir: str | None = None,
        http_transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__()
        self._client = client
        self._profiles = profiles
        self._lifecycle = lifecycle
        self._result_dir = result_dir or get_settings().docker_result_dir
        self._http_transport = http_transport
        self._http_clients: dict[str, HttpWorkerClient] = {}

    async def run(self, task: Task) -> DispatchOutcome:
        profile, job_class = self._profiles.resolve(task.handler_identifier)
        if profile.interface == ContainerInterface.HTTP:
            return await self._run_http(task, profile, job_class)
        return await self._run_exec(task, profile, job_class)

    async def _run_exec(
        self, task: Task, profile: ContainerProfile, job_class: str
    ) -> DispatchOutcome:
        invocation = build_exec_invocation(
            profile.command,
            job_id=str(task.id),
            job_class=job_class,
            job_input=task.input_data,
            result_dir=self._result_dir,
        )
        start_context = {
            "executor": "docker",
            "interface": ContainerInterface.EXEC.value,
            "profile": profile.name,
            "container_name": container_name(task),
            "result_path": invocation.result_path,
        }
        # a concurrent runner loses here with TaskConflictError
        await self._lifecycle.start_task(task.id, start_context)

        container_id: str | None = None
        with create_span("docker.run", task_id=str(task.id)) as span:
            try:
                container_id = await self._client.create_container(
                    profile.image,
                    command=invocation.argv,
                    env={**profile.environment, **invocation.env},
                    labels={
                        **profile.labels,
                        "awoc.task_id": str(task.id),
                        "awoc.owner": task.owner_identifier,
                        "awoc.job_class": job_class,
                    },
                    name=start_context["container_name"],
                )
                await self._client.start_container(container_id)
            except DispatchError as exc:
                if container_id is not None:
                    await self._discard_container(container_id)
                await self._lifecycle.complete_task(
                    task.id, TaskCompletion.failed(exc.to_envelope())
                )
                exc.recorded = True
                raise

        logger.info(
            "docker.task_dispatched",
            task_id=str(task.id),
            container_id=container_id,
            duration_ms=span.duration_ms,
        )
        return DispatchOutcome(start_context={**start_context, "container_id": container_id})

    async def _discard_container(self, container_id: str) -> None:
        try:
            await self._client.remove_container(container_id)
        except DispatchError as exc:
            logger.warning(
                "docker.container_leaked", container_id=container_id, error=exc.code
            )

    async def _run_http(
        self, task: Task, profile: ContainerProfile, job_class: str
    ) -> DispatchOutcome:
        client = self._http_client(profile)
        if not await client.is_ready():
            raise NotReadyError(
                f"HTTP worker for profile '{profile.name}' is not ready",
                code="DOCKER_WORKER_UNAVAILABLE",
                task_id=str(task.id),
                details={"profile": profile.name, "base_url": profile.base_url},
            )
        start_context = {
            "executor": "docker",
            "interface": ContainerInterface.HTTP.value,
            "profile": profile.name,
            "base_url": profile.base_url,
        }
        # started before submission so a fast completion never precedes the start
        await self._lifecycle.start_task(task.id, start_context)
        await client.submit(
            str(task.id),
            job_class,
            task.input_data,
            on_complete=lambda _job_id, completion: self._deliver(task, completion),
        )
        return DispatchOutcome(start_context=start_context)

    def _http_client(self, profile: ContainerProfile) -> HttpWorkerClient:
        client = self._http_clients.get(profile.name)
        if client is None:
            client = HttpWorkerClient(profile.base_url, transport=self._http_transport)
            self._http_clients[profile.name] = client
        return client

    async def _deliver(self, task: Task, completion: TaskCompletion) -> None:
        if self._completion_sink is None:
            logger.error("docker.no_completion_sink", task_id=str(task.id))
            return
        await self._completion_sink(task.id, completion)

    async def collect_result(self, task: Task) -> TaskCompletion | None:
        """
        Read the result file of an exec-style job, if it has been written.

        Only meaningful when the result directory is shared with the
        containers.
        """
        path = (task.start_context or {}).get("result_path")
        if not path:
            return None
        return read_result_file(path)

    async def aclose(self) -> None:
        for client in self._http_clients.values():
            await client.aclose()
