"""
Container Runtime Adapter Tests
=================================
Validates:
- Control API client: endpoints, auth headers, error classification
- Create failure surfaces DOCKER_CREATE_CONTAINER_ERROR with the body
- Exec profile: task started before the container is created with the job
  payload; failed launches are recorded and cleaned up; one container per
  task under concurrent runners
- HTTP profile: readiness, submission and completion delivery
- Profile resolution from ``profile:job_class`` handler identifiers
"""

from __future__ import annotations

import asyncio
import base64
import json

import httpx
import pytest

from awoc.core.config import ContainerAuthScheme
from awoc.core.envelope import ErrorClass, ErrorOrigin
from awoc.core.exceptions import (
    ConfigurationError,
    ContainerRuntimeError,
    DispatchError,
    HandlerNotFoundError,
    NotReadyError,
)
from awoc.dispatch.docker import (
    CREATE_CONTAINER_ERROR,
    START_CONTAINER_ERROR,
    BasicAuth,
    BearerAuth,
    ContainerInterface,
    ContainerProfile,
    ContainerProfileRegistry,
    DockerRuntimeAdapter,
    DockerRuntimeClient,
    container_name,
)
from awoc.models.tasks import HandlerKind, ManualTrigger, TaskCompletion, TaskState
from awoc.orchestrator.orchestrator import Orchestrator


def _make_runtime(*, create_status: int = 201, start_status: int = 204, body: str | None = None):
    """MockTransport emulating the container runtime control API."""
    calls: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        if request.method == "DELETE":
            missing = request.url.path.endswith("/gone")
            return httpx.Response(404 if missing else 204, text="no such container")
        if request.url.path.endswith("/containers/create"):
            if create_status >= 300:
                return httpx.Response(create_status, text=body or "create failed")
            return httpx.Response(create_status, json={"Id": "c0ffee", "Warnings": []})
        if request.url.path.endswith("/start"):
            return httpx.Response(start_status, text=body or "")
        if request.url.path.endswith("/version"):
            return httpx.Response(200, json={"Version": "24.0.7", "ApiVersion": "1.43"})
        return httpx.Response(404, text="not found")

    return httpx.MockTransport(handler), calls


def _client(transport, **kwargs) -> DockerRuntimeClient:
    return DockerRuntimeClient("http://docker.local:2375", transport=transport, **kwargs)


@pytest.fixture
def profiles():
    registry = ContainerProfileRegistry()
    registry.register(
        ContainerProfile(
            name="media",
            image="media-worker:1.2",
            command=["python", "-m", "media"],
            environment={"LOG_FORMAT": "json"},
            labels={"team": "media"},
        )
    )
    registry.register(
        ContainerProfile(
            name="ocr",
            interface=ContainerInterface.HTTP,
            base_url="http://ocr:8080",
        )
    )
    return registry


async def _docker_task(lifecycle, handler_identifier: str = "media:thumbnail"):
    return await lifecycle.create_task(
        owner_identifier="gallery",
        task_identifier="make_thumbnail",
        handler_kind=HandlerKind.DOCKER,
        handler_identifier=handler_identifier,
        trigger=ManualTrigger(actor="ops"),
        input_data={"object_key": "cat.png"},
    )


# ── Control API client ──────────────────────────────────────────────────


class TestRuntimeClient:
    async def test_create_container_body(self):
        transport, calls = _make_runtime()
        container_id = await _client(transport).create_container(
            "media-worker:1.2",
            command=["run", "payload"],
            env={"A": "1"},
            labels={"awoc.task_id": "t"},
        )
        assert container_id == "c0ffee"
        request = calls[0]
        assert request.url.path == "/v1.43/containers/create"
        assert json.loads(request.content) == {
            "Image": "media-worker:1.2",
            "Cmd": ["run", "payload"],
            "Env": ["A=1"],
            "Labels": {"awoc.task_id": "t"},
        }

    async def test_create_500_is_create_container_error(self):
        transport, _ = _make_runtime(create_status=500, body="daemon out of disk")
        with pytest.raises(ContainerRuntimeError) as exc_info:
            await _client(transport).create_container("img")

        err = exc_info.value
        env = err.to_envelope()
        assert env.code == CREATE_CONTAINER_ERROR
        assert env.origin == ErrorOrigin.INTERNAL
        assert env.error_class == ErrorClass.TRANSIENT
        assert env.retry is True
        assert env.details["body"] == "daemon out of disk"
        assert env.details["status_code"] == 500
        assert "daemon out of disk" in env.message

    async def test_create_404_is_permanent(self):
        transport, _ = _make_runtime(create_status=404, body="no such image")
        with pytest.raises(ContainerRuntimeError) as exc_info:
            await _client(transport).create_container("missing:latest")
        assert exc_info.value.error_class == ErrorClass.PERMANENT
        assert exc_info.value.retry is False

    async def test_start_accepts_already_started(self):
        transport, calls = _make_runtime(start_status=304)
        await _client(transport).start_container("c0ffee")
        assert calls[0].url.path == "/v1.43/containers/c0ffee/start"

    async def test_remove_tolerates_missing_container(self):
        transport, calls = _make_runtime()
        await _client(transport).remove_container("gone")
        assert calls[0].method == "DELETE"
        assert calls[0].url.path == "/v1.43/containers/gone"

    async def test_start_failure(self):
        transport, _ = _make_runtime(start_status=500, body="oci runtime error")
        with pytest.raises(ContainerRuntimeError) as exc_info:
            await _client(transport).start_container("c0ffee")
        assert exc_info.value.code == START_CONTAINER_ERROR

    async def test_transport_failure_is_transient_dispatch_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(DispatchError) as exc_info:
            await _client(httpx.MockTransport(handler)).create_container("img")
        assert exc_info.value.code == CREATE_CONTAINER_ERROR
        assert exc_info.value.error_class == ErrorClass.TRANSIENT

    async def test_bearer_auth_header(self):
        transport, calls = _make_runtime()
        client = _client(transport, auth=BearerAuth(api_key="s3cret"))
        await client.version()
        assert calls[0].headers["Authorization"] == "Bearer s3cret"

    async def test_basic_auth_header(self):
        transport, calls = _make_runtime()
        client = _client(transport, auth=BasicAuth(username="ops", password="pw"))
        await client.version()
        expected = base64.b64encode(b"ops:pw").decode()
        assert calls[0].headers["Authorization"] == f"Basic {expected}"

    async def test_test_connection(self):
        transport, _ = _make_runtime()
        assert await _client(transport).test_connection() is True

        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        assert await _client(httpx.MockTransport(handler)).test_connection() is False


class TestRuntimeConfig:
    def test_unix_socket_url(self):
        client = DockerRuntimeClient("unix:///var/run/docker.sock")
        assert client.socket_path == "/var/run/docker.sock"

    def test_bare_socket_path(self):
        assert DockerRuntimeClient("/run/podman.sock").socket_path == "/run/podman.sock"

    def test_unsupported_endpoint(self):
        with pytest.raises(ConfigurationError):
            DockerRuntimeClient("tcp://docker:2375")

    def test_from_settings_bearer(self, monkeypatch):
        monkeypatch.setenv("AWOC_DOCKER_AUTH_SCHEME", ContainerAuthScheme.BEARER.value)
        monkeypatch.setenv("AWOC_DOCKER_API_KEY", "k")
        monkeypatch.setenv("AWOC_DOCKER_HOST", "https://runtime.example:2376")
        client = DockerRuntimeClient.from_settings()
        assert client.socket_path is None

    def test_from_settings_basic_requires_credentials(self, monkeypatch):
        monkeypatch.setenv("AWOC_DOCKER_AUTH_SCHEME", ContainerAuthScheme.BASIC.value)
        monkeypatch.delenv("AWOC_DOCKER_USERNAME", raising=False)
        with pytest.raises(ConfigurationError):
            DockerRuntimeClient.from_settings()


# ── Profiles ────────────────────────────────────────────────────────────


class TestProfiles:
    def test_resolve(self, profiles):
        profile, job_class = profiles.resolve("media:thumbnail")
        assert profile.name == "media"
        assert job_class == "thumbnail"

    @pytest.mark.parametrize("identifier", [None, "media", "media:", "video:encode"])
    def test_unresolvable(self, profiles, identifier):
        with pytest.raises(HandlerNotFoundError):
            profiles.resolve(identifier)

    def test_exec_profile_needs_image(self):
        with pytest.raises(ConfigurationError):
            ContainerProfileRegistry().register(ContainerProfile(name="x", command=["run"]))

    def test_http_profile_needs_base_url(self):
        with pytest.raises(ConfigurationError):
            ContainerProfileRegistry().register(
                ContainerProfile(name="x", interface=ContainerInterface.HTTP)
            )


# ── Adapter ─────────────────────────────────────────────────────────────


class TestExecDispatch:
    async def test_run_creates_and_starts_container(self, lifecycle, profiles, tmp_path):
        transport, calls = _make_runtime()
        adapter = DockerRuntimeAdapter(
            _client(transport), profiles, lifecycle, result_dir=str(tmp_path)
        )
        task = await _docker_task(lifecycle)
        outcome = await adapter.run(task)

        assert outcome.pending is True
        assert outcome.start_context["container_id"] == "c0ffee"

        body = json.loads(calls[0].content)
        assert body["Image"] == "media-worker:1.2"
        assert body["Cmd"][:3] == ["python", "-m", "media"]
        payload = json.loads(base64.b64decode(body["Cmd"][-1]))
        assert payload == {
            "job_id": str(task.id),
            "job_class": "thumbnail",
            "job_input": {"object_key": "cat.png"},
        }
        assert "LOG_FORMAT=json" in body["Env"]
        assert f"AWOC_RESULT_FILE={tmp_path}/{task.id}.json" in body["Env"]
        assert body["Labels"]["awoc.task_id"] == str(task.id)
        assert body["Labels"]["team"] == "media"

        stored = await lifecycle.get_task(task.id)
        assert stored.state == TaskState.STARTED
        assert stored.start_context["interface"] == "exec"

    async def test_create_failure_recorded_on_task(self, lifecycle, profiles):
        transport, calls = _make_runtime(create_status=500, body="boom")
        adapter = DockerRuntimeAdapter(_client(transport), profiles, lifecycle)
        task = await _docker_task(lifecycle)

        with pytest.raises(ContainerRuntimeError) as exc_info:
            await adapter.run(task)
        assert exc_info.value.code == CREATE_CONTAINER_ERROR
        assert exc_info.value.recorded is True
        assert [r.method for r in calls] == ["POST"]

        stored = await lifecycle.get_task(task.id)
        assert stored.state == TaskState.FAILED
        assert stored.started_at is not None
        assert stored.error.code == CREATE_CONTAINER_ERROR

    async def test_start_failure_removes_container(self, lifecycle, profiles):
        transport, calls = _make_runtime(start_status=500, body="oci runtime error")
        adapter = DockerRuntimeAdapter(_client(transport), profiles, lifecycle)
        task = await _docker_task(lifecycle)

        with pytest.raises(ContainerRuntimeError) as exc_info:
            await adapter.run(task)
        assert exc_info.value.code == START_CONTAINER_ERROR

        removal = calls[-1]
        assert removal.method == "DELETE"
        assert removal.url.path == "/v1.43/containers/c0ffee"
        assert removal.url.params["force"] == "true"
        assert (await lifecycle.get_task(task.id)).error.code == START_CONTAINER_ERROR

    async def test_container_named_after_task(self, lifecycle, profiles, tmp_path):
        transport, calls = _make_runtime()
        adapter = DockerRuntimeAdapter(
            _client(transport), profiles, lifecycle, result_dir=str(tmp_path)
        )
        task = await _docker_task(lifecycle)
        await adapter.run(task)

        assert calls[0].url.params["name"] == container_name(task)
        stored = await lifecycle.get_task(task.id)
        assert stored.start_context["container_name"] == f"awoc-task-{task.id}"

    async def test_concurrent_runners_launch_one_container(
        self, lifecycle, bus, modules, profiles, tmp_path
    ):
        transport, calls = _make_runtime()
        runners = [
            Orchestrator(
                lifecycle,
                bus,
                modules,
                [
                    DockerRuntimeAdapter(
                        _client(transport), profiles, lifecycle, result_dir=str(tmp_path)
                    )
                ],
                immediate=False,
            )
            for _ in range(2)
        ]
        task = await _docker_task(lifecycle)

        await asyncio.gather(*(runner.run_task(task.id) for runner in runners))

        creates = [r for r in calls if r.url.path.endswith("/containers/create")]
        assert len(creates) == 1
        stored = await lifecycle.get_task(task.id)
        assert stored.state == TaskState.STARTED

    async def test_collect_result(self, lifecycle, profiles, tmp_path):
        transport, _ = _make_runtime()
        adapter = DockerRuntimeAdapter(
            _client(transport), profiles, lifecycle, result_dir=str(tmp_path)
        )
        task = await _docker_task(lifecycle)
        await adapter.run(task)
        started = await lifecycle.get_task(task.id)
        assert await adapter.collect_result(started) is None

        (tmp_path / f"{task.id}.json").write_text(
            json.dumps({"success": True, "result": {"thumb": "cat_64.png"}})
        )
        completion = await adapter.collect_result(started)
        assert completion.output == {"thumb": "cat_64.png"}


def _make_http_worker(*, ready: bool = True):
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/health/ready":
            return httpx.Response(200, json={"ready": ready})
        if request.url.path == "/job":
            return httpx.Response(202, json={"accepted": True})
        job_id = request.url.path.rsplit("/", 1)[-1]
        return httpx.Response(
            200, json={"job_id": job_id, "status": "success", "result": {"text": "hello"}}
        )

    return httpx.MockTransport(handler)


class TestHttpDispatch:
    async def test_completion_delivered_to_sink(self, lifecycle, profiles):
        runtime, _ = _make_runtime()
        adapter = DockerRuntimeAdapter(
            _client(runtime), profiles, lifecycle, http_transport=_make_http_worker()
        )
        delivered = asyncio.Event()
        results = []

        async def sink(task_id, completion: TaskCompletion):
            results.append(await lifecycle.complete_task(task_id, completion))
            delivered.set()

        adapter.bind_completion_sink(sink)
        task = await _docker_task(lifecycle, "ocr:extract_text")
        outcome = await adapter.run(task)
        assert outcome.pending is True

        await asyncio.wait_for(delivered.wait(), 2.0)
        assert results[0].applied is True
        assert results[0].task.state == TaskState.COMPLETED
        assert results[0].task.output == {"text": "hello"}
        await adapter.aclose()

    async def test_not_ready_worker(self, lifecycle, profiles):
        runtime, _ = _make_runtime()
        adapter = DockerRuntimeAdapter(
            _client(runtime), profiles, lifecycle,
            http_transport=_make_http_worker(ready=False),
        )
        task = await _docker_task(lifecycle, "ocr:extract_text")
        with pytest.raises(NotReadyError) as exc_info:
            await adapter.run(task)
        assert exc_info.value.code == "DOCKER_WORKER_UNAVAILABLE"
        assert (await lifecycle.get_task(task.id)).state == TaskState.CREATED
