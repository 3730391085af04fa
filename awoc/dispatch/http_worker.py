"""
AWOC — HTTP Worker Client
===========================
Client for long-running worker containers that accept jobs over HTTP.

Endpoints:
    GET  /health/ready  → {"ready": true}
    POST /job           {job_id, job_class, job_input} → {accepted, job_id}
    GET  /job/{id}      → {job_id, status, result?, error?}

``submit()`` returns once the job is accepted.  The result is awaited by a
tracked background task that polls the job and hands the completion to a
callback; polling failures become an internal transient envelope on that
completion, worker failures an ``app``-origin one.

Usage:
    client = HttpWorkerClient("http://thumbnailer:8080")
    handle = await client.submit(str(task.id), "thumbnail", task.input_data,
                                 on_complete=record_completion)
    completion = await handle.wait()
"""

from __future__ import annotations

import asyncio
from enum import StrEnum
from typing import Any, Awaitable, Callable

import httpx
from pydantic import BaseModel, ValidationError

from awoc.core.config import get_settings
from awoc.core.envelope import ErrorClass
from awoc.core.exceptions import AppWorkerError, DispatchError
from awoc.core.logging import get_logger
from awoc.core.tracing import TracingContext, create_span
from awoc.models.tasks import TaskCompletion

logger = get_logger(__name__)

JobCallback = Callable[[str, TaskCompletion], Awaitable[Any]]


class HttpJobStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"

    @classmethod
    def _missing_(cls, value: object) -> HttpJobStatus | None:
        # older agents report "completed"
        if value == "completed":
            return cls.SUCCESS
        return None


class HttpJobError(BaseModel):
    code: str
    message: str
    details: dict[str, Any] | None = None
    retry: bool = False


class HttpJobSubmitResponse(BaseModel):
    accepted: bool
    job_id: str | None = None
    error: HttpJobError | None = None


class HttpJobStatusResponse(BaseModel):
    job_id: str
    job_class: str | None = None
    status: HttpJobStatus
    result: dict[str, Any] | None = None
    error: HttpJobError | None = None


class HttpJobHandle:
    """An accepted job whose completion is being tracked in the background."""

    def __init__(self, job_id: str, task: asyncio.Task[TaskCompletion]) -> None:
        self.job_id = job_id
        self._task = task

    @property
    def done(self) -> bool:
        return self._task.done()

    async def wait(self) -> TaskCompletion:
        return await asyncio.shield(self._task)

    def cancel(self) -> None:
        self._task.cancel()


class HttpWorkerClient:
    """
    Talks to one HTTP worker.

    Parameters
    ----------
    base_url
        Root URL of the worker, e.g. ``http://worker:8080``.
    timeout
        Per-request timeout in seconds.
    poll_interval
        Seconds between status polls of an accepted job.
    max_poll_failures
        Consecutive failed polls after which the job is reported failed.
    transport
        Optional httpx transport (tests inject ``httpx.MockTransport``).
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float | None = None,
        poll_interval: float | None = None,
        max_poll_failures: int | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        settings = get_settings()
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout or settings.http_worker_timeout_seconds
        self._poll_interval = poll_interval or settings.http_worker_poll_interval_seconds
        self._max_poll_failures = (
            max_poll_failures or settings.http_worker_max_poll_failures
        )
        self._transport = transport
        self._tracked: set[asyncio.Task] = set()

    @property
    def base_url(self) -> str:
        return self._base_url

    @property
    def in_flight(self) -> int:
        return len(self._tracked)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self._base_url,
            timeout=self._timeout,
            transport=self._transport,
        )

    async def _request(
        self, method: str, path: str, *, json: Any = None
    ) -> httpx.Response:
        headers = TracingContext.current().inject_headers({})
        try:
            async with self._client() as client:
                response = await client.request(method, path, json=json, headers=headers)
        except httpx.TimeoutException as exc:
            raise DispatchError(
                f"HTTP worker {method} {path} timed out after {self._timeout}s",
                code="HTTP_WORKER_TIMEOUT",
                details={"base_url": self._base_url, "path": path},
            ) from exc
        except httpx.TransportError as exc:
            raise DispatchError(
                f"HTTP worker {method} {path} failed: {exc}",
                code="HTTP_WORKER_UNREACHABLE",
                details={"base_url": self._base_url, "path": path},
            ) from exc

        if not response.is_success:
            transient = response.status_code >= 500
            raise DispatchError(
                f"HTTP worker {method} {path} returned {response.status_code}: "
                f"{response.text}",
                code="HTTP_WORKER_ERROR",
                error_class=ErrorClass.TRANSIENT if transient else ErrorClass.PERMANENT,
                retry=transient,
                details={
                    "base_url": self._base_url,
                    "path": path,
                    "status_code": response.status_code,
                    "body": response.text,
                },
            )
        return response

    # ── Operations ──────────────────────────────────────────────────────

    async def is_ready(self) -> bool:
        try:
            response = await self._request("GET", "/health/ready")
            return bool(response.json().get("ready"))
        except (DispatchError, ValueError, AttributeError) as exc:
            logger.info(
                "http_worker.not_ready", base_url=self._base_url, reason=str(exc)
            )
            return False

    async def get_status(self, job_id: str) -> HttpJobStatusResponse:
        response = await self._request("GET", f"/job/{job_id}")
        try:
            return HttpJobStatusResponse.model_validate_json(response.content)
        except ValidationError as exc:
            raise DispatchError(
                f"HTTP worker returned a malformed status for job {job_id}",
                code="HTTP_WORKER_INVALID_RESPONSE",
                error_class=ErrorClass.PERMANENT,
                retry=False,
                details={"job_id": job_id, "body": response.text},
            ) from exc

    async def submit(
        self,
        job_id: str,
        job_class: str,
        job_input: dict[str, Any],
        *,
        on_complete: JobCallback | None = None,
    ) -> HttpJobHandle:
        """Submit a job and start tracking its completion."""
        with create_span("http_worker.submit", job_id=job_id) as span:
            response = await self._request(
                "POST",
                "/job",
                json={"job_id": job_id, "job_class": job_class, "job_input": job_input},
            )
        try:
            accepted = HttpJobSubmitResponse.model_validate_json(response.content)
        except ValidationError as exc:
            raise DispatchError(
                "HTTP worker returned a malformed submit response",
                code="HTTP_WORKER_INVALID_RESPONSE",
                error_class=ErrorClass.PERMANENT,
                retry=False,
                details={"job_id": job_id, "body": response.text},
            ) from exc

        if not accepted.accepted:
            error = accepted.error
            raise DispatchError(
                error.message if error else f"HTTP worker rejected job {job_id}",
                code=error.code if error else "HTTP_WORKER_REJECTED",
                error_class=ErrorClass.TRANSIENT if error and error.retry else ErrorClass.PERMANENT,
                retry=bool(error and error.retry),
                details={"job_id": job_id, "base_url": self._base_url},
            )

        logger.info(
            "http_worker.job_accepted",
            job_id=job_id,
            job_class=job_class,
            duration_ms=span.duration_ms,
        )
        task = asyncio.create_task(
            self._track(job_id, on_complete), name=f"http-job-{job_id}"
        )
        self._tracked.add(task)
        task.add_done_callback(self._tracked.discard)
        return HttpJobHandle(job_id, task)

    async def aclose(self) -> None:
        """Stop tracking every in-flight job."""
        tasks = list(self._tracked)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ── Completion tracking ─────────────────────────────────────────────

    async def _track(
        self, job_id: str, on_complete: JobCallback | None
    ) -> TaskCompletion:
        completion = await self._await_completion(job_id)
        logger.info(
            "http_worker.job_finished", job_id=job_id, success=completion.success
        )
        if on_complete is not None:
            try:
                await on_complete(job_id, completion)
            except Exception:
                logger.exception("http_worker.callback_failed", job_id=job_id)
                raise
        return completion

    async def _await_completion(self, job_id: str) -> TaskCompletion:
        failures = 0
        while True:
            try:
                status = await self.get_status(job_id)
            except DispatchError as exc:
                failures += 1
                logger.warning(
                    "http_worker.poll_failed",
                    job_id=job_id,
                    code=exc.code,
                    failures=failures,
                )
                if not exc.retry or failures >= self._max_poll_failures:
                    return TaskCompletion.failed(exc.to_envelope())
                await asyncio.sleep(self._poll_interval)
                continue

            failures = 0
            if status.status == HttpJobStatus.SUCCESS:
                return TaskCompletion.succeeded(status.result)
            if status.status == HttpJobStatus.FAILED:
                job_error = status.error or HttpJobError(
                    code="APP_WORKER_FAILED",
                    message=f"Job {job_id} failed without an error",
                )
                return TaskCompletion.failed(
                    AppWorkerError(
                        job_error.message,
                        code=job_error.code,
                        details=job_error.details,
                        retry=job_error.retry,
                    ).to_envelope()
                )
            await asyncio.sleep(self._poll_interval)
