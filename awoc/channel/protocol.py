"""
AWOC — Worker Channel Protocol
================================
Duplex, multiplexed request/response protocol between the core and an
out-of-process worker manager.

Both ends may issue requests at any time, including while one of their
own requests is outstanding.  Responses are matched to waiters by
correlation id only.

Invariants:
- Every outbound request has a timeout; expiry rejects the waiter with a
  transient ``ChannelTimeoutError`` and removes the correlation entry.
- Abandoned waits (cancelled callers) remove their correlation entry;
  a late response for them is logged and discarded.
- Malformed responses reject the matching waiter with ``InvalidMessageError``.
- On disconnect every outstanding waiter fails with
  ``ChannelDisconnectedError``.
- Writes are serialized; the correlation map is only touched by this
  channel's own coroutines.

Usage:
    channel = WorkerChannel(transport, ChannelRole.CORE)
    channel.register_handler(ChannelAction.GET_UI_BUNDLE, load_bundle)
    await channel.start()
    await channel.request_result(ChannelAction.INIT, init_payload)
"""

from __future__ import annotations

import asyncio
import json
import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from pydantic import ValidationError

from awoc.channel.messages import (
    ActionPayload,
    ChannelAction,
    ChannelMessage,
    ChannelResponse,
    ChannelRole,
    decode_request,
    decode_response,
    encode_request,
    encode_result,
    sendable_actions,
    servable_actions,
)
from awoc.channel.transport import SubprocessTransport, Transport
from awoc.core.config import get_settings
from awoc.core.correlation import bind_correlation_id
from awoc.core.exceptions import (
    AWOCError,
    ChannelDisconnectedError,
    ChannelTimeoutError,
    InvalidMessageError,
    UnsupportedActionError,
    build_unexpected_error,
)
from awoc.core.logging import get_logger

logger = get_logger(__name__)

RequestHandler = Callable[[Any], Awaitable[Any]]


@dataclass
class _PendingRequest:
    action: ChannelAction
    future: asyncio.Future


class WorkerChannel:
    """
    One side of a worker channel.

    Parameters
    ----------
    transport
        Line-oriented duplex transport.
    role
        ``CORE`` may send core→worker actions and serve worker→core
        actions; ``WORKER`` the reverse.
    name
        Label used in log lines.
    default_timeout
        Seconds to wait for a response when the caller passes none.
    action_timeouts
        Per-action overrides of ``default_timeout``.
    """

    def __init__(
        self,
        transport: Transport,
        role: ChannelRole,
        *,
        name: str = "worker-channel",
        default_timeout: float | None = None,
        action_timeouts: dict[ChannelAction, float] | None = None,
    ) -> None:
        settings = get_settings()
        self._transport = transport
        self._role = role
        self._name = name
        self._default_timeout = (
            default_timeout
            if default_timeout is not None
            else settings.channel_request_timeout_seconds
        )
        self._action_timeouts: dict[ChannelAction, float] = {
            ChannelAction.EXECUTE_TASK: settings.channel_execute_task_timeout_seconds,
        }
        self._action_timeouts.update(action_timeouts or {})
        self._pending: dict[str, _PendingRequest] = {}
        self._handlers: dict[ChannelAction, RequestHandler] = {}
        self._write_lock = asyncio.Lock()
        self._reader_task: asyncio.Task | None = None
        self._inbound: set[asyncio.Task] = set()
        self._close_callbacks: list[Callable[[str], Any]] = []
        self._closed = False

    # ── Properties ───────────────────────────────────────────────────────

    @property
    def role(self) -> ChannelRole:
        return self._role

    @property
    def is_open(self) -> bool:
        return self._reader_task is not None and not self._closed

    @property
    def pending_count(self) -> int:
        """Number of outbound requests awaiting a response."""
        return len(self._pending)

    # ── Setup ────────────────────────────────────────────────────────────

    def register_handler(
        self, action: ChannelAction, handler: RequestHandler
    ) -> None:
        """Serve inbound requests for ``action`` with ``handler``."""
        if action not in servable_actions(self._role):
            raise UnsupportedActionError(
                f"A {self._role} channel does not serve '{action}'",
                details={"action": action, "role": self._role},
            )
        self._handlers[action] = handler

    def on_close(self, callback: Callable[[str], Any]) -> None:
        """Register a callback invoked with the close reason."""
        self._close_callbacks.append(callback)

    async def start(self) -> None:
        if self._reader_task is not None:
            return
        self._reader_task = asyncio.create_task(
            self._read_loop(), name=f"{self._name}-reader"
        )
        logger.info("channel.started", channel=self._name, role=self._role.value)

    # ── Outbound requests ────────────────────────────────────────────────

    async def request(
        self,
        action: ChannelAction,
        payload: Any,
        *,
        timeout: float | None = None,
    ) -> ChannelResponse:
        """
        Send a request and wait for its validated response.

        Raises ``ChannelTimeoutError``, ``ChannelDisconnectedError`` or
        ``InvalidMessageError``.  A failure *response* is returned, not raised.
        """
        if self._closed or self._reader_task is None:
            raise ChannelDisconnectedError(
                f"Channel '{self._name}' is not open",
                details={"channel": self._name, "action": action},
            )
        if action not in sendable_actions(self._role):
            raise UnsupportedActionError(
                f"A {self._role} channel cannot send '{action}'",
                details={"action": action, "role": self._role},
            )

        wire_payload = encode_request(action, payload)
        request_id = uuid.uuid4().hex
        effective_timeout = (
            timeout
            if timeout is not None
            else self._action_timeouts.get(action, self._default_timeout)
        )

        loop = asyncio.get_running_loop()
        future: asyncio.Future = loop.create_future()
        self._pending[request_id] = _PendingRequest(action=action, future=future)
        timer = loop.call_later(
            effective_timeout, self._expire, request_id, effective_timeout
        )

        def _cleanup(_: asyncio.Future) -> None:
            timer.cancel()
            self._pending.pop(request_id, None)

        future.add_done_callback(_cleanup)

        message = ChannelMessage(
            type="request",
            id=request_id,
            payload=ActionPayload(action=action.value, payload=wire_payload),
        )
        logger.debug(
            "channel.request_sent",
            channel=self._name,
            action=action.value,
            request_id=request_id,
        )
        try:
            await self._send(message)
        except ConnectionError as exc:
            if not future.done():
                future.cancel()
            raise ChannelDisconnectedError(
                f"Channel '{self._name}' closed while sending '{action}'",
                details={"channel": self._name, "action": action},
            ) from exc
        return await future

    async def request_result(
        self,
        action: ChannelAction,
        payload: Any,
        *,
        timeout: float | None = None,
    ) -> Any:
        """Like :meth:`request`, but raise the peer's error on failure."""
        response = await self.request(action, payload, timeout=timeout)
        if response.success:
            return response.result
        raise AWOCError.from_envelope(response.error)

    def _expire(self, request_id: str, timeout: float) -> None:
        pending = self._pending.get(request_id)
        if pending is None or pending.future.done():
            return
        logger.warning(
            "channel.request_timeout",
            channel=self._name,
            action=pending.action.value,
            request_id=request_id,
            timeout_seconds=timeout,
        )
        pending.future.set_exception(
            ChannelTimeoutError(
                f"No response to '{pending.action}' within {timeout}s",
                details={
                    "channel": self._name,
                    "action": pending.action.value,
                    "request_id": request_id,
                    "timeout_seconds": timeout,
                },
            )
        )

    # ── Inbound traffic ──────────────────────────────────────────────────

    async def _read_loop(self) -> None:
        reason = "transport closed"
        try:
            while True:
                line = await self._transport.receive()
                if line is None:
                    break
                if line.strip():
                    self._dispatch(line)
        except asyncio.CancelledError:
            raise
        except (ConnectionError, OSError) as exc:
            reason = f"transport error: {exc}"
            logger.warning("channel.read_failed", channel=self._name, error=str(exc))
        await self.close(reason)

    def _dispatch(self, line: str) -> None:
        try:
            message = ChannelMessage.model_validate_json(line)
        except ValidationError as exc:
            self._reject_malformed(line, exc)
            return

        if message.type == "response":
            self._handle_response(message)
            return

        task = asyncio.create_task(self._handle_request(message))
        self._inbound.add(task)
        task.add_done_callback(self._inbound.discard)

    def _reject_malformed(self, line: str, exc: ValidationError) -> None:
        """Fail the waiter a malformed response was meant for, if identifiable."""
        try:
            raw = json.loads(line)
        except ValueError:
            raw = None
        request_id = raw.get("id") if isinstance(raw, dict) else None
        pending = self._pending.get(request_id) if isinstance(request_id, str) else None
        logger.warning(
            "channel.invalid_message",
            channel=self._name,
            request_id=request_id,
            matched=pending is not None,
        )
        if pending is not None and not pending.future.done():
            pending.future.set_exception(
                InvalidMessageError(
                    f"Malformed response to '{pending.action}'",
                    details={
                        "channel": self._name,
                        "errors": exc.errors(
                            include_url=False, include_context=False, include_input=False
                        ),
                    },
                )
            )

    def _handle_response(self, message: ChannelMessage) -> None:
        pending = self._pending.get(message.id)
        if pending is None or pending.future.done():
            logger.warning(
                "channel.unknown_response",
                channel=self._name,
                request_id=message.id,
                action=message.payload.action,
            )
            return
        if message.payload.action != pending.action.value:
            pending.future.set_exception(
                InvalidMessageError(
                    f"Response action '{message.payload.action}' does not match "
                    f"request action '{pending.action}'",
                    details={"channel": self._name, "request_id": message.id},
                )
            )
            return
        try:
            response = decode_response(pending.action, message.payload.payload)
        except InvalidMessageError as exc:
            pending.future.set_exception(exc)
            return
        pending.future.set_result(response)

    async def _handle_request(self, message: ChannelMessage) -> None:
        raw_action = message.payload.action
        with bind_correlation_id(message.id):
            response = await self._serve(raw_action, message.payload.payload)
            reply = ChannelMessage(
                type="response",
                id=message.id,
                payload=ActionPayload(action=raw_action, payload=response),
            )
            try:
                await self._send(reply)
            except ConnectionError:
                logger.warning(
                    "channel.response_dropped",
                    channel=self._name,
                    action=raw_action,
                    request_id=message.id,
                )

    async def _serve(self, raw_action: str, raw_payload: Any) -> dict[str, Any]:
        try:
            action = ChannelAction(raw_action)
        except ValueError:
            action = None
        if action is None or action not in servable_actions(self._role):
            return _failure(
                UnsupportedActionError(
                    f"Action '{raw_action}' is not served here",
                    details={"action": raw_action, "role": self._role.value},
                )
            )
        handler = self._handlers.get(action)
        if handler is None:
            return _failure(
                UnsupportedActionError(
                    f"No handler registered for '{action}'",
                    details={"action": action.value},
                )
            )
        try:
            payload = decode_request(action, raw_payload)
            result = await handler(payload)
            return {"success": True, "result": encode_result(action, result)}
        except AWOCError as exc:
            logger.info(
                "channel.handler_failed",
                channel=self._name,
                action=action.value,
                code=exc.code,
            )
            return _failure(exc)
        except Exception as exc:
            logger.exception(
                "channel.handler_crashed", channel=self._name, action=action.value
            )
            return _failure(
                build_unexpected_error(
                    "CHANNEL_HANDLER_ERROR",
                    f"Handler for '{action}' raised unexpectedly",
                    exc,
                )
            )

    # ── Writes & shutdown ────────────────────────────────────────────────

    async def _send(self, message: ChannelMessage) -> None:
        async with self._write_lock:
            await self._transport.send(message.to_json())

    async def close(self, reason: str = "closed") -> None:
        """
        Close the channel.

        Fails every outstanding request with ``ChannelDisconnectedError``,
        cancels in-flight inbound handlers and releases the transport.
        """
        if self._closed:
            return
        self._closed = True

        for request_id, pending in list(self._pending.items()):
            if not pending.future.done():
                pending.future.set_exception(
                    ChannelDisconnectedError(
                        f"Channel '{self._name}' disconnected: {reason}",
                        details={
                            "channel": self._name,
                            "action": pending.action.value,
                            "request_id": request_id,
                        },
                    )
                )
        self._pending.clear()

        current = asyncio.current_task()
        tasks = [t for t in self._inbound if t is not current]
        if self._reader_task is not None and self._reader_task is not current:
            tasks.append(self._reader_task)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        await self._transport.close()
        logger.info("channel.closed", channel=self._name, reason=reason)

        for callback in self._close_callbacks:
            result = callback(reason)
            if asyncio.iscoroutine(result):
                await result


def _failure(exc: AWOCError) -> dict[str, Any]:
    return {"success": False, "error": exc.to_envelope().to_wire()}


async def open_subprocess_channel(
    command: list[str],
    *,
    name: str = "worker-manager",
    handlers: dict[ChannelAction, RequestHandler] | None = None,
) -> WorkerChannel:
    """Spawn a worker manager process and open a core-side channel to it."""
    transport = await SubprocessTransport.spawn(*command)
    channel = WorkerChannel(transport, ChannelRole.CORE, name=name)
    for action, handler in (handlers or {}).items():
        channel.register_handler(action, handler)
    await channel.start()
    return channel
