"""
AWOC — Channel Transports
===========================
Line-oriented duplex transports underneath :class:`WorkerChannel`.

- ``StreamTransport``     — asyncio stream pair (sockets, pipes)
- ``SubprocessTransport`` — stdin/stdout of a spawned worker manager
- ``LoopbackTransport``   — in-process pair, for embedded pools and tests

``receive()`` returns ``None`` once the peer has gone away.
"""

from __future__ import annotations

import abc
import asyncio

from awoc.core.logging import get_logger

logger = get_logger(__name__)


class Transport(abc.ABC):
    """One newline-delimited JSON document per message."""

    @abc.abstractmethod
    async def send(self, line: str) -> None:
        """Write one message.  Raises ``ConnectionError`` when closed."""

    @abc.abstractmethod
    async def receive(self) -> str | None:
        """Read one message, or ``None`` at end of stream."""

    @abc.abstractmethod
    async def close(self) -> None:
        """Release the underlying connection.  Idempotent."""


class StreamTransport(Transport):
    """Transport over an ``asyncio.StreamReader`` / ``StreamWriter`` pair."""

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        self._reader = reader
        self._writer = writer

    async def send(self, line: str) -> None:
        if self._writer.is_closing():
            raise ConnectionError("stream is closed")
        self._writer.write(line.encode("utf-8") + b"\n")
        await self._writer.drain()

    async def receive(self) -> str | None:
        data = await self._reader.readline()
        if not data:
            return None
        return data.decode("utf-8")

    async def close(self) -> None:
        if self._writer.is_closing():
            return
        self._writer.close()
        try:
            await self._writer.wait_closed()
        except (ConnectionError, OSError) as exc:
            logger.debug("transport.close_error", error=str(exc))


class SubprocessTransport(Transport):
    """Transport over the stdio pipes of a child process."""

    def __init__(self, process: asyncio.subprocess.Process) -> None:
        if process.stdin is None or process.stdout is None:
            raise ValueError("process must be spawned with stdin/stdout pipes")
        self._process = process

    @classmethod
    async def spawn(cls, *command: str) -> SubprocessTransport:
        process = await asyncio.create_subprocess_exec(
            *command,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
        )
        logger.info("transport.spawned", command=command[0], pid=process.pid)
        return cls(process)

    @property
    def pid(self) -> int:
        return self._process.pid

    async def send(self, line: str) -> None:
        stdin = self._process.stdin
        if stdin.is_closing():
            raise ConnectionError("worker stdin is closed")
        stdin.write(line.encode("utf-8") + b"\n")
        await stdin.drain()

    async def receive(self) -> str | None:
        data = await self._process.stdout.readline()
        if not data:
            return None
        return data.decode("utf-8")

    async def close(self) -> None:
        if not self._process.stdin.is_closing():
            self._process.stdin.close()
        if self._process.returncode is None:
            try:
                self._process.terminate()
            except ProcessLookupError:
                pass
            await self._process.wait()
        logger.info(
            "transport.process_exited",
            pid=self._process.pid,
            returncode=self._process.returncode,
        )


class LoopbackTransport(Transport):
    """One end of an in-process queue pair."""

    def __init__(self) -> None:
        self._inbox: asyncio.Queue[str | None] = asyncio.Queue()
        self._peer: LoopbackTransport | None = None
        self._closed = False

    @classmethod
    def pair(cls) -> tuple[LoopbackTransport, LoopbackTransport]:
        left, right = cls(), cls()
        left._peer, right._peer = right, left
        return left, right

    async def send(self, line: str) -> None:
        if self._closed or self._peer is None or self._peer._closed:
            raise ConnectionError("loopback peer is closed")
        self._peer._inbox.put_nowait(line)

    async def receive(self) -> str | None:
        if self._closed and self._inbox.empty():
            return None
        return await self._inbox.get()

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._inbox.put_nowait(None)
        if self._peer is not None and not self._peer._closed:
            self._peer._inbox.put_nowait(None)
