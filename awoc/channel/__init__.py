"""
AWOC — Worker Channel
=======================
Duplex request/response protocol to out-of-process workers.

Public API:
    WorkerChannel, open_subprocess_channel
    ChannelAction, ChannelRole, ChannelResponse
    StreamTransport, SubprocessTransport, LoopbackTransport
"""

from awoc.channel.messages import (
    ChannelAction,
    ChannelMessage,
    ChannelResponse,
    ChannelRole,
)
from awoc.channel.protocol import WorkerChannel, open_subprocess_channel
from awoc.channel.transport import (
    LoopbackTransport,
    StreamTransport,
    SubprocessTransport,
    Transport,
)

__all__ = [
    "ChannelAction",
    "ChannelMessage",
    "ChannelResponse",
    "ChannelRole",
    "LoopbackTransport",
    "StreamTransport",
    "SubprocessTransport",
    "Transport",
    "WorkerChannel",
    "open_subprocess_channel",
]
