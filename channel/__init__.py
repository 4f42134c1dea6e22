"""
Channel Protocol.

Request/response envelope between a receiver and a connected
sender, with loopback and WebSocket transports.
"""

from channel.envelope import (
    FEATURES,
    PROTOCOL_VERSION,
    ChannelRequest,
    ChannelResponse,
    RequestType,
)
from channel.handler import ChannelContext, RateLimiter, RequestHandler
from channel.transport import LoopbackTransport, Transport, WebSocketTransport
from channel.client import ChannelClient
from channel.server import ChannelServer, create_channel_app, run_server
from channel.replicator import ReplicationResult, Replicator

__all__ = [
    "FEATURES",
    "PROTOCOL_VERSION",
    "ChannelRequest",
    "ChannelResponse",
    "RequestType",
    "ChannelContext",
    "RateLimiter",
    "RequestHandler",
    "LoopbackTransport",
    "Transport",
    "WebSocketTransport",
    "ChannelClient",
    "ChannelServer",
    "create_channel_app",
    "run_server",
    "ReplicationResult",
    "Replicator",
]
