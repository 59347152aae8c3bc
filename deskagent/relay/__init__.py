from .channel import Channel, ChannelClosed, MemoryChannel, WebSocketChannel, connect_websocket, memory_channel_pair
from .client import PendingRequest, RelayClient
from .relay import Relay
from .worker import WorkerHost

__all__ = [
    "Channel",
    "ChannelClosed",
    "MemoryChannel",
    "PendingRequest",
    "Relay",
    "RelayClient",
    "WebSocketChannel",
    "WorkerHost",
    "connect_websocket",
    "memory_channel_pair",
]
