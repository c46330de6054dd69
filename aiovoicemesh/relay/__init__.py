"""Signaling relay implementations."""

from .base import RecordCallback, SignalingRelay, Unsubscribe, generate_message_id
from .memory import MemoryRelay
from .server import SERVICE_TYPE, RelayServer
from .websocket import WebSocketRelay

__all__ = [
    "SERVICE_TYPE",
    "MemoryRelay",
    "RecordCallback",
    "RelayServer",
    "SignalingRelay",
    "Unsubscribe",
    "WebSocketRelay",
    "generate_message_id",
]
