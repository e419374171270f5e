"""Transport layer for voice client connections."""

from src.assistant.transport.base import Transport, TransportSession
from src.assistant.transport.websocket_transport import (
    WebSocketSession,
    WebSocketTransport,
)

__all__ = [
    "Transport",
    "TransportSession",
    "WebSocketSession",
    "WebSocketTransport",
]
