"""Base transport abstraction for voice client connections.

Defines the interface a transport implementation must provide so the voice
bridge can run independently of the wire mechanism.
"""

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator

from src.assistant.transport.websocket_protocol import ClientMessage, ServerMessage


class TransportSession(ABC):
    """Base class for transport-specific client sessions.

    A session yields validated client events and accepts server events.
    Malformed client frames are answered with an ``error`` event by the
    transport itself and never reach the bridge.
    """

    @abstractmethod
    async def send_event(self, message: ServerMessage) -> None:
        """Send one server event to the client.

        Sends after the connection has closed are dropped silently.

        Args:
            message: Server → client event
        """
        pass

    @abstractmethod
    async def receive_events(self) -> AsyncIterator[ClientMessage]:
        """Receive validated client events in arrival order.

        Iteration ends when the client disconnects.

        Yields:
            ClientMessage: Next client event
        """
        # Using yield to make this an async generator
        if False:
            yield  # type: ignore[unreachable]

    @abstractmethod
    async def close(self) -> None:
        """Close the client connection."""
        pass

    @property
    @abstractmethod
    def session_id(self) -> str:
        """Connection identifier; also the voice session registry key."""
        pass

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """Check if the client connection is still open."""
        pass


class Transport(ABC):
    """Base transport implementation.

    Manages the lifecycle of a transport server and hands out a
    TransportSession per incoming client connection.
    """

    @abstractmethod
    async def start(self) -> None:
        """Start the transport server.

        Raises:
            RuntimeError: If the transport fails to start
            OSError: If port binding fails
        """
        pass

    @abstractmethod
    async def stop(self) -> None:
        """Stop the transport server and close open connections."""
        pass

    @abstractmethod
    async def accept_session(self) -> TransportSession:
        """Block until the next client connects and return its session.

        Raises:
            RuntimeError: If the transport is not running
        """
        pass

    @property
    @abstractmethod
    def transport_type(self) -> str:
        """Transport type identifier (e.g., 'websocket')."""
        pass

    @property
    @abstractmethod
    def is_running(self) -> bool:
        """Check if the transport server is currently running."""
        pass
