"""WebSocket transport implementation for voice sessions.

Each connection carries JSON text frames in the voice event vocabulary defined
in ``websocket_protocol``.
"""

import asyncio
import logging
import uuid
from collections.abc import AsyncIterator
from typing import Any

import websockets
from websockets.asyncio.server import ServerConnection
from websockets.protocol import State

from src.assistant.errors import InputValidationError
from src.assistant.transport.base import Transport, TransportSession
from src.assistant.transport.websocket_protocol import (
    ClientMessage,
    ErrorMessage,
    ServerMessage,
    parse_client_message,
)

logger = logging.getLogger(__name__)


class WebSocketSession(TransportSession):
    """WebSocket-based voice client session.

    Sends are serialized with a lock: relayed audio, tool results and
    control events are written from different tasks.
    """

    def __init__(self, websocket: ServerConnection, session_id: str) -> None:
        """Initialize WebSocket session.

        Args:
            websocket: WebSocket connection
            session_id: Unique connection identifier
        """
        self._websocket = websocket
        self._session_id = session_id
        self._connected = True
        self._send_lock = asyncio.Lock()

        logger.info(
            "WebSocket session initialized",
            extra={"session_id": session_id, "remote": websocket.remote_address},
        )

    @property
    def session_id(self) -> str:
        """Get unique session identifier."""
        return self._session_id

    @property
    def is_connected(self) -> bool:
        """Check if the session connection is still active."""
        return self._connected and self._websocket.state == State.OPEN

    async def send_event(self, message: ServerMessage) -> None:
        """Send a server event to the client."""
        if not self.is_connected:
            return

        try:
            async with self._send_lock:
                await self._websocket.send(message.model_dump_json(by_alias=True))
        except websockets.exceptions.ConnectionClosed:
            self._connected = False
        except Exception as e:
            logger.error(
                "Failed to send message",
                extra={"session_id": self._session_id, "error": str(e)},
            )

    async def receive_events(self) -> AsyncIterator[ClientMessage]:
        """Receive validated client events.

        Frames that fail validation are answered with an ``error`` event and
        skipped.

        Yields:
            ClientMessage: Next client event
        """
        try:
            async for raw_message in self._websocket:
                try:
                    message = parse_client_message(raw_message)
                except InputValidationError as e:
                    logger.warning(
                        "Rejected client message",
                        extra={"session_id": self._session_id, "error": str(e)},
                    )
                    await self.send_event(ErrorMessage(message=str(e), code="INVALID_MESSAGE"))
                    continue

                yield message

        except websockets.exceptions.ConnectionClosed:
            logger.info(
                "WebSocket connection closed by client",
                extra={"session_id": self._session_id},
            )
        finally:
            self._connected = False

    async def close(self) -> None:
        """Close the WebSocket connection."""
        if not self._connected:
            return

        logger.info("Closing WebSocket session", extra={"session_id": self._session_id})

        try:
            await self._websocket.close()
        except Exception as e:
            logger.warning(
                "Error during session close",
                extra={"session_id": self._session_id, "error": str(e)},
            )
        finally:
            self._connected = False


class WebSocketTransport(Transport):
    """WebSocket transport server.

    Manages the server lifecycle and queues a WebSocketSession per connection
    for the voice server to accept.
    """

    def __init__(
        self,
        host: str = "0.0.0.0",  # noqa: S104
        port: int = 8080,
        max_connections: int = 100,
        max_message_bytes: int = 2**20,
    ) -> None:
        """Initialize WebSocket transport.

        Args:
            host: Bind host address
            port: Bind port
            max_connections: Maximum concurrent connections
            max_message_bytes: Maximum size of one client frame
        """
        self._host = host
        self._port = port
        self._max_connections = max_connections
        self._max_message_bytes = max_message_bytes
        self._server: Any = None  # websockets.Server type
        self._running = False
        self._session_queue: asyncio.Queue[WebSocketSession] = asyncio.Queue()
        self._active: set[str] = set()

        logger.info(
            "WebSocket transport initialized",
            extra={"host": host, "port": port, "max_connections": max_connections},
        )

    @property
    def transport_type(self) -> str:
        """Transport type identifier."""
        return "websocket"

    @property
    def is_running(self) -> bool:
        """Check if the transport server is currently running."""
        return self._running

    @property
    def connection_count(self) -> int:
        return len(self._active)

    @property
    def port(self) -> int:
        """Bound port (resolved when configured as 0)."""
        if self._server is not None:
            for sock in self._server.sockets:
                return int(sock.getsockname()[1])
        return self._port

    async def start(self) -> None:
        """Start the WebSocket server.

        Raises:
            RuntimeError: If the transport fails to start
            OSError: If port binding fails
        """
        if self._running:
            raise RuntimeError("WebSocket transport is already running")

        logger.info("Starting WebSocket server", extra={"host": self._host, "port": self._port})

        try:
            self._server = await websockets.serve(
                self._handle_connection,
                self._host,
                self._port,
                max_size=self._max_message_bytes,
            )
            self._running = True

            logger.info("WebSocket server started", extra={"host": self._host, "port": self.port})

        except OSError as e:
            logger.error(
                "Failed to bind WebSocket server",
                extra={"host": self._host, "port": self._port, "error": str(e)},
            )
            raise
        except Exception as e:
            logger.error("Failed to start WebSocket server", extra={"error": str(e)})
            raise RuntimeError(f"Failed to start WebSocket transport: {e}") from e

    async def stop(self) -> None:
        """Stop the WebSocket server."""
        if not self._running:
            return

        logger.info("Stopping WebSocket server")

        self._running = False

        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None

        logger.info("WebSocket server stopped")

    async def accept_session(self) -> TransportSession:
        """Accept the next client session.

        Raises:
            RuntimeError: If the transport is not running
        """
        if not self._running:
            raise RuntimeError("WebSocket transport is not running")

        return await self._session_queue.get()

    async def _handle_connection(self, websocket: ServerConnection) -> None:
        """Handle an incoming WebSocket connection.

        The handler stays alive until the connection closes; the accepted
        session reads from the connection in its own task.
        """
        if len(self._active) >= self._max_connections:
            logger.warning(
                "Connection limit reached", extra={"max_connections": self._max_connections}
            )
            await websocket.close(code=1013, reason="Server busy")
            return

        session_id = f"ws-{uuid.uuid4().hex[:12]}"
        self._active.add(session_id)

        logger.info(
            "New WebSocket connection",
            extra={"session_id": session_id, "remote": websocket.remote_address},
        )

        session = WebSocketSession(websocket, session_id)
        await self._session_queue.put(session)

        try:
            await websocket.wait_closed()
        finally:
            self._active.discard(session_id)
            logger.info("WebSocket connection closed", extra={"session_id": session_id})
