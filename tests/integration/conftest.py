"""Integration test fixtures and utilities.

Provides shared fixtures for:
- A voice server on an ephemeral port (real WebSocket transport, fake upstream)
- A chat API server on aiohttp's test server
- Redis for the conversation store (skipped when unreachable)
"""

import asyncio
import json
import logging
import os
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any

import pytest
import pytest_asyncio
from redis import asyncio as aioredis
from websockets.asyncio.client import ClientConnection

from src.assistant.config import AssistantConfig, VoiceConfig
from src.assistant.registry import SessionRegistry
from src.assistant.server import handle_voice_session
from src.assistant.tools import ToolDispatcher
from src.assistant.transport.websocket_transport import WebSocketTransport
from tests.helpers.fakes import FakeCapabilities, FakeLiveConnector

logger = logging.getLogger(__name__)

REDIS_TEST_URL = os.getenv("REDIS_TEST_URL", "redis://localhost:6379/15")


@dataclass
class VoiceServer:
    transport: WebSocketTransport
    registry: SessionRegistry
    connector: FakeLiveConnector
    capabilities: FakeCapabilities
    session_tasks: set[asyncio.Task[None]] = field(default_factory=set)

    @property
    def uri(self) -> str:
        return f"ws://127.0.0.1:{self.transport.port}"


async def _accept_loop(server: VoiceServer, config: AssistantConfig) -> None:
    dispatcher = ToolDispatcher(server.capabilities)
    while True:
        session = await server.transport.accept_session()
        task = asyncio.create_task(
            handle_voice_session(session, server.registry, server.connector, dispatcher, config)
        )
        server.session_tasks.add(task)
        task.add_done_callback(server.session_tasks.discard)


@pytest_asyncio.fixture
async def voice_server() -> AsyncIterator[VoiceServer]:
    """Voice server on an ephemeral port backed by fake upstream sessions."""
    transport = WebSocketTransport(host="127.0.0.1", port=0, max_connections=10)
    await transport.start()
    server = VoiceServer(transport, SessionRegistry(), FakeLiveConnector(), FakeCapabilities())
    config = AssistantConfig(voice=VoiceConfig(connect_timeout_s=2.0))
    accept_task = asyncio.create_task(_accept_loop(server, config))

    try:
        yield server
    finally:
        accept_task.cancel()
        await asyncio.gather(accept_task, return_exceptions=True)
        await transport.stop()
        await server.registry.close_all()
        for task in list(server.session_tasks):
            task.cancel()
        await asyncio.gather(*server.session_tasks, return_exceptions=True)


@pytest_asyncio.fixture
async def redis_url() -> AsyncIterator[str]:
    """Redis URL for store tests; the test database is flushed around each test."""
    client = aioredis.from_url(REDIS_TEST_URL)
    try:
        await client.ping()
    except Exception:
        await client.aclose()
        pytest.skip(f"Redis not available at {REDIS_TEST_URL}")

    await client.flushdb()
    try:
        yield REDIS_TEST_URL
    finally:
        await client.flushdb()
        await client.aclose()


async def send_event(ws: ClientConnection, event_type: str, **fields: Any) -> None:
    await ws.send(json.dumps({"type": event_type, **fields}))


async def receive_event(
    ws: ClientConnection, event_type: str, timeout_s: float = 2.0
) -> dict[str, Any]:
    """Read frames until one of ``event_type`` arrives; others are skipped."""

    async def _receive() -> dict[str, Any]:
        while True:
            event = json.loads(await ws.recv())
            if event["type"] == event_type:
                return event
            logger.debug(f"Skipping {event['type']} while waiting for {event_type}")

    return await asyncio.wait_for(_receive(), timeout=timeout_s)


async def wait_until(predicate: Any, timeout_s: float = 2.0) -> None:
    async def _poll() -> None:
        while not predicate():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(_poll(), timeout=timeout_s)
