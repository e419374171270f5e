"""Assistant server.

Main server implementation that:
1. Loads configuration and configures logging
2. Connects the backend capabilities client and the conversation store
3. Serves the chat API and health checks over HTTP
4. Accepts voice WebSocket connections and runs one VoiceBridge per connection
"""

import argparse
import asyncio
import logging
from pathlib import Path

from aiohttp.web import Application, AppRunner, TCPSite
from google import genai

from src.assistant.bridge import VoiceBridge
from src.assistant.capabilities import BackendCapabilities
from src.assistant.chat import TurnOrchestrator
from src.assistant.config import AssistantConfig
from src.assistant.conversations import (
    ConversationStore,
    InMemoryConversationStore,
    RedisConversationStore,
)
from src.assistant.cv_chat import CvBuilder
from src.assistant.health import setup_health_routes
from src.assistant.http_api import setup_api_routes
from src.assistant.live import GeminiLiveConnector, LiveConnector
from src.assistant.llm import GeminiChatModel
from src.assistant.registry import SessionRegistry
from src.assistant.tools import ToolDispatcher
from src.assistant.transport.base import TransportSession
from src.assistant.transport.websocket_transport import WebSocketTransport
from src.assistant.vision import ImageAnalyzer

logger = logging.getLogger(__name__)


async def handle_voice_session(
    transport_session: TransportSession,
    registry: SessionRegistry,
    connector: LiveConnector,
    dispatcher: ToolDispatcher,
    config: AssistantConfig,
) -> None:
    """Run the voice bridge for one client connection until it disconnects."""
    bridge = VoiceBridge(transport_session, registry, connector, dispatcher, config.voice)
    try:
        await bridge.run()
    except Exception:
        logger.exception(
            "Voice session handler failed", extra={"session_id": transport_session.session_id}
        )
    finally:
        await transport_session.close()


async def start_server(config_path: Path | None = None) -> None:
    """Start the assistant server and run until interrupted.

    Args:
        config_path: Path to YAML config file (defaults used when missing)

    Raises:
        RuntimeError: If the Gemini API key is not configured
    """
    config = AssistantConfig.from_yaml_with_defaults(config_path)

    logging.basicConfig(
        level=getattr(logging, config.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    logger.info("Loaded configuration", extra={"config_path": str(config_path)})

    if not config.gemini.api_key:
        raise RuntimeError(
            "Gemini API key not configured. "
            "Set GEMINI_API_KEY or gemini.api_key in assistant.yaml."
        )

    client = genai.Client(api_key=config.gemini.api_key)

    capabilities = BackendCapabilities(config.backend)
    await capabilities.connect()

    store: ConversationStore
    redis_store = None
    if config.redis.url:
        logger.info("Using Redis conversation store", extra={"redis_url": config.redis.url})
        redis_store = RedisConversationStore(
            config.redis.url,
            key_prefix=config.redis.key_prefix,
            ttl_seconds=config.redis.conversation_ttl_seconds,
        )
        await redis_store.connect()
        store = redis_store
    else:
        logger.warning("REDIS_URL not set; conversations are kept in memory")
        store = InMemoryConversationStore()

    dispatcher = ToolDispatcher(capabilities)
    chat_model = GeminiChatModel(client, config.gemini)
    orchestrator = TurnOrchestrator(chat_model, dispatcher, capabilities, store, config.chat)
    cv_builder = CvBuilder(chat_model, config.chat)
    image_analyzer = ImageAnalyzer(chat_model, config.chat)
    registry = SessionRegistry()
    connector = GeminiLiveConnector(client, config.gemini, config.voice)

    app = Application()
    setup_api_routes(app, orchestrator, cv_builder, image_analyzer, store)
    setup_health_routes(app, registry, redis_store)

    runner = AppRunner(app)
    await runner.setup()
    site = TCPSite(runner, config.http.host, config.http.port)
    await site.start()
    logger.info("HTTP server started", extra={"port": config.http.port})

    transport = None
    if config.websocket.enabled:
        transport = WebSocketTransport(
            host=config.websocket.host,
            port=config.websocket.port,
            max_connections=config.websocket.max_connections,
            max_message_bytes=config.websocket.max_message_bytes,
        )
        await transport.start()

    session_tasks: set[asyncio.Task[None]] = set()
    try:
        logger.info("Assistant server ready", extra={"voice_enabled": transport is not None})

        if transport is None:
            await asyncio.Event().wait()
        else:
            while True:
                transport_session = await transport.accept_session()
                logger.info(
                    "New voice session accepted",
                    extra={"session_id": transport_session.session_id},
                )
                task = asyncio.create_task(
                    handle_voice_session(transport_session, registry, connector, dispatcher, config)
                )
                session_tasks.add(task)
                task.add_done_callback(session_tasks.discard)

    except asyncio.CancelledError:
        logger.info("Server loop cancelled")
    finally:
        logger.info("Shutting down assistant server")

        if transport is not None:
            await transport.stop()

        await registry.close_all()

        if session_tasks:
            logger.info("Waiting for sessions to complete", extra={"count": len(session_tasks)})
            _, pending = await asyncio.wait(
                session_tasks, timeout=config.graceful_shutdown_timeout_s
            )
            for task in pending:
                task.cancel()

        await runner.cleanup()
        await capabilities.disconnect()
        if redis_store is not None:
            await redis_store.disconnect()

        logger.info("Assistant server stopped")


def main() -> None:
    """Entry point for the assistant server."""
    parser = argparse.ArgumentParser(description="Assistant server")
    parser.add_argument(
        "--config",
        type=Path,
        default=Path(__file__).parent.parent.parent / "configs" / "assistant.yaml",
        help="Path to assistant config YAML file",
    )
    args = parser.parse_args()

    try:
        asyncio.run(start_server(args.config))
    except KeyboardInterrupt:
        logger.info("Assistant server interrupted")


if __name__ == "__main__":
    main()
