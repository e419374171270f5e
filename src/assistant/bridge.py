"""Voice duplex bridge.

One VoiceBridge serves one client connection. It reads client events in
arrival order and relays them to an upstream realtime model session, while a
pump task relays upstream events back to the client. Tool calls issued by the
model run in their own tasks so slow capabilities never hold up audio.

Lifecycle per ``start``::

    INIT → CONNECTING → ACTIVE ⇄ INTERRUPTED → CLOSING → CLOSED

A failure in one session (handshake timeout, upstream error) is reported to
its client as a single ``error`` event followed by ``closed``; nothing here
touches other connections except through the SessionRegistry.
"""

import asyncio
import base64
import binascii
import logging

from src.assistant.config import VoiceConfig
from src.assistant.errors import SessionNotFoundError
from src.assistant.live import (
    LiveConnector,
    LiveSessionOptions,
    UpstreamAudio,
    UpstreamClosed,
    UpstreamError,
    UpstreamInterrupted,
    UpstreamText,
    UpstreamToolCall,
    UpstreamTurnComplete,
)
from src.assistant.models import HistoryMessage, ToolCall, truncate_history
from src.assistant.prompts import build_history_summary, build_voice_system_prompt, voice_language
from src.assistant.registry import SessionRegistry
from src.assistant.session import VoiceSession, VoiceSessionState
from src.assistant.tools import SERVICE_SLUGS, TOOL_DECLARATIONS, ToolContext, ToolDispatcher
from src.assistant.transport.base import TransportSession
from src.assistant.transport.websocket_protocol import (
    AudioChunkMessage,
    AudioMessage,
    ClientMessage,
    ClosedMessage,
    ErrorMessage,
    InterruptedMessage,
    ReadyMessage,
    StartMessage,
    StopMessage,
    TextMessage,
    ToolResultMessage,
    TurnCompleteMessage,
)

logger = logging.getLogger(__name__)

CONNECTION_ERROR = "Connection error"
START_FAILED = "Could not start voice session"


class VoiceBridge:
    """Relays one client connection to an upstream realtime session."""

    def __init__(
        self,
        transport: TransportSession,
        registry: SessionRegistry,
        connector: LiveConnector,
        dispatcher: ToolDispatcher,
        config: VoiceConfig | None = None,
    ) -> None:
        """Initialize bridge.

        Args:
            transport: Client connection
            registry: Shared session registry
            connector: Opens upstream sessions
            dispatcher: Executes model-issued tool calls
            config: Voice settings
        """
        self.transport = transport
        self.registry = registry
        self.connector = connector
        self.dispatcher = dispatcher
        self.config = config or VoiceConfig()

        self.session: VoiceSession | None = None
        self._connect_task: asyncio.Task[None] | None = None

    @property
    def session_id(self) -> str:
        return self.transport.session_id

    async def run(self) -> None:
        """Process client events until the client disconnects."""
        try:
            async for message in self.transport.receive_events():
                await self.handle_message(message)
        finally:
            if self.session is not None:
                logger.info("Client disconnected", extra={"session_id": self.session_id})
                await self._end_session(self.session, reason="disconnect", notify=False)

    async def handle_message(self, message: ClientMessage) -> None:
        if isinstance(message, StartMessage):
            await self._on_start(message)
        elif isinstance(message, AudioChunkMessage):
            await self._on_audio(message)
        elif isinstance(message, StopMessage):
            await self._on_stop()

    async def _on_start(self, message: StartMessage) -> None:
        if self.session is not None:
            logger.info("Restarting voice session", extra={"session_id": self.session_id})
            await self._end_session(self.session, reason="superseded", notify=False)

        session = VoiceSession(
            self.session_id,
            locale=message.locale or "en",
            user_id=message.user_id,
            is_logged_in=message.is_logged_in,
        )
        session.transition_state(VoiceSessionState.CONNECTING)
        self.session = session
        self._connect_task = asyncio.create_task(self._connect(session, message.history))

    async def _connect(self, session: VoiceSession, history: list[HistoryMessage]) -> None:
        language = voice_language(session.locale, self.config.default_voice)
        options = LiveSessionOptions(
            locale=session.locale,
            voice=language.voice,
            system_prompt=build_voice_system_prompt(language, SERVICE_SLUGS),
            tools=TOOL_DECLARATIONS,
        )

        try:
            session.handle = await asyncio.wait_for(
                self.connector.connect(options), timeout=self.config.connect_timeout_s
            )
            await self.registry.install(session)

            summary = build_history_summary(truncate_history(history))
            if summary:
                await session.handle.send_context(summary)

            session.transition_state(VoiceSessionState.ACTIVE)
            session.metrics.record_connected()
            await self.transport.send_event(ReadyMessage())
            session.pump_task = asyncio.create_task(self._pump(session))

            logger.info(
                "Voice session ready",
                extra={
                    "session_id": session.session_id,
                    "locale": session.locale,
                    "voice": language.voice,
                    "connect_latency_ms": session.metrics.connect_latency_ms,
                },
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(
                "Voice session failed to start",
                extra={"session_id": session.session_id, "error": str(e)},
            )
            await self.transport.send_event(ErrorMessage(message=START_FAILED, code="START_FAILED"))
            await self._end_session(session, reason="error", notify=True)

    async def _on_audio(self, message: AudioChunkMessage) -> None:
        session = self.session
        if session is None or not session.is_open:
            await self._send_error(str(SessionNotFoundError(self.session_id)), "SESSION_NOT_FOUND")
            return
        if not session.accepts_audio:
            await self._send_error("Voice session is not ready", "NOT_READY")
            return

        try:
            chunk = base64.b64decode(message.audio, validate=True)
        except (binascii.Error, ValueError):
            await self._send_error("Invalid audio encoding", "INVALID_MESSAGE")
            return

        session.metrics.audio_chunks_in += 1
        try:
            await session.handle.send_audio(chunk)  # type: ignore[union-attr]
        except Exception as e:
            await self._fail(session, f"audio relay failed: {e}")

    async def _on_stop(self) -> None:
        session = self.session
        if session is None:
            await self._send_error(str(SessionNotFoundError(self.session_id)), "SESSION_NOT_FOUND")
            return
        await self._end_session(session, reason="stopped", notify=True)

    async def _pump(self, session: VoiceSession) -> None:
        """Relay upstream events to the client until the session ends."""
        assert session.handle is not None
        try:
            async for event in session.handle.events():
                if not session.is_open:
                    return

                if isinstance(event, UpstreamAudio):
                    self._resume(session)
                    session.metrics.audio_chunks_out += 1
                    await self.transport.send_event(
                        AudioMessage(
                            data=base64.b64encode(event.data).decode("ascii"),
                            mime_type=event.mime_type or self.config.output_mime_type,
                        )
                    )
                elif isinstance(event, UpstreamText):
                    self._resume(session)
                    session.metrics.text_events_out += 1
                    await self.transport.send_event(TextMessage(text=event.text))
                elif isinstance(event, UpstreamTurnComplete):
                    self._resume(session)
                    session.metrics.turns += 1
                    await self.transport.send_event(TurnCompleteMessage())
                elif isinstance(event, UpstreamInterrupted):
                    if session.state == VoiceSessionState.ACTIVE:
                        session.transition_state(VoiceSessionState.INTERRUPTED)
                    session.metrics.interruptions += 1
                    await self.transport.send_event(InterruptedMessage())
                elif isinstance(event, UpstreamToolCall):
                    for call in event.calls:
                        self._spawn_tool(session, call)
                elif isinstance(event, UpstreamError):
                    await self._fail(session, event.message)
                    return
                elif isinstance(event, UpstreamClosed):
                    logger.info(
                        "Upstream closed the session",
                        extra={"session_id": session.session_id, "reason": event.reason},
                    )
                    await self._end_session(session, reason=event.reason, notify=True)
                    return

            if session.is_open:
                await self._end_session(session, reason="upstream closed", notify=True)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            await self._fail(session, str(e))

    @staticmethod
    def _resume(session: VoiceSession) -> None:
        if session.state == VoiceSessionState.INTERRUPTED:
            session.transition_state(VoiceSessionState.ACTIVE)

    def _spawn_tool(self, session: VoiceSession, call: ToolCall) -> None:
        task = asyncio.create_task(self._run_tool(session, call))
        session.tool_tasks.add(task)
        task.add_done_callback(session.tool_tasks.discard)

    async def _run_tool(self, session: VoiceSession, call: ToolCall) -> None:
        session.metrics.tool_calls += 1
        context = ToolContext(
            user_id=session.user_id, is_logged_in=session.is_logged_in, locale=session.locale
        )
        result = await self.dispatcher.dispatch(call, context)
        if result.is_error:
            session.metrics.tool_errors += 1

        if not session.is_open or session.handle is None:
            logger.info(
                "Discarding tool result for closed session",
                extra={"session_id": session.session_id, "tool": call.name},
            )
            return

        await self.transport.send_event(ToolResultMessage(name=result.name, result=result.payload))
        try:
            await session.handle.send_tool_results([result])
        except Exception as e:
            logger.warning(
                "Failed to return tool result upstream",
                extra={"session_id": session.session_id, "tool": call.name, "error": str(e)},
            )

    async def _fail(self, session: VoiceSession, reason: str) -> None:
        """End ``session`` after an upstream error, notifying the client once."""
        if not session.is_open:
            return
        logger.warning(
            "Upstream session error", extra={"session_id": session.session_id, "error": reason}
        )
        await self._send_error(CONNECTION_ERROR, "UPSTREAM_ERROR")
        await self._end_session(session, reason="error", notify=True)

    async def _end_session(self, session: VoiceSession, reason: str, notify: bool) -> None:
        """Tear down ``session``: cancel its handshake, unregister, close.

        The registry entry is removed and the upstream handle closed together.
        """
        if self.session is not session and not session.is_open:
            return

        if self.session is session:
            self.session = None
            task, self._connect_task = self._connect_task, None
            if task is not None and task is not asyncio.current_task() and not task.done():
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)

        await self.registry.remove(session.session_id, expected=session)
        try:
            await session.close()
        except Exception:
            logger.exception(
                "Failed to close voice session", extra={"session_id": session.session_id}
            )

        if notify:
            await self.transport.send_event(ClosedMessage(reason=reason))

    async def _send_error(self, message: str, code: str) -> None:
        await self.transport.send_event(ErrorMessage(message=message, code=code))
