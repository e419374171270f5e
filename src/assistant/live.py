"""Upstream realtime model sessions.

The Gemini Live SDK delivers a stream of loosely typed server messages. This
module translates them, at the boundary, into a small closed vocabulary of
upstream events consumed by one pump task per voice session:

    UpstreamAudio, UpstreamText, UpstreamTurnComplete, UpstreamInterrupted,
    UpstreamToolCall, UpstreamError, UpstreamClosed

``LiveConnector`` and ``LiveSessionHandle`` are the seams the voice bridge
depends on; tests substitute scripted fakes for them.
"""

import asyncio
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any, Protocol

from google import genai
from google.genai import types

from src.assistant.config import GeminiConfig, VoiceConfig
from src.assistant.errors import UpstreamModelError
from src.assistant.models import ToolCall, ToolResult

logger = logging.getLogger(__name__)


@dataclass
class UpstreamAudio:
    data: bytes
    mime_type: str


@dataclass
class UpstreamText:
    text: str


@dataclass
class UpstreamTurnComplete:
    pass


@dataclass
class UpstreamInterrupted:
    pass


@dataclass
class UpstreamToolCall:
    calls: list[ToolCall]


@dataclass
class UpstreamError:
    message: str


@dataclass
class UpstreamClosed:
    reason: str = "closed"


UpstreamEvent = (
    UpstreamAudio
    | UpstreamText
    | UpstreamTurnComplete
    | UpstreamInterrupted
    | UpstreamToolCall
    | UpstreamError
    | UpstreamClosed
)


@dataclass
class LiveSessionOptions:
    """Everything negotiated when opening an upstream session."""

    locale: str
    voice: str
    system_prompt: str
    tools: list[dict[str, Any]] = field(default_factory=list)


class LiveSessionHandle(Protocol):
    """One open upstream duplex session."""

    async def send_audio(self, chunk: bytes) -> None: ...

    async def send_context(self, text: str) -> None: ...

    async def send_tool_results(self, results: list[ToolResult]) -> None: ...

    def events(self) -> AsyncIterator[UpstreamEvent]: ...

    async def close(self) -> None: ...


class LiveConnector(Protocol):
    async def connect(self, options: LiveSessionOptions) -> LiveSessionHandle: ...


def translate_message(message: Any, default_mime_type: str) -> list[UpstreamEvent]:
    """Translate one Gemini Live server message into upstream events.

    Within a message, audio and text parts come first, then interruption and
    turn completion, matching the order the server reports them.
    """
    events: list[UpstreamEvent] = []

    content = getattr(message, "server_content", None)
    if content is not None:
        turn = content.model_turn
        if turn is not None and turn.parts:
            for part in turn.parts:
                if part.inline_data is not None and part.inline_data.data:
                    events.append(
                        UpstreamAudio(
                            data=part.inline_data.data,
                            mime_type=part.inline_data.mime_type or default_mime_type,
                        )
                    )
                if part.text:
                    events.append(UpstreamText(text=part.text))
        if content.interrupted:
            events.append(UpstreamInterrupted())
        if content.turn_complete:
            events.append(UpstreamTurnComplete())

    tool_call = getattr(message, "tool_call", None)
    if tool_call is not None and tool_call.function_calls:
        calls = []
        for fc in tool_call.function_calls:
            if fc.id:
                calls.append(ToolCall(id=fc.id, name=fc.name or "", args=dict(fc.args or {})))
            else:
                calls.append(ToolCall(name=fc.name or "", args=dict(fc.args or {})))
        events.append(UpstreamToolCall(calls=calls))

    go_away = getattr(message, "go_away", None)
    if go_away is not None:
        logger.warning("Upstream session ending", extra={"time_left": go_away.time_left})

    return events


class GeminiLiveSession:
    """``LiveSessionHandle`` over a ``client.aio.live.connect`` session.

    Outbound sends are serialized with a lock since audio relay and tool
    result delivery run in different tasks. ``close`` is idempotent.
    """

    def __init__(self, context: Any, session: Any, input_mime_type: str, output_mime_type: str):
        self._context = context
        self._session = session
        self._input_mime_type = input_mime_type
        self._output_mime_type = output_mime_type
        self._send_lock = asyncio.Lock()
        self._closed = False

    @property
    def is_closed(self) -> bool:
        return self._closed

    async def send_audio(self, chunk: bytes) -> None:
        if self._closed:
            raise UpstreamModelError("Upstream session is closed")
        async with self._send_lock:
            await self._session.send_realtime_input(
                audio=types.Blob(data=chunk, mime_type=self._input_mime_type)
            )

    async def send_context(self, text: str) -> None:
        if self._closed:
            raise UpstreamModelError("Upstream session is closed")
        async with self._send_lock:
            await self._session.send_client_content(
                turns=[types.Content(role="user", parts=[types.Part(text=text)])],
                turn_complete=False,
            )

    async def send_tool_results(self, results: list[ToolResult]) -> None:
        if self._closed:
            raise UpstreamModelError("Upstream session is closed")
        async with self._send_lock:
            await self._session.send_tool_response(
                function_responses=[
                    types.FunctionResponse(id=r.id, name=r.name, response=r.payload)
                    for r in results
                ]
            )

    async def events(self) -> AsyncIterator[UpstreamEvent]:
        """Yield upstream events until the session ends.

        ``receive()`` stops after every completed turn, so it is re-entered
        until an iteration yields nothing, which means the server closed.
        """
        try:
            while not self._closed:
                received = 0
                async for message in self._session.receive():
                    received += 1
                    for event in translate_message(message, self._output_mime_type):
                        yield event
                if received == 0:
                    break
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if not self._closed:
                logger.warning("Upstream receive failed", extra={"error": str(e)})
                yield UpstreamError(message=str(e))
                return

        if not self._closed:
            yield UpstreamClosed(reason="upstream closed")

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._context.__aexit__(None, None, None)
        except Exception:
            logger.warning("Error closing upstream session", exc_info=True)


class GeminiLiveConnector:
    """Opens Gemini Live sessions for voice connections."""

    def __init__(self, client: genai.Client, gemini: GeminiConfig, voice: VoiceConfig) -> None:
        self.client = client
        self.gemini = gemini
        self.voice = voice

    async def connect(self, options: LiveSessionOptions) -> GeminiLiveSession:
        """Open an upstream session.

        Raises:
            UpstreamModelError: If the handshake fails
        """
        config = types.LiveConnectConfig(
            response_modalities=[types.Modality.AUDIO],
            system_instruction=types.Content(parts=[types.Part(text=options.system_prompt)]),
            tools=[types.Tool(function_declarations=options.tools)] if options.tools else None,
            speech_config=types.SpeechConfig(
                voice_config=types.VoiceConfig(
                    prebuilt_voice_config=types.PrebuiltVoiceConfig(voice_name=options.voice)
                )
            ),
        )

        context = self.client.aio.live.connect(model=self.gemini.live_model, config=config)
        try:
            session = await context.__aenter__()
        except Exception as e:
            raise UpstreamModelError(f"Live connect failed: {e}") from e

        logger.info(
            "Upstream live session opened",
            extra={"model": self.gemini.live_model, "locale": options.locale, "voice": options.voice},
        )
        return GeminiLiveSession(
            context, session, self.voice.input_mime_type, self.voice.output_mime_type
        )
