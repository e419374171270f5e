"""Voice WebSocket message protocol definitions.

Defines Pydantic models for the client/server event vocabulary. Messages are
JSON-encoded text frames discriminated by their ``type`` field.
"""

import json
from typing import Any, Literal

from pydantic import Field, ValidationError

from src.assistant.errors import InputValidationError
from src.assistant.models import CamelModel, HistoryMessage


class StartMessage(CamelModel):
    """Client → Server: open a voice session."""

    type: Literal["start"] = "start"
    locale: str = Field(default="en", description="Initial conversation locale")
    user_id: str | None = Field(default=None, description="Caller identity")
    is_logged_in: bool = Field(default=False, description="Whether the caller is authenticated")
    history: list[HistoryMessage] = Field(
        default_factory=list, description="Prior text conversation to summarize upstream"
    )


class AudioChunkMessage(CamelModel):
    """Client → Server: one chunk of microphone audio.

    Base64-encoded PCM16 mono @ 16kHz.
    """

    type: Literal["audio-chunk"] = "audio-chunk"
    audio: str = Field(..., min_length=1, description="Base64-encoded PCM16 audio")


class StopMessage(CamelModel):
    """Client → Server: end the voice session."""

    type: Literal["stop"] = "stop"


class ReadyMessage(CamelModel):
    """Server → Client: upstream session is live, audio may flow."""

    type: Literal["ready"] = "ready"


class AudioMessage(CamelModel):
    """Server → Client: assistant audio relayed from upstream."""

    type: Literal["audio"] = "audio"
    data: str = Field(..., description="Base64-encoded audio")
    mime_type: str = Field(default="audio/pcm;rate=24000", description="Audio MIME type")


class TextMessage(CamelModel):
    """Server → Client: assistant text relayed from upstream."""

    type: Literal["text"] = "text"
    text: str


class TurnCompleteMessage(CamelModel):
    """Server → Client: the assistant finished its turn."""

    type: Literal["turn-complete"] = "turn-complete"


class InterruptedMessage(CamelModel):
    """Server → Client: user spoke over the assistant.

    The client must discard any buffered assistant audio for the turn.
    """

    type: Literal["interrupted"] = "interrupted"


class ToolResultMessage(CamelModel):
    """Server → Client: result of a tool call, for UI rendering."""

    type: Literal["tool-result"] = "tool-result"
    name: str
    result: dict[str, Any]


class ErrorMessage(CamelModel):
    """Server → Client: error notification."""

    type: Literal["error"] = "error"
    message: str = Field(..., description="Error description")
    code: str = Field(default="INTERNAL_ERROR", description="Error code")


class ClosedMessage(CamelModel):
    """Server → Client: the voice session has ended."""

    type: Literal["closed"] = "closed"
    reason: str = Field(default="closed", description="Reason for session end")


# Union type for all server → client messages
ServerMessage = (
    ReadyMessage
    | AudioMessage
    | TextMessage
    | TurnCompleteMessage
    | InterruptedMessage
    | ToolResultMessage
    | ErrorMessage
    | ClosedMessage
)

# Union type for all client → server messages
ClientMessage = StartMessage | AudioChunkMessage | StopMessage

CLIENT_MESSAGE_TYPES: dict[str, type[CamelModel]] = {
    "start": StartMessage,
    "audio-chunk": AudioChunkMessage,
    "stop": StopMessage,
}


def parse_client_message(raw: str | bytes) -> ClientMessage:
    """Decode and validate one client frame.

    Raises:
        InputValidationError: If the frame is not JSON, has an unknown type,
            or fails field validation
    """
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise InputValidationError(f"Invalid JSON: {e}") from e

    if not isinstance(data, dict):
        raise InputValidationError("Message must be a JSON object")

    message_type = data.get("type")
    model = CLIENT_MESSAGE_TYPES.get(message_type) if isinstance(message_type, str) else None
    if model is None:
        raise InputValidationError(f"Unknown event type: {message_type}")

    try:
        return model.model_validate(data)  # type: ignore[return-value]
    except ValidationError as e:
        raise InputValidationError(f"Invalid {message_type} event: {e.errors()[0]['msg']}") from e
