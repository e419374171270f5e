"""Unit tests for the voice WebSocket event protocol."""

import json

import pytest

from src.assistant.errors import InputValidationError
from src.assistant.transport.websocket_protocol import (
    AudioChunkMessage,
    AudioMessage,
    ClosedMessage,
    ErrorMessage,
    StartMessage,
    StopMessage,
    ToolResultMessage,
    TurnCompleteMessage,
    parse_client_message,
)


class TestParseClientMessage:
    """Test decoding of client → server frames."""

    def test_start_message_camel_case(self) -> None:
        """Start events use camelCase keys on the wire."""
        raw = json.dumps(
            {
                "type": "start",
                "locale": "tr",
                "userId": "user-7",
                "isLoggedIn": True,
                "history": [{"role": "user", "content": "merhaba"}],
            }
        )

        message = parse_client_message(raw)

        assert isinstance(message, StartMessage)
        assert message.locale == "tr"
        assert message.user_id == "user-7"
        assert message.is_logged_in is True
        assert message.history[0].content == "merhaba"

    def test_start_message_defaults(self) -> None:
        message = parse_client_message('{"type": "start"}')

        assert isinstance(message, StartMessage)
        assert message.locale == "en"
        assert message.user_id is None
        assert message.is_logged_in is False
        assert message.history == []

    def test_audio_chunk(self) -> None:
        message = parse_client_message('{"type": "audio-chunk", "audio": "AAAA"}')
        assert isinstance(message, AudioChunkMessage)
        assert message.audio == "AAAA"

    def test_stop(self) -> None:
        assert isinstance(parse_client_message(b'{"type": "stop"}'), StopMessage)

    def test_unknown_event_type(self) -> None:
        with pytest.raises(InputValidationError, match="Unknown event type: dance"):
            parse_client_message('{"type": "dance"}')

    def test_missing_type(self) -> None:
        with pytest.raises(InputValidationError, match="Unknown event type"):
            parse_client_message('{"audio": "AAAA"}')

    def test_invalid_json(self) -> None:
        with pytest.raises(InputValidationError, match="Invalid JSON"):
            parse_client_message("{not json")

    def test_non_object(self) -> None:
        with pytest.raises(InputValidationError, match="JSON object"):
            parse_client_message("[1, 2, 3]")

    def test_empty_audio_rejected(self) -> None:
        with pytest.raises(InputValidationError, match="Invalid audio-chunk event"):
            parse_client_message('{"type": "audio-chunk", "audio": ""}')

    def test_invalid_history_role(self) -> None:
        raw = json.dumps({"type": "start", "history": [{"role": "system", "content": "x"}]})
        with pytest.raises(InputValidationError, match="Invalid start event"):
            parse_client_message(raw)


class TestServerMessages:
    """Test serialization of server → client events."""

    def test_audio_message_alias(self) -> None:
        data = json.loads(AudioMessage(data="AAAA").model_dump_json(by_alias=True))
        assert data == {"type": "audio", "data": "AAAA", "mimeType": "audio/pcm;rate=24000"}

    def test_tool_result_message(self) -> None:
        message = ToolResultMessage(name="search_jobs", result={"count": 0, "jobs": []})
        data = json.loads(message.model_dump_json(by_alias=True))
        assert data["type"] == "tool-result"
        assert data["result"] == {"count": 0, "jobs": []}

    def test_error_message_defaults(self) -> None:
        message = ErrorMessage(message="Connection error")
        assert message.type == "error"
        assert message.code == "INTERNAL_ERROR"

    def test_control_event_types(self) -> None:
        assert TurnCompleteMessage().type == "turn-complete"
        assert ClosedMessage().type == "closed"
