"""Text model client for the chat turn loop.

The orchestrator talks to the model through the small ``ChatModel`` protocol
so it can be exercised with scripted fakes. ``GeminiChatModel`` is the
production implementation on top of ``google-genai``; every SDK or transport
failure surfaces as ``UpstreamModelError``.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Literal, Protocol

from google import genai
from google.genai import errors as genai_errors
from google.genai import types

from src.assistant.config import GeminiConfig
from src.assistant.errors import UpstreamModelError
from src.assistant.models import ToolCall, ToolResult

logger = logging.getLogger(__name__)


@dataclass
class InlineMedia:
    """Binary attachment (such as a photo) sent alongside a user message."""

    data: bytes
    mime_type: str


@dataclass
class ModelMessage:
    """One entry of the model context.

    ``user`` and ``model`` entries carry text; a ``user`` entry may also carry
    inline media. A ``model`` entry may instead carry the tool calls it issued,
    and a ``tool`` entry carries their results.
    ``raw`` keeps the vendor content of a model turn so it can be replayed
    as-is in later rounds.
    """

    role: Literal["user", "model", "tool"]
    text: str | None = None
    tool_calls: list[ToolCall] = field(default_factory=list)
    tool_results: list[ToolResult] = field(default_factory=list)
    media: list[InlineMedia] = field(default_factory=list)
    raw: Any = None


@dataclass
class ModelTurn:
    """One model round-trip: final text, tool requests, or both."""

    text: str | None = None
    tool_calls: list[ToolCall] = field(default_factory=list)
    raw: Any = None


class ChatModel(Protocol):
    async def generate(
        self,
        system_prompt: str,
        contents: list[ModelMessage],
        tools: list[dict[str, Any]],
        json_response: bool = False,
    ) -> ModelTurn: ...


def to_gemini_contents(contents: list[ModelMessage]) -> list[types.Content]:
    """Convert the internal context into ``google-genai`` content objects."""
    converted: list[types.Content] = []
    for message in contents:
        if message.raw is not None:
            converted.append(message.raw)
        elif message.role == "tool":
            converted.append(
                types.Content(
                    role="user",
                    parts=[
                        types.Part(
                            function_response=types.FunctionResponse(
                                id=result.id, name=result.name, response=result.payload
                            )
                        )
                        for result in message.tool_results
                    ],
                )
            )
        elif message.tool_calls:
            converted.append(
                types.Content(
                    role="model",
                    parts=[
                        types.Part(
                            function_call=types.FunctionCall(
                                id=call.id, name=call.name, args=call.args
                            )
                        )
                        for call in message.tool_calls
                    ],
                )
            )
        else:
            parts = [
                types.Part.from_bytes(data=media.data, mime_type=media.mime_type)
                for media in message.media
            ]
            if message.text or not parts:
                parts.append(types.Part(text=message.text or ""))
            converted.append(types.Content(role=message.role, parts=parts))
    return converted


class GeminiChatModel:
    """``ChatModel`` backed by the Gemini ``generate_content`` API."""

    def __init__(self, client: genai.Client, config: GeminiConfig) -> None:
        self.client = client
        self.config = config

    async def generate(
        self,
        system_prompt: str,
        contents: list[ModelMessage],
        tools: list[dict[str, Any]],
        json_response: bool = False,
    ) -> ModelTurn:
        """Run one model round-trip.

        Args:
            system_prompt: System instructions for the turn
            contents: Ordered model context
            tools: Function declarations the model may call
            json_response: Ask for a JSON document instead of free text

        Returns:
            ModelTurn with text and/or tool calls

        Raises:
            UpstreamModelError: If the model is unreachable, times out or
                returns an empty response
        """
        config = types.GenerateContentConfig(
            system_instruction=system_prompt,
            tools=[types.Tool(function_declarations=tools)] if tools else None,
            temperature=self.config.temperature,
            max_output_tokens=self.config.max_output_tokens,
            response_mime_type="application/json" if json_response else None,
            automatic_function_calling=types.AutomaticFunctionCallingConfig(disable=True),
        )

        try:
            response = await asyncio.wait_for(
                self.client.aio.models.generate_content(
                    model=self.config.chat_model,
                    contents=to_gemini_contents(contents),
                    config=config,
                ),
                timeout=self.config.request_timeout_s,
            )
        except TimeoutError as e:
            raise UpstreamModelError(
                f"Model request timed out after {self.config.request_timeout_s}s"
            ) from e
        except genai_errors.APIError as e:
            raise UpstreamModelError(f"Model API error {e.code}: {e.message}") from e
        except Exception as e:
            raise UpstreamModelError(f"Model request failed: {e}") from e

        usage = response.usage_metadata
        if usage is not None:
            logger.debug(
                "Model usage",
                extra={
                    "input_tokens": usage.prompt_token_count,
                    "output_tokens": usage.candidates_token_count,
                },
            )

        tool_calls = [
            ToolCall(id=fc.id, name=fc.name or "", args=dict(fc.args or {}))
            if fc.id
            else ToolCall(name=fc.name or "", args=dict(fc.args or {}))
            for fc in response.function_calls or []
        ]

        text = None
        raw = None
        if response.candidates:
            raw = response.candidates[0].content
            parts = raw.parts if raw is not None and raw.parts else []
            text = "".join(part.text for part in parts if part.text and not part.thought) or None

        if text is None and not tool_calls:
            raise UpstreamModelError("Model returned an empty response")

        return ModelTurn(text=text, tool_calls=tool_calls, raw=raw)
