"""Shared value types for the chat loop, voice bridge and tool dispatcher."""

import uuid
from collections.abc import Sequence
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

# Maximum number of history entries forwarded to the model
MAX_HISTORY_MESSAGES = 10


class CamelModel(BaseModel):
    """Base model that reads and writes camelCase keys on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class HistoryMessage(CamelModel):
    """One prior conversation entry supplied by the client."""

    role: Literal["user", "assistant"]
    content: str


class ToolCall(BaseModel):
    """Model-issued request to run a named capability."""

    id: str = Field(default_factory=lambda: f"call-{uuid.uuid4().hex[:12]}")
    name: str
    args: dict[str, Any] = Field(default_factory=dict)


class ToolResult(BaseModel):
    """Outcome of a tool call, correlated to the call by id.

    ``payload`` is either the capability result or ``{"error": "..."}``.
    """

    id: str
    name: str
    payload: dict[str, Any]

    @property
    def is_error(self) -> bool:
        return "error" in self.payload


def truncate_history(
    history: Sequence[HistoryMessage], limit: int = MAX_HISTORY_MESSAGES
) -> list[HistoryMessage]:
    """Return the ``limit`` most recent entries, oldest first."""
    if limit <= 0:
        return []
    return list(history[-limit:])
