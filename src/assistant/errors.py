"""Error taxonomy for the assistant orchestrator.

Every error here is handled at the boundary of the component that detects it:

- UpstreamModelError: language model or its transport failed. The chat loop
  degrades to a locale fallback reply; the voice bridge ends that session only.
- ToolExecutionError: an internal capability call failed. Converted into a
  structured error ToolResult by the dispatcher.
- InputValidationError: malformed client input (empty message, unknown event).
  Rejected before any model invocation.
- SessionNotFoundError: audio or stop for an unknown or closed voice session.
  Reported to the client as an ``error`` event.
- LoopExhaustedError: tool-call round cap reached. Turned into a best-effort
  response with ``readyToAction = false``.
"""


class AssistantError(Exception):
    """Base class for orchestrator errors."""


class UpstreamModelError(AssistantError):
    """The language model (text or realtime) is unreachable or failed."""


class ToolExecutionError(AssistantError):
    """An internal capability invoked by a tool failed."""

    def __init__(self, tool_name: str, message: str) -> None:
        super().__init__(f"{tool_name}: {message}")
        self.tool_name = tool_name


class InputValidationError(AssistantError):
    """Client input rejected before reaching the model."""


class SessionNotFoundError(AssistantError):
    """No live voice session for the given connection."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"No active session: {session_id}")
        self.session_id = session_id


class LoopExhaustedError(AssistantError):
    """The tool-calling loop hit its round cap without a final answer."""

    def __init__(self, rounds: int, last_text: str | None = None) -> None:
        super().__init__(f"Tool loop exhausted after {rounds} rounds")
        self.rounds = rounds
        self.last_text = last_text
