"""Voice session state.

A VoiceSession is the per-connection record the voice bridge mutates: caller
identity, the single upstream handle it owns, the lifecycle state and activity
metrics. It is created on ``start`` and torn down on stop, disconnect or a
terminal upstream error.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum

from src.assistant.live import LiveSessionHandle

logger = logging.getLogger(__name__)


class VoiceSessionState(Enum):
    """Voice session state machine states.

    State Transitions:
    - INIT → CONNECTING (on start)
    - CONNECTING → ACTIVE (upstream handshake complete)
    - CONNECTING → CLOSING (stop, disconnect or handshake failure)
    - ACTIVE → INTERRUPTED (user spoke over the assistant)
    - INTERRUPTED → ACTIVE (next turn)
    - ACTIVE/INTERRUPTED → CLOSING (stop, disconnect or upstream error)
    - CLOSING → CLOSED

    Audio is relayed upstream only in ACTIVE and INTERRUPTED.
    """

    INIT = "init"
    CONNECTING = "connecting"
    ACTIVE = "active"
    INTERRUPTED = "interrupted"
    CLOSING = "closing"
    CLOSED = "closed"


VALID_TRANSITIONS: dict[VoiceSessionState, set[VoiceSessionState]] = {
    VoiceSessionState.INIT: {VoiceSessionState.CONNECTING, VoiceSessionState.CLOSING},
    VoiceSessionState.CONNECTING: {VoiceSessionState.ACTIVE, VoiceSessionState.CLOSING},
    VoiceSessionState.ACTIVE: {VoiceSessionState.INTERRUPTED, VoiceSessionState.CLOSING},
    VoiceSessionState.INTERRUPTED: {VoiceSessionState.ACTIVE, VoiceSessionState.CLOSING},
    VoiceSessionState.CLOSING: {VoiceSessionState.CLOSED},
    VoiceSessionState.CLOSED: set(),  # Terminal state
}

RELAY_STATES = frozenset({VoiceSessionState.ACTIVE, VoiceSessionState.INTERRUPTED})


@dataclass
class SessionMetrics:
    """Voice session activity metrics."""

    audio_chunks_in: int = 0
    audio_chunks_out: int = 0
    text_events_out: int = 0
    tool_calls: int = 0
    tool_errors: int = 0
    interruptions: int = 0
    turns: int = 0

    connect_latency_ms: float | None = None
    session_start_ts: float = field(default_factory=time.monotonic)
    session_end_ts: float | None = None

    def record_connected(self) -> None:
        self.connect_latency_ms = (time.monotonic() - self.session_start_ts) * 1000.0

    def finalize(self) -> None:
        """Mark session as complete and record end time."""
        self.session_end_ts = time.monotonic()

    @property
    def duration_s(self) -> float:
        return (self.session_end_ts or time.monotonic()) - self.session_start_ts


class VoiceSession:
    """State for one voice connection.

    Owns exactly one upstream handle once connected. ``close`` releases the
    handle and cancels the pump task; it is safe to call more than once.
    """

    def __init__(
        self,
        session_id: str,
        locale: str = "en",
        user_id: str | None = None,
        is_logged_in: bool = False,
    ) -> None:
        self.session_id = session_id
        self.locale = locale
        self.user_id = user_id
        self.is_logged_in = is_logged_in
        self.created_at = datetime.now(UTC)
        self.updated_at = self.created_at

        self.state = VoiceSessionState.INIT
        self.metrics = SessionMetrics()
        self.handle: LiveSessionHandle | None = None
        self.pump_task: asyncio.Task[None] | None = None
        self.tool_tasks: set[asyncio.Task[None]] = set()
        self._closed = False

    @property
    def accepts_audio(self) -> bool:
        return self.state in RELAY_STATES and self.handle is not None

    @property
    def is_open(self) -> bool:
        return self.state not in (VoiceSessionState.CLOSING, VoiceSessionState.CLOSED)

    def touch(self) -> None:
        self.updated_at = datetime.now(UTC)

    def transition_state(self, new_state: VoiceSessionState) -> None:
        """Transition session to a new state with validation.

        Args:
            new_state: Target state

        Raises:
            ValueError: If transition is invalid
        """
        if new_state not in VALID_TRANSITIONS.get(self.state, set()):
            raise ValueError(f"Invalid state transition: {self.state.value} → {new_state.value}")

        old_state = self.state
        self.state = new_state
        self.touch()

        logger.info(
            "Session state transition",
            extra={
                "session_id": self.session_id,
                "from_state": old_state.value,
                "to_state": new_state.value,
            },
        )

    async def close(self) -> None:
        """Release the upstream handle and stop the pump.

        In-flight tool tasks are left to finish; their results are discarded
        because the session is no longer open.

        Raises:
            Exception: Whatever closing the upstream handle raised; the
                session is CLOSED regardless.
        """
        if self._closed:
            return
        self._closed = True

        if self.state not in (VoiceSessionState.CLOSING, VoiceSessionState.CLOSED):
            self.transition_state(VoiceSessionState.CLOSING)

        current = asyncio.current_task()
        if self.pump_task is not None and self.pump_task is not current:
            self.pump_task.cancel()

        try:
            if self.handle is not None:
                await self.handle.close()
        finally:
            self.transition_state(VoiceSessionState.CLOSED)
            self.metrics.finalize()
            logger.info("Voice session closed", extra=self.get_metrics_summary())

    def get_metrics_summary(self) -> dict[str, str | float | int | None]:
        """Get session metrics summary for logging/monitoring.

        Returns:
            Dictionary of metric names to values
        """
        return {
            "session_id": self.session_id,
            "state": self.state.value,
            "locale": self.locale,
            "connect_latency_ms": self.metrics.connect_latency_ms,
            "audio_chunks_in": self.metrics.audio_chunks_in,
            "audio_chunks_out": self.metrics.audio_chunks_out,
            "text_events_out": self.metrics.text_events_out,
            "tool_calls": self.metrics.tool_calls,
            "tool_errors": self.metrics.tool_errors,
            "interruptions": self.metrics.interruptions,
            "turns": self.metrics.turns,
            "session_duration_s": self.metrics.duration_s,
        }
