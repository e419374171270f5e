"""Session registry.

The only state shared across voice connections: a map from connection id to
its live VoiceSession. All mutations go through an asyncio lock so install,
lookup and removal are atomic with respect to each other.
"""

import asyncio
import logging

from src.assistant.session import VoiceSession

logger = logging.getLogger(__name__)


class SessionRegistry:
    """Concurrency-safe map of active voice sessions."""

    def __init__(self) -> None:
        self._sessions: dict[str, VoiceSession] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def get(self, session_id: str) -> VoiceSession | None:
        return self._sessions.get(session_id)

    async def install(self, session: VoiceSession) -> VoiceSession | None:
        """Insert ``session``, closing any session it supersedes first.

        The prior session for the same id is closed before the new one is
        visible, so at most one upstream handle per id is ever live.

        Returns:
            The superseded session, if there was one
        """
        async with self._lock:
            previous = self._sessions.pop(session.session_id, None)
            if previous is not None and previous is not session:
                logger.info(
                    "Superseding voice session", extra={"session_id": session.session_id}
                )
                await self._close_quietly(previous)
            self._sessions[session.session_id] = session
            return previous

    async def remove(
        self, session_id: str, expected: VoiceSession | None = None
    ) -> VoiceSession | None:
        """Remove and close the session for ``session_id``.

        Removal is unconditional: a failure while closing the upstream handle
        is logged and the entry is gone anyway. With ``expected``, only that
        exact instance is removed, so a late teardown cannot evict the session
        that superseded it.

        Returns:
            The removed session, or None if nothing matched
        """
        async with self._lock:
            session = self._sessions.get(session_id)
            if session is None or (expected is not None and session is not expected):
                return None
            del self._sessions[session_id]

        await self._close_quietly(session)
        return session

    async def close_all(self) -> None:
        """Close every session; used on shutdown."""
        async with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()

        for session in sessions:
            await self._close_quietly(session)

        if sessions:
            logger.info("Closed all voice sessions", extra={"count": len(sessions)})

    @staticmethod
    async def _close_quietly(session: VoiceSession) -> None:
        try:
            await session.close()
        except Exception:
            logger.exception(
                "Failed to close upstream session", extra={"session_id": session.session_id}
            )
