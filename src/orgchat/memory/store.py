"""Per-user conversation memory.

Each user gets a lazily created session holding a FIFO window of the most
recent ``max_turns`` turns. Sessions are isolated: no operation on one user id
reads or changes another user's turns.
"""

import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from orgchat.agents.contracts import SessionStats, Turn
from orgchat.errors import SessionNotFound
from orgchat.memory.archive import TurnArchive


logger = logging.getLogger(__name__)


@dataclass
class Session:
    """Conversation state for one user."""

    user_id: str
    turns: deque
    started_at: datetime | None = None
    duration_ms: float = 0.0
    objects: list[str] = field(default_factory=list)


class ConversationStore:
    """Thread-safe map of user id -> session.

    Usage:
        store = ConversationStore(max_turns=20)
        store.append("u1", turn)
        history = store.history("u1")
    """

    def __init__(self, max_turns: int = 20, archive: TurnArchive | None = None):
        """Initialize the store.

        Args:
            max_turns: Window size per session (oldest turns are evicted first)
            archive: Optional durable archive receiving every appended turn
        """
        if max_turns < 1:
            raise ValueError("max_turns must be at least 1")
        self.max_turns = max_turns
        self.archive = archive
        self._lock = threading.RLock()
        self._sessions: dict[str, Session] = {}

    def _session(self, user_id: str) -> Session:
        session = self._sessions.get(user_id)
        if session is None:
            session = Session(user_id=user_id, turns=deque(maxlen=self.max_turns))
            self._sessions[user_id] = session
        return session

    def append(self, user_id: str, turn: Turn) -> None:
        """Append a turn, evicting the oldest one when the window is full."""
        with self._lock:
            session = self._session(user_id)
            if session.started_at is None:
                session.started_at = turn.timestamp
            session.turns.append(turn)
            session.duration_ms += turn.duration_ms
            if turn.intent.operation.needs_data:
                session.objects.append(turn.intent.target_object)
                del session.objects[:-self.max_turns]

        if self.archive is not None:
            try:
                self.archive.append_turn(turn)
            except Exception as e:
                logger.warning("Failed to archive turn %s for %s: %s", turn.turn_id, user_id, e)

    def history(self, user_id: str) -> list[Turn]:
        """Return a copy of the user's turns, oldest first (empty if unknown)."""
        with self._lock:
            session = self._sessions.get(user_id)
            return list(session.turns) if session else []

    def get_session(self, user_id: str) -> Session:
        """Return the live session.

        Raises:
            SessionNotFound: If the user has no session
        """
        with self._lock:
            session = self._sessions.get(user_id)
            if session is None:
                raise SessionNotFound(user_id)
            return session

    def stats(self, user_id: str) -> SessionStats:
        """Return conversation statistics (zero-valued for unknown users)."""
        with self._lock:
            try:
                session = self.get_session(user_id)
            except SessionNotFound:
                return SessionStats(user_id=user_id)
            return SessionStats(
                user_id=user_id,
                message_count=len(session.turns),
                duration_ms=round(session.duration_ms, 3),
                started_at=session.started_at,
            )

    def last_object(self, user_id: str) -> str | None:
        """Most recently discussed object, or None."""
        with self._lock:
            session = self._sessions.get(user_id)
            if session and session.objects:
                return session.objects[-1]
            return None

    def reset(self, user_id: str) -> bool:
        """Drop the user's session and archived turns.

        Returns:
            True if a session or archived turns existed
        """
        with self._lock:
            existed = self._sessions.pop(user_id, None) is not None

        archived = 0
        if self.archive is not None:
            try:
                archived = self.archive.clear_user(user_id)
            except Exception as e:
                logger.warning("Failed to clear archived turns for %s: %s", user_id, e)

        if existed or archived:
            logger.info("Cleared conversation for %s (%d archived turns)", user_id, archived)
        return existed or archived > 0

    def archived(self, user_id: str, limit: int = 20) -> list[dict[str, Any]]:
        """Return archived turns for a user, oldest first (empty without an archive)."""
        if self.archive is None:
            return []
        return self.archive.recent_turns(user_id, limit=limit)

    def archived_count(self) -> int | None:
        """Number of archived turns across users, or None without an archive."""
        if self.archive is None:
            return None
        try:
            return self.archive.count()
        except Exception as e:
            logger.warning("Failed to count archived turns: %s", e)
            return None

    def user_ids(self) -> list[str]:
        with self._lock:
            return sorted(self._sessions)
