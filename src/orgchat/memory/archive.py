"""Durable archive of conversation turns.

The in-memory ``ConversationStore`` only keeps a sliding window. When an
archive path is configured, every appended turn is also written here so that
past conversations can be inspected after the window has moved on or the
process has restarted.
"""

from __future__ import annotations

import json
import threading
from pathlib import Path
from typing import Any

import duckdb

from orgchat.agents.contracts import Turn


class TurnArchive:
    """Thread-safe DuckDB persistence for turns."""

    def __init__(self, db_path: Path | str):
        self.db_path = Path(db_path).expanduser()
        self._lock = threading.RLock()
        self._ensure_tables()

    def _connect(self) -> duckdb.DuckDBPyConnection:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        return duckdb.connect(str(self.db_path), read_only=False)

    def _ensure_tables(self) -> None:
        with self._lock:
            conn = self._connect()
            try:
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS orgchat_turns (
                        turn_id VARCHAR,
                        created_at TIMESTAMP,
                        user_id VARCHAR,
                        utterance VARCHAR,
                        operation VARCHAR,
                        target_object VARCHAR,
                        function_called VARCHAR,
                        success BOOLEAN,
                        error_code VARCHAR,
                        reply VARCHAR,
                        duration_ms DOUBLE,
                        turn_json VARCHAR
                    )
                    """
                )
            finally:
                conn.close()

    def append_turn(self, turn: Turn) -> str:
        with self._lock:
            conn = self._connect()
            try:
                conn.execute(
                    """
                    INSERT INTO orgchat_turns VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    [
                        turn.turn_id,
                        turn.timestamp.replace(tzinfo=None),
                        turn.user_id,
                        turn.utterance.text,
                        turn.intent.operation.value,
                        turn.intent.target_object,
                        turn.function_called or "",
                        turn.error is None,
                        turn.error.code if turn.error else "",
                        turn.reply,
                        float(turn.duration_ms),
                        turn.model_dump_json(),
                    ],
                )
            finally:
                conn.close()
        return turn.turn_id

    def recent_turns(self, user_id: str, *, limit: int = 20) -> list[dict[str, Any]]:
        """Return the user's most recent turns, oldest first."""
        uid = (user_id or "").strip()
        if not uid:
            return []
        with self._lock:
            conn = self._connect()
            try:
                rows = conn.execute(
                    """
                    SELECT turn_json
                    FROM (
                        SELECT turn_json, created_at, rowid AS seq
                        FROM orgchat_turns
                        WHERE user_id = ?
                        ORDER BY created_at DESC, seq DESC
                        LIMIT ?
                    ) t
                    ORDER BY created_at ASC, seq ASC
                    """,
                    [uid, max(1, min(500, int(limit)))],
                ).fetchall()
            finally:
                conn.close()

        out: list[dict[str, Any]] = []
        for row in rows:
            try:
                data = json.loads(row[0] or "{}")
            except json.JSONDecodeError:
                continue
            if isinstance(data, dict):
                out.append(data)
        return out

    def count(self, user_id: str | None = None) -> int:
        with self._lock:
            conn = self._connect()
            try:
                if user_id is None:
                    row = conn.execute("SELECT COUNT(*) FROM orgchat_turns").fetchone()
                else:
                    row = conn.execute(
                        "SELECT COUNT(*) FROM orgchat_turns WHERE user_id = ?",
                        [user_id],
                    ).fetchone()
            finally:
                conn.close()
        return int(row[0]) if row else 0

    def clear_user(self, user_id: str) -> int:
        uid = (user_id or "").strip()
        if not uid:
            return 0
        with self._lock:
            conn = self._connect()
            try:
                deleted = conn.execute(
                    """
                    DELETE FROM orgchat_turns
                    WHERE user_id = ?
                    RETURNING turn_id
                    """,
                    [uid],
                ).fetchall()
            finally:
                conn.close()
        return len(deleted)
