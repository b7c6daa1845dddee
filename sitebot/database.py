from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Iterator

from .models import QuotaState, StoredSession, StoredTurn, StoredVersion


class PersistenceWarning(RuntimeWarning):
    """A write to the store failed; in-memory session state is still correct."""


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def utc_today() -> str:
    return datetime.now(timezone.utc).date().isoformat()


class Database:
    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()

    def init(self) -> None:
        with self._connect() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS sessions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    account_id TEXT NOT NULL,
                    title TEXT NOT NULL DEFAULT 'Новый сайт',
                    status TEXT NOT NULL,
                    dialogue_state TEXT NOT NULL DEFAULT 'idle',
                    created_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_sessions_account
                    ON sessions (account_id, created_at);

                CREATE TABLE IF NOT EXISTS turns (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    session_id INTEGER NOT NULL,
                    turn_index INTEGER NOT NULL,
                    role TEXT NOT NULL,
                    content TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    FOREIGN KEY(session_id) REFERENCES sessions(id) ON DELETE CASCADE
                );

                CREATE INDEX IF NOT EXISTS idx_turns_session_idx
                    ON turns (session_id, turn_index);

                CREATE TABLE IF NOT EXISTS versions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    session_id INTEGER NOT NULL,
                    version_index INTEGER NOT NULL,
                    content TEXT NOT NULL,
                    instruction TEXT NOT NULL,
                    superseded INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    FOREIGN KEY(session_id) REFERENCES sessions(id) ON DELETE CASCADE
                );

                CREATE INDEX IF NOT EXISTS idx_versions_session_idx
                    ON versions (session_id, superseded, version_index);

                CREATE TABLE IF NOT EXISTS quotas (
                    account_id TEXT PRIMARY KEY,
                    generations_remaining INTEGER NOT NULL,
                    downloads_remaining INTEGER NOT NULL,
                    generations_reset_on TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );
                """
            )
            self._add_missing_columns(conn)

    @staticmethod
    def _add_missing_columns(conn: sqlite3.Connection) -> None:
        # Stores created before dialogue state was tracked: chats with turns resume as ready.
        columns = {row["name"] for row in conn.execute("PRAGMA table_info(sessions)")}
        if "dialogue_state" not in columns:
            conn.execute("ALTER TABLE sessions ADD COLUMN dialogue_state TEXT NOT NULL DEFAULT 'idle'")
            conn.execute(
                """
                UPDATE sessions SET dialogue_state = 'ready'
                WHERE id IN (SELECT DISTINCT session_id FROM turns)
                """
            )

    def _row_to_session(self, row: sqlite3.Row) -> StoredSession:
        return StoredSession(
            id=row["id"],
            account_id=row["account_id"],
            title=row["title"],
            status=row["status"],
            created_at=row["created_at"],
            dialogue_state=row["dialogue_state"],
        )

    def _row_to_turn(self, row: sqlite3.Row) -> StoredTurn:
        return StoredTurn(
            id=row["id"],
            session_id=row["session_id"],
            turn_index=row["turn_index"],
            role=row["role"],
            content=row["content"],
            created_at=row["created_at"],
        )

    def _row_to_version(self, row: sqlite3.Row) -> StoredVersion:
        return StoredVersion(
            id=row["id"],
            session_id=row["session_id"],
            version_index=row["version_index"],
            content=row["content"],
            instruction=row["instruction"],
            created_at=row["created_at"],
        )

    def create_session(self, account_id: str, title: str = "Новый сайт") -> StoredSession:
        created_at = utc_now_iso()
        with self._connect() as conn:
            cur = conn.execute(
                """
                INSERT INTO sessions (account_id, title, status, created_at)
                VALUES (?, ?, 'active', ?)
                """,
                (account_id, title, created_at),
            )
            session_id = int(cur.lastrowid)

            row = conn.execute(
                "SELECT * FROM sessions WHERE id = ?",
                (session_id,),
            ).fetchone()
            if row is None:
                raise RuntimeError("Failed to create session")
            return self._row_to_session(row)

    def get_session(self, session_id: int) -> StoredSession | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM sessions WHERE id = ?",
                (session_id,),
            ).fetchone()
            return self._row_to_session(row) if row else None

    def list_sessions(self, account_id: str, limit: int = 10) -> list[StoredSession]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM sessions
                WHERE account_id = ?
                ORDER BY created_at DESC, id DESC
                LIMIT ?
                """,
                (account_id, limit),
            ).fetchall()
            return [self._row_to_session(r) for r in rows]

    def update_session(
        self,
        session_id: int,
        *,
        title: str | None = None,
        status: str | None = None,
        dialogue_state: str | None = None,
    ) -> None:
        with self._connect() as conn:
            if title is not None:
                conn.execute("UPDATE sessions SET title = ? WHERE id = ?", (title, session_id))
            if status is not None:
                conn.execute("UPDATE sessions SET status = ? WHERE id = ?", (status, session_id))
            if dialogue_state is not None:
                conn.execute("UPDATE sessions SET dialogue_state = ? WHERE id = ?", (dialogue_state, session_id))

    def delete_session(self, session_id: int) -> bool:
        """Remove a session; its turns and versions go with it through the foreign keys."""
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM sessions WHERE id = ?", (session_id,))
            return cur.rowcount > 0

    def append_turn(self, session_id: int, role: str, content: str) -> StoredTurn:
        created_at = utc_now_iso()
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COALESCE(MAX(turn_index), 0) AS max_idx FROM turns WHERE session_id = ?",
                (session_id,),
            ).fetchone()
            next_idx = int(row["max_idx"]) + 1
            cur = conn.execute(
                """
                INSERT INTO turns (session_id, turn_index, role, content, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (session_id, next_idx, role, content, created_at),
            )
            turn_id = int(cur.lastrowid)
            turn_row = conn.execute("SELECT * FROM turns WHERE id = ?", (turn_id,)).fetchone()
            if turn_row is None:
                raise RuntimeError("Failed to create turn")
            return self._row_to_turn(turn_row)

    def list_turns(self, session_id: int) -> list[StoredTurn]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM turns WHERE session_id = ? ORDER BY turn_index ASC",
                (session_id,),
            ).fetchall()
            return [self._row_to_turn(r) for r in rows]

    def list_versions(self, session_id: int) -> list[StoredVersion]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM versions
                WHERE session_id = ? AND superseded = 0
                ORDER BY version_index ASC
                """,
                (session_id,),
            ).fetchall()
            return [self._row_to_version(r) for r in rows]

    def get_version(self, version_id: int) -> StoredVersion | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM versions WHERE id = ?",
                (version_id,),
            ).fetchone()
            return self._row_to_version(row) if row else None

    def record_generation(
        self,
        session_id: int,
        version_index: int,
        content: str,
        instruction: str,
        account_id: str | None = None,
        quota: QuotaState | None = None,
    ) -> int:
        """Store a committed version and the matching quota in one transaction.

        Versions at or after ``version_index`` are marked superseded rather than
        deleted so previously shared links keep resolving.
        """
        now = utc_now_iso()
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE versions SET superseded = 1
                WHERE session_id = ? AND version_index >= ? AND superseded = 0
                """,
                (session_id, version_index),
            )
            cur = conn.execute(
                """
                INSERT INTO versions (session_id, version_index, content, instruction, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (session_id, version_index, content, instruction, now),
            )
            version_id = int(cur.lastrowid)

            if account_id is not None and quota is not None:
                conn.execute(
                    """
                    UPDATE quotas
                    SET generations_remaining = ?, downloads_remaining = ?, updated_at = ?
                    WHERE account_id = ?
                    """,
                    (quota.generations_remaining, quota.downloads_remaining, now, account_id),
                )
            return version_id

    def get_or_create_quota(
        self,
        account_id: str,
        generation_allowance: int,
        default_downloads: int = 0,
        today: date | None = None,
    ) -> QuotaState:
        """Load the account quota, refilling the daily generation allowance on a new UTC day."""
        today_iso = today.isoformat() if today else utc_today()
        now = utc_now_iso()
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM quotas WHERE account_id = ?",
                (account_id,),
            ).fetchone()

            if row is None:
                conn.execute(
                    """
                    INSERT INTO quotas (
                        account_id, generations_remaining, downloads_remaining,
                        generations_reset_on, updated_at
                    ) VALUES (?, ?, ?, ?, ?)
                    """,
                    (account_id, generation_allowance, default_downloads, today_iso, now),
                )
                return QuotaState(
                    generations_remaining=generation_allowance,
                    downloads_remaining=default_downloads,
                )

            generations = int(row["generations_remaining"])
            if row["generations_reset_on"] != today_iso:
                generations = generation_allowance
                conn.execute(
                    """
                    UPDATE quotas
                    SET generations_remaining = ?, generations_reset_on = ?, updated_at = ?
                    WHERE account_id = ?
                    """,
                    (generations, today_iso, now, account_id),
                )

            return QuotaState(
                generations_remaining=generations,
                downloads_remaining=int(row["downloads_remaining"]),
            )

    def update_quota(self, account_id: str, quota: QuotaState) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE quotas
                SET generations_remaining = ?, downloads_remaining = ?, updated_at = ?
                WHERE account_id = ?
                """,
                (quota.generations_remaining, quota.downloads_remaining, utc_now_iso(), account_id),
            )
