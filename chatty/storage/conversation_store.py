"""
SQLite-backed conversation store for the terminal chat client.

Schema
------
sessions : id INTEGER PK AUTOINCREMENT, name TEXT, created_at TEXT, updated_at TEXT
messages : id INTEGER PK AUTOINCREMENT, session_id INTEGER FK -> sessions(id)
           ON DELETE CASCADE, role TEXT, content TEXT, created_at TEXT

All timestamps are written by SQLite (UTC, ``YYYY-MM-DDTHH:MM:SSZ``).
Messages are ordered by ``messages.id``, never by timestamp.

Usage
-----
    with ConversationStore() as store:      # ~/.local/share/chatty/chatty.db
        sid = store.create_session("Trip")
        store.append_message(sid, Message(role="user", content="hi"))
        transcript = store.load_session(sid)

The store owns exactly one connection.  Every public method runs under one
lock, so operations from several threads are serialised and never interleave.
Each method accepts ``cancel`` (a ``threading.Event``) and ``timeout``
(seconds); when either fires the statement is interrupted, the open
transaction is rolled back and ``OperationCancelled`` is raised.
"""
from __future__ import annotations

import os
import sqlite3
import threading
import time
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

from ..config import DEFAULT_BUSY_TIMEOUT, get_busy_timeout, get_log_level, get_storage_path, load_config
from ..utils.logging import get_logger, set_level
from .errors import (
    InvalidArgument,
    InvalidState,
    NotFound,
    OperationCancelled,
    StorageError,
    StorageUnavailable,
)
from .models import Message, SessionSummary, Transcript
from .timestamps import SQL_NOW, parse_timestamp

logger = get_logger(__name__)

DEFAULT_DIR = Path(".local") / "share" / "chatty"
DEFAULT_FILENAME = "chatty.db"

# SQLite VM instructions between cancellation checks.
_PROGRESS_STEPS = 1000

_MIGRATIONS = f"""
    CREATE TABLE IF NOT EXISTS sessions (
        id          INTEGER PRIMARY KEY AUTOINCREMENT,
        name        TEXT    NOT NULL,
        created_at  TEXT    NOT NULL DEFAULT {SQL_NOW},
        updated_at  TEXT    NOT NULL DEFAULT {SQL_NOW}
    );

    CREATE TABLE IF NOT EXISTS messages (
        id          INTEGER PRIMARY KEY AUTOINCREMENT,
        session_id  INTEGER NOT NULL,
        role        TEXT    NOT NULL,
        content     TEXT    NOT NULL,
        created_at  TEXT    NOT NULL DEFAULT {SQL_NOW},
        FOREIGN KEY (session_id) REFERENCES sessions(id) ON DELETE CASCADE
    );

    CREATE INDEX IF NOT EXISTS idx_messages_session_id
        ON messages(session_id);
"""

_SUMMARY_SELECT = """
    SELECT s.id, s.name, s.created_at, s.updated_at, COUNT(m.id) AS message_count
    FROM sessions s
    LEFT JOIN messages m ON m.session_id = s.id
"""


def _make_private_dirs(directory: Path) -> None:
    """Create *directory* and every missing ancestor with mode 0o700."""
    missing = []
    current = directory
    while not current.exists():
        missing.append(current)
        current = current.parent
    for d in reversed(missing):
        d.mkdir(mode=0o700, exist_ok=True)
    if not directory.is_dir():
        raise NotADirectoryError(f"{directory} is not a directory")


def resolve_db_path(db_path: Optional[str | Path] = None) -> Path:
    """
    Turn a location hint into an absolute, normalised database path and
    create its missing parent directories (owner-only permissions).

    A blank hint resolves to ``~/.local/share/chatty/chatty.db``.
    """
    hint = str(db_path or "").strip()
    try:
        if hint:
            path = Path(os.path.abspath(os.path.expanduser(hint)))
        else:
            path = Path.home() / DEFAULT_DIR / DEFAULT_FILENAME
        _make_private_dirs(path.parent)
    except (OSError, RuntimeError) as exc:
        raise StorageUnavailable(f"prepare storage directory for {hint or 'default location'!r}: {exc}") from exc
    return path


def _summary_from_row(row: sqlite3.Row) -> SessionSummary:
    return SessionSummary(
        id=row["id"],
        name=row["name"],
        created_at=parse_timestamp(row["created_at"]),
        updated_at=parse_timestamp(row["updated_at"]),
        message_count=row["message_count"],
    )


def _message_from_row(row: sqlite3.Row) -> Message:
    return Message(
        role=row["role"],
        content=row["content"],
        created_at=parse_timestamp(row["created_at"]),
    )


class ConversationStore:
    """Conversation store serialised through a single SQLite connection."""

    def __init__(
        self,
        db_path: Optional[str | Path] = None,
        busy_timeout: float = DEFAULT_BUSY_TIMEOUT,
    ) -> None:
        """
        Open (creating if needed) the database and apply migrations.

        Parameters
        ----------
        db_path : str | Path, optional
            Location of the database file.  Blank means the default location
            under the home directory; relative paths are made absolute.
        busy_timeout : float
            Seconds SQLite waits when the file is locked by another reader.

        Raises
        ------
        StorageUnavailable
            If the directory, the connection, the pragmas or the migrations fail.
        """
        self.db_path = resolve_db_path(db_path)
        self._lock = threading.Lock()
        self._conn: Optional[sqlite3.Connection] = None

        conn = None
        try:
            conn = sqlite3.connect(str(self.db_path), timeout=busy_timeout, check_same_thread=False)
            conn.row_factory = sqlite3.Row
            self._configure(conn, self.db_path)
            self._migrate(conn)
        except (sqlite3.Error, StorageUnavailable) as exc:
            if conn is not None:
                conn.close()
            logger.error("Could not open conversation store at %s: %s", self.db_path, exc)
            if isinstance(exc, StorageUnavailable):
                raise
            raise StorageUnavailable(f"open {self.db_path}: {exc}") from exc

        self._conn = conn
        logger.info("Opened conversation store at %s", self.db_path)

    @classmethod
    def from_config(cls, config: Optional[dict] = None) -> "ConversationStore":
        """Open the store at the location named by ``config.yaml`` / the environment."""
        if config is None:
            config = load_config()
        set_level(get_log_level(config))
        return cls(get_storage_path(config), busy_timeout=get_busy_timeout(config))

    # ── lifecycle ─────────────────────────────────────────────────────────────

    @property
    def closed(self) -> bool:
        return self._conn is None

    def close(self) -> None:
        """Release the connection.  Safe to call more than once."""
        with self._lock:
            if self._conn is None:
                return
            self._conn.close()
            self._conn = None
        logger.info("Closed conversation store at %s", self.db_path)

    def __enter__(self) -> "ConversationStore":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def __repr__(self) -> str:
        state = "closed" if self.closed else "open"
        return f"<ConversationStore {self.db_path} ({state})>"

    # ── schema ────────────────────────────────────────────────────────────────

    @staticmethod
    def _configure(conn: sqlite3.Connection, path: Path) -> None:
        conn.execute("PRAGMA foreign_keys = ON")
        row = conn.execute("PRAGMA foreign_keys").fetchone()
        if row is None or row[0] != 1:
            raise StorageUnavailable(f"enable foreign keys on {path}: not supported by this SQLite build")

        mode = conn.execute("PRAGMA journal_mode = WAL").fetchone()[0]
        if str(mode).lower() != "wal":
            logger.warning("WAL journal not available for %s, using %s", path, mode)

    @staticmethod
    def _migrate(conn: sqlite3.Connection) -> None:
        try:
            conn.executescript(_MIGRATIONS)
        except sqlite3.Error as exc:
            raise StorageUnavailable(f"apply migration: {exc}") from exc

    # ── plumbing ──────────────────────────────────────────────────────────────

    def _ensure_open(self, op: str) -> None:
        if self._conn is None:
            raise InvalidState(f"{op}: conversation store is closed")

    @contextmanager
    def _operation(
        self,
        op: str,
        cancel: Optional[threading.Event] = None,
        timeout: Optional[float] = None,
    ) -> Iterator[sqlite3.Connection]:
        """
        Run one public operation under the store lock.

        Waiting for the lock is bounded by *timeout*; while SQLite works, a
        progress handler interrupts the statement once *cancel* is set or the
        deadline passes.  ``sqlite3`` errors leaving the block are re-raised as
        ``OperationCancelled`` or ``StorageError`` naming *op*.
        """
        self._ensure_open(op)
        if (cancel is not None and cancel.is_set()) or (timeout is not None and timeout <= 0):
            raise OperationCancelled(f"{op}: cancelled before start")

        deadline = None if timeout is None else time.monotonic() + timeout
        if not self._lock.acquire(timeout=-1 if timeout is None else timeout):
            logger.warning("%s: gave up waiting for the store after %.3fs", op, timeout)
            raise OperationCancelled(f"{op}: timed out after {timeout}s waiting for the store")

        try:
            conn = self._conn
            if conn is None:
                raise InvalidState(f"{op}: conversation store is closed")

            def should_abort() -> bool:
                if cancel is not None and cancel.is_set():
                    return True
                return deadline is not None and time.monotonic() >= deadline

            if should_abort():
                raise OperationCancelled(f"{op}: cancelled while waiting for the store")

            conn.set_progress_handler(lambda: int(should_abort()), _PROGRESS_STEPS)
            try:
                yield conn
            except sqlite3.Error as exc:
                if isinstance(exc, sqlite3.OperationalError) and should_abort():
                    logger.warning("%s: interrupted by caller", op)
                    raise OperationCancelled(f"{op}: interrupted") from exc
                raise StorageError(f"{op}: {exc}") from exc
            finally:
                conn.set_progress_handler(None, 0)
        finally:
            self._lock.release()

    @staticmethod
    def _check_session_id(op: str, session_id: int) -> None:
        if isinstance(session_id, bool) or not isinstance(session_id, int):
            raise InvalidArgument(f"{op}: session id must be an integer, got {session_id!r}")
        if session_id <= 0:
            raise InvalidArgument(f"{op}: invalid session id {session_id}")

    @staticmethod
    def _insert_messages(
        conn: sqlite3.Connection,
        op: str,
        session_id: int,
        rows: Sequence[Tuple[str, str]],
    ) -> None:
        """Insert *rows* and bump the session, inside the caller's transaction."""
        try:
            conn.executemany(
                "INSERT INTO messages (session_id, role, content) VALUES (?, ?, ?)",
                [(session_id, role, content) for role, content in rows],
            )
        except sqlite3.IntegrityError as exc:
            if "FOREIGN KEY" not in str(exc).upper():
                raise
            raise NotFound(f"{op}: session {session_id} not found") from exc

        cur = conn.execute(f"UPDATE sessions SET updated_at = {SQL_NOW} WHERE id = ?", (session_id,))
        if cur.rowcount == 0:
            raise NotFound(f"{op}: session {session_id} not found")

    # ── public API ────────────────────────────────────────────────────────────

    def create_session(
        self,
        name: str = "",
        *,
        cancel: Optional[threading.Event] = None,
        timeout: Optional[float] = None,
    ) -> int:
        """
        Insert a new conversation and return its identifier.

        A blank *name* becomes ``"Session <YYYY-MM-DD> <HH:MM>"`` in local time.
        """
        self._ensure_open("create session")
        title = (name or "").strip()
        if not title:
            title = f"Session {datetime.now().strftime('%Y-%m-%d %H:%M')}"

        with self._operation("create session", cancel, timeout) as conn:
            with conn:
                cur = conn.execute("INSERT INTO sessions (name) VALUES (?)", (title,))
            session_id = cur.lastrowid

        logger.debug("Created session %d", session_id)
        return session_id

    def update_session_name(
        self,
        session_id: int,
        name: str,
        *,
        cancel: Optional[threading.Event] = None,
        timeout: Optional[float] = None,
    ) -> None:
        """Rename a session and mark it as recently active."""
        op = "rename session"
        self._ensure_open(op)
        self._check_session_id(op, session_id)
        trimmed = (name or "").strip()
        if not trimmed:
            raise InvalidArgument(f"{op}: name for session {session_id} cannot be empty")

        with self._operation(op, cancel, timeout) as conn:
            with conn:
                cur = conn.execute(
                    f"UPDATE sessions SET name = ?, updated_at = {SQL_NOW} WHERE id = ?",
                    (trimmed, session_id),
                )
            if cur.rowcount == 0:
                raise NotFound(f"{op}: session {session_id} not found")

        logger.debug("Renamed session %d", session_id)

    def append_message(
        self,
        session_id: int,
        message: Message,
        *,
        cancel: Optional[threading.Event] = None,
        timeout: Optional[float] = None,
    ) -> None:
        """
        Append *message* to a session.

        The insert and the session's ``updated_at`` bump commit together; on
        any failure neither is kept.  ``message.created_at`` is ignored, the
        row is stamped by SQLite.

        Raises
        ------
        InvalidArgument
            Non-positive session id or blank role.
        NotFound
            No session with that id.
        """
        op = "append message"
        self._ensure_open(op)
        self._check_session_id(op, session_id)
        role = (message.role or "").strip()
        if not role:
            raise InvalidArgument(f"{op}: message role for session {session_id} cannot be empty")

        with self._operation(op, cancel, timeout) as conn:
            with conn:
                self._insert_messages(conn, op, session_id, [(role, message.content)])

        logger.debug("Appended %s message to session %d", role, session_id)

    def save_turn(
        self,
        session_id: int,
        user_content: str,
        assistant_content: str,
        *,
        cancel: Optional[threading.Event] = None,
        timeout: Optional[float] = None,
    ) -> None:
        """Persist a user/assistant exchange as two messages in one transaction."""
        op = "save turn"
        self._ensure_open(op)
        self._check_session_id(op, session_id)

        with self._operation(op, cancel, timeout) as conn:
            with conn:
                self._insert_messages(
                    conn, op, session_id,
                    [("user", user_content), ("assistant", assistant_content)],
                )

        logger.debug("Saved turn to session %d", session_id)

    def list_sessions(
        self,
        limit: int = 0,
        *,
        cancel: Optional[threading.Event] = None,
        timeout: Optional[float] = None,
    ) -> List[SessionSummary]:
        """
        Return saved conversations, most recently active first.

        ``limit <= 0`` returns every session.  Sessions with the same
        ``updated_at`` are ordered newest id first.
        """
        query = _SUMMARY_SELECT + " GROUP BY s.id ORDER BY s.updated_at DESC, s.id DESC"
        params: tuple = ()
        if limit > 0:
            query += " LIMIT ?"
            params = (limit,)

        with self._operation("list sessions", cancel, timeout) as conn:
            rows = conn.execute(query, params).fetchall()

        return [_summary_from_row(r) for r in rows]

    def load_session(
        self,
        session_id: int,
        *,
        cancel: Optional[threading.Event] = None,
        timeout: Optional[float] = None,
    ) -> Transcript:
        """Fetch a session summary and its full transcript in append order."""
        op = "load session"
        self._ensure_open(op)
        self._check_session_id(op, session_id)

        with self._operation(op, cancel, timeout) as conn:
            row = conn.execute(
                _SUMMARY_SELECT + " WHERE s.id = ? GROUP BY s.id", (session_id,)
            ).fetchone()
            if row is None:
                raise NotFound(f"{op}: session {session_id} not found")
            message_rows = conn.execute(
                "SELECT role, content, created_at FROM messages WHERE session_id = ? ORDER BY id ASC",
                (session_id,),
            ).fetchall()

        return Transcript(
            summary=_summary_from_row(row),
            messages=[_message_from_row(r) for r in message_rows],
        )

    def get_history(
        self,
        session_id: int,
        last_n: int = 10,
        *,
        cancel: Optional[threading.Event] = None,
        timeout: Optional[float] = None,
    ) -> List[Dict[str, str]]:
        """
        Return the last *last_n* messages of a session as
        ``{"role": str, "content": str}`` dicts, oldest first, ready to use
        as chat completion history.  ``last_n <= 0`` returns all of them.
        """
        op = "get history"
        self._ensure_open(op)
        self._check_session_id(op, session_id)

        with self._operation(op, cancel, timeout) as conn:
            if conn.execute("SELECT 1 FROM sessions WHERE id = ?", (session_id,)).fetchone() is None:
                raise NotFound(f"{op}: session {session_id} not found")
            if last_n > 0:
                rows = conn.execute(
                    "SELECT role, content FROM messages WHERE session_id = ? ORDER BY id DESC LIMIT ?",
                    (session_id, last_n),
                ).fetchall()
                rows.reverse()
            else:
                rows = conn.execute(
                    "SELECT role, content FROM messages WHERE session_id = ? ORDER BY id ASC",
                    (session_id,),
                ).fetchall()

        return [{"role": r["role"], "content": r["content"]} for r in rows]

    def delete_session(
        self,
        session_id: int,
        *,
        cancel: Optional[threading.Event] = None,
        timeout: Optional[float] = None,
    ) -> None:
        """Delete a session; its messages go with it through ``ON DELETE CASCADE``."""
        op = "delete session"
        self._ensure_open(op)
        self._check_session_id(op, session_id)

        with self._operation(op, cancel, timeout) as conn:
            with conn:
                cur = conn.execute("DELETE FROM sessions WHERE id = ?", (session_id,))
            if cur.rowcount == 0:
                raise NotFound(f"{op}: session {session_id} not found")

        logger.info("Deleted session %d", session_id)
