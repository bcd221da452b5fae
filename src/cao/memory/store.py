"""Durable storage for sessions, messages, blackboard entries and call logs."""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, List, Mapping, Optional, Protocol, Sequence
from uuid import uuid4

from .schema import (
    BlackboardEntry,
    BlackboardEntryType,
    LLMCallLog,
    Message,
    MessageRole,
    OperationLog,
    OperationStatus,
    Session,
    SessionMode,
    SessionStatus,
    utc_now,
)

DEFAULT_DB_PATH = Path("data/cao.sqlite")
LOGGER = logging.getLogger(__name__)


def _as_iso(timestamp: datetime) -> str:
    """Serialise a timestamp to a timezone-aware ISO 8601 string."""
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    return timestamp.astimezone(timezone.utc).isoformat()


def _from_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value)


def _dump_json(data: Any, *, default: Any) -> str:
    """Convert JSON-like payloads into a persisted string."""
    return json.dumps(default if data is None else data, default=str)


def _load_json(value: Optional[str], *, default: Any) -> Any:
    """Decode JSON columns while falling back to the provided default."""
    if not value:
        return default
    data = json.loads(value)
    if data is None:
        return default
    return data


def _new_id() -> str:
    return str(uuid4())


class SessionStore(Protocol):
    """Persistence surface the orchestration loop depends on."""

    def create_session(self, session: Session) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def update_session(
        self,
        session_id: str,
        *,
        status: Optional[SessionStatus] = None,
        current_iteration: Optional[int] = None,
        completed_at: Optional[datetime] = None,
    ) -> None: ...

    def request_abort(self, session_id: str) -> None: ...

    def insert_message(
        self,
        session_id: str,
        role: MessageRole,
        content: str,
        *,
        iteration: int = 0,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> Message: ...

    def list_messages(self, session_id: str, *, include_hidden: bool = True) -> List[Message]: ...

    def insert_llm_log(self, log: LLMCallLog) -> None: ...

    def log_operation(
        self,
        session_id: str,
        iteration: int,
        operation_type: str,
        *,
        file_path: Optional[str] = None,
        details: Optional[Mapping[str, Any]] = None,
    ) -> OperationLog: ...

    def update_operation_status(
        self,
        operation_id: str,
        status: OperationStatus,
        *,
        error_message: Optional[str] = None,
    ) -> None: ...

    def add_blackboard_entry(
        self,
        session_id: str,
        entry_type: BlackboardEntryType,
        content: str,
        *,
        iteration: int = 0,
    ) -> BlackboardEntry: ...

    def recent_blackboard_entries(self, session_id: str, *, limit: int = 10) -> List[BlackboardEntry]: ...


class MemoryStore:
    """SQLite-backed implementation of :class:`SessionStore`."""

    def __init__(self, db_path: Path | str = DEFAULT_DB_PATH) -> None:
        if str(db_path) == ":memory:":
            self.db_path: Optional[Path] = None
        else:
            self.db_path = Path(db_path).resolve()
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._conn: Optional[sqlite3.Connection] = self._open_connection()
        self._bootstrap()

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "MemoryStore":
        paths = config.get("paths") or {}
        db_path = paths.get("db_path")
        if db_path:
            return cls(Path(db_path))
        data_path = paths.get("data") or "data"
        return cls(Path(data_path) / "cao.sqlite")

    def close(self) -> None:
        if self._conn is not None:
            try:
                self._conn.close()
            finally:
                self._conn = None

    def __enter__(self) -> "MemoryStore":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def _open_connection(self) -> sqlite3.Connection:
        target = ":memory:" if self.db_path is None else str(self.db_path)
        # The abort flag may be flipped from another thread while a loop runs.
        connection = sqlite3.connect(target, check_same_thread=False)
        connection.row_factory = sqlite3.Row
        connection.execute("PRAGMA foreign_keys = ON")
        return connection

    @property
    def _db(self) -> sqlite3.Connection:
        if self._conn is None:
            raise sqlite3.ProgrammingError("MemoryStore is closed.")
        return self._conn

    def _bootstrap(self) -> None:
        self._db.executescript(
            """
            CREATE TABLE IF NOT EXISTS sessions (
                id TEXT PRIMARY KEY,
                project_id TEXT NOT NULL,
                repo_id TEXT NOT NULL,
                task_description TEXT NOT NULL,
                mode TEXT NOT NULL,
                status TEXT NOT NULL,
                max_iterations INTEGER NOT NULL,
                current_iteration INTEGER NOT NULL DEFAULT 0,
                abort_requested INTEGER NOT NULL DEFAULT 0,
                metadata TEXT NOT NULL,
                created_at TEXT NOT NULL,
                completed_at TEXT
            );

            CREATE TABLE IF NOT EXISTS messages (
                id TEXT PRIMARY KEY,
                session_id TEXT NOT NULL,
                seq INTEGER NOT NULL,
                role TEXT NOT NULL,
                content TEXT NOT NULL,
                iteration INTEGER NOT NULL,
                metadata TEXT NOT NULL,
                created_at TEXT NOT NULL,
                FOREIGN KEY(session_id) REFERENCES sessions(id) ON DELETE CASCADE
            );
            CREATE INDEX IF NOT EXISTS idx_messages_session_seq
                ON messages(session_id, seq);

            CREATE TABLE IF NOT EXISTS blackboard_entries (
                id TEXT PRIMARY KEY,
                session_id TEXT NOT NULL,
                seq INTEGER NOT NULL,
                entry_type TEXT NOT NULL,
                content TEXT NOT NULL,
                iteration INTEGER NOT NULL,
                created_at TEXT NOT NULL,
                FOREIGN KEY(session_id) REFERENCES sessions(id) ON DELETE CASCADE
            );
            CREATE INDEX IF NOT EXISTS idx_blackboard_session_seq
                ON blackboard_entries(session_id, seq);

            CREATE TABLE IF NOT EXISTS llm_calls (
                id TEXT PRIMARY KEY,
                session_id TEXT NOT NULL,
                iteration INTEGER NOT NULL,
                model TEXT NOT NULL,
                input_prompt TEXT NOT NULL,
                output_raw TEXT NOT NULL,
                parse_success INTEGER NOT NULL,
                parse_error TEXT,
                api_status INTEGER,
                created_at TEXT NOT NULL,
                FOREIGN KEY(session_id) REFERENCES sessions(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS operations (
                id TEXT PRIMARY KEY,
                session_id TEXT NOT NULL,
                iteration INTEGER NOT NULL,
                operation_type TEXT NOT NULL,
                file_path TEXT,
                status TEXT NOT NULL,
                details TEXT NOT NULL,
                error_message TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                FOREIGN KEY(session_id) REFERENCES sessions(id) ON DELETE CASCADE
            );
            CREATE INDEX IF NOT EXISTS idx_operations_session
                ON operations(session_id, iteration);
            """
        )
        self._db.commit()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                yield self._db
                self._db.commit()
            except Exception:
                self._db.rollback()
                raise

    def _next_seq(self, table: str, session_id: str) -> int:
        row = self._db.execute(
            f"SELECT COALESCE(MAX(seq), 0) AS seq FROM {table} WHERE session_id = ?",
            (session_id,),
        ).fetchone()
        return int(row["seq"]) + 1

    # Session operations -------------------------------------------------------------
    def create_session(self, session: Session) -> Session:
        with self._transaction():
            self._db.execute(
                """
                INSERT INTO sessions (
                    id, project_id, repo_id, task_description, mode, status,
                    max_iterations, current_iteration, abort_requested, metadata,
                    created_at, completed_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    session.id,
                    session.project_id,
                    session.repo_id,
                    session.task_description,
                    session.mode.value,
                    session.status.value,
                    session.max_iterations,
                    session.current_iteration,
                    int(session.abort_requested),
                    _dump_json(session.metadata, default={}),
                    _as_iso(session.created_at),
                    _as_iso(session.completed_at) if session.completed_at else None,
                ),
            )
        return session

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._lock:
            row = self._db.execute("SELECT * FROM sessions WHERE id = ?", (session_id,)).fetchone()
        if not row:
            return None
        return self._row_to_session(row)

    def list_sessions(self, *, limit: int = 50) -> List[Session]:
        with self._lock:
            rows = self._db.execute(
                "SELECT * FROM sessions ORDER BY created_at DESC LIMIT ?", (limit,)
            ).fetchall()
        return [self._row_to_session(row) for row in rows]

    def update_session(
        self,
        session_id: str,
        *,
        status: Optional[SessionStatus] = None,
        current_iteration: Optional[int] = None,
        completed_at: Optional[datetime] = None,
    ) -> None:
        assignments: list[str] = []
        params: list[Any] = []
        if status is not None:
            assignments.append("status = ?")
            params.append(SessionStatus(status).value)
        if current_iteration is not None:
            assignments.append("current_iteration = ?")
            params.append(int(current_iteration))
        if completed_at is not None:
            assignments.append("completed_at = ?")
            params.append(_as_iso(completed_at))
        if not assignments:
            return
        params.append(session_id)
        with self._transaction():
            self._db.execute(
                f"UPDATE sessions SET {', '.join(assignments)} WHERE id = ?",
                params,
            )

    def request_abort(self, session_id: str) -> None:
        with self._transaction():
            cursor = self._db.execute(
                "UPDATE sessions SET abort_requested = 1 WHERE id = ?", (session_id,)
            )
        if cursor.rowcount == 0:
            LOGGER.warning("Abort requested for unknown session %s", session_id)

    @staticmethod
    def _row_to_session(row: sqlite3.Row) -> Session:
        return Session(
            id=row["id"],
            project_id=row["project_id"],
            repo_id=row["repo_id"],
            task_description=row["task_description"],
            mode=SessionMode(row["mode"]),
            status=SessionStatus(row["status"]),
            max_iterations=row["max_iterations"],
            current_iteration=row["current_iteration"],
            abort_requested=bool(row["abort_requested"]),
            metadata=_load_json(row["metadata"], default={}),
            created_at=_from_iso(row["created_at"]),
            completed_at=_from_iso(row["completed_at"]),
        )

    # Message operations -------------------------------------------------------------
    def insert_message(
        self,
        session_id: str,
        role: MessageRole,
        content: str,
        *,
        iteration: int = 0,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> Message:
        message = Message(
            id=_new_id(),
            session_id=session_id,
            role=MessageRole(role),
            content=content,
            iteration=iteration,
            metadata=dict(metadata or {}),
        )
        with self._transaction():
            self._db.execute(
                """
                INSERT INTO messages (id, session_id, seq, role, content, iteration, metadata, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    message.id,
                    session_id,
                    self._next_seq("messages", session_id),
                    message.role.value,
                    message.content,
                    message.iteration,
                    _dump_json(message.metadata, default={}),
                    _as_iso(message.created_at),
                ),
            )
        return message

    def list_messages(self, session_id: str, *, include_hidden: bool = True) -> List[Message]:
        with self._lock:
            rows = self._db.execute(
                "SELECT * FROM messages WHERE session_id = ? ORDER BY seq ASC", (session_id,)
            ).fetchall()
        messages = [
            Message(
                id=row["id"],
                session_id=row["session_id"],
                role=MessageRole(row["role"]),
                content=row["content"],
                iteration=row["iteration"],
                metadata=_load_json(row["metadata"], default={}),
                created_at=_from_iso(row["created_at"]),
            )
            for row in rows
        ]
        if include_hidden:
            return messages
        return [message for message in messages if not message.hidden]

    # LLM call logs ------------------------------------------------------------------
    def insert_llm_log(self, log: LLMCallLog) -> None:
        with self._transaction():
            self._db.execute(
                """
                INSERT INTO llm_calls (
                    id, session_id, iteration, model, input_prompt, output_raw,
                    parse_success, parse_error, api_status, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    log.id,
                    log.session_id,
                    log.iteration,
                    log.model,
                    log.input_prompt,
                    log.output_raw,
                    int(log.parse_success),
                    log.parse_error,
                    log.api_status,
                    _as_iso(log.created_at),
                ),
            )

    def list_llm_logs(self, session_id: str) -> List[LLMCallLog]:
        with self._lock:
            rows = self._db.execute(
                "SELECT * FROM llm_calls WHERE session_id = ? ORDER BY iteration ASC, created_at ASC",
                (session_id,),
            ).fetchall()
        return [
            LLMCallLog(
                id=row["id"],
                session_id=row["session_id"],
                iteration=row["iteration"],
                model=row["model"],
                input_prompt=row["input_prompt"],
                output_raw=row["output_raw"],
                parse_success=bool(row["parse_success"]),
                parse_error=row["parse_error"],
                api_status=row["api_status"],
                created_at=_from_iso(row["created_at"]),
            )
            for row in rows
        ]

    # Operation logs -----------------------------------------------------------------
    def log_operation(
        self,
        session_id: str,
        iteration: int,
        operation_type: str,
        *,
        file_path: Optional[str] = None,
        details: Optional[Mapping[str, Any]] = None,
    ) -> OperationLog:
        record = OperationLog(
            id=_new_id(),
            session_id=session_id,
            iteration=iteration,
            operation_type=operation_type,
            file_path=file_path,
            details=dict(details or {}),
        )
        with self._transaction():
            self._db.execute(
                """
                INSERT INTO operations (
                    id, session_id, iteration, operation_type, file_path, status,
                    details, error_message, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.id,
                    record.session_id,
                    record.iteration,
                    record.operation_type,
                    record.file_path,
                    record.status.value,
                    _dump_json(record.details, default={}),
                    None,
                    _as_iso(record.created_at),
                    _as_iso(record.updated_at),
                ),
            )
        return record

    def update_operation_status(
        self,
        operation_id: str,
        status: OperationStatus,
        *,
        error_message: Optional[str] = None,
    ) -> None:
        with self._transaction():
            self._db.execute(
                "UPDATE operations SET status = ?, error_message = ?, updated_at = ? WHERE id = ?",
                (OperationStatus(status).value, error_message, _as_iso(utc_now()), operation_id),
            )

    def list_operations(
        self,
        session_id: str,
        *,
        statuses: Optional[Sequence[OperationStatus]] = None,
    ) -> List[OperationLog]:
        query = "SELECT * FROM operations WHERE session_id = ?"
        params: list[Any] = [session_id]
        if statuses:
            placeholders = ", ".join("?" for _ in statuses)
            query += f" AND status IN ({placeholders})"
            params.extend(OperationStatus(status).value for status in statuses)
        query += " ORDER BY iteration ASC, created_at ASC"
        with self._lock:
            rows = self._db.execute(query, params).fetchall()
        return [
            OperationLog(
                id=row["id"],
                session_id=row["session_id"],
                iteration=row["iteration"],
                operation_type=row["operation_type"],
                file_path=row["file_path"],
                status=OperationStatus(row["status"]),
                details=_load_json(row["details"], default={}),
                error_message=row["error_message"],
                created_at=_from_iso(row["created_at"]),
                updated_at=_from_iso(row["updated_at"]),
            )
            for row in rows
        ]

    # Blackboard ---------------------------------------------------------------------
    def add_blackboard_entry(
        self,
        session_id: str,
        entry_type: BlackboardEntryType,
        content: str,
        *,
        iteration: int = 0,
    ) -> BlackboardEntry:
        entry = BlackboardEntry(
            id=_new_id(),
            session_id=session_id,
            entry_type=BlackboardEntryType(entry_type),
            content=content,
            iteration=iteration,
        )
        with self._transaction():
            self._db.execute(
                """
                INSERT INTO blackboard_entries (id, session_id, seq, entry_type, content, iteration, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entry.id,
                    session_id,
                    self._next_seq("blackboard_entries", session_id),
                    entry.entry_type.value,
                    entry.content,
                    entry.iteration,
                    _as_iso(entry.created_at),
                ),
            )
        return entry

    def recent_blackboard_entries(self, session_id: str, *, limit: int = 10) -> List[BlackboardEntry]:
        """Return up to ``limit`` most recent entries, oldest first."""
        with self._lock:
            rows = self._db.execute(
                """
                SELECT * FROM blackboard_entries
                WHERE session_id = ?
                ORDER BY seq DESC
                LIMIT ?
                """,
                (session_id, max(int(limit), 0)),
            ).fetchall()
        entries = [
            BlackboardEntry(
                id=row["id"],
                session_id=row["session_id"],
                entry_type=BlackboardEntryType(row["entry_type"]),
                content=row["content"],
                iteration=row["iteration"],
                created_at=_from_iso(row["created_at"]),
            )
            for row in rows
        ]
        entries.reverse()
        return entries


__all__ = ["DEFAULT_DB_PATH", "MemoryStore", "SessionStore"]
