"""SQLite-backed, append-only conversation history.

Every message gets a per-session sequence number at append time. The sequence
is the only ordering key: pagination and LLM context reconstruction both read
by ``(session_id, sequence_number)``, never by timestamp.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
import threading
import weakref
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from .config import history_db_path
from .errors import IntegrityError, SessionNotFoundError
from .models import (
    HistoryPage,
    Message,
    MessageDraft,
    Session,
    SessionStats,
    ToolCallRequest,
)

logger = logging.getLogger(__name__)

_SESSIONS_DDL = """
CREATE TABLE IF NOT EXISTS sessions (
    id            TEXT PRIMARY KEY,
    agent_id      TEXT NOT NULL,
    created_at    TEXT NOT NULL,
    updated_at    TEXT NOT NULL,
    message_count INTEGER NOT NULL DEFAULT 0
)
"""

_MESSAGES_DDL = """
CREATE TABLE IF NOT EXISTS messages (
    session_id      TEXT NOT NULL,
    sequence_number INTEGER NOT NULL,
    role            TEXT NOT NULL,
    content         TEXT,
    tool_calls_json TEXT,
    tool_call_id    TEXT,
    tool_name       TEXT,
    is_comment      INTEGER NOT NULL DEFAULT 0,
    reasoning       TEXT,
    created_at      TEXT NOT NULL,
    PRIMARY KEY (session_id, sequence_number),
    FOREIGN KEY (session_id) REFERENCES sessions(id)
)
"""

_CREATE_INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_sessions_agent_updated ON sessions (agent_id, updated_at DESC)",
    "CREATE INDEX IF NOT EXISTS idx_messages_session_role_seq ON messages (session_id, role, sequence_number)",
    "CREATE INDEX IF NOT EXISTS idx_messages_session_call ON messages (session_id, tool_call_id)",
]

_MESSAGE_COLUMNS = (
    "session_id, sequence_number, role, content, tool_calls_json, tool_call_id, "
    "tool_name, is_comment, reasoning, created_at"
)


def _iso_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class HistoryManager:
    """Append-only message log with per-session sequencing.

    One long-lived SQLite connection guarded by a thread lock does the I/O;
    the async API runs it in worker threads. Appends to the same session are
    additionally serialized by a per-session ``asyncio.Lock`` so a single
    writer assigns each session's sequence numbers. The primary key on
    ``(session_id, sequence_number)`` backs this up at the storage level.
    """

    def __init__(self, db_path: str | Path | None = None) -> None:
        path = str(db_path) if db_path is not None else history_db_path()
        if path != ":memory:":
            Path(path).parent.mkdir(parents=True, exist_ok=True)
        self.db_path = path

        self._lock = threading.Lock()
        # Entries vanish once no append holds or awaits the lock.
        self._session_locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()
        self._conn = sqlite3.connect(path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        if path != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL;")
            self._conn.execute("PRAGMA synchronous=NORMAL;")
        self._create_schema()
        logger.info("History store ready at %s", path)

    def _create_schema(self) -> None:
        with self._lock:
            self._conn.execute(_SESSIONS_DDL)
            self._conn.execute(_MESSAGES_DDL)
            for statement in _CREATE_INDEXES:
                self._conn.execute(statement)
            self._conn.commit()

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def _session_lock(self, session_id: str) -> asyncio.Lock:
        lock = self._session_locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._session_locks[session_id] = lock
        return lock

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def ensure_session(self, session_id: str, agent_id: str) -> Session:
        """Return the session, creating it on first use."""
        return await asyncio.to_thread(self._ensure_session_sync, session_id, agent_id)

    async def get_session(self, session_id: str) -> Session | None:
        return await asyncio.to_thread(self._get_session_sync, session_id)

    async def list_sessions(self, agent_id: str | None = None, limit: int = 50) -> list[Session]:
        """Sessions ordered by last activity, newest first."""
        return await asyncio.to_thread(self._list_sessions_sync, agent_id, limit)

    def _ensure_session_sync(self, session_id: str, agent_id: str) -> Session:
        with self._lock:
            row = self._fetch_session_row(session_id)
            if row is None:
                now = _iso_now()
                self._conn.execute(
                    "INSERT INTO sessions (id, agent_id, created_at, updated_at, message_count) "
                    "VALUES (?, ?, ?, ?, 0)",
                    (session_id, agent_id, now, now),
                )
                self._conn.commit()
                logger.info("Created session %s for agent %s", session_id, agent_id)
                row = self._fetch_session_row(session_id)
        return self._row_to_session(row)

    def _get_session_sync(self, session_id: str) -> Session | None:
        with self._lock:
            row = self._fetch_session_row(session_id)
        return self._row_to_session(row) if row else None

    def _list_sessions_sync(self, agent_id: str | None, limit: int) -> list[Session]:
        query = "SELECT id, agent_id, created_at, updated_at, message_count FROM sessions"
        params: tuple[Any, ...] = ()
        if agent_id is not None:
            query += " WHERE agent_id = ?"
            params = (agent_id,)
        query += " ORDER BY updated_at DESC LIMIT ?"
        with self._lock:
            rows = self._conn.execute(query, params + (limit,)).fetchall()
        return [self._row_to_session(r) for r in rows]

    def _fetch_session_row(self, session_id: str) -> sqlite3.Row | None:
        """Caller must hold _lock."""
        return self._conn.execute(
            "SELECT id, agent_id, created_at, updated_at, message_count FROM sessions WHERE id = ?",
            (session_id,),
        ).fetchone()

    def _require_session(self, session_id: str) -> None:
        """Caller must hold _lock."""
        if self._fetch_session_row(session_id) is None:
            raise SessionNotFoundError(session_id)

    # ------------------------------------------------------------------
    # Append
    # ------------------------------------------------------------------

    async def append(self, session_id: str, draft: MessageDraft) -> Message:
        """Validate and persist a message; returns it with its sequence number.

        Raises:
            SessionNotFoundError: the session does not exist.
            IntegrityError: the message would corrupt the history structure
                (orphaned or misnamed tool result, unanswered tool calls,
                reused tool call id, mixed content and tool calls,
                sequence collision).
        """
        async with self._session_lock(session_id):
            return await asyncio.to_thread(self._append_sync, session_id, draft)

    def _append_sync(self, session_id: str, draft: MessageDraft) -> Message:
        _check_shape(draft)
        with self._lock:
            self._require_session(session_id)
            tail = self._fetch_tail(session_id)
            _check_linkage(draft, tail)
            if draft.tool_calls:
                reused = self._answered_call_ids(session_id, [tc.id for tc in draft.tool_calls])
                if reused:
                    raise IntegrityError(
                        f"tool call ids already used in session {session_id}: " + ", ".join(sorted(reused))
                    )

            row = self._conn.execute(
                "SELECT COALESCE(MAX(sequence_number), 0) FROM messages WHERE session_id = ?",
                (session_id,),
            ).fetchone()
            next_seq = int(row[0]) + 1
            now = _iso_now()
            tool_calls_json = (
                json.dumps([tc.model_dump() for tc in draft.tool_calls], ensure_ascii=False)
                if draft.tool_calls
                else None
            )
            try:
                self._conn.execute(
                    f"INSERT INTO messages ({_MESSAGE_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        session_id,
                        next_seq,
                        draft.role,
                        draft.content,
                        tool_calls_json,
                        draft.tool_call_id,
                        draft.tool_name,
                        int(draft.is_comment),
                        draft.reasoning,
                        now,
                    ),
                )
                self._conn.execute(
                    "UPDATE sessions SET updated_at = ?, message_count = message_count + 1 WHERE id = ?",
                    (now, session_id),
                )
                self._conn.commit()
            except sqlite3.IntegrityError as exc:
                self._conn.rollback()
                raise IntegrityError(
                    f"Sequence collision in session {session_id} at {next_seq}"
                ) from exc

        logger.debug("Appended %s message #%d to session %s", draft.role, next_seq, session_id)
        return Message(
            session_id=session_id,
            sequence_number=next_seq,
            role=draft.role,
            content=draft.content,
            tool_calls=draft.tool_calls,
            tool_call_id=draft.tool_call_id,
            tool_name=draft.tool_name,
            is_comment=draft.is_comment,
            reasoning=draft.reasoning,
            created_at=datetime.fromisoformat(now),
        )

    def _fetch_tail(self, session_id: str) -> list[sqlite3.Row]:
        """Last non-tool message and the tool messages after it. Caller must hold _lock."""
        return self._conn.execute(
            f"SELECT {_MESSAGE_COLUMNS} FROM messages "
            "WHERE session_id = ? AND sequence_number >= COALESCE("
            "  (SELECT MAX(sequence_number) FROM messages WHERE session_id = ? AND role != 'tool'), 0"
            ") ORDER BY sequence_number ASC",
            (session_id, session_id),
        ).fetchall()

    async def pending_tool_calls(self, session_id: str) -> list[ToolCallRequest]:
        """Tool calls of the trailing assistant message that have no result yet."""
        return await asyncio.to_thread(self._pending_tool_calls_sync, session_id)

    def _pending_tool_calls_sync(self, session_id: str) -> list[ToolCallRequest]:
        with self._lock:
            tail = self._fetch_tail(session_id)
        return _unanswered_calls(tail)

    async def used_tool_call_ids(self, session_id: str, call_ids: list[str]) -> set[str]:
        """Which of ``call_ids`` already belong to an earlier call in the session."""
        return await asyncio.to_thread(self._used_tool_call_ids_sync, session_id, list(call_ids))

    def _used_tool_call_ids_sync(self, session_id: str, call_ids: list[str]) -> set[str]:
        with self._lock:
            used = self._answered_call_ids(session_id, call_ids)
            used.update(tc.id for tc in _unanswered_calls(self._fetch_tail(session_id)) if tc.id in call_ids)
        return used

    def _answered_call_ids(self, session_id: str, call_ids: list[str]) -> set[str]:
        """Ids among ``call_ids`` that already have a tool result. Caller must hold _lock.

        Appending after an assistant message requires all of its calls to be
        answered, so every earlier call id shows up here once it is closed.
        """
        if not call_ids:
            return set()
        placeholders = ", ".join("?" for _ in call_ids)
        rows = self._conn.execute(
            "SELECT DISTINCT tool_call_id FROM messages "
            f"WHERE session_id = ? AND role = 'tool' AND tool_call_id IN ({placeholders})",
            (session_id, *call_ids),
        ).fetchall()
        return {row[0] for row in rows}

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_recent(self, session_id: str, limit: int) -> HistoryPage:
        """Newest ``limit`` messages, returned oldest first."""
        return await asyncio.to_thread(self._page_sync, session_id, None, limit)

    async def get_messages_before(self, session_id: str, before_sequence: int, limit: int) -> HistoryPage:
        """Up to ``limit`` messages with ``sequence_number < before_sequence``, oldest first.

        ``has_more`` is true iff an even older message exists. One extra row is
        fetched to decide it, so the cost stays proportional to ``limit``.
        """
        return await asyncio.to_thread(self._page_sync, session_id, before_sequence, limit)

    def _page_sync(self, session_id: str, before_sequence: int | None, limit: int) -> HistoryPage:
        if limit < 1:
            raise ValueError("limit must be >= 1")
        query = f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE session_id = ?"
        params: tuple[Any, ...] = (session_id,)
        if before_sequence is not None:
            query += " AND sequence_number < ?"
            params += (before_sequence,)
        query += " ORDER BY sequence_number DESC LIMIT ?"
        params += (limit + 1,)
        with self._lock:
            self._require_session(session_id)
            rows = self._conn.execute(query, params).fetchall()
        has_more = len(rows) > limit
        messages = [self._row_to_message(r) for r in reversed(rows[:limit])]
        return HistoryPage(messages=messages, has_more=has_more)

    async def reconstruct_context(self, session_id: str) -> list[Message]:
        """Full ordered replay of a session, in one query."""
        return await asyncio.to_thread(self._reconstruct_sync, session_id)

    def _reconstruct_sync(self, session_id: str) -> list[Message]:
        with self._lock:
            self._require_session(session_id)
            rows = self._conn.execute(
                f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE session_id = ? ORDER BY sequence_number ASC",
                (session_id,),
            ).fetchall()
        return [self._row_to_message(r) for r in rows]

    async def get_session_stats(self, session_id: str) -> SessionStats:
        return await asyncio.to_thread(self._stats_sync, session_id)

    def _stats_sync(self, session_id: str) -> SessionStats:
        with self._lock:
            self._require_session(session_id)
            rows = self._conn.execute(
                "SELECT role, COUNT(*) AS n, MIN(sequence_number) AS lo, MAX(sequence_number) AS hi "
                "FROM messages WHERE session_id = ? GROUP BY role",
                (session_id,),
            ).fetchall()
        counts = {r["role"]: r["n"] for r in rows}
        return SessionStats(
            total_messages=sum(counts.values()),
            system_messages=counts.get("system", 0),
            user_messages=counts.get("user", 0),
            assistant_messages=counts.get("assistant", 0),
            tool_messages=counts.get("tool", 0),
            oldest_sequence=min((r["lo"] for r in rows), default=0),
            newest_sequence=max((r["hi"] for r in rows), default=0),
        )

    # ------------------------------------------------------------------
    # Row mapping
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_session(row: sqlite3.Row) -> Session:
        return Session(
            id=row["id"],
            agent_id=row["agent_id"],
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
            message_count=row["message_count"],
        )

    @staticmethod
    def _row_to_message(row: sqlite3.Row) -> Message:
        return Message(
            session_id=row["session_id"],
            sequence_number=row["sequence_number"],
            role=row["role"],
            content=row["content"],
            tool_calls=tuple(_load_tool_calls(row["tool_calls_json"])),
            tool_call_id=row["tool_call_id"],
            tool_name=row["tool_name"],
            is_comment=bool(row["is_comment"]),
            reasoning=row["reasoning"],
            created_at=datetime.fromisoformat(row["created_at"]),
        )


# ---------------------------------------------------------------------------
# Structural validation
# ---------------------------------------------------------------------------


def _load_tool_calls(raw: str | None) -> list[ToolCallRequest]:
    if not raw:
        return []
    return [ToolCallRequest(**tc) for tc in json.loads(raw)]


def _check_shape(draft: MessageDraft) -> None:
    """Per-message rules that need no history."""
    if draft.tool_calls:
        if draft.role != "assistant":
            raise IntegrityError(f"{draft.role} messages cannot carry tool calls")
        if draft.content is not None:
            raise IntegrityError("assistant messages with tool calls must have content=None")
        ids = [tc.id for tc in draft.tool_calls]
        if any(not i for i in ids) or len(set(ids)) != len(ids):
            raise IntegrityError(f"tool call ids must be non-empty and unique: {ids}")
        if any(not tc.name for tc in draft.tool_calls):
            raise IntegrityError("every tool call needs a name")
    if draft.role == "tool":
        if not draft.tool_call_id:
            raise IntegrityError("tool messages require tool_call_id")
        if not draft.tool_name:
            raise IntegrityError(f"tool message for {draft.tool_call_id} requires tool_name")
    elif draft.tool_call_id is not None or draft.tool_name is not None:
        raise IntegrityError(f"{draft.role} messages cannot carry tool_call_id/tool_name")
    if draft.is_comment and draft.role != "assistant":
        raise IntegrityError("only assistant messages can be comments")


def _unanswered_calls(tail: list[sqlite3.Row]) -> list[ToolCallRequest]:
    if not tail or tail[0]["role"] != "assistant":
        return []
    calls = _load_tool_calls(tail[0]["tool_calls_json"])
    answered = {r["tool_call_id"] for r in tail[1:]}
    return [tc for tc in calls if tc.id not in answered]


def _check_linkage(draft: MessageDraft, tail: list[sqlite3.Row]) -> None:
    """Rules relating the new message to the end of the history."""
    if draft.role != "tool":
        pending = _unanswered_calls(tail)
        if pending:
            raise IntegrityError(
                "tool calls still awaiting results: " + ", ".join(tc.id for tc in pending)
            )
        return

    if not tail or tail[0]["role"] != "assistant":
        raise IntegrityError(f"tool result {draft.tool_call_id} has no preceding assistant tool call")
    calls = {tc.id: tc for tc in _load_tool_calls(tail[0]["tool_calls_json"])}
    call = calls.get(draft.tool_call_id)
    if call is None:
        raise IntegrityError(
            f"tool result {draft.tool_call_id} does not match any call of the preceding assistant message"
        )
    if call.name != draft.tool_name:
        raise IntegrityError(
            f"tool result {draft.tool_call_id} is named {draft.tool_name!r}, call was {call.name!r}"
        )
    if any(r["tool_call_id"] == draft.tool_call_id for r in tail[1:]):
        raise IntegrityError(f"tool call {draft.tool_call_id} already has a result")
