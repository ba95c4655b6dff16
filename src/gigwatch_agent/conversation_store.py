"""Conversation store — the SQLite log of messages, summaries, runs and steps.

Ids for messages and runs come from SQLite ``AUTOINCREMENT`` so they are
strictly increasing. Step indices are assigned inside the ``INSERT`` as
``MAX(step_index) + 1`` for the run and guarded by a unique constraint.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from .provider import ChatRole
from .records import (
    AgentRun,
    AgentStep,
    ConversationSummary,
    RunStatus,
    StepType,
    StoredMessage,
)

logger = logging.getLogger(__name__)

MAX_STEP_PAYLOAD_CHARS = 6000

_SCHEMA = (
    """CREATE TABLE IF NOT EXISTS chat_messages (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        role TEXT NOT NULL,
        content TEXT NOT NULL,
        source TEXT NOT NULL,
        external_chat_id TEXT,
        external_user_id TEXT,
        visible INTEGER NOT NULL DEFAULT 1,
        metadata TEXT NOT NULL DEFAULT '{}',
        created_at TEXT NOT NULL
    )""",
    "CREATE INDEX IF NOT EXISTS idx_chat_messages_visible ON chat_messages (visible, id)",
    """CREATE TABLE IF NOT EXISTS chat_context_summaries (
        scope TEXT PRIMARY KEY,
        until_message_id INTEGER NOT NULL DEFAULT 0,
        summary_text TEXT NOT NULL DEFAULT '',
        updated_at TEXT NOT NULL
    )""",
    """CREATE TABLE IF NOT EXISTS agent_runs (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        trigger_message_id INTEGER REFERENCES chat_messages (id),
        source TEXT NOT NULL,
        status TEXT NOT NULL,
        model TEXT NOT NULL,
        started_at TEXT NOT NULL,
        finished_at TEXT,
        error TEXT,
        metadata TEXT NOT NULL DEFAULT '{}'
    )""",
    """CREATE TABLE IF NOT EXISTS agent_run_steps (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        run_id INTEGER NOT NULL REFERENCES agent_runs (id),
        step_index INTEGER NOT NULL,
        step_type TEXT NOT NULL,
        tool_name TEXT,
        payload TEXT NOT NULL,
        created_at TEXT NOT NULL,
        UNIQUE (run_id, step_index)
    )""",
)

_MESSAGE_COLUMNS = (
    "id, role, content, source, external_chat_id, external_user_id, visible, metadata, created_at"
)
_RUN_COLUMNS = (
    "id, trigger_message_id, source, status, model, started_at, finished_at, error, metadata"
)


def _now() -> str:
    return datetime.now(tz=UTC).isoformat()


def cap_payload(payload: dict[str, Any], limit: int = MAX_STEP_PAYLOAD_CHARS) -> dict[str, Any]:
    """Replace payloads whose JSON exceeds *limit* chars with a preview."""
    text = json.dumps(payload, ensure_ascii=False, default=str)
    if len(text) <= limit:
        return payload
    return {"truncated": True, "preview": text[:limit]}


class ConversationStore:
    """SQLite-backed conversation log.

    One connection, used from the event-loop thread only.
    """

    def __init__(self, db_path: str | Path = ":memory:") -> None:
        self._db_path = str(db_path)
        if self._db_path != ":memory:":
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(self._db_path)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")
        for statement in _SCHEMA:
            self._conn.execute(statement)
        self._conn.commit()

    @property
    def db_path(self) -> str:
        return self._db_path

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def insert_message(
        self,
        role: ChatRole,
        content: str,
        source: str,
        external_chat_id: str | None = None,
        external_user_id: str | None = None,
        visible: bool = True,
        metadata: dict[str, Any] | None = None,
    ) -> StoredMessage:
        created_at = _now()
        meta = dict(metadata or {})
        cursor = self._conn.execute(
            "INSERT INTO chat_messages"
            " (role, content, source, external_chat_id, external_user_id,"
            " visible, metadata, created_at)"
            " VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (
                ChatRole(role).value,
                content,
                source,
                external_chat_id,
                external_user_id,
                1 if visible else 0,
                json.dumps(meta, ensure_ascii=False, default=str),
                created_at,
            ),
        )
        self._conn.commit()
        return StoredMessage(
            id=int(cursor.lastrowid),
            role=ChatRole(role),
            content=content,
            source=source,
            external_chat_id=external_chat_id,
            external_user_id=external_user_id,
            visible=visible,
            metadata=meta,
            created_at=created_at,
        )

    def get_message(self, message_id: int) -> StoredMessage | None:
        row = self._conn.execute(
            f"SELECT {_MESSAGE_COLUMNS} FROM chat_messages WHERE id = ?", (message_id,)
        ).fetchone()
        return _message_from_row(row) if row else None

    def list_visible_before_or_at(self, cutoff_id: int, limit: int) -> list[StoredMessage]:
        """The *limit* most recent visible messages with ``id <= cutoff_id``, oldest first."""
        rows = self._conn.execute(
            f"SELECT {_MESSAGE_COLUMNS} FROM chat_messages"
            " WHERE visible = 1 AND id <= ? ORDER BY id DESC LIMIT ?",
            (cutoff_id, limit),
        ).fetchall()
        return [_message_from_row(r) for r in reversed(rows)]

    def list_visible_latest(self, limit: int = 200) -> list[StoredMessage]:
        rows = self._conn.execute(
            f"SELECT {_MESSAGE_COLUMNS} FROM chat_messages"
            " WHERE visible = 1 ORDER BY id DESC LIMIT ?",
            (limit,),
        ).fetchall()
        return [_message_from_row(r) for r in reversed(rows)]

    def list_visible_after(self, after_id: int, limit: int) -> list[StoredMessage]:
        """Visible messages with ``id > after_id``, oldest first."""
        rows = self._conn.execute(
            f"SELECT {_MESSAGE_COLUMNS} FROM chat_messages"
            " WHERE visible = 1 AND id > ? ORDER BY id ASC LIMIT ?",
            (after_id, limit),
        ).fetchall()
        return [_message_from_row(r) for r in rows]

    def latest_visible_id(self) -> int:
        row = self._conn.execute("SELECT MAX(id) FROM chat_messages WHERE visible = 1").fetchone()
        return int(row[0] or 0)

    # ------------------------------------------------------------------
    # Summaries
    # ------------------------------------------------------------------

    def get_summary(self, scope: str) -> ConversationSummary:
        """Return the summary for *scope*, creating an empty one if missing."""
        self._conn.execute(
            "INSERT OR IGNORE INTO chat_context_summaries"
            " (scope, until_message_id, summary_text, updated_at) VALUES (?, 0, '', ?)",
            (scope, _now()),
        )
        self._conn.commit()
        row = self._conn.execute(
            "SELECT scope, until_message_id, summary_text, updated_at"
            " FROM chat_context_summaries WHERE scope = ?",
            (scope,),
        ).fetchone()
        return ConversationSummary(
            scope=row["scope"],
            until_message_id=int(row["until_message_id"]),
            summary_text=row["summary_text"],
            updated_at=row["updated_at"],
        )

    def upsert_summary(
        self, scope: str, until_message_id: int, summary_text: str
    ) -> ConversationSummary:
        """Write the summary for *scope*.

        The write is ignored when it would move the cursor backwards; the
        returned value is what the store holds afterwards.
        """
        cursor = self._conn.execute(
            "INSERT INTO chat_context_summaries (scope, until_message_id, summary_text, updated_at)"
            " VALUES (?, ?, ?, ?)"
            " ON CONFLICT (scope) DO UPDATE SET"
            " until_message_id = excluded.until_message_id,"
            " summary_text = excluded.summary_text,"
            " updated_at = excluded.updated_at"
            " WHERE excluded.until_message_id >= chat_context_summaries.until_message_id",
            (scope, until_message_id, summary_text, _now()),
        )
        self._conn.commit()
        if cursor.rowcount == 0:
            logger.warning(
                "Ignored summary write for %s: cursor %d is behind the stored one",
                scope,
                until_message_id,
            )
        return self.get_summary(scope)

    # ------------------------------------------------------------------
    # Runs and steps
    # ------------------------------------------------------------------

    def start_run(
        self,
        trigger_message_id: int | None,
        source: str,
        model: str,
        metadata: dict[str, Any] | None = None,
    ) -> AgentRun:
        started_at = _now()
        meta = dict(metadata or {})
        cursor = self._conn.execute(
            "INSERT INTO agent_runs"
            " (trigger_message_id, source, status, model, started_at, metadata)"
            " VALUES (?, ?, ?, ?, ?, ?)",
            (
                trigger_message_id,
                source,
                RunStatus.RUNNING.value,
                model,
                started_at,
                json.dumps(meta, ensure_ascii=False, default=str),
            ),
        )
        self._conn.commit()
        return AgentRun(
            id=int(cursor.lastrowid),
            trigger_message_id=trigger_message_id,
            source=source,
            status=RunStatus.RUNNING,
            model=model,
            started_at=started_at,
            metadata=meta,
        )

    def finish_run(
        self,
        run_id: int,
        status: RunStatus,
        error: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> bool:
        """Move a running run to its terminal *status*.

        Returns ``False`` (and changes nothing) if the run is unknown or
        already finished.

        Raises:
            ValueError: If *status* is not terminal.
        """
        status = RunStatus(status)
        if status == RunStatus.RUNNING:
            msg = "finish_run needs a terminal status"
            raise ValueError(msg)

        run = self.get_run(run_id)
        if run is None or run.finished:
            logger.warning("Run %d is missing or already finished; status kept", run_id)
            return False

        merged = {**run.metadata, **(metadata or {})}
        cursor = self._conn.execute(
            "UPDATE agent_runs SET status = ?, finished_at = ?, error = ?, metadata = ?"
            " WHERE id = ? AND status = ?",
            (
                status.value,
                _now(),
                error,
                json.dumps(merged, ensure_ascii=False, default=str),
                run_id,
                RunStatus.RUNNING.value,
            ),
        )
        self._conn.commit()
        return cursor.rowcount == 1

    def get_run(self, run_id: int) -> AgentRun | None:
        row = self._conn.execute(
            f"SELECT {_RUN_COLUMNS} FROM agent_runs WHERE id = ?", (run_id,)
        ).fetchone()
        return _run_from_row(row) if row else None

    def list_runs(self, limit: int = 50) -> list[AgentRun]:
        rows = self._conn.execute(
            f"SELECT {_RUN_COLUMNS} FROM agent_runs ORDER BY id DESC LIMIT ?", (limit,)
        ).fetchall()
        return [_run_from_row(r) for r in rows]

    def append_step(
        self,
        run_id: int,
        step_type: StepType,
        payload: dict[str, Any],
        tool_name: str | None = None,
    ) -> AgentStep:
        """Append a step to *run_id*; its index is the next free one for the run."""
        stored = cap_payload(payload)
        created_at = _now()
        cursor = self._conn.execute(
            "INSERT INTO agent_run_steps"
            " (run_id, step_index, step_type, tool_name, payload, created_at)"
            " SELECT ?, COALESCE(MAX(step_index), 0) + 1, ?, ?, ?, ?"
            " FROM agent_run_steps WHERE run_id = ?",
            (
                run_id,
                StepType(step_type).value,
                tool_name,
                json.dumps(stored, ensure_ascii=False, default=str),
                created_at,
                run_id,
            ),
        )
        self._conn.commit()
        row = self._conn.execute(
            "SELECT step_index FROM agent_run_steps WHERE id = ?", (cursor.lastrowid,)
        ).fetchone()
        return AgentStep(
            run_id=run_id,
            step_index=int(row["step_index"]),
            step_type=StepType(step_type),
            payload=stored,
            tool_name=tool_name,
            created_at=created_at,
        )

    def list_steps(self, run_id: int) -> list[AgentStep]:
        rows = self._conn.execute(
            "SELECT run_id, step_index, step_type, tool_name, payload, created_at"
            " FROM agent_run_steps WHERE run_id = ? ORDER BY step_index",
            (run_id,),
        ).fetchall()
        return [
            AgentStep(
                run_id=int(r["run_id"]),
                step_index=int(r["step_index"]),
                step_type=StepType(r["step_type"]),
                payload=json.loads(r["payload"]),
                tool_name=r["tool_name"],
                created_at=r["created_at"],
            )
            for r in rows
        ]

    def close(self) -> None:
        """Close the underlying database connection."""
        self._conn.close()


def _message_from_row(row: sqlite3.Row) -> StoredMessage:
    return StoredMessage(
        id=int(row["id"]),
        role=ChatRole(row["role"]),
        content=row["content"],
        source=row["source"],
        external_chat_id=row["external_chat_id"],
        external_user_id=row["external_user_id"],
        visible=bool(row["visible"]),
        metadata=json.loads(row["metadata"] or "{}"),
        created_at=row["created_at"],
    )


def _run_from_row(row: sqlite3.Row) -> AgentRun:
    return AgentRun(
        id=int(row["id"]),
        trigger_message_id=row["trigger_message_id"],
        source=row["source"],
        status=RunStatus(row["status"]),
        model=row["model"],
        started_at=row["started_at"],
        finished_at=row["finished_at"],
        error=row["error"],
        metadata=json.loads(row["metadata"] or "{}"),
    )
