"""SQLite persistence for tasks and their normalized entry log."""
from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from .entries import NORMALIZATION_VERSION, NormalizedEntry
from .models import AgentBackend, InteractionMode, Task, TaskStatus, _now_iso

logger = logging.getLogger(__name__)

_TASK_COLUMNS = (
    "id",
    "prompt",
    "name",
    "status",
    "session_id",
    "cwd",
    "interaction_mode",
    "session_allowed_tools",
    "agent_backend",
    "model",
    "created_at",
    "updated_at",
)
_UPDATABLE_TASK_FIELDS = frozenset(_TASK_COLUMNS) - {"id", "created_at", "updated_at"}


def _to_column(key: str, value: Any) -> Any:
    if key == "session_allowed_tools":
        return json.dumps(list(value or []))
    if hasattr(value, "value"):
        return value.value
    return value


def _row_to_task(row: sqlite3.Row) -> Task:
    return Task(
        id=row["id"],
        prompt=row["prompt"],
        name=row["name"],
        status=TaskStatus(row["status"]),
        session_id=row["session_id"],
        cwd=row["cwd"],
        interaction_mode=InteractionMode(row["interaction_mode"]),
        session_allowed_tools=json.loads(row["session_allowed_tools"] or "[]"),
        agent_backend=AgentBackend(row["agent_backend"]),
        model=row["model"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class TaskStore:
    """Durable task records plus an append-mostly, indexed entry log."""

    def __init__(self, db_path: Path | str):
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._ensure_schema()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS tasks (
                    id TEXT PRIMARY KEY,
                    prompt TEXT NOT NULL,
                    name TEXT,
                    status TEXT NOT NULL,
                    session_id TEXT,
                    cwd TEXT NOT NULL,
                    interaction_mode TEXT NOT NULL DEFAULT 'ask',
                    session_allowed_tools TEXT NOT NULL DEFAULT '[]',
                    agent_backend TEXT NOT NULL DEFAULT 'claude-code',
                    model TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS entries (
                    id TEXT NOT NULL,
                    task_id TEXT NOT NULL,
                    idx INTEGER NOT NULL,
                    type TEXT NOT NULL,
                    tool_id TEXT,
                    data TEXT NOT NULL,
                    normalization_version INTEGER NOT NULL,
                    created_at TEXT NOT NULL,
                    PRIMARY KEY (task_id, id)
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_entries_task_idx ON entries(task_id, idx)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_entries_tool ON entries(task_id, tool_id)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_tasks_status ON tasks(status)"
            )

    # ── Tasks ──

    def create_task(self, task: Task) -> Task:
        values = [_to_column(c, getattr(task, c)) for c in _TASK_COLUMNS]
        with self._connect() as conn:
            conn.execute(
                f"INSERT INTO tasks ({', '.join(_TASK_COLUMNS)}) "
                f"VALUES ({', '.join('?' for _ in _TASK_COLUMNS)})",
                values,
            )
        logger.info("Task created task=%s backend=%s", task.id[:8], task.agent_backend.value)
        return task

    def get_task(self, task_id: str) -> Task | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
        return _row_to_task(row) if row else None

    def update_task(self, task_id: str, **fields: Any) -> Task | None:
        """Patch the given fields; unknown field names raise ValueError."""
        unknown = set(fields) - _UPDATABLE_TASK_FIELDS
        if unknown:
            raise ValueError(f"Cannot update task fields: {', '.join(sorted(unknown))}")
        if fields:
            assignments = [f"{k} = ?" for k in fields] + ["updated_at = ?"]
            values = [_to_column(k, v) for k, v in fields.items()] + [_now_iso(), task_id]
            with self._connect() as conn:
                conn.execute(
                    f"UPDATE tasks SET {', '.join(assignments)} WHERE id = ?",
                    values,
                )
        return self.get_task(task_id)

    def list_tasks(self) -> list[Task]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM tasks ORDER BY created_at").fetchall()
        return [_row_to_task(r) for r in rows]

    def list_tasks_by_status(self, statuses: Iterable[TaskStatus]) -> list[Task]:
        values = [s.value for s in statuses]
        if not values:
            return []
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM tasks WHERE status IN ({', '.join('?' for _ in values)}) "
                "ORDER BY created_at",
                values,
            ).fetchall()
        return [_row_to_task(r) for r in rows]

    # ── Entries ──

    def append_entry(self, task_id: str, index: int, entry: NormalizedEntry) -> None:
        """Store ``entry`` at ``index``; re-appending an id replaces it."""
        data = entry.to_dict()
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO entries
                    (id, task_id, idx, type, tool_id, data, normalization_version, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(task_id, id) DO UPDATE SET
                    idx = excluded.idx,
                    type = excluded.type,
                    tool_id = excluded.tool_id,
                    data = excluded.data
                """,
                (
                    entry.id,
                    task_id,
                    index,
                    entry.type,
                    data.get("tool_id"),
                    json.dumps(data),
                    NORMALIZATION_VERSION,
                    _now_iso(),
                ),
            )

    def update_entry(self, task_id: str, entry: NormalizedEntry) -> bool:
        """Overwrite the stored entry with the same id. False if absent."""
        data = entry.to_dict()
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE entries SET type = ?, tool_id = ?, data = ? WHERE task_id = ? AND id = ?",
                (entry.type, data.get("tool_id"), json.dumps(data), task_id, entry.id),
            )
            updated = cursor.rowcount > 0
        if not updated:
            logger.debug("update_entry: no entry %s for task=%s", entry.id, task_id[:8])
        return updated

    def update_tool_result(
        self, task_id: str, tool_id: str, result: Any, is_error: bool = False,
    ) -> bool:
        """Patch a raw result onto the tool-use entry for ``tool_id``."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT id, data FROM entries WHERE task_id = ? AND tool_id = ? "
                "AND type = 'tool-use' ORDER BY idx DESC LIMIT 1",
                (task_id, tool_id),
            ).fetchone()
            if row is None:
                logger.debug(
                    "update_tool_result: no tool-use %s for task=%s", tool_id, task_id[:8],
                )
                return False
            data = json.loads(row["data"])
            data["result"] = result
            if is_error:
                data["is_error"] = True
            conn.execute(
                "UPDATE entries SET data = ? WHERE task_id = ? AND id = ?",
                (json.dumps(data), task_id, row["id"]),
            )
        return True

    def get_entry_count(self, task_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS n FROM entries WHERE task_id = ?", (task_id,),
            ).fetchone()
        return int(row["n"])

    def list_entries(self, task_id: str) -> list[dict[str, Any]]:
        """Entries as plain dicts, ordered by index, each with its ``index``."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT idx, data FROM entries WHERE task_id = ? ORDER BY idx",
                (task_id,),
            ).fetchall()
        out = []
        for row in rows:
            data = json.loads(row["data"])
            data["index"] = row["idx"]
            out.append(data)
        return out

    def delete_entries(self, task_id: str) -> int:
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM entries WHERE task_id = ?", (task_id,))
        return cursor.rowcount
