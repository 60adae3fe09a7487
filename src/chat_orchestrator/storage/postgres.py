"""PostgreSQL-backed storage with automatic table migration."""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from typing import Any

from chat_orchestrator.errors import StorageError
from chat_orchestrator.realtime import ChangeFeed, EventType, task_change_payload
from chat_orchestrator.storage.models import (
    ChatMessageRecord,
    MessageRole,
    TaskRecord,
    TaskStatus,
)

logger = logging.getLogger(__name__)


class PostgresTaskStorage:
    """Persist async tasks and chat messages in PostgreSQL."""

    def __init__(self, database_url: str, change_feed: ChangeFeed | None = None) -> None:
        if not database_url:
            raise ValueError("CHAT_ORCHESTRATOR_DATABASE_URL is required")
        self.database_url = database_url
        self.change_feed = change_feed
        self._lock = threading.Lock()
        self._psycopg, self._dict_row, self._json_wrapper = self._load_psycopg()

    def migrate(self) -> None:
        with self._transaction() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS async_tasks (
                    id BIGSERIAL PRIMARY KEY,
                    task_type TEXT NOT NULL,
                    workflow_id TEXT NOT NULL,
                    webhook_url TEXT NOT NULL,
                    input_data JSONB NOT NULL DEFAULT '{}'::jsonb,
                    created_by TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'pending',
                    status_message TEXT,
                    current_step TEXT,
                    error_details JSONB,
                    execution_id TEXT,
                    created_at TIMESTAMPTZ NOT NULL,
                    updated_at TIMESTAMPTZ NOT NULL
                )
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_async_tasks_status
                ON async_tasks(status)
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_async_tasks_conversation
                ON async_tasks((input_data->>'conversation_id'))
                """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS chat_messages (
                    id BIGSERIAL PRIMARY KEY,
                    conversation_id BIGINT NOT NULL,
                    role TEXT NOT NULL,
                    content TEXT NOT NULL DEFAULT '',
                    thinking TEXT,
                    async_task_id BIGINT REFERENCES async_tasks(id) ON DELETE SET NULL,
                    metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
                    created_at TIMESTAMPTZ NOT NULL
                )
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_chat_messages_conversation
                ON chat_messages(conversation_id, id)
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_chat_messages_async_task_id
                ON chat_messages(async_task_id)
                """)

    def create_task(
        self,
        *,
        task_type: str,
        workflow_id: str,
        webhook_url: str,
        input_data: dict[str, Any],
        created_by: str,
        status_message: str | None,
    ) -> TaskRecord:
        now = datetime.now(tz=UTC)
        with self._transaction() as conn:
            row = conn.execute(
                """
                INSERT INTO async_tasks (
                    task_type,
                    workflow_id,
                    webhook_url,
                    input_data,
                    created_by,
                    status,
                    status_message,
                    created_at,
                    updated_at
                ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (
                    task_type,
                    workflow_id,
                    webhook_url,
                    self._json_wrapper(input_data),
                    created_by,
                    "pending",
                    status_message,
                    now,
                    now,
                ),
            ).fetchone()
        if row is None:
            raise StorageError("Failed to create task in database")
        record = self._row_to_task(row)
        self._publish("INSERT", record)
        return record

    def get_task(self, task_id: int) -> TaskRecord | None:
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM async_tasks WHERE id = %s", (task_id,)).fetchone()
        if row is None:
            return None
        return self._row_to_task(row)

    def get_task_for_user(self, task_id: int, user_id: str) -> TaskRecord | None:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM async_tasks WHERE id = %s AND created_by = %s",
                (task_id, user_id),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_task(row)

    def update_task(
        self,
        task_id: int,
        *,
        status: TaskStatus | None = None,
        status_message: str | None = None,
        current_step: str | None = None,
        error_details: dict[str, Any] | None = None,
        execution_id: str | None = None,
    ) -> TaskRecord:
        # Single-field patches: only the columns passed in are written.
        assignments: list[str] = []
        params: list[Any] = []
        for column, value in (
            ("status", status),
            ("status_message", status_message),
            ("current_step", current_step),
            ("execution_id", execution_id),
        ):
            if value is not None:
                assignments.append(f"{column} = %s")
                params.append(value)
        if error_details is not None:
            assignments.append("error_details = %s")
            params.append(self._json_wrapper(error_details))
        assignments.append("updated_at = %s")
        params.append(datetime.now(tz=UTC))
        params.append(task_id)

        with self._transaction() as conn:
            old_row = conn.execute(
                "SELECT * FROM async_tasks WHERE id = %s", (task_id,)
            ).fetchone()
            row = conn.execute(
                f"UPDATE async_tasks SET {', '.join(assignments)} WHERE id = %s RETURNING *",
                tuple(params),
            ).fetchone()
        if row is None:
            raise KeyError(f"Task {task_id} does not exist")
        record = self._row_to_task(row)
        self._publish("UPDATE", record, self._row_to_task(old_row) if old_row else None)
        return record

    def list_outstanding_tasks(self, conversation_id: int) -> list[TaskRecord]:
        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT *
                FROM async_tasks
                WHERE input_data->>'conversation_id' = %s
                  AND status IN ('pending', 'processing')
                ORDER BY id
                """,
                (str(conversation_id),),
            ).fetchall()
        return [self._row_to_task(row) for row in rows]

    def list_terminal_tasks(self, task_ids: list[int]) -> list[TaskRecord]:
        if not task_ids:
            return []
        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT *
                FROM async_tasks
                WHERE id = ANY(%s)
                  AND status IN ('completed', 'failed', 'cancelled', 'timeout')
                ORDER BY id
                """,
                (list(task_ids),),
            ).fetchall()
        return [self._row_to_task(row) for row in rows]

    def create_message(
        self,
        *,
        conversation_id: int,
        role: MessageRole,
        content: str,
        metadata: dict[str, Any] | None = None,
    ) -> ChatMessageRecord:
        with self._transaction() as conn:
            row = conn.execute(
                """
                INSERT INTO chat_messages (conversation_id, role, content, metadata, created_at)
                VALUES (%s, %s, %s, %s, %s)
                RETURNING *
                """,
                (
                    conversation_id,
                    role,
                    content,
                    self._json_wrapper(metadata or {}),
                    datetime.now(tz=UTC),
                ),
            ).fetchone()
        if row is None:
            raise StorageError("Failed to save message")
        return self._row_to_message(row)

    def link_message_to_task(
        self,
        message_id: int,
        task_id: int,
        *,
        metadata: dict[str, Any] | None = None,
    ) -> ChatMessageRecord:
        with self._transaction() as conn:
            if metadata is None:
                row = conn.execute(
                    "UPDATE chat_messages SET async_task_id = %s WHERE id = %s RETURNING *",
                    (task_id, message_id),
                ).fetchone()
            else:
                row = conn.execute(
                    """
                    UPDATE chat_messages
                    SET async_task_id = %s,
                        metadata = %s
                    WHERE id = %s
                    RETURNING *
                    """,
                    (task_id, self._json_wrapper(metadata), message_id),
                ).fetchone()
        if row is None:
            raise KeyError(f"Message {message_id} does not exist")
        return self._row_to_message(row)

    def update_messages_for_task(
        self,
        task_id: int,
        *,
        content: str,
        metadata: dict[str, Any] | None = None,
    ) -> int:
        with self._transaction() as conn:
            if metadata is None:
                cursor = conn.execute(
                    "UPDATE chat_messages SET content = %s WHERE async_task_id = %s",
                    (content, task_id),
                )
            else:
                cursor = conn.execute(
                    """
                    UPDATE chat_messages
                    SET content = %s,
                        metadata = %s
                    WHERE async_task_id = %s
                    """,
                    (content, self._json_wrapper(metadata), task_id),
                )
            return int(cursor.rowcount or 0)

    def delete_message(self, message_id: int) -> None:
        with self._transaction() as conn:
            conn.execute("DELETE FROM chat_messages WHERE id = %s", (message_id,))

    def list_messages(self, conversation_id: int) -> list[ChatMessageRecord]:
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM chat_messages WHERE conversation_id = %s ORDER BY id",
                (conversation_id,),
            ).fetchall()
        return [self._row_to_message(row) for row in rows]

    @contextmanager
    def _transaction(self) -> Iterator[Any]:
        """Yield a connection; commit on success and wrap driver errors."""
        try:
            with self._lock, self._connect() as conn:
                yield conn
                conn.commit()
        except self._psycopg.Error as exc:
            logger.error("postgres event=query_failed error=%r", exc)
            raise StorageError(f"Database operation failed: {exc}") from exc

    def _connect(self) -> Any:
        return self._psycopg.connect(self.database_url, row_factory=self._dict_row)

    def _publish(
        self, event_type: EventType, new: TaskRecord, old: TaskRecord | None = None
    ) -> None:
        if self.change_feed is None:
            return
        self.change_feed.publish(task_change_payload(event_type, new, old))

    @staticmethod
    def _load_psycopg() -> tuple[Any, Any, Any]:
        try:
            import psycopg
            from psycopg.rows import dict_row
            from psycopg.types.json import Json
        except ImportError as exc:  # pragma: no cover
            raise RuntimeError(
                "PostgreSQL storage requires psycopg. "
                'Install with: python -m pip install "psycopg[binary]>=3.2,<4.0"'
            ) from exc
        return psycopg, dict_row, Json

    @staticmethod
    def _parse_json_optional(raw: Any) -> dict[str, Any] | None:
        if raw is None:
            return None
        if isinstance(raw, str):
            parsed = json.loads(raw)
        else:
            parsed = raw
        if isinstance(parsed, dict):
            return parsed
        return None

    @staticmethod
    def _parse_datetime(raw: Any) -> datetime:
        if isinstance(raw, datetime):
            return raw
        if isinstance(raw, str):
            return datetime.fromisoformat(raw)
        raise TypeError(f"Unsupported datetime value: {type(raw)!r}")

    @classmethod
    def _row_to_task(cls, row: Any) -> TaskRecord:
        return TaskRecord(
            id=int(row["id"]),
            task_type=row["task_type"],
            workflow_id=row["workflow_id"],
            webhook_url=row["webhook_url"],
            input_data=cls._parse_json_optional(row["input_data"]) or {},
            created_by=str(row["created_by"]),
            status=row["status"],
            status_message=row.get("status_message"),
            current_step=row.get("current_step"),
            error_details=cls._parse_json_optional(row.get("error_details")),
            execution_id=row.get("execution_id"),
            created_at=cls._parse_datetime(row["created_at"]),
            updated_at=cls._parse_datetime(row["updated_at"]),
        )

    @classmethod
    def _row_to_message(cls, row: Any) -> ChatMessageRecord:
        async_task_id = row.get("async_task_id")
        return ChatMessageRecord(
            id=int(row["id"]),
            conversation_id=int(row["conversation_id"]),
            role=row["role"],
            content=row.get("content") or "",
            thinking=row.get("thinking"),
            async_task_id=int(async_task_id) if async_task_id is not None else None,
            metadata=cls._parse_json_optional(row.get("metadata")) or {},
            created_at=cls._parse_datetime(row["created_at"]),
        )
