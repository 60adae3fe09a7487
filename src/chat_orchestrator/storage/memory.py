"""In-memory storage backend for tests and local runs."""

from __future__ import annotations

import threading
from datetime import UTC, datetime
from typing import Any

from chat_orchestrator.realtime import ChangeFeed, EventType, task_change_payload
from chat_orchestrator.storage.models import (
    OUTSTANDING_STATUSES,
    ChatMessageRecord,
    MessageRole,
    TaskRecord,
    TaskStatus,
    conversation_id_of,
    is_terminal,
)


class InMemoryTaskStorage:
    """Dict-backed implementation of `TaskStorage`.

    Guarded by a lock because detached dispatch jobs write from worker threads.
    """

    def __init__(self, change_feed: ChangeFeed | None = None) -> None:
        self.change_feed = change_feed
        self._lock = threading.Lock()
        self._tasks: dict[int, TaskRecord] = {}
        self._messages: dict[int, ChatMessageRecord] = {}
        self._next_task_id = 1
        self._next_message_id = 1

    def migrate(self) -> None:
        return None

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
        now = datetime.now(UTC)
        with self._lock:
            record = TaskRecord(
                id=self._next_task_id,
                task_type=task_type,
                workflow_id=workflow_id,
                webhook_url=webhook_url,
                input_data=dict(input_data),
                created_by=created_by,
                status="pending",
                status_message=status_message,
                created_at=now,
                updated_at=now,
            )
            self._next_task_id += 1
            self._tasks[record.id] = record
        self._publish("INSERT", record)
        return record.model_copy(deep=True)

    def get_task(self, task_id: int) -> TaskRecord | None:
        with self._lock:
            task = self._tasks.get(task_id)
            return task.model_copy(deep=True) if task else None

    def get_task_for_user(self, task_id: int, user_id: str) -> TaskRecord | None:
        task = self.get_task(task_id)
        if task is None or task.created_by != user_id:
            return None
        return task

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
        changes: dict[str, Any] = {
            key: value
            for key, value in (
                ("status", status),
                ("status_message", status_message),
                ("current_step", current_step),
                ("error_details", error_details),
                ("execution_id", execution_id),
            )
            if value is not None
        }
        with self._lock:
            current = self._tasks.get(task_id)
            if current is None:
                raise KeyError(f"Task {task_id} does not exist")
            changes["updated_at"] = datetime.now(UTC)
            updated = current.model_copy(update=changes, deep=True)
            self._tasks[task_id] = updated
        self._publish("UPDATE", updated, current)
        return updated.model_copy(deep=True)

    def list_outstanding_tasks(self, conversation_id: int) -> list[TaskRecord]:
        with self._lock:
            return [
                task.model_copy(deep=True)
                for task in self._tasks.values()
                if task.status in OUTSTANDING_STATUSES
                and conversation_id_of(task.input_data) == conversation_id
            ]

    def list_terminal_tasks(self, task_ids: list[int]) -> list[TaskRecord]:
        wanted = set(task_ids)
        with self._lock:
            return [
                task.model_copy(deep=True)
                for task in self._tasks.values()
                if task.id in wanted and is_terminal(task.status)
            ]

    def create_message(
        self,
        *,
        conversation_id: int,
        role: MessageRole,
        content: str,
        metadata: dict[str, Any] | None = None,
    ) -> ChatMessageRecord:
        with self._lock:
            record = ChatMessageRecord(
                id=self._next_message_id,
                conversation_id=conversation_id,
                role=role,
                content=content,
                metadata=dict(metadata or {}),
                created_at=datetime.now(UTC),
            )
            self._next_message_id += 1
            self._messages[record.id] = record
            return record.model_copy(deep=True)

    def link_message_to_task(
        self,
        message_id: int,
        task_id: int,
        *,
        metadata: dict[str, Any] | None = None,
    ) -> ChatMessageRecord:
        with self._lock:
            current = self._messages.get(message_id)
            if current is None:
                raise KeyError(f"Message {message_id} does not exist")
            changes: dict[str, Any] = {"async_task_id": task_id}
            if metadata is not None:
                changes["metadata"] = dict(metadata)
            updated = current.model_copy(update=changes, deep=True)
            self._messages[message_id] = updated
            return updated.model_copy(deep=True)

    def update_messages_for_task(
        self,
        task_id: int,
        *,
        content: str,
        metadata: dict[str, Any] | None = None,
    ) -> int:
        count = 0
        with self._lock:
            for message_id, message in list(self._messages.items()):
                if message.async_task_id != task_id:
                    continue
                changes: dict[str, Any] = {"content": content}
                if metadata is not None:
                    changes["metadata"] = dict(metadata)
                self._messages[message_id] = message.model_copy(update=changes, deep=True)
                count += 1
        return count

    def delete_message(self, message_id: int) -> None:
        with self._lock:
            self._messages.pop(message_id, None)

    def list_messages(self, conversation_id: int) -> list[ChatMessageRecord]:
        with self._lock:
            return [
                message.model_copy(deep=True)
                for message in sorted(self._messages.values(), key=lambda item: item.id)
                if message.conversation_id == conversation_id
            ]

    def _publish(
        self, event_type: EventType, new: TaskRecord, old: TaskRecord | None = None
    ) -> None:
        if self.change_feed is None:
            return
        self.change_feed.publish(task_change_payload(event_type, new, old))
