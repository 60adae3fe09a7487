"""Storage interface for the task and chat message tables."""

from __future__ import annotations

from typing import Any, Protocol

from chat_orchestrator.storage.models import ChatMessageRecord, MessageRole, TaskRecord, TaskStatus


class TaskStorage(Protocol):
    def migrate(self) -> None: ...

    def create_task(
        self,
        *,
        task_type: str,
        workflow_id: str,
        webhook_url: str,
        input_data: dict[str, Any],
        created_by: str,
        status_message: str | None,
    ) -> TaskRecord: ...

    def get_task(self, task_id: int) -> TaskRecord | None: ...

    def get_task_for_user(self, task_id: int, user_id: str) -> TaskRecord | None: ...

    def update_task(
        self,
        task_id: int,
        *,
        status: TaskStatus | None = None,
        status_message: str | None = None,
        current_step: str | None = None,
        error_details: dict[str, Any] | None = None,
        execution_id: str | None = None,
    ) -> TaskRecord: ...

    def list_outstanding_tasks(self, conversation_id: int) -> list[TaskRecord]: ...

    def list_terminal_tasks(self, task_ids: list[int]) -> list[TaskRecord]: ...

    def create_message(
        self,
        *,
        conversation_id: int,
        role: MessageRole,
        content: str,
        metadata: dict[str, Any] | None = None,
    ) -> ChatMessageRecord: ...

    def link_message_to_task(
        self,
        message_id: int,
        task_id: int,
        *,
        metadata: dict[str, Any] | None = None,
    ) -> ChatMessageRecord: ...

    def update_messages_for_task(
        self,
        task_id: int,
        *,
        content: str,
        metadata: dict[str, Any] | None = None,
    ) -> int: ...

    def delete_message(self, message_id: int) -> None: ...

    def list_messages(self, conversation_id: int) -> list[ChatMessageRecord]: ...
