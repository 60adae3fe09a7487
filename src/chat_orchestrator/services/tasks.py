"""Task creation and lookup."""

from __future__ import annotations

import logging
from typing import Any

from chat_orchestrator.dispatch import DetachedRunner, Dispatcher, dispatch_task
from chat_orchestrator.errors import NotFoundError, ValidationError
from chat_orchestrator.schemas import CreateTaskResult
from chat_orchestrator.storage.base import TaskStorage
from chat_orchestrator.storage.models import TaskRecord
from chat_orchestrator.workflows import UnknownTaskTypeError, WorkflowRegistry

logger = logging.getLogger(__name__)

INITIAL_STATUS_MESSAGE = "Thinking....."


class TaskService:
    """Persists tasks and hands them to the workflow engine without waiting on it."""

    def __init__(
        self,
        *,
        storage: TaskStorage,
        registry: WorkflowRegistry,
        dispatcher: Dispatcher,
        runner: DetachedRunner,
        webhook_timeout_s: float = 10.0,
    ) -> None:
        self.storage = storage
        self.registry = registry
        self.dispatcher = dispatcher
        self.runner = runner
        self.webhook_timeout_s = webhook_timeout_s

    def create_task(
        self,
        task_type: str | None,
        input_data: dict[str, Any] | None,
        *,
        user_id: str,
    ) -> CreateTaskResult:
        if not task_type or input_data is None:
            raise ValidationError("Missing required fields: task_type and input_data")
        try:
            workflow = self.registry.get(task_type)
        except UnknownTaskTypeError as exc:
            raise ValidationError(f"Invalid task type: {task_type}. {exc}") from exc

        task = self.storage.create_task(
            task_type=task_type,
            workflow_id=workflow.workflow_id,
            webhook_url=workflow.webhook_url,
            input_data=input_data,
            created_by=user_id,
            status_message=INITIAL_STATUS_MESSAGE,
        )
        logger.info(
            "task_create event=inserted task_id=%s task_type=%s workflow_id=%s user_id=%s",
            task.id,
            task_type,
            workflow.workflow_id,
            user_id,
        )

        # The HTTP response must not wait for the workflow engine.
        self.runner.submit(
            dispatch_task,
            storage=self.storage,
            dispatcher=self.dispatcher,
            task_id=task.id,
            webhook_url=workflow.webhook_url,
            payload={
                "task_id": task.id,
                "task_type": task_type,
                "input_data": input_data,
                "user_id": user_id,
            },
            timeout_s=self.webhook_timeout_s,
        )

        return CreateTaskResult(
            task_id=task.id,
            workflow_id=workflow.workflow_id,
            task_type=task_type,
            webhook_url=workflow.webhook_url,
        )

    def get_task_for_user(self, task_id: int, user_id: str) -> TaskRecord:
        task = self.storage.get_task_for_user(task_id, user_id)
        if task is None:
            raise NotFoundError("Task not found")
        return task
