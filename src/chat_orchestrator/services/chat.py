"""Chat message intake and hand-off to asynchronous AI processing."""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Protocol
from urllib import error, request

from chat_orchestrator.dispatch import DetachedRunner
from chat_orchestrator.errors import ValidationError
from chat_orchestrator.schemas import SendMessageResult
from chat_orchestrator.services.tasks import INITIAL_STATUS_MESSAGE, TaskService
from chat_orchestrator.storage.base import TaskStorage

logger = logging.getLogger(__name__)

# Caller headers forwarded to the task creation endpoint.
FORWARDED_HEADERS = ("Authorization", "Cookie")


class TaskCreationError(RuntimeError):
    """The task creation endpoint rejected the request or could not be reached."""


class TaskCreator(Protocol):
    def create(
        self,
        task_type: str,
        input_data: dict[str, Any],
        *,
        user_id: str,
        auth_headers: dict[str, str],
    ) -> int: ...


class HttpTaskCreator:
    """Calls POST /tasks/create on this service, acting as the original caller."""

    def __init__(self, base_url: str, *, timeout_s: float = 10.0) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s

    def create(
        self,
        task_type: str,
        input_data: dict[str, Any],
        *,
        user_id: str,
        auth_headers: dict[str, str],
    ) -> int:
        headers = {"Content-Type": "application/json"}
        for name in FORWARDED_HEADERS:
            value = auth_headers.get(name) or auth_headers.get(name.lower())
            if value:
                headers[name] = value
        req = request.Request(
            url=f"{self.base_url}/tasks/create",
            data=json.dumps({"task_type": task_type, "input_data": input_data}).encode("utf-8"),
            method="POST",
            headers=headers,
        )
        try:
            with request.urlopen(req, timeout=self.timeout_s) as response:
                body = json.loads(response.read().decode("utf-8"))
        except error.HTTPError as exc:
            detail = exc.read().decode("utf-8", errors="replace")
            raise TaskCreationError(f"HTTP {exc.code}: {detail}") from exc
        except (error.URLError, TimeoutError, OSError, ValueError) as exc:
            raise TaskCreationError(str(exc)) from exc
        task_id = body.get("task_id") if isinstance(body, dict) else None
        if task_id is None:
            raise TaskCreationError("Task creation response did not include task_id")
        return int(task_id)


class InProcessTaskCreator:
    """Creates tasks through `TaskService` directly, skipping the HTTP hop."""

    def __init__(self, task_service: TaskService) -> None:
        self.task_service = task_service

    def create(
        self,
        task_type: str,
        input_data: dict[str, Any],
        *,
        user_id: str,
        auth_headers: dict[str, str],
    ) -> int:
        return self.task_service.create_task(task_type, input_data, user_id=user_id).task_id


class ChatService:
    def __init__(
        self,
        *,
        storage: TaskStorage,
        task_creator: TaskCreator,
        runner: DetachedRunner,
        flush_delay_s: float = 0.05,
    ) -> None:
        self.storage = storage
        self.task_creator = task_creator
        self.runner = runner
        self.flush_delay_s = flush_delay_s

    def send_message(
        self,
        conversation_id: int | None,
        message: str | None,
        *,
        user_id: str,
        auth_headers: dict[str, str] | None = None,
    ) -> SendMessageResult:
        """Persist the user's message and start AI processing in the background.

        Returns as soon as the user message is stored; whether the task was
        created is observed later through the task tracker.
        """
        if not conversation_id or not message or not message.strip():
            raise ValidationError("Missing required fields: conversation_id and message")

        user_message = self.storage.create_message(
            conversation_id=conversation_id,
            role="user",
            content=message,
        )
        logger.info(
            "chat_send event=user_message_saved conversation_id=%s message_id=%s user_id=%s",
            conversation_id,
            user_message.id,
            user_id,
        )

        self.runner.submit(
            self.start_ai_processing,
            conversation_id=conversation_id,
            user_message_id=user_message.id,
            user_id=user_id,
            auth_headers=dict(auth_headers or {}),
        )
        return SendMessageResult(user_message=user_message)

    def start_ai_processing(
        self,
        *,
        conversation_id: int,
        user_message_id: int,
        user_id: str,
        auth_headers: dict[str, str],
    ) -> int | None:
        """Create the assistant placeholder and its chat task. Returns the task id."""
        if self.flush_delay_s > 0:
            time.sleep(self.flush_delay_s)

        placeholder = self.storage.create_message(
            conversation_id=conversation_id,
            role="assistant",
            content="",
            metadata={"placeholder": True, "status_message": INITIAL_STATUS_MESSAGE},
        )
        try:
            task_id = self.task_creator.create(
                "chat",
                {
                    "conversation_id": conversation_id,
                    "user_message_id": user_message_id,
                    "message_id": placeholder.id,
                },
                user_id=user_id,
                auth_headers=auth_headers,
            )
        except Exception as exc:  # noqa: BLE001
            logger.error(
                "chat_send event=task_creation_failed conversation_id=%s message_id=%s error=%s",
                conversation_id,
                user_message_id,
                exc,
            )
            self.storage.delete_message(placeholder.id)
            return None

        try:
            self.storage.link_message_to_task(
                placeholder.id,
                task_id,
                metadata={"placeholder": True, "created_for_task": task_id},
            )
        except Exception as exc:  # noqa: BLE001
            # The workflow still finds the placeholder through input_data.message_id.
            logger.warning(
                "chat_send event=link_failed message_id=%s task_id=%s error=%s",
                placeholder.id,
                task_id,
                exc,
            )
        logger.info(
            "chat_send event=task_started conversation_id=%s task_id=%s message_id=%s",
            conversation_id,
            task_id,
            placeholder.id,
        )
        return task_id
