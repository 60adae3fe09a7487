"""Storage models shared by API, tracker, and persistence backends."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

# Task lifecycle states. The external workflow engine moves tasks between them.
TaskStatus = Literal["pending", "processing", "completed", "failed", "cancelled", "timeout"]
MessageRole = Literal["user", "assistant", "system"]

OUTSTANDING_STATUSES: frozenset[str] = frozenset({"pending", "processing"})
TERMINAL_STATUSES: frozenset[str] = frozenset({"completed", "failed", "cancelled", "timeout"})


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATUSES


class TaskRecord(BaseModel):
    """One `async_tasks` row."""

    id: int
    task_type: str
    workflow_id: str
    webhook_url: str
    input_data: dict[str, Any] = Field(default_factory=dict)
    created_by: str
    status: TaskStatus = "pending"
    status_message: str | None = None
    current_step: str | None = None
    error_details: dict[str, Any] | None = None
    # Execution id reported back by the workflow engine when it accepts the webhook.
    execution_id: str | None = None
    created_at: datetime
    updated_at: datetime


class ChatMessageRecord(BaseModel):
    """One `chat_messages` row."""

    id: int
    conversation_id: int
    role: MessageRole
    content: str = ""
    thinking: str | None = None
    async_task_id: int | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime


def conversation_id_of(input_data: dict[str, Any] | None) -> int | None:
    """Read `input_data.conversation_id`, tolerating string-encoded ids."""
    if not input_data:
        return None
    raw = input_data.get("conversation_id")
    if isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        return raw
    if isinstance(raw, str) and raw.strip().lstrip("-").isdigit():
        return int(raw.strip())
    return None
