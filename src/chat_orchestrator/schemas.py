"""Request and response bodies for the HTTP API."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field

from .storage.models import ChatMessageRecord


class CreateTaskRequest(BaseModel):
    """Body for POST /tasks/create. Presence is checked by the service, not here."""

    task_type: str | None = None
    input_data: dict[str, Any] | None = None


class CreateTaskResult(BaseModel):
    success: bool = True
    task_id: int
    workflow_id: str
    task_type: str
    status: Literal["pending"] = "pending"
    webhook_url: str


class SendMessageRequest(BaseModel):
    conversation_id: int | None = None
    message: str | None = None


class SendMessageResult(BaseModel):
    success: bool = True
    user_message: ChatMessageRecord
    status: Literal["sent"] = "sent"


class CompletionMessage(BaseModel):
    role: Literal["system", "user", "assistant"]
    content: str


class ChatCompletionRequest(BaseModel):
    messages: list[CompletionMessage] = Field(default_factory=list)
    model: str | None = None
    temperature: float | None = None
    max_tokens: int | None = None
    top_p: float | None = None


class ChatCompletionResponse(BaseModel):
    model: str
    content: str
    thinking: str | None = None
