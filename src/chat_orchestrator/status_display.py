"""Human-readable progress text for a task."""

from __future__ import annotations

from typing import Any

STEP_MESSAGES = {
    "initializing": "🔄 Starting to process your chat message...",
    "preparing_request": "📝 Preparing your conversation for the AI model...",
    "calling_ai": "🧠 Sending your message to the AI model... This usually takes 10-30 seconds.",
    "processing_response": "⚡ AI responded! Now formatting and saving the response...",
    "saving_response": "💾 Saving AI response to your chat...",
}
PROCESSING_MESSAGE = "⏳ Processing your message..."
STATUS_MESSAGES = {
    "pending": "Task created, waiting to start...",
    "processing": PROCESSING_MESSAGE,
    "completed": "✅ Complete",
    "failed": "❌ Failed to process",
    "timeout": "⏰ Request timed out",
    "cancelled": "⚠️ Cancelled",
}


def task_status_display(task: Any) -> str:
    """Map a task's status fields to display text.

    Accepts anything with `status`, `status_message` and `current_step`
    attributes (or a dict with those keys). Order of preference: the task's
    own status_message, then the current step while processing, then the status.
    """
    if task is None:
        return ""
    status = _field(task, "status") or ""
    status_message = _field(task, "status_message")
    current_step = _field(task, "current_step")

    if status_message:
        return status_message
    if status == "processing" and current_step:
        return STEP_MESSAGES.get(current_step, PROCESSING_MESSAGE)
    return STATUS_MESSAGES.get(status, status)


def _field(task: Any, name: str) -> Any:
    if isinstance(task, dict):
        return task.get(name)
    return getattr(task, name, None)
