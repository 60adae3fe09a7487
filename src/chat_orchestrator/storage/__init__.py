"""Storage backends and models.

Backends live in `chat_orchestrator.storage.memory` and
`chat_orchestrator.storage.postgres`; they are imported from there directly
because both depend on `chat_orchestrator.realtime`, which depends on the
models exported here.
"""

from chat_orchestrator.storage.base import TaskStorage
from chat_orchestrator.storage.models import (
    OUTSTANDING_STATUSES,
    TERMINAL_STATUSES,
    ChatMessageRecord,
    TaskRecord,
    TaskStatus,
    is_terminal,
)

__all__ = [
    "ChatMessageRecord",
    "OUTSTANDING_STATUSES",
    "TERMINAL_STATUSES",
    "TaskRecord",
    "TaskStatus",
    "TaskStorage",
    "is_terminal",
]
