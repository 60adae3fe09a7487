"""Realtime task change events and the in-process change feed.

Change payloads arrive loosely typed (`{"eventType": ..., "new": {...}, "old": {...}}`)
and are decoded into `TaskChangeEvent` at the subscription boundary, so
subscribers only ever see validated events.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import threading
from collections.abc import Callable
from typing import Any, Literal, Protocol

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from .storage.models import TaskRecord, TaskStatus, conversation_id_of

logger = logging.getLogger(__name__)

EventType = Literal["INSERT", "UPDATE", "DELETE"]


class EventDecodeError(ValueError):
    """Raised when a change payload does not describe an `async_tasks` row."""


class TaskSnapshot(BaseModel):
    """Subset of an `async_tasks` row carried by change events."""

    model_config = ConfigDict(extra="ignore")

    id: int
    status: TaskStatus
    status_message: str | None = None
    current_step: str | None = None
    input_data: dict[str, Any] = Field(default_factory=dict)

    @property
    def conversation_id(self) -> int | None:
        return conversation_id_of(self.input_data)


class TaskChangeEvent(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    event_type: EventType = Field(validation_alias=AliasChoices("event_type", "eventType"))
    new: TaskSnapshot | None = None
    old: TaskSnapshot | None = None

    @field_validator("new", "old", mode="before")
    @classmethod
    def _empty_row_is_none(cls, value: Any) -> Any:
        # DELETE events carry `new: {}`; partial `old` rows lack required fields.
        if isinstance(value, dict) and ("id" not in value or "status" not in value):
            return None
        return value

    @property
    def task(self) -> TaskSnapshot | None:
        return self.new or self.old


def decode_task_change(payload: Any) -> TaskChangeEvent:
    if isinstance(payload, TaskChangeEvent):
        return payload
    if not isinstance(payload, dict):
        raise EventDecodeError(f"Unsupported change payload type: {type(payload)!r}")
    try:
        event = TaskChangeEvent.model_validate(payload)
    except PydanticValidationError as exc:
        raise EventDecodeError(f"Malformed task change payload: {exc}") from exc
    if event.task is None:
        raise EventDecodeError("Task change payload carries no task row")
    return event


def task_change_payload(
    event_type: EventType,
    new: TaskRecord | None,
    old: TaskRecord | None = None,
) -> dict[str, Any]:
    """Build the wire-shaped payload the feed publishes for a storage write."""
    return {
        "eventType": event_type,
        "new": new.model_dump(mode="json") if new is not None else {},
        "old": old.model_dump(mode="json") if old is not None else {},
    }


TaskChangeCallback = Callable[[TaskChangeEvent], None]


class Subscription(Protocol):
    def close(self) -> None: ...


class RealtimeChannel(Protocol):
    def subscribe(self, callback: TaskChangeCallback) -> Subscription: ...


class _FeedSubscription:
    def __init__(self, feed: ChangeFeed, key: int) -> None:
        self._feed = feed
        self._key = key
        self.closed = False

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._feed._unsubscribe(self._key)


class ChangeFeed:
    """Thread-safe publish/subscribe hub for task change payloads.

    Subscribers registered from inside a running event loop receive events on
    that loop, whichever thread published them.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self._subscribers: dict[
            int, tuple[TaskChangeCallback, asyncio.AbstractEventLoop | None]
        ] = {}

    def subscribe(self, callback: TaskChangeCallback) -> Subscription:
        try:
            loop: asyncio.AbstractEventLoop | None = asyncio.get_running_loop()
        except RuntimeError:
            loop = None
        with self._lock:
            key = next(self._ids)
            self._subscribers[key] = (callback, loop)
        return _FeedSubscription(self, key)

    def publish(self, payload: dict[str, Any]) -> None:
        try:
            event = decode_task_change(payload)
        except EventDecodeError as exc:
            logger.warning("change_feed event=dropped reason=%s", exc)
            return
        with self._lock:
            subscribers = list(self._subscribers.values())
        for callback, loop in subscribers:
            if loop is None:
                self._deliver(callback, event)
                continue
            if loop.is_closed():
                continue
            loop.call_soon_threadsafe(self._deliver, callback, event)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def _unsubscribe(self, key: int) -> None:
        with self._lock:
            self._subscribers.pop(key, None)

    @staticmethod
    def _deliver(callback: TaskChangeCallback, event: TaskChangeEvent) -> None:
        try:
            callback(event)
        except Exception:  # noqa: BLE001
            logger.exception("change_feed event=callback_failed")
