"""Client-side coordinator for a conversation's outstanding AI tasks.

The tracker keeps the set of task ids that are still `pending`/`processing`
for the active conversation and derives a debounced `is_processing` flag from
it. Task completion is discovered two ways, racing each other: realtime change
events and, while anything is outstanding, interval polling. Both paths go
through `handle_event`, so whichever arrives second is a no-op.

All methods must be called from the event loop the tracker was started on.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from collections import OrderedDict
from collections.abc import Callable
from typing import Any, Protocol
from urllib import error, request

from .realtime import (
    EventDecodeError,
    RealtimeChannel,
    Subscription,
    TaskChangeEvent,
    TaskSnapshot,
    decode_task_change,
)
from .storage.base import TaskStorage
from .storage.models import TaskRecord, is_terminal

logger = logging.getLogger(__name__)

FAILED_MESSAGE_CONTENT = "⚠️ Failed to process your message. Please try again."
DEFAULT_FAILURE_ERROR = "AI processing failed"


class TaskSource(Protocol):
    async def list_outstanding(self, conversation_id: int) -> list[TaskSnapshot]: ...

    async def list_terminal(self, task_ids: list[int]) -> list[TaskSnapshot]: ...

    async def mark_message_failed(self, task_id: int, reason: str | None) -> None: ...


class MessageSender(Protocol):
    async def send(self, conversation_id: int, text: str) -> dict[str, Any]: ...


class SeenEvents:
    """Bounded LRU set of event keys."""

    def __init__(self, capacity: int = 1000) -> None:
        if capacity < 1:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self._keys: OrderedDict[str, None] = OrderedDict()

    def add(self, key: str) -> bool:
        """Record `key`; return False when it was already present."""
        if key in self._keys:
            self._keys.move_to_end(key)
            return False
        self._keys[key] = None
        if len(self._keys) > self.capacity:
            self._keys.popitem(last=False)
        return True

    def clear(self) -> None:
        self._keys.clear()

    def __contains__(self, key: object) -> bool:
        return key in self._keys

    def __len__(self) -> int:
        return len(self._keys)


def event_key(event: TaskChangeEvent) -> str | None:
    task = event.task
    if task is None:
        return None
    return f"{task.id}:{task.status}:{event.event_type}"


class TaskTracker:
    def __init__(
        self,
        *,
        source: TaskSource,
        channel: RealtimeChannel,
        sender: MessageSender,
        poll_interval_s: float = 2.0,
        debounce_s: float = 0.016,
        dedup_capacity: int = 1000,
        on_processing_change: Callable[[bool], None] | None = None,
    ) -> None:
        self.source = source
        self.channel = channel
        self.sender = sender
        self.poll_interval_s = poll_interval_s
        self.debounce_s = debounce_s
        self.on_processing_change = on_processing_change
        self.is_processing = False
        self.error: str | None = None
        self.conversation_id: int | None = None
        self._outstanding: set[int] = set()
        # Ids already seen leaving the outstanding state in this conversation.
        self._finished: set[int] = set()
        self._seen = SeenEvents(dedup_capacity)
        self._generation = 0
        self._subscription: Subscription | None = None
        self._poll_task: asyncio.Task[None] | None = None
        self._debounce_handle: asyncio.TimerHandle | None = None
        self._side_tasks: set[asyncio.Task[Any]] = set()

    @property
    def outstanding(self) -> frozenset[int]:
        return frozenset(self._outstanding)

    @property
    def polling(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    async def start(self, conversation_id: int) -> None:
        """Switch to `conversation_id`: seed from the store, then subscribe."""
        await self.stop()
        self._generation += 1
        generation = self._generation
        self.conversation_id = conversation_id

        try:
            tasks = await self.source.list_outstanding(conversation_id)
        except Exception as exc:  # noqa: BLE001
            logger.error(
                "task_tracker event=seed_failed conversation_id=%s error=%s", conversation_id, exc
            )
            tasks = []
        if generation != self._generation:
            return

        # Keep anything tracked optimistically while the seed query was in flight.
        self._outstanding.update(task.id for task in tasks if not is_terminal(task.status))
        self._subscription = self.channel.subscribe(self.handle_event)
        logger.debug(
            "task_tracker event=started conversation_id=%s outstanding=%s",
            conversation_id,
            sorted(self._outstanding),
        )
        self._schedule_flush()
        self._sync_polling()

    async def stop(self) -> None:
        """Tear down everything bound to the current conversation."""
        self._generation += 1
        self.conversation_id = None
        self._seen.clear()
        if self._debounce_handle is not None:
            self._debounce_handle.cancel()
            self._debounce_handle = None
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None
        poll_task, self._poll_task = self._poll_task, None
        if poll_task is not None and not poll_task.done():
            poll_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await poll_task
        self._outstanding.clear()
        self._finished.clear()
        self._set_processing(False)

    def handle_event(self, event: TaskChangeEvent | dict[str, Any]) -> bool:
        """Apply one change event. Returns True when it changed the outstanding set."""
        if self.conversation_id is None:
            return False
        try:
            event = decode_task_change(event)
        except EventDecodeError as exc:
            logger.warning("task_tracker event=decode_failed error=%s", exc)
            return False
        task = event.task
        if task is None or task.conversation_id != self.conversation_id:
            return False
        key = event_key(event)
        if key is None or not self._seen.add(key):
            return False

        changed = False
        # A deleted row is gone whatever status it last had.
        if event.event_type == "DELETE" or is_terminal(task.status):
            self._finished.add(task.id)
            if task.id in self._outstanding:
                self._outstanding.discard(task.id)
                changed = True
        elif task.id not in self._outstanding and task.id not in self._finished:
            self._outstanding.add(task.id)
            changed = True

        if task.status == "failed" and event.event_type != "DELETE":
            self.error = task.status_message or DEFAULT_FAILURE_ERROR
            self._spawn(self._mark_failed(task.id, task.status_message))

        if changed:
            logger.debug(
                "task_tracker event=reconciled task_id=%s status=%s outstanding=%d",
                task.id,
                task.status,
                len(self._outstanding),
            )
            self._schedule_flush()
            self._sync_polling()
        return changed

    async def send_message(self, conversation_id: int, text: str) -> dict[str, Any] | None:
        """Send a chat message and track its task as soon as the server names it."""
        message = text.strip()
        if not message:
            return None
        self.error = None
        try:
            data = await self.sender.send(conversation_id, message)
        except Exception as exc:
            self.error = str(exc) or "Failed to send message"
            logger.error(
                "task_tracker event=send_failed conversation_id=%s error=%s", conversation_id, exc
            )
            raise

        task_id = _parse_task_id(data.get("task_id"))
        if (
            task_id is not None
            and conversation_id == self.conversation_id
            and task_id not in self._finished
        ):
            self._outstanding.add(task_id)
            # Show the indicator now instead of after the debounce window.
            self._set_processing(True)
            self._sync_polling()
        return data

    def clear_error(self) -> None:
        self.error = None

    async def poll_once(self) -> None:
        """Reconcile tracked ids against the store once."""
        if not self._outstanding:
            return
        try:
            tasks = await self.source.list_terminal(sorted(self._outstanding))
        except Exception as exc:  # noqa: BLE001
            logger.warning("task_tracker event=poll_failed error=%s", exc)
            return
        for task in tasks:
            self.handle_event(TaskChangeEvent(event_type="UPDATE", new=task))
        # The store is authoritative: drop terminal ids even when their event
        # was already applied before the id was tracked.
        stale = {task.id for task in tasks if is_terminal(task.status)} & self._outstanding
        if stale:
            self._outstanding -= stale
            self._finished |= stale
            logger.debug("task_tracker event=poll_reconciled task_ids=%s", sorted(stale))
            self._schedule_flush()
            self._sync_polling()

    async def _poll_loop(self) -> None:
        current = asyncio.current_task()
        while self._outstanding and self._poll_task is current:
            await asyncio.sleep(self.poll_interval_s)
            if self._poll_task is not current:
                break
            await self.poll_once()

    def _sync_polling(self) -> None:
        """Run the poll loop exactly while something is outstanding."""
        if self._outstanding and self.conversation_id is not None:
            if not self.polling:
                self._poll_task = asyncio.get_running_loop().create_task(self._poll_loop())
            return
        poll_task, self._poll_task = self._poll_task, None
        if poll_task is not None and poll_task is not asyncio.current_task():
            poll_task.cancel()

    def _schedule_flush(self) -> None:
        if self._debounce_handle is not None:
            self._debounce_handle.cancel()
        loop = asyncio.get_running_loop()
        self._debounce_handle = loop.call_later(self.debounce_s, self._flush)

    def _flush(self) -> None:
        self._debounce_handle = None
        self._set_processing(bool(self._outstanding))

    def _set_processing(self, value: bool) -> None:
        if value == self.is_processing:
            return
        self.is_processing = value
        if self.on_processing_change is not None:
            self.on_processing_change(value)

    async def _mark_failed(self, task_id: int, reason: str | None) -> None:
        try:
            await self.source.mark_message_failed(task_id, reason)
        except Exception as exc:  # noqa: BLE001
            logger.error(
                "task_tracker event=failure_patch_failed task_id=%s error=%s", task_id, exc
            )

    def _spawn(self, coro: Any) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._side_tasks.add(task)
        task.add_done_callback(self._side_tasks.discard)


def _parse_task_id(raw: Any) -> int | None:
    if raw is None or isinstance(raw, bool):
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        logger.warning("task_tracker event=invalid_task_id task_id=%r", raw)
        return None


def _snapshot(record: TaskRecord) -> TaskSnapshot:
    return TaskSnapshot.model_validate(record.model_dump())


class StorageTaskSource:
    """`TaskSource` reading the task store directly, off the event loop."""

    def __init__(self, storage: TaskStorage) -> None:
        self.storage = storage

    async def list_outstanding(self, conversation_id: int) -> list[TaskSnapshot]:
        records = await asyncio.to_thread(self.storage.list_outstanding_tasks, conversation_id)
        return [_snapshot(record) for record in records]

    async def list_terminal(self, task_ids: list[int]) -> list[TaskSnapshot]:
        records = await asyncio.to_thread(self.storage.list_terminal_tasks, task_ids)
        return [_snapshot(record) for record in records]

    async def mark_message_failed(self, task_id: int, reason: str | None) -> None:
        await asyncio.to_thread(
            self.storage.update_messages_for_task,
            task_id,
            content=FAILED_MESSAGE_CONTENT,
            metadata={"error": reason},
        )


class MessageSendError(RuntimeError):
    pass


class HttpMessageSender:
    """`MessageSender` posting to POST /chat/send with a bearer token."""

    def __init__(self, base_url: str, *, token: str, timeout_s: float = 10.0) -> None:
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout_s = timeout_s

    async def send(self, conversation_id: int, text: str) -> dict[str, Any]:
        return await asyncio.to_thread(self._send, conversation_id, text)

    def _send(self, conversation_id: int, text: str) -> dict[str, Any]:
        req = request.Request(
            url=f"{self.base_url}/chat/send",
            data=json.dumps({"conversation_id": conversation_id, "message": text}).encode("utf-8"),
            method="POST",
            headers={
                "Authorization": f"Bearer {self.token}",
                "Content-Type": "application/json",
            },
        )
        try:
            with request.urlopen(req, timeout=self.timeout_s) as response:
                body = json.loads(response.read().decode("utf-8"))
        except error.HTTPError as exc:
            raise MessageSendError(_error_detail(exc)) from exc
        except (error.URLError, TimeoutError, OSError, ValueError) as exc:
            raise MessageSendError(f"Failed to send message: {exc}") from exc
        return body if isinstance(body, dict) else {}


def _error_detail(exc: error.HTTPError) -> str:
    raw = exc.read().decode("utf-8", errors="replace")
    try:
        parsed = json.loads(raw)
    except ValueError:
        parsed = None
    if isinstance(parsed, dict) and isinstance(parsed.get("detail"), str):
        return parsed["detail"]
    return f"HTTP {exc.code}: {exc.reason}"
