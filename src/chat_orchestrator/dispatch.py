"""Fire-and-forget webhook dispatch to the workflow engine.

A dispatch is attempted exactly once. When it fails the task row is patched
to `failed` so clients stop waiting; failing to record that is only logged.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import UTC, datetime
from typing import Any, Protocol
from urllib import error, request

from . import __version__
from .storage.base import TaskStorage

logger = logging.getLogger(__name__)


class WebhookError(RuntimeError):
    """The webhook endpoint was unreachable or answered with a non-2xx status."""


class Dispatcher(Protocol):
    def post(self, url: str, payload: dict[str, Any], *, timeout_s: float) -> dict[str, Any]: ...


class WebhookDispatcher:
    """POST JSON payloads to workflow webhooks."""

    def __init__(self, user_agent: str = f"chat-orchestrator/{__version__}") -> None:
        self.user_agent = user_agent

    def post(self, url: str, payload: dict[str, Any], *, timeout_s: float) -> dict[str, Any]:
        req = request.Request(
            url=url,
            data=json.dumps(payload).encode("utf-8"),
            method="POST",
            headers={
                "Content-Type": "application/json",
                "User-Agent": self.user_agent,
            },
        )
        try:
            with request.urlopen(req, timeout=timeout_s) as response:
                body = response.read().decode("utf-8")
        except error.HTTPError as exc:
            raise WebhookError(f"HTTP {exc.code}: {exc.reason}") from exc
        except (error.URLError, TimeoutError, OSError) as exc:
            raise WebhookError(str(getattr(exc, "reason", exc))) from exc
        if not body.strip():
            return {}
        try:
            parsed = json.loads(body)
        except ValueError:
            return {}
        return parsed if isinstance(parsed, dict) else {}


class DetachedRunner:
    """Runs jobs off the request path on a small thread pool.

    Callers never wait on the returned future; uncaught job errors are logged.
    """

    def __init__(self, max_workers: int = 4) -> None:
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="chat-orchestrator-detached"
        )

    def submit(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Future[Any]:
        future = self._executor.submit(fn, *args, **kwargs)
        future.add_done_callback(_log_job_failure)
        return future

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)


def _log_job_failure(future: Future[Any]) -> None:
    if future.cancelled():
        return
    exc = future.exception()
    if exc is not None:
        logger.error("detached_job event=failed error=%r", exc, exc_info=exc)


def dispatch_task(
    *,
    storage: TaskStorage,
    dispatcher: Dispatcher,
    task_id: int,
    webhook_url: str,
    payload: dict[str, Any],
    timeout_s: float,
) -> bool:
    """Send one task to its workflow webhook. Returns True when the engine accepted it."""
    try:
        response = dispatcher.post(webhook_url, payload, timeout_s=timeout_s)
    except Exception as exc:  # noqa: BLE001
        logger.error(
            "task_dispatch event=failed task_id=%s webhook_url=%s error=%s",
            task_id,
            webhook_url,
            exc,
        )
        _record_dispatch_failure(storage, task_id=task_id, webhook_url=webhook_url, exc=exc)
        return False

    logger.info("task_dispatch event=accepted task_id=%s webhook_url=%s", task_id, webhook_url)
    execution_id = response.get("executionId")
    if execution_id or response.get("workflowId"):
        try:
            storage.update_task(
                task_id,
                execution_id=str(execution_id) if execution_id else None,
                status_message="Workflow started successfully",
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "task_dispatch event=execution_id_not_saved task_id=%s error=%s", task_id, exc
            )
    return True


def _record_dispatch_failure(
    storage: TaskStorage,
    *,
    task_id: int,
    webhook_url: str,
    exc: Exception,
) -> None:
    message = str(exc) or exc.__class__.__name__
    try:
        storage.update_task(
            task_id,
            status="failed",
            status_message=f"Failed to start workflow: {message}",
            error_details={
                "error": message,
                "webhook_url": webhook_url,
                "timestamp": datetime.now(tz=UTC).isoformat(),
            },
        )
    except Exception as update_exc:  # noqa: BLE001
        logger.error(
            "task_dispatch event=failure_not_recorded task_id=%s error=%s", task_id, update_exc
        )
