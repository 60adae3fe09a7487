from __future__ import annotations

import io
import json
import logging
from typing import Any
from urllib import error

import pytest

from chat_orchestrator import dispatch as dispatch_module
from chat_orchestrator.dispatch import (
    DetachedRunner,
    WebhookDispatcher,
    WebhookError,
    dispatch_task,
)
from chat_orchestrator.storage.memory import InMemoryTaskStorage


class _FakeResponse:
    def __init__(self, body: bytes) -> None:
        self._body = body

    def read(self) -> bytes:
        return self._body

    def __enter__(self) -> _FakeResponse:
        return self

    def __exit__(self, *exc: object) -> None:
        return None


class _BrokenStorage:
    def update_task(self, task_id: int, **fields: Any) -> None:
        raise RuntimeError("database unavailable")


def _create_task(storage: InMemoryTaskStorage) -> int:
    return storage.create_task(
        task_type="chat",
        workflow_id="wf-chat",
        webhook_url="http://n8n.test/webhook/chat",
        input_data={"conversation_id": 1},
        created_by="user-a",
        status_message="Thinking.....",
    ).id


def test_webhook_dispatcher_posts_json(monkeypatch: pytest.MonkeyPatch) -> None:
    captured: dict[str, Any] = {}

    def fake_urlopen(req, timeout):  # noqa: ANN001
        captured["method"] = req.get_method()
        captured["headers"] = dict(req.header_items())
        captured["body"] = json.loads(req.data.decode("utf-8"))
        captured["timeout"] = timeout
        return _FakeResponse(b'{"executionId": "abc"}')

    monkeypatch.setattr(dispatch_module.request, "urlopen", fake_urlopen)

    result = WebhookDispatcher(user_agent="test-agent/1.0").post(
        "http://n8n.test/webhook/chat", {"task_id": 1}, timeout_s=2.5
    )

    assert result == {"executionId": "abc"}
    assert captured["method"] == "POST"
    assert captured["body"] == {"task_id": 1}
    assert captured["headers"]["User-agent"] == "test-agent/1.0"
    assert captured["headers"]["Content-type"] == "application/json"
    assert captured["timeout"] == 2.5


def test_webhook_dispatcher_tolerates_non_json_body(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        dispatch_module.request, "urlopen", lambda req, timeout: _FakeResponse(b"Accepted")
    )

    assert WebhookDispatcher().post("http://n8n.test/hook", {}, timeout_s=1) == {}


def test_webhook_dispatcher_raises_on_http_error(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_urlopen(req, timeout):  # noqa: ANN001
        raise error.HTTPError(req.full_url, 404, "Not Found", {}, io.BytesIO(b""))

    monkeypatch.setattr(dispatch_module.request, "urlopen", fake_urlopen)

    with pytest.raises(WebhookError, match="HTTP 404: Not Found"):
        WebhookDispatcher().post("http://n8n.test/hook", {}, timeout_s=1)


def test_webhook_dispatcher_raises_on_unreachable_host(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_urlopen(req, timeout):  # noqa: ANN001
        raise error.URLError("Name or service not known")

    monkeypatch.setattr(dispatch_module.request, "urlopen", fake_urlopen)

    with pytest.raises(WebhookError, match="Name or service not known"):
        WebhookDispatcher().post("http://n8n.invalid/hook", {}, timeout_s=1)


def test_dispatch_failure_is_recorded_on_task() -> None:
    storage = InMemoryTaskStorage()
    task_id = _create_task(storage)

    class Unreachable:
        def post(self, url: str, payload: dict[str, Any], *, timeout_s: float) -> dict[str, Any]:
            raise WebhookError("timed out")

    accepted = dispatch_task(
        storage=storage,
        dispatcher=Unreachable(),
        task_id=task_id,
        webhook_url="http://n8n.test/webhook/chat",
        payload={"task_id": task_id},
        timeout_s=1.0,
    )

    task = storage.get_task(task_id)
    assert accepted is False
    assert task is not None
    assert task.status == "failed"
    assert task.error_details is not None
    assert task.error_details["error"] == "timed out"


def test_unrecordable_dispatch_failure_is_only_logged(caplog: pytest.LogCaptureFixture) -> None:
    class Unreachable:
        def post(self, url: str, payload: dict[str, Any], *, timeout_s: float) -> dict[str, Any]:
            raise WebhookError("connection reset")

    with caplog.at_level(logging.ERROR, logger="chat_orchestrator.dispatch"):
        accepted = dispatch_task(
            storage=_BrokenStorage(),  # type: ignore[arg-type]
            dispatcher=Unreachable(),
            task_id=1,
            webhook_url="http://n8n.test/webhook/chat",
            payload={"task_id": 1},
            timeout_s=1.0,
        )

    assert accepted is False
    assert "failure_not_recorded" in caplog.text


def test_detached_runner_logs_job_errors(caplog: pytest.LogCaptureFixture) -> None:
    runner = DetachedRunner(max_workers=1)

    def boom() -> None:
        raise ValueError("job exploded")

    with caplog.at_level(logging.ERROR, logger="chat_orchestrator.dispatch"):
        future = runner.submit(boom)
        runner.shutdown(wait=True)

    assert isinstance(future.exception(), ValueError)
    assert "detached_job event=failed" in caplog.text
