from __future__ import annotations

import io
import json
import time
from collections.abc import Callable
from typing import Any
from urllib import error

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from chat_orchestrator.dispatch import DetachedRunner
from chat_orchestrator.services import chat as chat_module
from chat_orchestrator.services.chat import HttpTaskCreator, TaskCreationError
from chat_orchestrator.storage.memory import InMemoryTaskStorage

USER_A = {"Authorization": "Bearer token-a"}


class FailingTaskCreator:
    def create(self, task_type: str, input_data: dict[str, Any], **_: Any) -> int:
        raise TaskCreationError("HTTP 500: Failed to create task in database")


def test_send_stores_message_and_starts_chat_task(
    client: TestClient, storage: InMemoryTaskStorage, dispatcher
) -> None:
    response = client.post(
        "/chat/send", json={"conversation_id": 5, "message": "Hello there"}, headers=USER_A
    )

    assert response.status_code == 200
    payload = response.json()
    assert payload["success"] is True
    assert payload["status"] == "sent"
    assert payload["user_message"]["role"] == "user"
    assert payload["user_message"]["content"] == "Hello there"
    assert payload["user_message"]["conversation_id"] == 5

    user_message, placeholder = storage.list_messages(5)
    assert user_message.id == payload["user_message"]["id"]
    assert placeholder.role == "assistant"
    assert placeholder.content == ""
    assert placeholder.async_task_id is not None
    assert placeholder.metadata == {
        "placeholder": True,
        "created_for_task": placeholder.async_task_id,
    }

    task = storage.get_task(placeholder.async_task_id)
    assert task is not None
    assert task.task_type == "chat"
    assert task.created_by == "user-a"
    assert task.input_data == {
        "conversation_id": 5,
        "user_message_id": user_message.id,
        "message_id": placeholder.id,
    }
    assert dispatcher.calls[0]["payload"]["task_id"] == task.id


def test_send_validates_fields(client: TestClient, storage: InMemoryTaskStorage) -> None:
    for body in (
        {"message": "hi"},
        {"conversation_id": 5},
        {"conversation_id": 5, "message": "   "},
    ):
        response = client.post("/chat/send", json=body, headers=USER_A)
        assert response.status_code == 400
        assert response.json()["detail"] == "Missing required fields: conversation_id and message"
    assert storage.list_messages(5) == []


def test_send_requires_authentication(client: TestClient, storage: InMemoryTaskStorage) -> None:
    response = client.post("/chat/send", json={"conversation_id": 5, "message": "hi"})

    assert response.status_code == 401
    assert storage.list_messages(5) == []


def test_failed_task_creation_keeps_user_message_and_drops_placeholder(
    build_app: Callable[..., FastAPI], storage: InMemoryTaskStorage
) -> None:
    client = TestClient(build_app(task_creator=FailingTaskCreator()))

    response = client.post(
        "/chat/send", json={"conversation_id": 8, "message": "hi"}, headers=USER_A
    )

    assert response.status_code == 200
    messages = storage.list_messages(8)
    assert [message.role for message in messages] == ["user"]
    assert storage.list_outstanding_tasks(8) == []


def test_send_returns_before_workflow_dispatch_completes(
    build_app: Callable[..., FastAPI],
    storage: InMemoryTaskStorage,
    dispatcher_factory,
) -> None:
    dispatcher = dispatcher_factory()
    dispatcher.release.clear()
    runner = DetachedRunner(max_workers=2)
    client = TestClient(build_app(dispatcher=dispatcher, runner=runner))

    started = time.monotonic()
    response = client.post(
        "/chat/send", json={"conversation_id": 3, "message": "slow please"}, headers=USER_A
    )
    elapsed = time.monotonic() - started

    assert response.status_code == 200
    assert elapsed < 1.0
    assert dispatcher.calls == []

    dispatcher.release.set()
    _wait_for(lambda: len(dispatcher.calls) == 1)
    runner.shutdown(wait=True)
    assert dispatcher.calls[0]["payload"]["input_data"]["conversation_id"] == 3


def test_task_creation_returns_before_webhook_completes(
    build_app: Callable[..., FastAPI],
    storage: InMemoryTaskStorage,
    dispatcher_factory,
) -> None:
    dispatcher = dispatcher_factory()
    dispatcher.release.clear()
    runner = DetachedRunner(max_workers=1)
    client = TestClient(build_app(dispatcher=dispatcher, runner=runner))

    response = client.post(
        "/tasks/create",
        json={"task_type": "chat", "input_data": {"conversation_id": 2}},
        headers=USER_A,
    )

    assert response.status_code == 200
    assert response.json()["status"] == "pending"
    dispatcher.release.set()
    runner.shutdown(wait=True)
    assert len(dispatcher.calls) == 1


def test_list_messages_returns_conversation_history(client: TestClient) -> None:
    client.post("/chat/send", json={"conversation_id": 11, "message": "one"}, headers=USER_A)

    response = client.get("/chat/messages", params={"conversation_id": 11}, headers=USER_A)

    assert response.status_code == 200
    assert [message["role"] for message in response.json()] == ["user", "assistant"]


class _FakeResponse:
    def __init__(self, body: dict[str, Any]) -> None:
        self._body = json.dumps(body).encode("utf-8")

    def read(self) -> bytes:
        return self._body

    def __enter__(self) -> _FakeResponse:
        return self

    def __exit__(self, *exc: object) -> None:
        return None


def test_http_task_creator_forwards_caller_credentials(monkeypatch: pytest.MonkeyPatch) -> None:
    captured: dict[str, Any] = {}

    def fake_urlopen(req, timeout):  # noqa: ANN001
        captured["url"] = req.full_url
        captured["headers"] = dict(req.header_items())
        captured["body"] = json.loads(req.data.decode("utf-8"))
        captured["timeout"] = timeout
        return _FakeResponse({"success": True, "task_id": 42})

    monkeypatch.setattr(chat_module.request, "urlopen", fake_urlopen)
    creator = HttpTaskCreator("http://app.internal/", timeout_s=3.0)

    task_id = creator.create(
        "chat",
        {"conversation_id": 1, "message_id": 2},
        user_id="user-a",
        auth_headers={"Authorization": "Bearer token-a", "Cookie": "session=abc"},
    )

    assert task_id == 42
    assert captured["url"] == "http://app.internal/tasks/create"
    assert captured["body"] == {
        "task_type": "chat",
        "input_data": {"conversation_id": 1, "message_id": 2},
    }
    # urllib normalises header names with str.capitalize().
    assert captured["headers"]["Authorization"] == "Bearer token-a"
    assert captured["headers"]["Cookie"] == "session=abc"
    assert captured["timeout"] == 3.0


def test_http_task_creator_raises_on_rejection(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_urlopen(req, timeout):  # noqa: ANN001
        body = io.BytesIO(b'{"detail": "Authentication required"}')
        raise error.HTTPError(req.full_url, 401, "Unauthorized", {}, body)

    monkeypatch.setattr(chat_module.request, "urlopen", fake_urlopen)
    creator = HttpTaskCreator("http://app.internal")

    with pytest.raises(TaskCreationError, match="HTTP 401"):
        creator.create("chat", {"conversation_id": 1}, user_id="u", auth_headers={})


def _wait_for(condition: Callable[[], bool], timeout_s: float = 5.0) -> None:
    deadline = time.monotonic() + timeout_s
    while time.monotonic() < deadline:
        if condition():
            return
        time.sleep(0.01)
    raise AssertionError("condition not met in time")
