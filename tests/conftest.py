from __future__ import annotations

import threading
from collections.abc import Callable, Iterator
from concurrent.futures import Future
from typing import Any

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from chat_orchestrator.api.main import create_app
from chat_orchestrator.config.settings import Settings
from chat_orchestrator.realtime import ChangeFeed
from chat_orchestrator.services.chat import InProcessTaskCreator
from chat_orchestrator.storage.memory import InMemoryTaskStorage


class InlineRunner:
    """Test-only runner that executes detached jobs immediately."""

    def __init__(self) -> None:
        self.jobs: list[str] = []

    def submit(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Future[Any]:
        self.jobs.append(getattr(fn, "__name__", repr(fn)))
        future: Future[Any] = Future()
        try:
            future.set_result(fn(*args, **kwargs))
        except Exception as exc:  # noqa: BLE001
            future.set_exception(exc)
        return future

    def shutdown(self, wait: bool = True) -> None:
        return None


class RecordingDispatcher:
    """Records webhook calls; optionally fails or blocks until released."""

    def __init__(
        self,
        *,
        response: dict[str, Any] | None = None,
        error: Exception | None = None,
    ) -> None:
        self.response = response or {}
        self.error = error
        self.calls: list[dict[str, Any]] = []
        self.release = threading.Event()
        self.release.set()

    def post(self, url: str, payload: dict[str, Any], *, timeout_s: float) -> dict[str, Any]:
        self.release.wait(timeout=10)
        self.calls.append({"url": url, "payload": payload, "timeout_s": timeout_s})
        if self.error is not None:
            raise self.error
        return self.response


def make_settings(**overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "database_url": "",
        "n8n_base_url": "http://n8n.test",
        "n8n_webhook_path": "/webhook/chat",
        "n8n_chat_workflow_id": "wf-chat",
        "api_tokens": "token-a:user-a,token-b:user-b",
        "realtime_flush_delay_s": 0.0,
        "openrouter_api_key": "",
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def change_feed() -> ChangeFeed:
    return ChangeFeed()


@pytest.fixture
def storage(change_feed: ChangeFeed) -> InMemoryTaskStorage:
    return InMemoryTaskStorage(change_feed=change_feed)


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher(response={"executionId": "exec-1"})


@pytest.fixture
def runner() -> InlineRunner:
    return InlineRunner()


@pytest.fixture
def app(
    storage: InMemoryTaskStorage,
    dispatcher: RecordingDispatcher,
    runner: InlineRunner,
    change_feed: ChangeFeed,
) -> FastAPI:
    app = create_app(
        storage=storage,
        settings_override=make_settings(),
        dispatcher=dispatcher,
        runner=runner,
        change_feed=change_feed,
    )
    app.state.chat_service.task_creator = InProcessTaskCreator(app.state.task_service)
    return app


@pytest.fixture
def client(app: FastAPI) -> Iterator[TestClient]:
    yield TestClient(app)


@pytest.fixture
def build_app(
    storage: InMemoryTaskStorage,
    change_feed: ChangeFeed,
) -> Callable[..., FastAPI]:
    """Factory for apps that need a non-default runner, dispatcher or settings."""

    def _build(**kwargs: Any) -> FastAPI:
        settings = make_settings(**kwargs.pop("settings", {}))
        kwargs.setdefault("dispatcher", RecordingDispatcher())
        kwargs.setdefault("runner", InlineRunner())
        app = create_app(
            storage=storage,
            settings_override=settings,
            change_feed=change_feed,
            **kwargs,
        )
        if "task_creator" not in kwargs:
            app.state.chat_service.task_creator = InProcessTaskCreator(app.state.task_service)
        return app

    return _build


@pytest.fixture
def dispatcher_factory() -> type[RecordingDispatcher]:
    return RecordingDispatcher
