from __future__ import annotations

import pytest

from chat_orchestrator.config.settings import Settings
from chat_orchestrator.workflows import (
    UnknownTaskTypeError,
    WorkflowConfigurationError,
    build_workflow_registry,
)


def _settings(**values: str) -> Settings:
    defaults = {
        "n8n_base_url": "https://n8n.example.com/",
        "n8n_webhook_path": "webhook/chat",
        "n8n_chat_workflow_id": "wf-123",
    }
    defaults.update(values)
    return Settings(_env_file=None, **defaults)


def test_chat_workflow_is_registered() -> None:
    registry = build_workflow_registry(_settings())

    config = registry.get("chat")

    assert config.workflow_id == "wf-123"
    assert config.webhook_url == "https://n8n.example.com/webhook/chat"
    assert config.timeout_seconds == 180
    assert registry.available_types() == ["chat"]
    assert registry.is_supported("chat")
    assert not registry.is_supported("email")


def test_unknown_task_type_names_the_type() -> None:
    registry = build_workflow_registry(_settings())

    with pytest.raises(UnknownTaskTypeError, match='"email".*Available types: chat'):
        registry.get("email")


def test_missing_workflow_id_is_a_configuration_error(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("N8N_CHAT_WORKFLOW_ID", raising=False)
    registry = build_workflow_registry(_settings(n8n_chat_workflow_id=""))

    with pytest.raises(WorkflowConfigurationError, match="N8N_CHAT_WORKFLOW_ID"):
        registry.get("chat")


def test_missing_base_url_is_a_configuration_error(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("N8N_BASE_URL", raising=False)
    registry = build_workflow_registry(_settings(n8n_base_url=""))

    with pytest.raises(WorkflowConfigurationError, match="N8N_BASE_URL"):
        registry.get("chat")


def test_unprefixed_n8n_variables_are_honoured(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("N8N_BASE_URL", "https://hooks.example.org")
    monkeypatch.setenv("N8N_WEBHOOK_PATH", "/webhook/ai")
    monkeypatch.setenv("N8N_CHAT_WORKFLOW_ID", "wf-env")
    settings = Settings(_env_file=None)

    config = build_workflow_registry(settings).get("chat")

    assert config.workflow_id == "wf-env"
    assert config.webhook_url == "https://hooks.example.org/webhook/ai"


def test_api_tokens_are_parsed_leniently() -> None:
    settings = Settings(_env_file=None, api_tokens=" a:user-1 , broken, b:user-2,:x,c:")

    assert settings.parsed_api_tokens() == {"a": "user-1", "b": "user-2"}
