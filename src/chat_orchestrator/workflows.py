"""Registry mapping task types to the external workflows that process them."""

from __future__ import annotations

from dataclasses import dataclass

from .config.settings import Settings


class UnknownTaskTypeError(LookupError):
    """No workflow is registered for the requested task type."""


class WorkflowConfigurationError(RuntimeError):
    """A registered workflow is missing required environment configuration."""


@dataclass(frozen=True)
class WorkflowConfig:
    workflow_id: str
    webhook_url: str
    timeout_seconds: int
    description: str


class WorkflowRegistry:
    """Static `task_type -> WorkflowConfig` lookup built at startup."""

    def __init__(self, configs: dict[str, WorkflowConfig], *, base_url: str = "") -> None:
        self._configs = dict(configs)
        self._base_url = base_url

    def get(self, task_type: str) -> WorkflowConfig:
        config = self._configs.get(task_type)
        if config is None:
            raise UnknownTaskTypeError(
                f'No workflow configured for task type: "{task_type}". '
                f"Available types: {', '.join(self.available_types())}"
            )
        if not config.workflow_id:
            raise WorkflowConfigurationError(
                f"Missing environment variable for {task_type} workflow ID. "
                f"Please set N8N_{task_type.upper()}_WORKFLOW_ID"
            )
        if not self._base_url:
            raise WorkflowConfigurationError("Missing N8N_BASE_URL environment variable")
        return config

    def available_types(self) -> list[str]:
        return list(self._configs)

    def is_supported(self, task_type: str) -> bool:
        return task_type in self._configs


def build_workflow_registry(settings: Settings) -> WorkflowRegistry:
    base_url = settings.resolved_n8n_base_url().rstrip("/")
    webhook_path = settings.resolved_n8n_webhook_path()
    if webhook_path and not webhook_path.startswith("/"):
        webhook_path = f"/{webhook_path}"
    configs = {
        "chat": WorkflowConfig(
            workflow_id=settings.resolved_n8n_chat_workflow_id(),
            webhook_url=f"{base_url}{webhook_path}",
            timeout_seconds=180,
            description="AI chat message processing with OpenRouter",
        ),
    }
    return WorkflowRegistry(configs, base_url=base_url)
