"""Application settings."""

from functools import lru_cache
import os
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

PROJECT_ROOT = Path(__file__).resolve().parents[3]


class Settings(BaseSettings):
    """Runtime settings loaded from environment variables."""

    app_name: str = "chat-orchestrator"
    app_env: str = "dev"
    log_level: str = "INFO"
    database_url: str = ""
    # Workflow engine (n8n) wiring. Unprefixed N8N_* variables are honoured too.
    n8n_base_url: str = ""
    n8n_webhook_path: str = ""
    n8n_chat_workflow_id: str = ""
    webhook_timeout_s: float = Field(default=10.0, ge=0.1)
    dispatch_workers: int = Field(default=4, ge=1)
    # Pause between persisting a user message and starting its task so the
    # realtime pipeline sees the insert first.
    realtime_flush_delay_s: float = Field(default=0.05, ge=0.0)
    # Origin the message endpoint uses to reach the task creation endpoint.
    internal_base_url: str = "http://127.0.0.1:8000"
    # Comma separated `token:user_id` pairs accepted as bearer credentials.
    api_tokens: str = ""
    openrouter_api_key: str = ""
    openrouter_model: str = "deepseek/deepseek-chat-v3-0324:free"
    openrouter_base_url: str = "https://openrouter.ai/api/v1"
    openrouter_timeout_s: float = Field(default=60.0, ge=0.5)
    openrouter_max_retries: int = Field(default=3, ge=0)
    openrouter_backoff_s: float = Field(default=1.0, ge=0.0)
    site_url: str = "http://localhost:3000"

    model_config = SettingsConfigDict(
        env_prefix="CHAT_ORCHESTRATOR_",
        extra="ignore",
        env_file=(PROJECT_ROOT / ".env", PROJECT_ROOT / ".env.local"),
        env_file_encoding="utf-8",
    )

    def resolved_database_url(self) -> str:
        return self.database_url or os.getenv("DATABASE_URL", "")

    def resolved_n8n_base_url(self) -> str:
        return self.n8n_base_url or os.getenv("N8N_BASE_URL", "")

    def resolved_n8n_webhook_path(self) -> str:
        return self.n8n_webhook_path or os.getenv("N8N_WEBHOOK_PATH", "")

    def resolved_n8n_chat_workflow_id(self) -> str:
        return self.n8n_chat_workflow_id or os.getenv("N8N_CHAT_WORKFLOW_ID", "")

    def resolved_openrouter_api_key(self) -> str:
        return self.openrouter_api_key or os.getenv("OPENROUTER_API_KEY", "")

    def parsed_api_tokens(self) -> dict[str, str]:
        tokens: dict[str, str] = {}
        for item in self.api_tokens.split(","):
            token, sep, user_id = item.strip().partition(":")
            if not sep or not token or not user_id:
                continue
            tokens[token] = user_id
        return tokens


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
