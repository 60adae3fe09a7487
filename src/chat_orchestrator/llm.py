from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Protocol
from urllib import error, request

from .config.settings import Settings

logger = logging.getLogger(__name__)

# Status codes that never succeed on retry.
NON_RETRYABLE_STATUS = frozenset({400, 401, 403})


class LLMRequestError(RuntimeError):
    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


@dataclass(frozen=True)
class ChatCompletion:
    model: str
    content: str
    thinking: str | None = None


class ChatCompletionClient(Protocol):
    """Interface for chat completions used by the direct chat endpoint."""

    default_model: str

    def create_chat_completion(
        self,
        *,
        messages: list[dict[str, str]],
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        top_p: float | None = None,
    ) -> ChatCompletion: ...


class OpenRouterChatClient:
    """Small OpenRouter adapter using the chat completions REST API."""

    def __init__(
        self,
        *,
        api_key: str,
        default_model: str = "deepseek/deepseek-chat-v3-0324:free",
        base_url: str = "https://openrouter.ai/api/v1",
        site_url: str = "http://localhost:3000",
        app_title: str = "chat-orchestrator",
        timeout_s: float = 60.0,
        max_retries: int = 3,
        backoff_s: float = 1.0,
    ) -> None:
        if not api_key:
            raise ValueError("OpenRouter API key is required")
        self.api_key = api_key
        self.default_model = default_model
        self.base_url = base_url.rstrip("/")
        self.site_url = site_url
        self.app_title = app_title
        self.timeout_s = timeout_s
        self.max_retries = max(0, max_retries)
        self.backoff_s = max(0.0, backoff_s)

    def create_chat_completion(
        self,
        *,
        messages: list[dict[str, str]],
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        top_p: float | None = None,
    ) -> ChatCompletion:
        selected_model = model or self.default_model
        payload: dict[str, Any] = {"model": selected_model, "messages": messages}
        for key, value in (
            ("temperature", temperature),
            ("max_tokens", max_tokens),
            ("top_p", top_p),
        ):
            if value is not None:
                payload[key] = value
        response_json = self._request_with_retry(payload)
        return self._extract_completion(response_json, selected_model)

    def _request_with_retry(self, payload: dict[str, Any]) -> dict[str, Any]:
        last_error: LLMRequestError | None = None
        for attempt in range(self.max_retries + 1):
            try:
                return self._request(payload)
            except LLMRequestError as exc:
                last_error = exc
                logger.warning(
                    "OpenRouter request failed attempt=%d/%d model=%s reason=%s",
                    attempt + 1,
                    self.max_retries + 1,
                    payload.get("model"),
                    exc,
                )
                if exc.status_code in NON_RETRYABLE_STATUS:
                    break
                if attempt < self.max_retries and self.backoff_s > 0:
                    time.sleep(self.backoff_s * (2**attempt))
        if last_error is None:
            raise LLMRequestError("LLM request failed with unknown error")
        raise last_error

    def _request(self, payload: dict[str, Any]) -> dict[str, Any]:
        req = request.Request(
            url=f"{self.base_url}/chat/completions",
            data=json.dumps(payload).encode("utf-8"),
            method="POST",
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
                "HTTP-Referer": self.site_url,
                "X-Title": self.app_title,
            },
        )
        try:
            with request.urlopen(req, timeout=self.timeout_s) as response:
                body = response.read().decode("utf-8")
        except error.HTTPError as exc:
            raw_error = exc.read().decode("utf-8", errors="replace")
            raise LLMRequestError(
                f"OpenRouter API request failed: HTTP {exc.code} {raw_error}",
                status_code=exc.code,
            ) from exc
        except (error.URLError, TimeoutError, OSError) as exc:
            raise LLMRequestError(f"OpenRouter API unreachable: {exc}") from exc
        try:
            parsed = json.loads(body)
        except ValueError as exc:
            raise LLMRequestError("OpenRouter API returned invalid JSON") from exc
        if not isinstance(parsed, dict):
            raise LLMRequestError("OpenRouter API returned an unexpected response body")
        return parsed

    @staticmethod
    def _extract_completion(response_json: dict[str, Any], model: str) -> ChatCompletion:
        choices = response_json.get("choices") or []
        if not isinstance(choices, list):
            raise LLMRequestError("OpenRouter API returned malformed choices")
        first = choices[0] if choices else {}
        if not isinstance(first, dict):
            raise LLMRequestError("OpenRouter API returned malformed choices")
        message = first.get("message")
        if not isinstance(message, dict):
            return ChatCompletion(model=model, content="No response generated")
        content = message.get("content")
        if not isinstance(content, str) or not content.strip():
            content = "No response generated"
        # Reasoning models return their trace separately from the answer.
        reasoning = message.get("reasoning")
        thinking = reasoning.strip() if isinstance(reasoning, str) and reasoning.strip() else None
        return ChatCompletion(
            model=str(response_json.get("model") or model),
            content=content.strip(),
            thinking=thinking,
        )


def build_chat_client(settings: Settings) -> OpenRouterChatClient | None:
    """Construct the OpenRouter client, or None when no API key is configured."""
    api_key = settings.resolved_openrouter_api_key()
    if not api_key:
        return None
    return OpenRouterChatClient(
        api_key=api_key,
        default_model=settings.openrouter_model,
        base_url=settings.openrouter_base_url,
        site_url=settings.site_url,
        app_title=settings.app_name,
        timeout_s=settings.openrouter_timeout_s,
        max_retries=settings.openrouter_max_retries,
        backoff_s=settings.openrouter_backoff_s,
    )
