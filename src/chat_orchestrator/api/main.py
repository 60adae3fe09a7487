"""FastAPI app entrypoint for chat-orchestrator."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from chat_orchestrator.auth import (
    SESSION_COOKIE,
    Authenticator,
    StaticTokenAuthenticator,
    extract_credential,
)
from chat_orchestrator.config.settings import Settings, get_settings
from chat_orchestrator.dispatch import DetachedRunner, Dispatcher, WebhookDispatcher
from chat_orchestrator.errors import (
    AuthenticationError,
    ChatOrchestratorError,
    UpstreamError,
    ValidationError,
)
from chat_orchestrator.llm import ChatCompletionClient, LLMRequestError, build_chat_client
from chat_orchestrator.logging_setup import setup_logging
from chat_orchestrator.realtime import ChangeFeed
from chat_orchestrator.schemas import (
    ChatCompletionRequest,
    ChatCompletionResponse,
    CreateTaskRequest,
    CreateTaskResult,
    SendMessageRequest,
    SendMessageResult,
)
from chat_orchestrator.services.chat import ChatService, HttpTaskCreator, TaskCreator
from chat_orchestrator.services.tasks import TaskService
from chat_orchestrator.storage.base import TaskStorage
from chat_orchestrator.storage.models import ChatMessageRecord, TaskRecord
from chat_orchestrator.storage.postgres import PostgresTaskStorage
from chat_orchestrator.workflows import WorkflowConfigurationError, build_workflow_registry

logger = logging.getLogger(__name__)


def _ensure_runtime_state(
    app: FastAPI,
    *,
    settings: Settings,
    storage_override: TaskStorage | None,
    dispatcher: Dispatcher | None,
    task_creator: TaskCreator | None,
    runner: DetachedRunner | None,
) -> None:
    if hasattr(app.state, "task_service"):
        return

    if storage_override is None:
        database_url = settings.resolved_database_url()
        if not database_url:
            raise RuntimeError(
                "Missing database URL. Set CHAT_ORCHESTRATOR_DATABASE_URL "
                "or DATABASE_URL before starting the app."
            )
        app.state.storage = PostgresTaskStorage(database_url, change_feed=app.state.change_feed)
    else:
        app.state.storage = storage_override
    app.state.storage.migrate()

    app.state.runner = runner or DetachedRunner(max_workers=settings.dispatch_workers)
    app.state.task_service = TaskService(
        storage=app.state.storage,
        registry=build_workflow_registry(settings),
        dispatcher=dispatcher or WebhookDispatcher(),
        runner=app.state.runner,
        webhook_timeout_s=settings.webhook_timeout_s,
    )
    app.state.chat_service = ChatService(
        storage=app.state.storage,
        task_creator=task_creator
        or HttpTaskCreator(settings.internal_base_url, timeout_s=settings.webhook_timeout_s),
        runner=app.state.runner,
        flush_delay_s=settings.realtime_flush_delay_s,
    )


def create_app(
    *,
    storage: TaskStorage | None = None,
    settings_override: Settings | None = None,
    dispatcher: Dispatcher | None = None,
    task_creator: TaskCreator | None = None,
    authenticator: Authenticator | None = None,
    llm_client: ChatCompletionClient | None = None,
    change_feed: ChangeFeed | None = None,
    runner: DetachedRunner | None = None,
) -> FastAPI:
    settings = settings_override or get_settings()
    setup_logging(settings.log_level)

    def ensure_state(app: FastAPI) -> None:
        _ensure_runtime_state(
            app,
            settings=settings,
            storage_override=storage,
            dispatcher=dispatcher,
            task_creator=task_creator,
            runner=runner,
        )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        ensure_state(app)
        yield
        app.state.runner.shutdown(wait=True)

    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    app.state.settings = settings
    app.state.change_feed = change_feed or getattr(storage, "change_feed", None) or ChangeFeed()
    app.state.authenticator = authenticator or StaticTokenAuthenticator(
        settings.parsed_api_tokens()
    )
    # Built once here and handed to handlers through app.state.
    app.state.llm_client = llm_client if llm_client is not None else build_chat_client(settings)

    # Keep test paths reliable when lifespan is not executed by the client.
    if storage is not None:
        ensure_state(app)

    def _services(request: Request) -> tuple[TaskService, ChatService]:
        ensure_state(request.app)
        return request.app.state.task_service, request.app.state.chat_service

    def _require_user(request: Request) -> str:
        credential = extract_credential(
            request.headers.get("Authorization"), request.cookies.get(SESSION_COOKIE)
        )
        user_id = request.app.state.authenticator.resolve_user(credential) if credential else None
        if not user_id:
            raise AuthenticationError()
        return user_id

    @app.exception_handler(ChatOrchestratorError)
    async def domain_error_handler(_: Request, exc: ChatOrchestratorError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("request event=failed error=%r cause=%r", exc, exc.__cause__)
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})

    @app.exception_handler(WorkflowConfigurationError)
    async def workflow_config_handler(_: Request, exc: WorkflowConfigurationError) -> JSONResponse:
        logger.error("request event=workflow_misconfigured error=%s", exc)
        return JSONResponse(status_code=500, content={"detail": str(exc)})

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(_: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(
            status_code=400,
            content={"detail": "Invalid request", "errors": jsonable_encoder(exc.errors())},
        )

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok", "service": settings.app_name}

    @app.post("/tasks/create", response_model=CreateTaskResult)
    def create_task(payload: CreateTaskRequest, request: Request) -> CreateTaskResult:
        user_id = _require_user(request)
        task_service, _ = _services(request)
        return task_service.create_task(payload.task_type, payload.input_data, user_id=user_id)

    @app.get("/tasks/create", response_model=TaskRecord)
    def get_task_status(
        request: Request,
        task_id: int | None = Query(default=None, alias="id"),
    ) -> TaskRecord:
        user_id = _require_user(request)
        if task_id is None:
            raise ValidationError("Missing task ID parameter")
        task_service, _ = _services(request)
        return task_service.get_task_for_user(task_id, user_id)

    @app.post("/chat/send", response_model=SendMessageResult)
    def send_message(payload: SendMessageRequest, request: Request) -> SendMessageResult:
        user_id = _require_user(request)
        _, chat_service = _services(request)
        forwarded: dict[str, str] = {}
        for name in ("Authorization", "Cookie"):
            value = request.headers.get(name)
            if value:
                forwarded[name] = value
        return chat_service.send_message(
            payload.conversation_id,
            payload.message,
            user_id=user_id,
            auth_headers=forwarded,
        )

    @app.get("/chat/messages", response_model=list[ChatMessageRecord])
    def list_messages(request: Request, conversation_id: int) -> list[ChatMessageRecord]:
        _require_user(request)
        ensure_state(request.app)
        return request.app.state.storage.list_messages(conversation_id)

    @app.post("/chat", response_model=ChatCompletionResponse)
    def chat_completion(payload: ChatCompletionRequest, request: Request) -> ChatCompletionResponse:
        _require_user(request)
        if not payload.messages:
            raise ValidationError("Messages array is required and cannot be empty")
        client: ChatCompletionClient | None = request.app.state.llm_client
        if client is None:
            raise HTTPException(status_code=503, detail="Chat completions are not configured")
        try:
            completion = client.create_chat_completion(
                messages=[message.model_dump() for message in payload.messages],
                model=payload.model,
                temperature=payload.temperature,
                max_tokens=payload.max_tokens,
                top_p=payload.top_p,
            )
        except LLMRequestError as exc:
            if exc.status_code in (401, 403):
                raise HTTPException(status_code=401, detail=str(exc)) from exc
            raise UpstreamError(str(exc)) from exc
        return ChatCompletionResponse(
            model=completion.model,
            content=completion.content,
            thinking=completion.thinking,
        )

    @app.get("/chat")
    def chat_info() -> dict[str, str]:
        return {"message": "Chat API is running. Use POST to send messages."}

    return app


app = create_app()
