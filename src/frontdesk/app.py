"""FastAPI application factory with lifespan management."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from . import __version__
from .config import AppConfig, load_config
from .db import ThreadSafeConnection, init_db
from .errors import NotFoundError, StaleToolCallError, StorageError, ValidationError
from .models import HealthResponse
from .services.ai_service import AIService
from .services.conversation import ConversationRegistry
from .services.event_bus import EventBus
from .services.schedule_bridge import ScheduleBridge
from .services.scheduler import TaskScheduler
from .services.tool_executor import ToolExecutor
from .tools import ToolRegistry, register_default_tools

logger = logging.getLogger(__name__)


def build_registry(
    config: AppConfig,
    db: ThreadSafeConnection,
    event_bus: EventBus,
    ai_service: AIService | None = None,
) -> tuple[ConversationRegistry, TaskScheduler]:
    """Wire tools, scheduler and conversation registry around one database."""
    tool_registry = ToolRegistry(requires_confirmation=config.tools.requires_confirmation)
    register_default_tools(tool_registry, disabled=config.tools.disabled)
    executor = ToolExecutor(tool_registry, timeout=config.chat.tool_timeout)

    scheduler = TaskScheduler(db)
    registry = ConversationRegistry(
        db,
        ai_service or AIService(config.ai),
        executor,
        max_steps=config.chat.max_steps,
        event_bus=event_bus,
        scheduler=scheduler,
    )
    scheduler.set_callback(ScheduleBridge(registry).on_scheduled_task_fired)
    return registry, scheduler


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    config: AppConfig = app.state.config
    if getattr(app.state, "db", None) is None:
        app.state.db = init_db(config.app.data_dir / "frontdesk.db")
    app.state.event_bus = EventBus()
    registry, scheduler = build_registry(
        config, app.state.db, app.state.event_bus, getattr(app.state, "ai_service", None)
    )
    app.state.registry = registry
    app.state.scheduler = scheduler
    scheduler.start()

    logger.info(
        "Frontdesk started (model %s, %d tool(s) need confirmation)",
        config.ai.model,
        len(config.tools.requires_confirmation),
    )

    yield

    await scheduler.stop()
    await registry.close()
    app.state.db.close()


def _register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(ValidationError)
    async def _validation(request: Request, exc: ValidationError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(NotFoundError)
    async def _not_found(request: Request, exc: NotFoundError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(StaleToolCallError)
    async def _stale(request: Request, exc: StaleToolCallError) -> JSONResponse:
        return JSONResponse(status_code=409, content={"detail": str(exc), "tool_call_id": exc.tool_call_id})

    @app.exception_handler(StorageError)
    async def _storage(request: Request, exc: StorageError) -> JSONResponse:
        logger.error("Storage error on %s %s: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=500, content={"detail": "Storage error; the operation was not applied"})


def create_app(
    config: AppConfig | None = None,
    *,
    db: ThreadSafeConnection | None = None,
    ai_service: AIService | None = None,
) -> FastAPI:
    if config is None:
        config = load_config()

    app = FastAPI(title="Frontdesk", version=__version__, lifespan=lifespan)
    app.state.config = config
    app.state.db = db
    app.state.ai_service = ai_service

    origin = f"http://{config.app.host}:{config.app.port}"
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[origin, "http://127.0.0.1:" + str(config.app.port), "http://localhost:" + str(config.app.port)],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    _register_error_handlers(app)

    from .routers import chat, conversations, events

    app.include_router(conversations.router, prefix="/api")
    app.include_router(chat.router, prefix="/api")
    app.include_router(events.router, prefix="/api")

    @app.get("/api/health", response_model=HealthResponse)
    async def health():
        configured = bool(config.ai.api_key)
        return HealthResponse(
            status="ok" if configured else "degraded",
            api_key_configured=configured,
            model=config.ai.model,
        )

    return app
