"""FastAPI application entry point."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from agentchat import __version__
from agentchat.config import AppConfig, load_config
from agentchat.errors import INTERNAL_ERROR, AgentChatError
from agentchat.server.routes import router
from agentchat.session.agent import ClientFactory
from agentchat.session.manager import SessionManager
from agentchat.session.store import SessionStore
from agentchat.tools.builtin import build_registry

logger = logging.getLogger(__name__)


async def build_manager(
    config: AppConfig, client_factory: ClientFactory | None = None
) -> SessionManager:
    """Open the store and wire the tool registry into a ``SessionManager``."""
    store = SessionStore(config.session.db_path)
    await store.init()
    registry = build_registry(
        config.tools.builtin,
        config.tools.disabled,
        plugins_enabled=config.tools.plugins_enabled,
        timeout=config.chat.tool_timeout_seconds,
    )
    return SessionManager(store, registry, config, client_factory=client_factory)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Open the session store on startup; close agents and store on shutdown."""
    owned = getattr(app.state, "sessions", None) is None
    if owned:
        app.state.sessions = await build_manager(app.state.config)
    logger.info("agentchat %s starting", __version__)

    yield

    logger.info("agentchat stopping")
    if owned:
        manager: SessionManager = app.state.sessions
        await manager.aclose()
        await manager.store.close()


def create_app(
    config: AppConfig | None = None,
    *,
    manager: SessionManager | None = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Pass *manager* to reuse an already-initialised session manager (tests,
    embedding); otherwise the lifespan builds one from *config*.
    """
    app = FastAPI(
        title="agentchat",
        description="Per-session chat agents over an OpenAI-compatible API",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.config = config or load_config()
    app.state.sessions = manager

    register_exception_handlers(app)
    app.include_router(router, prefix="/api")
    return app


def register_exception_handlers(app: FastAPI) -> None:
    """Map errors onto ``{success: false, error}`` bodies."""

    @app.exception_handler(AgentChatError)
    async def agentchat_error_handler(request: Request, exc: AgentChatError) -> JSONResponse:
        _ = request
        if exc.status_code >= 500:
            logger.error("Request failed: %s %s", exc.message, exc.details)
        return JSONResponse(
            status_code=exc.status_code,
            content={"success": False, "error": exc.message},
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_error_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        _ = request
        return JSONResponse(
            status_code=400,
            content={"success": False, "error": "Request validation failed"},
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        _ = request
        return JSONResponse(
            status_code=exc.status_code,
            content={"success": False, "error": str(exc.detail)},
        )

    @app.exception_handler(Exception)
    async def generic_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unexpected error on %s %s", request.method, request.url.path)
        return JSONResponse(
            status_code=500,
            content={"success": False, "error": INTERNAL_ERROR},
        )
