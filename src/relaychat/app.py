"""Application factory for the relay service."""

from __future__ import annotations

import logging
import math
import os
from contextlib import asynccontextmanager
from pathlib import Path

import httpx
from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .config import PROJECT_ROOT, Settings, get_settings
from .errors import RelayChatError, UpstreamError
from .logging_handlers import DateStampedFileHandler, cleanup_old_logs
from .logging_settings import parse_logging_settings
from .providers import UpstreamCompletionClient
from .relay.cors import RelayCORSMiddleware
from .relay.service import RelayService
from .routers.relay import router as relay_router

logger = logging.getLogger(__name__)

_LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
_LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"


def _configure_logging() -> None:
    """Configure logging from LOG_LEVEL/LOG_FILE/LOG_DIR and logging_settings.conf."""
    # Load .env file first to ensure LOG_* variables are available
    load_dotenv()

    log_level_str = os.getenv("LOG_LEVEL", "INFO").upper()
    log_level = getattr(logging, log_level_str, logging.INFO)
    file_settings = parse_logging_settings(PROJECT_ROOT / "logging_settings.conf")
    formatter = logging.Formatter(_LOG_FORMAT, datefmt=_LOG_DATEFMT)

    handlers: list[logging.Handler] = []

    log_file = os.getenv("LOG_FILE")
    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path, encoding="utf-8")
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    log_dir = os.getenv("LOG_DIR")
    if log_dir:
        stamped_handler = DateStampedFileHandler(log_dir)
        stamped_handler.setFormatter(formatter)
        handlers.append(stamped_handler)

    if file_settings.terminal_level is not None:
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(formatter)
        console_handler.setLevel(file_settings.terminal_level)
        handlers.append(console_handler)

    logging.basicConfig(
        level=log_level,
        handlers=handlers or [logging.NullHandler()],
        force=True,  # Override any existing configuration
    )

    relay_logger = logging.getLogger("relaychat")
    if file_settings.relay_level is None:
        relay_logger.disabled = True
    else:
        relay_logger.setLevel(min(log_level, file_settings.relay_level))

    logging.getLogger("uvicorn").setLevel(log_level)
    logging.getLogger("uvicorn.access").setLevel(log_level)
    logging.getLogger("uvicorn.error").setLevel(log_level)

    # httpx logs every request line at INFO
    if log_level > logging.DEBUG:
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)

    if log_dir:
        cleanup_old_logs([log_dir], file_settings.retention_hours, logger=logger)


def _register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(RelayChatError)
    async def handle_relay_error(request: Request, exc: RelayChatError) -> JSONResponse:
        headers: dict[str, str] = {}
        if isinstance(exc, UpstreamError) and exc.estimated_time is not None:
            headers["Retry-After"] = str(max(1, math.ceil(exc.estimated_time)))
        logger.info(
            "%s %s failed with %d: %s",
            request.method,
            request.url.path,
            exc.status_code,
            exc.message,
        )
        return JSONResponse(exc.to_payload(), status_code=exc.status_code, headers=headers)

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_error(
        request: Request, exc: StarletteHTTPException
    ) -> JSONResponse:
        if exc.status_code == 405:
            message = "Method not allowed"
        else:
            message = str(exc.detail)
        return JSONResponse(
            {"error": message},
            status_code=exc.status_code,
            headers=getattr(exc, "headers", None),
        )


def create_app(
    settings: Settings | None = None,
    *,
    http_client: httpx.AsyncClient | None = None,
) -> FastAPI:
    # Configure logging first thing
    _configure_logging()

    settings = settings or get_settings()
    upstream = UpstreamCompletionClient(settings, http_client=http_client)
    relay_service = RelayService(settings, upstream, http_client=http_client)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configured = relay_service.configured_providers()
        logger.info(
            "Relay ready; credentials configured for: %s",
            ", ".join(name for name, ok in configured.items() if ok) or "none",
        )
        try:
            yield
        finally:
            await UpstreamCompletionClient.aclose_shared()

    app = FastAPI(
        title="Chat Completion Relay",
        version="0.1.0",
        description="Credential-holding relay that re-streams chat completions.",
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.relay_service = relay_service

    app.add_middleware(
        RelayCORSMiddleware,
        allowed_origins=settings.cors_allowed_origins,
    )
    _register_error_handlers(app)
    app.include_router(relay_router)

    @app.get("/health", tags=["health"])
    async def healthcheck() -> dict[str, object]:
        return {
            "status": "ok",
            "default_provider": settings.default_provider,
            "providers": relay_service.configured_providers(),
        }

    return app


__all__ = ["create_app"]
