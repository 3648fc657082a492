from __future__ import annotations

from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from flamingo.api.error_handling import register_exception_handlers
from flamingo.api.routes import router
from flamingo.config import Settings, get_settings
from flamingo.logging import get_logger, set_correlation_id
from flamingo.service.runtime import Runtime

logger = get_logger(__name__)

__version__ = "0.1.0"

_DEFAULT_DEV_ORIGINS = [
    "http://localhost",
    "http://localhost:3000",
    "http://localhost:5173",
    "http://127.0.0.1:3000",
    "http://127.0.0.1:5173",
]


def _allowed_origins(settings: Settings) -> List[str]:
    # avoid a wildcard while credentials are allowed
    return settings.cors_allow_origins or list(_DEFAULT_DEV_ORIGINS)


@asynccontextmanager
async def lifespan(app: FastAPI):
    runtime: Runtime = app.state.runtime
    await runtime.start()
    logger.info("app_started", version=__version__)
    try:
        yield
    finally:
        await runtime.close()
        logger.info("app_stopped")


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Build the FastAPI application around a fresh Runtime.

    Run with ``uvicorn flamingo.app:create_app --factory``.
    """
    settings = settings or get_settings()
    app = FastAPI(title="Flamingo API", version=__version__, lifespan=lifespan)
    app.state.runtime = Runtime(settings)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=_allowed_origins(settings),
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
        expose_headers=["X-Request-ID"],
        max_age=3600,
    )

    @app.middleware("http")
    async def add_correlation_id(request, call_next):
        """Tag logs with ``X-Request-ID`` (or a fresh uuid) and echo it back."""
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    @app.middleware("http")
    async def add_security_headers(request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        if request.url.path.startswith("/api/"):
            response.headers.setdefault(
                "Cache-Control", "no-store, no-cache, must-revalidate, private"
            )
        return response

    register_exception_handlers(app)
    app.include_router(router)

    @app.get("/health")
    async def health() -> dict:
        return {"status": "ok"}

    return app
