from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .api import prices, quotes, stream
from .config import Settings, get_settings
from .errors import StorageUnavailable
from .storage.sqlite import TimeSeriesStore
from .streaming.runner import FeedRunner


# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)

logger = logging.getLogger(__name__)


def create_app(settings: Settings | None = None, runner: FeedRunner | None = None) -> FastAPI:
    """
    Build the API application.

    Args:
        settings: Settings to use (loaded from env/.env when omitted)
        runner: Pre-built runner; tests pass one wired to fakes

    Returns:
        FastAPI app whose lifespan starts and stops the runner
    """
    settings = settings or get_settings()
    if runner is None:
        store = TimeSeriesStore(settings.sqlite_path, busy_timeout_ms=settings.sqlite_busy_timeout_ms)
        runner = FeedRunner(settings, store)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        """Lifespan context manager for startup/shutdown."""
        # Startup: initialize storage and start polling
        await runner.start()

        yield

        # Shutdown: stop polling gracefully and flush buffered ticks
        await runner.stop()

    app = FastAPI(
        title="Market Feed API",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.runner = runner

    @app.exception_handler(StorageUnavailable)
    async def storage_unavailable_handler(request: Request, exc: StorageUnavailable) -> JSONResponse:
        logger.error(f"Storage unavailable while serving {request.url.path}: {exc}")
        return JSONResponse(
            status_code=503,
            content={"error": "Storage unavailable", "message": str(exc)},
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(
            status_code=400,
            content={"error": "Invalid request", "details": jsonable_errors(exc)},
        )

    @app.get("/health")
    async def health() -> dict[str, Any]:
        return {
            "ok": True,
            "ts": int(time.time()),
            "poller": runner.poller.is_running,
            "subscriptions": len(runner.registry),
        }

    app.include_router(prices.router)
    app.include_router(quotes.router)
    app.include_router(stream.router)
    return app


def jsonable_errors(exc: RequestValidationError) -> list[dict[str, Any]]:
    """Validation errors reduced to location and message."""
    return [
        {"loc": [str(part) for part in err.get("loc", ())], "msg": str(err.get("msg", ""))}
        for err in exc.errors()
    ]


app = create_app()
