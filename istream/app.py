from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict
from urllib.parse import urlparse

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse

from istream.api.error_handling import register_exception_handlers
from istream.api.routes import router
from istream.config import Settings
from istream.logging import get_logger, set_correlation_id
from istream.service.errors import NotFoundError

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 5.0

MEDIA_PATH = urlparse(_settings.media_base_url).path.rstrip("/") or "/media"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup and release the store pool on shutdown."""
    from istream.service.runtime import get_runtime

    runtime = get_runtime()
    logger.info("app_started", version=__version__)

    yield

    try:
        runtime.close()
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="iStream API", version=__version__, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[_settings.cors_origin],
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request: Request, call_next):
    """Tag every request with a correlation id.

    A client supplied ``X-Request-ID`` is reused, otherwise a new UUID is
    generated. The id is bound for structured logging and echoed back.
    """
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/health")
async def health() -> Dict[str, Any]:
    """Report store and media filesystem reachability."""
    from istream.service.runtime import get_runtime

    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}

    async def _run_bounded(label: str, func) -> bool:
        try:
            await asyncio.wait_for(asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS)
            return True
        except asyncio.TimeoutError:
            logger.error(
                "health_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS
            )
        except Exception as exc:
            logger.error("health_check_failed", component=label, error=str(exc))
        return False

    verify = getattr(runtime.store, "verify_connection", None)
    if verify:
        db_ok = await _run_bounded("database", verify)
        checks["database"] = {"status": "healthy" if db_ok else "unhealthy"}
    else:
        db_ok = True
        checks["database"] = {"status": "healthy", "type": "memory"}

    media_root = Path(runtime.media.root)

    def _fs_check() -> None:
        if not media_root.is_dir():
            raise FileNotFoundError(media_root)

    fs_ok = await _run_bounded("filesystem", _fs_check)
    checks["filesystem"] = {"status": "healthy" if fs_ok else "unhealthy"}

    return {
        "status": "healthy" if db_ok and fs_ok else "unhealthy",
        "checks": checks,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@app.get(MEDIA_PATH + "/{ref:path}", response_class=FileResponse, include_in_schema=False)
async def serve_media(ref: str) -> FileResponse:
    """Serve stored avatars, cover images, thumbnails and videos at their public URL."""
    from istream.service.runtime import get_runtime

    try:
        path = get_runtime().media.resolve(ref)
    except (FileNotFoundError, ValueError) as exc:
        raise NotFoundError("media not found") from exc
    return FileResponse(path)


def create_app() -> FastAPI:
    return app
