from __future__ import annotations

from contextlib import asynccontextmanager
from typing import List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from portalcore.api.error_handling import register_exception_handlers
from portalcore.api.routes import router
from portalcore.config import get_settings
from portalcore.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    from portalcore.service.runtime import get_runtime

    runtime = get_runtime()
    removed = await runtime.auth.cleanup_expired_sessions()
    logger.info("startup_complete", expired_sessions_removed=removed)

    yield

    try:
        await get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


def _allowed_origins() -> List[str]:
    settings = get_settings()
    if settings.cors_allow_origins:
        return settings.cors_allow_origins
    return [settings.frontend_url.rstrip("/")]


app = FastAPI(title="Portal Core", version=__version__, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag every log line of a request with X-Request-ID (client supplied or generated)."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz", tags=["health"])
async def healthz():
    from portalcore.service.runtime import get_runtime

    runtime = get_runtime()
    redis_ok = None
    if runtime.cache is not None:
        try:
            redis_ok = await runtime.cache.ping()
        except Exception as exc:
            logger.warning("healthz_redis_failed", error=str(exc))
            redis_ok = False
    status = "ok" if redis_ok is not False else "degraded"
    return {"status": status, "version": __version__, "redis": redis_ok}
