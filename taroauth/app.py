from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI

from taroauth.api.error_handling import register_exception_handlers
from taroauth.api.routes import router
from taroauth.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    from taroauth.service.runtime import get_runtime

    runtime = get_runtime()
    await runtime.start()
    logger.info("startup_complete", sweep_interval=runtime.settings.session_sweep_interval_seconds)

    yield

    try:
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Taro Auth", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Bind a correlation ID (client-supplied X-Request-ID or a new UUID) and echo it."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    if request.url.path.startswith("/api/"):
        response.headers.setdefault("Cache-Control", "no-store")
    return response


@app.get("/healthz", tags=["health"])
async def healthz():
    return {"status": "ok", "version": __version__}


register_exception_handlers(app)
app.include_router(router)
