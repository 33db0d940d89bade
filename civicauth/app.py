from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from civicauth.api.error_handling import register_exception_handlers
from civicauth.api.routes import router
from civicauth.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime and start the expiry sweep; stop both on shutdown.

    A misconfigured signing secret raises here and aborts startup.
    """
    from civicauth.service.runtime import get_runtime

    runtime = get_runtime()
    runtime.cleanup.start()
    yield
    try:
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="CivicAuth", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Bind the X-Request-ID header (or a fresh id) to every log line of the request."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "no-referrer")
    # Token-bearing responses must never be cached by proxies
    if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store")
    return response


register_exception_handlers(app)
app.include_router(router)

HEALTH_CHECK_TIMEOUT_SECONDS = 3


@app.get("/healthz")
async def health() -> Any:
    """Report durable and ephemeral store reachability plus scheduler state."""
    from civicauth.service.runtime import get_runtime
    from civicauth.storage.redis_cache import RedisCache

    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}
    healthy = True

    try:
        await asyncio.wait_for(
            asyncio.to_thread(runtime.store.verify_connection),
            timeout=HEALTH_CHECK_TIMEOUT_SECONDS,
        )
        checks["database"] = {"status": "healthy"}
    except Exception as exc:
        healthy = False
        logger.warning("health_check_database_failed", error=str(exc))
        checks["database"] = {"status": "unhealthy", "error": type(exc).__name__}

    if isinstance(runtime.cache, RedisCache):
        try:
            await asyncio.wait_for(
                asyncio.to_thread(runtime.cache.verify_connection),
                timeout=HEALTH_CHECK_TIMEOUT_SECONDS,
            )
            checks["redis"] = {"status": "healthy"}
        except Exception as exc:
            healthy = False
            logger.warning("health_check_redis_failed", error=str(exc))
            checks["redis"] = {"status": "unhealthy", "error": type(exc).__name__}
    else:
        checks["redis"] = {"status": "disabled"}

    checks["cleanup"] = {
        "running": runtime.cleanup.running,
        "runs": runtime.cleanup.runs,
        "failures": runtime.cleanup.failures,
    }
    body = {
        "status": "healthy" if healthy else "unhealthy",
        "version": __version__,
        "checks": checks,
    }
    return JSONResponse(status_code=200 if healthy else 503, content=body)
