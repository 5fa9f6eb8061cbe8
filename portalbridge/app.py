from __future__ import annotations

import asyncio
import contextlib
import hmac
from contextlib import asynccontextmanager
from typing import Any, Dict, List

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from portalbridge.api.error_handling import error_response, register_exception_handlers
from portalbridge.api.routes import SERVER_VERSION, router
from portalbridge.config import Settings, get_settings
from portalbridge.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = SERVER_VERSION

HEALTH_CHECK_TIMEOUT_SECONDS = 2.0
CACHE_PURGE_INTERVAL_SECONDS = 3600

_OPEN_PATHS = {"/healthz"}

_purge_task: asyncio.Task | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events."""
    global _purge_task
    from portalbridge.service.runtime import get_runtime

    try:
        runtime = get_runtime()
        if hasattr(runtime.store, "purge_expired_cache"):
            _purge_task = asyncio.create_task(
                _run_cache_purge(runtime.store, CACHE_PURGE_INTERVAL_SECONDS)
            )
    except Exception as exc:
        logger.error("startup_failed", error=str(exc))

    yield

    try:
        runtime = get_runtime()
        if _purge_task:
            _purge_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await _purge_task
        await runtime.aclose()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Portal Bridge", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    return ["http://localhost", "http://127.0.0.1"]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=False,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-API-Key", "X-Request-ID"],
    expose_headers=["X-Request-ID"],
    max_age=3600,
)


def _presented_key(request: Request) -> str | None:
    header_key = request.headers.get("X-API-Key")
    if header_key:
        return header_key
    authorization = request.headers.get("Authorization", "")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() == "bearer" and token:
        return token.strip()
    return None


@app.middleware("http")
async def require_api_key(request: Request, call_next):
    """Reject requests without the shared key, only when MCP_API_KEY is set."""
    expected = get_settings().api_key
    if not expected or request.url.path in _OPEN_PATHS or request.method == "OPTIONS":
        return await call_next(request)
    presented = _presented_key(request)
    if not presented or not hmac.compare_digest(presented.encode(), expected.encode()):
        logger.warning("api_key_rejected", path=request.url.path, method=request.method)
        return error_response(401, "missing or invalid API key", code="unauthorized")
    return await call_next(request)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag each request with a correlation ID taken from X-Request-ID or generated.

    The ID is bound for structured logging and echoed back in the
    X-Request-ID response header.
    """
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Health check: backing store reachability plus version info."""
    from portalbridge.service.runtime import get_runtime

    runtime = get_runtime()
    store_type = "memory" if runtime.settings.use_memory_store else "redis"
    try:
        await asyncio.wait_for(runtime.store.verify_connection(), HEALTH_CHECK_TIMEOUT_SECONDS)
        store_ok = True
    except asyncio.TimeoutError:
        logger.error("health_check_timeout", component="store", timeout=HEALTH_CHECK_TIMEOUT_SECONDS)
        store_ok = False
    except Exception as exc:
        logger.error("health_check_store_failed", error=str(exc))
        store_ok = False

    return {
        "status": "healthy" if store_ok else "degraded",
        "version": __version__,
        "checks": {"store": {"status": "healthy" if store_ok else "unhealthy", "type": store_type}},
    }


async def _run_cache_purge(store, interval_seconds: int) -> None:
    """Background loop sweeping expired cache entries from the in-process store."""
    interval = max(interval_seconds, 60)
    try:
        while True:
            try:
                purged = await store.purge_expired_cache()
                if purged:
                    logger.info("cache_purged", entries=purged)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("cache_purge_failed", error=str(exc))
            await asyncio.sleep(interval)
    except asyncio.CancelledError:
        logger.info("cache_purge_task_cancelled")


def main() -> None:
    import uvicorn

    settings = get_settings()
    uvicorn.run(app, host=settings.http_host, port=settings.http_port, log_config=None)


if __name__ == "__main__":
    main()
