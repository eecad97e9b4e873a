from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from gemvault.api.error_handling import register_exception_handlers
from gemvault.api.routes import router
from gemvault.config import Settings
from gemvault.logging import get_logger, set_correlation_id
from gemvault.service.audit import set_request_origin

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"
__build__ = _settings.build_sha


_purge_task: asyncio.Task | None = None


async def _run_token_purge(verification, interval_seconds: int) -> None:
    """Background loop deleting expired verification tokens."""

    interval = max(interval_seconds, 60)
    try:
        while True:
            try:
                await asyncio.to_thread(verification.purge_expired)
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # pragma: no cover - best-effort cleanup
                logger.warning("verification_token_purge_failed", error=str(exc))
            await asyncio.sleep(interval)
    except asyncio.CancelledError:
        logger.info("verification_token_purge_cancelled")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the runtime and the token purge loop; tear both down on shutdown."""
    global _purge_task
    from gemvault.service.runtime import get_runtime

    runtime = get_runtime()
    _purge_task = asyncio.create_task(
        _run_token_purge(runtime.verification, runtime.settings.token_cleanup_interval_seconds)
    )

    yield

    try:
        if _purge_task:
            _purge_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await _purge_task
            _purge_task = None
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="GemVault Identity", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    # local dev hosts only; never a wildcard
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=_settings.cors_allow_credentials,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=[
        "X-Request-ID",
        "API-Version",
        "X-RateLimit-Limit",
        "X-RateLimit-Remaining",
        "X-RateLimit-Reset",
        "Retry-After",
        "X-Total-Count",
    ],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Bind a correlation ID for structured logs and echo it as X-Request-ID.

    A client-supplied X-Request-ID is reused; otherwise a new UUID is generated.
    """
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def bind_request_origin(request, call_next):
    """Record client address and user agent for the audit trail."""
    set_request_origin(
        request.client.host if request.client else None,
        request.headers.get("User-Agent"),
    )
    return await call_next(request)


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    # tokens and profiles must never land in a shared cache
    if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    response.headers.setdefault(
        "Permissions-Policy", "camera=(), microphone=(), geolocation=(), payment=()"
    )
    if request.url.scheme == "https" and _settings.enable_hsts:
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    response.headers.setdefault(
        "Content-Security-Policy", "default-src 'none'; frame-ancestors 'none'"
    )
    return response


@app.middleware("http")
async def add_api_version_header(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("API-Version", __version__)
    return response


register_exception_handlers(app)
app.include_router(router)


HEALTH_CHECK_TIMEOUT_SECONDS = 3


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Health check with bounded database and Redis checks plus build info."""
    from gemvault.service.runtime import get_runtime

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
            logger.error(f"health_check_{label}_failed", error=str(exc))
        return False

    runtime = get_runtime()
    db_ok = await _run_bounded("database", runtime.store.verify_connection)
    checks["database"] = {
        "status": "healthy" if db_ok else "unhealthy",
        "type": "memory" if runtime.settings.use_memory_store else "postgres",
    }

    redis_ok = True
    if runtime.cache is not None:
        redis_ok = await _run_bounded("redis", runtime.cache.verify_connection)
        checks["redis"] = {"status": "healthy" if redis_ok else "unhealthy"}
    else:
        checks["redis"] = {"status": "not_configured"}

    return {
        "status": "healthy" if db_ok and redis_ok else "unhealthy",
        "checks": checks,
        "version": __version__,
        "build": __build__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


def create_app() -> FastAPI:
    return app
