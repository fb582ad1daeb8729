from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from couponauth.api.error_handling import register_exception_handlers, service_error_response
from couponauth.api.routes import router
from couponauth.config import Settings
from couponauth.logging import get_logger, set_correlation_id
from couponauth.service.errors import RateLimitedError
from couponauth.service.rate_limit import (
    AUTH_PATH_PREFIX,
    Rejected,
    classify_path,
    resolve_client_address,
)

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"
__build__ = _settings.build_sha

# Health checks must stay reachable while a client is throttled
_RATE_LIMIT_EXEMPT_PATHS = frozenset({"/healthz", "/metrics"})

_cleanup_task: asyncio.Task | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup builds the runtime and schedules registry cleanup; shutdown closes the cache."""
    global _cleanup_task
    from couponauth.service.runtime import get_runtime

    try:
        runtime = get_runtime()
        _cleanup_task = asyncio.create_task(
            _run_registry_cleanup(runtime, runtime.settings.registry_cleanup_interval_seconds)
        )
    except Exception as exc:
        logger.error("startup_failed", error=str(exc))

    yield

    try:
        runtime = get_runtime()
        if _cleanup_task:
            _cleanup_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await _cleanup_task
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Coupon Auth", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
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
    allow_credentials=False,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=[
        "X-Request-ID",
        "X-RateLimit-Limit",
        "X-RateLimit-Remaining",
        "X-RateLimit-Retry-After-Seconds",
    ],
    max_age=3600,
)


def _rate_limited_response(decision: Rejected) -> JSONResponse:
    # Middleware responses bypass the registered exception handlers
    response = service_error_response(
        RateLimitedError(decision.retry_after_seconds, limit=decision.limit)
    )
    decision.apply_headers(response)
    return response


@app.middleware("http")
async def enforce_rate_limit(request: Request, call_next):
    """Debit the caller's bucket before the request reaches any handler.

    Auth endpoints and everything else draw from separate buckets so that
    credential guessing cannot starve normal API use and vice versa.
    """
    path = request.url.path
    if request.method.upper() == "OPTIONS" or path in _RATE_LIMIT_EXEMPT_PATHS:
        return await call_next(request)

    from couponauth.service.runtime import get_runtime

    runtime = get_runtime()
    client_address = resolve_client_address(
        request.headers.get("X-Forwarded-For"),
        request.client.host if request.client else None,
        trust_proxy_headers=runtime.settings.trust_proxy_headers,
    )
    decision = await runtime.rate_limiter.check_and_consume(
        client_address, classify_path(path, AUTH_PATH_PREFIX)
    )
    if isinstance(decision, Rejected):
        return _rate_limited_response(decision)
    response = await call_next(request)
    decision.apply_headers(response)
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    # Tokens travel in these bodies; keep them out of shared caches
    if request.url.path.startswith("/api/") or request.url.path in _RATE_LIMIT_EXEMPT_PATHS:
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    if request.url.scheme == "https" and _settings.enable_hsts:
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    return response


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Bind a correlation ID for structured logging and echo it as X-Request-ID.

    Registered last so it wraps every other middleware, including the
    rate-limit gate, and rejected requests still carry the header.
    """
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


register_exception_handlers(app)
app.include_router(router)


HEALTH_CHECK_TIMEOUT_SECONDS = 3


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Liveness plus a bounded ping of the shared cache."""
    from couponauth.service.runtime import get_runtime

    checks: Dict[str, Dict[str, Any]] = {}
    runtime = get_runtime()

    try:
        await asyncio.wait_for(
            asyncio.to_thread(runtime.cache.verify_connection), HEALTH_CHECK_TIMEOUT_SECONDS
        )
        cache_ok = True
    except asyncio.TimeoutError:
        logger.error("health_check_timeout", component="cache", timeout=HEALTH_CHECK_TIMEOUT_SECONDS)
        cache_ok = False
    except Exception as exc:
        logger.error("health_check_cache_failed", error=str(exc))
        cache_ok = False
    checks["cache"] = {
        "status": "healthy" if cache_ok else "unhealthy",
        "backend": runtime.cache.backend,
    }

    return {
        "status": "healthy" if cache_ok else "unhealthy",
        "checks": checks,
        "version": __version__,
        "build": __build__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@app.get("/metrics", response_class=Response)
async def metrics() -> Response:
    """Prometheus-compatible metrics endpoint."""
    from couponauth.service.runtime import get_runtime

    lines = []
    lines.append("# HELP couponauth_info Application version info")
    lines.append("# TYPE couponauth_info gauge")
    lines.append(f'couponauth_info{{version="{__version__}",build="{__build__}"}} 1')

    try:
        runtime = get_runtime()
        shared = 1 if runtime.cache.backend == "redis" else 0
        lines.append("# HELP couponauth_cache_shared Whether auth state lives in Redis")
        lines.append("# TYPE couponauth_cache_shared gauge")
        lines.append(f"couponauth_cache_shared {shared}")
        lines.extend(runtime.metrics.render())
    except Exception as exc:
        logger.error("metrics_collection_failed", error=str(exc))

    return Response(content="\n".join(lines) + "\n", media_type="text/plain")


async def _run_registry_cleanup(runtime, interval_seconds: int) -> None:
    """Background loop that drops expired refresh tokens and idle buckets."""
    interval = max(interval_seconds, 1)
    try:
        while True:
            await asyncio.sleep(interval)
            try:
                await runtime.cleanup_expired()
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # pragma: no cover - best-effort cleanup
                logger.warning("registry_cleanup_failed", error=str(exc))
    except asyncio.CancelledError:
        logger.info("registry_cleanup_task_cancelled")


def create_app() -> FastAPI:
    return app
