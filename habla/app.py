from __future__ import annotations

import asyncio
import contextlib
import json
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from habla.api.error_handling import rate_limited_response, register_exception_handlers
from habla.api.routes import TOO_MANY_ATTEMPTS, client_address, router
from habla.config import Settings
from habla.logging import get_logger, set_correlation_id
from habla.service.errors import RateLimitedError

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "1.0.0"

_sweep_task: asyncio.Task | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events."""
    global _sweep_task
    # Startup
    from habla.service.runtime import get_runtime

    try:
        runtime = get_runtime()
        await runtime.audit.start()
        _sweep_task = asyncio.create_task(
            _run_rate_limit_sweep(runtime, runtime.settings.rate_limit_sweep_seconds)
        )
    except Exception as exc:
        logger.error("startup_failed", error=str(exc))

    yield

    # Shutdown
    try:
        runtime = get_runtime()
        if _sweep_task:
            _sweep_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await _sweep_task
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Habla Tutor Backend", version=__version__, lifespan=lifespan)


app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_allow_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID", "Retry-After"],
    max_age=3600,
)


@app.middleware("http")
async def enforce_global_rate_limit(request: Request, call_next):
    """Cap requests per client address across every ``/api/`` route."""
    if not request.url.path.startswith("/api/") or request.method == "OPTIONS":
        return await call_next(request)
    from habla.service.runtime import get_runtime

    runtime = get_runtime()
    decision = await runtime.rate_limiter.check(
        f"global:{client_address(request)}",
        runtime.settings.rate_limit_max,
        runtime.settings.rate_limit_window_minutes * 60,
    )
    if not decision.allowed:
        return rate_limited_response(
            RateLimitedError(TOO_MANY_ATTEMPTS, retry_after=decision.retry_after)
        )
    return await call_next(request)


async def _read_json_body(request: Request) -> Any:
    if "application/json" not in request.headers.get("content-type", ""):
        return None
    raw = await request.body()
    if not raw:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        return None


@app.middleware("http")
async def record_http_audit(request: Request, call_next):
    """Record one audit event per request once the response is ready.

    The event is queued, never awaited, so persistence never delays or
    alters the response.
    """
    started = time.perf_counter()
    body = await _read_json_body(request)
    status_code = 500
    try:
        response = await call_next(request)
        status_code = response.status_code
        return response
    finally:
        try:
            from habla.service.runtime import get_runtime

            get_runtime().audit.http(
                method=request.method,
                path=request.url.path,
                status_code=status_code,
                response_time_ms=int((time.perf_counter() - started) * 1000),
                ip=client_address(request),
                user_agent=request.headers.get("user-agent"),
                user_id=getattr(request.state, "user_id", None),
                query=dict(request.query_params),
                params=dict(request.scope.get("path_params") or {}),
                body=body,
            )
        except Exception as exc:
            logger.warning("audit_http_record_failed", error=str(exc))


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("X-XSS-Protection", "0")
    response.headers.setdefault("Referrer-Policy", "no-referrer")
    response.headers.setdefault("Cross-Origin-Opener-Policy", "same-origin")
    response.headers.setdefault("Cross-Origin-Resource-Policy", "same-origin")
    if request.url.path.startswith("/api/"):
        response.headers.setdefault("Cache-Control", "no-store")
    if request.url.scheme == "https":
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=15552000; includeSubDomains"
        )
    response.headers.setdefault(
        "Content-Security-Policy", "default-src 'self'; frame-ancestors 'none'; base-uri 'self'"
    )
    return response


@app.middleware("http")
async def add_correlation_id(request: Request, call_next):
    """Bind a correlation id for the request and echo it as ``X-Request-ID``.

    A client supplied ``X-Request-ID`` is reused, otherwise a new UUID is
    generated. Registered last so it wraps every other middleware and their
    log lines carry the id.
    """
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


register_exception_handlers(app)
app.include_router(router)


HEALTH_CHECK_TIMEOUT_SECONDS = 3


@app.get("/health")
async def liveness() -> Dict[str, Any]:
    return {
        "status": "OK",
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@app.get("/api/health")
async def health() -> JSONResponse:
    """Dependency health check.

    Checks the database, Redis (when configured) and the workflow service.
    The database is required; Redis and the workflow service only degrade
    the report.
    """
    from habla.service.runtime import get_runtime

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

    runtime = get_runtime()
    if hasattr(runtime.store, "verify_connection"):
        db_ok = await _run_bounded("database", runtime.store.verify_connection)
        checks["database"] = {"status": "healthy" if db_ok else "unhealthy"}
    else:
        db_ok = True
        checks["database"] = {"status": "healthy", "type": "memory"}

    if runtime.cache is not None:
        redis_ok = await _run_bounded("redis", runtime.cache.verify_connection)
        checks["redis"] = {"status": "healthy" if redis_ok else "unhealthy", "degraded": not redis_ok}
    else:
        checks["redis"] = {"status": "not_configured"}

    if runtime.gateway.is_configured:
        gateway_result = await runtime.gateway.health_check()
        checks["gateway"] = {
            "status": gateway_result.data["status"],
            "error": gateway_result.error,
        }
    else:
        checks["gateway"] = {"status": "not_configured"}

    status = "healthy" if db_ok else "unhealthy"
    if status == "healthy" and any(
        check["status"] == "unhealthy" for check in checks.values()
    ):
        status = "degraded"
    payload = {
        "status": status,
        "checks": checks,
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    return JSONResponse(status_code=200 if db_ok else 503, content=payload)


async def _run_rate_limit_sweep(runtime, interval_seconds: int) -> None:
    """Background loop dropping idle rate-limit keys."""

    interval = max(interval_seconds, 1)
    try:
        while True:
            await asyncio.sleep(interval)
            try:
                removed = await runtime.rate_limiter.sweep()
                if removed:
                    logger.debug("rate_limit_sweep", removed=removed)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("rate_limit_sweep_failed", error=str(exc))
    except asyncio.CancelledError:
        logger.info("rate_limit_sweep_task_cancelled")


def create_app() -> FastAPI:
    return app
