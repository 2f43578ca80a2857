from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import Any, Dict, List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from bastion.api.error_handling import register_exception_handlers
from bastion.api.routes import REQUIRED_PERMISSIONS, router
from bastion.config import get_settings
from bastion.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"

HEALTH_CHECK_TIMEOUT_SECONDS = 2.0


@asynccontextmanager
async def lifespan(app: FastAPI):
    from bastion.service.runtime import get_runtime

    runtime = get_runtime()
    # Every permission a route guards on must exist in the registry
    runtime.rbac.validate_permission_names(REQUIRED_PERMISSIONS)
    logger.info("startup_permissions_validated", count=len(REQUIRED_PERMISSIONS))

    yield

    try:
        if runtime.cache is not None:
            await runtime.cache.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="Bastion", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    configured = get_settings().cors_origins()
    if configured:
        return configured
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
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-MFA-Code", "X-Request-ID"],
    expose_headers=["X-Request-ID", "Retry-After"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Bind a correlation id for the request's log lines.

    Taken from ``X-Request-ID`` when the client sends one, otherwise
    generated; echoed back in the same header.
    """
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
    if request.url.path.startswith("/v1/"):
        response.headers.setdefault("Cache-Control", "no-store")
    if request.url.scheme == "https" and get_settings().enable_hsts:
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
async def health():
    """Liveness plus dependency checks (Redis when configured, role catalog)."""
    from bastion.service.runtime import get_runtime

    checks: Dict[str, Dict[str, Any]] = {}
    healthy = True
    runtime = get_runtime()

    if runtime.settings.use_redis:
        if runtime.cache is None:
            checks["redis"] = {"status": "fallback", "detail": "per-process counters"}
        else:
            try:
                await asyncio.wait_for(runtime.cache.client.ping(), HEALTH_CHECK_TIMEOUT_SECONDS)
                checks["redis"] = {"status": "ok"}
            except Exception as exc:
                logger.error("health_check_redis_failed", error=str(exc))
                checks["redis"] = {"status": "error"}
                healthy = False

    role_count = len(runtime.store.list_roles())
    checks["role_catalog"] = {"status": "ok" if role_count else "error", "roles": role_count}
    healthy = healthy and role_count > 0
    checks["audit"] = {
        "status": "ok",
        "buffered": len(runtime.audit_log),
        "dropped": runtime.audit.dropped_events,
    }

    payload = {"status": "healthy" if healthy else "unhealthy", "version": __version__, "checks": checks}
    return JSONResponse(status_code=200 if healthy else 503, content=payload)
