from __future__ import annotations

import asyncio
import ipaddress
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any, Dict, List, Tuple

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from hostgate.api.error_handling import register_exception_handlers
from hostgate.api.routes import router
from hostgate.config import Settings, get_settings
from hostgate.logging import get_correlation_id, get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup and stop background sweeps on shutdown."""
    from hostgate.service.runtime import get_runtime

    try:
        runtime = get_runtime()
        await runtime.start_background()
    except Exception as exc:
        # A misconfigured gateway must not start serving
        logger.error("startup_failed", error=str(exc), error_type=type(exc).__name__)
        raise

    yield

    try:
        runtime = get_runtime()
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="hostgate", version=__version__, lifespan=lifespan)


def _error_json(status_code: int, code: str, message: str):
    return JSONResponse(
        status_code=status_code,
        content={
            "status": "error",
            "error": {"code": code, "message": message, "details": None},
            "request_id": get_correlation_id(),
        },
    )


# No configured origins means no browser origin is allowed. Origins are read
# once from the same cached settings the runtime is built from.
app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_allow_origins,
    allow_credentials=False,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=[
        "Content-Type",
        "Authorization",
        "X-Request-ID",
        "X-Content-Hash",
    ],
    expose_headers=["X-Request-ID"],
    max_age=3600,
)


_HEALTH_PATHS = {"/healthz", "/readyz"}


def _runtime_settings() -> Settings:
    from hostgate.service.runtime import get_runtime

    return get_runtime().settings


def _parse_allowlist(entries: List[str]) -> List[ipaddress.IPv4Network | ipaddress.IPv6Network]:
    networks = []
    for entry in entries:
        try:
            networks.append(ipaddress.ip_network(entry, strict=False))
        except ValueError:
            logger.error("ip_allowlist_entry_invalid", entry=entry)
    return networks


@lru_cache(maxsize=8)
def _allowed_networks(entries: Tuple[str, ...]) -> List[ipaddress.IPv4Network | ipaddress.IPv6Network]:
    return _parse_allowlist(list(entries))


def _ip_allowed(host: str | None, entries: List[str]) -> bool:
    networks = _allowed_networks(tuple(entries))
    if not networks:
        return True
    if not host:
        return False
    try:
        address = ipaddress.ip_address(host)
    except ValueError:
        return False
    return any(address in network for network in networks)


@app.middleware("http")
async def enforce_ip_allowlist(request: Request, call_next):
    if request.url.path in _HEALTH_PATHS:
        return await call_next(request)
    host = request.client.host if request.client else None
    if not _ip_allowed(host, _runtime_settings().ip_allowlist):
        logger.warning("ip_not_allowed", client_ip=host, path=request.url.path)
        return _error_json(403, "forbidden", "forbidden")
    return await call_next(request)


@app.middleware("http")
async def limit_body_size(request: Request, call_next):
    """Reject oversized bodies up front when the length is declared.

    Bodies without a declared length are capped again where they are read.
    """
    content_length = request.headers.get("content-length")
    if content_length is not None:
        try:
            declared = int(content_length)
        except ValueError:
            return _error_json(400, "validation_error", "invalid content-length")
        max_bytes = _runtime_settings().max_body_bytes
        if declared > max_bytes:
            logger.warning(
                "request_body_too_large",
                path=request.url.path,
                declared=declared,
                max_bytes=max_bytes,
            )
            return _error_json(413, "payload_too_large", "request body too large")
    return await call_next(request)


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "no-referrer")
    response.headers.setdefault("Cache-Control", "no-store")
    response.headers.setdefault(
        "Content-Security-Policy", "default-src 'none'; frame-ancestors 'none'"
    )
    if request.url.scheme == "https" and _runtime_settings().enable_hsts:
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    return response


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Bind a correlation id and client ip to every log line of the request.

    The id comes from ``X-Request-ID`` when supplied and is echoed back in
    the response header.
    """
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(
        client_ip=request.client.host if request.client else None
    )
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


register_exception_handlers(app)
app.include_router(router)


HEALTH_CHECK_TIMEOUT_SECONDS = 3


@app.get("/healthz")
async def health() -> Dict[str, Any]:
    """Liveness check; touches no backend and returns no tenant data."""
    return {
        "status": "ok",
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@app.get("/readyz")
async def ready():
    """Readiness check: the tenant store and the dedup cache must answer."""
    from hostgate.service.runtime import get_runtime

    async def _run_bounded(label: str, func) -> bool:
        try:
            await asyncio.wait_for(asyncio.to_thread(func), HEALTH_CHECK_TIMEOUT_SECONDS)
            return True
        except asyncio.TimeoutError:
            logger.error(
                "readiness_check_timeout", component=label, timeout=HEALTH_CHECK_TIMEOUT_SECONDS
            )
        except Exception as exc:
            logger.error("readiness_check_failed", component=label, error=str(exc))
        return False

    runtime = get_runtime()
    checks: Dict[str, Dict[str, Any]] = {}

    store_ok = await _run_bounded("store", runtime.store.verify_connection)
    checks["store"] = {"status": "ready" if store_ok else "unavailable", "backend": runtime.store.backend}

    dedup_ok = await _run_bounded("dedup", runtime.dedup.verify_connection)
    checks["dedup"] = {
        "status": "ready" if dedup_ok else "unavailable",
        "shared": runtime.cache is not None,
    }

    overall = store_ok and dedup_ok
    body = {
        "status": "ready" if overall else "not_ready",
        "checks": checks,
        "version": __version__,
    }
    return JSONResponse(status_code=200 if overall else 503, content=body)


__all__ = ["app"]


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="127.0.0.1", port=8000)
