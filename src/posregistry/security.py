"""
posregistry.security — HTTP plumbing shared by every route.

JSON logs tagged with the caller's request id, one request middleware
(request id, body size cap, access log, hardening headers), CORS, slowapi
rate limits, and the handlers that turn every failure into
``{"error": {"kind", "message", "details?"}}``.

5xx responses carry only "Internal server error"; the detail goes to the log.
"""

import logging
import time
import uuid
from contextvars import ContextVar
from typing import Optional, Sequence

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from pythonjsonlogger.json import JsonFormatter
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

from posregistry.errors import (
    InternalError, PayloadTooLarge, RateLimited, RegistryError, ValidationError,
)

__all__ = [
    "logger",
    "limiter",
    "configure_logging",
    "RequestContextMiddleware",
    "registry_error_handler",
    "apply_security",
]

LOGGER_NAME = "posregistry"
MAX_BODY_BYTES = 64 * 1024
REQUEST_ID_HEADER = "X-Request-ID"

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "no-referrer",
    "Strict-Transport-Security": "max-age=63072000; includeSubDomains",
}

current_request_id: ContextVar[str] = ContextVar("current_request_id", default="-")


# ─── Logging ──────────────────────────────────────────────────────

class _RequestIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = current_request_id.get()
        return True


def configure_logging(level: str = "INFO") -> logging.Logger:
    """JSON logs on stderr for the ``posregistry`` logger tree. Safe to call twice."""
    log = logging.getLogger(LOGGER_NAME)
    log.setLevel(getattr(logging, level.upper(), logging.INFO))
    if not any(isinstance(h.formatter, JsonFormatter) for h in log.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(request_id)s %(message)s",
            rename_fields={"asctime": "ts", "levelname": "level", "name": "logger"},
        ))
        handler.addFilter(_RequestIdFilter())
        log.addHandler(handler)
    return log


logger = configure_logging()


# ─── Rate limiting ────────────────────────────────────────────────

limiter = Limiter(key_func=get_remote_address)


async def _rate_limit_handler(request: Request, exc: RateLimitExceeded):
    response = await registry_error_handler(request, RateLimited(details={"limit": str(exc.detail)}))
    response.headers["Retry-After"] = "60"
    return response


# ─── Middleware ───────────────────────────────────────────────────

class RequestContextMiddleware(BaseHTTPMiddleware):
    """Tags the request with an id, caps the body size and writes the access log."""

    def __init__(self, app, max_body_bytes: int = MAX_BODY_BYTES):
        super().__init__(app)
        self.max_body_bytes = max_body_bytes

    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex[:12]
        token = current_request_id.set(request_id)
        started = time.perf_counter()
        try:
            length = request.headers.get("content-length", "")
            if length.isdigit() and int(length) > self.max_body_bytes:
                error = PayloadTooLarge(details={"max_bytes": self.max_body_bytes})
                response = JSONResponse(status_code=error.status_code, content=error.to_dict())
            else:
                response = await call_next(request)

            logger.info(
                "%s %s -> %d", request.method, request.url.path, response.status_code,
                extra={
                    "event": "http_request",
                    "status": response.status_code,
                    "duration_ms": round((time.perf_counter() - started) * 1000, 1),
                    "client": request.client.host if request.client else None,
                },
            )
            response.headers[REQUEST_ID_HEADER] = request_id
            response.headers.update(SECURITY_HEADERS)
            return response
        finally:
            current_request_id.reset(token)


def configure_cors(app: FastAPI, allowed_origins: Sequence[str] = ()):
    """Credentials are only allowed with an explicit origin list."""
    origins = list(allowed_origins) or ["*"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials="*" not in origins,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "X-402-Signature", REQUEST_ID_HEADER],
        expose_headers=[REQUEST_ID_HEADER],
    )


# ─── Error handlers ───────────────────────────────────────────────

def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


async def registry_error_handler(request: Request, exc: RegistryError):
    path = request.url.path
    if exc.status_code >= 500:
        logger.error("%s failed: %s", path, exc.message, exc_info=exc,
                     extra={"event": "internal_error", "kind": exc.kind})
        exc = InternalError("Internal server error")
    elif exc.status_code == 401:
        logger.warning("Rejected unauthenticated request to %s: %s", path, exc.message,
                       extra={"event": "auth_failure", "kind": exc.kind, "ip": _client_ip(request)})
    else:
        logger.warning("%s rejected (%d %s): %s", path, exc.status_code, exc.kind, exc.message,
                       extra={"event": "client_error", "kind": exc.kind})
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def _request_validation_handler(request: Request, exc: RequestValidationError):
    issues = [
        {"loc": [str(part) for part in err.get("loc", ())],
         "msg": err.get("msg", ""),
         "type": err.get("type", "")}
        for err in exc.errors()
    ]
    return await registry_error_handler(request, ValidationError("Invalid payload", {"issues": issues}))


async def _unhandled_error_handler(request: Request, exc: Exception):
    logger.error("Unhandled %s on %s", type(exc).__name__, request.url.path, exc_info=exc,
                 extra={"event": "unhandled_error"})
    return JSONResponse(status_code=500, content=InternalError("Internal server error").to_dict())


def apply_security(app: FastAPI, allowed_origins: Sequence[str] = ()):
    """Install middleware, rate limiting and error handlers on ``app``."""
    configure_cors(app, allowed_origins)
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_handler)
    app.add_exception_handler(RegistryError, registry_error_handler)
    app.add_exception_handler(RequestValidationError, _request_validation_handler)
    app.add_exception_handler(Exception, _unhandled_error_handler)
    app.add_middleware(RequestContextMiddleware)
