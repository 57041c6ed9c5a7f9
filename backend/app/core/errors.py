"""Error taxonomy and the FastAPI handlers that render it.

Services raise these; routers let them propagate. Every error is rendered as::

    {"success": false, "error": "...", "message": "...", "timestamp": "..."}

plus any extra fields the error carries (``retryAfter``, ``details``...).
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from app.core.config import settings

logger = logging.getLogger(__name__)


class AppError(Exception):
    """Base class for errors with an HTTP mapping."""
    status_code: int = 500
    error: str = "Internal Server Error"

    def __init__(self, message: str, *, extra: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.extra: Dict[str, Any] = dict(extra or {})

    def headers(self) -> Dict[str, str]:
        return {}


class ValidationError(AppError):
    status_code = 400
    error = "Validation Error"


class NotFoundError(AppError):
    status_code = 404
    error = "Not Found"


class ConflictError(AppError):
    status_code = 409
    error = "Conflict"


class UpstreamError(AppError):
    """The GitHub API (or the analysis built on it) failed."""
    status_code = 502
    error = "Upstream Error"


class UpstreamNotFoundError(UpstreamError):
    status_code = 404
    error = "Repository Not Found"


class UpstreamAccessDeniedError(UpstreamError):
    status_code = 403
    error = "Repository Access Denied"


class UpstreamRateLimitError(UpstreamError):
    status_code = 429
    error = "Upstream Rate Limit Exceeded"

    def __init__(self, message: str, *, retry_after: int = 3600, extra: Optional[Dict[str, Any]] = None):
        super().__init__(message, extra=extra)
        self.retry_after = max(int(retry_after), 1)
        self.extra["retryAfter"] = self.retry_after

    def headers(self) -> Dict[str, str]:
        return {"Retry-After": str(self.retry_after)}


class RateLimitError(AppError):
    status_code = 429
    error = "Rate limit exceeded"

    def __init__(
        self,
        message: str,
        *,
        retry_after: int,
        limit: Optional[int] = None,
        remaining: Optional[int] = None,
        extra: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, extra=extra)
        self.retry_after = max(int(retry_after), 1)
        self.limit = limit
        self.remaining = remaining
        self.extra["retryAfter"] = self.retry_after
        if limit is not None:
            self.extra["limit"] = limit
        if remaining is not None:
            self.extra["remaining"] = remaining

    def headers(self) -> Dict[str, str]:
        headers = {"Retry-After": str(self.retry_after)}
        if self.limit is not None:
            headers["X-RateLimit-Limit"] = str(self.limit)
        if self.remaining is not None:
            headers["X-RateLimit-Remaining"] = str(self.remaining)
        return headers


class InternalError(AppError):
    status_code = 500
    error = "Internal Server Error"


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def error_body(exc: AppError) -> Dict[str, Any]:
    message = exc.message
    if isinstance(exc, InternalError) and not settings.is_development:
        message = "Something went wrong. Please try again later."
    body: Dict[str, Any] = {
        "success": False,
        "error": exc.error,
        "message": message,
        "timestamp": _timestamp(),
    }
    body.update(exc.extra)
    return body


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"{exc.error} on {request.method} {request.url.path}: {exc.message}")
    else:
        logger.info(f"{exc.error} on {request.method} {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=error_body(exc), headers=exc.headers())


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    details: Dict[str, str] = {}
    for err in exc.errors():
        # drop the leading "body"/"query"/"path" segment
        location = ".".join(str(part) for part in err.get("loc", ())[1:]) or "request"
        details[location] = err.get("msg", "Invalid value")
    logger.warning(f"[VALIDATION ERROR] on {request.url}: {details}")
    return JSONResponse(
        status_code=400,
        content={
            "success": False,
            "error": "Validation Error",
            "message": "Please check your input data",
            "details": details,
            "timestamp": _timestamp(),
        },
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error(f"Unhandled error on {request.method} {request.url.path}", exc_info=exc)
    message = str(exc) if settings.is_development else "Something went wrong. Please try again later."
    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "error": "Internal Server Error",
            "message": message,
            "timestamp": _timestamp(),
        },
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
