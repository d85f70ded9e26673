"""
Shared API Middleware
======================

Request tracing, in-process request metrics and the exception handlers
that turn engine errors into HTTP responses.
"""

import time
import uuid
from collections import Counter
from datetime import datetime, timezone
from typing import Callable, Dict

from fastapi import Request, Response, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from sla_engine.config import settings
from sla_engine.core import (
    ApplicationException,
    CalendarResolutionError,
    InvalidTransitionError,
    ResourceNotFoundException,
    TicketLockedError,
    ValidationException,
)
from sla_engine.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)


def _route_of(request: Request) -> str:
    """Route template (e.g. /tickets/{ticket_id}) so metrics don't fan out per ticket."""
    route = request.scope.get("route")
    return getattr(route, "path", request.url.path)


class RequestMetrics:
    """Request counters keyed by route template and status class."""

    def __init__(self):
        self.requests: Counter = Counter()
        self.responses: Counter = Counter()
        self.total_response_time = 0.0

    def observe(self, route: str, status_code: int, elapsed: float) -> None:
        self.requests[route] += 1
        self.responses[f"{status_code // 100}xx"] += 1
        self.total_response_time += elapsed

    def snapshot(self) -> Dict[str, object]:
        total = sum(self.requests.values())
        return {
            "requests_total": total,
            "responses": dict(self.responses),
            "avg_response_ms": round(self.total_response_time / total * 1000, 2) if total else 0.0,
            "busiest_routes": dict(self.requests.most_common(5)),
        }


request_metrics = RequestMetrics()


class CorrelationIDMiddleware(BaseHTTPMiddleware):
    """
    Tags each request with a correlation ID and the calling actor.

    The ID is taken from `X-Correlation-ID` when the caller sends one and is
    echoed back on the response.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        correlation_id = request.headers.get("X-Correlation-ID") or str(uuid.uuid4())
        request.state.correlation_id = correlation_id
        request.state.actor_id = request.headers.get("X-Actor-Id", "anonymous")

        response = await call_next(request)
        response.headers["X-Correlation-ID"] = correlation_id
        return response


class MetricsMiddleware(BaseHTTPMiddleware):
    """Feeds `request_metrics` and reports the request latency in a header."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start_time = time.perf_counter()
        response = await call_next(request)
        elapsed = time.perf_counter() - start_time

        request_metrics.observe(_route_of(request), response.status_code, elapsed)
        response.headers["X-Response-Time"] = f"{elapsed:.3f}s"
        return response


class LoggingMiddleware(BaseHTTPMiddleware):
    """One structured log line per request, carrying the actor and ticket id."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        start_time = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(
                "Request failed",
                extra={**self._context(request), "error": str(e)}
            )
            raise

        elapsed_ms = int((time.perf_counter() - start_time) * 1000)
        level = logger.warning if response.status_code >= 500 else logger.info
        level(
            "Request completed",
            extra={**self._context(request), "status_code": response.status_code, "response_time_ms": elapsed_ms}
        )
        return response

    @staticmethod
    def _context(request: Request) -> dict:
        context = {
            "correlation_id": getattr(request.state, "correlation_id", "unknown"),
            "actor_id": getattr(request.state, "actor_id", "anonymous"),
            "method": request.method,
            "route": _route_of(request),
        }
        ticket_id = request.path_params.get("ticket_id")
        if ticket_id:
            context["ticket_id"] = ticket_id
        return context


def _status_for(exc: ApplicationException) -> int:
    if isinstance(exc, ResourceNotFoundException):
        return status.HTTP_404_NOT_FOUND
    if isinstance(exc, (InvalidTransitionError, TicketLockedError)):
        return status.HTTP_409_CONFLICT
    if isinstance(exc, (CalendarResolutionError, ValidationException)):
        return 422
    return status.HTTP_400_BAD_REQUEST


async def application_exception_handler(request: Request, exc: ApplicationException) -> JSONResponse:
    """Maps engine errors to HTTP status codes with a consistent body."""
    correlation_id = getattr(request.state, "correlation_id", "unknown")
    status_code = _status_for(exc)

    logger.warning(
        "Request rejected",
        extra={
            "correlation_id": correlation_id,
            "path": request.url.path,
            "error_type": type(exc).__name__,
            "error_message": exc.message,
            "status_code": status_code,
        }
    )

    return JSONResponse(
        status_code=status_code,
        content={
            "detail": exc.message,
            "error_type": type(exc).__name__,
            "details": exc.details,
            "correlation_id": correlation_id,
        }
    )


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Last-resort handler: 500 with the correlation id, details only in development."""
    correlation_id = getattr(request.state, "correlation_id", "unknown")

    logger.error(
        "Unhandled exception",
        extra={
            "correlation_id": correlation_id,
            "path": request.url.path,
            "method": request.method,
            "error_type": type(exc).__name__,
            "error_message": str(exc)
        },
        exc_info=exc,
    )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "detail": "Internal server error",
            "correlation_id": correlation_id,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "debug_info": str(exc) if settings.environment == "development" else None
        }
    )
