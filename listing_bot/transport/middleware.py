# listing_bot/transport/middleware.py
"""HTTP middleware: request ids, access log with timings, error envelope, headers."""
import re
import time
import uuid
from typing import Callable, Iterable

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from listing_bot.infra.logging_config import LogContext, get_logger
from listing_bot.infra.metrics import AppMetrics
from listing_bot.transport.security import add_security_headers

logger = get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"
_REQUEST_ID_RE = re.compile(r"^[A-Za-z0-9._-]{1,64}$")


def request_id_of(request: Request) -> str:
    return getattr(request.state, "request_id", "unknown")


def route_of(request: Request) -> str:
    """Matched route template, so metric labels stay bounded."""
    route = request.scope.get("route")
    return getattr(route, "path", "unmatched")


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Reuse a well-formed inbound X-Request-ID, otherwise mint one."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        incoming = request.headers.get(REQUEST_ID_HEADER, "")
        request_id = incoming if _REQUEST_ID_RE.match(incoming) else uuid.uuid4().hex
        request.state.request_id = request_id

        response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request_id
        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Access log and request metrics.

    Probe paths are neither logged nor counted; webhook bodies are never
    logged because they carry customer messages.
    """

    def __init__(
        self,
        app: ASGIApp,
        enabled: bool = True,
        quiet_paths: Iterable[str] = ("/health", "/ready"),
    ):
        super().__init__(app)
        self.enabled = enabled
        self.quiet_paths = frozenset(quiet_paths)

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        path = request.url.path
        if not self.enabled or path in self.quiet_paths:
            return await call_next(request)

        log = LogContext(logger, request_id=request_id_of(request))
        started = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception as exc:
            elapsed = time.perf_counter() - started
            AppMetrics.http_request(route_of(request), 500, elapsed)
            log.error(
                f"{request.method} {path} raised {exc.__class__.__name__} after {elapsed * 1000:.1f}ms",
                exc_info=True,
            )
            raise

        elapsed = time.perf_counter() - started
        AppMetrics.http_request(route_of(request), response.status_code, elapsed)
        log.info(f"{request.method} {path} -> {response.status_code} in {elapsed * 1000:.1f}ms")
        return response


class ErrorHandlingMiddleware(BaseHTTPMiddleware):
    """
    Last-resort error envelope.

    Provider callback paths get ``200 {"status": "error"}`` so the provider
    does not redeliver a message that already failed once; everything else
    gets a 500 carrying the request id.
    """

    def __init__(self, app: ASGIApp, ack_paths: Iterable[str] = ("/webhooks/meta",)):
        super().__init__(app)
        self.ack_paths = frozenset(ack_paths)

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        try:
            return await call_next(request)
        except Exception as exc:
            request_id = request_id_of(request)
            logger.error(
                f"Unhandled exception: {exc.__class__.__name__}: {exc}",
                extra={"request_id": request_id},
                exc_info=True,
            )

            if request.url.path in self.ack_paths:
                return JSONResponse(content={"status": "error"}, status_code=200)

            return JSONResponse(
                status_code=500,
                content={"error": "Internal server error", "request_id": request_id},
            )


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        return add_security_headers(await call_next(request))
