"""Request middleware — request ID tracking and request size limits.

Adds:
  - X-Request-ID header propagation (or generation) for log correlation
  - Request body size enforcement on source-code uploads
"""

from __future__ import annotations

import logging
import uuid
from typing import Callable

from fastapi import Request, Response, status
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from soloptic.api.errors import ErrorCode, error_response

logger = logging.getLogger(__name__)

# Solidity sources and fuzz reports; traces are fetched server-side
DEFAULT_MAX_REQUEST_SIZE = 2 * 1024 * 1024  # 2 MB


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Propagate or generate X-Request-ID for every request."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        request.state.request_id = request_id

        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response


class RequestSizeLimitMiddleware(BaseHTTPMiddleware):
    """Reject POST bodies larger than ``max_size`` bytes."""

    def __init__(self, app: ASGIApp, max_size: int = DEFAULT_MAX_REQUEST_SIZE) -> None:
        super().__init__(app)
        self.max_size = max_size

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.method != "POST":
            return await call_next(request)

        content_length = request.headers.get("content-length")
        if content_length and content_length.isdigit() and int(content_length) > self.max_size:
            logger.warning(
                "Request body too large: %s bytes on %s",
                content_length,
                request.url.path,
                extra={"method": request.method, "path": request.url.path},
            )
            return error_response(
                request,
                status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
                ErrorCode.PAYLOAD_TOO_LARGE,
                f"Request body exceeds {self.max_size} bytes",
            )

        return await call_next(request)
