"""Error envelope for the SolOptic API.

Every failure, whether request validation, an ``HTTPException`` raised by a
route, or a pipeline error that aborted a run, is returned as::

    {
        "error": {
            "code": "DEPLOYMENT_FAILED",
            "message": "No accounts available from the execution environment",
            "details": null,
            "request_id": "abc-123"
        }
    }

Compilation failures carry solc's diagnostics verbatim, one per entry in
``details``.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.exceptions import HTTPException as StarletteHTTPException

from soloptic.core.errors import (
    CompilationError,
    DecodeError,
    DeploymentError,
    InvalidTraceError,
    InvocationError,
    InvocationTimeout,
    MapFormatError,
    SolOpticError,
    TraceUnavailable,
)

logger = logging.getLogger(__name__)


class ErrorCode(str, Enum):
    # request
    VALIDATION_ERROR = "VALIDATION_ERROR"
    BAD_REQUEST = "BAD_REQUEST"
    NOT_FOUND = "NOT_FOUND"
    PAYLOAD_TOO_LARGE = "PAYLOAD_TOO_LARGE"

    # pipeline
    COMPILATION_ERROR = "COMPILATION_ERROR"
    DECODE_ERROR = "DECODE_ERROR"
    SOURCE_MAP_ERROR = "SOURCE_MAP_ERROR"
    DEPLOYMENT_FAILED = "DEPLOYMENT_FAILED"
    TRACE_UNAVAILABLE = "TRACE_UNAVAILABLE"
    INVALID_TRACE = "INVALID_TRACE"

    # execution node / server
    DEPENDENCY_ERROR = "DEPENDENCY_ERROR"
    TIMEOUT = "TIMEOUT"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class ErrorEnvelope(BaseModel):
    code: ErrorCode
    message: str
    details: list[dict[str, Any]] | None = None
    request_id: str | None = None


# Routes raise HTTPException only for these statuses.
_STATUS_TO_CODE: dict[int, ErrorCode] = {
    400: ErrorCode.BAD_REQUEST,
    404: ErrorCode.NOT_FOUND,
    413: ErrorCode.PAYLOAD_TOO_LARGE,
    422: ErrorCode.VALIDATION_ERROR,
    504: ErrorCode.TIMEOUT,
}

# Checked in order: InvocationTimeout before InvocationError.
_DOMAIN_ERRORS: list[tuple[type[SolOpticError], int, ErrorCode]] = [
    (CompilationError, 400, ErrorCode.COMPILATION_ERROR),
    (DecodeError, 422, ErrorCode.DECODE_ERROR),
    (MapFormatError, 422, ErrorCode.SOURCE_MAP_ERROR),
    (InvalidTraceError, 502, ErrorCode.INVALID_TRACE),
    (DeploymentError, 502, ErrorCode.DEPLOYMENT_FAILED),
    (InvocationTimeout, 504, ErrorCode.TIMEOUT),
    (InvocationError, 502, ErrorCode.DEPENDENCY_ERROR),
    (TraceUnavailable, 502, ErrorCode.TRACE_UNAVAILABLE),
]


def status_for(exc: SolOpticError) -> tuple[int, ErrorCode]:
    """HTTP status and error code for a pipeline error."""
    for cls, status_code, code in _DOMAIN_ERRORS:
        if isinstance(exc, cls):
            return status_code, code
    return 500, ErrorCode.INTERNAL_ERROR


def error_response(
    request: Request,
    status_code: int,
    code: ErrorCode,
    message: str,
    details: list[dict[str, Any]] | None = None,
) -> JSONResponse:
    request_id = request.headers.get("X-Request-ID") or getattr(request.state, "request_id", None)
    envelope = ErrorEnvelope(code=code, message=message, details=details, request_id=request_id)
    return JSONResponse(status_code=status_code, content={"error": envelope.model_dump(mode="json")})


# ── Handlers ─────────────────────────────────────────────────────────────────


async def _validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    details = [
        {
            "field": ".".join(str(p) for p in err.get("loc", ()) if p != "body") or "unknown",
            "message": err.get("msg", "Invalid value"),
            "type": err.get("type", "value_error"),
        }
        for err in exc.errors()
    ]
    return error_response(
        request, 422, ErrorCode.VALIDATION_ERROR,
        f"Request validation failed: {len(details)} error(s)", details,
    )


async def _http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    code = _STATUS_TO_CODE.get(exc.status_code, ErrorCode.INTERNAL_ERROR)
    return error_response(request, exc.status_code, code, str(exc.detail or code.value))


async def _pipeline_error(request: Request, exc: SolOpticError) -> JSONResponse:
    status_code, code = status_for(exc)
    details = None
    if isinstance(exc, CompilationError):
        details = [{"diagnostic": d} for d in exc.diagnostics]

    logger.warning(
        "%s on %s: %s", type(exc).__name__, request.url.path, exc,
        extra={"method": request.method, "path": request.url.path, "status_code": status_code},
    )
    return error_response(request, status_code, code, str(exc), details)


async def _unhandled_error(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return error_response(request, 500, ErrorCode.INTERNAL_ERROR, "Internal server error")


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(RequestValidationError, _validation_error)
    app.add_exception_handler(StarletteHTTPException, _http_error)
    app.add_exception_handler(SolOpticError, _pipeline_error)
    app.add_exception_handler(Exception, _unhandled_error)
