from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from typing import Any

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from storeops_app.core.env import STOREOPS_ERROR_INCLUDE_DETAILS, get_env_bool
from storeops_app.imports.errors import (
    ImportJobNotFoundError,
    ImportJobStateError,
    ImportParseError,
    ImportPipelineError,
    ImportWriteError,
    MissingImportContextError,
    UnknownImportTargetError,
)
from storeops_app.infrastructure.db import DataConnectionError, DataExecutionError, DataQueryError

LOGGER = logging.getLogger(__name__)

ERROR_CODE_VALIDATION = "VALIDATION_ERROR"
ERROR_CODE_BAD_REQUEST = "BAD_REQUEST"
ERROR_CODE_NOT_FOUND = "NOT_FOUND"
ERROR_CODE_CONFLICT = "CONFLICT"
ERROR_CODE_IMPORT_TARGET = "UNKNOWN_IMPORT_TARGET"
ERROR_CODE_IMPORT_CONTEXT = "MISSING_IMPORT_CONTEXT"
ERROR_CODE_IMPORT_JOB_NOT_FOUND = "IMPORT_JOB_NOT_FOUND"
ERROR_CODE_IMPORT_PARSE = "IMPORT_PARSE_ERROR"
ERROR_CODE_IMPORT_WRITE = "IMPORT_WRITE_ERROR"
ERROR_CODE_DATASTORE = "DATASTORE_ERROR"
ERROR_CODE_INTERNAL = "INTERNAL_SERVER_ERROR"

# First match wins, so subclasses come before ImportPipelineError.
_IMPORT_ERROR_STATUS: tuple[tuple[type[Exception], int, str], ...] = (
    (UnknownImportTargetError, 404, ERROR_CODE_IMPORT_TARGET),
    (MissingImportContextError, 400, ERROR_CODE_IMPORT_CONTEXT),
    (ImportJobNotFoundError, 404, ERROR_CODE_IMPORT_JOB_NOT_FOUND),
    (ImportJobStateError, 409, ERROR_CODE_CONFLICT),
    (ImportParseError, 422, ERROR_CODE_IMPORT_PARSE),
    (ImportWriteError, 502, ERROR_CODE_IMPORT_WRITE),
    (ImportPipelineError, 400, ERROR_CODE_BAD_REQUEST),
)
_DATASTORE_ERRORS = (DataConnectionError, DataQueryError, DataExecutionError)
_HTTP_STATUS_CODES = {
    400: ERROR_CODE_BAD_REQUEST,
    404: ERROR_CODE_NOT_FOUND,
    405: ERROR_CODE_BAD_REQUEST,
    409: ERROR_CODE_CONFLICT,
    422: ERROR_CODE_VALIDATION,
}


@dataclass(frozen=True)
class MappedError:
    status_code: int
    code: str
    message: str
    details: dict[str, Any] | None = None


class ApiError(RuntimeError):
    """Raised by route handlers for request problems outside the import taxonomy."""

    def __init__(
        self,
        *,
        status_code: int,
        code: str,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = int(status_code)
        self.code = str(code)
        self.message = str(message)
        self.details = details


def request_id_from_request(request: Request) -> str:
    request_id = str(getattr(request.state, "request_id", "") or "").strip()
    if request_id:
        return request_id
    return str(request.headers.get("x-request-id", "")).strip() or "-"


def map_exception(exc: Exception) -> MappedError:
    if isinstance(exc, ApiError):
        return MappedError(exc.status_code, exc.code, exc.message, exc.details)

    for error_type, status_code, code in _IMPORT_ERROR_STATUS:
        if isinstance(exc, error_type):
            return MappedError(status_code, code, str(exc) or "Import request failed.")

    if isinstance(exc, _DATASTORE_ERRORS):
        return MappedError(
            503,
            ERROR_CODE_DATASTORE,
            "The import datastore is unavailable. Please try again shortly.",
            {"reason": str(exc)},
        )

    if isinstance(exc, RequestValidationError):
        return MappedError(
            422,
            ERROR_CODE_VALIDATION,
            "Request validation failed. Check field values and try again.",
            {"errors": exc.errors()},
        )

    if isinstance(exc, StarletteHTTPException):
        return MappedError(
            int(exc.status_code),
            _HTTP_STATUS_CODES.get(int(exc.status_code), ERROR_CODE_INTERNAL),
            str(exc.detail or "HTTP request failed."),
        )

    return MappedError(
        500,
        ERROR_CODE_INTERNAL,
        "An unexpected error occurred while handling the import request.",
        {"reason": str(exc), "type": exc.__class__.__name__},
    )


def build_error_payload(mapped: MappedError, *, request_id: str) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "ok": False,
        "error": {"code": mapped.code, "message": mapped.message},
        "request_id": request_id or "-",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    if mapped.details and get_env_bool(STOREOPS_ERROR_INCLUDE_DETAILS, default=False):
        payload["error"]["details"] = mapped.details
    return payload


async def error_response(request: Request, exc: Exception) -> JSONResponse:
    """Exception handler rendering any error as the JSON error envelope."""
    mapped = map_exception(exc)
    request_id = request_id_from_request(request)
    if mapped.status_code >= 500:
        LOGGER.exception(
            "Import request failed. path=%s code=%s",
            request.url.path,
            mapped.code,
            exc_info=exc,
            extra={"event": "request_error", "request_id": request_id, "path": request.url.path},
        )
    return JSONResponse(
        build_error_payload(mapped, request_id=request_id),
        status_code=mapped.status_code,
        headers={"X-Request-ID": request_id},
    )
