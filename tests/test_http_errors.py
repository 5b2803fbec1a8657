from __future__ import annotations

import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

APP_ROOT = Path(__file__).resolve().parents[1] / "app"
if str(APP_ROOT) not in sys.path:
    sys.path.insert(0, str(APP_ROOT))

from storeops_app.core.config import ImportConfig
from storeops_app.imports.config import import_table_columns
from storeops_app.imports.errors import (
    ImportJobNotFoundError,
    ImportJobStateError,
    ImportParseError,
    ImportWriteError,
    MissingImportContextError,
    UnknownImportTargetError,
)
from storeops_app.infrastructure.db import DataConnectionError, DataExecutionError, LocalImportStore
from storeops_app.web.app import create_app
from storeops_app.web.http.errors import ApiError, MappedError, build_error_payload, map_exception


@pytest.mark.parametrize(
    ("exc", "status_code", "code"),
    [
        (UnknownImportTargetError("Unknown import target 'x'."), 404, "UNKNOWN_IMPORT_TARGET"),
        (MissingImportContextError("needs to_id"), 400, "MISSING_IMPORT_CONTEXT"),
        (ImportJobNotFoundError("Import job a was not found."), 404, "IMPORT_JOB_NOT_FOUND"),
        (ImportJobStateError("duplicate"), 409, "CONFLICT"),
        (ImportParseError("CSV parsing error"), 422, "IMPORT_PARSE_ERROR"),
        (ImportWriteError("Batch 1 failed"), 502, "IMPORT_WRITE_ERROR"),
        (DataConnectionError("locked"), 503, "DATASTORE_ERROR"),
        (DataExecutionError("disk full"), 503, "DATASTORE_ERROR"),
        (RuntimeError("boom"), 500, "INTERNAL_SERVER_ERROR"),
    ],
)
def test_import_errors_map_to_status_and_code(exc: Exception, status_code: int, code: str) -> None:
    mapped = map_exception(exc)
    assert mapped.status_code == status_code
    assert mapped.code == code


def test_job_not_found_message_is_not_quoted() -> None:
    assert map_exception(ImportJobNotFoundError("Import job a was not found.")).message == "Import job a was not found."


def test_api_error_keeps_its_own_code() -> None:
    mapped = map_exception(ApiError(status_code=400, code="BAD_REQUEST", message="Upload a file."))
    assert mapped == MappedError(400, "BAD_REQUEST", "Upload a file.", None)


def test_details_are_hidden_unless_enabled(monkeypatch: pytest.MonkeyPatch) -> None:
    mapped = map_exception(DataExecutionError("disk full"))

    monkeypatch.delenv("STOREOPS_ERROR_INCLUDE_DETAILS", raising=False)
    hidden = build_error_payload(mapped, request_id="req-1")
    assert "details" not in hidden["error"]
    assert hidden["request_id"] == "req-1"

    monkeypatch.setenv("STOREOPS_ERROR_INCLUDE_DETAILS", "true")
    shown = build_error_payload(mapped, request_id="req-1")
    assert shown["error"]["details"] == {"reason": "disk full"}


def test_unknown_route_and_method_use_the_envelope() -> None:
    config = ImportConfig(local_db_path=":memory:")
    app = create_app(config=config, store=LocalImportStore(":memory:", tables=import_table_columns()))
    with TestClient(app) as client:
        missing = client.get("/api/nothing-here")
        wrong_method = client.delete("/api/imports/jobs")

    assert missing.status_code == 404
    assert missing.json()["error"]["code"] == "NOT_FOUND"
    assert missing.headers.get("X-Request-ID")
    assert wrong_method.status_code == 405
    assert wrong_method.json()["ok"] is False
