"""
Map workflow errors to HTTP responses.

Body shape: {"error": <kind>, "reason": <message>}
Transport and store internals never reach the client.
"""

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from ..core.errors import (
    Conflict,
    LedgerError,
    NotFound,
    StoreError,
    Unauthorized,
    UploadError,
    ValidationError,
    WorkflowError,
)
from ..observability import get_logger

logger = get_logger(__name__)

STATUS_CODES = (
    (NotFound, 404),
    (ValidationError, 422),
    (Unauthorized, 403),
    (Conflict, 409),
    (LedgerError, 502),
    (UploadError, 502),
    (StoreError, 503),
)


def status_for(exc: WorkflowError) -> int:
    for exc_type, code in STATUS_CODES:
        if isinstance(exc, exc_type):
            return code
    return 500


async def workflow_error_handler(request: Request, exc: WorkflowError) -> JSONResponse:
    status_code = status_for(exc)
    body = {"error": exc.kind, "reason": exc.message}

    if isinstance(exc, ValidationError) and exc.field:
        body["field"] = exc.field
    if isinstance(exc, LedgerError):
        body["failure_kind"] = exc.failure_kind.value

    if status_code >= 500:
        logger.error(
            "Request failed",
            path=request.url.path,
            error_kind=exc.kind,
            reason=exc.message,
            status_code=status_code,
        )
    return JSONResponse(status_code=status_code, content=body)


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(WorkflowError, workflow_error_handler)
