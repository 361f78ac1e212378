"""
Exception handlers for the TaskTree API.

Maps the engine's error taxonomy onto HTTP status codes and renders every
error with the offending field and/or task id.
"""

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from tasktree.exceptions import (
    ConflictError,
    CycleDetectedError,
    DepthExceededError,
    StorageUnavailableError,
    TaskNotFoundError,
    TaskTreeError,
    TaskValidationError,
)
from tasktree.logging_config import get_logger

logger = get_logger(__name__)

# Checked in order; subclasses before their bases
_STATUS_CODES = (
    (TaskNotFoundError, status.HTTP_404_NOT_FOUND),
    (DepthExceededError, status.HTTP_400_BAD_REQUEST),
    (CycleDetectedError, status.HTTP_400_BAD_REQUEST),
    (TaskValidationError, status.HTTP_400_BAD_REQUEST),
    (ConflictError, status.HTTP_409_CONFLICT),
    (StorageUnavailableError, status.HTTP_503_SERVICE_UNAVAILABLE),
)


def status_code_for(exc: TaskTreeError) -> int:
    for error_class, code in _STATUS_CODES:
        if isinstance(exc, error_class):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def _field_from_loc(loc) -> str:
    # Drop the "body"/"query"/"path" prefix FastAPI puts in front
    parts = [str(part) for part in loc]
    if parts and parts[0] in ("body", "query", "path", "header"):
        parts = parts[1:]
    return ".".join(parts)


def task_validation_error(exc: ValidationError) -> TaskValidationError:
    """Convert a pydantic ValidationError raised inside a route into the engine's taxonomy."""
    first = exc.errors()[0]
    field = _field_from_loc(first.get("loc", ())) or None
    return TaskValidationError(first["msg"], field=field)


async def task_tree_error_handler(request: Request, exc: TaskTreeError) -> JSONResponse:
    status_code = status_code_for(exc)
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.code}: {exc.message}")
    else:
        logger.warning(f"{request.method} {request.url.path} rejected: {exc.code}: {exc.message}")

    headers = {"Retry-After": "1"} if exc.retryable else None
    return JSONResponse(status_code=status_code, content=exc.to_dict(), headers=headers)


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [
        {
            "field": _field_from_loc(error["loc"]),
            "message": error["msg"],
            "type": error["type"],
        }
        for error in exc.errors()
    ]
    first = errors[0] if errors else {"field": "", "message": "Invalid request"}

    logger.warning(
        f"{request.method} {request.url.path} rejected: {len(errors)} validation error(s), "
        f"first on '{first['field']}'"
    )

    content = {"error": TaskValidationError.code, "detail": first["message"], "errors": errors}
    if first["field"]:
        content["field"] = first["field"]
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=content)


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(TaskTreeError, task_tree_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
