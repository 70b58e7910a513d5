"""
Application error taxonomy and the FastAPI handlers that render it.

Every handled error becomes a JSON body with ``success: false`` so clients
can branch on a single flag.  Upstream failures are logged with their
traceback but only a generic message reaches the client.
"""
import logging
from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class AppError(Exception):
    """Base class for errors rendered as structured JSON responses."""

    status_code: int = 500

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_body(self) -> dict[str, Any]:
        return {"success": False, "message": self.message, **self.details}


class ValidationFailed(AppError):
    """Malformed or missing fields; *errors* maps field name to messages."""

    status_code = 422

    def __init__(self, errors: dict[str, list[str]], message: str = "The given data was invalid.") -> None:
        super().__init__(message, {"errors": errors})
        self.errors = errors


class PayloadTooLarge(AppError):
    status_code = 413

    def __init__(self, size: int, limit: int) -> None:
        super().__init__(
            "Request Entity Too Large",
            {
                "error": f"The file exceeds the {_megabytes(limit)} limit.",
                "file_size": f"{round(size / 1024 / 1024, 2)} MB",
                "max_size": _megabytes(limit),
            },
        )


class NotFound(AppError):
    status_code = 404


class UpstreamFailure(AppError):
    """An image or storage collaborator raised; detail stays server-side."""

    status_code = 500

    def __init__(self, message: str = "The file could not be processed. Please try again later.") -> None:
        super().__init__(message)


def _megabytes(size: int) -> str:
    return f"{size // (1024 * 1024)} MB"


def field_errors(errors) -> dict[str, list[str]]:
    """
    Collapse pydantic error dicts into ``{field: [message, ...]}``.

    Body/query prefixes added by FastAPI are dropped so the field name is
    what the client sent.
    """
    result: dict[str, list[str]] = {}
    for err in errors:
        loc = [str(part) for part in err.get("loc", ()) if part not in ("body", "query", "path", "form")]
        field = ".".join(loc) or "__root__"
        result.setdefault(field, []).append(err.get("msg", "Invalid value."))
    return result


async def _app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_body())


async def _request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    failed = ValidationFailed(field_errors(exc.errors()))
    return JSONResponse(status_code=failed.status_code, content=failed.to_body())


def install_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AppError, _app_error_handler)
    app.add_exception_handler(RequestValidationError, _request_validation_handler)
