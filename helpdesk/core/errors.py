from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import ClassVar

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

LOGGER = logging.getLogger(__name__)


class HelpdeskError(RuntimeError):
    user_message: str = "An unexpected error occurred."
    status_code: ClassVar[int] = 500


@dataclass(slots=True)
class NotFoundError(HelpdeskError):
    user_message: str = "The requested resource could not be found."
    status_code: ClassVar[int] = 404


@dataclass(slots=True)
class ForbiddenError(HelpdeskError):
    user_message: str = "You are not authorized to access this resource."
    status_code: ClassVar[int] = 403


@dataclass(slots=True)
class UnauthorizedError(HelpdeskError):
    user_message: str = "Authentication is required."
    status_code: ClassVar[int] = 401


@dataclass(slots=True)
class ValidationError(HelpdeskError):
    user_message: str = "The provided input is not valid."
    status_code: ClassVar[int] = 400


@dataclass(slots=True)
class ConflictError(HelpdeskError):
    user_message: str = "The request conflicts with the current state."
    status_code: ClassVar[int] = 409


@dataclass(slots=True)
class StoreUnavailableError(HelpdeskError):
    user_message: str = "The data store is temporarily unavailable. Please retry."
    status_code: ClassVar[int] = 503


def _error_body(message: str) -> dict[str, object]:
    return {"success": False, "message": message}


def register_error_handlers(app: FastAPI, expose_errors: bool = False) -> None:
    @app.exception_handler(HelpdeskError)
    async def handle_helpdesk_error(request: Request, error: HelpdeskError) -> JSONResponse:
        if error.status_code >= 500:
            LOGGER.warning(
                "Request failed. method=%s path=%s error=%s",
                request.method,
                request.url.path,
                error.user_message,
            )
        return JSONResponse(status_code=error.status_code, content=_error_body(error.user_message))

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, error: RequestValidationError) -> JSONResponse:
        parts = []
        for item in error.errors():
            location = ".".join(str(piece) for piece in item.get("loc", ()) if piece != "body")
            parts.append(f"{location}: {item.get('msg', 'invalid value')}")
        return JSONResponse(status_code=400, content=_error_body(", ".join(parts) or "Invalid request"))

    @app.exception_handler(Exception)
    async def handle_unexpected(request: Request, error: Exception) -> JSONResponse:
        LOGGER.exception(
            "Unhandled error. method=%s path=%s",
            request.method,
            request.url.path,
            exc_info=error,
        )
        message = str(error) if expose_errors and str(error) else "Server Error"
        return JSONResponse(status_code=500, content=_error_body(message))
