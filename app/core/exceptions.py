"""
Domain errors and global exception handlers.

The lifecycle core raises the typed errors below; the handlers translate
them to JSON responses and prevent stack-trace leakage to clients.
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

logger = logging.getLogger(__name__)


# ── Domain errors ───────────────────────────────────────────────────
class ReimbursementError(Exception):
    """Base class for every error raised by the reimbursement core."""

    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(ReimbursementError):
    """Input shape or range is invalid; carries one message per field."""

    status_code = 422

    def __init__(self, errors: list[str] | str):
        if isinstance(errors, str):
            errors = [errors]
        super().__init__("Invalid data: " + "; ".join(errors))
        self.errors = errors


class NotFoundError(ReimbursementError):
    status_code = 404


class InvalidTransitionError(ReimbursementError):
    """The operation is not allowed from the request's current status."""

    status_code = 409

    def __init__(self, current_status: str, operation: str):
        super().__init__(
            f"Cannot {operation} a reimbursement request in status {current_status}"
        )
        self.current_status = current_status
        self.operation = operation


class UnauthorizedError(ReimbursementError):
    status_code = 401


# ── Handlers ────────────────────────────────────────────────────────
async def _reimbursement_error_handler(
    _request: Request, exc: ReimbursementError
) -> JSONResponse:
    content: dict = {"detail": exc.message, "success": False}
    if isinstance(exc, ValidationError):
        content["errors"] = exc.errors
    elif isinstance(exc, InvalidTransitionError):
        content["current_status"] = exc.current_status
        content["operation"] = exc.operation
    return JSONResponse(status_code=exc.status_code, content=content)


async def _http_exception_handler(_request: Request, exc: HTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "success": False},
        headers=getattr(exc, "headers", None),
    )


async def _integrity_error_handler(_request: Request, exc: IntegrityError) -> JSONResponse:
    logger.error("Database integrity error: %s", exc, exc_info=True)
    return JSONResponse(
        status_code=409,
        content={"detail": "Database constraint violation", "success": False},
    )


async def _sqlalchemy_error_handler(_request: Request, exc: SQLAlchemyError) -> JSONResponse:
    logger.error("Database error: %s", exc, exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal database error", "success": False},
    )


async def _generic_exception_handler(_request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled exception: %s", exc)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error", "success": False},
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Attach all exception handlers to the FastAPI app."""
    app.add_exception_handler(ReimbursementError, _reimbursement_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(HTTPException, _http_exception_handler)  # type: ignore[arg-type]
    app.add_exception_handler(IntegrityError, _integrity_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(SQLAlchemyError, _sqlalchemy_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(Exception, _generic_exception_handler)
