"""Typed application errors and their HTTP translation."""

import enum
import logging
from contextlib import contextmanager
from http import HTTPStatus

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from starlette.exceptions import HTTPException as StarletteHTTPException

from podlearn.config import get_settings

logger = logging.getLogger(__name__)


class ErrorKind(str, enum.Enum):
    """Error identities exposed to clients in the ``message`` field."""

    VALIDATION = "validation_error"
    NOT_FOUND = "not_found"
    UNAUTHORIZED = "unauthorized"
    CONFLICT = "conflict"
    UPSTREAM = "upstream_error"
    DATABASE = "database_error"
    INTERNAL = "internal_error"


class AppError(Exception):
    """Base class for errors raised by stores, clients and services."""

    kind: ErrorKind = ErrorKind.INTERNAL
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, details: str = ""):
        super().__init__(details)
        self.details = details

    def to_dict(self) -> dict:
        return {"message": self.kind.value, "details": self.details}


class InvalidRequestError(AppError):
    kind = ErrorKind.VALIDATION
    status_code = status.HTTP_400_BAD_REQUEST


class NotFoundError(AppError):
    kind = ErrorKind.NOT_FOUND
    status_code = status.HTTP_404_NOT_FOUND


class ForbiddenError(AppError):
    kind = ErrorKind.UNAUTHORIZED
    status_code = status.HTTP_403_FORBIDDEN


class ConflictError(AppError):
    kind = ErrorKind.CONFLICT
    status_code = status.HTTP_400_BAD_REQUEST


class UpstreamError(AppError):
    """A speech-to-text or LLM call failed, timed out, or replied with garbage."""

    kind = ErrorKind.UPSTREAM

    def __init__(self, details: str = "", status_code: int | None = None, body: str | None = None):
        super().__init__(details)
        self.upstream_status = status_code
        self.upstream_body = body


class DatabaseError(AppError):
    kind = ErrorKind.DATABASE


class InternalError(AppError):
    kind = ErrorKind.INTERNAL


@contextmanager
def database_errors(operation: str):
    """Re-raise SQLAlchemy failures inside the block as ``DatabaseError``."""
    try:
        yield
    except SQLAlchemyError as e:
        logger.error(f"Database error during {operation}: {e}")
        raise DatabaseError(f"{operation} failed") from e


def _status_slug(code: int) -> str:
    try:
        return HTTPStatus(code).phrase.lower().replace(" ", "_")
    except ValueError:
        return "error"


def register_exception_handlers(app: FastAPI) -> None:
    """Attach JSON error handlers producing ``{message, details}`` bodies."""
    settings = get_settings()

    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError):
        if exc.status_code >= 500:
            logger.error(f"{exc.kind.value} on {request.method} {request.url.path}: {exc.details}")
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        problems = []
        for err in exc.errors():
            location = ".".join(str(part) for part in err.get("loc", ()) if part != "body")
            problems.append(f"{location}: {err.get('msg')}" if location else err.get("msg", ""))
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"message": ErrorKind.VALIDATION.value, "details": "; ".join(problems)},
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content={"message": _status_slug(exc.status_code), "details": str(exc.detail)},
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Handle uncaught exceptions."""
        logger.exception(f"Unhandled exception: {exc}")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "message": ErrorKind.INTERNAL.value,
                "details": str(exc) if settings.debug else "An unexpected error occurred",
            },
        )
