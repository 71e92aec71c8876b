"""Domain errors shared by the service layers and their mapping to HTTP responses."""

from __future__ import annotations

import logging
from enum import StrEnum
from http import HTTPStatus
from typing import Any

logger = logging.getLogger(__name__)

INTERNAL_MESSAGE = "internal server error"


class ErrorCode(StrEnum):
    """Machine-readable error codes carried by domain errors."""

    NOT_FOUND = "NOT_FOUND"
    FORBIDDEN = "FORBIDDEN"
    CONFLICT = "CONFLICT"
    BAD_REQUEST = "BAD_REQUEST"
    VALIDATION = "VALIDATION_ERROR"
    UNAUTHORIZED = "UNAUTHORIZED"
    INTERNAL = "INTERNAL_ERROR"


class DomainError(Exception):
    """An error raised by business logic, tagged with an error code."""

    def __init__(self, code: ErrorCode, message: str, cause: BaseException | None = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.cause = cause
        if cause is not None:
            self.__cause__ = cause

    def __str__(self) -> str:
        if self.cause is not None:
            return f"{self.message}: {self.cause}"
        return self.message


class NotFoundError(DomainError):
    """A requested resource does not exist."""

    def __init__(self, resource: str):
        super().__init__(ErrorCode.NOT_FOUND, f"{resource} not found")
        self.resource = resource


class ForbiddenError(DomainError):
    """The caller may not perform the action."""

    def __init__(self, message: str):
        super().__init__(ErrorCode.FORBIDDEN, message)


class ConflictError(DomainError):
    """The action conflicts with the current state."""

    def __init__(self, message: str):
        super().__init__(ErrorCode.CONFLICT, message)


class BadRequestError(DomainError):
    """The request is malformed or breaks a business rule."""

    def __init__(self, message: str):
        super().__init__(ErrorCode.BAD_REQUEST, message)


class ValidationError(DomainError):
    """The request failed field validation."""

    def __init__(self, message: str, fields: dict[str, str] | None = None):
        super().__init__(ErrorCode.VALIDATION, message)
        self.fields = dict(fields or {})


class InternalError(DomainError):
    """An unexpected failure, usually wrapping a lower-level error."""

    def __init__(self, message: str, cause: BaseException | None = None):
        super().__init__(ErrorCode.INTERNAL, message, cause)


_STATUS_BY_CODE = {
    ErrorCode.NOT_FOUND: HTTPStatus.NOT_FOUND,
    ErrorCode.FORBIDDEN: HTTPStatus.FORBIDDEN,
    ErrorCode.CONFLICT: HTTPStatus.CONFLICT,
    ErrorCode.BAD_REQUEST: HTTPStatus.BAD_REQUEST,
    ErrorCode.VALIDATION: HTTPStatus.UNPROCESSABLE_ENTITY,
}


def http_status(error: BaseException) -> HTTPStatus:
    """Return the HTTP status an error maps to."""
    if isinstance(error, DomainError):
        return _STATUS_BY_CODE.get(error.code, HTTPStatus.INTERNAL_SERVER_ERROR)
    return HTTPStatus.INTERNAL_SERVER_ERROR


def error_response(error: BaseException) -> tuple[HTTPStatus, dict[str, Any]]:
    """Build the (status, body) pair for an error; internal details are hidden."""
    status = http_status(error)
    if status is not HTTPStatus.INTERNAL_SERVER_ERROR:
        assert isinstance(error, DomainError)
        return status, {"code": str(error.code), "message": error.message}
    if isinstance(error, DomainError):
        logger.error("domain error code=%s: %s", error.code, error)
    else:
        logger.error("unhandled error: %s", error)
    return status, {"code": str(ErrorCode.INTERNAL), "message": INTERNAL_MESSAGE}