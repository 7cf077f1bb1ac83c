"""Classified errors raised by the venue core."""

from __future__ import annotations

from enum import Enum


class ErrorCode(Enum):
    """Error classes surfaced to the command layer."""

    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"
    VALIDATION = "VALIDATION"
    INTERNAL = "INTERNAL"


class VenueError(RuntimeError):
    """Base error with a code and a user-safe message."""

    code = ErrorCode.INTERNAL

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return f"{self.code.value}: {self.message}"

    def to_dict(self) -> dict:
        return {"code": self.code.value, "message": self.message}


class NotFoundError(VenueError):
    """Raised when a referenced record does not exist."""

    code = ErrorCode.NOT_FOUND


class ConflictError(VenueError):
    """Raised when the current state forbids the requested change."""

    code = ErrorCode.CONFLICT


class ValidationError(VenueError):
    """Raised when incoming data fails validation."""

    code = ErrorCode.VALIDATION


class InternalError(VenueError):
    """Raised when the store fails underneath an operation."""

    code = ErrorCode.INTERNAL
