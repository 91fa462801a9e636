from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Generic, Optional, TypeVar

T = TypeVar("T")


class ErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    FORBIDDEN = "forbidden"
    CONFLICT = "conflict"
    VALIDATION_ERROR = "validation_error"
    INTERNAL_ERROR = "internal_error"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class ServiceResult(Generic[T]):
    """Outcome of a service call.

    Services return this instead of raising so that callers (HTTP routes, the
    WebSocket loop, the sweeper) can branch on ``error_kind`` without knowing
    which exception types each layer may produce.
    """

    success: bool
    message: str
    data: Optional[T] = None
    error_kind: Optional[ErrorKind] = None

    @classmethod
    def ok(cls, data: T, message: str = "Operation completed successfully") -> "ServiceResult[T]":
        return cls(success=True, message=message, data=data)

    @classmethod
    def fail(cls, error_kind: ErrorKind, message: str) -> "ServiceResult[T]":
        return cls(success=False, message=message, error_kind=error_kind)

    def cast_failure(self) -> "ServiceResult":
        """Re-wrap a failed result so it can be returned from a differently typed call."""

        return ServiceResult(success=False, message=self.message, error_kind=self.error_kind)


class OperationCancelledError(Exception):
    """Raised by store access when the caller's cancellation token fired."""
