from __future__ import annotations

from typing import Generic, Optional, TypeVar

from fastapi import status
from pydantic import BaseModel

from src.sermon_api.domain.results import ErrorKind, ServiceResult

T = TypeVar("T")

HTTP_413_CONTENT_TOO_LARGE = 413

# Non-standard, but widely used for "client closed request".
HTTP_499_CLIENT_CLOSED_REQUEST = 499

ERROR_STATUS_CODES = {
    ErrorKind.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorKind.FORBIDDEN: status.HTTP_403_FORBIDDEN,
    ErrorKind.CONFLICT: status.HTTP_409_CONFLICT,
    ErrorKind.VALIDATION_ERROR: status.HTTP_400_BAD_REQUEST,
    ErrorKind.CANCELLED: HTTP_499_CLIENT_CLOSED_REQUEST,
    ErrorKind.INTERNAL_ERROR: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


class ApiResponse(BaseModel, Generic[T]):
    success: bool = True
    message: str = "Operation completed successfully"
    data: Optional[T] = None


class ErrorResponse(BaseModel):
    success: bool = False
    message: str
    error_kind: Optional[ErrorKind] = None


class ServiceError(Exception):
    """Raised by routes for a failed ServiceResult; rendered by the app's handler."""

    def __init__(self, error_kind: ErrorKind, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.error_kind = error_kind
        self.message = message
        self.status_code = status_code or ERROR_STATUS_CODES.get(error_kind, status.HTTP_500_INTERNAL_SERVER_ERROR)

    def to_response(self) -> ErrorResponse:
        return ErrorResponse(message=self.message, error_kind=self.error_kind)


def error_kind_for_status(status_code: int) -> Optional[ErrorKind]:
    for kind, code in ERROR_STATUS_CODES.items():
        if code == status_code:
            return kind
    return None


def unwrap(result: ServiceResult[T], *, status_code: Optional[int] = None) -> ApiResponse[T]:
    """Turn a ServiceResult into a success envelope or raise ServiceError."""

    if not result.success:
        raise ServiceError(result.error_kind or ErrorKind.INTERNAL_ERROR, result.message, status_code)
    return ApiResponse(success=True, message=result.message, data=result.data)
