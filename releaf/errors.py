from http import HTTPStatus
from typing import Any, Optional


class LedgerServiceError(Exception):
    """Base for every error the token service reports to callers."""

    status_code: int = HTTPStatus.BAD_REQUEST

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    @property
    def code(self) -> str:
        return self.__class__.__name__

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "details": self.details,
            }
        }


class ValidationError(LedgerServiceError):
    status_code = HTTPStatus.BAD_REQUEST


class AuthenticationError(LedgerServiceError):
    status_code = HTTPStatus.UNAUTHORIZED


class Forbidden(LedgerServiceError):
    status_code = HTTPStatus.FORBIDDEN


class NotFound(LedgerServiceError):
    status_code = HTTPStatus.NOT_FOUND


class Conflict(LedgerServiceError):
    status_code = HTTPStatus.CONFLICT


class DuplicatePendingRequest(Conflict):
    pass


class InvalidStateTransition(Conflict):
    pass


class InsufficientBalance(LedgerServiceError):
    status_code = HTTPStatus.BAD_REQUEST
