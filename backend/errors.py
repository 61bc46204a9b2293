"""
Domain errors raised by the table store, the order state machine and the
booking ledger. The HTTP layer turns them into ``{"message": ..., **details}``.
"""
from typing import Any, Dict


class DomainError(Exception):
    status_code = 500

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        payload = {"message": self.message}
        payload.update(self.details)
        return payload


class ValidationError(DomainError):
    status_code = 400


class NotFoundError(DomainError):
    status_code = 404


class AuthorizationError(DomainError):
    status_code = 403


class ConflictError(DomainError):
    status_code = 409

    def __init__(self, message: str, **details: Any):
        details.setdefault("conflict", True)
        super().__init__(message, **details)


class PreconditionError(DomainError):
    """The requested action is blocked by the current state of other entities."""
    status_code = 409


class InvalidTransitionError(DomainError):
    status_code = 409


class UnavailableError(DomainError):
    status_code = 400


class RestaurantClosedError(UnavailableError):
    status_code = 503

    def __init__(self, message: str = "Restaurant is currently closed or not accepting orders.", **details: Any):
        details.setdefault("is_closed", True)
        super().__init__(message, **details)
