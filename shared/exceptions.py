"""
shared/exceptions.py
Domain errors raised by the booking engine and mapped to HTTP responses
by the handler registered in main.py.
"""

from typing import Optional


class DomainError(Exception):
    status_code: int = 400

    def __init__(self, detail: str, status_code: Optional[int] = None):
        super().__init__(detail)
        self.detail = detail
        if status_code is not None:
            self.status_code = status_code


class NotFoundError(DomainError):
    """Referenced entity is absent. Never retried."""
    status_code = 404


class ConflictError(DomainError):
    """A transition guard failed, or another writer got there first."""
    status_code = 409


class ValidationFailure(DomainError):
    """Malformed or out-of-range input, rejected before any write."""
    status_code = 400


class PermissionDenied(DomainError):
    status_code = 403

