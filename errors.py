"""
Error taxonomy for the lending API.

Every failure a request can end in is one of these; ``main.py`` renders
them as ``{"message": ...}`` with the matching HTTP status.
"""
from typing import Optional


class LendingError(Exception):
    """Base class for all errors surfaced to API callers."""

    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class Unauthenticated(LendingError):
    status_code = 401
    default_message = "unauthorized access"


class Forbidden(LendingError):
    status_code = 403
    default_message = "Forbidden"


class NotFound(LendingError):
    status_code = 404
    default_message = "Not found"


class NotMatched(LendingError):
    """A conditional update/delete found no record in the expected status."""

    status_code = 400
    default_message = "Loan not found or not in Pending status"


class InvalidInput(LendingError):
    status_code = 400
    default_message = "Invalid input"


class InternalFailure(LendingError):
    """The store or the identity provider could not be reached."""

    status_code = 500
