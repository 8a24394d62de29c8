"""Custom exceptions and error handling for the object database engine."""
from typing import Dict, Any


class ObjdbError(Exception):
    """Base exception for engine errors."""

    status_code = 500

    def __init__(self, message: str, details: Dict[str, Any] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


class InvalidArgument(ObjdbError):
    """Raised when input is malformed (bad namespace, non-numeric id, non-string hash input)."""
    status_code = 400


class NotFound(ObjdbError):
    """Raised when an id, type, namespace or report does not exist."""
    status_code = 404


class Unauthorized(ObjdbError):
    """Raised when a credential is missing or invalid."""
    status_code = 401


class Forbidden(ObjdbError):
    """Raised when the authenticated role may not run the action."""
    status_code = 403


class Conflict(ObjdbError):
    """Raised when a mutation would break a structural invariant."""
    status_code = 409


class HasDependents(Conflict):
    """Raised when deleting a type that still has instances."""
    pass


class HasValues(Conflict):
    """Raised when deleting a requisite that still has stored values."""
    pass


class HasChildren(Conflict):
    """Raised when deleting an entity that still has child entities."""
    pass


class DuplicateOrder(Conflict):
    """Raised when an order mutation keeps colliding with a concurrent writer."""
    pass


class InvalidReference(ObjdbError):
    """Raised when a reference points at a missing type or another namespace."""
    status_code = 422


class StoreUnavailable(ObjdbError):
    """Raised when the backing store times out or refuses connections."""
    status_code = 503


class UnknownAction(ObjdbError):
    """Raised when an action code is not part of the vocabulary."""
    status_code = 400


def create_error_response(error: Exception) -> Dict[str, Any]:
    """
    Create a structured error object that doesn't leak system information.

    Args:
        error: The exception that occurred

    Returns:
        Dictionary with ``error``, ``type`` and ``details`` keys
    """
    if isinstance(error, ObjdbError):
        return {
            "error": error.message,
            "type": type(error).__name__,
            "details": error.details,
        }

    # Generic message for unexpected errors to prevent info leakage
    return {
        "error": "An internal error occurred. Please contact support.",
        "type": "InternalError",
        "details": {},
    }


def status_code_for(error: Exception) -> int:
    """HTTP status for an exception, 500 for anything outside the taxonomy."""
    return getattr(error, "status_code", 500)
