"""Domain exceptions raised by the permission engine and its collaborators.

Routes let these propagate; ``crm.main`` maps each class to an HTTP status
and a ``{"message": ...}`` body.
"""
from typing import Any, Dict, Optional


class CRMError(Exception):
    """Base exception for the CRM backend."""

    status_code = 500

    def __init__(self, message: str = "An error occurred", details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details
        super().__init__(self.message)


class NotFoundError(CRMError):
    """Raised when a referenced role, user, project or override row is absent."""
    status_code = 404


class ForbiddenError(CRMError):
    """Raised when a permission, hierarchy or ownership check fails."""
    status_code = 403


class ForbiddenOperationError(CRMError):
    """Raised on structural protections (superadmin role, project owner, ...)."""
    status_code = 403


class ValidationError(CRMError):
    """Raised when input is malformed. Always raised before any mutation."""
    status_code = 400


class RankConflictError(CRMError):
    """Raised when a level change would break the reporting hierarchy."""
    status_code = 409


class LookupTimeoutError(CRMError):
    """Raised when a datastore lookup exceeds its time budget."""
    status_code = 503
