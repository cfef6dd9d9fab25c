"""
Error Taxonomy
==============
Domain errors raised by the order and payment engines.

Each error carries an HTTP-class status code so the HTTP layer can map it
without knowing the engines. Validation errors list every violated field.
"""

from typing import Dict, Any, Optional


class OrderServiceError(Exception):
    """Base class for all domain errors."""

    status_code = 500
    error_type = "internal_error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert to response body."""
        body = {
            "success": False,
            "status": self.status_code,
            "error": self.error_type,
            "message": self.message,
        }
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(OrderServiceError):
    """
    Malformed, missing or contradictory input.

    Args:
        fields: Mapping of field name -> problem description. Every
            violated field is reported, not only the first one.
    """

    status_code = 400
    error_type = "validation_error"

    def __init__(self, fields: Dict[str, str], message: Optional[str] = None):
        self.fields = dict(fields)
        if message is None:
            message = "; ".join(
                f"{name}: {problem}" for name, problem in self.fields.items()
            ) or "Invalid payload"
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        body["errors"] = self.fields
        return body


class NotFoundError(OrderServiceError):
    """Referenced record does not exist."""

    status_code = 404
    error_type = "not_found"

    def __init__(self, resource: str, resource_id: Any):
        self.resource = resource
        self.resource_id = resource_id
        super().__init__(
            f"{resource} not found",
            {"resource": resource, "id": resource_id}
        )


class ForbiddenError(OrderServiceError):
    """Requester is neither the owner nor elevated."""

    status_code = 403
    error_type = "forbidden"


class ConflictError(OrderServiceError):
    """Transition attempted from an illegal source state."""

    status_code = 409
    error_type = "conflict"

    def __init__(
        self,
        message: str,
        current_state: Optional[str] = None,
        target_state: Optional[str] = None
    ):
        details = {}
        if current_state is not None:
            details["current_state"] = current_state
        if target_state is not None:
            details["target_state"] = target_state
        self.current_state = current_state
        self.target_state = target_state
        super().__init__(message, details)


class DependencyError(OrderServiceError):
    """
    Gateway, cache or notification failure not caused by caller input.

    For two-write operations `compensated` tells the caller whether the
    first write was rolled back (True) or may still be visible (False).
    """

    status_code = 503
    error_type = "dependency_error"

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        compensated: Optional[bool] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        details = dict(details or {})
        if operation is not None:
            details["operation"] = operation
        if compensated is not None:
            details["compensated"] = compensated
        self.operation = operation
        self.compensated = compensated
        super().__init__(message, details)


class AuthenticationError(OrderServiceError):
    """No usable requester identity on the request."""

    status_code = 401
    error_type = "unauthenticated"
