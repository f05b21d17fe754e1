from typing import Dict, List, Optional


class ServiceError(Exception):
    """Base failure raised by the store components and rendered by the app."""

    status_code = 500
    code = "internal"
    default_message = "Server error"

    def __init__(self, message: Optional[str] = None, errors: Optional[List[Dict]] = None):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message
        self.errors = errors or []

    def to_payload(self) -> Dict[str, object]:
        payload: Dict[str, object] = {
            "success": False,
            "message": self.message,
            "error": self.code,
        }
        if self.errors:
            payload["errors"] = self.errors
        return payload


class ValidationError(ServiceError):
    status_code = 400
    code = "validation"
    default_message = "Invalid request data."


class UnauthorizedError(ServiceError):
    status_code = 401
    code = "unauthorized"
    default_message = "Invalid credentials"


class ForbiddenError(ServiceError):
    status_code = 403
    code = "forbidden"
    default_message = "Access denied."


class NotFoundError(ServiceError):
    status_code = 404
    code = "not_found"
    default_message = "Resource not found."


class ConflictError(ServiceError):
    # Duplicate email / duplicate admin are reported as 400 to existing clients.
    status_code = 400
    code = "conflict"
    default_message = "Resource already exists."


class RequestTimeoutError(ServiceError):
    status_code = 408
    code = "timeout"
    default_message = "The request took too long to complete."


def field_error(field: str, message: str) -> Dict[str, str]:
    return {"field": field, "message": message}
