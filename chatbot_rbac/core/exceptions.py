"""
Error taxonomy for the authorization core.

Every error carries an HTTP status and a stable ``error_code`` so the API layer
can translate it with a single exception handler.
"""
from typing import Any, Dict, Optional


class AuthorizationError(Exception):
    """Base class for authorization-core errors."""

    status_code: int = 400
    error_code: str = "AUTHORIZATION_ERROR"

    def __init__(self, detail: str, **extra: Any):
        super().__init__(detail)
        self.detail = detail
        self.extra: Dict[str, Any] = extra

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error_code": self.error_code, "detail": self.detail}
        if self.extra:
            payload["context"] = self.extra
        return payload


class DuplicateCode(AuthorizationError):
    status_code = 409
    error_code = "DUPLICATE_CODE"


class InvalidScope(AuthorizationError):
    status_code = 400
    error_code = "INVALID_SCOPE"


class ScopeMismatch(AuthorizationError):
    status_code = 400
    error_code = "SCOPE_MISMATCH"


class RoleScopeViolation(AuthorizationError):
    status_code = 403
    error_code = "ROLE_SCOPE_VIOLATION"


class SystemRoleImmutable(AuthorizationError):
    status_code = 403
    error_code = "SYSTEM_ROLE_IMMUTABLE"


class RoleInUse(AuthorizationError):
    status_code = 409
    error_code = "ROLE_IN_USE"


class PermissionInUse(AuthorizationError):
    status_code = 409
    error_code = "PERMISSION_IN_USE"


class RoleCapacityExceeded(AuthorizationError):
    status_code = 409
    error_code = "ROLE_CAPACITY_EXCEEDED"


class NotFound(AuthorizationError):
    status_code = 404
    error_code = "NOT_FOUND"

    def __init__(self, resource_type: str, resource_id: Optional[str] = None):
        detail = f"{resource_type.capitalize()} not found"
        super().__init__(detail, resource_type=resource_type, resource_id=resource_id)


class AuditWriteFailed(AuthorizationError):
    """The audit store rejected an entry; the triggering mutation is rolled back."""

    status_code = 500
    error_code = "AUDIT_WRITE_FAILED"
