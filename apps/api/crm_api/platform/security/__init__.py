from crm_api.platform.security.context import AuthContext
from crm_api.platform.security.errors import AuthorizationError, MissingPermissionError
from crm_api.platform.security.permissions import require_permission

__all__ = [
    "AuthContext",
    "AuthorizationError",
    "MissingPermissionError",
    "require_permission",
]
