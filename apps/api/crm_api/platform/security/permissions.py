from __future__ import annotations

from crm_api.platform.security.context import AuthContext
from crm_api.platform.security.errors import MissingPermissionError


def require_permission(ctx: AuthContext, permission: str) -> None:
    if not ctx.has_permission(permission):
        raise MissingPermissionError(permission)
