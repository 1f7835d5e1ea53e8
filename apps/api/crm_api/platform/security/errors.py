from __future__ import annotations


class AuthorizationError(Exception):
    """Base authorization error for permission enforcement failures."""


class MissingPermissionError(AuthorizationError):
    """Raised when the caller lacks a permission required by an operation."""

    def __init__(self, permission: str) -> None:
        self.permission = permission
        super().__init__(f"Missing permission: {permission}")
