from dataclasses import dataclass

from fastapi import HTTPException, status
from jose import JWTError, jwt
from starlette.requests import Request

from crm_api.core.config import get_settings


@dataclass
class AuthUser:
    sub: str
    roles: list[str]


def _bearer_token(request: Request) -> str:
    auth_header = request.headers.get("authorization", "")
    return auth_header.replace("Bearer ", "", 1) if auth_header.startswith("Bearer ") else ""


async def get_current_user(request: Request) -> AuthUser:
    token = _bearer_token(request)
    if not token:
        return AuthUser(sub="anonymous", roles=[])

    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid bearer token")

    subject = str(payload.get("sub", "anonymous"))
    roles = payload.get("roles", [])
    if not isinstance(roles, list):
        roles = []
    context = getattr(request.state, "context", None)
    if context is not None:
        context.user_id = subject
    return AuthUser(sub=subject, roles=[str(role) for role in roles])
