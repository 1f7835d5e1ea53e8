import uuid
from dataclasses import dataclass

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

REQUEST_ID_HEADER = "x-request-id"


@dataclass
class RequestContext:
    request_id: str
    correlation_id: str
    user_id: str | None = None


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Attach a per-request ``RequestContext``; runs inside ``CorrelationIdMiddleware``."""

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        context = RequestContext(
            request_id=uuid.uuid4().hex,
            correlation_id=getattr(request.state, "correlation_id", None) or "",
        )
        request.state.context = context
        response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = context.request_id
        return response
