from __future__ import annotations
import uuid
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from app.core.request_context import reset_request_id, set_request_id


# Matches sys_audit_log.request_id.
MAX_REQUEST_ID_LEN = 64


def request_id_from(request: Request) -> str:
    supplied = request.headers.get("X-Request-Id")
    if supplied and len(supplied) <= MAX_REQUEST_ID_LEN:
        return supplied
    return str(uuid.uuid4())


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Binds the correlation id to the request so audit records pick it up."""

    async def dispatch(self, request: Request, call_next):
        request_id = request_id_from(request)
        request.state.request_id = request_id
        token = set_request_id(request_id)
        try:
            response = await call_next(request)
        finally:
            reset_request_id(token)
        response.headers["X-Request-Id"] = request_id
        return response
