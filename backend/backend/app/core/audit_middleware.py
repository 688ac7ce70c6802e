from __future__ import annotations

import time
from typing import Callable

from fastapi import Request, Response

from app.core.audit import AuditOutcome, AuditRecord, emit
from app.core.errors import AccessCoreError
from app.core.request_context import get_request_id
from app.core.runtime import get_core, has_core
from app.core.security import verify_token


def _client_ip(request: Request) -> str | None:
    # If behind a proxy/load balancer, you can trust X-Forwarded-For (configure accordingly).
    xff = request.headers.get("X-Forwarded-For")
    if xff:
        return xff.split(",")[0].strip()
    if request.client:
        return request.client.host
    return None


def _actor(request: Request) -> str:
    authz = request.headers.get("Authorization")
    if authz and authz.lower().startswith("bearer "):
        try:
            return verify_token(authz.split(" ", 1)[1].strip())
        except AccessCoreError:
            return "anonymous"
    return "anonymous"


def _record(request: Request, status_code: int, duration_ms: int, action: str) -> None:
    if not has_core():
        return
    emit(
        get_core().audit_sink,
        AuditRecord(
            actor=_actor(request),
            action=action,
            target_kind="http",
            target_id=request.url.path,
            outcome=AuditOutcome.COMMITTED if 200 <= status_code < 400 else AuditOutcome.FAILED,
            payload={
                "method": request.method,
                "path": request.url.path,
                "status_code": status_code,
                "duration_ms": duration_ms,
            },
            ip_address=_client_ip(request),
            user_agent=request.headers.get("User-Agent"),
            status_code=status_code,
            request_id=get_request_id(),
        ),
    )


async def audit_http_middleware(request: Request, call_next: Callable) -> Response:
    """Security audit middleware.

    - Logs every /auth request
    - Logs authentication and authorization failures (401/403) across the API
    """
    start = time.perf_counter()

    try:
        response = await call_next(request)
    except Exception:
        _record(request, 500, int((time.perf_counter() - start) * 1000), "http.exception")
        raise

    status_code = response.status_code
    if request.url.path.startswith("/auth") or status_code in (401, 403):
        _record(request, status_code, int((time.perf_counter() - start) * 1000), "http.request")

    return response
