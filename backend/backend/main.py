from __future__ import annotations

import logging
import os

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from app.core.audit_middleware import audit_http_middleware
from app.core.errors import (
    AccessCoreError,
    Busy,
    InvalidRequest,
    InvalidToken,
    InvariantViolation,
    NotFound,
    Unauthorized,
    UnknownIdentity,
)
from app.core.middleware import RequestContextMiddleware
from app.core.runtime import has_core, set_core
from app.db.base import Base
from app.db.session import SessionLocal, engine

# Register models
from app.db import models  # noqa: F401

from services.admin.bootstrap import apply_seed, build_core, read_seed
from services.auth.api import router as auth_router
from services.sites.api import router as sites_router

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
SEED_FILE = os.getenv("SEED_FILE")

logging.basicConfig(level=LOG_LEVEL.upper(), format="%(asctime)s %(levelname)s %(name)s %(message)s")
logger = logging.getLogger(__name__)

STATUS_BY_ERROR: list[tuple[type[AccessCoreError], int]] = [
    (NotFound, 404),
    (UnknownIdentity, 401),
    (InvalidToken, 401),
    (Unauthorized, 403),  # includes AdministrativeActionRequired
    (InvariantViolation, 409),
    (InvalidRequest, 422),
    (Busy, 503),
]


def status_for(exc: AccessCoreError) -> int:
    for cls, code in STATUS_BY_ERROR:
        if isinstance(exc, cls):
            return code
    return 500


app = FastAPI(title="Chantier Access Core")


@app.exception_handler(AccessCoreError)
async def _access_core_error(request: Request, exc: AccessCoreError):
    headers = {"Retry-After": "1"} if exc.retryable else None
    return JSONResponse(status_code=status_for(exc), content=exc.to_dict(), headers=headers)


@app.middleware("http")
async def _audit(request, call_next):
    return await audit_http_middleware(request, call_next)

# Added last so it wraps the audit middleware and the request id is bound first.
app.add_middleware(RequestContextMiddleware)

app.include_router(auth_router)
app.include_router(sites_router)


@app.on_event("startup")
def _startup():
    if has_core():
        # Already provided (tests, embedding process).
        return

    # Dev-friendly schema creation (migrations are available for real upgrades)
    Base.metadata.create_all(bind=engine)

    core = build_core(SessionLocal)
    if SEED_FILE:
        apply_seed(core, read_seed(SEED_FILE))
    set_core(core)
    logger.info("access core ready version=%s", core.store.snapshot().version)


@app.get("/health")
def health():
    return {"ok": True}
