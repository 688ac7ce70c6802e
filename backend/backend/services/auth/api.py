from __future__ import annotations

from fastapi import APIRouter, Depends

from app.core.entities import Principal
from app.core.runtime import get_core
from app.core.security import get_principal
from app.core.views import principal_view

router = APIRouter(prefix="/auth", tags=["auth"])


@router.get("/me")
def me(principal: Principal = Depends(get_principal)):
    # Tokens are issued by the identity provider; this service only maps them to principals.
    return principal_view(get_core().store.snapshot(), principal)
