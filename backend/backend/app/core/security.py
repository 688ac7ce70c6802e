from __future__ import annotations

import os
import secrets
from datetime import datetime, timedelta, timezone

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import jwt, JWTError

from app.core.entities import Principal
from app.core.errors import InvalidToken
from app.core.runtime import get_core

bearer = HTTPBearer(auto_error=False)

JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret-change-me")
JWT_ALG = os.getenv("JWT_ALG", "HS256")
JWT_TTL_MIN = int(os.getenv("JWT_TTL_MIN", "30"))  # 30m default

IAM_ISSUER = os.getenv("IAM_ISSUER", "enterprise-iam")
IAM_AUDIENCE = os.getenv("IAM_AUDIENCE", "enterprise-core")


def _make_jti() -> str:
    return secrets.token_urlsafe(16)


def create_access_token(external_identity: str, ttl_minutes: int | None = None) -> str:
    """Mint a token the way the identity provider does. Used by tooling and tests."""
    now = datetime.now(timezone.utc)
    payload = {
        "iss": IAM_ISSUER,
        "aud": IAM_AUDIENCE,
        "jti": _make_jti(),
        "sub": external_identity,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(minutes=ttl_minutes if ttl_minutes is not None else JWT_TTL_MIN)).timestamp()),
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALG)


def verify_token(token: str) -> str:
    """Return the external identity (``sub``) carried by a valid token."""
    try:
        payload = jwt.decode(
            token,
            JWT_SECRET,
            algorithms=[JWT_ALG],
            audience=IAM_AUDIENCE,
            issuer=IAM_ISSUER,
        )
    except JWTError as exc:
        raise InvalidToken(f"token rejected: {exc}") from exc
    sub = payload.get("sub")
    if not isinstance(sub, str) or not sub:
        raise InvalidToken("token has no subject")
    return sub


def get_external_identity(creds: HTTPAuthorizationCredentials | None = Depends(bearer)) -> str:
    if not creds or not creds.credentials:
        raise InvalidToken("Not authenticated")
    return verify_token(creds.credentials)


def get_principal(external_identity: str = Depends(get_external_identity)) -> Principal:
    return get_core().registry.resolve(external_identity)
