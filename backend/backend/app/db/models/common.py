from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import DateTime, String
from sqlalchemy.orm import Mapped, mapped_column


def _uuid() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return datetime.now(timezone.utc)


class HasId:
    # Domain ids ("north", "alpha", "W-17") are supplied by callers; generated ones are uuid4.
    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_uuid)


class HasCreatedAt:
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_now, nullable=False)


__all__ = ["HasId", "HasCreatedAt"]
