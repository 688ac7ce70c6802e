from __future__ import annotations

from datetime import datetime

from app.db.base import Base
from app.db.models.common import HasId, HasCreatedAt
from sqlalchemy import String, DateTime, ForeignKey, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship


class AuthPrincipal(Base, HasId, HasCreatedAt):
    __tablename__ = "auth_principal"

    # Opaque reference issued by the identity provider (JWT "sub").
    external_ref: Mapped[str] = mapped_column(String(256), unique=True, index=True, nullable=False)

    grants = relationship("AuthRoleGrant", back_populates="principal", cascade="all, delete-orphan")


class AuthRoleGrant(Base, HasId, HasCreatedAt):
    __tablename__ = "auth_role_grant"

    # Scoped RBAC grant:
    #   SiteManager        -> scope_type SITE,   scope_id = hier_site.id
    #   SitesGlobalManager -> scope_type REGION, scope_id = hier_region.id
    principal_id: Mapped[str] = mapped_column(String(64), ForeignKey("auth_principal.id"), index=True, nullable=False)
    role: Mapped[str] = mapped_column(String(32), index=True, nullable=False)
    scope_type: Mapped[str] = mapped_column(String(16), index=True, nullable=False)
    scope_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)

    granted_by: Mapped[str] = mapped_column(String(64), nullable=False)
    granted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    principal = relationship("AuthPrincipal", back_populates="grants")

    __table_args__ = (
        Index(
            "uq_auth_role_grant_scope",
            "principal_id",
            "role",
            "scope_id",
            unique=True,
        ),
    )


__all__ = ["AuthPrincipal", "AuthRoleGrant"]
