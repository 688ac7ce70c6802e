"""
Persisted site hierarchy.

Rule:
- The in-memory HierarchyStore is authoritative while the service runs; these tables
  are its crash-consistent mirror, rewritten as a whole snapshot per commit.
- Containment is by id columns only (region_id, site_id).
"""

from __future__ import annotations

from sqlalchemy import Float, ForeignKey, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base
from app.db.models.common import HasId, HasCreatedAt


class HierRegion(Base, HasId, HasCreatedAt):
    __tablename__ = "hier_region"

    name: Mapped[str] = mapped_column(String(256), nullable=False)


class HierSite(Base, HasId, HasCreatedAt):
    __tablename__ = "hier_site"

    name: Mapped[str] = mapped_column(String(256), nullable=False)
    region_id: Mapped[str] = mapped_column(String(64), ForeignKey("hier_region.id"), index=True, nullable=False)
    manager_principal_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)

    status: Mapped[str] = mapped_column(String(32), default="NotCarried", nullable=False)  # NotCarried|InProgress|Interrupted|Completed
    purpose: Mapped[str] = mapped_column(String(512), default="", nullable=False)
    latitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    longitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    client_phone_number: Mapped[str] = mapped_column(String(64), default="", nullable=False)


class HierWorker(Base, HasId, HasCreatedAt):
    __tablename__ = "hier_worker"

    name: Mapped[str] = mapped_column(String(256), nullable=False)
    site_id: Mapped[str] = mapped_column(String(64), ForeignKey("hier_site.id"), index=True, nullable=False)


class HierState(Base, HasId, HasCreatedAt):
    """Single row holding the version of the last persisted snapshot."""

    __tablename__ = "hier_state"

    version: Mapped[int] = mapped_column(Integer, default=0, nullable=False)


Index("ix_hier_site_region_name", HierSite.region_id, HierSite.name)

__all__ = ["HierRegion", "HierSite", "HierWorker", "HierState"]
