"""
Site hierarchy entities.

Rule:
- Entities are immutable values. Containment is expressed with id back-references
  (Site.region_id, Worker.site_id) and the Site's set of worker ids, never with
  object pointers, so a snapshot can be persisted as plain rows.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum


class RoleKind(str, Enum):
    # fr = chef·fe de chantier
    SITE_MANAGER = "SiteManager"
    # fr = responsable des chantiers
    SITES_GLOBAL_MANAGER = "SitesGlobalManager"


class ScopeType(str, Enum):
    SITE = "SITE"
    REGION = "REGION"


SCOPE_OF_ROLE: dict[RoleKind, ScopeType] = {
    RoleKind.SITE_MANAGER: ScopeType.SITE,
    RoleKind.SITES_GLOBAL_MANAGER: ScopeType.REGION,
}


class SiteStatus(str, Enum):
    NOT_CARRIED = "NotCarried"
    IN_PROGRESS = "InProgress"
    INTERRUPTED = "Interrupted"
    COMPLETED = "Completed"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Region:
    id: str
    name: str


@dataclass(frozen=True)
class Site:
    id: str
    name: str
    region_id: str
    worker_ids: frozenset[str] = frozenset()
    manager_id: str | None = None
    status: SiteStatus = SiteStatus.NOT_CARRIED
    purpose: str = ""
    coordinates: tuple[float, float] | None = None
    client_phone_number: str = ""


@dataclass(frozen=True)
class Worker:
    id: str
    name: str
    site_id: str


@dataclass(frozen=True)
class RoleGrant:
    kind: RoleKind
    scope_id: str
    principal_id: str
    granted_by: str
    granted_at: datetime = field(default_factory=utcnow, compare=False)

    @property
    def scope_type(self) -> ScopeType:
        return SCOPE_OF_ROLE[self.kind]

    @property
    def key(self) -> tuple[RoleKind, str]:
        return (self.kind, self.scope_id)


@dataclass(frozen=True)
class Principal:
    id: str
    external_ref: str
    created_at: datetime = field(default_factory=utcnow, compare=False)
