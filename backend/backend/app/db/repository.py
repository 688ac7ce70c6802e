"""Snapshot persistence for the site hierarchy.

The in-memory store is authoritative; this repository mirrors each published
snapshot into the ``hier_*`` and ``auth_*`` tables and rebuilds a snapshot from
them at startup. Writes replace the whole mirror in one database transaction and
are skipped when a newer version has already been written.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from typing import Callable

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from app.core.entities import Principal, Region, RoleGrant, RoleKind, Site, SiteStatus, Worker
from app.core.hierarchy import HierarchySnapshot
from app.db.models.auth import AuthPrincipal, AuthRoleGrant
from app.db.models.site import HierRegion, HierSite, HierState, HierWorker

logger = logging.getLogger(__name__)

STATE_ROW_ID = "hierarchy"


def _aware(dt: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes even for timezone=True columns.
    if dt is not None and dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


class HierarchyRepository:
    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self._session_factory = session_factory
        self._lock = threading.Lock()

    def stored_version(self) -> int:
        with self._session_factory() as db:
            state = db.get(HierState, STATE_ROW_ID)
            return state.version if state is not None else 0

    def load(self) -> HierarchySnapshot:
        with self._session_factory() as db:
            state = db.get(HierState, STATE_ROW_ID)
            regions = [Region(id=r.id, name=r.name) for r in db.scalars(select(HierRegion))]
            workers_by_site: dict[str, set[str]] = {}
            workers = []
            for w in db.scalars(select(HierWorker)):
                workers.append(Worker(id=w.id, name=w.name, site_id=w.site_id))
                workers_by_site.setdefault(w.site_id, set()).add(w.id)
            sites = [
                Site(
                    id=s.id,
                    name=s.name,
                    region_id=s.region_id,
                    worker_ids=frozenset(workers_by_site.get(s.id, ())),
                    manager_id=s.manager_principal_id,
                    status=SiteStatus(s.status),
                    purpose=s.purpose or "",
                    coordinates=(
                        (s.latitude, s.longitude)
                        if s.latitude is not None and s.longitude is not None
                        else None
                    ),
                    client_phone_number=s.client_phone_number or "",
                )
                for s in db.scalars(select(HierSite))
            ]
            principals = [
                Principal(id=p.id, external_ref=p.external_ref, created_at=_aware(p.created_at))
                for p in db.scalars(select(AuthPrincipal))
            ]
            grants = [
                RoleGrant(
                    kind=RoleKind(g.role),
                    scope_id=g.scope_id,
                    principal_id=g.principal_id,
                    granted_by=g.granted_by,
                    granted_at=_aware(g.granted_at),
                )
                for g in db.scalars(select(AuthRoleGrant))
            ]
            version = state.version if state is not None else 0

        snapshot = HierarchySnapshot.build(
            regions=regions,
            sites=sites,
            workers=workers,
            principals=principals,
            grants=grants,
            version=version,
        )
        logger.info(
            "hierarchy loaded version=%s regions=%s sites=%s workers=%s principals=%s",
            snapshot.version,
            len(snapshot.regions),
            len(snapshot.sites),
            len(snapshot.workers),
            len(snapshot.principals),
        )
        return snapshot

    def persist(self, snapshot: HierarchySnapshot) -> bool:
        """Write ``snapshot`` unless an equal or newer version is already stored."""
        with self._lock, self._session_factory() as db:
            state = db.get(HierState, STATE_ROW_ID)
            if state is not None and state.version >= snapshot.version:
                logger.debug("skip persist version=%s stored=%s", snapshot.version, state.version)
                return False

            # children first
            db.execute(delete(AuthRoleGrant))
            db.execute(delete(HierWorker))
            db.execute(delete(HierSite))
            db.execute(delete(HierRegion))
            db.execute(delete(AuthPrincipal))
            db.flush()

            db.add_all(
                AuthPrincipal(id=p.id, external_ref=p.external_ref, created_at=p.created_at)
                for p in snapshot.principals.values()
            )
            db.add_all(HierRegion(id=r.id, name=r.name) for r in snapshot.regions.values())
            db.flush()
            db.add_all(
                HierSite(
                    id=s.id,
                    name=s.name,
                    region_id=s.region_id,
                    manager_principal_id=s.manager_id,
                    status=s.status.value,
                    purpose=s.purpose,
                    latitude=s.coordinates[0] if s.coordinates else None,
                    longitude=s.coordinates[1] if s.coordinates else None,
                    client_phone_number=s.client_phone_number,
                )
                for s in snapshot.sites.values()
            )
            db.flush()
            db.add_all(HierWorker(id=w.id, name=w.name, site_id=w.site_id) for w in snapshot.workers.values())
            db.add_all(
                AuthRoleGrant(
                    principal_id=g.principal_id,
                    role=g.kind.value,
                    scope_type=g.scope_type.value,
                    scope_id=g.scope_id,
                    granted_by=g.granted_by,
                    granted_at=g.granted_at,
                )
                for g in snapshot.all_grants()
            )
            if state is None:
                db.add(HierState(id=STATE_ROW_ID, version=snapshot.version))
            else:
                state.version = snapshot.version
            db.commit()
        logger.debug("hierarchy persisted version=%s", snapshot.version)
        return True
