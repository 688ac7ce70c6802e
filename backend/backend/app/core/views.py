from __future__ import annotations

from typing import Any

from app.core.entities import Principal, Region, RoleGrant, Site, Worker
from app.core.hierarchy import HierarchySnapshot


def grant_view(g: RoleGrant) -> dict:
    return {
        "role": g.kind.value,
        "scope_type": g.scope_type.value,
        "scope_id": g.scope_id,
        "principal_id": g.principal_id,
        "granted_by": g.granted_by,
        "granted_at": g.granted_at.isoformat(),
    }


def region_view(snapshot: HierarchySnapshot, r: Region) -> dict:
    return {
        "id": r.id,
        "name": r.name,
        "site_ids": sorted(snapshot.sites_by_region.get(r.id, ())),
    }


def site_view(s: Site) -> dict:
    return {
        "id": s.id,
        "name": s.name,
        "region_id": s.region_id,
        "worker_ids": sorted(s.worker_ids),
        "manager_id": s.manager_id,
        "status": s.status.value,
        "purpose": s.purpose,
        "coordinates": list(s.coordinates) if s.coordinates is not None else None,
        "client_phone_number": s.client_phone_number,
    }


def worker_view(w: Worker) -> dict:
    return {"id": w.id, "name": w.name, "site_id": w.site_id}


def principal_view(snapshot: HierarchySnapshot, p: Principal) -> dict:
    grants = sorted(snapshot.grants_of(p.id), key=lambda g: (g.kind.value, g.scope_id))
    return {
        "id": p.id,
        "external_ref": p.external_ref,
        "created_at": p.created_at.isoformat(),
        "grants": [grant_view(g) for g in grants],
    }


def view_of(snapshot: HierarchySnapshot, obj: Any) -> dict:
    if isinstance(obj, Region):
        return region_view(snapshot, obj)
    if isinstance(obj, Site):
        return site_view(obj)
    if isinstance(obj, Worker):
        return worker_view(obj)
    if isinstance(obj, Principal):
        return principal_view(snapshot, obj)
    if isinstance(obj, RoleGrant):
        return grant_view(obj)
    raise TypeError(f"no view for {type(obj).__name__}")
