"""Administrative bootstrap.

Regions, Sites and region-wide authority are created here, outside the HTTP
surface. Everything goes through the coordinator's administrative path
(actor ``system:bootstrap``) so it is locked, validated and audited like any
other mutation.

Seed file format (JSON)::

    {
      "regions": [{"id": "north", "name": "North"}],
      "sites": [{"id": "alpha", "name": "Alpha", "region_id": "north",
                 "purpose": "", "coordinates": [48.85, 2.35],
                 "client_phone_number": "", "status": "NotCarried"}],
      "region_authorities": [{"external_identity": "github:p1", "region_id": "north"}]
    }

CLI::

    python -m services.admin.bootstrap seed --file seed.json
    python -m services.admin.bootstrap grant-region --identity github:p1 --region north
    python -m services.admin.bootstrap revoke-region --identity github:p1 --region north
"""

from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
from typing import Callable

from pydantic import BaseModel, Field, ValidationError
from sqlalchemy.orm import Session

from app.core.access import AccessCore
from app.core.audit import SqlAuditSink
from app.core.entities import Region, RoleKind, Site, SiteStatus
from app.core.errors import AccessCoreError, InvalidRequest
from app.core.hierarchy import HierarchyStore
from app.db.repository import HierarchyRepository

logger = logging.getLogger(__name__)


class RegionSeed(BaseModel):
    id: str = Field(..., min_length=1, max_length=64)
    name: str = Field(..., min_length=1, max_length=256)


class SiteSeed(BaseModel):
    id: str = Field(..., min_length=1, max_length=64)
    name: str = Field(..., min_length=1, max_length=256)
    region_id: str = Field(..., min_length=1, max_length=64)
    purpose: str = ""
    coordinates: tuple[float, float] | None = None
    client_phone_number: str = ""
    status: SiteStatus = SiteStatus.NOT_CARRIED


class RegionAuthoritySeed(BaseModel):
    external_identity: str = Field(..., min_length=1, max_length=256)
    region_id: str = Field(..., min_length=1, max_length=64)


class SeedIn(BaseModel):
    regions: list[RegionSeed] = []
    sites: list[SiteSeed] = []
    region_authorities: list[RegionAuthoritySeed] = []


def read_seed(path: str | Path) -> SeedIn:
    try:
        raw = json.loads(Path(path).read_text(encoding="utf-8"))
        return SeedIn.model_validate(raw)
    except (ValueError, ValidationError) as exc:
        raise InvalidRequest(f"seed file {path} is invalid: {exc}") from exc


def apply_seed(core: AccessCore, seed: SeedIn) -> dict[str, int]:
    """Create what the seed describes and skip what already exists.

    Returns counts of what was created.
    """
    created = {"regions": 0, "sites": 0, "region_authorities": 0}
    coordinator = core.coordinator

    for r in seed.regions:
        if r.id in core.store.snapshot().regions:
            continue
        coordinator.bootstrap_region(Region(id=r.id, name=r.name))
        created["regions"] += 1

    for s in seed.sites:
        if s.id in core.store.snapshot().sites:
            continue
        coordinator.bootstrap_site(
            Site(
                id=s.id,
                name=s.name,
                region_id=s.region_id,
                status=s.status,
                purpose=s.purpose,
                coordinates=s.coordinates,
                client_phone_number=s.client_phone_number,
            )
        )
        created["sites"] += 1

    for a in seed.region_authorities:
        principal = core.registry.resolve(a.external_identity)
        if core.store.snapshot().find_grant(principal.id, RoleKind.SITES_GLOBAL_MANAGER, a.region_id):
            continue
        coordinator.grant_region_authority(principal.id, a.region_id)
        created["region_authorities"] += 1

    logger.info("seed applied %s", created)
    return created


def build_core(session_factory: Callable[[], Session]) -> AccessCore:
    """Access core backed by the database: loaded from it, mirrored into it, audited to it."""
    repository = HierarchyRepository(session_factory)
    store = HierarchyStore(repository.load())
    return AccessCore(
        store,
        audit_sink=SqlAuditSink(session_factory),
        persistence=repository,
    )


def cmd_seed(core: AccessCore, args: argparse.Namespace) -> int:
    created = apply_seed(core, read_seed(args.file))
    print(json.dumps(created, sort_keys=True))
    return 0


def cmd_grant_region(core: AccessCore, args: argparse.Namespace) -> int:
    principal = core.registry.resolve(args.identity)
    grant = core.coordinator.grant_region_authority(principal.id, args.region)
    print(f"[bootstrap] {grant.kind.value} on {grant.scope_id} granted to {principal.external_ref} ({principal.id})")
    return 0


def cmd_revoke_region(core: AccessCore, args: argparse.Namespace) -> int:
    principal = core.registry.resolve(args.identity)
    grant = core.coordinator.revoke_region_authority(principal.id, args.region)
    print(f"[bootstrap] {grant.kind.value} on {grant.scope_id} revoked from {principal.external_ref}")
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="chantier-bootstrap", description="Administrative bootstrap of the site hierarchy")
    sub = parser.add_subparsers(dest="command", required=True)

    seed = sub.add_parser("seed", help="Create regions, sites and region authorities from a JSON file")
    seed.add_argument("--file", required=True, help="Path to seed JSON")
    seed.set_defaults(func=cmd_seed)

    grant = sub.add_parser("grant-region", help="Grant SitesGlobalManager on a region")
    grant.add_argument("--identity", required=True, help="External identity (JWT sub)")
    grant.add_argument("--region", required=True)
    grant.set_defaults(func=cmd_grant_region)

    revoke = sub.add_parser("revoke-region", help="Revoke SitesGlobalManager on a region")
    revoke.add_argument("--identity", required=True, help="External identity (JWT sub)")
    revoke.add_argument("--region", required=True)
    revoke.set_defaults(func=cmd_revoke_region)

    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")

    from app.db.base import Base
    from app.db.session import SessionLocal, engine
    from app.db import models  # noqa: F401

    Base.metadata.create_all(bind=engine)
    core = build_core(SessionLocal)
    try:
        return args.func(core, args)
    except AccessCoreError as exc:
        raise SystemExit(f"[bootstrap] {exc.kind}: {exc.detail}") from exc


if __name__ == "__main__":
    raise SystemExit(main())
