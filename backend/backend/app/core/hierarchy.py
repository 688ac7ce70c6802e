"""Hierarchy Store.

The authoritative in-memory model of Region -> Site -> Worker containment and of
role grants. State is published as immutable, versioned snapshots:

- readers take ``store.snapshot()`` and never block (one reference read);
- writers open ``store.transaction()``, mutate a draft, and the draft is
  validated and published as ``version + 1`` on exit, or discarded whole.

Only the mutation coordinator (and the administrative bootstrap path) writes.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Callable, Iterable, Iterator, Mapping, Protocol

from app.core.entities import (
    Principal,
    Region,
    RoleGrant,
    RoleKind,
    ScopeType,
    Site,
    SiteStatus,
    Worker,
)
from app.core.errors import Busy, InvariantViolation, NotFound
from app.core.locks import LOCK_TIMEOUT_SECONDS

logger = logging.getLogger(__name__)

_EMPTY: frozenset = frozenset()


def _frozen(d: dict) -> Mapping:
    return MappingProxyType(d)


@dataclass(frozen=True)
class HierarchySnapshot:
    version: int = 0
    regions: Mapping[str, Region] = field(default_factory=lambda: _frozen({}))
    sites: Mapping[str, Site] = field(default_factory=lambda: _frozen({}))
    workers: Mapping[str, Worker] = field(default_factory=lambda: _frozen({}))
    principals: Mapping[str, Principal] = field(default_factory=lambda: _frozen({}))
    # principal id -> grants held
    grants: Mapping[str, frozenset[RoleGrant]] = field(default_factory=lambda: _frozen({}))

    # Derived indices (rebuilt by HierarchySnapshot.build, maintained by transactions)
    sites_by_region: Mapping[str, frozenset[str]] = field(default_factory=lambda: _frozen({}))
    principal_by_ref: Mapping[str, str] = field(default_factory=lambda: _frozen({}))
    grant_holders: Mapping[tuple[RoleKind, str], frozenset[str]] = field(default_factory=lambda: _frozen({}))

    @classmethod
    def build(
        cls,
        *,
        regions: Iterable[Region] = (),
        sites: Iterable[Site] = (),
        workers: Iterable[Worker] = (),
        principals: Iterable[Principal] = (),
        grants: Iterable[RoleGrant] = (),
        version: int = 0,
    ) -> "HierarchySnapshot":
        """Assemble a snapshot from flat rows, rebuild indices and check every invariant."""
        tx = HierarchyTransaction(cls())
        for r in regions:
            tx.regions[r.id] = r
        for s in sites:
            tx.sites[s.id] = s
            tx.sites_by_region[s.region_id] = tx.sites_by_region.get(s.region_id, _EMPTY) | {s.id}
        for w in workers:
            tx.workers[w.id] = w
        for p in principals:
            if p.external_ref in tx.principal_by_ref:
                raise InvariantViolation(f"external identity '{p.external_ref}' maps to two principals")
            tx.principals[p.id] = p
            tx.principal_by_ref[p.external_ref] = p.id
        for g in grants:
            held = tx.grants.get(g.principal_id, _EMPTY)
            if any(h.key == g.key for h in held):
                raise InvariantViolation(
                    f"principal '{g.principal_id}' holds {g.kind.value} on '{g.scope_id}' twice"
                )
            tx.grants[g.principal_id] = held | {g}
            tx.grant_holders[g.key] = tx.grant_holders.get(g.key, _EMPTY) | {g.principal_id}
        tx.touch_all()
        return tx.commit(version=version)

    @property
    def is_empty(self) -> bool:
        return not (self.regions or self.sites or self.workers or self.principals)

    # ---- Reads ----
    def get_region(self, region_id: str) -> Region:
        r = self.regions.get(region_id)
        if r is None:
            raise NotFound("Region", region_id)
        return r

    def get_site(self, site_id: str) -> Site:
        s = self.sites.get(site_id)
        if s is None:
            raise NotFound("Site", site_id)
        return s

    def get_worker(self, worker_id: str) -> Worker:
        w = self.workers.get(worker_id)
        if w is None:
            raise NotFound("Worker", worker_id)
        return w

    def get_principal(self, principal_id: str) -> Principal:
        p = self.principals.get(principal_id)
        if p is None:
            raise NotFound("Principal", principal_id)
        return p

    def sites_of_region(self, region_id: str) -> list[Site]:
        self.get_region(region_id)
        return [self.sites[sid] for sid in sorted(self.sites_by_region.get(region_id, _EMPTY))]

    def workers_of_site(self, site_id: str) -> list[Worker]:
        site = self.get_site(site_id)
        return [self.workers[wid] for wid in sorted(site.worker_ids)]

    def grants_of(self, principal_id: str) -> frozenset[RoleGrant]:
        return self.grants.get(principal_id, _EMPTY)

    def find_grant(self, principal_id: str, kind: RoleKind, scope_id: str) -> RoleGrant | None:
        for g in self.grants_of(principal_id):
            if g.kind == kind and g.scope_id == scope_id:
                return g
        return None

    def holders(self, kind: RoleKind, scope_id: str) -> frozenset[str]:
        return self.grant_holders.get((kind, scope_id), _EMPTY)

    def principal_for_ref(self, external_ref: str) -> Principal | None:
        pid = self.principal_by_ref.get(external_ref)
        return self.principals.get(pid) if pid is not None else None

    def all_grants(self) -> list[RoleGrant]:
        out: list[RoleGrant] = []
        for pid in sorted(self.grants):
            out.extend(sorted(self.grants[pid], key=lambda g: (g.kind.value, g.scope_id)))
        return out


class HierarchyTransaction:
    """Mutable draft of a snapshot.

    Each write checks its own preconditions eagerly (unknown ids raise NotFound);
    ``commit`` then re-validates every invariant touching the entities that changed
    and raises InvariantViolation without publishing anything if one fails.
    """

    def __init__(self, base: HierarchySnapshot) -> None:
        self.base = base
        self.regions: dict[str, Region] = dict(base.regions)
        self.sites: dict[str, Site] = dict(base.sites)
        self.workers: dict[str, Worker] = dict(base.workers)
        self.principals: dict[str, Principal] = dict(base.principals)
        self.grants: dict[str, frozenset[RoleGrant]] = dict(base.grants)
        self.sites_by_region: dict[str, frozenset[str]] = dict(base.sites_by_region)
        self.principal_by_ref: dict[str, str] = dict(base.principal_by_ref)
        self.grant_holders: dict[tuple[RoleKind, str], frozenset[str]] = dict(base.grant_holders)

        self._touched_sites: set[str] = set()
        self._touched_workers: set[str] = set()
        self._touched_principals: set[str] = set()

    # ---- Reads against the draft ----
    def get_region(self, region_id: str) -> Region:
        r = self.regions.get(region_id)
        if r is None:
            raise NotFound("Region", region_id)
        return r

    def get_site(self, site_id: str) -> Site:
        s = self.sites.get(site_id)
        if s is None:
            raise NotFound("Site", site_id)
        return s

    def get_worker(self, worker_id: str) -> Worker:
        w = self.workers.get(worker_id)
        if w is None:
            raise NotFound("Worker", worker_id)
        return w

    def get_principal(self, principal_id: str) -> Principal:
        p = self.principals.get(principal_id)
        if p is None:
            raise NotFound("Principal", principal_id)
        return p

    def find_grant(self, principal_id: str, kind: RoleKind, scope_id: str) -> RoleGrant | None:
        for g in self.grants.get(principal_id, _EMPTY):
            if g.kind == kind and g.scope_id == scope_id:
                return g
        return None

    # ---- Administrative writes (bootstrap only) ----
    def add_region(self, region: Region) -> Region:
        if region.id in self.regions:
            raise InvariantViolation(f"region '{region.id}' already exists")
        self.regions[region.id] = region
        return region

    def add_site(self, site: Site) -> Site:
        if site.id in self.sites:
            raise InvariantViolation(f"site '{site.id}' already exists")
        self.get_region(site.region_id)
        if site.worker_ids or site.manager_id is not None:
            raise InvariantViolation("a new site starts without workers or manager")
        self.sites[site.id] = site
        self.sites_by_region[site.region_id] = self.sites_by_region.get(site.region_id, _EMPTY) | {site.id}
        self._touched_sites.add(site.id)
        return site

    def add_principal(self, principal: Principal) -> Principal:
        if principal.id in self.principals:
            raise InvariantViolation(f"principal '{principal.id}' already exists")
        if principal.external_ref in self.principal_by_ref:
            raise InvariantViolation(f"external identity '{principal.external_ref}' is already mapped")
        self.principals[principal.id] = principal
        self.principal_by_ref[principal.external_ref] = principal.id
        self._touched_principals.add(principal.id)
        return principal

    def ensure_principal(self, external_ref: str, make: Callable[[str], Principal]) -> Principal:
        pid = self.principal_by_ref.get(external_ref)
        if pid is not None:
            return self.principals[pid]
        return self.add_principal(make(external_ref))

    # ---- Coordinator writes ----
    def add_worker_to_site(self, worker_id: str, name: str, site_id: str) -> Worker:
        site = self.get_site(site_id)
        existing = self.workers.get(worker_id)
        if existing is not None:
            raise InvariantViolation(
                f"worker '{worker_id}' already belongs to site '{existing.site_id}'"
            )
        worker = Worker(id=worker_id, name=name, site_id=site_id)
        self.workers[worker_id] = worker
        self.sites[site_id] = replace(site, worker_ids=site.worker_ids | {worker_id})
        self._touched_sites.add(site_id)
        self._touched_workers.add(worker_id)
        return worker

    def remove_worker_from_site(self, worker_id: str, site_id: str) -> Worker:
        site = self.get_site(site_id)
        worker = self.workers.get(worker_id)
        if worker is None or worker.site_id != site_id:
            raise NotFound("Worker", worker_id, f"worker '{worker_id}' is not on site '{site_id}'")
        del self.workers[worker_id]
        self.sites[site_id] = replace(site, worker_ids=site.worker_ids - {worker_id})
        self._touched_sites.add(site_id)
        self._touched_workers.add(worker_id)
        return worker

    def set_site_manager(self, site_id: str, principal_id: str | None) -> Site:
        site = self.get_site(site_id)
        if principal_id is not None:
            self.get_principal(principal_id)
        updated = replace(site, manager_id=principal_id)
        self.sites[site_id] = updated
        self._touched_sites.add(site_id)
        return updated

    def set_site_status(self, site_id: str, status: SiteStatus) -> Site:
        site = self.get_site(site_id)
        updated = replace(site, status=SiteStatus(status))
        self.sites[site_id] = updated
        self._touched_sites.add(site_id)
        return updated

    def add_role_grant(self, grant: RoleGrant) -> RoleGrant:
        self.get_principal(grant.principal_id)
        if grant.scope_type == ScopeType.SITE:
            self.get_site(grant.scope_id)
            self._touched_sites.add(grant.scope_id)
        else:
            self.get_region(grant.scope_id)
        if self.find_grant(grant.principal_id, grant.kind, grant.scope_id) is not None:
            raise InvariantViolation(
                f"principal '{grant.principal_id}' already holds {grant.kind.value} on '{grant.scope_id}'"
            )
        self.grants[grant.principal_id] = self.grants.get(grant.principal_id, _EMPTY) | {grant}
        self.grant_holders[grant.key] = self.grant_holders.get(grant.key, _EMPTY) | {grant.principal_id}
        self._touched_principals.add(grant.principal_id)
        return grant

    def remove_role_grant(self, principal_id: str, kind: RoleKind, scope_id: str) -> RoleGrant:
        grant = self.find_grant(principal_id, kind, scope_id)
        if grant is None:
            raise NotFound("RoleGrant", f"{kind.value}:{scope_id}", f"principal '{principal_id}' holds no {kind.value} on '{scope_id}'")
        self.grants[principal_id] = self.grants[principal_id] - {grant}
        if not self.grants[principal_id]:
            del self.grants[principal_id]
        remaining = self.grant_holders.get(grant.key, _EMPTY) - {principal_id}
        if remaining:
            self.grant_holders[grant.key] = remaining
        else:
            self.grant_holders.pop(grant.key, None)
        if grant.scope_type == ScopeType.SITE:
            self._touched_sites.add(scope_id)
        self._touched_principals.add(principal_id)
        return grant

    # ---- Validation / publish ----
    def touch_all(self) -> None:
        self._touched_sites.update(self.sites)
        self._touched_workers.update(self.workers)
        self._touched_principals.update(self.principals)
        self._touched_principals.update(self.grants)

    def _validate(self) -> None:
        for sid in sorted(self._touched_sites):
            site = self.sites.get(sid)
            if site is None:
                continue
            if site.region_id not in self.regions:
                raise InvariantViolation(f"site '{sid}' references unknown region '{site.region_id}'")
            if sid not in self.sites_by_region.get(site.region_id, _EMPTY):
                raise InvariantViolation(f"site '{sid}' is not indexed under region '{site.region_id}'")
            for wid in site.worker_ids:
                w = self.workers.get(wid)
                if w is None or w.site_id != sid:
                    raise InvariantViolation(f"worker '{wid}' must belong to exactly one site")
            holders = self.grant_holders.get((RoleKind.SITE_MANAGER, sid), _EMPTY)
            if len(holders) > 1:
                raise InvariantViolation(f"site '{sid}' would have {len(holders)} active site managers")
            expected = {site.manager_id} if site.manager_id is not None else set()
            if set(holders) != expected:
                raise InvariantViolation(f"site '{sid}' manager does not match its SiteManager grant")

        for wid in sorted(self._touched_workers):
            w = self.workers.get(wid)
            if w is None:
                continue
            site = self.sites.get(w.site_id)
            if site is None or wid not in site.worker_ids:
                raise InvariantViolation(f"worker '{wid}' must belong to exactly one site")

        for pid in sorted(self._touched_principals):
            if pid not in self.principals:
                raise InvariantViolation(f"grants reference unknown principal '{pid}'")
            held = self.grants.get(pid, _EMPTY)
            if len({g.key for g in held}) != len(held):
                raise InvariantViolation(f"principal '{pid}' holds a duplicate grant")
            for g in held:
                if g.principal_id != pid:
                    raise InvariantViolation(f"grant filed under '{pid}' names '{g.principal_id}'")
                scopes = self.sites if g.scope_type == ScopeType.SITE else self.regions
                if g.scope_id not in scopes:
                    raise InvariantViolation(
                        f"{g.kind.value} grant of '{pid}' is scoped to unknown {g.scope_type.value.lower()} '{g.scope_id}'"
                    )

    def commit(self, version: int | None = None) -> HierarchySnapshot:
        self._validate()
        return HierarchySnapshot(
            version=self.base.version + 1 if version is None else version,
            regions=_frozen(self.regions),
            sites=_frozen(self.sites),
            workers=_frozen(self.workers),
            principals=_frozen(self.principals),
            grants=_frozen(self.grants),
            sites_by_region=_frozen(self.sites_by_region),
            principal_by_ref=_frozen(self.principal_by_ref),
            grant_holders=_frozen(self.grant_holders),
        )


class SnapshotPersistence(Protocol):
    def persist(self, snapshot: HierarchySnapshot) -> object: ...


def persist_quietly(persistence: SnapshotPersistence | None, snapshot: HierarchySnapshot) -> None:
    """Mirror a published snapshot. Failures are logged; the in-memory state stands."""
    if persistence is None:
        return
    try:
        persistence.persist(snapshot)
    except Exception:
        logger.warning("snapshot persistence failed version=%s", snapshot.version, exc_info=True)


class HierarchyStore:
    """Single owned holder of the current snapshot."""

    def __init__(self, snapshot: HierarchySnapshot | None = None, *, commit_timeout: float | None = None) -> None:
        self._snapshot = snapshot if snapshot is not None else HierarchySnapshot()
        self._commit_lock = threading.Lock()
        self.commit_timeout = LOCK_TIMEOUT_SECONDS if commit_timeout is None else commit_timeout

    def snapshot(self) -> HierarchySnapshot:
        return self._snapshot

    # ---- Reads ----
    def get_region(self, region_id: str) -> Region:
        return self._snapshot.get_region(region_id)

    def get_site(self, site_id: str) -> Site:
        return self._snapshot.get_site(site_id)

    def get_worker(self, worker_id: str) -> Worker:
        return self._snapshot.get_worker(worker_id)

    def get_principal(self, principal_id: str) -> Principal:
        return self._snapshot.get_principal(principal_id)

    def sites_of_region(self, region_id: str) -> list[Site]:
        return self._snapshot.sites_of_region(region_id)

    def workers_of_site(self, site_id: str) -> list[Worker]:
        return self._snapshot.workers_of_site(site_id)

    # ---- Writes ----
    @contextmanager
    def _committing(self) -> Iterator[None]:
        if not self._commit_lock.acquire(timeout=self.commit_timeout):
            raise Busy("hierarchy store is busy, retry later")
        try:
            yield
        finally:
            self._commit_lock.release()

    @contextmanager
    def transaction(self) -> Iterator[HierarchyTransaction]:
        with self._committing():
            tx = HierarchyTransaction(self._snapshot)
            yield tx
            self._snapshot = tx.commit()
        logger.debug("hierarchy committed version=%s", self._snapshot.version)

    def load(self, snapshot: HierarchySnapshot) -> None:
        """Replace the whole state, e.g. with what persistence returned."""
        rebuilt = HierarchySnapshot.build(
            regions=snapshot.regions.values(),
            sites=snapshot.sites.values(),
            workers=snapshot.workers.values(),
            principals=snapshot.principals.values(),
            grants=snapshot.all_grants(),
            version=snapshot.version,
        )
        with self._committing():
            self._snapshot = rebuilt

    def set_site_manager(self, site_id: str, principal_id: str | None) -> Site:
        with self.transaction() as tx:
            return tx.set_site_manager(site_id, principal_id)

    def set_site_status(self, site_id: str, status: SiteStatus) -> Site:
        with self.transaction() as tx:
            return tx.set_site_status(site_id, status)

    def add_worker_to_site(self, worker_id: str, name: str, site_id: str) -> Worker:
        with self.transaction() as tx:
            return tx.add_worker_to_site(worker_id, name, site_id)

    def remove_worker_from_site(self, worker_id: str, site_id: str) -> Worker:
        with self.transaction() as tx:
            return tx.remove_worker_from_site(worker_id, site_id)

    def add_role_grant(self, grant: RoleGrant) -> RoleGrant:
        with self.transaction() as tx:
            return tx.add_role_grant(grant)

    def remove_role_grant(self, principal_id: str, kind: RoleKind, scope_id: str) -> RoleGrant:
        with self.transaction() as tx:
            return tx.remove_role_grant(principal_id, kind, scope_id)

    def add_region(self, region: Region) -> Region:
        with self.transaction() as tx:
            return tx.add_region(region)

    def add_site(self, site: Site) -> Site:
        with self.transaction() as tx:
            return tx.add_site(site)
