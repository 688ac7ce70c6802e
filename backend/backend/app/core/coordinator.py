"""Mutation coordinator.

Sole writer of worker memberships and role grants. Every operation follows the
same path:

1. resolve the acting principal from its external identity;
2. authorize against the current snapshot (cheap early deny, no locks taken);
3. take the region lock(s) shared and the site lock(s) exclusive, bounded wait;
4. authorize again on the snapshot published after the locks were taken;
5. apply the store writes in one transaction (all-or-nothing);
6. emit exactly one audit record, whatever the outcome;
7. hand the new snapshot to persistence (best effort).
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Sequence

from app.core.audit import AuditOutcome, AuditRecord, AuditSink, emit
from app.core.authorization import Action, Decision, Target, authorize
from app.core.entities import Principal, Region, RoleGrant, RoleKind, Site, SiteStatus, Worker
from app.core.errors import AccessCoreError, InvalidRequest, InvariantViolation, NotFound, Unauthorized
from app.core.hierarchy import (
    HierarchySnapshot,
    HierarchyStore,
    HierarchyTransaction,
    SnapshotPersistence,
    persist_quietly,
)
from app.core.locks import LockManager
from app.core.registry import PrincipalRegistry

logger = logging.getLogger(__name__)

BOOTSTRAP_ACTOR = "system:bootstrap"


def parse_site_status(value: Any) -> SiteStatus:
    try:
        return SiteStatus(value)
    except ValueError:
        raise InvalidRequest(f"unknown site status '{value}'") from None


class MutationCoordinator:
    def __init__(
        self,
        store: HierarchyStore,
        registry: PrincipalRegistry,
        audit_sink: AuditSink,
        *,
        locks: LockManager | None = None,
        persistence: SnapshotPersistence | None = None,
    ) -> None:
        self._store = store
        self._registry = registry
        self._audit_sink = audit_sink
        self.locks = locks or LockManager()
        self._persistence = persistence

    # ---- Workforce ----
    def add_worker(self, actor: str, worker_id: str, name: str, site_id: str) -> Worker:
        return self._run(
            actor,
            Action.ADD_WORKER,
            subject=Target.worker(worker_id),
            targets=[Target.site(site_id)],
            apply=lambda tx, _p: tx.add_worker_to_site(worker_id, name, site_id),
            payload={"worker_id": worker_id, "name": name, "site_id": site_id},
        )

    def remove_worker(self, actor: str, worker_id: str, site_id: str) -> Worker:
        return self._run(
            actor,
            Action.REMOVE_WORKER,
            subject=Target.worker(worker_id),
            targets=[Target.site(site_id)],
            apply=lambda tx, _p: tx.remove_worker_from_site(worker_id, site_id),
            payload={"worker_id": worker_id, "site_id": site_id},
        )

    def move_worker(self, actor: str, worker_id: str, from_site_id: str, to_site_id: str) -> Worker:
        """Move a worker between sites atomically.

        Both sites are locked for the whole operation and the removal and the
        addition commit in one transaction: the worker ends on ``to_site_id`` or
        stays on ``from_site_id``.
        """

        def _apply(tx: HierarchyTransaction, _p: Principal) -> Worker:
            if from_site_id == to_site_id:
                raise InvariantViolation(f"worker '{worker_id}' is already on site '{to_site_id}'")
            worker = tx.remove_worker_from_site(worker_id, from_site_id)
            return tx.add_worker_to_site(worker_id, worker.name, to_site_id)

        return self._run(
            actor,
            Action.MOVE_WORKER,
            subject=Target.worker(worker_id),
            targets=[Target.site(from_site_id), Target.site(to_site_id)],
            apply=_apply,
            payload={"worker_id": worker_id, "from_site_id": from_site_id, "to_site_id": to_site_id},
        )

    def set_site_status(self, actor: str, site_id: str, status: SiteStatus | str) -> Site:
        return self._run(
            actor,
            Action.SET_SITE_STATUS,
            subject=Target.site(site_id),
            targets=[Target.site(site_id)],
            apply=lambda tx, _p: tx.set_site_status(site_id, parse_site_status(status)),
            payload={"site_id": site_id, "status": str(getattr(status, "value", status))},
        )

    # ---- Managerial delegation ----
    def assign_site_manager(self, actor: str, principal_id: str, site_id: str) -> RoleGrant:
        def _apply(tx: HierarchyTransaction, acting: Principal) -> RoleGrant:
            site = tx.get_site(site_id)
            if site.manager_id is not None:
                raise InvariantViolation(
                    f"site '{site_id}' is already managed by '{site.manager_id}', revoke first"
                )
            grant = tx.add_role_grant(
                RoleGrant(
                    kind=RoleKind.SITE_MANAGER,
                    scope_id=site_id,
                    principal_id=principal_id,
                    granted_by=acting.id,
                )
            )
            tx.set_site_manager(site_id, principal_id)
            return grant

        return self._run(
            actor,
            Action.ASSIGN_SITE_MANAGER,
            subject=Target.site(site_id),
            targets=[Target.site(site_id)],
            apply=_apply,
            payload={"principal_id": principal_id, "site_id": site_id},
        )

    def revoke_site_manager(self, actor: str, site_id: str, principal_id: str | None = None) -> RoleGrant:
        def _apply(tx: HierarchyTransaction, _p: Principal) -> RoleGrant:
            current = tx.get_site(site_id).manager_id
            if current is None or (principal_id is not None and principal_id != current):
                raise NotFound(
                    "SiteManager",
                    site_id,
                    f"site '{site_id}' has no active manager"
                    + (f" '{principal_id}'" if principal_id is not None else ""),
                )
            grant = tx.remove_role_grant(current, RoleKind.SITE_MANAGER, site_id)
            tx.set_site_manager(site_id, None)
            return grant

        return self._run(
            actor,
            Action.REVOKE_SITE_MANAGER,
            subject=Target.site(site_id),
            targets=[Target.site(site_id)],
            apply=_apply,
            payload={"site_id": site_id, "principal_id": principal_id},
        )

    def assign_sites_global_manager(self, actor: str, principal_id: str, region_id: str) -> RoleGrant:
        # Always refused by the decision table; kept so the refusal is audited.
        return self._run(
            actor,
            Action.ASSIGN_SITES_GLOBAL_MANAGER,
            subject=Target.region(region_id),
            targets=[Target.region(region_id)],
            apply=lambda tx, _p: tx.add_role_grant(
                RoleGrant(RoleKind.SITES_GLOBAL_MANAGER, region_id, principal_id, granted_by=_p.id)
            ),
            payload={"principal_id": principal_id, "region_id": region_id},
        )

    def revoke_sites_global_manager(self, actor: str, principal_id: str, region_id: str) -> RoleGrant:
        return self._run(
            actor,
            Action.REVOKE_SITES_GLOBAL_MANAGER,
            subject=Target.region(region_id),
            targets=[Target.region(region_id)],
            apply=lambda tx, _p: tx.remove_role_grant(principal_id, RoleKind.SITES_GLOBAL_MANAGER, region_id),
            payload={"principal_id": principal_id, "region_id": region_id},
        )

    # ---- Administrative bootstrap (not reachable from the HTTP surface) ----
    def bootstrap_region(self, region: Region) -> Region:
        return self._run_administrative(
            "bootstrap_region",
            Target.region(region.id),
            region.id,
            lambda tx: tx.add_region(region),
            {"name": region.name},
        )

    def bootstrap_site(self, site: Site) -> Site:
        return self._run_administrative(
            "bootstrap_site",
            Target.site(site.id),
            site.region_id,
            lambda tx: tx.add_site(site),
            {"name": site.name, "region_id": site.region_id},
        )

    def grant_region_authority(self, principal_id: str, region_id: str) -> RoleGrant:
        return self._run_administrative(
            "grant_region_authority",
            Target.region(region_id),
            region_id,
            lambda tx: tx.add_role_grant(
                RoleGrant(RoleKind.SITES_GLOBAL_MANAGER, region_id, principal_id, granted_by=BOOTSTRAP_ACTOR)
            ),
            {"principal_id": principal_id},
        )

    def revoke_region_authority(self, principal_id: str, region_id: str) -> RoleGrant:
        return self._run_administrative(
            "revoke_region_authority",
            Target.region(region_id),
            region_id,
            lambda tx: tx.remove_role_grant(principal_id, RoleKind.SITES_GLOBAL_MANAGER, region_id),
            {"principal_id": principal_id},
        )

    # ---- Internals ----
    def _authorize_all(
        self, snapshot: HierarchySnapshot, principal_id: str, action: Action, targets: Sequence[Target]
    ) -> list[Decision]:
        decisions = []
        for target in targets:
            decision = authorize(snapshot, principal_id, action, target)
            decision.raise_for_denial()
            decisions.append(decision)
        return decisions

    def _run(
        self,
        actor: str,
        action: Action,
        *,
        subject: Target,
        targets: Sequence[Target],
        apply: Callable[[HierarchyTransaction, Principal], Any],
        payload: dict,
    ) -> Any:
        principal: Principal | None = None
        try:
            principal = self._registry.resolve(actor)
            decisions = self._authorize_all(self._store.snapshot(), principal.id, action, targets)
            sites = {d.site_id for d in decisions if d.site_id}
            regions = {d.region_id for d in decisions if d.region_id}
            with self.locks.hold(sites=sites, shared_regions=regions):
                # Authority may have changed while we waited for the locks.
                decisions = self._authorize_all(self._store.snapshot(), principal.id, action, targets)
                with self._store.transaction() as tx:
                    result = apply(tx, principal)
        except Unauthorized as exc:
            logger.info("denied action=%s actor=%s reason=%s", action.value, actor, exc.reason)
            self._record(actor, principal, action.value, subject, AuditOutcome.DENIED, exc.reason, payload)
            raise
        except AccessCoreError as exc:
            logger.info("failed action=%s actor=%s error=%s: %s", action.value, actor, exc.kind, exc.detail)
            self._record(actor, principal, action.value, subject, AuditOutcome.FAILED, exc.kind, payload)
            raise
        except Exception:
            logger.exception("unexpected failure action=%s actor=%s", action.value, actor)
            self._record(actor, principal, action.value, subject, AuditOutcome.FAILED, "InternalError", payload)
            raise

        via = decisions[0].via if decisions else None
        if via is not None:
            payload = {**payload, "via": {"role": via.kind.value, "scope_id": via.scope_id}}
        self._record(actor, principal, action.value, subject, AuditOutcome.COMMITTED, None, payload)
        logger.info("committed action=%s actor=%s target=%s:%s", action.value, actor, subject.kind.value, subject.id)
        self._persist()
        return result

    def _run_administrative(
        self,
        action: str,
        subject: Target,
        region_id: str,
        apply: Callable[[HierarchyTransaction], Any],
        payload: dict,
    ) -> Any:
        try:
            with self.locks.hold(exclusive_regions=[region_id]):
                with self._store.transaction() as tx:
                    result = apply(tx)
        except AccessCoreError as exc:
            self._record(BOOTSTRAP_ACTOR, None, action, subject, AuditOutcome.FAILED, exc.kind, payload)
            raise
        self._record(BOOTSTRAP_ACTOR, None, action, subject, AuditOutcome.COMMITTED, None, payload)
        logger.info("administrative action=%s target=%s:%s", action, subject.kind.value, subject.id)
        self._persist()
        return result

    def _record(
        self,
        actor: Any,
        principal: Principal | None,
        action: str,
        subject: Target,
        outcome: AuditOutcome,
        reason: str | None,
        payload: dict,
    ) -> None:
        emit(
            self._audit_sink,
            AuditRecord(
                actor=actor if isinstance(actor, str) else repr(actor),
                action=action,
                target_kind=subject.kind.value,
                target_id=subject.id,
                outcome=outcome,
                principal_id=principal.id if principal else None,
                reason=reason,
                payload=payload,
            ),
        )

    def _persist(self) -> None:
        persist_quietly(self._persistence, self._store.snapshot())
