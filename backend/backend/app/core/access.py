"""Access core facade.

The three operations callers (HTTP layer, CLI, tests) use:

- ``authorize(identity, action, target_kind, target_id)`` -> Decision
- ``apply_mutation(identity, action, payload)``           -> changed entity
- ``query(target_kind, target_id)``                       -> read-only view

Errors are raised as ``AccessCoreError`` subclasses; the caller owns turning
them into responses.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Mapping

from pydantic import BaseModel, ValidationError

from app.core.audit import AuditOutcome, AuditRecord, AuditSink, MemoryAuditSink, emit
from app.core.authorization import Action, Decision, Target, TargetKind, authorize
from app.core.commands import MUTATION_PAYLOADS
from app.core.coordinator import MutationCoordinator
from app.core.errors import InvalidRequest
from app.core.hierarchy import HierarchyStore, SnapshotPersistence
from app.core.locks import LockManager
from app.core.registry import PrincipalRegistry
from app.core.views import principal_view, region_view, site_view, worker_view

logger = logging.getLogger(__name__)


def parse_action(action: Any) -> Action:
    try:
        return Action(action)
    except ValueError:
        raise InvalidRequest(f"unknown action '{action}'") from None


def parse_target_kind(kind: Any) -> TargetKind:
    try:
        return TargetKind(kind)
    except ValueError:
        raise InvalidRequest(f"unknown target kind '{kind}'") from None


_HANDLERS: dict[Action, Callable[[MutationCoordinator, str, Any], Any]] = {
    Action.ADD_WORKER: lambda c, who, p: c.add_worker(who, p.worker_id, p.name, p.site_id),
    Action.REMOVE_WORKER: lambda c, who, p: c.remove_worker(who, p.worker_id, p.site_id),
    Action.MOVE_WORKER: lambda c, who, p: c.move_worker(who, p.worker_id, p.from_site_id, p.to_site_id),
    Action.SET_SITE_STATUS: lambda c, who, p: c.set_site_status(who, p.site_id, p.status),
    Action.ASSIGN_SITE_MANAGER: lambda c, who, p: c.assign_site_manager(who, p.principal_id, p.site_id),
    Action.REVOKE_SITE_MANAGER: lambda c, who, p: c.revoke_site_manager(who, p.site_id, p.principal_id),
    Action.ASSIGN_SITES_GLOBAL_MANAGER: lambda c, who, p: c.assign_sites_global_manager(who, p.principal_id, p.region_id),
    Action.REVOKE_SITES_GLOBAL_MANAGER: lambda c, who, p: c.revoke_sites_global_manager(who, p.principal_id, p.region_id),
}


class AccessCore:
    def __init__(
        self,
        store: HierarchyStore | None = None,
        *,
        audit_sink: AuditSink | None = None,
        persistence: SnapshotPersistence | None = None,
        locks: LockManager | None = None,
    ) -> None:
        self.store = store if store is not None else HierarchyStore()
        self.registry = PrincipalRegistry(self.store, persistence)
        self.audit_sink: AuditSink = audit_sink if audit_sink is not None else MemoryAuditSink()
        self.coordinator = MutationCoordinator(
            self.store,
            self.registry,
            self.audit_sink,
            locks=locks,
            persistence=persistence,
        )

    def authorize(self, external_identity: str, action: Any, target_kind: Any, target_id: str) -> Decision:
        principal = self.registry.resolve(external_identity)
        decision = authorize(
            self.store.snapshot(),
            principal.id,
            parse_action(action),
            Target(parse_target_kind(target_kind), target_id),
        )
        emit(
            self.audit_sink,
            AuditRecord(
                actor=principal.external_ref,
                action=f"authorize.{decision.action.value}",
                target_kind=decision.target.kind.value,
                target_id=target_id,
                outcome=AuditOutcome.ALLOWED if decision.allowed else AuditOutcome.DENIED,
                principal_id=principal.id,
                reason=decision.reason.value if decision.reason else None,
            ),
        )
        return decision

    def apply_mutation(self, external_identity: str, action: Any, payload: Mapping[str, Any] | BaseModel) -> Any:
        try:
            act = parse_action(action)
            model = MUTATION_PAYLOADS[act]
            try:
                cmd = payload if isinstance(payload, model) else model.model_validate(payload)
            except ValidationError as exc:
                raise InvalidRequest(f"invalid payload for {act.value}: {exc.error_count()} error(s)") from exc
        except InvalidRequest as exc:
            # Rejected before the coordinator runs; still one record per attempt.
            emit(
                self.audit_sink,
                AuditRecord(
                    actor=(external_identity if isinstance(external_identity, str) else repr(external_identity))[:256],
                    action=str(getattr(action, "value", action))[:128],
                    target_kind="mutation",
                    target_id=None,
                    outcome=AuditOutcome.FAILED,
                    reason=exc.kind,
                    payload={"detail": exc.detail},
                ),
            )
            raise
        return _HANDLERS[act](self.coordinator, external_identity, cmd)

    def query(self, target_kind: Any, target_id: str) -> dict:
        kind = parse_target_kind(target_kind)
        snap = self.store.snapshot()
        if kind == TargetKind.REGION:
            return region_view(snap, snap.get_region(target_id))
        if kind == TargetKind.SITE:
            return site_view(snap.get_site(target_id))
        if kind == TargetKind.WORKER:
            return worker_view(snap.get_worker(target_id))
        return principal_view(snap, snap.get_principal(target_id))
