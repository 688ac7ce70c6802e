"""Authorization engine.

Decisions are a pure function of (snapshot, principal, action, target). The
decision table below is the whole authority model:

  SITE           -> SitesGlobalManager on the site's region, else SiteManager on the site
  REGION         -> SitesGlobalManager on the site's region only
  ADMINISTRATIVE -> always denied (reserved for an actor above this model)
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from app.core.entities import RoleGrant, RoleKind
from app.core.errors import AdministrativeActionRequired, InvalidRequest, Unauthorized
from app.core.hierarchy import HierarchySnapshot


class Action(str, Enum):
    ADD_WORKER = "add_worker"
    REMOVE_WORKER = "remove_worker"
    MOVE_WORKER = "move_worker"
    SET_SITE_STATUS = "set_site_status"
    ASSIGN_SITE_MANAGER = "assign_site_manager"
    REVOKE_SITE_MANAGER = "revoke_site_manager"
    ASSIGN_SITES_GLOBAL_MANAGER = "assign_sites_global_manager"
    REVOKE_SITES_GLOBAL_MANAGER = "revoke_sites_global_manager"


class TargetKind(str, Enum):
    REGION = "region"
    SITE = "site"
    WORKER = "worker"
    PRINCIPAL = "principal"


class Authority(str, Enum):
    SITE = "SITE"
    REGION = "REGION"
    ADMINISTRATIVE = "ADMINISTRATIVE"


class DenyReason(str, Enum):
    NO_REGION_AUTHORITY = "NoRegionAuthority"
    NO_SITE_AUTHORITY = "NoSiteAuthority"
    ADMINISTRATIVE_ACTION_REQUIRED = "AdministrativeActionRequired"


ACTION_AUTHORITY: dict[Action, Authority] = {
    Action.ADD_WORKER: Authority.SITE,
    Action.REMOVE_WORKER: Authority.SITE,
    Action.MOVE_WORKER: Authority.SITE,
    Action.SET_SITE_STATUS: Authority.SITE,
    Action.ASSIGN_SITE_MANAGER: Authority.REGION,
    Action.REVOKE_SITE_MANAGER: Authority.REGION,
    Action.ASSIGN_SITES_GLOBAL_MANAGER: Authority.ADMINISTRATIVE,
    Action.REVOKE_SITES_GLOBAL_MANAGER: Authority.ADMINISTRATIVE,
}

ACTION_TARGETS: dict[Action, frozenset[TargetKind]] = {
    Action.ADD_WORKER: frozenset({TargetKind.SITE}),
    Action.REMOVE_WORKER: frozenset({TargetKind.SITE, TargetKind.WORKER}),
    Action.MOVE_WORKER: frozenset({TargetKind.SITE, TargetKind.WORKER}),
    Action.SET_SITE_STATUS: frozenset({TargetKind.SITE}),
    Action.ASSIGN_SITE_MANAGER: frozenset({TargetKind.SITE}),
    Action.REVOKE_SITE_MANAGER: frozenset({TargetKind.SITE}),
    Action.ASSIGN_SITES_GLOBAL_MANAGER: frozenset({TargetKind.REGION}),
    Action.REVOKE_SITES_GLOBAL_MANAGER: frozenset({TargetKind.REGION}),
}


@dataclass(frozen=True)
class Target:
    kind: TargetKind
    id: str

    @classmethod
    def site(cls, site_id: str) -> "Target":
        return cls(TargetKind.SITE, site_id)

    @classmethod
    def worker(cls, worker_id: str) -> "Target":
        return cls(TargetKind.WORKER, worker_id)

    @classmethod
    def region(cls, region_id: str) -> "Target":
        return cls(TargetKind.REGION, region_id)


@dataclass(frozen=True)
class Decision:
    allowed: bool
    action: Action
    target: Target
    reason: DenyReason | None = None
    via: RoleGrant | None = None
    site_id: str | None = None
    region_id: str | None = None

    def __bool__(self) -> bool:
        return self.allowed

    def raise_for_denial(self) -> None:
        if self.allowed:
            return
        if self.reason == DenyReason.ADMINISTRATIVE_ACTION_REQUIRED:
            raise AdministrativeActionRequired(f"{self.action.value} is reserved for an administrative actor")
        raise Unauthorized(
            self.reason.value if self.reason else "Denied",
            f"{self.action.value} on {self.target.kind.value} '{self.target.id}' denied: {self.reason.value if self.reason else 'Denied'}",
        )

    def to_dict(self) -> dict:
        return {
            "allowed": self.allowed,
            "action": self.action.value,
            "target_kind": self.target.kind.value,
            "target_id": self.target.id,
            "reason": self.reason.value if self.reason else None,
            "via": (
                {"role": self.via.kind.value, "scope_id": self.via.scope_id}
                if self.via is not None
                else None
            ),
            "site_id": self.site_id,
            "region_id": self.region_id,
        }


def authorize(snapshot: HierarchySnapshot, principal_id: str, action: Action, target: Target) -> Decision:
    """Decide whether ``principal_id`` may perform ``action`` on ``target``.

    Raises NotFound for unknown target ids and InvalidRequest when the target kind
    does not fit the action. Never mutates anything.
    """
    action = Action(action)
    if target.kind not in ACTION_TARGETS[action]:
        raise InvalidRequest(f"{action.value} cannot target a {target.kind.value}")

    authority = ACTION_AUTHORITY[action]
    if authority == Authority.ADMINISTRATIVE:
        if target.kind == TargetKind.REGION:
            snapshot.get_region(target.id)
        return Decision(
            allowed=False,
            action=action,
            target=target,
            reason=DenyReason.ADMINISTRATIVE_ACTION_REQUIRED,
            region_id=target.id if target.kind == TargetKind.REGION else None,
        )

    if target.kind == TargetKind.WORKER:
        site = snapshot.get_site(snapshot.get_worker(target.id).site_id)
    else:
        site = snapshot.get_site(target.id)

    scope = {"site_id": site.id, "region_id": site.region_id}

    region_grant = snapshot.find_grant(principal_id, RoleKind.SITES_GLOBAL_MANAGER, site.region_id)
    if region_grant is not None:
        return Decision(allowed=True, action=action, target=target, via=region_grant, **scope)

    if authority == Authority.REGION:
        return Decision(allowed=False, action=action, target=target, reason=DenyReason.NO_REGION_AUTHORITY, **scope)

    site_grant = snapshot.find_grant(principal_id, RoleKind.SITE_MANAGER, site.id)
    if site_grant is not None:
        return Decision(allowed=True, action=action, target=target, via=site_grant, **scope)

    return Decision(allowed=False, action=action, target=target, reason=DenyReason.NO_SITE_AUTHORITY, **scope)
