from __future__ import annotations

import pytest

from app.core.authorization import Action, DenyReason, Target, TargetKind, authorize
from app.core.entities import RoleKind
from app.core.errors import AdministrativeActionRequired, InvalidRequest, NotFound, Unauthorized

from conftest import P1, P2, P3


def _pid(core, ref):
    return core.registry.resolve(ref).id


def test_region_authority_covers_every_site_of_the_region(core):
    snap = core.store.snapshot()
    p1 = _pid(core, P1)
    for site_id in ("alpha", "gamma"):
        d = authorize(snap, p1, Action.ADD_WORKER, Target.site(site_id))
        assert d.allowed
        assert d.via.kind == RoleKind.SITES_GLOBAL_MANAGER
        assert d.region_id == "north"


def test_region_authority_stops_at_the_region_border(core):
    d = authorize(core.store.snapshot(), _pid(core, P1), Action.ADD_WORKER, Target.site("beta"))
    assert not d
    assert d.reason == DenyReason.NO_SITE_AUTHORITY


def test_site_manager_is_confined_to_its_site(managed_core):
    snap = managed_core.store.snapshot()
    p2 = _pid(managed_core, P2)

    allowed = authorize(snap, p2, Action.REMOVE_WORKER, Target.site("alpha"))
    assert allowed.allowed
    assert allowed.via.kind == RoleKind.SITE_MANAGER

    for site_id in ("gamma", "beta"):
        denied = authorize(snap, p2, Action.ADD_WORKER, Target.site(site_id))
        assert denied.reason == DenyReason.NO_SITE_AUTHORITY


def test_site_manager_cannot_delegate_its_own_site(managed_core):
    d = authorize(
        managed_core.store.snapshot(),
        _pid(managed_core, P2),
        Action.ASSIGN_SITE_MANAGER,
        Target.site("alpha"),
    )
    assert d.reason == DenyReason.NO_REGION_AUTHORITY
    with pytest.raises(Unauthorized) as exc:
        d.raise_for_denial()
    assert exc.value.reason == "NoRegionAuthority"


def test_sites_global_manager_changes_are_administrative(core):
    d = authorize(core.store.snapshot(), _pid(core, P1), Action.ASSIGN_SITES_GLOBAL_MANAGER, Target.region("north"))
    assert d.reason == DenyReason.ADMINISTRATIVE_ACTION_REQUIRED
    with pytest.raises(AdministrativeActionRequired):
        d.raise_for_denial()


def test_worker_target_resolves_through_its_site(managed_core):
    managed_core.apply_mutation(P2, "add_worker", {"worker_id": "W1", "name": "Ana", "site_id": "alpha"})
    snap = managed_core.store.snapshot()

    d = authorize(snap, _pid(managed_core, P2), Action.REMOVE_WORKER, Target.worker("W1"))
    assert d.allowed
    assert d.site_id == "alpha"

    d = authorize(snap, _pid(managed_core, P3), Action.REMOVE_WORKER, Target.worker("W1"))
    assert d.reason == DenyReason.NO_SITE_AUTHORITY


def test_target_kind_must_fit_the_action(core):
    with pytest.raises(InvalidRequest):
        authorize(core.store.snapshot(), _pid(core, P1), Action.ADD_WORKER, Target.region("north"))


def test_unknown_target_is_not_found(core):
    with pytest.raises(NotFound):
        authorize(core.store.snapshot(), _pid(core, P1), Action.ADD_WORKER, Target.site("nope"))
    with pytest.raises(NotFound):
        authorize(core.store.snapshot(), _pid(core, P1), Action.REMOVE_WORKER, Target.worker("W404"))


def test_facade_decision_is_audited_and_changes_nothing(core):
    before = core.store.snapshot()
    records_before = len(core.audit_sink.records)

    d = core.authorize(P1, "add_worker", "site", "beta")

    assert not d.allowed
    # P1 is already registered, so not even a principal is written
    assert core.store.snapshot() is before
    records = core.audit_sink.records[records_before:]
    assert len(records) == 1
    assert records[0].action == "authorize.add_worker"
    assert records[0].outcome.value == "denied"
    assert records[0].reason == "NoSiteAuthority"


def test_facade_rejects_unknown_action_and_kind(core):
    with pytest.raises(InvalidRequest):
        core.authorize(P1, "fly", "site", "alpha")
    with pytest.raises(InvalidRequest):
        core.authorize(P1, "add_worker", "planet", "alpha")


def test_decision_dict_shape(core):
    d = core.authorize(P1, Action.ADD_WORKER, TargetKind.SITE, "alpha").to_dict()
    assert d["allowed"] is True
    assert d["via"] == {"role": "SitesGlobalManager", "scope_id": "north"}
    assert d["reason"] is None
