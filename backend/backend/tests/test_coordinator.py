from __future__ import annotations

import logging

import pytest

from app.core.audit import AuditOutcome, MemoryAuditSink
from app.core.coordinator import BOOTSTRAP_ACTOR
from app.core.entities import Region, RoleKind, Site, SiteStatus
from app.core.errors import (
    AdministrativeActionRequired,
    InvalidRequest,
    InvariantViolation,
    NotFound,
    Unauthorized,
)

from conftest import P1, P2, P3, make_core


def _pid(core, ref):
    return core.registry.resolve(ref).id


def _new_records(core, since):
    return core.audit_sink.records[since:]


def test_delegation_scenario(core):
    p2 = _pid(core, P2)

    grant = core.apply_mutation(P1, "assign_site_manager", {"principal_id": p2, "site_id": "alpha"})
    assert grant.kind == RoleKind.SITE_MANAGER
    assert core.store.get_site("alpha").manager_id == p2

    core.apply_mutation(P2, "add_worker", {"worker_id": "W1", "name": "Ana", "site_id": "alpha"})
    assert core.store.get_worker("W1").site_id == "alpha"

    before = core.store.snapshot()
    with pytest.raises(Unauthorized) as exc:
        core.apply_mutation(P2, "add_worker", {"worker_id": "W2", "name": "Bo", "site_id": "beta"})
    assert exc.value.reason == "NoSiteAuthority"
    assert core.store.snapshot() is before
    assert "W2" not in core.store.snapshot().workers


def test_second_removal_is_not_found_and_first_stands(managed_core):
    core = managed_core
    core.apply_mutation(P2, "add_worker", {"worker_id": "W1", "name": "Ana", "site_id": "alpha"})

    removed = core.apply_mutation(P2, "remove_worker", {"worker_id": "W1", "site_id": "alpha"})
    assert removed.id == "W1"
    version = core.store.snapshot().version

    with pytest.raises(NotFound):
        core.apply_mutation(P2, "remove_worker", {"worker_id": "W1", "site_id": "alpha"})
    assert core.store.snapshot().version == version
    assert "W1" not in core.store.snapshot().workers
    assert core.store.get_site("alpha").worker_ids == frozenset()


def test_every_attempt_emits_exactly_one_record(managed_core):
    core = managed_core
    attempts = [
        (P2, "add_worker", {"worker_id": "W1", "name": "Ana", "site_id": "alpha"}, None),
        (P2, "add_worker", {"worker_id": "W2", "name": "Bo", "site_id": "beta"}, Unauthorized),
        (P2, "add_worker", {"worker_id": "W1", "name": "Ana", "site_id": "alpha"}, InvariantViolation),
        (P2, "remove_worker", {"worker_id": "W9", "site_id": "alpha"}, NotFound),
        (P1, "assign_sites_global_manager", {"principal_id": _pid(core, P3), "region_id": "north"}, AdministrativeActionRequired),
    ]
    for who, action, payload, error in attempts:
        since = len(core.audit_sink.records)
        if error is None:
            core.apply_mutation(who, action, payload)
        else:
            with pytest.raises(error):
                core.apply_mutation(who, action, payload)
        records = _new_records(core, since)
        assert len(records) == 1, action
        assert records[0].action == action

    outcomes = [r.outcome for r in core.audit_sink.records[-5:]]
    assert outcomes == [
        AuditOutcome.COMMITTED,
        AuditOutcome.DENIED,
        AuditOutcome.FAILED,
        AuditOutcome.FAILED,
        AuditOutcome.DENIED,
    ]


def test_committed_record_names_the_authorizing_grant(managed_core):
    since = len(managed_core.audit_sink.records)
    managed_core.apply_mutation(P2, "add_worker", {"worker_id": "W1", "name": "Ana", "site_id": "alpha"})

    (record,) = _new_records(managed_core, since)
    assert record.actor == P2
    assert record.principal_id == _pid(managed_core, P2)
    assert record.target_kind == "worker"
    assert record.target_id == "W1"
    assert record.payload["via"] == {"role": "SiteManager", "scope_id": "alpha"}


def test_move_worker_within_region(core):
    core.apply_mutation(P1, "add_worker", {"worker_id": "W1", "name": "Ana", "site_id": "alpha"})
    moved = core.apply_mutation(P1, "move_worker", {"worker_id": "W1", "from_site_id": "alpha", "to_site_id": "gamma"})

    assert moved.site_id == "gamma"
    assert core.store.get_site("alpha").worker_ids == frozenset()
    assert core.store.get_site("gamma").worker_ids == {"W1"}


def test_move_needs_authority_on_both_sites(managed_core):
    core = managed_core
    core.apply_mutation(P2, "add_worker", {"worker_id": "W1", "name": "Ana", "site_id": "alpha"})

    with pytest.raises(Unauthorized):
        core.apply_mutation(P2, "move_worker", {"worker_id": "W1", "from_site_id": "alpha", "to_site_id": "gamma"})
    assert core.store.get_worker("W1").site_id == "alpha"


def test_move_to_same_site_is_rejected(core):
    core.apply_mutation(P1, "add_worker", {"worker_id": "W1", "name": "Ana", "site_id": "alpha"})
    with pytest.raises(InvariantViolation):
        core.apply_mutation(P1, "move_worker", {"worker_id": "W1", "from_site_id": "alpha", "to_site_id": "alpha"})
    assert core.store.get_worker("W1").site_id == "alpha"


def test_reassignment_requires_revocation_first(managed_core):
    core = managed_core
    p3 = _pid(core, P3)

    with pytest.raises(InvariantViolation):
        core.apply_mutation(P1, "assign_site_manager", {"principal_id": p3, "site_id": "alpha"})
    assert core.store.get_site("alpha").manager_id == _pid(core, P2)

    core.apply_mutation(P1, "revoke_site_manager", {"site_id": "alpha"})
    assert core.store.get_site("alpha").manager_id is None
    assert core.store.snapshot().holders(RoleKind.SITE_MANAGER, "alpha") == frozenset()

    core.apply_mutation(P1, "assign_site_manager", {"principal_id": p3, "site_id": "alpha"})
    assert core.store.get_site("alpha").manager_id == p3


def test_revoked_manager_loses_authority(managed_core):
    core = managed_core
    core.apply_mutation(P1, "revoke_site_manager", {"site_id": "alpha", "principal_id": _pid(core, P2)})
    with pytest.raises(Unauthorized):
        core.apply_mutation(P2, "add_worker", {"worker_id": "W1", "name": "Ana", "site_id": "alpha"})


def test_revoke_without_manager_is_not_found(core):
    with pytest.raises(NotFound):
        core.apply_mutation(P1, "revoke_site_manager", {"site_id": "alpha"})


def test_revoke_naming_another_principal_is_not_found(managed_core):
    with pytest.raises(NotFound):
        managed_core.apply_mutation(P1, "revoke_site_manager", {"site_id": "alpha", "principal_id": _pid(managed_core, P3)})
    assert managed_core.store.get_site("alpha").manager_id == _pid(managed_core, P2)


def test_site_manager_cannot_assign_or_revoke_managers(managed_core):
    core = managed_core
    with pytest.raises(Unauthorized) as exc:
        core.apply_mutation(P2, "revoke_site_manager", {"site_id": "alpha"})
    assert exc.value.reason == "NoRegionAuthority"


def test_set_site_status(managed_core):
    site = managed_core.apply_mutation(P2, "set_site_status", {"site_id": "alpha", "status": "InProgress"})
    assert site.status == SiteStatus.IN_PROGRESS
    with pytest.raises(Unauthorized):
        managed_core.apply_mutation(P2, "set_site_status", {"site_id": "beta", "status": "Completed"})


def test_region_grants_are_never_applied_through_mutations(core):
    p3 = _pid(core, P3)
    for action in ("assign_sites_global_manager", "revoke_sites_global_manager"):
        with pytest.raises(AdministrativeActionRequired):
            core.apply_mutation(P1, action, {"principal_id": p3, "region_id": "north"})
    assert core.store.snapshot().find_grant(p3, RoleKind.SITES_GLOBAL_MANAGER, "north") is None


def test_malformed_requests(core):
    with pytest.raises(InvalidRequest):
        core.apply_mutation(P1, "teleport_worker", {})
    with pytest.raises(InvalidRequest):
        core.apply_mutation(P1, "add_worker", {"worker_id": "W1", "site_id": "alpha"})
    with pytest.raises(InvalidRequest):
        core.apply_mutation(P1, "set_site_status", {"site_id": "alpha", "status": "Demolished"})


def test_rejected_requests_are_audited_once(core):
    since = len(core.audit_sink.records)
    with pytest.raises(InvalidRequest):
        core.apply_mutation(P1, "add_worker", {"worker_id": "", "site_id": "alpha"})
    with pytest.raises(InvalidRequest):
        core.apply_mutation(P1, "teleport_worker", {})

    bad_payload, bad_action = _new_records(core, since)
    assert (bad_payload.action, bad_action.action) == ("add_worker", "teleport_worker")
    assert {r.outcome for r in (bad_payload, bad_action)} == {AuditOutcome.FAILED}
    assert {r.reason for r in (bad_payload, bad_action)} == {"InvalidRequest"}
    assert bad_payload.actor == P1


def test_unknown_status_from_a_direct_caller_is_invalid(core):
    since = len(core.audit_sink.records)
    with pytest.raises(InvalidRequest):
        core.coordinator.set_site_status(P1, "alpha", "Demolished")

    (record,) = _new_records(core, since)
    assert record.outcome == AuditOutcome.FAILED
    assert record.reason == "InvalidRequest"
    assert record.payload["status"] == "Demolished"
    assert core.store.get_site("alpha").status == SiteStatus.NOT_CARRIED


def test_administrative_path_is_audited(core):
    since = len(core.audit_sink.records)
    core.coordinator.bootstrap_site(Site("delta", "Delta", "south"))
    with pytest.raises(NotFound):
        core.coordinator.bootstrap_site(Site("omega", "Omega", "nowhere"))

    first, second = _new_records(core, since)
    assert first.actor == BOOTSTRAP_ACTOR
    assert first.outcome == AuditOutcome.COMMITTED
    assert second.outcome == AuditOutcome.FAILED
    assert second.reason == "NotFound"


def test_region_authority_can_be_revoked_administratively(core):
    p1 = _pid(core, P1)
    core.coordinator.revoke_region_authority(p1, "north")
    with pytest.raises(Unauthorized):
        core.apply_mutation(P1, "add_worker", {"worker_id": "W1", "name": "Ana", "site_id": "alpha"})


class _BrokenSink:
    def append(self, record):
        raise RuntimeError("audit backend down")


class _BrokenPersistence:
    def persist(self, snapshot):
        raise RuntimeError("database down")


def test_audit_failure_does_not_undo_the_mutation(caplog):
    core = make_core(audit_sink=_BrokenSink())
    with caplog.at_level(logging.WARNING, logger="app.core.audit"):
        core.apply_mutation(P1, "add_worker", {"worker_id": "W1", "name": "Ana", "site_id": "alpha"})
    assert core.store.get_worker("W1").site_id == "alpha"
    assert any("audit sink failed" in r.getMessage() for r in caplog.records)


def test_persistence_failure_does_not_undo_the_mutation(caplog):
    sink = MemoryAuditSink()
    core = make_core(audit_sink=sink, persistence=_BrokenPersistence())
    with caplog.at_level(logging.WARNING, logger="app.core.hierarchy"):
        core.apply_mutation(P1, "add_worker", {"worker_id": "W1", "name": "Ana", "site_id": "alpha"})
    assert core.store.get_worker("W1").site_id == "alpha"
    assert sink.records[-1].outcome == AuditOutcome.COMMITTED
    assert any("snapshot persistence failed" in r.getMessage() for r in caplog.records)


def test_bootstrap_duplicates_are_invariant_violations(core):
    with pytest.raises(InvariantViolation):
        core.coordinator.bootstrap_region(Region("north", "North again"))
