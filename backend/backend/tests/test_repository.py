from __future__ import annotations

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker

from app.core.access import AccessCore
from app.core.audit import SqlAuditSink
from app.core.hierarchy import HierarchyStore
from app.db.base import Base
from app.db import models  # noqa: F401
from app.db.models.security_audit import AuditLog
from app.db.repository import HierarchyRepository

from conftest import P1, P2, make_core


@pytest.fixture
def session_factory(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'chantier.db'}", future=True)
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)
    engine.dispose()


def _state(snap):
    return (
        dict(snap.regions),
        dict(snap.sites),
        dict(snap.workers),
        dict(snap.principals),
        snap.all_grants(),
    )


def test_empty_database_loads_empty_snapshot(session_factory):
    snap = HierarchyRepository(session_factory).load()
    assert snap.is_empty
    assert snap.version == 0


def test_persisted_snapshot_loads_back_equal(session_factory):
    repo = HierarchyRepository(session_factory)
    core = make_core(persistence=repo)
    core.apply_mutation(P1, "assign_site_manager", {"principal_id": core.registry.resolve(P2).id, "site_id": "alpha"})
    core.apply_mutation(P2, "add_worker", {"worker_id": "W1", "name": "Ana", "site_id": "alpha"})
    core.apply_mutation(P2, "set_site_status", {"site_id": "alpha", "status": "InProgress"})

    loaded = repo.load()
    current = core.store.snapshot()

    assert loaded.version == current.version
    assert _state(loaded) == _state(current)
    assert loaded.get_site("beta").coordinates == (43.6, 1.44)
    assert loaded.get_site("alpha").manager_id == core.registry.resolve(P2).id
    assert all(g.granted_at.tzinfo is not None for g in loaded.all_grants())

    # a fresh store picks up where the old one stopped
    restored = HierarchyStore(loaded)
    assert restored.get_worker("W1").site_id == "alpha"


def test_older_snapshot_is_not_written_over_newer(session_factory):
    repo = HierarchyRepository(session_factory)
    core = make_core()
    old = core.store.snapshot()
    core.apply_mutation(P1, "add_worker", {"worker_id": "W1", "name": "Ana", "site_id": "alpha"})
    new = core.store.snapshot()

    assert repo.persist(new)
    assert not repo.persist(old)
    assert not repo.persist(new)
    assert repo.stored_version() == new.version
    assert "W1" in repo.load().workers


def test_sql_audit_sink_writes_rows(session_factory):
    core = make_core(audit_sink=SqlAuditSink(session_factory))
    core.apply_mutation(P1, "add_worker", {"worker_id": "W1", "name": "Ana", "site_id": "alpha"})

    with session_factory() as db:
        rows = db.scalars(select(AuditLog).where(AuditLog.action == "add_worker")).all()
        assert len(rows) == 1
        assert rows[0].outcome == "committed"
        assert rows[0].entity_type == "worker"
        assert rows[0].entity_id == "W1"
        assert rows[0].success is True
        assert rows[0].payload["site_id"] == "alpha"


def test_first_login_survives_a_restart(session_factory):
    repo = HierarchyRepository(session_factory)
    core = make_core(persistence=repo)
    core.apply_mutation(P1, "add_worker", {"worker_id": "W1", "name": "Ana", "site_id": "alpha"})

    p2 = core.registry.resolve(P2).id
    assert repo.stored_version() == core.store.snapshot().version

    restarted = AccessCore(HierarchyStore(repo.load()), persistence=repo)
    assert restarted.registry.resolve(P2).id == p2
    restarted.apply_mutation(P1, "assign_site_manager", {"principal_id": p2, "site_id": "alpha"})
    assert restarted.store.get_site("alpha").manager_id == p2
