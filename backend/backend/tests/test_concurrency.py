from __future__ import annotations

import random
from concurrent.futures import ThreadPoolExecutor

from app.core.errors import Busy, NotFound
from app.core.hierarchy import HierarchySnapshot

from conftest import P1


def _revalidate(snap: HierarchySnapshot) -> None:
    HierarchySnapshot.build(
        regions=snap.regions.values(),
        sites=snap.sites.values(),
        workers=snap.workers.values(),
        principals=snap.principals.values(),
        grants=snap.all_grants(),
    )


def test_concurrent_moves_never_duplicate_or_lose_a_worker(core):
    core.apply_mutation(P1, "add_worker", {"worker_id": "W1", "name": "Ana", "site_id": "alpha"})
    rng = random.Random(7)
    moves = [("alpha", "gamma") if rng.random() < 0.5 else ("gamma", "alpha") for _ in range(200)]

    def move(pair):
        src, dst = pair
        try:
            core.apply_mutation(P1, "move_worker", {"worker_id": "W1", "from_site_id": src, "to_site_id": dst})
            return "moved"
        except (NotFound, Busy):
            return "skipped"

    with ThreadPoolExecutor(max_workers=16) as pool:
        results = list(pool.map(move, moves))

    snap = core.store.snapshot()
    holders = [s.id for s in snap.sites.values() if "W1" in s.worker_ids]
    assert len(holders) == 1
    assert snap.get_worker("W1").site_id == holders[0]
    assert "moved" in results
    _revalidate(snap)


def test_disjoint_sites_all_commit(core):
    def add(i):
        site = "alpha" if i % 2 else "gamma"
        return core.apply_mutation(P1, "add_worker", {"worker_id": f"W{i}", "name": f"worker {i}", "site_id": site})

    with ThreadPoolExecutor(max_workers=8) as pool:
        workers = list(pool.map(add, range(40)))

    snap = core.store.snapshot()
    assert len(workers) == 40
    assert len(snap.get_site("alpha").worker_ids) == 20
    assert len(snap.get_site("gamma").worker_ids) == 20
    _revalidate(snap)


def test_every_concurrent_attempt_is_audited_once(core):
    since = len(core.audit_sink.records)

    def churn(i):
        wid = f"W{i % 5}"
        try:
            core.apply_mutation(P1, "add_worker", {"worker_id": wid, "name": wid, "site_id": "alpha"})
        except Exception:
            pass
        try:
            core.apply_mutation(P1, "remove_worker", {"worker_id": wid, "site_id": "alpha"})
        except Exception:
            pass

    with ThreadPoolExecutor(max_workers=8) as pool:
        list(pool.map(churn, range(50)))

    assert len(core.audit_sink.records) - since == 100
    _revalidate(core.store.snapshot())
