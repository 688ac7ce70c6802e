from __future__ import annotations

import os

# Engine is created at import time; keep tests off any real database.
os.environ["DATABASE_URL"] = "sqlite://"
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest

from app.core.access import AccessCore
from app.core.entities import Region, Site
from app.core.locks import LockManager

P1 = "github:p1"  # SitesGlobalManager on north
P2 = "github:p2"
P3 = "github:p3"


def make_core(**kwargs) -> AccessCore:
    """north: alpha, gamma; south: beta. P1 holds region authority on north."""
    core = AccessCore(**kwargs)
    c = core.coordinator
    c.bootstrap_region(Region("north", "North"))
    c.bootstrap_region(Region("south", "South"))
    c.bootstrap_site(Site("alpha", "Alpha", "north"))
    c.bootstrap_site(Site("gamma", "Gamma", "north"))
    c.bootstrap_site(Site("beta", "Beta", "south", purpose="Warehouse", coordinates=(43.6, 1.44)))
    c.grant_region_authority(core.registry.resolve(P1).id, "north")
    return core


@pytest.fixture
def core() -> AccessCore:
    return make_core()


@pytest.fixture
def fast_core() -> AccessCore:
    return make_core(locks=LockManager(timeout=0.05))


@pytest.fixture
def managed_core(core: AccessCore) -> AccessCore:
    """``core`` with P2 assigned as SiteManager of alpha by P1."""
    core.apply_mutation(P1, "assign_site_manager", {"principal_id": core.registry.resolve(P2).id, "site_id": "alpha"})
    return core
