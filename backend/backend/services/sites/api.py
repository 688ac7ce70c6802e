from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Body, Depends
from pydantic import BaseModel, Field

from app.core.access import AccessCore
from app.core.authorization import Action
from app.core.entities import SiteStatus
from app.core.runtime import get_core
from app.core.security import get_external_identity
from app.core.views import view_of, worker_view

router = APIRouter(tags=["sites"])


def _core() -> AccessCore:
    return get_core()


class AuthorizeIn(BaseModel):
    action: str
    target_kind: str
    target_id: str = Field(..., min_length=1, max_length=64)


class NewWorkerIn(BaseModel):
    worker_id: str = Field(..., min_length=1, max_length=64)
    name: str = Field(..., min_length=1, max_length=256)


class MoveIn(BaseModel):
    from_site_id: str = Field(..., min_length=1, max_length=64)
    to_site_id: str = Field(..., min_length=1, max_length=64)


class ManagerIn(BaseModel):
    principal_id: str = Field(..., min_length=1, max_length=64)


class StatusIn(BaseModel):
    status: SiteStatus


def _mutate(core: AccessCore, identity: str, action: Action, payload: dict) -> dict:
    result = core.apply_mutation(identity, action, payload)
    return {"action": action.value, "result": view_of(core.store.snapshot(), result)}


# Decisions
@router.post("/authorize")
def authorize(body: AuthorizeIn, identity: str = Depends(get_external_identity), core: AccessCore = Depends(_core)):
    return core.authorize(identity, body.action, body.target_kind, body.target_id).to_dict()


# Mutations
@router.post("/mutations/{action}")
def apply_mutation(
    action: str,
    payload: dict[str, Any] = Body(...),
    identity: str = Depends(get_external_identity),
    core: AccessCore = Depends(_core),
):
    result = core.apply_mutation(identity, action, payload)
    return {"action": action, "result": view_of(core.store.snapshot(), result)}


@router.post("/sites/{site_id}/workers", status_code=201)
def add_worker(site_id: str, body: NewWorkerIn, identity: str = Depends(get_external_identity), core: AccessCore = Depends(_core)):
    return _mutate(core, identity, Action.ADD_WORKER, {"worker_id": body.worker_id, "name": body.name, "site_id": site_id})


@router.delete("/sites/{site_id}/workers/{worker_id}")
def remove_worker(site_id: str, worker_id: str, identity: str = Depends(get_external_identity), core: AccessCore = Depends(_core)):
    return _mutate(core, identity, Action.REMOVE_WORKER, {"worker_id": worker_id, "site_id": site_id})


@router.post("/workers/{worker_id}/move")
def move_worker(worker_id: str, body: MoveIn, identity: str = Depends(get_external_identity), core: AccessCore = Depends(_core)):
    return _mutate(
        core,
        identity,
        Action.MOVE_WORKER,
        {"worker_id": worker_id, "from_site_id": body.from_site_id, "to_site_id": body.to_site_id},
    )


@router.put("/sites/{site_id}/manager")
def assign_manager(site_id: str, body: ManagerIn, identity: str = Depends(get_external_identity), core: AccessCore = Depends(_core)):
    return _mutate(core, identity, Action.ASSIGN_SITE_MANAGER, {"principal_id": body.principal_id, "site_id": site_id})


@router.delete("/sites/{site_id}/manager")
def revoke_manager(
    site_id: str,
    principal_id: str | None = None,
    identity: str = Depends(get_external_identity),
    core: AccessCore = Depends(_core),
):
    return _mutate(core, identity, Action.REVOKE_SITE_MANAGER, {"site_id": site_id, "principal_id": principal_id})


@router.put("/sites/{site_id}/status")
def set_status(site_id: str, body: StatusIn, identity: str = Depends(get_external_identity), core: AccessCore = Depends(_core)):
    return _mutate(core, identity, Action.SET_SITE_STATUS, {"site_id": site_id, "status": body.status})


# Reads (authenticated, not authorized: the hierarchy is visible to every principal)
@router.get("/query/{target_kind}/{target_id}")
def query(target_kind: str, target_id: str, identity: str = Depends(get_external_identity), core: AccessCore = Depends(_core)):
    return core.query(target_kind, target_id)


@router.get("/regions/{region_id}/sites")
def list_sites(region_id: str, identity: str = Depends(get_external_identity), core: AccessCore = Depends(_core)):
    snap = core.store.snapshot()
    return [view_of(snap, s) for s in snap.sites_of_region(region_id)]


@router.get("/sites/{site_id}/workers")
def list_workers(site_id: str, identity: str = Depends(get_external_identity), core: AccessCore = Depends(_core)):
    return [worker_view(w) for w in core.store.snapshot().workers_of_site(site_id)]
