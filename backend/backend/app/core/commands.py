from __future__ import annotations

from typing import Annotated

from pydantic import BaseModel, Field

from app.core.authorization import Action
from app.core.entities import SiteStatus

EntityId = Annotated[str, Field(min_length=1, max_length=64)]


class AddWorkerIn(BaseModel):
    worker_id: EntityId
    name: str = Field(..., min_length=1, max_length=256)
    site_id: EntityId


class RemoveWorkerIn(BaseModel):
    worker_id: EntityId
    site_id: EntityId


class MoveWorkerIn(BaseModel):
    worker_id: EntityId
    from_site_id: EntityId
    to_site_id: EntityId


class AssignSiteManagerIn(BaseModel):
    principal_id: EntityId
    site_id: EntityId


class RevokeSiteManagerIn(BaseModel):
    site_id: EntityId
    principal_id: str | None = Field(default=None, min_length=1, max_length=64)


class SetSiteStatusIn(BaseModel):
    site_id: EntityId
    status: SiteStatus


class SitesGlobalManagerIn(BaseModel):
    principal_id: EntityId
    region_id: EntityId


MUTATION_PAYLOADS: dict[Action, type[BaseModel]] = {
    Action.ADD_WORKER: AddWorkerIn,
    Action.REMOVE_WORKER: RemoveWorkerIn,
    Action.MOVE_WORKER: MoveWorkerIn,
    Action.SET_SITE_STATUS: SetSiteStatusIn,
    Action.ASSIGN_SITE_MANAGER: AssignSiteManagerIn,
    Action.REVOKE_SITE_MANAGER: RevokeSiteManagerIn,
    Action.ASSIGN_SITES_GLOBAL_MANAGER: SitesGlobalManagerIn,
    Action.REVOKE_SITES_GLOBAL_MANAGER: SitesGlobalManagerIn,
}
