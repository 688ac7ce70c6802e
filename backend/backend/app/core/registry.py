from __future__ import annotations

import logging
import uuid

from app.core.entities import Principal, RoleGrant
from app.core.errors import UnknownIdentity
from app.core.hierarchy import HierarchyStore, SnapshotPersistence, persist_quietly

logger = logging.getLogger(__name__)

MAX_IDENTITY_LEN = 256


def normalize_identity(external_ref: object) -> str:
    """Validate an external identity reference handed over by the auth collaborator.

    The reference is opaque (e.g. ``github:octocat``); we only reject what cannot
    be a reference at all.
    """
    if not isinstance(external_ref, str):
        raise UnknownIdentity("external identity must be a string")
    ref = external_ref.strip()
    if not ref:
        raise UnknownIdentity("external identity is empty")
    if len(ref) > MAX_IDENTITY_LEN:
        raise UnknownIdentity("external identity is too long")
    if any(ch.isspace() or not ch.isprintable() for ch in ref):
        raise UnknownIdentity("external identity contains whitespace or control characters")
    return ref


def _new_principal(external_ref: str) -> Principal:
    return Principal(id=str(uuid.uuid4()), external_ref=external_ref)


class PrincipalRegistry:
    """Identity -> principal mapping plus read access to grants.

    Grants are never written here; they change only through the mutation coordinator.
    A principal created on first login is mirrored to persistence right away so its
    id survives a restart.
    """

    def __init__(self, store: HierarchyStore, persistence: SnapshotPersistence | None = None) -> None:
        self._store = store
        self._persistence = persistence

    def resolve(self, external_ref: object) -> Principal:
        ref = normalize_identity(external_ref)
        existing = self._store.snapshot().principal_for_ref(ref)
        if existing is not None:
            return existing
        # Re-checked under the commit lock so concurrent first logins share one principal.
        with self._store.transaction() as tx:
            known = ref in tx.principal_by_ref
            principal = tx.ensure_principal(ref, _new_principal)
        if known:
            return principal
        logger.info("principal registered id=%s ref=%s", principal.id, ref)
        persist_quietly(self._persistence, self._store.snapshot())
        return principal

    def get(self, principal_id: str) -> Principal:
        return self._store.snapshot().get_principal(principal_id)

    def grants_for(self, principal_id: str) -> frozenset[RoleGrant]:
        snap = self._store.snapshot()
        snap.get_principal(principal_id)
        return snap.grants_of(principal_id)
