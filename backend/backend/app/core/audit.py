"""Audit sink.

Every authorization decision and every mutation attempt produces exactly one
AuditRecord. Delivery is fire-and-forget: a failing sink is logged locally and
never retried, and it never rolls back a committed mutation. The audit trail is
therefore a best-effort mirror of the hierarchy, not a ledger; the hierarchy
store (and its persisted snapshot) is the authoritative record.
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Protocol

from sqlalchemy.orm import Session

from app.core.entities import utcnow
from app.core.request_context import get_request_id
from app.db.models.security_audit import AuditLog

logger = logging.getLogger(__name__)


class AuditOutcome(str, Enum):
    ALLOWED = "allowed"
    DENIED = "denied"
    COMMITTED = "committed"
    FAILED = "failed"


@dataclass(frozen=True)
class AuditRecord:
    actor: str
    action: str
    target_kind: str
    target_id: str | None
    outcome: AuditOutcome
    principal_id: str | None = None
    reason: str | None = None
    payload: dict = field(default_factory=dict)
    ip_address: str | None = None
    user_agent: str | None = None
    status_code: int | None = None
    request_id: str | None = field(default_factory=get_request_id)
    timestamp: datetime = field(default_factory=utcnow)

    @property
    def success(self) -> bool:
        return self.outcome in (AuditOutcome.ALLOWED, AuditOutcome.COMMITTED)


class AuditSink(Protocol):
    def append(self, record: AuditRecord) -> None: ...


class MemoryAuditSink:
    """Keeps records in process. Used by tests and by deployments without a database."""

    def __init__(self) -> None:
        self._records: list[AuditRecord] = []
        self._lock = threading.Lock()

    def append(self, record: AuditRecord) -> None:
        with self._lock:
            self._records.append(record)

    @property
    def records(self) -> tuple[AuditRecord, ...]:
        with self._lock:
            return tuple(self._records)


def audit(
    db: Session,
    *,
    actor: str,
    action: str,
    entity_type: str,
    entity_id: str | None = None,
    outcome: str = AuditOutcome.COMMITTED.value,
    principal_id: str | None = None,
    reason: str | None = None,
    payload: dict | None = None,
    request_id: str | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
    status_code: int | None = None,
    success: bool = True,
    created_at: datetime | None = None,
) -> None:
    """Write an append-only audit record.

    Keep payload JSON-serializable.
    """
    safe_payload: dict[str, Any] = payload or {}
    try:
        # Ensure it can roundtrip to JSON (avoids runtime errors on commit)
        json.dumps(safe_payload)
    except (TypeError, ValueError):
        safe_payload = {"_payload_error": "non_json", "_payload_repr": repr(payload)}

    db.add(
        AuditLog(
            actor=actor,
            principal_id=principal_id,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            outcome=outcome,
            reason=reason,
            request_id=request_id,
            ip_address=ip_address,
            user_agent=user_agent,
            status_code=status_code,
            success=success,
            payload=safe_payload,
            created_at=created_at or utcnow(),
        )
    )
    db.commit()


class SqlAuditSink:
    """Appends records to ``sys_audit_log``."""

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self._session_factory = session_factory

    def append(self, record: AuditRecord) -> None:
        with self._session_factory() as db:
            audit(
                db,
                actor=record.actor,
                action=record.action,
                entity_type=record.target_kind,
                entity_id=record.target_id,
                outcome=record.outcome.value,
                principal_id=record.principal_id,
                reason=record.reason,
                payload=record.payload,
                request_id=record.request_id,
                ip_address=record.ip_address,
                user_agent=record.user_agent,
                status_code=record.status_code,
                success=record.success,
                created_at=record.timestamp,
            )


def emit(sink: AuditSink, record: AuditRecord) -> None:
    """Hand a record to the sink; sink failures are logged and swallowed."""
    try:
        sink.append(record)
    except Exception:
        logger.warning(
            "audit sink failed action=%s target=%s:%s outcome=%s",
            record.action,
            record.target_kind,
            record.target_id,
            record.outcome.value,
            exc_info=True,
        )
