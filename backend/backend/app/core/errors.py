from __future__ import annotations


class AccessCoreError(Exception):
    """Base class for every failure the access core surfaces to its caller."""

    kind = "AccessCoreError"
    retryable = False

    def __init__(self, detail: str = "") -> None:
        super().__init__(detail or self.kind)
        self.detail = detail or self.kind

    def to_dict(self) -> dict:
        return {"error": self.kind, "detail": self.detail}


class NotFound(AccessCoreError):
    kind = "NotFound"

    def __init__(self, entity_type: str, entity_id: str, detail: str | None = None) -> None:
        super().__init__(detail or f"{entity_type} '{entity_id}' not found")
        self.entity_type = entity_type
        self.entity_id = entity_id


class UnknownIdentity(AccessCoreError):
    kind = "UnknownIdentity"


class InvalidToken(AccessCoreError):
    kind = "InvalidToken"


class Unauthorized(AccessCoreError):
    kind = "Unauthorized"

    def __init__(self, reason: str, detail: str | None = None) -> None:
        super().__init__(detail or f"denied: {reason}")
        self.reason = reason

    def to_dict(self) -> dict:
        return {"error": self.kind, "reason": self.reason, "detail": self.detail}


class AdministrativeActionRequired(Unauthorized):
    kind = "AdministrativeActionRequired"

    def __init__(self, detail: str | None = None) -> None:
        super().__init__("AdministrativeActionRequired", detail or "action is reserved for an administrative actor")


class InvariantViolation(AccessCoreError):
    kind = "InvariantViolation"


class InvalidRequest(AccessCoreError):
    kind = "InvalidRequest"


class Busy(AccessCoreError):
    """Lock acquisition timed out. Safe to retry with backoff."""

    kind = "Busy"
    retryable = True
