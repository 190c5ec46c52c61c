"""
Domain errors raised by the moderation engine.

Every failure leaves the engine as one of five kinds. Storage driver errors
are translated into these once, in :func:`translate_integrity_error`, so
nothing above the repositories ever sees a raw SQLAlchemy exception.
"""

from __future__ import annotations

import enum
from typing import Any, Optional

from sqlalchemy.exc import IntegrityError


class ErrorKind(str, enum.Enum):
    validation = "validation"
    not_found = "not_found"
    conflict = "conflict"
    forbidden = "forbidden"
    locked = "locked"


class ModerationError(Exception):
    """
    Base class for all engine errors.

    Attributes:
        message: Human readable message
        kind: Closed error kind
        details: Extra data the caller needs to render an actionable message
    """

    kind: ErrorKind = ErrorKind.validation

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    @property
    def code(self) -> str:
        return self.kind.value

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "details": self.details,
            }
        }

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


class ValidationError(ModerationError):
    """Malformed or out-of-range input; always names the offending field."""

    kind = ErrorKind.validation

    def __init__(self, field: str, message: str, details: Optional[dict[str, Any]] = None):
        details = dict(details or {})
        details["field"] = field
        self.field = field
        super().__init__(message, details)


class NotFoundError(ModerationError):
    kind = ErrorKind.not_found

    def __init__(self, entity: str, entity_id: Any, message: Optional[str] = None):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(
            message or f"{entity} {entity_id} not found",
            {"entity": entity, "id": entity_id},
        )


class ConflictError(ModerationError):
    """Illegal transition, duplicate submission or stale precondition."""

    kind = ErrorKind.conflict

    def __init__(
        self,
        message: str,
        *,
        current: Optional[str] = None,
        attempted: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ):
        details = dict(details or {})
        if current is not None:
            details["current_status"] = current
        if attempted is not None:
            details["attempted_status"] = attempted
        self.current = current
        self.attempted = attempted
        super().__init__(message, details)


class ForbiddenError(ModerationError):
    kind = ErrorKind.forbidden


class LockedError(ModerationError):
    """Blocked by an active legal hold."""

    kind = ErrorKind.locked

    def __init__(self, hold_id: int, message: Optional[str] = None, details: Optional[dict[str, Any]] = None):
        details = dict(details or {})
        details["hold_id"] = hold_id
        self.hold_id = hold_id
        super().__init__(message or f"Blocked by active legal hold {hold_id}", details)


_CONSTRAINT_MESSAGES = {
    "uq_appeal_member_action": "An appeal for this moderation action was already submitted",
    "uq_moderation_case_number": "Case number already exists",
}


def translate_integrity_error(exc: IntegrityError) -> ConflictError:
    text = str(getattr(exc, "orig", exc))
    for constraint, message in _CONSTRAINT_MESSAGES.items():
        if constraint in text:
            return ConflictError(message, details={"constraint": constraint})
    # SQLite reports the columns instead of the constraint name.
    if "moderation_cases.case_number" in text:
        return ConflictError(_CONSTRAINT_MESSAGES["uq_moderation_case_number"], details={"constraint": "uq_moderation_case_number"})
    if "appeals.member_id" in text and "appeals.appealed_action_id" in text:
        return ConflictError(_CONSTRAINT_MESSAGES["uq_appeal_member_action"], details={"constraint": "uq_appeal_member_action"})
    return ConflictError("Conflicting write rejected by the datastore")
