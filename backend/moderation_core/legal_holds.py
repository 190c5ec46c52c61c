from __future__ import annotations

from typing import Iterable, Optional

from . import models, schemas
from .audit import AuditTrail
from .clock import Clock, normalize_dt, utcnow
from .errors import LockedError, NotFoundError, ValidationError
from .logging_utils import log_event
from .repositories import LegalHoldRepository


class LegalHoldRegistry:
    """
    Compliance freezes against posts, threads, users and moderation cases.

    A hold blocks while it is active and its end date is unset or still in
    the future. Lookups are plain reads: a hold created after a close has
    completed does not undo that close.
    """

    def __init__(self, repo: LegalHoldRepository, audit: AuditTrail, clock: Clock = utcnow):
        self.repo = repo
        self.audit = audit
        self.clock = clock

    def find_blocking(
        self,
        target: schemas.TargetRef,
        *,
        post_ids: Iterable[int] = (),
        thread_ids: Iterable[int] = (),
        user_ids: Iterable[int] = (),
    ) -> Optional[models.LegalHold]:
        return self.repo.blocking(
            now=self.clock(),
            user_ids=[target.user_id, *user_ids],
            post_ids=[target.post_id, *post_ids],
            thread_ids=[target.thread_id, *thread_ids],
            case_ids=[target.moderation_case_id],
        )

    def is_blocked(self, target: schemas.TargetRef) -> bool:
        return self.find_blocking(target) is not None

    def ensure_not_blocked(self, target: schemas.TargetRef, *, operation: str, **graph) -> None:
        hold = self.find_blocking(target, **graph)
        if hold is not None:
            raise LockedError(
                hold.id,
                f"Cannot {operation}: legal hold {hold.id} is active",
                details={"operation": operation, "hold_reason": hold.hold_reason},
            )

    def create(self, payload: schemas.NewLegalHold, *, actor_id: Optional[int] = None) -> models.LegalHold:
        target = schemas.TargetRef(
            user_id=payload.user_id,
            post_id=payload.post_id,
            thread_id=payload.thread_id,
            moderation_case_id=payload.moderation_case_id,
        )
        if target.is_empty():
            raise ValidationError("target", "A legal hold must reference a user, post, thread or moderation case")

        now = self.clock()
        hold_start = normalize_dt(payload.hold_start) or now
        hold_end = normalize_dt(payload.hold_end)
        if hold_end is not None and hold_end <= hold_start:
            raise ValidationError("hold_end", "Hold end must be after hold start")

        hold = models.LegalHold(
            user_id=payload.user_id,
            post_id=payload.post_id,
            thread_id=payload.thread_id,
            moderation_case_id=payload.moderation_case_id,
            hold_reason=payload.hold_reason.value,
            description=payload.description,
            created_by_id=actor_id,
            hold_start=hold_start,
            hold_end=hold_end,
            is_active=True,
            created_at=now,
        )
        self.repo.add(hold)
        self.audit.record(
            action_type="legal_hold.create",
            target_type="legal_hold",
            target_identifier=hold.id,
            actor_id=actor_id,
            details={"hold_reason": hold.hold_reason, **target.model_dump(exclude_none=True)},
        )
        log_event("legal_hold_created", hold_id=hold.id, actor_id=actor_id)
        return hold

    def get(self, hold_id: int) -> models.LegalHold:
        hold = self.repo.get(hold_id)
        if hold is None:
            raise NotFoundError("legal_hold", hold_id)
        return hold

    def deactivate(self, hold_id: int, *, actor_id: Optional[int] = None) -> models.LegalHold:
        hold = self.get(hold_id)
        if not hold.is_active:
            return hold
        hold.is_active = False
        hold.deactivated_at = self.clock()
        self.repo.flush()
        self.audit.record(
            action_type="legal_hold.deactivate",
            target_type="legal_hold",
            target_identifier=hold.id,
            actor_id=actor_id,
        )
        log_event("legal_hold_deactivated", hold_id=hold.id, actor_id=actor_id)
        return hold

    def list(self, *, active_only: bool = True) -> list[models.LegalHold]:
        return self.repo.list(active_only=active_only)
