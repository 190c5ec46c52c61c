from __future__ import annotations

from typing import Optional

from . import models, schemas
from .audit import AuditTrail
from .clock import Clock, normalize_dt, utcnow
from .errors import NotFoundError, ValidationError
from .logging_utils import log_event
from .notifications import TEMPLATE_ACTION_RECORDED, NotificationOutbox
from .repositories import CaseRepository, ModerationActionRepository


COMPENSATING_TYPES = {models.ActionType.reversal.value, models.ActionType.modification.value}


class ModerationActionLog:
    """
    Immutable history of disciplinary actions.

    There is no update path. Corrections are new records pointing at the
    action they compensate for, created by appeal decisions.
    """

    def __init__(
        self,
        repo: ModerationActionRepository,
        cases: CaseRepository,
        audit: AuditTrail,
        outbox: NotificationOutbox,
        clock: Clock = utcnow,
    ):
        self.repo = repo
        self.cases = cases
        self.audit = audit
        self.outbox = outbox
        self.clock = clock

    def record(self, payload: schemas.NewModerationAction, *, actor_id: Optional[int] = None) -> models.ModerationAction:
        action_type = payload.action_type.value
        if payload.case_id is not None and self.cases.get(payload.case_id) is None:
            raise NotFoundError("moderation_case", payload.case_id)

        compensated = None
        if action_type in COMPENSATING_TYPES:
            if payload.compensates_action_id is None:
                raise ValidationError("compensates_action_id", f"A {action_type} must reference the action it compensates")
            compensated = self.get(payload.compensates_action_id)
        elif payload.compensates_action_id is not None:
            # modified sanctions (e.g. ban downgraded to a suspension) keep the link to the original
            compensated = self.get(payload.compensates_action_id)
        if compensated is not None and compensated.target_user_id != payload.target_user_id:
            raise ValidationError("target_user_id", "A linked action must target the same user")

        expires_at = normalize_dt(payload.expires_at)
        now = self.clock()
        if expires_at is not None and expires_at <= now:
            raise ValidationError("expires_at", "Expiry must be in the future")

        action = models.ModerationAction(
            target_user_id=payload.target_user_id,
            actor_id=actor_id,
            action_type=action_type,
            case_id=payload.case_id,
            reason=payload.reason,
            target_post_id=payload.target_post_id,
            target_thread_id=payload.target_thread_id,
            is_appealable=payload.is_appealable,
            expires_at=expires_at,
            compensates_action_id=compensated.id if compensated is not None else None,
            created_at=now,
        )
        self.repo.add(action)
        self.audit.record(
            action_type="action.create",
            target_type="moderation_action",
            target_identifier=action.id,
            actor_id=actor_id,
            details={
                "action_type": action_type,
                "target_user_id": action.target_user_id,
                "case_id": action.case_id,
                "compensates_action_id": action.compensates_action_id,
            },
        )
        self.outbox.emit(
            recipient_id=action.target_user_id,
            template_key=TEMPLATE_ACTION_RECORDED,
            payload={"action_id": action.id, "action_type": action_type},
            dedupe_key=f"action:{action.id}:recorded",
        )
        log_event("moderation_action_recorded", action_id=action.id, action_type=action_type, actor_id=actor_id)
        return action

    def get(self, action_id: int) -> models.ModerationAction:
        action = self.repo.get(action_id)
        if action is None:
            raise NotFoundError("moderation_action", action_id)
        return action

    def list_for_user(self, user_id: int) -> list[models.ModerationAction]:
        return self.repo.for_user(user_id)

    def list_for_case(self, case_id: int) -> list[models.ModerationAction]:
        return self.repo.for_case(case_id)
