"""
Appeal lifecycle.

States run ``pending_review -> under_review -> {approved, denied, modified}``
and nothing leaves a terminal state. Submission checks run in a fixed
order so that callers see the same error for the same bad input:

1. exactly one appealed reference
2. the referenced action exists (and matches the reference type)
3. the action targets the submitting member
4. the appeal window is still open
5. no earlier appeal for the same action by this member
6. fewer than ``max_pending_appeals`` pending appeals
7. bans must be appealable

The uniqueness check in step 5 is backed by ``uq_appeal_member_action`` so
two concurrent submissions cannot both pass it.
"""

from __future__ import annotations

from datetime import timedelta
from typing import Optional

from sqlalchemy import case as sql_case

from . import models, schemas
from .actions import COMPENSATING_TYPES, ModerationActionLog
from .audit import AuditTrail
from .clock import Clock, normalize_dt, utcnow
from .config import settings
from .errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from .legal_holds import LegalHoldRegistry
from .logging_utils import log_event
from .notifications import TEMPLATE_APPEAL_DECIDED, NotificationOutbox
from .repositories import AppealRepository, check_page, paginate


Status = models.AppealStatus
Decision = models.AppealDecision

TERMINAL = {Status.approved.value, Status.denied.value, Status.modified.value}
OPEN = {Status.pending_review.value, Status.under_review.value}

DECISION_STATUS = {
    Decision.uphold.value: Status.denied.value,
    Decision.reverse.value: Status.approved.value,
    Decision.modify.value: Status.modified.value,
}

# appeal reference field -> action type it must point at (None accepts any sanction)
REFERENCE_TYPES: dict[str, Optional[str]] = {
    "appealed_moderation_action_id": None,
    "appealed_warning_id": models.ActionType.warning.value,
    "appealed_suspension_id": models.ActionType.suspension.value,
    "appealed_ban_id": models.ActionType.ban.value,
}


class AppealEngine:
    def __init__(
        self,
        repo: AppealRepository,
        actions: ModerationActionLog,
        holds: LegalHoldRegistry,
        audit: AuditTrail,
        outbox: NotificationOutbox,
        clock: Clock = utcnow,
    ):
        self.repo = repo
        self.actions = actions
        self.holds = holds
        self.audit = audit
        self.outbox = outbox
        self.clock = clock

    def submit(self, member_id: int, payload: schemas.NewAppeal) -> models.Appeal:
        references = {
            field: getattr(payload, field) for field in REFERENCE_TYPES if getattr(payload, field) is not None
        }
        if len(references) != 1:
            raise ValidationError(
                "appealed_action",
                "Exactly one appealed action reference must be provided",
                details={"provided": sorted(references)},
            )
        _check_explanation(payload.appeal_explanation)
        reference_field, action_id = next(iter(references.items()))

        action = self._resolve_reference(reference_field, action_id)
        if action.target_user_id != member_id:
            raise ForbiddenError(
                "Members can only appeal moderation actions taken against them",
                details={"action_id": action.id},
            )

        now = self.clock()
        window = timedelta(days=settings.appeal_window_days)
        if now - normalize_dt(action.created_at) > window:
            raise ValidationError(
                "appealed_action",
                f"The {settings.appeal_window_days} day appeal window for this action has closed",
                details={"action_id": action.id},
            )

        self.repo.lock_member(member_id)
        existing = self.repo.find_for_action(member_id, action.id)
        if existing is not None:
            raise ConflictError(
                "An appeal for this moderation action was already submitted",
                current=existing.status,
                details={"appeal_id": existing.id, "action_id": action.id},
            )

        pending = self.repo.count_pending(member_id)
        if pending >= settings.max_pending_appeals:
            raise ValidationError(
                "member_id",
                f"Too many active appeals: at most {settings.max_pending_appeals} may be pending review",
                details={"pending": pending},
            )

        if action.action_type == models.ActionType.ban.value and not action.is_appealable:
            raise ForbiddenError("This ban is not appealable", details={"action_id": action.id})

        appeal = models.Appeal(
            member_id=member_id,
            appealed_action_id=action.id,
            appeal_explanation=payload.appeal_explanation,
            additional_evidence=payload.additional_evidence,
            status=Status.pending_review.value,
            lifecycle=models.Lifecycle.active.value,
            submitted_at=now,
            updated_at=now,
        )
        setattr(appeal, reference_field, action.id)
        self.repo.add(appeal)
        self.audit.record(
            action_type="appeal.create",
            target_type="appeal",
            target_identifier=appeal.id,
            actor_id=member_id,
            details={"action_id": action.id, "action_type": action.action_type, "reference": reference_field},
        )
        log_event("appeal_submitted", appeal_id=appeal.id, member_id=member_id, action_id=action.id)
        return appeal

    def get(self, appeal_id: int) -> models.Appeal:
        appeal = self.repo.get(appeal_id)
        if appeal is None:
            raise NotFoundError("appeal", appeal_id)
        return appeal

    def update(self, appeal_id: int, member_id: int, patch: schemas.AppealPatch) -> models.Appeal:
        appeal = self.get(appeal_id)
        if appeal.member_id != member_id:
            raise ForbiddenError("Only the submitting member can edit an appeal", details={"appeal_id": appeal.id})
        self._ensure_editable(appeal)

        fields = patch.model_fields_set
        if "appeal_explanation" in fields:
            if patch.appeal_explanation is None:
                raise ValidationError("appeal_explanation", "Appeal explanation cannot be cleared")
            _check_explanation(patch.appeal_explanation)

        changes: dict[str, object] = {}
        if "appeal_explanation" in fields and patch.appeal_explanation != appeal.appeal_explanation:
            appeal.appeal_explanation = patch.appeal_explanation
            changes["appeal_explanation"] = True
        if "additional_evidence" in fields and patch.additional_evidence != appeal.additional_evidence:
            appeal.additional_evidence = patch.additional_evidence
            changes["additional_evidence"] = patch.additional_evidence is not None
        if not changes:
            return appeal

        appeal.updated_at = self.clock()
        self.repo.flush()
        self.audit.record(
            action_type="appeal.update",
            target_type="appeal",
            target_identifier=appeal.id,
            actor_id=member_id,
            details={"changed": sorted(changes)},
        )
        return appeal

    def begin_review(self, appeal_id: int, actor: schemas.Actor) -> models.Appeal:
        if not actor.is_staff:
            raise ForbiddenError("Only moderators or administrators can review appeals")
        appeal = self.get(appeal_id)
        self._ensure_active(appeal)
        if appeal.status == Status.under_review.value:
            return appeal
        if appeal.status != Status.pending_review.value:
            raise ConflictError(
                f"Appeal is already {appeal.status}",
                current=appeal.status,
                attempted=Status.under_review.value,
            )
        appeal.status = Status.under_review.value
        appeal.reviewing_admin_id = actor.id
        appeal.updated_at = self.clock()
        self.repo.flush()
        self.audit.record(
            action_type="appeal.review",
            target_type="appeal",
            target_identifier=appeal.id,
            actor_id=actor.id,
            details={"from": Status.pending_review.value, "to": Status.under_review.value},
        )
        return appeal

    def decide(self, appeal_id: int, actor: schemas.Actor, payload: schemas.AppealDecisionRequest) -> models.Appeal:
        if not actor.is_admin:
            raise ForbiddenError("Only administrators can decide appeals")
        appeal = self.get(appeal_id)
        new_status = DECISION_STATUS[payload.decision.value]
        if appeal.status in TERMINAL:
            raise ConflictError(
                f"Appeal was already decided as {appeal.status}",
                current=appeal.status,
                attempted=new_status,
            )
        self._ensure_active(appeal)

        reasoning = (payload.decision_reasoning or "").strip()
        if not reasoning:
            raise ValidationError("decision_reasoning", "Decision reasoning is required")
        if payload.decision == Decision.modify:
            if payload.modified_action_type is None:
                raise ValidationError("modified_action_type", "A modified decision must name the replacement action type")
            if payload.modified_action_type.value in COMPENSATING_TYPES:
                raise ValidationError("modified_action_type", "Replacement must be a warning, suspension, ban or content removal")

        original = self.actions.get(appeal.appealed_action_id)
        now = self.clock()
        if payload.decision == Decision.reverse:
            correction = self.actions.record(
                schemas.NewModerationAction(
                    target_user_id=original.target_user_id,
                    action_type=models.ActionType.reversal,
                    case_id=original.case_id,
                    reason=f"Appeal {appeal.id} reversed: {reasoning}",
                    compensates_action_id=original.id,
                    is_appealable=False,
                ),
                actor_id=actor.id,
            )
            appeal.corrective_action_id = correction.id
            appeal.corrective_action_taken = f"Reversed {original.action_type} #{original.id} (reversal #{correction.id})"
        elif payload.decision == Decision.modify:
            correction = self.actions.record(
                schemas.NewModerationAction(
                    target_user_id=original.target_user_id,
                    action_type=models.ActionType.modification,
                    case_id=original.case_id,
                    reason=f"Appeal {appeal.id} modified: {reasoning}",
                    compensates_action_id=original.id,
                    is_appealable=False,
                ),
                actor_id=actor.id,
            )
            replacement = self.actions.record(
                schemas.NewModerationAction(
                    target_user_id=original.target_user_id,
                    action_type=payload.modified_action_type,
                    case_id=original.case_id,
                    reason=f"Replaces {original.action_type} #{original.id} after appeal {appeal.id}",
                    target_post_id=original.target_post_id,
                    target_thread_id=original.target_thread_id,
                    expires_at=payload.modified_expires_at,
                    compensates_action_id=original.id,
                ),
                actor_id=actor.id,
            )
            appeal.corrective_action_id = correction.id
            appeal.corrective_action_taken = (
                f"Modified {original.action_type} #{original.id} to "
                f"{replacement.action_type} #{replacement.id} (modification #{correction.id})"
            )

        previous_status = appeal.status
        appeal.status = new_status
        appeal.decision = payload.decision.value
        appeal.decision_reasoning = reasoning
        appeal.reviewing_admin_id = actor.id
        appeal.reviewed_at = now
        appeal.updated_at = now
        self.repo.flush()

        self.audit.record(
            action_type="appeal.decide",
            target_type="appeal",
            target_identifier=appeal.id,
            actor_id=actor.id,
            details={
                "from": previous_status,
                "to": new_status,
                "decision": appeal.decision,
                "reasoning": reasoning,
                "corrective_action_id": appeal.corrective_action_id,
            },
        )
        self.outbox.emit(
            recipient_id=appeal.member_id,
            template_key=TEMPLATE_APPEAL_DECIDED,
            payload={"appeal_id": appeal.id, "status": new_status, "decision": appeal.decision},
            dedupe_key=f"appeal:{appeal.id}:decided",
        )
        log_event("appeal_decided", appeal_id=appeal.id, decision=appeal.decision, actor_id=actor.id)
        return appeal

    def withdraw(self, appeal_id: int, member_id: int) -> models.Appeal:
        appeal = self.get(appeal_id)
        if appeal.member_id != member_id:
            raise ForbiddenError("Only the submitting member can withdraw an appeal", details={"appeal_id": appeal.id})
        if appeal.lifecycle == models.Lifecycle.archived.value:
            return appeal
        if appeal.status != Status.pending_review.value:
            raise ConflictError(
                f"Appeal is {appeal.status} and can no longer be withdrawn",
                current=appeal.status,
            )
        action = self.actions.get(appeal.appealed_action_id)
        self.holds.ensure_not_blocked(
            schemas.TargetRef(user_id=member_id, moderation_case_id=action.case_id),
            operation="withdraw appeal",
        )
        now = self.clock()
        appeal.lifecycle = models.Lifecycle.archived.value
        appeal.archived_at = now
        appeal.updated_at = now
        self.repo.flush()
        self.audit.record(
            action_type="appeal.withdraw",
            target_type="appeal",
            target_identifier=appeal.id,
            actor_id=member_id,
        )
        log_event("appeal_withdrawn", appeal_id=appeal.id, member_id=member_id)
        return appeal

    def set_priority_override(self, appeal_id: int, actor: schemas.Actor, value: Optional[int]) -> models.Appeal:
        if not actor.is_admin:
            raise ForbiddenError("Only administrators can reprioritize appeals")
        appeal = self.get(appeal_id)
        self._ensure_active(appeal)
        if appeal.status in TERMINAL:
            raise ConflictError(f"Appeal was already decided as {appeal.status}", current=appeal.status)
        if appeal.priority_override == value:
            return appeal
        previous = appeal.priority_override
        appeal.priority_override = value
        appeal.updated_at = self.clock()
        self.repo.flush()
        self.audit.record(
            action_type="appeal.priority_override",
            target_type="appeal",
            target_identifier=appeal.id,
            actor_id=actor.id,
            details={"from": previous, "to": value},
        )
        return appeal

    def list_queue(self, filters: schemas.AppealFilter, page: schemas.PageRequest) -> schemas.Page[models.Appeal]:
        """Review queue: overridden appeals first (highest first), then oldest submission."""
        check_page(page)
        query = self.repo.query(include_archived=filters.include_archived)
        statuses = [s.value for s in filters.status] if filters.status else sorted(OPEN)
        query = query.filter(models.Appeal.status.in_(statuses))
        if filters.member_id is not None:
            query = query.filter(models.Appeal.member_id == filters.member_id)
        has_override = sql_case((models.Appeal.priority_override.is_(None), 1), else_=0)
        query = query.order_by(
            has_override.asc(),
            models.Appeal.priority_override.desc(),
            models.Appeal.submitted_at.asc(),
            models.Appeal.id.asc(),
        )
        items, total = paginate(query, page.page, page.page_size)
        return schemas.Page[models.Appeal](items=items, total=total, page=page.page, page_size=page.page_size)

    def list_for_member(self, member_id: int) -> list[models.Appeal]:
        return self.repo.for_member(member_id)

    def _resolve_reference(self, reference_field: str, action_id: int) -> models.ModerationAction:
        expected_type = REFERENCE_TYPES[reference_field]
        action = self.actions.repo.get(action_id)
        if action is None or action.action_type in COMPENSATING_TYPES:
            raise NotFoundError("moderation_action", action_id)
        if expected_type is not None and action.action_type != expected_type:
            raise NotFoundError(expected_type, action_id)
        return action

    def _ensure_active(self, appeal: models.Appeal) -> None:
        if appeal.lifecycle == models.Lifecycle.archived.value:
            raise ConflictError("Appeal was withdrawn", current=appeal.status)

    def _ensure_editable(self, appeal: models.Appeal) -> None:
        self._ensure_active(appeal)
        if appeal.status != Status.pending_review.value:
            raise ConflictError(
                f"Appeals can only be edited while pending review (currently {appeal.status})",
                current=appeal.status,
            )


def _check_explanation(text: str) -> None:
    length = len(text or "")
    if length < settings.appeal_explanation_min_length or length > settings.appeal_explanation_max_length:
        raise ValidationError(
            "appeal_explanation",
            f"Appeal explanation must be between {settings.appeal_explanation_min_length} "
            f"and {settings.appeal_explanation_max_length} characters",
            details={"length": length},
        )
