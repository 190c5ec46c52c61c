import pytest

from moderation_core import models, schemas
from moderation_core.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError


def test_record_appends_with_audit_and_notification(helpers, service, db_session):
    action = helpers["action"](70, "suspension", reason="Repeated spam")

    assert action.actor_id == 900
    assert [a.id for a in service.actions.list_for_user(70)] == [action.id]
    entry = helpers["audit_entries"]("action.create")[0]
    assert entry.details["action_type"] == "suspension"
    intent = db_session.query(models.NotificationIntent).filter_by(template_key="moderation_action_recorded").one()
    assert intent.recipient_id == 70


def test_actions_are_append_only(helpers, db_session):
    action = helpers["action"](70, "warning")

    action.reason = "rewritten history"
    with pytest.raises(ConflictError):
        db_session.flush()
    db_session.rollback()

    db_session.delete(db_session.get(models.ModerationAction, action.id))
    with pytest.raises(ConflictError):
        db_session.flush()
    db_session.rollback()

    assert db_session.get(models.ModerationAction, action.id).reason is None


def test_compensating_action_needs_original_for_same_user(helpers, service):
    original = helpers["action"](70, "ban")

    with pytest.raises(ValidationError) as excinfo:
        helpers["action"](70, "reversal")
    assert excinfo.value.field == "compensates_action_id"

    with pytest.raises(ValidationError) as excinfo:
        helpers["action"](71, "reversal", compensates_action_id=original.id)
    assert excinfo.value.field == "target_user_id"

    reversal = helpers["action"](70, "reversal", compensates_action_id=original.id)
    assert reversal.compensates_action_id == original.id


def test_replacement_sanction_must_target_original_user(helpers):
    original = helpers["action"](72, "ban")

    with pytest.raises(ValidationError) as excinfo:
        helpers["action"](73, "suspension", compensates_action_id=original.id)
    assert excinfo.value.field == "target_user_id"

    replacement = helpers["action"](72, "suspension", compensates_action_id=original.id)
    assert replacement.compensates_action_id == original.id


def test_unknown_case_and_past_expiry_rejected(helpers, clock):
    with pytest.raises(NotFoundError):
        helpers["action"](70, "warning", case_id=999)

    with pytest.raises(ValidationError) as excinfo:
        helpers["action"](70, "suspension", expires_at=clock.now)
    assert excinfo.value.field == "expires_at"


def test_members_see_only_their_own_actions(helpers, service):
    action = helpers["action"](70, "warning")
    member = schemas.Actor(id=70)
    other = schemas.Actor(id=71)

    assert [a.id for a in service.list_actions_for_user(70, member)] == [action.id]
    assert service.get_action(action.id, member).id == action.id
    with pytest.raises(ForbiddenError):
        service.list_actions_for_user(70, other)
