from datetime import timedelta

import pytest
from sqlalchemy.exc import IntegrityError

from moderation_core import models, schemas
from moderation_core.errors import ConflictError, ForbiddenError, LockedError, NotFoundError, ValidationError

MEMBER = 501


def _decision(decision: str, **fields) -> schemas.AppealDecisionRequest:
    return schemas.AppealDecisionRequest(decision=decision, decision_reasoning="Reviewed the evidence", **fields)


def test_reversed_ban_appeal_records_compensating_action(helpers, service, admin, db_session):
    ban = helpers["action"](MEMBER, "ban")
    appeal = helpers["appeal"](MEMBER, appealed_ban_id=ban.id)
    assert appeal.status == "pending_review"
    assert appeal.appealed_action_id == ban.id

    decided = service.decide_appeal(appeal.id, admin, _decision("reverse"))

    assert decided.status == "approved"
    assert decided.decision == "reverse"
    assert decided.reviewed_at is not None
    assert decided.corrective_action_taken
    reversal = db_session.get(models.ModerationAction, decided.corrective_action_id)
    assert reversal.action_type == "reversal"
    assert reversal.compensates_action_id == ban.id
    assert reversal.target_user_id == MEMBER
    # original sanction is untouched
    assert db_session.get(models.ModerationAction, ban.id).action_type == "ban"


def test_appeal_window_is_thirty_days_inclusive(helpers, clock):
    on_time = helpers["action"](MEMBER, "warning")
    late = helpers["action"](MEMBER, "warning")

    clock.advance(days=30)
    helpers["appeal"](MEMBER, appealed_warning_id=on_time.id)

    clock.advance(seconds=1)
    with pytest.raises(ValidationError) as excinfo:
        helpers["appeal"](MEMBER, appealed_warning_id=late.id)
    assert excinfo.value.field == "appealed_action"


def test_duplicate_appeal_conflicts(helpers):
    warning = helpers["action"](MEMBER, "warning")
    first = helpers["appeal"](MEMBER, appealed_warning_id=warning.id)

    with pytest.raises(ConflictError) as excinfo:
        helpers["appeal"](MEMBER, appealed_warning_id=warning.id)
    assert excinfo.value.details["appeal_id"] == first.id

    # the generic reference resolves to the same action
    with pytest.raises(ConflictError):
        helpers["appeal"](MEMBER, appealed_moderation_action_id=warning.id)


def test_duplicate_is_also_a_database_constraint(helpers, db_session):
    warning = helpers["action"](MEMBER, "warning")
    helpers["appeal"](MEMBER, appealed_warning_id=warning.id)

    db_session.add(
        models.Appeal(
            member_id=MEMBER,
            appealed_action_id=warning.id,
            appeal_explanation=helpers["appeal_text"],
            status="pending_review",
            lifecycle="active",
        )
    )
    with pytest.raises(IntegrityError):
        db_session.flush()
    db_session.rollback()


def test_sixth_pending_appeal_rejected_until_one_is_decided(helpers, service, admin):
    warnings = [helpers["action"](MEMBER, "warning") for _ in range(6)]
    appeals = [helpers["appeal"](MEMBER, appealed_warning_id=w.id) for w in warnings[:5]]

    with pytest.raises(ValidationError) as excinfo:
        helpers["appeal"](MEMBER, appealed_warning_id=warnings[5].id)
    assert excinfo.value.details["pending"] == 5

    service.decide_appeal(appeals[0].id, admin, _decision("reverse"))
    sixth = helpers["appeal"](MEMBER, appealed_warning_id=warnings[5].id)
    assert sixth.status == "pending_review"


def test_non_appealable_ban_is_forbidden(helpers):
    ban = helpers["action"](MEMBER, "ban", is_appealable=False)
    with pytest.raises(ForbiddenError):
        helpers["appeal"](MEMBER, appealed_ban_id=ban.id)


def test_members_only_appeal_their_own_actions(helpers):
    warning = helpers["action"](MEMBER, "warning")
    with pytest.raises(ForbiddenError):
        helpers["appeal"](MEMBER + 1, appealed_warning_id=warning.id)


@pytest.mark.parametrize("references", [{}, {"appealed_warning_id": 1, "appealed_ban_id": 2}])
def test_exactly_one_reference(helpers, references):
    with pytest.raises(ValidationError) as excinfo:
        helpers["appeal"](MEMBER, **references)
    assert excinfo.value.field == "appealed_action"


def test_typed_reference_must_match_action_type(helpers):
    suspension = helpers["action"](MEMBER, "suspension")
    with pytest.raises(NotFoundError):
        helpers["appeal"](MEMBER, appealed_ban_id=suspension.id)
    with pytest.raises(NotFoundError):
        helpers["appeal"](MEMBER, appealed_warning_id=424242)


@pytest.mark.parametrize("length", [99, 1001])
def test_explanation_length_bounds(helpers, service, length):
    warning = helpers["action"](MEMBER, "warning")
    with pytest.raises(ValidationError) as excinfo:
        service.submit_appeal(
            MEMBER, schemas.NewAppeal(appealed_warning_id=warning.id, appeal_explanation="x" * length)
        )
    assert excinfo.value.field == "appeal_explanation"


def test_update_only_by_owner_while_pending(helpers, service, moderator):
    warning = helpers["action"](MEMBER, "warning")
    appeal = helpers["appeal"](MEMBER, appealed_warning_id=warning.id)

    updated = service.update_appeal(appeal.id, MEMBER, schemas.AppealPatch(additional_evidence="Screenshot link"))
    assert updated.additional_evidence == "Screenshot link"
    assert updated.appeal_explanation == helpers["appeal_text"]

    with pytest.raises(ForbiddenError):
        service.update_appeal(appeal.id, MEMBER + 1, schemas.AppealPatch(additional_evidence="x"))
    with pytest.raises(ValidationError):
        service.update_appeal(appeal.id, MEMBER, schemas.AppealPatch(appeal_explanation="too short"))

    service.begin_review(appeal.id, moderator)
    with pytest.raises(ConflictError):
        service.update_appeal(appeal.id, MEMBER, schemas.AppealPatch(additional_evidence="late"))


def test_only_administrators_decide(helpers, service, moderator):
    warning = helpers["action"](MEMBER, "warning")
    appeal = helpers["appeal"](MEMBER, appealed_warning_id=warning.id)
    with pytest.raises(ForbiddenError):
        service.decide_appeal(appeal.id, moderator, _decision("uphold"))


def test_decided_appeal_is_final(helpers, service, admin):
    warning = helpers["action"](MEMBER, "warning")
    appeal = helpers["appeal"](MEMBER, appealed_warning_id=warning.id)
    denied = service.decide_appeal(appeal.id, admin, _decision("uphold"))
    assert denied.status == "denied"
    assert denied.corrective_action_id is None

    with pytest.raises(ConflictError) as excinfo:
        service.decide_appeal(appeal.id, admin, _decision("reverse"))
    assert excinfo.value.details["current_status"] == "denied"
    assert excinfo.value.details["attempted_status"] == "approved"


def test_modify_replaces_sanction(helpers, service, admin, db_session, clock):
    ban = helpers["action"](MEMBER, "ban")
    appeal = helpers["appeal"](MEMBER, appealed_ban_id=ban.id)

    with pytest.raises(ValidationError) as excinfo:
        service.decide_appeal(appeal.id, admin, _decision("modify"))
    assert excinfo.value.field == "modified_action_type"

    expires = clock.now + timedelta(days=7)
    decided = service.decide_appeal(
        appeal.id, admin, _decision("modify", modified_action_type="suspension", modified_expires_at=expires)
    )

    assert decided.status == "modified"
    compensations = (
        db_session.query(models.ModerationAction)
        .filter(models.ModerationAction.compensates_action_id == ban.id)
        .order_by(models.ModerationAction.id.asc())
        .all()
    )
    assert [a.action_type for a in compensations] == ["modification", "suspension"]
    assert decided.corrective_action_id == compensations[0].id


def test_withdraw_archives_pending_appeal(helpers, service):
    warning = helpers["action"](MEMBER, "warning")
    appeal = helpers["appeal"](MEMBER, appealed_warning_id=warning.id)

    withdrawn = service.withdraw_appeal(appeal.id, MEMBER)
    assert withdrawn.lifecycle == "archived"
    assert service.list_appeal_queue(schemas.AppealFilter()).total == 0

    # one appeal per action, ever
    with pytest.raises(ConflictError):
        helpers["appeal"](MEMBER, appealed_warning_id=warning.id)


def test_withdraw_blocked_by_hold_on_member(helpers, service):
    warning = helpers["action"](MEMBER, "warning")
    appeal = helpers["appeal"](MEMBER, appealed_warning_id=warning.id)
    hold = helpers["hold"](user_id=MEMBER)

    with pytest.raises(LockedError) as excinfo:
        service.withdraw_appeal(appeal.id, MEMBER)
    assert excinfo.value.details["hold_id"] == hold.id


def test_queue_is_oldest_first_with_admin_override(helpers, service, admin, clock):
    appeals = []
    for member in (601, 602, 603):
        warning = helpers["action"](member, "warning")
        appeals.append(helpers["appeal"](member, appealed_warning_id=warning.id))
        clock.advance(minutes=5)

    page = service.list_appeal_queue(schemas.AppealFilter())
    assert [a.id for a in page.items] == [a.id for a in appeals]

    service.set_appeal_priority(appeals[2].id, admin, 10)
    service.set_appeal_priority(appeals[1].id, admin, 80)
    page = service.list_appeal_queue(schemas.AppealFilter())
    assert [a.id for a in page.items] == [appeals[1].id, appeals[2].id, appeals[0].id]


def test_decide_writes_audit_and_notifies_member(helpers, service, admin, db_session):
    warning = helpers["action"](MEMBER, "warning")
    appeal = helpers["appeal"](MEMBER, appealed_warning_id=warning.id)
    service.decide_appeal(appeal.id, admin, _decision("uphold"))

    assert len(helpers["audit_entries"]("appeal.create")) == 1
    decide_entries = helpers["audit_entries"]("appeal.decide")
    assert decide_entries[0].details["decision"] == "uphold"
    intent = db_session.query(models.NotificationIntent).filter_by(template_key="appeal_decided").one()
    assert intent.recipient_id == MEMBER


def test_submission_locks_member_before_counting_pending(helpers, service):
    warning = helpers["action"](MEMBER, "warning")
    repo = service.appeals.repo
    calls = []
    count_pending = repo.count_pending

    def lock_member(member_id):
        calls.append(("lock", member_id))
        return False

    def counting(member_id):
        calls.append(("count", member_id))
        return count_pending(member_id)

    setattr(repo, "lock_member", lock_member)
    setattr(repo, "count_pending", counting)

    helpers["appeal"](MEMBER, appealed_warning_id=warning.id)

    assert calls == [("lock", MEMBER), ("count", MEMBER)]


def test_member_lock_is_a_no_op_on_sqlite(service):
    assert service.appeals.repo.lock_member(MEMBER) is False
