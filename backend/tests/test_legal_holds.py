from datetime import timedelta

import pytest

from moderation_core import schemas
from moderation_core.errors import ValidationError


def test_create_requires_a_target(service, admin):
    with pytest.raises(ValidationError) as excinfo:
        service.create_legal_hold(schemas.NewLegalHold(hold_reason="subpoena"), admin.id)
    assert excinfo.value.field == "target"


def test_hold_end_must_follow_start(service, admin, clock):
    with pytest.raises(ValidationError) as excinfo:
        service.create_legal_hold(
            schemas.NewLegalHold(user_id=1, hold_reason="subpoena", hold_start=clock.now, hold_end=clock.now),
            admin.id,
        )
    assert excinfo.value.field == "hold_end"


def test_is_blocked_matches_any_reference(helpers, service):
    helpers["hold"](post_id=5, user_id=9)

    assert service.is_blocked(schemas.TargetRef(post_id=5)) is True
    assert service.is_blocked(schemas.TargetRef(user_id=9, thread_id=1)) is True
    assert service.is_blocked(schemas.TargetRef(post_id=6)) is False
    assert service.is_blocked(schemas.TargetRef()) is False


def test_expired_hold_stops_blocking(service, admin, clock):
    service.create_legal_hold(
        schemas.NewLegalHold(thread_id=3, hold_reason="litigation", hold_end=clock.now + timedelta(days=1)),
        admin.id,
    )
    assert service.is_blocked(schemas.TargetRef(thread_id=3)) is True

    clock.advance(days=1, seconds=1)
    assert service.is_blocked(schemas.TargetRef(thread_id=3)) is False


def test_deactivate_is_idempotent(helpers, service, admin):
    moderation_case = service.open_case(schemas.NewCase(), admin.id)
    hold = helpers["hold"](moderation_case_id=moderation_case.id)

    first = service.deactivate_legal_hold(hold.id, admin.id)
    second = service.deactivate_legal_hold(hold.id, admin.id)

    assert first.is_active is False
    assert second.deactivated_at == first.deactivated_at
    assert len(helpers["audit_entries"]("legal_hold.deactivate")) == 1
    assert service.is_blocked(schemas.TargetRef(moderation_case_id=moderation_case.id)) is False
    assert service.list_legal_holds(active_only=True) == []
    assert [h.id for h in service.list_legal_holds(active_only=False)] == [hold.id]
