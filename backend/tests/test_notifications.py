from moderation_core import models, schemas
from moderation_core.notifications import (
    LoggingNotifier,
    NotificationOutbox,
    dispatch_once,
    requeue_stale_intents,
)
from moderation_core.repositories import NotificationRepository


class FailingNotifier:
    def __init__(self):
        self.calls = 0

    def deliver(self, intent):  # noqa: ANN001
        self.calls += 1
        raise RuntimeError("smtp down")


def _resolve(service, report_id, actor_id):
    service.update_report(report_id, schemas.ReportPatch(status="under_review"), actor_id)
    service.update_report(report_id, schemas.ReportPatch(status="resolved", resolution_notes="Removed"), actor_id)


def test_outbox_skips_missing_recipient_and_dedupes(db_session, clock):
    outbox = NotificationOutbox(NotificationRepository(db_session), clock)

    assert outbox.emit(recipient_id=None, template_key="report_resolved", payload={}) is None

    first = outbox.emit(recipient_id=1, template_key="report_resolved", payload={"a": 1}, dedupe_key="k")
    again = outbox.emit(recipient_id=1, template_key="report_resolved", payload={"a": 1}, dedupe_key="k")
    assert first.id == again.id
    assert db_session.query(models.NotificationIntent).count() == 1


def test_anonymous_report_resolution_emits_nothing(helpers, service, moderator, db_session):
    report = helpers["report"](post_id=1, reporter_id=None)
    _resolve(service, report.id, moderator.id)
    assert db_session.query(models.NotificationIntent).count() == 0


def test_dispatch_delivers_queued_intent(helpers, service, moderator, db_session):
    report = helpers["report"](post_id=1, reporter_id=5)
    _resolve(service, report.id, moderator.id)

    assert dispatch_once(db_session, LoggingNotifier(), worker_id="test") is True
    intent = db_session.query(models.NotificationIntent).one()
    assert intent.status == "delivered"
    assert intent.delivered_at is not None
    assert dispatch_once(db_session, LoggingNotifier(), worker_id="test") is False


def test_dispatch_retries_then_fails(helpers, service, moderator, db_session):
    report = helpers["report"](post_id=1, reporter_id=5)
    _resolve(service, report.id, moderator.id)
    notifier = FailingNotifier()

    assert dispatch_once(db_session, notifier, worker_id="test") is True
    intent = db_session.query(models.NotificationIntent).one()
    assert intent.status == "queued"
    assert intent.attempts == 1
    assert intent.last_error == "smtp down"

    intent.run_at = intent.created_at
    intent.attempts = intent.max_attempts - 1
    db_session.commit()
    assert dispatch_once(db_session, notifier, worker_id="test") is True
    db_session.refresh(intent)
    assert intent.status == "failed"
    assert notifier.calls == 2


def test_requeue_stale_running_intents(helpers, service, moderator, db_session):
    report = helpers["report"](post_id=1, reporter_id=5)
    _resolve(service, report.id, moderator.id)
    intent = db_session.query(models.NotificationIntent).one()
    intent.status = "running"
    intent.locked_by = "dead-worker"
    intent.locked_at = intent.created_at
    db_session.commit()

    assert requeue_stale_intents(db_session, stale_after_seconds=0) == 1
    db_session.refresh(intent)
    assert intent.status == "queued"
    assert intent.locked_by is None
