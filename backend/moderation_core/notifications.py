from __future__ import annotations

import time
from datetime import timedelta
from typing import Any, Optional, Protocol

from sqlalchemy.orm import Session

from . import models
from .clock import Clock, utcnow
from .config import settings
from .logging_utils import log_event, log_warning
from .repositories import NotificationRepository


TEMPLATE_REPORT_RESOLVED = "report_resolved"
TEMPLATE_REPORT_DISMISSED = "report_dismissed"
TEMPLATE_CASE_CLOSED = "case_closed"
TEMPLATE_ACTION_RECORDED = "moderation_action_recorded"
TEMPLATE_APPEAL_DECIDED = "appeal_decided"


class Notifier(Protocol):
    def deliver(self, intent: models.NotificationIntent) -> None: ...


class LoggingNotifier:
    """Default notifier: records the intent in the log and leaves delivery to whoever tails it."""

    def deliver(self, intent: models.NotificationIntent) -> None:
        log_event(
            "notification_delivered",
            intent_id=intent.id,
            recipient_id=intent.recipient_id,
            template_key=intent.template_key,
        )


class NotificationOutbox:
    """Writes notification intents in the same transaction as the mutation that caused them."""

    def __init__(self, repo: NotificationRepository, clock: Clock = utcnow):
        self.repo = repo
        self.clock = clock

    def emit(
        self,
        *,
        recipient_id: Optional[int],
        template_key: str,
        payload: dict[str, Any],
        dedupe_key: Optional[str] = None,
    ) -> Optional[models.NotificationIntent]:
        if recipient_id is None:
            return None
        if dedupe_key is not None:
            existing = self.repo.find_open_by_dedupe(dedupe_key)
            if existing is not None:
                return existing
        now = self.clock()
        intent = models.NotificationIntent(
            recipient_id=recipient_id,
            template_key=template_key,
            payload=payload,
            dedupe_key=dedupe_key,
            status="queued",
            attempts=0,
            max_attempts=settings.notification_max_attempts,
            run_at=now,
            created_at=now,
        )
        self.repo.add(intent)
        log_event("notification_enqueued", intent_id=intent.id, template_key=template_key, recipient_id=recipient_id)
        return intent


def requeue_stale_intents(db: Session, *, stale_after_seconds: int | None = None) -> int:
    if stale_after_seconds is None:
        stale_after_seconds = settings.notification_stale_after_seconds
    cutoff = utcnow() - timedelta(seconds=stale_after_seconds)
    count = (
        db.query(models.NotificationIntent)
        .filter(
            models.NotificationIntent.status == "running",
            models.NotificationIntent.locked_at != None,  # noqa: E711
            models.NotificationIntent.locked_at < cutoff,
        )
        .update(
            {
                "status": "queued",
                "locked_at": None,
                "locked_by": None,
            },
            synchronize_session=False,
        )
    )
    if count:
        db.commit()
        log_warning("notifications_requeued_stale", count=count)
    return int(count or 0)


def claim_next_intent(db: Session, *, worker_id: str) -> models.NotificationIntent | None:
    now = utcnow()
    query = (
        db.query(models.NotificationIntent)
        .filter(models.NotificationIntent.status == "queued", models.NotificationIntent.run_at <= now)
        .order_by(models.NotificationIntent.id.asc())
    )
    if db.bind and db.bind.dialect.name == "postgresql":
        query = query.with_for_update(skip_locked=True)
    intent = query.first()
    if not intent:
        return None
    intent.status = "running"
    intent.locked_at = now
    intent.locked_by = worker_id
    db.add(intent)
    db.commit()
    db.refresh(intent)
    return intent


def mark_delivered(db: Session, intent: models.NotificationIntent) -> None:
    intent.status = "delivered"
    intent.delivered_at = utcnow()
    intent.locked_at = None
    intent.locked_by = None
    db.add(intent)
    db.commit()
    log_event("notification_intent_delivered", intent_id=intent.id, attempts=intent.attempts)


def mark_failed(db: Session, intent: models.NotificationIntent, error: str) -> None:
    intent.attempts = (intent.attempts or 0) + 1
    intent.last_error = error
    intent.locked_at = None
    intent.locked_by = None
    if intent.attempts < (intent.max_attempts or settings.notification_max_attempts):
        backoff_seconds = min(60, 2 ** max(0, intent.attempts - 1))
        intent.status = "queued"
        intent.run_at = utcnow() + timedelta(seconds=backoff_seconds)
        db.add(intent)
        db.commit()
        log_warning(
            "notification_failed_retrying",
            intent_id=intent.id,
            template_key=intent.template_key,
            attempts=intent.attempts,
            backoff_seconds=backoff_seconds,
            error=error,
        )
        return

    intent.status = "failed"
    db.add(intent)
    db.commit()
    log_warning(
        "notification_failed",
        intent_id=intent.id,
        template_key=intent.template_key,
        attempts=intent.attempts,
        error=error,
    )


def dispatch_once(db: Session, notifier: Notifier, *, worker_id: str) -> bool:
    """Deliver one queued intent; returns False when nothing was due."""
    intent = claim_next_intent(db, worker_id=worker_id)
    if intent is None:
        return False
    try:
        notifier.deliver(intent)
    except Exception as exc:  # noqa: BLE001
        mark_failed(db, intent, str(exc))
        return True
    mark_delivered(db, intent)
    return True


def idle_sleep() -> None:
    time.sleep(max(0.1, float(settings.notification_poll_interval_seconds)))
