"""
Per-entity data access over a SQLAlchemy session.

Components receive these instead of a session so that every query the
engine runs lives in one place. Repositories never commit; the service
layer owns the transaction.
"""

from __future__ import annotations

from datetime import datetime
from typing import Iterable, Optional, Sequence

from sqlalchemy import func, or_, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Query, Session

from . import models
from .config import settings
from .errors import ValidationError, translate_integrity_error


# first key of the two-part advisory lock taken per member on appeal submission
APPEAL_LOCK_NAMESPACE = 7301


def active_only(query: Query, model) -> Query:  # noqa: ANN001
    """Shared soft-delete filter for every model carrying a lifecycle column."""
    return query.filter(model.lifecycle == models.Lifecycle.active.value)


def check_page(page) -> None:  # noqa: ANN001
    if page.page < 1:
        raise ValidationError("page", "Page must be at least 1")
    if page.page_size < 1 or page.page_size > settings.max_page_size:
        raise ValidationError("page_size", f"Page size must be between 1 and {settings.max_page_size}")


def paginate(query: Query, page: int, page_size: int) -> tuple[list, int]:
    total = query.order_by(None).count()
    items = query.offset((page - 1) * page_size).limit(page_size).all()
    return items, int(total)


class _Repository:
    model = None

    def __init__(self, db: Session):
        self.db = db

    def get(self, entity_id: int):
        return self.db.get(self.model, entity_id)

    def add(self, instance):
        self.db.add(instance)
        self.flush()
        return instance

    def flush(self) -> None:
        try:
            self.db.flush()
        except IntegrityError as exc:
            self.db.rollback()
            raise translate_integrity_error(exc) from exc

    def _is_postgres(self) -> bool:
        return bool(self.db.bind and self.db.bind.dialect.name == "postgresql")


class ReportRepository(_Repository):
    model = models.Report

    def query(self, include_archived: bool = False) -> Query:
        query = self.db.query(models.Report)
        if not include_archived:
            query = active_only(query, models.Report)
        return query

    def get_many(self, report_ids: Iterable[int]) -> list[models.Report]:
        ids = list(report_ids)
        if not ids:
            return []
        return self.db.query(models.Report).filter(models.Report.id.in_(ids)).all()

    def for_case(self, case_id: int) -> list[models.Report]:
        return self.db.query(models.Report).filter(models.Report.moderation_case_id == case_id).all()

    def count_by_target(self, reports: Sequence[models.Report]) -> dict[tuple[str, int], int]:
        """Active report counts keyed by ("post"|"thread", id) for the targets of ``reports``."""
        post_ids = {r.target_post_id for r in reports if r.target_post_id is not None}
        thread_ids = {r.target_thread_id for r in reports if r.target_thread_id is not None}
        counts: dict[tuple[str, int], int] = {}
        base = active_only(self.db.query(models.Report), models.Report)
        if post_ids:
            rows = (
                base.with_entities(models.Report.target_post_id, func.count(models.Report.id))
                .filter(models.Report.target_post_id.in_(post_ids))
                .group_by(models.Report.target_post_id)
                .all()
            )
            counts.update({("post", int(pid)): int(n) for pid, n in rows})
        if thread_ids:
            rows = (
                base.with_entities(models.Report.target_thread_id, func.count(models.Report.id))
                .filter(models.Report.target_thread_id.in_(thread_ids))
                .group_by(models.Report.target_thread_id)
                .all()
            )
            counts.update({("thread", int(tid)): int(n) for tid, n in rows})
        return counts


class CaseRepository(_Repository):
    model = models.ModerationCase

    def query(self, include_archived: bool = False) -> Query:
        query = self.db.query(models.ModerationCase)
        if not include_archived:
            query = active_only(query, models.ModerationCase)
        return query

    def case_number_exists(self, case_number: str) -> bool:
        return (
            self.db.query(models.ModerationCase.id)
            .filter(models.ModerationCase.case_number == case_number)
            .first()
            is not None
        )

    def insert_with_savepoint(self, case: models.ModerationCase) -> bool:
        """Insert inside a savepoint; returns False when the case number collides."""
        savepoint = self.db.begin_nested()
        try:
            self.db.add(case)
            self.db.flush()
        except IntegrityError:
            savepoint.rollback()
            return False
        savepoint.commit()
        return True

    def cases_touching(
        self,
        *,
        case_id: Optional[int] = None,
        post_id: Optional[int] = None,
        thread_id: Optional[int] = None,
        user_id: Optional[int] = None,
    ) -> list[models.ModerationCase]:
        ids: set[int] = set()
        if case_id is not None:
            ids.add(case_id)
        if post_id is not None or thread_id is not None:
            conditions = []
            if post_id is not None:
                conditions.append(models.Report.target_post_id == post_id)
            if thread_id is not None:
                conditions.append(models.Report.target_thread_id == thread_id)
            rows = (
                self.db.query(models.Report.moderation_case_id)
                .filter(models.Report.moderation_case_id.isnot(None), or_(*conditions))
                .distinct()
                .all()
            )
            ids.update(int(r[0]) for r in rows)
        if user_id is not None:
            rows = (
                self.db.query(models.ModerationAction.case_id)
                .filter(models.ModerationAction.case_id.isnot(None), models.ModerationAction.target_user_id == user_id)
                .distinct()
                .all()
            )
            ids.update(int(r[0]) for r in rows)
        if not ids:
            return []
        return self.db.query(models.ModerationCase).filter(models.ModerationCase.id.in_(ids)).all()


class ModerationActionRepository(_Repository):
    model = models.ModerationAction

    def for_user(self, user_id: int) -> list[models.ModerationAction]:
        return (
            self.db.query(models.ModerationAction)
            .filter(models.ModerationAction.target_user_id == user_id)
            .order_by(models.ModerationAction.created_at.asc(), models.ModerationAction.id.asc())
            .all()
        )

    def for_case(self, case_id: int) -> list[models.ModerationAction]:
        return (
            self.db.query(models.ModerationAction)
            .filter(models.ModerationAction.case_id == case_id)
            .order_by(models.ModerationAction.created_at.asc(), models.ModerationAction.id.asc())
            .all()
        )

    def compensations_of(self, action_id: int) -> list[models.ModerationAction]:
        return (
            self.db.query(models.ModerationAction)
            .filter(models.ModerationAction.compensates_action_id == action_id)
            .order_by(models.ModerationAction.id.asc())
            .all()
        )


class AppealRepository(_Repository):
    model = models.Appeal

    def query(self, include_archived: bool = False) -> Query:
        query = self.db.query(models.Appeal)
        if not include_archived:
            query = active_only(query, models.Appeal)
        return query

    def find_for_action(self, member_id: int, action_id: int) -> Optional[models.Appeal]:
        return (
            self.db.query(models.Appeal)
            .filter(models.Appeal.member_id == member_id, models.Appeal.appealed_action_id == action_id)
            .first()
        )

    def count_pending(self, member_id: int) -> int:
        query = active_only(self.db.query(models.Appeal), models.Appeal).filter(
            models.Appeal.member_id == member_id,
            models.Appeal.status == models.AppealStatus.pending_review.value,
        )
        return int(query.count())

    def lock_member(self, member_id: int) -> bool:
        """
        Serialize appeal submissions for one member until the transaction ends.

        Row locks cannot cover pending appeals that do not exist yet, so
        PostgreSQL takes a transaction-scoped advisory lock keyed on the
        member. SQLite takes a database-wide write lock, so a second concurrent
        submission fails with "database is locked" instead of passing the count.
        """
        if not self._is_postgres():
            return False
        self.db.execute(
            text("SELECT pg_advisory_xact_lock(:namespace, :member_id)"),
            {"namespace": APPEAL_LOCK_NAMESPACE, "member_id": member_id},
        )
        return True

    def for_member(self, member_id: int) -> list[models.Appeal]:
        return (
            self.db.query(models.Appeal)
            .filter(models.Appeal.member_id == member_id)
            .order_by(models.Appeal.submitted_at.desc(), models.Appeal.id.desc())
            .all()
        )


class LegalHoldRepository(_Repository):
    model = models.LegalHold

    def blocking(
        self,
        *,
        now: datetime,
        user_ids: Iterable[int] = (),
        post_ids: Iterable[int] = (),
        thread_ids: Iterable[int] = (),
        case_ids: Iterable[int] = (),
    ) -> Optional[models.LegalHold]:
        conditions = []
        for column, values in (
            (models.LegalHold.user_id, user_ids),
            (models.LegalHold.post_id, post_ids),
            (models.LegalHold.thread_id, thread_ids),
            (models.LegalHold.moderation_case_id, case_ids),
        ):
            values = {v for v in values if v is not None}
            if values:
                conditions.append(column.in_(values))
        if not conditions:
            return None
        return (
            self.db.query(models.LegalHold)
            .filter(
                models.LegalHold.is_active.is_(True),
                or_(models.LegalHold.hold_end.is_(None), models.LegalHold.hold_end > now),
                or_(*conditions),
            )
            .order_by(models.LegalHold.id.asc())
            .first()
        )

    def list(self, active_only: bool = True) -> list[models.LegalHold]:
        query = self.db.query(models.LegalHold)
        if active_only:
            query = query.filter(models.LegalHold.is_active.is_(True))
        return query.order_by(models.LegalHold.hold_start.desc(), models.LegalHold.id.desc()).all()


class AuditRepository(_Repository):
    model = models.AuditLogEntry

    def query(self) -> Query:
        return self.db.query(models.AuditLogEntry)


class NotificationRepository(_Repository):
    model = models.NotificationIntent

    def find_open_by_dedupe(self, dedupe_key: str) -> Optional[models.NotificationIntent]:
        return (
            self.db.query(models.NotificationIntent)
            .filter(models.NotificationIntent.dedupe_key == dedupe_key)
            .order_by(models.NotificationIntent.id.desc())
            .first()
        )
