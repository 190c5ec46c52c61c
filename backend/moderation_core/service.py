"""
Transaction boundary for the moderation engine.

``ModerationService`` wires one set of repositories and components around a
session and commits once per call. Any error rolls the whole call back, so
a mutation never lands without its audit entry and notification intent.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Iterable, Optional

from sqlalchemy.orm import Session

from . import models, repositories, schemas
from .actions import ModerationActionLog
from .appeals import AppealEngine
from .audit import AuditTrail
from .cases import ModerationCaseManager
from .clock import Clock, utcnow
from .errors import ForbiddenError
from .legal_holds import LegalHoldRegistry
from .logging_utils import log_warning
from .notifications import NotificationOutbox
from .reports import ReportIntake


class ModerationService:
    def __init__(self, db: Session, clock: Clock = utcnow):
        self.db = db
        self.clock = clock

        self.audit = AuditTrail(repositories.AuditRepository(db), clock)
        self.outbox = NotificationOutbox(repositories.NotificationRepository(db), clock)
        self.holds = LegalHoldRegistry(repositories.LegalHoldRepository(db), self.audit, clock)
        self.reports = ReportIntake(repositories.ReportRepository(db), self.holds, self.audit, self.outbox, clock)
        self.actions = ModerationActionLog(
            repositories.ModerationActionRepository(db),
            repositories.CaseRepository(db),
            self.audit,
            self.outbox,
            clock,
        )
        self.cases = ModerationCaseManager(
            repositories.CaseRepository(db),
            repositories.ReportRepository(db),
            repositories.ModerationActionRepository(db),
            self.holds,
            self.audit,
            self.outbox,
            clock,
        )
        self.appeals = AppealEngine(
            repositories.AppealRepository(db),
            self.actions,
            self.holds,
            self.audit,
            self.outbox,
            clock,
        )

    @contextmanager
    def _transaction(self, operation: str):
        try:
            yield
            self.db.commit()
        except Exception as exc:
            self.db.rollback()
            log_warning("moderation_operation_failed", operation=operation, error=str(exc), error_type=type(exc).__name__)
            raise

    # Reports

    def submit_report(self, payload: schemas.NewReport) -> models.Report:
        with self._transaction("submit_report"):
            report = self.reports.submit(payload)
        return report

    def get_report(self, report_id: int) -> models.Report:
        return self.reports.get(report_id)

    def list_report_queue(
        self,
        filters: schemas.ReportFilter,
        sort: schemas.ReportSort = "priority",
        page: Optional[schemas.PageRequest] = None,
    ) -> schemas.Page[schemas.ReportSummary]:
        return self.reports.list_queue(filters, sort, page or schemas.PageRequest())

    def update_report(self, report_id: int, patch: schemas.ReportPatch, actor_id: Optional[int]) -> models.Report:
        with self._transaction("update_report"):
            report = self.reports.update(report_id, patch, actor_id=actor_id)
        return report

    def archive_report(self, report_id: int, actor_id: Optional[int]) -> models.Report:
        with self._transaction("archive_report"):
            report = self.reports.archive(report_id, actor_id=actor_id)
        return report

    # Cases

    def open_case(self, payload: schemas.NewCase, actor_id: Optional[int] = None) -> models.ModerationCase:
        with self._transaction("open_case"):
            moderation_case = self.cases.open(payload, actor_id=actor_id)
        return moderation_case

    def get_case(self, case_id: int) -> models.ModerationCase:
        return self.cases.get(case_id)

    def list_cases(
        self, filters: schemas.CaseFilter, page: Optional[schemas.PageRequest] = None
    ) -> schemas.Page[models.ModerationCase]:
        return self.cases.list(filters, page or schemas.PageRequest())

    def update_case(self, case_id: int, patch: schemas.CasePatch, actor_id: Optional[int]) -> models.ModerationCase:
        with self._transaction("update_case"):
            moderation_case = self.cases.update(case_id, patch, actor_id=actor_id)
        return moderation_case

    def close_case(self, case_id: int, rationale: str, actor_id: Optional[int]) -> models.ModerationCase:
        with self._transaction("close_case"):
            moderation_case = self.cases.close(case_id, rationale, actor_id=actor_id)
        return moderation_case

    def link_reports(self, case_id: int, report_ids: Iterable[int], actor_id: Optional[int]) -> models.ModerationCase:
        with self._transaction("link_reports"):
            moderation_case = self.cases.link_reports(case_id, report_ids, actor_id=actor_id)
        return moderation_case

    def archive_case(self, case_id: int, actor_id: Optional[int]) -> models.ModerationCase:
        with self._transaction("archive_case"):
            moderation_case = self.cases.archive(case_id, actor_id=actor_id)
        return moderation_case

    # Moderation actions

    def record_action(self, payload: schemas.NewModerationAction, actor_id: Optional[int] = None) -> models.ModerationAction:
        with self._transaction("record_action"):
            action = self.actions.record(payload, actor_id=actor_id)
            if action.case_id is not None:
                self.cases.refresh_legal_hold(self.cases.get(action.case_id))
                self.cases.repo.flush()
        return action

    def get_action(self, action_id: int, viewer: schemas.Actor) -> models.ModerationAction:
        action = self.actions.get(action_id)
        if not viewer.is_staff and action.target_user_id != viewer.id:
            raise ForbiddenError("Members can only view moderation actions taken against them")
        return action

    def list_actions_for_user(self, user_id: int, viewer: schemas.Actor) -> list[models.ModerationAction]:
        if not viewer.is_staff and user_id != viewer.id:
            raise ForbiddenError("Members can only view moderation actions taken against them")
        return self.actions.list_for_user(user_id)

    # Appeals

    def submit_appeal(self, member_id: int, payload: schemas.NewAppeal) -> models.Appeal:
        with self._transaction("submit_appeal"):
            appeal = self.appeals.submit(member_id, payload)
        return appeal

    def get_appeal(self, appeal_id: int, viewer: schemas.Actor) -> models.Appeal:
        appeal = self.appeals.get(appeal_id)
        if not viewer.is_staff and appeal.member_id != viewer.id:
            raise ForbiddenError("Members can only view their own appeals")
        return appeal

    def update_appeal(self, appeal_id: int, member_id: int, patch: schemas.AppealPatch) -> models.Appeal:
        with self._transaction("update_appeal"):
            appeal = self.appeals.update(appeal_id, member_id, patch)
        return appeal

    def begin_review(self, appeal_id: int, actor: schemas.Actor) -> models.Appeal:
        with self._transaction("begin_review"):
            appeal = self.appeals.begin_review(appeal_id, actor)
        return appeal

    def decide_appeal(self, appeal_id: int, actor: schemas.Actor, payload: schemas.AppealDecisionRequest) -> models.Appeal:
        with self._transaction("decide_appeal"):
            appeal = self.appeals.decide(appeal_id, actor, payload)
        return appeal

    def withdraw_appeal(self, appeal_id: int, member_id: int) -> models.Appeal:
        with self._transaction("withdraw_appeal"):
            appeal = self.appeals.withdraw(appeal_id, member_id)
        return appeal

    def set_appeal_priority(self, appeal_id: int, actor: schemas.Actor, value: Optional[int]) -> models.Appeal:
        with self._transaction("set_appeal_priority"):
            appeal = self.appeals.set_priority_override(appeal_id, actor, value)
        return appeal

    def list_appeal_queue(
        self, filters: schemas.AppealFilter, page: Optional[schemas.PageRequest] = None
    ) -> schemas.Page[models.Appeal]:
        return self.appeals.list_queue(filters, page or schemas.PageRequest())

    def list_appeals_for_member(self, member_id: int) -> list[models.Appeal]:
        return self.appeals.list_for_member(member_id)

    # Legal holds

    def create_legal_hold(self, payload: schemas.NewLegalHold, actor_id: Optional[int] = None) -> models.LegalHold:
        with self._transaction("create_legal_hold"):
            hold = self.holds.create(payload, actor_id=actor_id)
            self.cases.sync_legal_hold_flags(hold)
        return hold

    def deactivate_legal_hold(self, hold_id: int, actor_id: Optional[int] = None) -> models.LegalHold:
        with self._transaction("deactivate_legal_hold"):
            hold = self.holds.deactivate(hold_id, actor_id=actor_id)
            self.cases.sync_legal_hold_flags(hold)
        return hold

    def list_legal_holds(self, active_only: bool = True) -> list[models.LegalHold]:
        return self.holds.list(active_only=active_only)

    def is_blocked(self, target: schemas.TargetRef) -> bool:
        return self.holds.is_blocked(target)

    def find_blocking_hold(self, target: schemas.TargetRef) -> Optional[models.LegalHold]:
        return self.holds.find_blocking(target)

    # Audit

    def search_audit(
        self,
        filters: schemas.AuditFilter,
        viewer: schemas.Actor,
        page: Optional[schemas.PageRequest] = None,
    ) -> schemas.Page[schemas.AuditEntryResponse]:
        return self.audit.search(filters, page or schemas.PageRequest(), viewer=viewer)
