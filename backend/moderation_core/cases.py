from __future__ import annotations

import secrets
from typing import Iterable, Optional

from sqlalchemy import case as sql_case

from . import models, schemas
from .audit import AuditTrail
from .clock import Clock, utcnow
from .config import settings
from .errors import ConflictError, NotFoundError, ValidationError
from .legal_holds import LegalHoldRegistry
from .logging_utils import log_event, log_warning
from .notifications import TEMPLATE_CASE_CLOSED, NotificationOutbox
from .repositories import CaseRepository, ModerationActionRepository, ReportRepository, check_page, paginate


Status = models.CaseStatus

ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    Status.open.value: {Status.investigating.value, Status.on_hold.value, Status.closed.value},
    Status.investigating.value: {Status.open.value, Status.on_hold.value, Status.closed.value},
    Status.on_hold.value: {Status.open.value, Status.investigating.value, Status.closed.value},
    Status.closed.value: {Status.open.value},
}

PRIORITY_ORDER = {
    models.CasePriority.urgent.value: 0,
    models.CasePriority.high.value: 1,
    models.CasePriority.normal.value: 2,
    models.CasePriority.low.value: 3,
}


def generate_case_number(now) -> str:  # noqa: ANN001
    return f"{settings.case_number_prefix}-{now:%Y%m%d}-{secrets.token_hex(3).upper()}"


class ModerationCaseManager:
    def __init__(
        self,
        repo: CaseRepository,
        reports: ReportRepository,
        actions: ModerationActionRepository,
        holds: LegalHoldRegistry,
        audit: AuditTrail,
        outbox: NotificationOutbox,
        clock: Clock = utcnow,
        case_number_factory=generate_case_number,  # noqa: ANN001
    ):
        self.repo = repo
        self.reports = reports
        self.actions = actions
        self.holds = holds
        self.audit = audit
        self.outbox = outbox
        self.clock = clock
        self.case_number_factory = case_number_factory

    def open(self, payload: schemas.NewCase, *, actor_id: Optional[int] = None) -> models.ModerationCase:
        report_ids = list(dict.fromkeys([*([payload.lead_report_id] if payload.lead_report_id else []), *payload.report_ids]))
        reports = self._load_linkable_reports(report_ids, case_id=None)

        now = self.clock()
        fields = dict(
            title=payload.title,
            status=Status.open.value,
            priority=payload.priority.value,
            assigned_moderator_id=payload.assigned_moderator_id,
            owner_admin_id=payload.owner_admin_id,
            lead_report_id=payload.lead_report_id,
            legal_hold=False,
            lifecycle=models.Lifecycle.active.value,
            created_at=now,
            updated_at=now,
        )

        if payload.case_number:
            if self.repo.case_number_exists(payload.case_number):
                raise ConflictError(
                    f"Case number {payload.case_number} already exists",
                    details={"case_number": payload.case_number},
                )
            moderation_case = models.ModerationCase(case_number=payload.case_number, **fields)
            self.repo.add(moderation_case)
        else:
            moderation_case = self._insert_with_generated_number(fields, now)

        for report in reports:
            report.moderation_case_id = moderation_case.id
        self.refresh_legal_hold(moderation_case)
        self.repo.flush()

        self.audit.record(
            action_type="case.open",
            target_type="moderation_case",
            target_identifier=moderation_case.id,
            actor_id=actor_id,
            details={
                "case_number": moderation_case.case_number,
                "priority": moderation_case.priority,
                "report_ids": [r.id for r in reports],
            },
        )
        log_event("case_opened", case_id=moderation_case.id, case_number=moderation_case.case_number, actor_id=actor_id)
        return moderation_case

    def _insert_with_generated_number(self, fields: dict, now) -> models.ModerationCase:  # noqa: ANN001
        attempts = max(1, settings.case_number_max_attempts)
        for attempt in range(1, attempts + 1):
            candidate = self.case_number_factory(now)
            moderation_case = models.ModerationCase(case_number=candidate, **fields)
            if self.repo.insert_with_savepoint(moderation_case):
                return moderation_case
            log_warning("case_number_collision", case_number=candidate, attempt=attempt)
        raise ConflictError(
            "Could not allocate a unique case number",
            details={"attempts": attempts},
        )

    def get(self, case_id: int) -> models.ModerationCase:
        moderation_case = self.repo.get(case_id)
        if moderation_case is None:
            raise NotFoundError("moderation_case", case_id)
        return moderation_case

    def list(self, filters: schemas.CaseFilter, page: schemas.PageRequest) -> schemas.Page[models.ModerationCase]:
        check_page(page)
        query = self.repo.query(include_archived=filters.include_archived)
        if filters.status:
            query = query.filter(models.ModerationCase.status.in_([s.value for s in filters.status]))
        if filters.priority:
            query = query.filter(models.ModerationCase.priority.in_([p.value for p in filters.priority]))
        if filters.assigned_moderator_id is not None:
            query = query.filter(models.ModerationCase.assigned_moderator_id == filters.assigned_moderator_id)
        if filters.legal_hold is not None:
            query = query.filter(models.ModerationCase.legal_hold.is_(filters.legal_hold))
        priority_rank = sql_case(PRIORITY_ORDER, value=models.ModerationCase.priority, else_=len(PRIORITY_ORDER))
        query = query.order_by(priority_rank.asc(), models.ModerationCase.created_at.asc(), models.ModerationCase.id.asc())
        items, total = paginate(query, page.page, page.page_size)
        return schemas.Page[models.ModerationCase](items=items, total=total, page=page.page, page_size=page.page_size)

    def link_reports(self, case_id: int, report_ids: Iterable[int], *, actor_id: Optional[int] = None) -> models.ModerationCase:
        moderation_case = self.get(case_id)
        if moderation_case.status == Status.closed.value:
            raise ConflictError("Cannot link reports to a closed case", current=moderation_case.status)
        reports = self._load_linkable_reports(list(report_ids), case_id=case_id)
        for report in reports:
            report.moderation_case_id = case_id
        moderation_case.updated_at = self.clock()
        self.refresh_legal_hold(moderation_case)
        self.repo.flush()
        self.audit.record(
            action_type="case.link_reports",
            target_type="moderation_case",
            target_identifier=case_id,
            actor_id=actor_id,
            details={"report_ids": [r.id for r in reports]},
        )
        return moderation_case

    def update(self, case_id: int, patch: schemas.CasePatch, *, actor_id: Optional[int] = None) -> models.ModerationCase:
        moderation_case = self.get(case_id)
        fields = patch.model_fields_set

        if moderation_case.lifecycle == models.Lifecycle.archived.value:
            raise ConflictError("Archived cases cannot be changed", current=moderation_case.status)

        new_status: Optional[str] = None
        if "status" in fields:
            if patch.status is None:
                raise ValidationError("status", "Status cannot be cleared")
            if patch.status.value != moderation_case.status:
                new_status = patch.status.value
                if new_status not in ALLOWED_TRANSITIONS[moderation_case.status]:
                    raise ConflictError(
                        f"Cannot move case from {moderation_case.status} to {new_status}",
                        current=moderation_case.status,
                        attempted=new_status,
                    )
        if "priority" in fields and patch.priority is None:
            raise ValidationError("priority", "Priority cannot be cleared")

        lead_reports: list[models.Report] = []
        if "lead_report_id" in fields and patch.lead_report_id is not None:
            lead_reports = self._load_linkable_reports([patch.lead_report_id], case_id=case_id)

        if new_status == Status.closed.value:
            # all-or-nothing: nothing has been applied yet
            self._ensure_closable(moderation_case)

        changes: dict[str, object] = {}
        for name in ("title", "assigned_moderator_id", "owner_admin_id", "lead_report_id"):
            if name in fields and getattr(patch, name) != getattr(moderation_case, name):
                changes[name] = getattr(patch, name)
                setattr(moderation_case, name, getattr(patch, name))
        if "priority" in fields and patch.priority.value != moderation_case.priority:
            changes["priority"] = patch.priority.value
            moderation_case.priority = patch.priority.value
        for report in lead_reports:
            report.moderation_case_id = case_id

        if new_status is None and not changes:
            return moderation_case

        now = self.clock()
        moderation_case.updated_at = now
        previous_status = moderation_case.status
        if new_status is not None:
            self._apply_status(moderation_case, new_status, rationale=patch.rationale, now=now)
        self.refresh_legal_hold(moderation_case)
        self.repo.flush()

        if changes:
            self.audit.record(
                action_type="case.update",
                target_type="moderation_case",
                target_identifier=case_id,
                actor_id=actor_id,
                details=changes,
            )
        if new_status is not None:
            self._record_status_change(moderation_case, previous_status, new_status, patch.rationale, actor_id)
        log_event("case_updated", case_id=case_id, actor_id=actor_id, status=moderation_case.status)
        return moderation_case

    def close(self, case_id: int, rationale: str, *, actor_id: Optional[int] = None) -> models.ModerationCase:
        moderation_case = self.get(case_id)
        if not rationale or not rationale.strip():
            raise ValidationError("rationale", "A rationale is required to close a case")
        if moderation_case.status == Status.closed.value:
            raise ConflictError("Case is already closed", current=moderation_case.status, attempted=Status.closed.value)
        if moderation_case.lifecycle == models.Lifecycle.archived.value:
            raise ConflictError("Archived cases cannot be changed", current=moderation_case.status)
        self._ensure_closable(moderation_case)

        now = self.clock()
        previous_status = moderation_case.status
        moderation_case.updated_at = now
        self.refresh_legal_hold(moderation_case)
        self._apply_status(moderation_case, Status.closed.value, rationale=rationale.strip(), now=now)
        self.repo.flush()
        self._record_status_change(moderation_case, previous_status, Status.closed.value, rationale.strip(), actor_id)
        log_event("case_closed", case_id=case_id, actor_id=actor_id)
        return moderation_case

    def archive(self, case_id: int, *, actor_id: Optional[int] = None) -> models.ModerationCase:
        moderation_case = self.get(case_id)
        if moderation_case.lifecycle == models.Lifecycle.archived.value:
            return moderation_case
        self._ensure_closable(moderation_case, operation="archive case")
        moderation_case.lifecycle = models.Lifecycle.archived.value
        moderation_case.archived_at = self.clock()
        self.repo.flush()
        self.audit.record(
            action_type="case.archive",
            target_type="moderation_case",
            target_identifier=case_id,
            actor_id=actor_id,
        )
        return moderation_case

    def hold_graph(self, moderation_case: models.ModerationCase) -> dict[str, set[int]]:
        """Posts, threads and users the case reaches through its reports and actions."""
        linked_reports = self.reports.for_case(moderation_case.id)
        linked_actions = self.actions.for_case(moderation_case.id)
        return {
            "post_ids": {r.target_post_id for r in linked_reports if r.target_post_id is not None},
            "thread_ids": {r.target_thread_id for r in linked_reports if r.target_thread_id is not None}
            | {a.target_thread_id for a in linked_actions if a.target_thread_id is not None},
            "user_ids": {a.target_user_id for a in linked_actions},
        }

    def refresh_legal_hold(self, moderation_case: models.ModerationCase) -> bool:
        # report links set in this call must be visible to the graph query
        self.repo.flush()
        hold = self.holds.find_blocking(
            schemas.TargetRef(moderation_case_id=moderation_case.id),
            **self.hold_graph(moderation_case),
        )
        moderation_case.legal_hold = hold is not None
        return moderation_case.legal_hold

    def sync_legal_hold_flags(self, hold: models.LegalHold) -> list[models.ModerationCase]:
        affected = self.repo.cases_touching(
            case_id=hold.moderation_case_id,
            post_id=hold.post_id,
            thread_id=hold.thread_id,
            user_id=hold.user_id,
        )
        for moderation_case in affected:
            self.refresh_legal_hold(moderation_case)
        if affected:
            self.repo.flush()
        return affected

    def _ensure_closable(self, moderation_case: models.ModerationCase, operation: str = "close case") -> None:
        self.holds.ensure_not_blocked(
            schemas.TargetRef(moderation_case_id=moderation_case.id),
            operation=operation,
            **self.hold_graph(moderation_case),
        )

    def _apply_status(self, moderation_case: models.ModerationCase, new_status: str, *, rationale: Optional[str], now) -> None:  # noqa: ANN001
        moderation_case.status = new_status
        if new_status == Status.closed.value:
            moderation_case.closed_at = now
            moderation_case.close_rationale = rationale
        elif moderation_case.closed_at is not None:
            moderation_case.closed_at = None
            moderation_case.close_rationale = None

    def _record_status_change(
        self,
        moderation_case: models.ModerationCase,
        previous_status: str,
        new_status: str,
        rationale: Optional[str],
        actor_id: Optional[int],
    ) -> None:
        if new_status == Status.closed.value:
            action_type = "case.close"
        elif previous_status == Status.closed.value:
            action_type = "case.reopen"
        else:
            action_type = "case.status"
        self.audit.record(
            action_type=action_type,
            target_type="moderation_case",
            target_identifier=moderation_case.id,
            actor_id=actor_id,
            details={"from": previous_status, "to": new_status, "rationale": rationale},
        )
        if new_status != Status.closed.value:
            return
        stamp = moderation_case.closed_at.isoformat() if moderation_case.closed_at else ""
        for recipient_id in {moderation_case.owner_admin_id, moderation_case.assigned_moderator_id} - {None}:
            self.outbox.emit(
                recipient_id=recipient_id,
                template_key=TEMPLATE_CASE_CLOSED,
                payload={
                    "case_id": moderation_case.id,
                    "case_number": moderation_case.case_number,
                    "rationale": rationale,
                },
                dedupe_key=f"case:{moderation_case.id}:closed:{stamp}:{recipient_id}",
            )

    def _load_linkable_reports(self, report_ids: list[int], *, case_id: Optional[int]) -> list[models.Report]:
        if not report_ids:
            return []
        found = {r.id: r for r in self.reports.get_many(report_ids)}
        for report_id in report_ids:
            report = found.get(report_id)
            if report is None:
                raise NotFoundError("report", report_id)
            if report.moderation_case_id is not None and report.moderation_case_id != case_id:
                raise ConflictError(
                    f"Report {report_id} already belongs to case {report.moderation_case_id}",
                    details={"report_id": report_id, "moderation_case_id": report.moderation_case_id},
                )
        return [found[report_id] for report_id in report_ids]
