from __future__ import annotations

from typing import Optional

import bleach

from . import models, schemas
from .audit import AuditTrail
from .clock import Clock, hours_between, normalize_dt, utcnow
from .config import settings
from .errors import ConflictError, NotFoundError, ValidationError
from .legal_holds import LegalHoldRegistry
from .logging_utils import log_event
from .notifications import TEMPLATE_REPORT_DISMISSED, TEMPLATE_REPORT_RESOLVED, NotificationOutbox
from .repositories import ReportRepository, check_page
from .scoring import normalized_priority, score, severity_rank


Status = models.ReportStatus

DEFAULT_SEVERITY: dict[str, models.Severity] = {
    models.ReasonCode.threat.value: models.Severity.critical,
    models.ReasonCode.doxxing.value: models.Severity.critical,
    models.ReasonCode.hate_speech.value: models.Severity.high,
    models.ReasonCode.personal_attack.value: models.Severity.high,
    models.ReasonCode.misinformation.value: models.Severity.medium,
    models.ReasonCode.offensive.value: models.Severity.medium,
    models.ReasonCode.trolling.value: models.Severity.medium,
    models.ReasonCode.spam.value: models.Severity.low,
    models.ReasonCode.off_topic.value: models.Severity.low,
    models.ReasonCode.other.value: models.Severity.low,
}

ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    Status.pending.value: {Status.under_review.value},
    Status.under_review.value: {Status.resolved.value, Status.dismissed.value},
    Status.resolved.value: set(),
    Status.dismissed.value: set(),
}

TERMINAL = {Status.resolved.value, Status.dismissed.value}


def sanitize_text(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    cleaned = bleach.clean(value, tags=[], attributes={}, strip=True)
    cleaned = " ".join(cleaned.split())
    return cleaned or None


class ReportIntake:
    def __init__(
        self,
        repo: ReportRepository,
        holds: LegalHoldRegistry,
        audit: AuditTrail,
        outbox: NotificationOutbox,
        clock: Clock = utcnow,
    ):
        self.repo = repo
        self.holds = holds
        self.audit = audit
        self.outbox = outbox
        self.clock = clock

    def submit(self, payload: schemas.NewReport) -> models.Report:
        if (payload.target_post_id is None) == (payload.target_thread_id is None):
            raise ValidationError("target", "A report must target exactly one post or one thread")

        reporter_text = sanitize_text(payload.reporter_text)
        if reporter_text and len(reporter_text) > settings.reporter_text_max_length:
            raise ValidationError(
                "reporter_text",
                f"Report text must be at most {settings.reporter_text_max_length} characters",
            )
        if payload.reason_code == models.ReasonCode.other and not reporter_text:
            raise ValidationError("reporter_text", "Reports with reason 'other' need an explanation")

        severity = payload.severity or DEFAULT_SEVERITY[payload.reason_code.value]
        now = self.clock()
        report = models.Report(
            reporter_id=payload.reporter_id,
            target_post_id=payload.target_post_id,
            target_thread_id=payload.target_thread_id,
            reason_code=payload.reason_code.value,
            severity=severity.value,
            reporter_text=reporter_text,
            status=Status.pending.value,
            priority=normalized_priority(score(severity, 0, 0)),
            lifecycle=models.Lifecycle.active.value,
            created_at=now,
        )
        self.repo.add(report)
        self.audit.record(
            action_type="report.create",
            target_type="report",
            target_identifier=report.id,
            actor_id=payload.reporter_id,
            details={
                "reason_code": report.reason_code,
                "severity": report.severity,
                "priority": report.priority,
                "target_post_id": report.target_post_id,
                "target_thread_id": report.target_thread_id,
            },
        )
        log_event("report_submitted", report_id=report.id, reason_code=report.reason_code, severity=report.severity)
        return report

    def get(self, report_id: int) -> models.Report:
        report = self.repo.get(report_id)
        if report is None:
            raise NotFoundError("report", report_id)
        return report

    def list_queue(
        self,
        filters: schemas.ReportFilter,
        sort: schemas.ReportSort,
        page: schemas.PageRequest,
    ) -> schemas.Page[schemas.ReportSummary]:
        check_page(page)
        query = self.repo.query(include_archived=filters.include_archived)
        if filters.status:
            query = query.filter(models.Report.status.in_([s.value for s in filters.status]))
        if filters.reason_code:
            query = query.filter(models.Report.reason_code.in_([r.value for r in filters.reason_code]))
        if filters.severity:
            query = query.filter(models.Report.severity.in_([s.value for s in filters.severity]))
        if filters.unassigned_only:
            query = query.filter(models.Report.assigned_moderator_id.is_(None))
        elif filters.assigned_moderator_id is not None:
            query = query.filter(models.Report.assigned_moderator_id == filters.assigned_moderator_id)
        if filters.target_post_id is not None:
            query = query.filter(models.Report.target_post_id == filters.target_post_id)
        if filters.target_thread_id is not None:
            query = query.filter(models.Report.target_thread_id == filters.target_thread_id)
        if filters.created_from:
            query = query.filter(models.Report.created_at >= normalize_dt(filters.created_from))
        if filters.created_to:
            query = query.filter(models.Report.created_at <= normalize_dt(filters.created_to))

        reports = query.all()
        counts = self.repo.count_by_target(reports)
        now = self.clock()

        summaries = []
        for report in reports:
            key = ("post", report.target_post_id) if report.target_post_id is not None else ("thread", report.target_thread_id)
            report_count = counts.get(key, 1)
            age_hours = hours_between(report.created_at, now)
            summaries.append(
                schemas.ReportSummary(
                    id=report.id,
                    reason_code=report.reason_code,
                    severity=report.severity,
                    status=report.status,
                    target_post_id=report.target_post_id,
                    target_thread_id=report.target_thread_id,
                    assigned_moderator_id=report.assigned_moderator_id,
                    moderation_case_id=report.moderation_case_id,
                    report_count=report_count,
                    priority_score=score(report.severity, report_count, age_hours),
                    age_hours=round(age_hours, 2),
                    created_at=normalize_dt(report.created_at),
                )
            )

        summaries.sort(key=_sort_key(sort))
        start = (page.page - 1) * page.page_size
        return schemas.Page[schemas.ReportSummary](
            items=summaries[start : start + page.page_size],
            total=len(summaries),
            page=page.page,
            page_size=page.page_size,
        )

    def update(self, report_id: int, patch: schemas.ReportPatch, *, actor_id: Optional[int] = None) -> models.Report:
        report = self.get(report_id)
        fields = patch.model_fields_set
        if report.lifecycle == models.Lifecycle.archived.value:
            raise ConflictError("Archived reports cannot be changed", current=report.status)
        if report.status in TERMINAL:
            attempted = patch.status.value if "status" in fields and patch.status is not None else None
            raise ConflictError(
                f"Report is already {report.status}",
                current=report.status,
                attempted=attempted,
            )

        new_status: Optional[str] = None
        if "status" in fields:
            if patch.status is None:
                raise ValidationError("status", "Status cannot be cleared")
            if patch.status.value != report.status:
                new_status = patch.status.value
                if new_status not in ALLOWED_TRANSITIONS[report.status]:
                    raise ConflictError(
                        f"Cannot move report from {report.status} to {new_status}",
                        current=report.status,
                        attempted=new_status,
                    )

        resolution_notes = sanitize_text(patch.resolution_notes) if "resolution_notes" in fields else report.resolution_notes
        dismissal_reason = sanitize_text(patch.dismissal_reason) if "dismissal_reason" in fields else report.dismissal_reason
        if new_status == Status.resolved.value and not resolution_notes:
            raise ValidationError("resolution_notes", "Resolution notes are required to resolve a report")
        if new_status == Status.dismissed.value and not dismissal_reason:
            raise ValidationError("dismissal_reason", "A dismissal reason is required to dismiss a report")

        now = self.clock()
        changes: dict[str, object] = {}
        if "assigned_moderator_id" in fields and patch.assigned_moderator_id != report.assigned_moderator_id:
            changes["assigned_moderator_id"] = patch.assigned_moderator_id
            report.assigned_moderator_id = patch.assigned_moderator_id
            if patch.assigned_moderator_id is not None and report.triaged_at is None:
                report.triaged_at = now
        if "resolution_notes" in fields:
            report.resolution_notes = resolution_notes
            changes["resolution_notes"] = resolution_notes
        if "dismissal_reason" in fields:
            report.dismissal_reason = dismissal_reason
            changes["dismissal_reason"] = dismissal_reason
        if new_status is not None:
            changes["status"] = {"from": report.status, "to": new_status}
            report.status = new_status
            if new_status == Status.under_review.value and report.reviewed_at is None:
                report.reviewed_at = now
                if report.triaged_at is None:
                    report.triaged_at = now
            if new_status in TERMINAL and report.resolved_at is None:
                report.resolved_at = now

        if not changes:
            return report

        self.repo.flush()
        self.audit.record(
            action_type="report.update",
            target_type="report",
            target_identifier=report.id,
            actor_id=actor_id,
            details=changes,
        )
        if new_status in TERMINAL:
            template = TEMPLATE_REPORT_RESOLVED if new_status == Status.resolved.value else TEMPLATE_REPORT_DISMISSED
            self.outbox.emit(
                recipient_id=report.reporter_id,
                template_key=template,
                payload={"report_id": report.id, "status": new_status},
                dedupe_key=f"report:{report.id}:{new_status}",
            )
        log_event("report_updated", report_id=report.id, actor_id=actor_id, fields=sorted(changes))
        return report

    def archive(self, report_id: int, *, actor_id: Optional[int] = None) -> models.Report:
        report = self.get(report_id)
        if report.lifecycle == models.Lifecycle.archived.value:
            return report
        self.holds.ensure_not_blocked(
            schemas.TargetRef(
                post_id=report.target_post_id,
                thread_id=report.target_thread_id,
                moderation_case_id=report.moderation_case_id,
            ),
            operation="archive report",
        )
        report.lifecycle = models.Lifecycle.archived.value
        report.archived_at = self.clock()
        self.repo.flush()
        self.audit.record(
            action_type="report.archive",
            target_type="report",
            target_identifier=report.id,
            actor_id=actor_id,
        )
        log_event("report_archived", report_id=report.id, actor_id=actor_id)
        return report


def _sort_key(sort: str):
    if sort == "oldest":
        return lambda s: (s.created_at, s.id)
    if sort == "newest":
        return lambda s: (-s.created_at.timestamp(), -s.id)
    if sort == "severity":
        return lambda s: (-severity_rank(s.severity.value), s.created_at, s.id)
    if sort == "report_count":
        return lambda s: (-s.report_count, s.created_at, s.id)
    return lambda s: (-s.priority_score, s.created_at, s.id)
