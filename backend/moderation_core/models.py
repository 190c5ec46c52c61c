import enum
from sqlalchemy import (
    Column,
    Integer,
    String,
    Text,
    TIMESTAMP,
    ForeignKey,
    UniqueConstraint,
    CheckConstraint,
    func,
    Boolean,
    JSON,
    event,
)
from sqlalchemy.orm import relationship
from .database import Base
from .errors import ConflictError


class Lifecycle(str, enum.Enum):
    active = "active"
    archived = "archived"


class ReasonCode(str, enum.Enum):
    personal_attack = "personal_attack"
    hate_speech = "hate_speech"
    misinformation = "misinformation"
    spam = "spam"
    offensive = "offensive"
    off_topic = "off_topic"
    threat = "threat"
    doxxing = "doxxing"
    trolling = "trolling"
    other = "other"


class Severity(str, enum.Enum):
    critical = "critical"
    high = "high"
    medium = "medium"
    low = "low"


class ReportStatus(str, enum.Enum):
    pending = "pending"
    under_review = "under_review"
    resolved = "resolved"
    dismissed = "dismissed"


class CaseStatus(str, enum.Enum):
    open = "open"
    investigating = "investigating"
    closed = "closed"
    on_hold = "on_hold"


class CasePriority(str, enum.Enum):
    low = "low"
    normal = "normal"
    high = "high"
    urgent = "urgent"


class ActionType(str, enum.Enum):
    warning = "warning"
    suspension = "suspension"
    ban = "ban"
    content_removal = "content_removal"
    # compensating entries recorded by appeal decisions
    reversal = "reversal"
    modification = "modification"


class AppealStatus(str, enum.Enum):
    pending_review = "pending_review"
    under_review = "under_review"
    approved = "approved"
    denied = "denied"
    modified = "modified"


class AppealDecision(str, enum.Enum):
    uphold = "uphold"
    reverse = "reverse"
    modify = "modify"


class HoldReason(str, enum.Enum):
    subpoena = "subpoena"
    law_enforcement = "law_enforcement"
    litigation = "litigation"
    other = "other"


class Report(Base):
    __tablename__ = "reports"
    __table_args__ = (
        CheckConstraint(
            "(target_post_id IS NULL) <> (target_thread_id IS NULL)",
            name="ck_report_single_target",
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    reporter_id = Column(Integer, nullable=True, index=True)
    target_post_id = Column(Integer, nullable=True, index=True)
    target_thread_id = Column(Integer, nullable=True, index=True)
    reason_code = Column(String(30), nullable=False, index=True)
    severity = Column(String(20), nullable=False, index=True)
    reporter_text = Column(Text, nullable=True)
    status = Column(String(20), nullable=False, index=True, server_default=ReportStatus.pending.value)
    priority = Column(Integer, nullable=False, server_default="0")
    assigned_moderator_id = Column(Integer, nullable=True, index=True)
    moderation_case_id = Column(Integer, ForeignKey("moderation_cases.id"), nullable=True, index=True)
    resolution_notes = Column(Text, nullable=True)
    dismissal_reason = Column(Text, nullable=True)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), nullable=False, index=True)
    triaged_at = Column(TIMESTAMP(timezone=True), nullable=True)
    reviewed_at = Column(TIMESTAMP(timezone=True), nullable=True)
    resolved_at = Column(TIMESTAMP(timezone=True), nullable=True)
    lifecycle = Column(String(20), nullable=False, index=True, server_default=Lifecycle.active.value)
    archived_at = Column(TIMESTAMP(timezone=True), nullable=True)

    moderation_case = relationship("ModerationCase", back_populates="reports", foreign_keys=[moderation_case_id])


class ModerationCase(Base):
    __tablename__ = "moderation_cases"
    __table_args__ = (UniqueConstraint("case_number", name="uq_moderation_case_number"),)

    id = Column(Integer, primary_key=True, index=True)
    case_number = Column(String(40), nullable=False)
    title = Column(String(255), nullable=True)
    status = Column(String(20), nullable=False, index=True, server_default=CaseStatus.open.value)
    priority = Column(String(20), nullable=False, index=True, server_default=CasePriority.normal.value)
    assigned_moderator_id = Column(Integer, nullable=True, index=True)
    owner_admin_id = Column(Integer, nullable=True, index=True)
    lead_report_id = Column(Integer, nullable=True)
    legal_hold = Column(Boolean, nullable=False, server_default="false")
    close_rationale = Column(Text, nullable=True)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), nullable=False)
    closed_at = Column(TIMESTAMP(timezone=True), nullable=True)
    lifecycle = Column(String(20), nullable=False, index=True, server_default=Lifecycle.active.value)
    archived_at = Column(TIMESTAMP(timezone=True), nullable=True)

    reports = relationship("Report", back_populates="moderation_case", foreign_keys="Report.moderation_case_id")
    actions = relationship("ModerationAction", back_populates="case")


class ModerationAction(Base):
    __tablename__ = "moderation_actions"

    id = Column(Integer, primary_key=True, index=True)
    target_user_id = Column(Integer, nullable=False, index=True)
    actor_id = Column(Integer, nullable=True, index=True)
    action_type = Column(String(30), nullable=False, index=True)
    case_id = Column(Integer, ForeignKey("moderation_cases.id"), nullable=True, index=True)
    reason = Column(Text, nullable=True)
    target_post_id = Column(Integer, nullable=True)
    target_thread_id = Column(Integer, nullable=True)
    is_appealable = Column(Boolean, nullable=False, server_default="true")
    expires_at = Column(TIMESTAMP(timezone=True), nullable=True)
    compensates_action_id = Column(Integer, ForeignKey("moderation_actions.id"), nullable=True, index=True)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), nullable=False, index=True)

    case = relationship("ModerationCase", back_populates="actions")
    compensates = relationship("ModerationAction", remote_side=[id])


class Appeal(Base):
    __tablename__ = "appeals"
    __table_args__ = (UniqueConstraint("member_id", "appealed_action_id", name="uq_appeal_member_action"),)

    id = Column(Integer, primary_key=True, index=True)
    member_id = Column(Integer, nullable=False, index=True)
    appealed_moderation_action_id = Column(Integer, ForeignKey("moderation_actions.id"), nullable=True)
    appealed_warning_id = Column(Integer, ForeignKey("moderation_actions.id"), nullable=True)
    appealed_suspension_id = Column(Integer, ForeignKey("moderation_actions.id"), nullable=True)
    appealed_ban_id = Column(Integer, ForeignKey("moderation_actions.id"), nullable=True)
    appealed_action_id = Column(Integer, ForeignKey("moderation_actions.id"), nullable=False, index=True)
    appeal_explanation = Column(Text, nullable=False)
    additional_evidence = Column(Text, nullable=True)
    status = Column(String(20), nullable=False, index=True, server_default=AppealStatus.pending_review.value)
    decision = Column(String(20), nullable=True)
    decision_reasoning = Column(Text, nullable=True)
    corrective_action_taken = Column(Text, nullable=True)
    corrective_action_id = Column(Integer, ForeignKey("moderation_actions.id"), nullable=True)
    reviewing_admin_id = Column(Integer, nullable=True)
    priority_override = Column(Integer, nullable=True)
    submitted_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), nullable=False, index=True)
    updated_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), nullable=False)
    reviewed_at = Column(TIMESTAMP(timezone=True), nullable=True)
    lifecycle = Column(String(20), nullable=False, index=True, server_default=Lifecycle.active.value)
    archived_at = Column(TIMESTAMP(timezone=True), nullable=True)

    appealed_action = relationship("ModerationAction", foreign_keys=[appealed_action_id])
    corrective_action = relationship("ModerationAction", foreign_keys=[corrective_action_id])


class LegalHold(Base):
    __tablename__ = "legal_holds"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, nullable=True, index=True)
    post_id = Column(Integer, nullable=True, index=True)
    thread_id = Column(Integer, nullable=True, index=True)
    moderation_case_id = Column(Integer, ForeignKey("moderation_cases.id"), nullable=True, index=True)
    hold_reason = Column(String(30), nullable=False)
    description = Column(Text, nullable=True)
    created_by_id = Column(Integer, nullable=True)
    hold_start = Column(TIMESTAMP(timezone=True), nullable=False)
    hold_end = Column(TIMESTAMP(timezone=True), nullable=True)
    is_active = Column(Boolean, nullable=False, server_default="true", index=True)
    deactivated_at = Column(TIMESTAMP(timezone=True), nullable=True)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), nullable=False)


class AuditLogEntry(Base):
    __tablename__ = "audit_log_entries"

    id = Column(Integer, primary_key=True, index=True)
    actor_id = Column(Integer, nullable=True, index=True)
    action_type = Column(String(50), nullable=False, index=True)
    target_type = Column(String(50), nullable=False, index=True)
    target_identifier = Column(String(100), nullable=False, index=True)
    details = Column(JSON, nullable=True)
    created_by_system = Column(Boolean, nullable=False, server_default="false")
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), nullable=False, index=True)


class NotificationIntent(Base):
    __tablename__ = "notification_intents"
    __table_args__ = (UniqueConstraint("dedupe_key", name="uq_notification_intent_dedupe"),)

    id = Column(Integer, primary_key=True, index=True)
    recipient_id = Column(Integer, nullable=False, index=True)
    template_key = Column(String(80), nullable=False, index=True)
    payload = Column(JSON, nullable=False)
    dedupe_key = Column(String(200), nullable=True)
    status = Column(String(20), nullable=False, index=True, server_default="queued")
    attempts = Column(Integer, nullable=False, server_default="0")
    max_attempts = Column(Integer, nullable=False, server_default="3")
    run_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), nullable=False, index=True)
    locked_at = Column(TIMESTAMP(timezone=True), nullable=True)
    locked_by = Column(String(100), nullable=True)
    last_error = Column(Text, nullable=True)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now(), nullable=False)
    delivered_at = Column(TIMESTAMP(timezone=True), nullable=True)


def _reject_mutation(mapper, connection, target):  # noqa: ANN001
    raise ConflictError(
        f"{type(target).__name__} records are append-only",
        details={"entity": type(target).__name__, "id": target.id},
    )


for _append_only in (ModerationAction, AuditLogEntry):
    event.listen(_append_only, "before_update", _reject_mutation)
    event.listen(_append_only, "before_delete", _reject_mutation)
