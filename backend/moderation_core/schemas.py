from datetime import datetime
from typing import Any, Generic, List, Literal, Optional, TypeVar
from pydantic import BaseModel, ConfigDict, Field
from .models import (
    ActionType,
    AppealDecision,
    AppealStatus,
    CasePriority,
    CaseStatus,
    HoldReason,
    ReasonCode,
    ReportStatus,
    Severity,
)


Role = Literal["member", "moderator", "administrator"]
ReportSort = Literal["priority", "oldest", "newest", "severity", "report_count"]

T = TypeVar("T")


class Actor(BaseModel):
    id: int
    role: Role = "member"

    @property
    def is_admin(self) -> bool:
        return self.role == "administrator"

    @property
    def is_staff(self) -> bool:
        return self.role in ("moderator", "administrator")


class PageRequest(BaseModel):
    page: int = 1
    page_size: int = 20


class Page(BaseModel, Generic[T]):
    items: List[T]
    total: int
    page: int
    page_size: int

    # the engine also pages ORM rows; the transport converts them to response models
    model_config = ConfigDict(arbitrary_types_allowed=True)


class TargetRef(BaseModel):
    user_id: Optional[int] = None
    post_id: Optional[int] = None
    thread_id: Optional[int] = None
    moderation_case_id: Optional[int] = None

    def is_empty(self) -> bool:
        return all(v is None for v in (self.user_id, self.post_id, self.thread_id, self.moderation_case_id))


# Reports


class NewReport(BaseModel):
    reporter_id: Optional[int] = None
    anonymous: bool = False
    target_post_id: Optional[int] = None
    target_thread_id: Optional[int] = None
    reason_code: ReasonCode
    severity: Optional[Severity] = None
    reporter_text: Optional[str] = None


class ReportPatch(BaseModel):
    """Fields left out of the payload are untouched; explicit null clears."""

    assigned_moderator_id: Optional[int] = None
    status: Optional[ReportStatus] = None
    resolution_notes: Optional[str] = None
    dismissal_reason: Optional[str] = None


class ReportFilter(BaseModel):
    status: Optional[List[ReportStatus]] = None
    reason_code: Optional[List[ReasonCode]] = None
    severity: Optional[List[Severity]] = None
    assigned_moderator_id: Optional[int] = None
    unassigned_only: bool = False
    target_post_id: Optional[int] = None
    target_thread_id: Optional[int] = None
    created_from: Optional[datetime] = None
    created_to: Optional[datetime] = None
    include_archived: bool = False


class ReportResponse(BaseModel):
    id: int
    reporter_id: Optional[int]
    target_post_id: Optional[int]
    target_thread_id: Optional[int]
    reason_code: ReasonCode
    severity: Severity
    reporter_text: Optional[str]
    status: ReportStatus
    priority: int
    assigned_moderator_id: Optional[int]
    moderation_case_id: Optional[int]
    resolution_notes: Optional[str] = None
    dismissal_reason: Optional[str] = None
    created_at: datetime
    triaged_at: Optional[datetime] = None
    reviewed_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    lifecycle: str
    archived_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class ReportSummary(BaseModel):
    id: int
    reason_code: ReasonCode
    severity: Severity
    status: ReportStatus
    target_post_id: Optional[int]
    target_thread_id: Optional[int]
    assigned_moderator_id: Optional[int]
    moderation_case_id: Optional[int]
    report_count: int
    priority_score: float
    age_hours: float
    created_at: datetime


# Moderation cases


class NewCase(BaseModel):
    case_number: Optional[str] = Field(default=None, max_length=40)
    title: Optional[str] = Field(default=None, max_length=255)
    priority: CasePriority = CasePriority.normal
    lead_report_id: Optional[int] = None
    report_ids: List[int] = Field(default_factory=list)
    assigned_moderator_id: Optional[int] = None
    owner_admin_id: Optional[int] = None


class CasePatch(BaseModel):
    """Fields left out of the payload are untouched; explicit null clears."""

    status: Optional[CaseStatus] = None
    priority: Optional[CasePriority] = None
    title: Optional[str] = Field(default=None, max_length=255)
    assigned_moderator_id: Optional[int] = None
    owner_admin_id: Optional[int] = None
    lead_report_id: Optional[int] = None
    rationale: Optional[str] = None


class CaseFilter(BaseModel):
    status: Optional[List[CaseStatus]] = None
    priority: Optional[List[CasePriority]] = None
    assigned_moderator_id: Optional[int] = None
    legal_hold: Optional[bool] = None
    include_archived: bool = False


class CaseResponse(BaseModel):
    id: int
    case_number: str
    title: Optional[str]
    status: CaseStatus
    priority: CasePriority
    assigned_moderator_id: Optional[int]
    owner_admin_id: Optional[int]
    lead_report_id: Optional[int]
    legal_hold: bool
    close_rationale: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    closed_at: Optional[datetime] = None
    lifecycle: str
    report_ids: List[int] = Field(default_factory=list)

    model_config = ConfigDict(from_attributes=True)


class CloseCaseRequest(BaseModel):
    rationale: str


class LinkReportsRequest(BaseModel):
    report_ids: List[int]


# Moderation actions


class NewModerationAction(BaseModel):
    target_user_id: int
    action_type: ActionType
    case_id: Optional[int] = None
    reason: Optional[str] = None
    target_post_id: Optional[int] = None
    target_thread_id: Optional[int] = None
    is_appealable: bool = True
    expires_at: Optional[datetime] = None
    compensates_action_id: Optional[int] = None


class ModerationActionResponse(BaseModel):
    id: int
    target_user_id: int
    actor_id: Optional[int]
    action_type: ActionType
    case_id: Optional[int]
    reason: Optional[str]
    target_post_id: Optional[int]
    target_thread_id: Optional[int]
    is_appealable: bool
    expires_at: Optional[datetime] = None
    compensates_action_id: Optional[int] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


# Appeals


class NewAppeal(BaseModel):
    appealed_moderation_action_id: Optional[int] = None
    appealed_warning_id: Optional[int] = None
    appealed_suspension_id: Optional[int] = None
    appealed_ban_id: Optional[int] = None
    appeal_explanation: str
    additional_evidence: Optional[str] = None


class AppealPatch(BaseModel):
    appeal_explanation: Optional[str] = None
    additional_evidence: Optional[str] = None


class AppealDecisionRequest(BaseModel):
    decision: AppealDecision
    decision_reasoning: str
    modified_action_type: Optional[ActionType] = None
    modified_expires_at: Optional[datetime] = None


class AppealFilter(BaseModel):
    status: Optional[List[AppealStatus]] = None
    member_id: Optional[int] = None
    include_archived: bool = False


class PriorityOverrideRequest(BaseModel):
    priority_override: Optional[int] = Field(default=None, ge=0, le=100)


class AppealResponse(BaseModel):
    id: int
    member_id: int
    appealed_moderation_action_id: Optional[int]
    appealed_warning_id: Optional[int]
    appealed_suspension_id: Optional[int]
    appealed_ban_id: Optional[int]
    appealed_action_id: int
    appeal_explanation: str
    additional_evidence: Optional[str]
    status: AppealStatus
    decision: Optional[AppealDecision] = None
    decision_reasoning: Optional[str] = None
    corrective_action_taken: Optional[str] = None
    corrective_action_id: Optional[int] = None
    reviewing_admin_id: Optional[int] = None
    priority_override: Optional[int] = None
    submitted_at: datetime
    reviewed_at: Optional[datetime] = None
    lifecycle: str

    model_config = ConfigDict(from_attributes=True)


# Legal holds


class NewLegalHold(BaseModel):
    user_id: Optional[int] = None
    post_id: Optional[int] = None
    thread_id: Optional[int] = None
    moderation_case_id: Optional[int] = None
    hold_reason: HoldReason
    description: Optional[str] = None
    hold_start: Optional[datetime] = None
    hold_end: Optional[datetime] = None


class LegalHoldResponse(BaseModel):
    id: int
    user_id: Optional[int]
    post_id: Optional[int]
    thread_id: Optional[int]
    moderation_case_id: Optional[int]
    hold_reason: HoldReason
    description: Optional[str]
    created_by_id: Optional[int]
    hold_start: datetime
    hold_end: Optional[datetime]
    is_active: bool
    deactivated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class BlockedResponse(BaseModel):
    blocked: bool
    hold_id: Optional[int] = None


# Audit trail


class AuditFilter(BaseModel):
    actor_id: Optional[int] = None
    action_type: Optional[str] = None
    target_type: Optional[str] = None
    target_identifier: Optional[str] = None
    created_from: Optional[datetime] = None
    created_to: Optional[datetime] = None


class AuditEntryResponse(BaseModel):
    id: int
    actor_id: Optional[int]
    action_type: str
    target_type: str
    target_identifier: str
    details: Optional[dict[str, Any]] = None
    created_by_system: bool
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)
