"""Create moderation schema

Revision ID: 0000_initial_schema
Revises:
Create Date: 2026-10-18
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "0000_initial_schema"
down_revision = None
branch_labels = None
depends_on = None


def _timestamp(name: str, nullable: bool = True, default: bool = False) -> sa.Column:
    return sa.Column(
        name,
        sa.TIMESTAMP(timezone=True),
        nullable=nullable,
        server_default=sa.func.now() if default else None,
    )


def upgrade() -> None:
    op.create_table(
        "moderation_cases",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("case_number", sa.String(length=40), nullable=False),
        sa.Column("title", sa.String(length=255), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="open"),
        sa.Column("priority", sa.String(length=20), nullable=False, server_default="normal"),
        sa.Column("assigned_moderator_id", sa.Integer(), nullable=True),
        sa.Column("owner_admin_id", sa.Integer(), nullable=True),
        sa.Column("lead_report_id", sa.Integer(), nullable=True),
        sa.Column("legal_hold", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("close_rationale", sa.Text(), nullable=True),
        _timestamp("created_at", nullable=False, default=True),
        _timestamp("updated_at", nullable=False, default=True),
        _timestamp("closed_at"),
        sa.Column("lifecycle", sa.String(length=20), nullable=False, server_default="active"),
        _timestamp("archived_at"),
        sa.UniqueConstraint("case_number", name="uq_moderation_case_number"),
    )
    op.create_index("ix_moderation_cases_status", "moderation_cases", ["status"], unique=False)
    op.create_index("ix_moderation_cases_priority", "moderation_cases", ["priority"], unique=False)
    op.create_index("ix_moderation_cases_assigned_moderator_id", "moderation_cases", ["assigned_moderator_id"], unique=False)
    op.create_index("ix_moderation_cases_owner_admin_id", "moderation_cases", ["owner_admin_id"], unique=False)
    op.create_index("ix_moderation_cases_lifecycle", "moderation_cases", ["lifecycle"], unique=False)

    op.create_table(
        "reports",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("reporter_id", sa.Integer(), nullable=True),
        sa.Column("target_post_id", sa.Integer(), nullable=True),
        sa.Column("target_thread_id", sa.Integer(), nullable=True),
        sa.Column("reason_code", sa.String(length=30), nullable=False),
        sa.Column("severity", sa.String(length=20), nullable=False),
        sa.Column("reporter_text", sa.Text(), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("assigned_moderator_id", sa.Integer(), nullable=True),
        sa.Column("moderation_case_id", sa.Integer(), sa.ForeignKey("moderation_cases.id"), nullable=True),
        sa.Column("resolution_notes", sa.Text(), nullable=True),
        sa.Column("dismissal_reason", sa.Text(), nullable=True),
        _timestamp("created_at", nullable=False, default=True),
        _timestamp("triaged_at"),
        _timestamp("reviewed_at"),
        _timestamp("resolved_at"),
        sa.Column("lifecycle", sa.String(length=20), nullable=False, server_default="active"),
        _timestamp("archived_at"),
        sa.CheckConstraint("(target_post_id IS NULL) <> (target_thread_id IS NULL)", name="ck_report_single_target"),
    )
    for column in (
        "reporter_id",
        "target_post_id",
        "target_thread_id",
        "reason_code",
        "severity",
        "status",
        "assigned_moderator_id",
        "moderation_case_id",
        "created_at",
        "lifecycle",
    ):
        op.create_index(f"ix_reports_{column}", "reports", [column], unique=False)

    op.create_table(
        "moderation_actions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("target_user_id", sa.Integer(), nullable=False),
        sa.Column("actor_id", sa.Integer(), nullable=True),
        sa.Column("action_type", sa.String(length=30), nullable=False),
        sa.Column("case_id", sa.Integer(), sa.ForeignKey("moderation_cases.id"), nullable=True),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("target_post_id", sa.Integer(), nullable=True),
        sa.Column("target_thread_id", sa.Integer(), nullable=True),
        sa.Column("is_appealable", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        _timestamp("expires_at"),
        sa.Column("compensates_action_id", sa.Integer(), sa.ForeignKey("moderation_actions.id"), nullable=True),
        _timestamp("created_at", nullable=False, default=True),
    )
    for column in ("target_user_id", "actor_id", "action_type", "case_id", "compensates_action_id", "created_at"):
        op.create_index(f"ix_moderation_actions_{column}", "moderation_actions", [column], unique=False)

    op.create_table(
        "appeals",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("member_id", sa.Integer(), nullable=False),
        sa.Column("appealed_moderation_action_id", sa.Integer(), sa.ForeignKey("moderation_actions.id"), nullable=True),
        sa.Column("appealed_warning_id", sa.Integer(), sa.ForeignKey("moderation_actions.id"), nullable=True),
        sa.Column("appealed_suspension_id", sa.Integer(), sa.ForeignKey("moderation_actions.id"), nullable=True),
        sa.Column("appealed_ban_id", sa.Integer(), sa.ForeignKey("moderation_actions.id"), nullable=True),
        sa.Column("appealed_action_id", sa.Integer(), sa.ForeignKey("moderation_actions.id"), nullable=False),
        sa.Column("appeal_explanation", sa.Text(), nullable=False),
        sa.Column("additional_evidence", sa.Text(), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="pending_review"),
        sa.Column("decision", sa.String(length=20), nullable=True),
        sa.Column("decision_reasoning", sa.Text(), nullable=True),
        sa.Column("corrective_action_taken", sa.Text(), nullable=True),
        sa.Column("corrective_action_id", sa.Integer(), sa.ForeignKey("moderation_actions.id"), nullable=True),
        sa.Column("reviewing_admin_id", sa.Integer(), nullable=True),
        sa.Column("priority_override", sa.Integer(), nullable=True),
        _timestamp("submitted_at", nullable=False, default=True),
        _timestamp("updated_at", nullable=False, default=True),
        _timestamp("reviewed_at"),
        sa.Column("lifecycle", sa.String(length=20), nullable=False, server_default="active"),
        _timestamp("archived_at"),
        sa.UniqueConstraint("member_id", "appealed_action_id", name="uq_appeal_member_action"),
    )
    for column in ("member_id", "appealed_action_id", "status", "submitted_at", "lifecycle"):
        op.create_index(f"ix_appeals_{column}", "appeals", [column], unique=False)

    op.create_table(
        "legal_holds",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=True),
        sa.Column("post_id", sa.Integer(), nullable=True),
        sa.Column("thread_id", sa.Integer(), nullable=True),
        sa.Column("moderation_case_id", sa.Integer(), sa.ForeignKey("moderation_cases.id"), nullable=True),
        sa.Column("hold_reason", sa.String(length=30), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("created_by_id", sa.Integer(), nullable=True),
        _timestamp("hold_start", nullable=False),
        _timestamp("hold_end"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        _timestamp("deactivated_at"),
        _timestamp("created_at", nullable=False, default=True),
    )
    for column in ("user_id", "post_id", "thread_id", "moderation_case_id", "is_active"):
        op.create_index(f"ix_legal_holds_{column}", "legal_holds", [column], unique=False)

    op.create_table(
        "audit_log_entries",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("actor_id", sa.Integer(), nullable=True),
        sa.Column("action_type", sa.String(length=50), nullable=False),
        sa.Column("target_type", sa.String(length=50), nullable=False),
        sa.Column("target_identifier", sa.String(length=100), nullable=False),
        sa.Column("details", sa.JSON(), nullable=True),
        sa.Column("created_by_system", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        _timestamp("created_at", nullable=False, default=True),
    )
    for column in ("actor_id", "action_type", "target_type", "target_identifier", "created_at"):
        op.create_index(f"ix_audit_log_entries_{column}", "audit_log_entries", [column], unique=False)

    op.create_table(
        "notification_intents",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("recipient_id", sa.Integer(), nullable=False),
        sa.Column("template_key", sa.String(length=80), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("dedupe_key", sa.String(length=200), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="queued"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="3"),
        _timestamp("run_at", nullable=False, default=True),
        _timestamp("locked_at"),
        sa.Column("locked_by", sa.String(length=100), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        _timestamp("created_at", nullable=False, default=True),
        _timestamp("delivered_at"),
        sa.UniqueConstraint("dedupe_key", name="uq_notification_intent_dedupe"),
    )
    for column in ("recipient_id", "template_key", "status", "run_at"):
        op.create_index(f"ix_notification_intents_{column}", "notification_intents", [column], unique=False)


def downgrade() -> None:
    op.drop_table("notification_intents")
    op.drop_table("audit_log_entries")
    op.drop_table("legal_holds")
    op.drop_table("appeals")
    op.drop_table("moderation_actions")
    op.drop_table("reports")
    op.drop_table("moderation_cases")
