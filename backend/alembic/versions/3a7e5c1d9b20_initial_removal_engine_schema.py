"""initial removal engine schema

Revision ID: 3a7e5c1d9b20
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""

from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "3a7e5c1d9b20"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

REMOVAL_STATUS = sa.Enum(
    "PENDING",
    "SUBMITTED",
    "IN_PROGRESS",
    "ACKNOWLEDGED",
    "COMPLETED",
    "REQUIRES_MANUAL",
    "FAILED",
    "CANCELLED",
    "SKIPPED",
    name="removalstatus",
)
REMOVAL_METHOD = sa.Enum("AUTO_EMAIL", "AUTO_FORM", "MANUAL_GUIDE", name="removalmethod")
EXPOSURE_STATUS = sa.Enum(
    "ACTIVE",
    "REMOVAL_PENDING",
    "REMOVAL_IN_PROGRESS",
    "REMOVED",
    "MONITORING",
    "WHITELISTED",
    name="exposurestatus",
)
ALERT_TYPE = sa.Enum("REMOVAL_COMPLETED", "FIRST_REMOVAL", "REMOVAL_NEEDS_ATTENTION", name="alerttype")
EXECUTION_STATUS = sa.Enum("SUCCESS", "FAILED", "SKIPPED", "PARTIAL", name="executionstatus")


def upgrade() -> None:
    op.create_table(
        "exposures",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("source", sa.String(), nullable=False),
        sa.Column("source_name", sa.String(), nullable=False),
        sa.Column("source_url", sa.String(), nullable=True),
        sa.Column("data_type", sa.String(), nullable=False),
        sa.Column("severity", sa.String(), nullable=False),
        sa.Column("status", EXPOSURE_STATUS, nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_exposures_user_id"), "exposures", ["user_id"], unique=False)
    op.create_index(op.f("ix_exposures_source"), "exposures", ["source"], unique=False)

    op.create_table(
        "removal_requests",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("exposure_id", sa.Uuid(), nullable=False),
        sa.Column("status", REMOVAL_STATUS, nullable=False),
        sa.Column("method", REMOVAL_METHOD, nullable=True),
        sa.Column("requester_email", sa.String(), nullable=True),
        sa.Column("override_privacy_email", sa.String(), nullable=True),
        sa.Column("override_opt_out_url", sa.String(), nullable=True),
        sa.Column("submitted_at", sa.DateTime(), nullable=True),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        sa.Column("last_verified_at", sa.DateTime(), nullable=True),
        sa.Column("verification_count", sa.Integer(), nullable=False),
        sa.Column("verify_after", sa.DateTime(), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("next_retry_at", sa.DateTime(), nullable=True),
        sa.Column("before_screenshot", sa.String(), nullable=True),
        sa.Column("before_screenshot_at", sa.DateTime(), nullable=True),
        sa.Column("after_screenshot", sa.String(), nullable=True),
        sa.Column("after_screenshot_at", sa.DateTime(), nullable=True),
        sa.Column("form_screenshot", sa.String(), nullable=True),
        sa.Column("form_screenshot_at", sa.DateTime(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
        sa.ForeignKeyConstraint(["exposure_id"], ["exposures.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("exposure_id"),
    )
    for column in ("user_id", "status", "verify_after", "next_retry_at", "created_at"):
        op.create_index(
            op.f(f"ix_removal_requests_{column}"), "removal_requests", [column], unique=False
        )

    op.create_table(
        "removal_attempts",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("removal_request_id", sa.Uuid(), nullable=False),
        sa.Column("broker_key", sa.String(), nullable=False),
        sa.Column("data_type", sa.String(), nullable=True),
        sa.Column("succeeded", sa.Boolean(), nullable=False),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    for column in ("removal_request_id", "broker_key", "created_at"):
        op.create_index(
            op.f(f"ix_removal_attempts_{column}"), "removal_attempts", [column], unique=False
        )

    op.create_table(
        "job_locks",
        sa.Column("job_name", sa.String(), nullable=False),
        sa.Column("holder_token", sa.String(), nullable=False),
        sa.Column("acquired_at", sa.DateTime(), nullable=False),
        sa.Column("lease_expires_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("job_name"),
    )
    op.create_index(
        op.f("ix_job_locks_lease_expires_at"), "job_locks", ["lease_expires_at"], unique=False
    )

    op.create_table(
        "rate_limit_windows",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("broker_key", sa.String(), nullable=False),
        sa.Column("day_bucket", sa.Date(), nullable=False),
        sa.Column("count_sent", sa.Integer(), nullable=False),
        sa.Column("last_sent_at", sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("broker_key", "day_bucket", name="uq_rate_window_broker_day"),
    )
    op.create_index(
        op.f("ix_rate_limit_windows_broker_key"), "rate_limit_windows", ["broker_key"], unique=False
    )

    op.create_table(
        "email_suppressions",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("suppressed", sa.Boolean(), nullable=False),
        sa.Column("reason", sa.String(), nullable=True),
        sa.Column("suppressed_at", sa.DateTime(), nullable=True),
        sa.Column("bounce_count", sa.Integer(), nullable=False),
        sa.Column("bounce_history", sa.JSON(), nullable=False),
        sa.Column("last_bounce_type", sa.String(), nullable=True),
        sa.Column("category", sa.String(), nullable=True),
        sa.Column("broker_key", sa.String(), nullable=True),
        sa.Column("first_bounced_at", sa.DateTime(), nullable=True),
        sa.Column("last_bounced_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        op.f("ix_email_suppressions_email"), "email_suppressions", ["email"], unique=True
    )

    op.create_table(
        "execution_logs",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("job_name", sa.String(), nullable=False),
        sa.Column("status", EXECUTION_STATUS, nullable=False),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        sa.Column("message", sa.String(), nullable=True),
        sa.Column("details", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    for column in ("job_name", "status", "created_at"):
        op.create_index(
            op.f(f"ix_execution_logs_{column}"), "execution_logs", [column], unique=False
        )

    op.create_table(
        "alerts",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("removal_request_id", sa.Uuid(), nullable=True),
        sa.Column("alert_type", ALERT_TYPE, nullable=False),
        sa.Column("title", sa.String(), nullable=False),
        sa.Column("message", sa.Text(), nullable=False),
        sa.Column("is_read", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_alerts_user_id"), "alerts", ["user_id"], unique=False)
    op.create_index(
        op.f("ix_alerts_removal_request_id"), "alerts", ["removal_request_id"], unique=False
    )

    op.create_table(
        "support_tickets",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("removal_request_id", sa.Uuid(), nullable=False),
        sa.Column("category", sa.String(), nullable=False),
        sa.Column("subject", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("resolved_at", sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_support_tickets_user_id"), "support_tickets", ["user_id"], unique=False)
    op.create_index(
        op.f("ix_support_tickets_removal_request_id"),
        "support_tickets",
        ["removal_request_id"],
        unique=False,
    )

    op.create_table(
        "user_milestones",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("milestone", sa.String(), nullable=False),
        sa.Column("removal_request_id", sa.Uuid(), nullable=True),
        sa.Column("achieved_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id", "milestone", name="uq_user_milestone"),
    )
    op.create_index(op.f("ix_user_milestones_user_id"), "user_milestones", ["user_id"], unique=False)


def downgrade() -> None:
    for table in (
        "user_milestones",
        "support_tickets",
        "alerts",
        "execution_logs",
        "email_suppressions",
        "rate_limit_windows",
        "job_locks",
        "removal_attempts",
        "removal_requests",
        "exposures",
    ):
        op.drop_table(table)

    bind = op.get_bind()
    for enum_type in (EXECUTION_STATUS, ALERT_TYPE, EXPOSURE_STATUS, REMOVAL_METHOD, REMOVAL_STATUS):
        enum_type.drop(bind, checkfirst=True)
