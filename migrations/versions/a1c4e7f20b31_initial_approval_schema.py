"""initial_approval_schema

Creates the approval engine tables:
  - users, privileges, privilege_requests, requested_privileges
  - approval_requirement_rules  — rule table keyed by (privilege, practitioner, same specialty)
  - approval_records            — one decision per (request, approver, level)
  - escalation_records          — partial unique index on open (request, approver, level)
  - notifications, scheduled_jobs

Tables created conditionally (IF NOT EXISTS semantics) so databases that
already received them via db.create_all() upgrade cleanly.

Revision ID: a1c4e7f20b31
Revises:
Create Date: 2026-03-02 09:12:44.512930
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = 'a1c4e7f20b31'
down_revision = None
branch_labels = None
depends_on = None


def _ts(name, nullable=True):
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def upgrade():
    bind = op.get_bind()
    existing = set(sa_inspect(bind).get_table_names())

    # ── Directory ─────────────────────────────────────────────────────────
    if "users" not in existing:
        op.create_table(
            "users",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("email", sa.String(length=255), nullable=False),
            sa.Column("name_en", sa.String(length=200), nullable=False),
            sa.Column("name_ar", sa.String(length=200), nullable=True),
            sa.Column("role", sa.String(length=30), nullable=False, server_default="EMPLOYEE"),
            sa.Column(
                "practitioner_type", sa.String(length=20), nullable=True,
                comment="GP | SPECIALIST | CONSULTANT; NULL is treated as GP",
            ),
            sa.Column("specialty", sa.String(length=30), nullable=True),
            sa.Column("additional_specialties", sa.JSON(), nullable=True),
            sa.Column("can_approve_privileges", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("is_committee_member", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column(
                "manager_id", sa.Integer(), nullable=True,
                comment="Line manager, target of MANAGER-level escalations",
            ),
            _ts("created_at"),
            _ts("updated_at"),
            sa.ForeignKeyConstraint(["manager_id"], ["users.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        with op.batch_alter_table("users", schema=None) as batch_op:
            batch_op.create_index("ix_users_email", ["email"], unique=True)

    if "privileges" not in existing:
        op.create_table(
            "privileges",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("code", sa.String(length=50), nullable=False),
            sa.Column("name_en", sa.String(length=300), nullable=False),
            sa.Column("name_ar", sa.String(length=300), nullable=True),
            sa.Column("category", sa.String(length=30), nullable=False, server_default="CLINICAL"),
            sa.Column("required_specialty", sa.String(length=30), nullable=True),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("code"),
        )

    # ── Requests ──────────────────────────────────────────────────────────
    if "privilege_requests" not in existing:
        op.create_table(
            "privilege_requests",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("applicant_id", sa.Integer(), nullable=False),
            sa.Column("request_type", sa.String(length=20), nullable=False, server_default="CORE"),
            sa.Column("status", sa.String(length=30), nullable=False, server_default="DRAFT"),
            _ts("submitted_at"),
            _ts("completed_at"),
            _ts("created_at"),
            _ts("updated_at"),
            sa.ForeignKeyConstraint(["applicant_id"], ["users.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        with op.batch_alter_table("privilege_requests", schema=None) as batch_op:
            batch_op.create_index("ix_privilege_requests_applicant_id", ["applicant_id"])
            batch_op.create_index("ix_privilege_requests_status", ["status"])

    if "requested_privileges" not in existing:
        op.create_table(
            "requested_privileges",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("request_id", sa.Integer(), nullable=False),
            sa.Column("privilege_id", sa.Integer(), nullable=False),
            sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
            sa.ForeignKeyConstraint(["request_id"], ["privilege_requests.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["privilege_id"], ["privileges.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("request_id", "privilege_id", name="uq_requested_privilege"),
        )
        with op.batch_alter_table("requested_privileges", schema=None) as batch_op:
            batch_op.create_index("ix_requested_privileges_request_id", ["request_id"])

    # ── Approval rules & decisions ────────────────────────────────────────
    if "approval_requirement_rules" not in existing:
        op.create_table(
            "approval_requirement_rules",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("privilege_type", sa.String(length=20), nullable=False),
            sa.Column("practitioner_type", sa.String(length=20), nullable=False),
            sa.Column("same_specialty", sa.Boolean(), nullable=False),
            sa.Column("required_consultants", sa.Integer(), nullable=False, server_default="2"),
            sa.Column("requires_committee", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("requires_medical_director", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("auto_approve", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("description_en", sa.String(length=500), nullable=True),
            sa.Column("description_ar", sa.String(length=500), nullable=True),
            _ts("updated_at"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint(
                "privilege_type", "practitioner_type", "same_specialty",
                name="uq_approval_rule_key",
            ),
        )

    if "approval_records" not in existing:
        op.create_table(
            "approval_records",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("request_id", sa.Integer(), nullable=False),
            sa.Column("approver_id", sa.Integer(), nullable=False),
            sa.Column("level", sa.String(length=30), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="PENDING"),
            sa.Column("comments", sa.Text(), nullable=True),
            _ts("decided_at"),
            _ts("created_at"),
            sa.ForeignKeyConstraint(["request_id"], ["privilege_requests.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["approver_id"], ["users.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("request_id", "approver_id", "level", name="uq_approval_record_key"),
        )
        with op.batch_alter_table("approval_records", schema=None) as batch_op:
            batch_op.create_index("ix_approval_records_request_id", ["request_id"])
            batch_op.create_index("ix_approval_records_approver_id", ["approver_id"])

    # ── Escalations ───────────────────────────────────────────────────────
    if "escalation_records" not in existing:
        op.create_table(
            "escalation_records",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("request_id", sa.Integer(), nullable=False),
            sa.Column("approver_id", sa.Integer(), nullable=False),
            sa.Column("level", sa.Integer(), nullable=False, comment="1=REMINDER | 2=MANAGER | 3=HR"),
            sa.Column("recipient_id", sa.Integer(), nullable=True),
            _ts("created_at", nullable=False),
            _ts("notified_at"),
            _ts("resolved_at"),
            sa.Column("resolution", sa.String(length=20), nullable=True),
            sa.ForeignKeyConstraint(["request_id"], ["privilege_requests.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["approver_id"], ["users.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["recipient_id"], ["users.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
        )
        with op.batch_alter_table("escalation_records", schema=None) as batch_op:
            batch_op.create_index("ix_escalation_records_request_id", ["request_id"])
            batch_op.create_index("ix_escalation_records_approver_id", ["approver_id"])
            batch_op.create_index(
                "uq_escalation_open_triple",
                ["request_id", "approver_id", "level"],
                unique=True,
                sqlite_where=sa.text("resolved_at IS NULL"),
                postgresql_where=sa.text("resolved_at IS NULL"),
            )

    # ── Notifications & jobs ──────────────────────────────────────────────
    if "notifications" not in existing:
        op.create_table(
            "notifications",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("recipient_id", sa.Integer(), nullable=False),
            sa.Column("notification_type", sa.String(length=40), nullable=False),
            sa.Column("request_id", sa.Integer(), nullable=True),
            sa.Column("title", sa.String(length=300), nullable=False),
            sa.Column("payload", sa.JSON(), nullable=True),
            sa.Column("is_read", sa.Boolean(), nullable=True),
            _ts("read_at"),
            _ts("created_at"),
            sa.ForeignKeyConstraint(["recipient_id"], ["users.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["request_id"], ["privilege_requests.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        with op.batch_alter_table("notifications", schema=None) as batch_op:
            batch_op.create_index("ix_notifications_recipient_id", ["recipient_id"])
            batch_op.create_index("ix_notifications_request_id", ["request_id"])

    if "scheduled_jobs" not in existing:
        op.create_table(
            "scheduled_jobs",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("job_name", sa.String(length=100), nullable=False),
            sa.Column("description", sa.String(length=500), nullable=True),
            sa.Column("interval_minutes", sa.Integer(), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=True),
            sa.Column("is_enabled", sa.Boolean(), nullable=True),
            _ts("last_run_at"),
            sa.Column("last_run_status", sa.String(length=20), nullable=True),
            sa.Column("last_run_duration_ms", sa.Integer(), nullable=True),
            sa.Column("last_run_result", sa.JSON(), nullable=True),
            _ts("last_success_at"),
            sa.Column("run_count", sa.Integer(), nullable=True),
            sa.Column("skip_count", sa.Integer(), nullable=True),
            sa.Column("error_count", sa.Integer(), nullable=True),
            sa.Column("consecutive_failures", sa.Integer(), nullable=True),
            sa.Column("last_error", sa.Text(), nullable=True),
            _ts("created_at"),
            _ts("updated_at"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("job_name"),
        )


def downgrade():
    for table in (
        "scheduled_jobs",
        "notifications",
        "escalation_records",
        "approval_records",
        "approval_requirement_rules",
        "requested_privileges",
        "privilege_requests",
        "privileges",
        "users",
    ):
        op.drop_table(table)
