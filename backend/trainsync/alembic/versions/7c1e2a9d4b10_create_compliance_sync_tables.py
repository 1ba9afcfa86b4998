"""create tenant, training and compliance sync tables

Revision ID: 7c1e2a9d4b10
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "7c1e2a9d4b10"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


PENDING_ONLY = sa.text("status = 'pending'")


def _enum(name: str, *values: str) -> sa.Enum:
    return sa.Enum(*values, name=name, native_enum=False)


def upgrade() -> None:
    # ------------------------------------------------------------------
    # Tenants / users
    # ------------------------------------------------------------------
    op.create_table(
        "tenants",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("shortname", sa.String(length=100), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_tenants_shortname", "tenants", ["shortname"])
    op.create_index("ix_tenants_is_active", "tenants", ["is_active"])

    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("username", sa.String(length=100), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("first_name", sa.String(length=100), nullable=False),
        sa.Column("last_name", sa.String(length=100), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_users_username", "users", ["username"], unique=True)
    op.create_index("ix_users_email", "users", ["email"])

    op.create_table(
        "tenant_memberships",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.Integer(), sa.ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("tenant_id", "user_id", name="uq_tenant_memberships_tenant_user"),
    )
    op.create_index("ix_tenant_memberships_tenant_id", "tenant_memberships", ["tenant_id"])
    op.create_index("ix_tenant_memberships_user", "tenant_memberships", ["user_id"])

    # ------------------------------------------------------------------
    # Courses / completion facts
    # ------------------------------------------------------------------
    op.create_table(
        "courses",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("fullname", sa.String(length=255), nullable=False),
        sa.Column("shortname", sa.String(length=100), nullable=True),
        sa.Column("due_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )

    op.create_table(
        "completion_facts",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("course_id", sa.Integer(), sa.ForeignKey("courses.id", ondelete="CASCADE"), nullable=False),
        sa.Column(
            "status",
            sa.Enum("NOT_STARTED", "IN_PROGRESS", "COMPLETED", name="completion_status_enum", native_enum=False),
            nullable=False,
        ),
        sa.Column("completion_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("user_id", "course_id", name="uq_completion_facts_user_course"),
    )
    op.create_index("ix_completion_facts_user_id", "completion_facts", ["user_id"])
    op.create_index("ix_completion_facts_course_id", "completion_facts", ["course_id"])
    op.create_index("ix_completion_facts_course_status", "completion_facts", ["course_id", "status"])
    op.create_index("ix_completion_facts_user_status", "completion_facts", ["user_id", "status"])

    # ------------------------------------------------------------------
    # Compliance: credentials / rules
    # ------------------------------------------------------------------
    op.create_table(
        "compliance_api_credentials",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.Integer(), sa.ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("client_id", sa.String(length=255), nullable=False),
        sa.Column("client_secret", sa.String(length=255), nullable=False),
        sa.Column("scope", sa.String(length=255), nullable=False),
        sa.Column("grant_type", sa.String(length=100), nullable=False),
        sa.Column("status", sa.Boolean(), nullable=False),
        sa.Column("deleted", sa.Boolean(), nullable=False),
        sa.Column("created_by", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_by", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_compliance_api_credentials_tenant_id", "compliance_api_credentials", ["tenant_id"])
    op.create_index("ix_compliance_api_credentials_status", "compliance_api_credentials", ["status"])
    op.create_index("ix_compliance_api_credentials_deleted", "compliance_api_credentials", ["deleted"])
    op.create_index(
        "ix_compliance_api_credentials_tenant_active",
        "compliance_api_credentials",
        ["tenant_id", "status", "deleted"],
    )

    op.create_table(
        "compliance_sync_rules",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.Integer(), sa.ForeignKey("tenants.id", ondelete="CASCADE"), nullable=False),
        sa.Column(
            "credential_id",
            sa.Integer(),
            sa.ForeignKey("compliance_api_credentials.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("resource_id", sa.String(length=255), nullable=False),
        sa.Column("frameworks", sa.Text(), nullable=True),
        sa.Column("courses", sa.Text(), nullable=True),
        sa.Column("completion_mode", _enum("compliance_completion_mode", "any", "all"), nullable=False),
        sa.Column("created_by", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("modified_by", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("modified_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_compliance_sync_rules_tenant_id", "compliance_sync_rules", ["tenant_id"], unique=True)

    # ------------------------------------------------------------------
    # Compliance: lock / queues / attempt log
    # ------------------------------------------------------------------
    op.create_table(
        "compliance_sync_locks",
        sa.Column("tenant_id", sa.Integer(), primary_key=True, autoincrement=False),
        sa.Column("operation", sa.String(length=64), nullable=False),
        sa.Column("holder", sa.String(length=128), nullable=True),
        sa.Column("pid", sa.Integer(), nullable=True),
        sa.Column("acquired_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_compliance_sync_locks_expires_at", "compliance_sync_locks", ["expires_at"])

    op.create_table(
        "compliance_sync_queue",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("course_id", sa.Integer(), nullable=False),
        sa.Column("tenant_id", sa.Integer(), nullable=False),
        sa.Column("reason", sa.String(length=255), nullable=True),
        sa.Column(
            "status",
            _enum("compliance_queue_status", "pending", "completed", "failed"),
            nullable=False,
        ),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("queued_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_compliance_sync_queue_user_id", "compliance_sync_queue", ["user_id"])
    op.create_index("ix_compliance_sync_queue_course_id", "compliance_sync_queue", ["course_id"])
    op.create_index("ix_compliance_sync_queue_tenant_id", "compliance_sync_queue", ["tenant_id"])
    op.create_index("ix_compliance_sync_queue_status", "compliance_sync_queue", ["status"])
    op.create_index("ix_compliance_sync_queue_tenant_status", "compliance_sync_queue", ["tenant_id", "status"])
    op.create_index("ix_compliance_sync_queue_queued_at", "compliance_sync_queue", ["queued_at"])
    op.create_index(
        "uq_compliance_sync_queue_pending",
        "compliance_sync_queue",
        ["user_id", "course_id", "tenant_id"],
        unique=True,
        postgresql_where=PENDING_ONLY,
        sqlite_where=PENDING_ONLY,
    )

    op.create_table(
        "compliance_regeneration_queue",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.Integer(), nullable=False),
        sa.Column("reason", sa.String(length=255), nullable=True),
        sa.Column(
            "status",
            _enum("compliance_regeneration_status", "pending", "processing", "completed", "failed"),
            nullable=False,
        ),
        sa.Column("queued_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("triggered_by", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
    )
    op.create_index("ix_compliance_regeneration_queue_tenant_id", "compliance_regeneration_queue", ["tenant_id"])
    op.create_index("ix_compliance_regeneration_queue_status", "compliance_regeneration_queue", ["status"])
    op.create_index(
        "ix_compliance_regeneration_status_queued",
        "compliance_regeneration_queue",
        ["status", "queued_at"],
    )
    op.create_index(
        "uq_compliance_regeneration_pending",
        "compliance_regeneration_queue",
        ["tenant_id"],
        unique=True,
        postgresql_where=PENDING_ONLY,
        sqlite_where=PENDING_ONLY,
    )

    op.create_table(
        "compliance_sync_logs",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.Integer(), nullable=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("course_id", sa.Integer(), nullable=False),
        sa.Column("user_email", sa.String(length=255), nullable=False),
        sa.Column("course_name", sa.String(length=255), nullable=False),
        sa.Column("synced_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("request_payload", sa.Text(), nullable=False),
        sa.Column("response_payload", sa.Text(), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
    )
    op.create_index("ix_compliance_sync_logs_tenant_id", "compliance_sync_logs", ["tenant_id"])
    op.create_index("ix_compliance_sync_logs_user_id", "compliance_sync_logs", ["user_id"])
    op.create_index("ix_compliance_sync_logs_course_id", "compliance_sync_logs", ["course_id"])
    op.create_index("ix_compliance_sync_logs_synced_at", "compliance_sync_logs", ["synced_at"])
    op.create_index("ix_compliance_sync_logs_status", "compliance_sync_logs", ["status"])
    op.create_index("ix_compliance_sync_logs_tenant_time", "compliance_sync_logs", ["tenant_id", "synced_at"])


def downgrade() -> None:
    op.drop_table("compliance_sync_logs")
    op.drop_table("compliance_regeneration_queue")
    op.drop_table("compliance_sync_queue")
    op.drop_table("compliance_sync_locks")
    op.drop_table("compliance_sync_rules")
    op.drop_table("compliance_api_credentials")
    op.drop_table("completion_facts")
    op.drop_table("courses")
    op.drop_table("tenant_memberships")
    op.drop_table("users")
    op.drop_table("tenants")
