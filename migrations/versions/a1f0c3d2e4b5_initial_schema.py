"""initial schema

Revision ID: a1f0c3d2e4b5
Revises:
Create Date: 2026-10-17 10:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect


# revision identifiers, used by Alembic.
revision: str = 'a1f0c3d2e4b5'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    bind = op.get_bind()
    insp = inspect(bind)
    existing_tables = set(insp.get_table_names())

    if "users" not in existing_tables:
        op.create_table(
            "users",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("email", sa.String(length=320), nullable=False),
            sa.Column("password_hash", sa.String(length=255), nullable=False),
            sa.Column("name", sa.String(length=255), nullable=False),
            sa.Column("role", sa.String(length=32), nullable=False, server_default="solicitante"),
            sa.Column("polo", sa.String(length=64), nullable=True),
            sa.Column("department", sa.String(length=128), nullable=True),
            sa.Column("phone", sa.String(length=32), nullable=True),
            sa.Column("privacy_consent", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("privacy_consent_date", sa.DateTime(timezone=False), nullable=True),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("created_at", sa.DateTime(timezone=False), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=False), nullable=False),
            sa.UniqueConstraint("email", name="uq_users_email"),
            sa.CheckConstraint("role IN ('solicitante','gestora','admin')", name="ck_users_role"),
        )
        op.create_index("idx_users_role", "users", ["role"])
        op.create_index("idx_users_polo", "users", ["polo"])

    if "user_polo_permissions" not in existing_tables:
        op.create_table(
            "user_polo_permissions",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("user_id", sa.Integer(), nullable=False),
            sa.Column("polo", sa.String(length=64), nullable=False),
            sa.Column("granted_by", sa.Integer(), nullable=True),
            sa.Column("granted_at", sa.DateTime(timezone=False), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=False), nullable=False),
            sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["granted_by"], ["users.id"], ondelete="SET NULL"),
            sa.UniqueConstraint("user_id", "polo", name="uq_user_polo_permission"),
        )
        op.create_index("idx_user_polo_permissions_user", "user_polo_permissions", ["user_id"])

    if "requests" not in existing_tables:
        op.create_table(
            "requests",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("user_id", sa.Integer(), nullable=False),
            sa.Column("type", sa.String(length=32), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("amount", sa.Numeric(12, 2), nullable=False),
            sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
            sa.Column("approved_by", sa.Integer(), nullable=True),
            sa.Column("approved_at", sa.DateTime(timezone=False), nullable=True),
            sa.Column("rejection_reason", sa.Text(), nullable=True),
            sa.Column("polo", sa.String(length=64), nullable=False),
            sa.Column("cpf", sa.String(length=32), nullable=False),
            sa.Column("requester_name", sa.String(length=255), nullable=True),
            sa.Column("dependents", sa.JSON(), nullable=False),
            sa.Column("invoices", sa.JSON(), nullable=False),
            sa.Column("attachments", sa.JSON(), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=False), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=False), nullable=False),
            sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["approved_by"], ["users.id"], ondelete="SET NULL"),
            sa.CheckConstraint("status IN ('pending','approved','rejected')", name="ck_requests_status"),
        )
        for idx_name, cols in (
            ("idx_requests_user", ["user_id"]),
            ("idx_requests_polo", ["polo"]),
            ("idx_requests_status", ["status"]),
            ("idx_requests_created_at", ["created_at"]),
        ):
            op.create_index(idx_name, "requests", cols)

    if "invoices" not in existing_tables:
        op.create_table(
            "invoices",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("request_id", sa.Integer(), nullable=False),
            sa.Column("file_name", sa.String(length=255), nullable=False),
            sa.Column("file_url", sa.String(length=1024), nullable=False),
            sa.Column("file_size", sa.Integer(), nullable=True),
            sa.Column("mime_type", sa.String(length=128), nullable=True),
            sa.Column("uploaded_at", sa.DateTime(timezone=False), nullable=False),
            sa.ForeignKeyConstraint(["request_id"], ["requests.id"], ondelete="CASCADE"),
        )
        op.create_index("idx_invoices_request", "invoices", ["request_id"])

    if "comments" not in existing_tables:
        op.create_table(
            "comments",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("request_id", sa.Integer(), nullable=False),
            sa.Column("user_id", sa.Integer(), nullable=True),
            sa.Column("content", sa.Text(), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=False), nullable=False),
            sa.ForeignKeyConstraint(["request_id"], ["requests.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="SET NULL"),
        )
        op.create_index("idx_comments_request", "comments", ["request_id"])

    if "audit_logs" not in existing_tables:
        op.create_table(
            "audit_logs",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=False), nullable=False),
            sa.Column("request_id", sa.String(length=64), nullable=True),
            sa.Column("user_id", sa.Integer(), nullable=True),
            sa.Column("actor_email", sa.String(length=320), nullable=True),
            sa.Column("action", sa.String(length=128), nullable=False),
            sa.Column("entity_type", sa.String(length=128), nullable=True),
            sa.Column("entity_id", sa.String(length=128), nullable=True),
            sa.Column("reason", sa.String(length=512), nullable=True),
            sa.Column("metadata", sa.Text(), nullable=True),
            sa.Column("client_ip", sa.String(length=64), nullable=True),
            sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="SET NULL"),
        )
        op.create_index("idx_audit_logs_user", "audit_logs", ["user_id"])
        op.create_index("idx_audit_logs_action", "audit_logs", ["action"])


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_table("audit_logs")
    op.drop_table("comments")
    op.drop_table("invoices")
    op.drop_table("requests")
    op.drop_table("user_polo_permissions")
    op.drop_table("users")
