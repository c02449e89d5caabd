"""create access control schema

Revision ID: a7c3e91d2f40
Revises:
Create Date: 2026-10-17 09:12:44.501812

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = "a7c3e91d2f40"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSONType = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=False), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=False), nullable=False, server_default=sa.func.now()),
    ]


def upgrade() -> None:
    """Upgrade schema."""
    bind = op.get_bind()
    insp = inspect(bind)
    existing_tables = set(insp.get_table_names())

    def _has_index(table: str, name: str) -> bool:
        try:
            return any(ix.get("name") == name for ix in insp.get_indexes(table))
        except Exception:
            return False

    if "users" not in existing_tables:
        op.create_table(
            "users",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("name", sa.String(100), nullable=False),
            sa.Column("email", sa.String(255), nullable=False),
            sa.Column("password_hash", sa.Text(), nullable=False),
            sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("department", sa.String(100), nullable=True),
            sa.Column("region", sa.String(100), nullable=True),
            sa.Column("level", sa.Integer(), nullable=True),
            sa.Column("roles_updated_at", sa.DateTime(timezone=False), nullable=True),
            *_timestamps(),
            sa.UniqueConstraint("email", name="uq_users_email"),
        )

    if "roles" not in existing_tables:
        op.create_table(
            "roles",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("name", sa.String(100), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("grants_all", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("created_at", sa.DateTime(timezone=False), nullable=False, server_default=sa.func.now()),
            sa.UniqueConstraint("name", name="uq_roles_name"),
        )

    if "user_roles" not in existing_tables:
        op.create_table(
            "user_roles",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("user_id", sa.Integer(), nullable=False),
            sa.Column("role_id", sa.Integer(), nullable=False),
            sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["role_id"], ["roles.id"], ondelete="CASCADE"),
            sa.UniqueConstraint("user_id", "role_id", name="uq_user_roles_user_role"),
        )

    if "feature_categories" not in existing_tables:
        op.create_table(
            "feature_categories",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("name", sa.String(100), nullable=False),
            sa.Column("slug", sa.String(100), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("color", sa.String(7), nullable=False, server_default="#3B82F6"),
            sa.Column("icon", sa.String(50), nullable=False, server_default="IconSettings"),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
            *_timestamps(),
            sa.UniqueConstraint("name", name="uq_feature_categories_name"),
            sa.UniqueConstraint("slug", name="uq_feature_categories_slug"),
        )

    if "features" not in existing_tables:
        op.create_table(
            "features",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("name", sa.String(100), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("category_id", sa.Integer(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=False), nullable=False, server_default=sa.func.now()),
            sa.ForeignKeyConstraint(["category_id"], ["feature_categories.id"], ondelete="SET NULL"),
            sa.UniqueConstraint("name", name="uq_features_name"),
        )

    if "role_features" not in existing_tables:
        op.create_table(
            "role_features",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("role_id", sa.Integer(), nullable=False),
            sa.Column("feature_id", sa.Integer(), nullable=False),
            sa.Column("can_create", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("can_read", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("can_update", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("can_delete", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.ForeignKeyConstraint(["role_id"], ["roles.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["feature_id"], ["features.id"], ondelete="CASCADE"),
            sa.UniqueConstraint("role_id", "feature_id", name="uq_role_features_role_feature"),
        )

    if "policies" not in existing_tables:
        op.create_table(
            "policies",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("feature_id", sa.Integer(), nullable=False),
            sa.Column("attribute", sa.String(100), nullable=False),
            sa.Column("operator", sa.String(10), nullable=False),
            sa.Column("value", sa.Text(), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=False), nullable=False, server_default=sa.func.now()),
            sa.ForeignKeyConstraint(["feature_id"], ["features.id"], ondelete="CASCADE"),
        )

    if "route_features" not in existing_tables:
        op.create_table(
            "route_features",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("path", sa.String(255), nullable=False),
            sa.Column("method", sa.String(10), nullable=True),
            sa.Column("feature_id", sa.Integer(), nullable=False),
            sa.ForeignKeyConstraint(["feature_id"], ["features.id"], ondelete="CASCADE"),
            sa.UniqueConstraint("path", "method", name="uq_route_features_path_method"),
        )

    if "access_logs" not in existing_tables:
        op.create_table(
            "access_logs",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("user_id", sa.Integer(), nullable=True),
            sa.Column("role_id", sa.Integer(), nullable=True),
            sa.Column("feature_id", sa.Integer(), nullable=True),
            sa.Column("path", sa.String(255), nullable=False),
            sa.Column("method", sa.String(10), nullable=True),
            sa.Column("decision", sa.String(10), nullable=False),
            sa.Column("reason", sa.Text(), nullable=True),
            sa.Column("request_id", sa.String(64), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=False), nullable=False, server_default=sa.func.now()),
            sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["role_id"], ["roles.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["feature_id"], ["features.id"], ondelete="SET NULL"),
            sa.CheckConstraint("decision IN ('allow','deny')", name="ck_access_logs_decision"),
        )

    if "policy_violations" not in existing_tables:
        op.create_table(
            "policy_violations",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("user_id", sa.Integer(), nullable=True),
            sa.Column("feature_id", sa.Integer(), nullable=True),
            sa.Column("policy_id", sa.Integer(), nullable=True),
            sa.Column("attribute", sa.String(100), nullable=False),
            sa.Column("expected_value", sa.Text(), nullable=False),
            sa.Column("actual_value", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=False), nullable=False, server_default=sa.func.now()),
            sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["feature_id"], ["features.id"], ondelete="SET NULL"),
            sa.ForeignKeyConstraint(["policy_id"], ["policies.id"], ondelete="SET NULL"),
        )

    if "change_history" not in existing_tables:
        op.create_table(
            "change_history",
            sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
            sa.Column("user_id", sa.Integer(), nullable=True),
            sa.Column("table_name", sa.String(100), nullable=False),
            sa.Column("record_id", sa.Integer(), nullable=False),
            sa.Column("action", sa.String(10), nullable=False),
            sa.Column("old_values", JSONType, nullable=True),
            sa.Column("new_values", JSONType, nullable=True),
            sa.Column("reason", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=False), nullable=False, server_default=sa.func.now()),
            sa.ForeignKeyConstraint(["user_id"], ["users.id"], ondelete="SET NULL"),
            sa.CheckConstraint("action IN ('create','update','delete')", name="ck_change_history_action"),
        )

    # Indexes (idempotent)
    for table, idx_name, cols in (
        ("access_logs", "idx_access_logs_user", ["user_id"]),
        ("access_logs", "idx_access_logs_created_at", ["created_at"]),
        ("policy_violations", "idx_policy_violations_user", ["user_id"]),
        ("change_history", "idx_change_history_record", ["table_name", "record_id"]),
        ("policies", "idx_policies_feature", ["feature_id"]),
    ):
        if not _has_index(table, idx_name):
            op.create_index(idx_name, table, cols, unique=False)


def downgrade() -> None:
    """Downgrade schema."""
    for table in (
        "change_history",
        "policy_violations",
        "access_logs",
        "route_features",
        "policies",
        "role_features",
        "features",
        "feature_categories",
        "user_roles",
        "roles",
        "users",
    ):
        op.drop_table(table)
