"""create social account and linked target tables

Revision ID: 20260302_000001
Revises:
Create Date: 2026-03-02 00:00:01.000000
"""

from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "20260302_000001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "social_accounts",
        sa.Column("id", sa.Uuid(), nullable=False, comment="主键 (UUID v7)"),
        sa.Column("user_id", sa.String(length=64), nullable=False, comment="所属用户ID (身份层 sub)"),
        sa.Column("provider", sa.String(length=32), nullable=False, comment="平台标识"),
        sa.Column("provider_account_id", sa.String(length=255), nullable=False, comment="三方账号ID"),
        sa.Column("backend_account_id", sa.String(length=64), nullable=True, comment="上游后端账号ID"),
        sa.Column("display_name", sa.String(length=255), nullable=True, comment="展示名称"),
        sa.Column("linked_at", sa.DateTime(timezone=True), nullable=False, comment="首次绑定时间 (UTC)"),
        sa.Column(
            "extra_data",
            sa.JSON().with_variant(postgresql.JSONB(), "postgresql"),
            nullable=True,
            comment="上游原始数据快照",
        ),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False, comment="创建时间 (UTC)"),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False, comment="更新时间 (UTC)"),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_social_accounts")),
        sa.UniqueConstraint(
            "user_id",
            "provider",
            "provider_account_id",
            name="uq_social_accounts_user_provider_account",
        ),
    )
    op.create_index(
        op.f("ix_social_accounts_social_accounts_user_id"),
        "social_accounts",
        ["user_id"],
        unique=False,
    )
    op.create_index(
        op.f("ix_social_accounts_social_accounts_provider"),
        "social_accounts",
        ["provider"],
        unique=False,
    )

    op.create_table(
        "linked_targets",
        sa.Column("id", sa.Uuid(), nullable=False, comment="主键 (UUID v7)"),
        sa.Column("social_account_id", sa.Uuid(), nullable=False, comment="所属社交账号ID"),
        sa.Column("user_id", sa.String(length=64), nullable=False, comment="所属用户ID"),
        sa.Column("provider", sa.String(length=32), nullable=False, comment="平台标识"),
        sa.Column("provider_target_id", sa.String(length=255), nullable=False, comment="三方目标ID (Page ID 等)"),
        sa.Column("backend_target_id", sa.String(length=64), nullable=True, comment="上游后端目标ID"),
        sa.Column("name", sa.String(length=255), nullable=False, comment="目标名称"),
        sa.Column("type", sa.String(length=32), nullable=False, comment="目标类型"),
        sa.Column("category", sa.String(length=255), nullable=True, comment="分类"),
        sa.Column("profile_picture_url", sa.String(length=1024), nullable=True, comment="头像URL"),
        sa.Column("workspace_id", sa.String(length=64), nullable=True, comment="工作区ID (品牌/团队)"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False, comment="创建时间 (UTC)"),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False, comment="更新时间 (UTC)"),
        sa.ForeignKeyConstraint(
            ["social_account_id"],
            ["social_accounts.id"],
            name=op.f("fk_linked_targets_social_account_id_social_accounts"),
        ),
        sa.PrimaryKeyConstraint("id", name=op.f("pk_linked_targets")),
        sa.UniqueConstraint(
            "social_account_id",
            "provider_target_id",
            name="uq_linked_targets_account_target",
        ),
    )
    op.create_index(
        op.f("ix_linked_targets_linked_targets_social_account_id"),
        "linked_targets",
        ["social_account_id"],
        unique=False,
    )
    op.create_index(
        op.f("ix_linked_targets_linked_targets_user_id"),
        "linked_targets",
        ["user_id"],
        unique=False,
    )
    op.create_index(
        op.f("ix_linked_targets_linked_targets_workspace_id"),
        "linked_targets",
        ["workspace_id"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index(op.f("ix_linked_targets_linked_targets_workspace_id"), table_name="linked_targets")
    op.drop_index(op.f("ix_linked_targets_linked_targets_user_id"), table_name="linked_targets")
    op.drop_index(op.f("ix_linked_targets_linked_targets_social_account_id"), table_name="linked_targets")
    op.drop_table("linked_targets")
    op.drop_index(op.f("ix_social_accounts_social_accounts_provider"), table_name="social_accounts")
    op.drop_index(op.f("ix_social_accounts_social_accounts_user_id"), table_name="social_accounts")
    op.drop_table("social_accounts")
