"""
File: app/db/models/linked_target.py
Description: 已绑定发布目标模型 (Page / Channel)

一个 SocialAccount 下可绑定多个目标 (N:1 SocialAccount)，
每个目标在同一时刻只属于一个工作区实体 (品牌/团队，workspace_id)。
目标一旦写入本表，即不再出现在该账号的"可绑定"列表中。

Author: jinmozhe
Created: 2026-03-02
"""

import uuid

from sqlalchemy import ForeignKey, String, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, declared_attr, mapped_column

from app.db.models.base import UUIDModel


class LinkedTarget(UUIDModel):
    """
    已绑定目标表 (N:1 SocialAccount)
    """

    @declared_attr.directive
    def __tablename__(cls) -> str:
        return "linked_targets"

    __table_args__ = (
        UniqueConstraint(
            "social_account_id",
            "provider_target_id",
            name="uq_linked_targets_account_target",
        ),
    )

    # --------------------------------------------------------------------------
    # 外键关联
    # --------------------------------------------------------------------------

    social_account_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("social_accounts.id"),
        nullable=False,
        index=True,
        comment="所属社交账号ID",
    )

    # 冗余字段，便于按用户鉴权与查询
    user_id: Mapped[str] = mapped_column(
        String(64), nullable=False, index=True, comment="所属用户ID"
    )

    provider: Mapped[str] = mapped_column(String(32), nullable=False, comment="平台标识")

    # --------------------------------------------------------------------------
    # 目标信息
    # --------------------------------------------------------------------------

    provider_target_id: Mapped[str] = mapped_column(
        String(255), nullable=False, comment="三方目标ID (Page ID 等)"
    )

    # 上游后端为该目标分配的ID (解绑时使用)
    backend_target_id: Mapped[str | None] = mapped_column(
        String(64), nullable=True, comment="上游后端目标ID"
    )

    name: Mapped[str] = mapped_column(String(255), nullable=False, comment="目标名称")

    # page / channel / group / profile
    type: Mapped[str] = mapped_column(String(32), nullable=False, comment="目标类型")

    category: Mapped[str | None] = mapped_column(
        String(255), nullable=True, comment="分类"
    )

    profile_picture_url: Mapped[str | None] = mapped_column(
        String(1024), nullable=True, comment="头像URL"
    )

    # 归属工作区 (品牌/团队)，可为空表示尚未分配
    workspace_id: Mapped[str | None] = mapped_column(
        String(64), nullable=True, index=True, comment="工作区ID (品牌/团队)"
    )
