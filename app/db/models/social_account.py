"""
File: app/db/models/social_account.py
Description: 社交账号绑定模型 (Facebook / Instagram / TikTok / Twitter)

本表是上游后端账号绑定结果的本地投影：
授权回调交换成功后写入，解绑时删除，其余时间不修改。
同一用户对同一平台的同一三方账号只保留一条记录 (重复授权走更新而非新增)。

注意：
采用 "No-Relationship" 模式，不显式定义 ORM relationship。
user_id 来自身份层 (JWT sub)，本服务不持有用户表，因此不加外键。

Author: jinmozhe
Created: 2026-03-02
"""

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import DateTime, String, UniqueConstraint
from sqlalchemy.orm import Mapped, declared_attr, mapped_column

from app.db.models.base import JSONType, UUIDModel


class SocialAccount(UUIDModel):
    """
    社交账号表 (N:1 User)
    """

    @declared_attr.directive
    def __tablename__(cls) -> str:
        return "social_accounts"

    __table_args__ = (
        # 幂等重复绑定的唯一依据
        UniqueConstraint(
            "user_id",
            "provider",
            "provider_account_id",
            name="uq_social_accounts_user_provider_account",
        ),
    )

    # --------------------------------------------------------------------------
    # 归属
    # --------------------------------------------------------------------------

    user_id: Mapped[str] = mapped_column(
        String(64), nullable=False, index=True, comment="所属用户ID (身份层 sub)"
    )

    # --------------------------------------------------------------------------
    # 三方身份
    # --------------------------------------------------------------------------

    # 平台标识: facebook, instagram, tiktok, twitter
    provider: Mapped[str] = mapped_column(
        String(32), nullable=False, index=True, comment="平台标识"
    )

    # 三方平台上的账号ID
    provider_account_id: Mapped[str] = mapped_column(
        String(255), nullable=False, comment="三方账号ID"
    )

    # 上游后端为该账号分配的ID (解绑时使用)
    backend_account_id: Mapped[str | None] = mapped_column(
        String(64), nullable=True, comment="上游后端账号ID"
    )

    display_name: Mapped[str | None] = mapped_column(
        String(255), nullable=True, comment="展示名称"
    )

    linked_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        nullable=False,
        comment="首次绑定时间 (UTC)",
    )

    # --------------------------------------------------------------------------
    # 扩展数据 (JSON)
    # --------------------------------------------------------------------------

    # 上游返回的原始账号快照
    extra_data: Mapped[dict[str, Any] | None] = mapped_column(
        JSONType, nullable=True, comment="上游原始数据快照"
    )

    def __repr__(self) -> str:
        return f"<SocialAccount {self.provider}:{self.provider_account_id}>"

