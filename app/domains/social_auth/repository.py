"""
File: app/domains/social_auth/repository.py
Description: 社交授权绑定领域仓储层 (Repository)

本模块负责社交账号与已绑定目标的数据库访问，继承自通用 BaseRepository。
扩展功能：
1. SocialAccountRepository: 按归属用户查询、幂等 upsert (同一三方账号只保留一条)
2. LinkedTargetRepository: 按账号/用户查询、幂等 upsert、按账号批量删除

注意：
本层只 flush 不 commit，事务由 Service / 组件层提交。

Author: jinmozhe
Created: 2026-03-02
"""

from typing import Any
from uuid import UUID

from pydantic import BaseModel
from sqlalchemy import delete, select

from app.db.models.linked_target import LinkedTarget
from app.db.models.social_account import SocialAccount
from app.db.repositories.base import BaseRepository

# ------------------------------------------------------------------------------
# 写入模型 (仓储内部使用)
# ------------------------------------------------------------------------------


class SocialAccountUpsert(BaseModel):
    user_id: str
    provider: str
    provider_account_id: str
    backend_account_id: str | None = None
    display_name: str | None = None
    extra_data: dict[str, Any] | None = None


class LinkedTargetUpsert(BaseModel):
    social_account_id: UUID
    user_id: str
    provider: str
    provider_target_id: str
    backend_target_id: str | None = None
    name: str
    type: str
    category: str | None = None
    profile_picture_url: str | None = None
    workspace_id: str | None = None


# ------------------------------------------------------------------------------
# Repositories
# ------------------------------------------------------------------------------


class SocialAccountRepository(
    BaseRepository[SocialAccount, SocialAccountUpsert, SocialAccountUpsert]
):
    """
    社交账号仓储类。
    所有查询都带 user_id 条件，防止越权访问 (IDOR)。
    """

    async def get_owned(self, account_id: UUID, user_id: str) -> SocialAccount | None:
        stmt = select(SocialAccount).where(
            SocialAccount.id == account_id, SocialAccount.user_id == user_id
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_provider_account(
        self, user_id: str, provider: str, provider_account_id: str
    ) -> SocialAccount | None:
        stmt = select(SocialAccount).where(
            SocialAccount.user_id == user_id,
            SocialAccount.provider == provider,
            SocialAccount.provider_account_id == provider_account_id,
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_by_user(self, user_id: str) -> list[SocialAccount]:
        stmt = (
            select(SocialAccount)
            .where(SocialAccount.user_id == user_id)
            .order_by(SocialAccount.linked_at)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def upsert(self, obj_in: SocialAccountUpsert) -> tuple[SocialAccount, bool]:
        """
        幂等写入：同一 (user, provider, provider_account_id) 重复绑定时更新，不新增。
        返回 (记录, 是否新建)。
        """
        existing = await self.get_by_provider_account(
            obj_in.user_id, obj_in.provider, obj_in.provider_account_id
        )
        if existing is None:
            return await self.create(obj_in), True

        changes = obj_in.model_dump(
            include={"backend_account_id", "display_name", "extra_data"},
            exclude_none=True,
        )
        return await self.update(existing, changes), False


class LinkedTargetRepository(
    BaseRepository[LinkedTarget, LinkedTargetUpsert, LinkedTargetUpsert]
):
    """
    已绑定目标仓储类。
    """

    async def get_owned(self, target_id: UUID, user_id: str) -> LinkedTarget | None:
        stmt = select(LinkedTarget).where(
            LinkedTarget.id == target_id, LinkedTarget.user_id == user_id
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_by_account(self, social_account_id: UUID) -> list[LinkedTarget]:
        stmt = (
            select(LinkedTarget)
            .where(LinkedTarget.social_account_id == social_account_id)
            .order_by(LinkedTarget.created_at)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def list_by_user(self, user_id: str) -> list[LinkedTarget]:
        stmt = (
            select(LinkedTarget)
            .where(LinkedTarget.user_id == user_id)
            .order_by(LinkedTarget.created_at)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def upsert(self, obj_in: LinkedTargetUpsert) -> LinkedTarget:
        """同一账号下同一三方目标只保留一条，重复绑定时更新归属工作区等信息"""
        stmt = select(LinkedTarget).where(
            LinkedTarget.social_account_id == obj_in.social_account_id,
            LinkedTarget.provider_target_id == obj_in.provider_target_id,
        )
        existing = (await self.session.execute(stmt)).scalar_one_or_none()
        if existing is None:
            return await self.create(obj_in)

        changes = obj_in.model_dump(
            exclude={"social_account_id", "user_id", "provider", "provider_target_id"},
            exclude_none=True,
        )
        return await self.update(existing, changes)

    async def delete_by_account(self, social_account_id: UUID) -> int:
        stmt = delete(LinkedTarget).where(
            LinkedTarget.social_account_id == social_account_id
        )
        result = await self.session.execute(stmt)
        await self.session.flush()
        return result.rowcount or 0
