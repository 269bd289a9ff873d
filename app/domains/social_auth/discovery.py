"""
File: app/domains/social_auth/discovery.py
Description: 目标发现 (Target Discovery)

本模块负责：
1. 拉取已绑定账号可管理的目标 (Pages / Channels)，并剔除本地已绑定的目标
2. 将结果缓存为快照 (Redis)，供搜索、全选与绑定后的局部更新使用
3. 授权码交换时上游顺带返回的可绑定目标直接写入快照 (免一次往返)

约定：
- 纯读取，可安全重复调用；空列表是合法结果 ("暂无目标")
- 同一目标不会同时出现在"可绑定"与"已绑定"中
- 解绑后由调用方强制刷新 (refresh=True)

Author: jinmozhe
Created: 2026-03-02
"""

from collections.abc import Iterable
from uuid import UUID

from pydantic import ValidationError
from redis.asyncio import Redis

from app.clients.backend import BackendClient, UpstreamTarget
from app.core.config import settings
from app.core.exceptions import AppException, UpstreamError
from app.core.logging import logger
from app.core.redis import build_key
from app.core.security import AuthContext
from app.db.models.social_account import SocialAccount
from app.domains.social_auth.constants import Provider, SocialAuthError
from app.domains.social_auth.correlation import NAMESPACE
from app.domains.social_auth.flow import TargetsState, targets_machine
from app.domains.social_auth.repository import LinkedTargetRepository
from app.domains.social_auth.schemas import AvailableTarget, TargetSnapshot


def to_available(target: UpstreamTarget) -> AvailableTarget:
    return AvailableTarget(
        provider_target_id=target.provider_target_id,
        name=target.name or target.provider_target_id,
        type=target.type,
        category=target.category,
        profile_picture_url=target.profile_picture_url,
    )


def search_targets(targets: Iterable[AvailableTarget], q: str | None) -> list[AvailableTarget]:
    """按名称或分类过滤 (大小写不敏感)；q 为空时原样返回"""
    needle = (q or "").strip()
    if not needle:
        return list(targets)
    return [t for t in targets if t.matches(needle)]


class TargetDiscovery:
    """
    目标发现组件。
    """

    def __init__(
        self,
        backend: BackendClient,
        redis: Redis,
        target_repo: LinkedTargetRepository,
        ttl: int = settings.SOCIAL_AUTH_TARGETS_TTL_SECONDS,
    ):
        self.backend = backend
        self.redis = redis
        self.target_repo = target_repo
        self.ttl = ttl

    @staticmethod
    def _key(user_id: str, account_id: UUID) -> str:
        return build_key(NAMESPACE, "targets", user_id, str(account_id))

    # --------------------------------------------------------------------------
    # 快照读写
    # --------------------------------------------------------------------------

    async def snapshot(self, user_id: str, account_id: UUID) -> TargetSnapshot | None:
        raw = await self.redis.get(self._key(user_id, account_id))
        if raw is None:
            return None
        try:
            return TargetSnapshot.model_validate_json(raw)
        except ValidationError:
            logger.bind(account_id=str(account_id)).warning("Corrupted target snapshot discarded")
            return None

    async def save(self, user_id: str, snapshot: TargetSnapshot) -> TargetSnapshot:
        await self.redis.set(
            self._key(user_id, snapshot.account_id),
            snapshot.model_dump_json(),
            ex=self.ttl,
        )
        return snapshot

    async def invalidate(self, user_id: str, account_id: UUID) -> None:
        await self.redis.delete(self._key(user_id, account_id))

    # --------------------------------------------------------------------------
    # 发现
    # --------------------------------------------------------------------------

    async def _linked_ids(self, account_id: UUID) -> set[str]:
        linked = await self.target_repo.list_by_account(account_id)
        return {t.provider_target_id for t in linked}

    async def discover(
        self, auth: AuthContext, account: SocialAccount, *, refresh: bool = False
    ) -> TargetSnapshot:
        """
        返回账号的可绑定目标快照。
        有缓存且未要求刷新时直接使用缓存，否则向上游拉取。
        """
        if not refresh:
            cached = await self.snapshot(auth.user_id, account.id)
            if cached is not None:
                return cached

        machine = targets_machine()
        machine.advance(TargetsState.TARGETS_LOADING)

        log = logger.bind(provider=account.provider, account_id=str(account.id))
        try:
            upstream = await self.backend.list_targets(
                auth,
                account.provider,
                account.backend_account_id or account.provider_account_id,
            )
        except UpstreamError as exc:
            machine.advance(TargetsState.TARGETS_LOAD_FAILED)
            log.bind(detail=exc.message).warning("Target discovery failed")
            raise AppException(
                SocialAuthError.DISCOVERY_FAILED,
                message=exc.message,
                data={"targets_state": machine.state.value},
            ) from exc

        linked_ids = await self._linked_ids(account.id)
        seen: set[str] = set()
        targets: list[AvailableTarget] = []
        for item in upstream:
            if item.provider_target_id in linked_ids or item.provider_target_id in seen:
                continue
            seen.add(item.provider_target_id)
            targets.append(to_available(item))

        machine.advance(TargetsState.TARGETS_LOADED)
        log.bind(count=len(targets)).info("Targets discovered")

        return await self.save(
            auth.user_id,
            TargetSnapshot(
                account_id=account.id,
                provider=Provider(account.provider),
                targets_state=machine.state,
                targets=targets,
            ),
        )

    async def seed(
        self, user_id: str, account: SocialAccount, upstream: list[UpstreamTarget]
    ) -> TargetSnapshot:
        """用授权码交换时返回的 availableTargets 预填快照"""
        linked_ids = await self._linked_ids(account.id)
        targets = [
            to_available(t) for t in upstream if t.provider_target_id not in linked_ids
        ]
        machine = targets_machine()
        machine.walk(TargetsState.TARGETS_LOADING, TargetsState.TARGETS_LOADED)
        return await self.save(
            user_id,
            TargetSnapshot(
                account_id=account.id,
                provider=Provider(account.provider),
                targets_state=machine.state,
                targets=targets,
            ),
        )

    async def mark_linked(
        self, user_id: str, account_id: UUID, provider_target_ids: Iterable[str]
    ) -> TargetSnapshot | None:
        """绑定成功的目标从快照中移出 (无需重新拉取)"""
        snapshot = await self.snapshot(user_id, account_id)
        if snapshot is None:
            return None
        linked = set(provider_target_ids)
        snapshot.targets = [t for t in snapshot.targets if t.provider_target_id not in linked]
        return await self.save(user_id, snapshot)
