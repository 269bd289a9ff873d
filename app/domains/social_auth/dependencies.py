"""
File: app/domains/social_auth/dependencies.py
Description: 社交授权绑定领域依赖注入 (DI)

依赖链：
DBSession   → SocialAccountRepository / LinkedTargetRepository ┐
get_redis   → CorrelationStore                                  ├→ SocialAuthService
get_backend_client → BackendClient                              ┘

测试中 override get_db / get_redis / get_backend_client 即可替换全部外部资源。

Author: jinmozhe
Created: 2026-03-02
"""

from typing import Annotated

from fastapi import Depends, Path
from redis.asyncio import Redis

from app.api.deps import DBSession
from app.clients.backend import BackendClient, get_backend_client
from app.core.config import settings
from app.core.exceptions import AppException
from app.core.redis import get_redis
from app.db.models.linked_target import LinkedTarget
from app.db.models.social_account import SocialAccount
from app.domains.social_auth.constants import Provider, SocialAuthError
from app.domains.social_auth.correlation import CorrelationStore
from app.domains.social_auth.notifier import CrossContextNotifier
from app.domains.social_auth.repository import (
    LinkedTargetRepository,
    SocialAccountRepository,
)
from app.domains.social_auth.service import SocialAuthService


async def get_provider(
    provider: Annotated[str, Path(description="社交平台 (facebook/instagram/tiktok/twitter)")],
) -> Provider:
    """解析路径中的平台，未知或未启用时返回 PROVIDER_UNSUPPORTED"""
    value = provider.lower()
    if value not in {p.value for p in Provider} or value not in settings.SOCIAL_AUTH_PROVIDERS:
        raise AppException(SocialAuthError.PROVIDER_UNSUPPORTED, data={"provider": provider})
    return Provider(value)


async def get_correlation_store(
    redis: Annotated[Redis, Depends(get_redis)],
) -> CorrelationStore:
    return CorrelationStore(redis)


async def get_social_auth_service(
    session: DBSession,
    store: Annotated[CorrelationStore, Depends(get_correlation_store)],
    backend: Annotated[BackendClient, Depends(get_backend_client)],
) -> SocialAuthService:
    """
    获取社交授权服务实例。
    两个仓储共享同一个 Session，由 Service 统一提交事务。
    """
    return SocialAuthService(
        account_repo=SocialAccountRepository(model=SocialAccount, session=session),
        target_repo=LinkedTargetRepository(model=LinkedTarget, session=session),
        store=store,
        backend=backend,
        notifier=CrossContextNotifier(settings.frontend_origin),
    )


# ==============================================================================
# 导出类型别名，供 Router 层使用
# ==============================================================================

ProviderDep = Annotated[Provider, Depends(get_provider)]
SocialAuthServiceDep = Annotated[SocialAuthService, Depends(get_social_auth_service)]
