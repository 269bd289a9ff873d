"""
File: app/domains/social_auth/initiator.py
Description: 授权发起器 (Authorization Initiator)

流程：
1. 生成 nonce，向上游请求该平台的授权链接 (state=nonce)
2. 规范化授权链接 (Facebook 裸域修正；确保链接上恰好携带一个 state)
3. 持久化 LinkAttempt，并记录 mode (popup / redirect) 供后续步骤使用
4. 原子替换同一用户同一平台的进行中记录，作废被替换的旧尝试 (并发发起时只保留一个)

获取链接失败 (网络错误 / 无链接) 直接向调用方抛出 AUTH_URL_FAILED，且不会产生 LinkAttempt。

Author: jinmozhe
Created: 2026-03-02
"""

import httpx

from app.clients.backend import BackendClient
from app.core.config import settings
from app.core.exceptions import AppException, UpstreamError
from app.core.logging import logger
from app.core.security import AuthContext, generate_nonce
from app.domains.social_auth.constants import LinkMode, Provider, SocialAuthError
from app.domains.social_auth.correlation import CorrelationStore
from app.domains.social_auth.flow import AttemptState, attempt_machine
from app.domains.social_auth.schemas import AttemptRecord, BeginResponse

FACEBOOK_HOSTS = {"facebook.com", "www.facebook.com"}


def normalize_auth_url(provider: Provider, auth_url: str) -> str:
    """
    修正上游返回的授权链接。

    Facebook 偶尔返回 https://www.facebook.com?client_id=... (缺少 OAuth Dialog 路径)，
    改写为 https://www.facebook.com/{version}/dialog/oauth?client_id=...
    """
    url = httpx.URL(auth_url)
    if provider == Provider.FACEBOOK and url.host in FACEBOOK_HOSTS:
        if url.path in ("", "/"):
            url = url.copy_with(
                path=f"/{settings.FACEBOOK_GRAPH_VERSION}/dialog/oauth"
            )
    return str(url)


def bind_state(auth_url: str, nonce: str) -> tuple[str, str]:
    """
    保证授权链接上恰好有一个 state，返回 (最终链接, 最终 nonce)。

    - 链接已带 state (上游生成): 以它为准
    - 否则追加本地生成的 nonce
    """
    url = httpx.URL(auth_url)
    existing = url.params.get("state")
    if existing:
        return str(url), existing
    return str(url.copy_merge_params({"state": nonce})), nonce


class AuthorizationInitiator:
    """
    授权发起器。
    """

    def __init__(self, store: CorrelationStore, backend: BackendClient):
        self.store = store
        self.backend = backend

    async def begin(
        self,
        auth: AuthContext,
        provider: Provider,
        mode: LinkMode,
        return_path: str | None = None,
    ) -> BeginResponse:
        machine = attempt_machine()
        machine.advance(AttemptState.AUTH_URL_REQUESTED)

        log = logger.bind(provider=provider.value, user_id=auth.user_id, mode=mode.value)

        # 1. 请求授权链接
        nonce = generate_nonce()
        try:
            payload = await self.backend.get_auth_url(auth, provider.value, state=nonce)
        except UpstreamError as exc:
            machine.advance(AttemptState.IDLE)
            log.bind(detail=exc.message).warning("Authorization url request failed")
            raise AppException(SocialAuthError.AUTH_URL_FAILED, message=exc.message) from exc

        if not payload.auth_url:
            machine.advance(AttemptState.IDLE)
            raise AppException(SocialAuthError.AUTH_URL_FAILED)

        # 2. 规范化链接，上游返回的 state 优先
        auth_url = normalize_auth_url(provider, payload.auth_url)
        auth_url, nonce = bind_state(auth_url, payload.state or nonce)

        # 3. 持久化 (此后才算真正产生 LinkAttempt)
        if mode == LinkMode.REDIRECT:
            return_path = return_path or settings.SOCIAL_AUTH_DEFAULT_RETURN_PATH
        attempt = await self.store.create(
            provider, mode, auth.user_id, return_path, nonce=nonce
        )

        machine.advance(
            AttemptState.POPUP_OPENED if mode == LinkMode.POPUP else AttemptState.REDIRECTED
        )
        machine.advance(AttemptState.CALLBACK_PENDING)

        # 4. 每用户每平台只保留一个进行中的尝试: 原子换入记录，作废被换出的旧 nonce
        await self.store.replace_record(
            AttemptRecord(
                provider=provider,
                user_id=auth.user_id,
                nonce=attempt.nonce,
                mode=mode,
                return_path=attempt.return_path,
                attempt_state=machine.state,
                created_at=attempt.created_at,
            )
        )

        log.info("Link attempt started")

        return BeginResponse(
            provider=provider,
            mode=mode,
            auth_url=auth_url,
            attempt_state=machine.state,
            expires_at=attempt.expires_at(self.store.nonce_ttl),
        )
