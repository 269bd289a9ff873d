"""
File: app/domains/social_auth/reconciler.py
Description: 回调对账器 (Callback Reconciler)

三方平台回调落地后，按以下顺序处理 (命中即返回)：
1. 带 error 参数          -> AuthorizationDenied (原因取平台返回的错误描述)
2. 缺少 code 或 state      -> CallbackMalformed
3. consume(state) 失败     -> NonceInvalid (未知 / 过期 / 已使用，一律同样处理)
4. 调用上游交换授权码       -> 成功则写入 SocialAccount；失败则 ExchangeFailed

约定：
- 从不抛出异常：所有结果都收敛为 CallbackResult，由 Notifier 投递
  (账号已落库后预填目标快照失败，仍按成功返回，available_targets 为空)
- 从不自动重试交换 (授权码在平台侧是一次性的)，失败后需从发起授权重新开始
- 权威用户是发起授权时绑定在 LinkAttempt 上的用户；回调中的 userId 仅作提示，
  与权威用户不一致时按会话无效处理
- nonce 必须在交换之前被消费，交换结束 (无论成败) 之后才允许目标发现

Author: jinmozhe
Created: 2026-03-02
"""

from typing import Any

from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError

from app.clients.backend import BackendClient, ExchangePayload
from app.core.config import settings
from app.core.exceptions import UpstreamError
from app.core.logging import logger
from app.core.security import AuthContext
from app.domains.social_auth.constants import (
    CallbackOutcome,
    CallbackReason,
    Provider,
    SocialAuthError,
)
from app.domains.social_auth.correlation import CorrelationStore
from app.domains.social_auth.discovery import TargetDiscovery
from app.domains.social_auth.flow import AttemptState, attempt_machine
from app.domains.social_auth.repository import (
    SocialAccountRepository,
    SocialAccountUpsert,
)
from app.domains.social_auth.schemas import (
    AvailableTarget,
    CallbackParams,
    CallbackResult,
    LinkAttempt,
    SocialAccountRead,
)


class CallbackReconciler:
    """
    回调对账器 (对所有平台通用，provider 作为参数传入)。
    """

    def __init__(
        self,
        store: CorrelationStore,
        backend: BackendClient,
        account_repo: SocialAccountRepository,
        discovery: TargetDiscovery,
    ):
        self.store = store
        self.backend = backend
        self.account_repo = account_repo
        self.discovery = discovery

    async def reconcile(
        self,
        provider: Provider,
        params: CallbackParams,
        *,
        user_hint: str | None = None,
        auth: AuthContext | None = None,
    ) -> tuple[CallbackResult, LinkAttempt | None]:
        """
        对账一次回调，返回 (结果, 被消费的 LinkAttempt)。

        Args:
            provider: 路由中的平台
            params: 回调参数 (code / state / error)
            user_hint: 回调地址中的 userId (仅提示)
            auth: POST 回调时调用方的身份；GET 回调 (浏览器跳转) 为 None
        """
        log = logger.bind(provider=provider.value)

        # 1. 平台返回错误 (用户拒绝授权等)
        if params.error:
            attempt = await self._close(params.state, provider)
            log.bind(error=params.error).info("Authorization denied by provider")
            result = CallbackResult.failure(
                provider,
                SocialAuthError.AUTHORIZATION_DENIED,
                params.error_description or params.error,
                **self._context(attempt),
            )
            await self._settle(attempt, result)
            return result, attempt

        # 2. 参数不完整
        if not params.code or not params.state:
            attempt = await self._close(params.state, provider)
            reason = CallbackReason.CODE_MISSING if not params.code else CallbackReason.STATE_MISSING
            log.info("Malformed callback")
            result = CallbackResult.failure(
                provider, SocialAuthError.CALLBACK_MALFORMED, reason, **self._context(attempt)
            )
            await self._settle(attempt, result)
            return result, attempt

        # 3. 消费 nonce (单次使用，失败关闭)
        attempt = await self.store.consume(params.state)
        if attempt is None or attempt.provider != provider:
            log.warning("Callback rejected: invalid or expired session")
            return (
                CallbackResult.failure(
                    provider, SocialAuthError.NONCE_INVALID, CallbackReason.SESSION_INVALID
                ),
                None,
            )

        caller = auth.user_id if auth else user_hint
        if caller is not None and caller != attempt.user_id:
            log.bind(user_id=attempt.user_id).warning("Callback rejected: user mismatch")
            result = CallbackResult.failure(
                provider,
                SocialAuthError.NONCE_INVALID,
                CallbackReason.SESSION_INVALID,
                **self._context(attempt),
            )
            await self._settle(attempt, result)
            return result, attempt

        # 4. 交换授权码
        exchange_auth = AuthContext(
            user_id=attempt.user_id,
            bearer=auth.bearer if auth else (settings.BACKEND_SERVICE_TOKEN or ""),
        )
        try:
            payload = await self.backend.exchange_code(
                exchange_auth, provider.value, params.code, attempt.nonce
            )
        except UpstreamError as exc:
            log.bind(user_id=attempt.user_id, detail=exc.message).warning(
                "Code exchange failed"
            )
            result = CallbackResult.failure(
                provider,
                SocialAuthError.EXCHANGE_FAILED,
                exc.message,
                **self._context(attempt),
            )
            await self._settle(attempt, result)
            return result, attempt

        result = await self._materialize(attempt, payload)
        await self._settle(attempt, result)
        return result, attempt

    # --------------------------------------------------------------------------
    # 内部步骤
    # --------------------------------------------------------------------------

    @staticmethod
    def _context(attempt: LinkAttempt | None) -> dict[str, Any]:
        if attempt is None:
            return {}
        return {"mode": attempt.mode, "return_path": attempt.return_path}

    async def _close(self, nonce: str | None, provider: Provider) -> LinkAttempt | None:
        """失败的回调同样消费 nonce，使该尝试不可再被使用"""
        attempt = await self.store.consume(nonce)
        if attempt is not None and attempt.provider != provider:
            return None
        return attempt

    async def _materialize(
        self, attempt: LinkAttempt, payload: ExchangePayload
    ) -> CallbackResult:
        """交换成功：写入 (或更新) SocialAccount，预填可绑定目标"""
        upstream = payload.social_account
        log = logger.bind(provider=attempt.provider.value, user_id=attempt.user_id)

        try:
            account, created = await self.account_repo.upsert(
                SocialAccountUpsert(
                    user_id=attempt.user_id,
                    provider=attempt.provider.value,
                    provider_account_id=upstream.provider_account_id,
                    backend_account_id=upstream.backend_id,
                    display_name=upstream.display_name,
                    extra_data=payload.account_snapshot or None,
                )
            )
            await self.account_repo.session.commit()
        except SQLAlchemyError as exc:
            await self.account_repo.session.rollback()
            log.opt(exception=exc).error("Linked account could not be saved")
            return CallbackResult.failure(
                attempt.provider,
                SocialAuthError.EXCHANGE_FAILED,
                CallbackReason.ACCOUNT_NOT_SAVED,
                **self._context(attempt),
            )

        # 预填快照失败不影响账号绑定结果，目标列表留待下次发现时拉取
        available: list[AvailableTarget] = []
        if payload.available_targets is not None:
            try:
                snapshot = await self.discovery.seed(
                    attempt.user_id, account, payload.available_targets
                )
            except (RedisError, SQLAlchemyError) as exc:
                log.opt(exception=exc).warning("Target snapshot could not be seeded")
            else:
                available = snapshot.targets

        log.bind(account_id=str(account.id), created=created).info("Social account linked")

        return CallbackResult(
            outcome=CallbackOutcome.SUCCESS,
            provider=attempt.provider,
            attempt_state=AttemptState.ACCOUNT_LINKED,
            mode=attempt.mode,
            return_path=attempt.return_path,
            social_account=SocialAccountRead.model_validate(account),
            available_targets=available,
        )

    async def _settle(self, attempt: LinkAttempt | None, result: CallbackResult) -> None:
        """
        把结果写回 (user, provider) 的进行中记录。
        记录已被新尝试替换、或已被 opener 取消时不覆盖。
        """
        if attempt is None:
            return

        record = await self.store.get_record(attempt.user_id, attempt.provider)
        if record is None or record.nonce != attempt.nonce:
            return

        machine = attempt_machine(record.attempt_state)
        if result.is_success:
            path = (AttemptState.CALLBACK_SUCCESS, AttemptState.ACCOUNT_LINKED)
        else:
            path = (AttemptState.CALLBACK_ERROR, AttemptState.FAILED)
        if not machine.can(path[0]):
            return
        machine.walk(*path)

        record.attempt_state = machine.state
        record.error_code = result.error_code
        record.reason = result.reason
        if result.social_account is not None:
            record.social_account_id = result.social_account.id
        await self.store.save_record(record)

