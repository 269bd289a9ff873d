"""
File: app/domains/social_auth/service.py
Description: 社交授权绑定领域服务 (业务编排层)

本模块是 Router 唯一依赖的入口，编排六个组件：
1. CorrelationStore      - nonce / 进行中记录 / 结果暂存
2. AuthorizationInitiator - 发起授权
3. CallbackReconciler    - 回调对账
4. CrossContextNotifier  - 回调结果投递 (桥接页 / 303)
5. TargetDiscovery       - 可绑定目标发现与搜索
6. SelectiveLinker       - 批量绑定 / 单个解绑

另外负责：
- opener 轮询授权状态时的超时取消 (弹窗被关闭不会有任何消息，只能由 opener 侧判定)
- 账号列表与账号解绑
- 所有资源按调用方 user_id 过滤，防止越权访问 (IDOR)

Author: jinmozhe
Created: 2026-03-02
"""

from uuid import UUID

from fastapi import Request
from fastapi.responses import HTMLResponse, RedirectResponse

from app.clients.backend import BackendClient
from app.core.config import settings
from app.core.exceptions import AppException, UpstreamError
from app.core.logging import logger
from app.core.security import AuthContext
from app.db.models.social_account import SocialAccount
from app.domains.social_auth.constants import (
    CallbackReason,
    LinkMode,
    LinkStatus,
    Provider,
    SocialAuthError,
)
from app.domains.social_auth.correlation import CorrelationStore
from app.domains.social_auth.discovery import TargetDiscovery, search_targets
from app.domains.social_auth.flow import AttemptState, attempt_machine
from app.domains.social_auth.initiator import AuthorizationInitiator
from app.domains.social_auth.linker import SelectiveLinker
from app.domains.social_auth.notifier import CrossContextNotifier
from app.domains.social_auth.reconciler import CallbackReconciler
from app.domains.social_auth.repository import (
    LinkedTargetRepository,
    SocialAccountRepository,
)
from app.domains.social_auth.schemas import (
    AccountUnlinked,
    AttemptRecord,
    AttemptStatus,
    BeginRequest,
    BeginResponse,
    CallbackParams,
    CallbackResult,
    LinkBatchResult,
    LinkedTargetRead,
    LinkRequest,
    SocialAccountRead,
    TargetList,
    UnlinkResult,
)


class SocialAuthService:
    """
    社交授权绑定领域服务。

    职责：
    - 编排授权绑定状态机的各个组件
    - 把上游 / 组件错误转换为领域 AppException
    - 提交 (Commit) 数据库事务
    """

    def __init__(
        self,
        account_repo: SocialAccountRepository,
        target_repo: LinkedTargetRepository,
        store: CorrelationStore,
        backend: BackendClient,
        notifier: CrossContextNotifier,
    ):
        self.account_repo = account_repo
        self.target_repo = target_repo
        self.store = store
        self.backend = backend
        self.notifier = notifier

        self.discovery = TargetDiscovery(backend, store.redis, target_repo)
        self.initiator = AuthorizationInitiator(store, backend)
        self.reconciler = CallbackReconciler(store, backend, account_repo, self.discovery)
        self.linker = SelectiveLinker(backend, self.discovery, target_repo)

    # --------------------------------------------------------------------------
    # 1. 授权流程
    # --------------------------------------------------------------------------

    async def begin(
        self, auth: AuthContext, provider: Provider, obj_in: BeginRequest
    ) -> BeginResponse:
        """发起授权 (同一用户同一平台的旧尝试会被替换)"""
        return await self.initiator.begin(auth, provider, obj_in.mode, obj_in.return_path)

    async def complete_callback(
        self,
        request: Request,
        provider: Provider,
        params: CallbackParams,
        user_hint: str | None = None,
    ) -> HTMLResponse | RedirectResponse:
        """
        浏览器跳转回调 (GET)：对账后按 mode 投递。
        能定位到发起用户时，把结果暂存一份，供 redirect 模式或失去 opener 的弹窗读取。
        """
        result, attempt = await self.reconciler.reconcile(
            provider, params, user_hint=user_hint
        )

        result_id: str | None = None
        if attempt is not None:
            result_id = await self.store.put_result(attempt.user_id, result)
            await self.store.attach_result(attempt, result_id)

        return self.notifier.deliver(request, result, result_id)

    async def reconcile_callback(
        self, auth: AuthContext, provider: Provider, params: CallbackParams
    ) -> CallbackResult:
        """前端转交回调参数 (POST)：直接返回对账结果"""
        result, _ = await self.reconciler.reconcile(provider, params, auth=auth)
        return result

    async def attempt_status(self, auth: AuthContext, provider: Provider) -> AttemptStatus:
        """
        opener 轮询授权状态。
        弹窗模式下等待超过 POPUP_TIMEOUT 仍无回调，视为用户关闭了弹窗 (Cancelled)；
        任意模式超过 nonce 有效期同样视为取消。
        """
        record = await self.store.get_record(auth.user_id, provider)
        if record is None:
            return AttemptStatus.idle(provider)

        if record.is_pending:
            age = record.age_seconds()
            if (
                record.mode == LinkMode.POPUP
                and age > settings.SOCIAL_AUTH_POPUP_TIMEOUT_SECONDS
            ):
                record = await self._cancel(record, CallbackReason.POPUP_TIMEOUT)
            elif age > self.store.nonce_ttl:
                record = await self._cancel(record, CallbackReason.EXPIRED)

        return AttemptStatus.from_record(record)

    async def cancel_attempt(self, auth: AuthContext, provider: Provider) -> AttemptStatus:
        """opener 检测到弹窗被用户关闭 (幂等：已结束的尝试原样返回)"""
        record = await self.store.get_record(auth.user_id, provider)
        if record is None:
            raise AppException(SocialAuthError.ATTEMPT_NOT_FOUND)

        if record.is_pending:
            record = await self._cancel(record, CallbackReason.POPUP_CLOSED)
        return AttemptStatus.from_record(record)

    async def _cancel(self, record: AttemptRecord, reason: str) -> AttemptRecord:
        machine = attempt_machine(record.attempt_state)
        machine.advance(AttemptState.CANCELLED)

        # nonce 作废后，迟到的回调会按会话无效处理，不会再产生账号
        await self.store.invalidate(record.nonce)
        record.attempt_state = machine.state
        record.error_code = SocialAuthError.CANCELLED.code
        record.reason = reason

        logger.bind(provider=record.provider.value, user_id=record.user_id, reason=reason).info(
            "Link attempt cancelled"
        )
        return await self.store.save_record(record)

    async def pop_result(self, auth: AuthContext, result_id: str) -> CallbackResult:
        """读取暂存的回调结果 (只能读取一次)"""
        result = await self.store.pop_result(result_id, auth.user_id)
        if result is None:
            raise AppException(SocialAuthError.RESULT_NOT_FOUND)
        return result

    # --------------------------------------------------------------------------
    # 2. 账号
    # --------------------------------------------------------------------------

    async def _get_account(self, auth: AuthContext, account_id: UUID) -> SocialAccount:
        account = await self.account_repo.get_owned(account_id, auth.user_id)
        if account is None:
            raise AppException(SocialAuthError.ACCOUNT_NOT_FOUND)
        return account

    async def list_accounts(self, auth: AuthContext) -> list[SocialAccountRead]:
        """当前用户的社交账号 (附带已绑定目标)"""
        accounts = await self.account_repo.list_by_user(auth.user_id)
        targets = await self.target_repo.list_by_user(auth.user_id)

        grouped: dict[UUID, list[LinkedTargetRead]] = {}
        for target in targets:
            grouped.setdefault(target.social_account_id, []).append(
                LinkedTargetRead.model_validate(target)
            )

        items = []
        for account in accounts:
            item = SocialAccountRead.model_validate(account)
            item.targets = grouped.get(account.id, [])
            items.append(item)
        return items

    async def unlink_account(self, auth: AuthContext, account_id: UUID) -> AccountUnlinked:
        """
        解绑账号：上游成功后删除本地账号及其全部已绑定目标，并清理目标快照。
        """
        account = await self._get_account(auth, account_id)

        try:
            await self.backend.unlink_account(
                auth, account.backend_account_id or account.provider_account_id
            )
        except UpstreamError as exc:
            logger.bind(provider=account.provider, account_id=str(account.id)).warning(
                "Account unlink failed"
            )
            raise AppException(SocialAuthError.UNLINK_FAILED, message=exc.message) from exc

        removed = await self.target_repo.delete_by_account(account.id)
        await self.account_repo.delete(account.id)
        await self.account_repo.session.commit()
        await self.discovery.invalidate(auth.user_id, account.id)

        logger.bind(
            provider=account.provider, account_id=str(account.id), removed_targets=removed
        ).info("Social account unlinked")
        return AccountUnlinked(account_id=account.id, removed_targets=removed)

    # --------------------------------------------------------------------------
    # 3. 目标发现 / 绑定
    # --------------------------------------------------------------------------

    async def list_targets(
        self,
        auth: AuthContext,
        account_id: UUID,
        q: str | None = None,
        refresh: bool = False,
    ) -> TargetList:
        """可绑定目标 (支持关键字搜索) + 已绑定目标"""
        account = await self._get_account(auth, account_id)
        snapshot = await self.discovery.discover(auth, account, refresh=refresh)
        linked = await self.target_repo.list_by_account(account.id)

        return TargetList(
            account_id=account.id,
            provider=snapshot.provider,
            targets_state=snapshot.targets_state,
            targets=search_targets(snapshot.targets, q),
            linked=[LinkedTargetRead.model_validate(t) for t in linked],
            q=q or None,
            total=len(snapshot.targets),
            fetched_at=snapshot.fetched_at,
        )

    async def link_targets(
        self, auth: AuthContext, account_id: UUID, obj_in: LinkRequest
    ) -> LinkBatchResult:
        """
        批量绑定。
        - select_all: 以当前快照 (按 q 过滤) 的全部目标为选择
        - 全部失败时抛出 LINK_TOTAL_FAILURE (携带逐项原因)
        - 部分失败由 Router 以 partial 信封返回
        """
        account = await self._get_account(auth, account_id)

        selected = list(obj_in.provider_target_ids)
        if obj_in.select_all:
            snapshot = await self.discovery.discover(auth, account)
            for target in search_targets(snapshot.targets, obj_in.q):
                if target.provider_target_id not in selected:
                    selected.append(target.provider_target_id)

        result = await self.linker.link(auth, account, selected, obj_in.workspace_id)

        if result.status == LinkStatus.FAILED:
            raise AppException(
                SocialAuthError.LINK_TOTAL_FAILURE,
                data=result.model_dump(mode="json"),
            )
        return result

    async def unlink_target(self, auth: AuthContext, linked_target_id: UUID) -> UnlinkResult:
        """
        解绑单个目标。
        成功后重新发现：只有上游仍然报告该目标时，它才回到可绑定列表。
        """
        target = await self.target_repo.get_owned(linked_target_id, auth.user_id)
        if target is None:
            raise AppException(SocialAuthError.TARGET_NOT_FOUND)

        account = await self._get_account(auth, target.social_account_id)
        provider_target_id = target.provider_target_id

        await self.linker.unlink(auth, target)

        available_again: bool | None
        try:
            snapshot = await self.discovery.discover(auth, account, refresh=True)
        except AppException as exc:
            # 解绑本身已成功，清掉旧快照，下次访问时重新拉取
            logger.bind(provider=account.provider, code=exc.code).warning(
                "Rediscovery after unlink failed"
            )
            await self.discovery.invalidate(auth.user_id, account.id)
            available_again = None
        else:
            available_again = provider_target_id in snapshot.ids()

        return UnlinkResult(
            linked_target_id=linked_target_id,
            provider_target_id=provider_target_id,
            available_again=available_again,
        )
