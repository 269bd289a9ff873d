"""
File: app/domains/social_auth/linker.py
Description: 选择性绑定 (Selective Linker)

本模块负责：
1. 提交用户选中的目标 (一次批量请求)，空选择在发请求前直接拒绝
2. 将上游返回归并为 LinkBatchResult (逐项成功 / 逐项失败 / 未返回)
3. 成功的目标写入本地 LinkedTarget，并从可绑定快照中移出 (无需重新拉取)；
   本地写入失败时回滚并标记 persisted=False，快照仍按上游结果更新
4. 单个目标解绑

上游返回形态 (按优先级识别)：
- {"succeeded": [...], "failed": {id: reason} | [{providerTargetId, reason}]}  逐项结果
- {"results": [{providerTargetId, success, message}]}                       逐项结果
- {"targets": [SocialTargetDto]}                                             仅返回已绑定的目标
- 其他 (仅 success=true)                                                     粗粒度，统一视为成功

粗粒度结果会标记 coarse=True，不猜测单个目标的真实结果。

Author: jinmozhe
Created: 2026-03-02
"""

from typing import Any

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from app.clients.backend import BackendClient, UpstreamTarget
from app.core.exceptions import AppException, UpstreamError
from app.core.logging import logger
from app.core.security import AuthContext
from app.db.models.linked_target import LinkedTarget
from app.db.models.social_account import SocialAccount
from app.domains.social_auth.constants import LinkStatus, SocialAuthError
from app.domains.social_auth.discovery import TargetDiscovery
from app.domains.social_auth.flow import TargetsState, targets_machine
from app.domains.social_auth.repository import LinkedTargetRepository, LinkedTargetUpsert
from app.domains.social_auth.schemas import (
    AvailableTarget,
    LinkBatchResult,
    LinkedTargetRead,
)

DEFAULT_FAILURE_REASON = "link failed"

# ------------------------------------------------------------------------------
# 上游结果解析
# ------------------------------------------------------------------------------


def _target_id(item: Any) -> str | None:
    if isinstance(item, str | int):
        return str(item)
    if isinstance(item, dict):
        value = item.get("providerTargetId") or item.get("provider_target_id")
        return str(value) if value else None
    return None


def _reason(item: Any) -> str:
    if isinstance(item, dict):
        for key in ("reason", "message", "error"):
            if item.get(key):
                return str(item[key])
    if isinstance(item, str) and item:
        return item
    return DEFAULT_FAILURE_REASON


def _parse_failed(raw: Any) -> dict[str, str]:
    if isinstance(raw, dict):
        return {str(k): _reason(v) for k, v in raw.items()}
    failed: dict[str, str] = {}
    if isinstance(raw, list):
        for item in raw:
            target_id = _target_id(item)
            if target_id:
                failed[target_id] = _reason(item) if isinstance(item, dict) else DEFAULT_FAILURE_REASON
    return failed


def _parse_targets(raw: Any) -> dict[str, UpstreamTarget]:
    targets: dict[str, UpstreamTarget] = {}
    for item in raw if isinstance(raw, list) else []:
        try:
            target = UpstreamTarget.model_validate(item)
        except ValidationError:
            continue
        targets[target.provider_target_id] = target
    return targets


def interpret_link_response(
    submitted: list[str], data: Any
) -> tuple[LinkBatchResult, dict[str, UpstreamTarget]]:
    """
    将上游 link-selected 的 data 归并为 LinkBatchResult。
    同时返回上游带回的目标详情 (含后端 ID)，供落库使用。
    """
    if isinstance(data, dict):
        if "succeeded" in data or "failed" in data:
            reported_ok = [i for i in map(_target_id, data.get("succeeded") or []) if i]
            result = LinkBatchResult.settle(
                submitted, reported_ok, _parse_failed(data.get("failed"))
            )
            return result, _parse_targets(data.get("targets"))

        if isinstance(data.get("results"), list):
            succeeded: list[str] = []
            failed: dict[str, str] = {}
            for item in data["results"]:
                target_id = _target_id(item)
                if not target_id:
                    continue
                if isinstance(item, dict) and item.get("success"):
                    succeeded.append(target_id)
                else:
                    failed[target_id] = _reason(item)
            return LinkBatchResult.settle(submitted, succeeded, failed), {}

        if isinstance(data.get("targets"), list):
            targets = _parse_targets(data["targets"])
            return LinkBatchResult.settle(submitted, list(targets), {}), targets

    if data is False:
        return LinkBatchResult.uniform(submitted, ok=False), {}

    return LinkBatchResult.uniform(submitted, ok=True), {}


# ------------------------------------------------------------------------------
# Selective Linker
# ------------------------------------------------------------------------------


class SelectiveLinker:
    """
    选择性绑定组件。
    """

    def __init__(
        self,
        backend: BackendClient,
        discovery: TargetDiscovery,
        target_repo: LinkedTargetRepository,
    ):
        self.backend = backend
        self.discovery = discovery
        self.target_repo = target_repo

    async def link(
        self,
        auth: AuthContext,
        account: SocialAccount,
        provider_target_ids: list[str],
        workspace_id: str | None = None,
    ) -> LinkBatchResult:
        """
        批量绑定。空选择直接抛出 EMPTY_SELECTION，不发起任何网络请求。
        """
        if not provider_target_ids:
            raise AppException(SocialAuthError.EMPTY_SELECTION)

        snapshot = await self.discovery.snapshot(auth.user_id, account.id)
        machine = targets_machine(
            snapshot.targets_state if snapshot else TargetsState.TARGETS_LOADED
        )
        machine.walk(TargetsState.SELECTING, TargetsState.LINK_SUBMITTED)

        log = logger.bind(
            provider=account.provider,
            account_id=str(account.id),
            submitted=len(provider_target_ids),
        )

        try:
            data = await self.backend.link_selected(
                auth, account.provider, provider_target_ids, workspace_id
            )
        except UpstreamError as exc:
            log.bind(detail=exc.message).warning("Batch link rejected by upstream")
            result = LinkBatchResult.uniform(
                provider_target_ids, ok=False, reason=exc.message
            )
            upstream_targets: dict[str, UpstreamTarget] = {}
        else:
            result, upstream_targets = interpret_link_response(provider_target_ids, data)

        # 成功的目标落库并从快照中移出
        # 上游已生效，本地落库失败时只回滚本地投影，快照仍按上游结果更新
        account_id = account.id
        known = {t.provider_target_id: t for t in snapshot.targets} if snapshot else {}
        linked: list[LinkedTarget] = []
        if result.succeeded:
            try:
                for target_id in result.succeeded:
                    linked.append(
                        await self.target_repo.upsert(
                            self._build_upsert(
                                auth,
                                account,
                                target_id,
                                known.get(target_id),
                                upstream_targets.get(target_id),
                                workspace_id,
                            )
                        )
                    )
                await self.target_repo.session.commit()
            except SQLAlchemyError as exc:
                await self.target_repo.session.rollback()
                log.opt(exception=exc).error("Linked targets could not be saved")
                linked = []
                result.persisted = False
            await self.discovery.mark_linked(auth.user_id, account_id, result.succeeded)

        machine.advance(
            TargetsState.LINK_FAILED
            if result.status == LinkStatus.FAILED
            else TargetsState.LINK_SETTLED
        )
        # 无论结果如何都回到可重试的 TargetsLoaded
        machine.advance(TargetsState.TARGETS_LOADED)

        result.linked = [LinkedTargetRead.model_validate(t) for t in linked]

        log.bind(
            status=result.status.value,
            succeeded=len(result.succeeded),
            failed=len(result.failed),
            unreported=len(result.unreported),
            coarse=result.coarse,
        ).info("Batch link settled")
        return result

    @staticmethod
    def _build_upsert(
        auth: AuthContext,
        account: SocialAccount,
        target_id: str,
        known: AvailableTarget | None,
        upstream: UpstreamTarget | None,
        workspace_id: str | None,
    ) -> LinkedTargetUpsert:
        source = known or upstream
        return LinkedTargetUpsert(
            social_account_id=account.id,
            user_id=auth.user_id,
            provider=account.provider,
            provider_target_id=target_id,
            backend_target_id=upstream.backend_id if upstream else None,
            name=(source.name if source and source.name else target_id),
            type=source.type if source else "page",
            category=source.category if source else None,
            profile_picture_url=source.profile_picture_url if source else None,
            workspace_id=workspace_id,
        )

    async def unlink(self, auth: AuthContext, target: LinkedTarget) -> None:
        """
        解绑单个目标 (上游成功后才删除本地记录)。
        是否重新出现在可绑定列表中，由调用方重新发现后决定。
        """
        log = logger.bind(provider=target.provider, linked_target_id=str(target.id))
        try:
            await self.backend.unlink_target(
                auth, target.backend_target_id or target.provider_target_id
            )
        except UpstreamError as exc:
            log.bind(detail=exc.message).warning("Target unlink failed")
            raise AppException(SocialAuthError.UNLINK_FAILED, message=exc.message) from exc

        await self.target_repo.delete(target.id)
        await self.target_repo.session.commit()
        log.info("Target unlinked")
