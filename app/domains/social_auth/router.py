"""
File: app/domains/social_auth/router.py
Description: 社交授权绑定领域 HTTP 路由层

职责：
1. 声明 API 契约 (授权发起 / 回调 / 状态轮询 / 账号 / 目标)
2. 浏览器回调 (GET callback) 无需 Bearer：身份来自 nonce 绑定的 LinkAttempt
3. 其余接口必须鉴权 (CurrentAuth)，资源一律按调用方过滤
4. 封装统一响应 (ResponseModel)；批量绑定部分失败使用 partial 信封

注意：
静态前缀路由 (/results, /accounts, /targets) 必须声明在 /{provider} 路由之前。

Author: jinmozhe
Created: 2026-03-02
"""

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Query, Request, Response, status
from fastapi.responses import HTMLResponse, RedirectResponse

from app.api.deps import CurrentAuth
from app.core.exceptions import AppException
from app.core.response import ResponseModel
from app.domains.social_auth.constants import (
    LinkMode,
    LinkStatus,
    SocialAuthError,
    SocialAuthMsg,
)
from app.domains.social_auth.dependencies import ProviderDep, SocialAuthServiceDep
from app.domains.social_auth.notifier import NO_STORE_HEADERS
from app.domains.social_auth.schemas import (
    AccountUnlinked,
    AttemptStatus,
    BeginRequest,
    BeginResponse,
    CallbackParams,
    CallbackResult,
    LinkBatchResult,
    LinkRequest,
    SocialAccountRead,
    TargetList,
    UnlinkResult,
)

router = APIRouter()


def _request_id(request: Request) -> str | None:
    return getattr(request.state, "request_id", None)


# ------------------------------------------------------------------------------
# Endpoints: Results (redirect 模式结果暂存)
# ------------------------------------------------------------------------------


@router.get(
    "/results/{result_id}",
    summary="读取授权回调结果",
    description="redirect 模式回跳后读取本次授权结果。结果只能读取一次，且仅限发起用户。",
    response_model=ResponseModel[CallbackResult],
)
async def read_result(
    request: Request,
    result_id: str,
    auth: CurrentAuth,
    service: SocialAuthServiceDep,
) -> ResponseModel[CallbackResult]:
    data = await service.pop_result(auth, result_id)
    return ResponseModel.success(data=data, request_id=_request_id(request))


# ------------------------------------------------------------------------------
# Endpoints: Accounts (社交账号)
# ------------------------------------------------------------------------------


@router.get(
    "/accounts",
    summary="已绑定的社交账号",
    description="返回当前用户的社交账号，以及每个账号下已绑定的目标。",
    response_model=ResponseModel[list[SocialAccountRead]],
)
async def list_accounts(
    request: Request,
    auth: CurrentAuth,
    service: SocialAuthServiceDep,
) -> ResponseModel[list[SocialAccountRead]]:
    data = await service.list_accounts(auth)
    return ResponseModel.success(data=data, request_id=_request_id(request))


@router.delete(
    "/accounts/{account_id}",
    summary="解绑社交账号",
    description="上游解绑成功后，删除本地账号及其全部已绑定目标。",
    response_model=ResponseModel[AccountUnlinked],
)
async def unlink_account(
    request: Request,
    account_id: UUID,
    auth: CurrentAuth,
    service: SocialAuthServiceDep,
) -> ResponseModel[AccountUnlinked]:
    data = await service.unlink_account(auth, account_id)
    return ResponseModel.success(
        data=data,
        message=SocialAuthMsg.ACCOUNT_UNLINKED,
        request_id=_request_id(request),
    )


@router.get(
    "/accounts/{account_id}/targets",
    summary="可绑定目标",
    description="拉取账号可管理的 Pages / Channels (已绑定的不会出现)。q 按名称或分类过滤。",
    response_model=ResponseModel[TargetList],
)
async def list_targets(
    request: Request,
    account_id: UUID,
    auth: CurrentAuth,
    service: SocialAuthServiceDep,
    q: Annotated[str | None, Query(max_length=100, description="搜索关键字")] = None,
    refresh: Annotated[bool, Query(description="忽略缓存快照，重新拉取")] = False,
) -> ResponseModel[TargetList]:
    data = await service.list_targets(auth, account_id, q=q, refresh=refresh)
    return ResponseModel.success(
        data=data,
        message=SocialAuthMsg.TARGETS_LOADED,
        request_id=_request_id(request),
    )


@router.post(
    "/accounts/{account_id}/targets/link",
    summary="批量绑定目标",
    description=(
        "一次提交选中的目标。全部成功返回 success；部分失败返回 HTTP 200 + "
        "social_auth.link_partial_failure；全部失败返回 502 social_auth.link_total_failure。"
    ),
    response_model=ResponseModel[LinkBatchResult],
)
async def link_targets(
    request: Request,
    account_id: UUID,
    obj_in: LinkRequest,
    auth: CurrentAuth,
    service: SocialAuthServiceDep,
) -> ResponseModel[LinkBatchResult]:
    data = await service.link_targets(auth, account_id, obj_in)

    if data.status == LinkStatus.PARTIAL:
        return ResponseModel.partial(
            code=SocialAuthError.LINK_PARTIAL_FAILURE.code,
            message=SocialAuthError.LINK_PARTIAL_FAILURE.msg,
            data=data,
            request_id=_request_id(request),
        )
    return ResponseModel.success(
        data=data,
        message=SocialAuthMsg.TARGETS_LINKED,
        request_id=_request_id(request),
    )


# ------------------------------------------------------------------------------
# Endpoints: Targets (已绑定目标)
# ------------------------------------------------------------------------------


@router.delete(
    "/targets/{linked_target_id}",
    summary="解绑目标",
    description="解绑后重新发现；available_again 表示该目标是否回到可绑定列表。",
    response_model=ResponseModel[UnlinkResult],
)
async def unlink_target(
    request: Request,
    linked_target_id: UUID,
    auth: CurrentAuth,
    service: SocialAuthServiceDep,
) -> ResponseModel[UnlinkResult]:
    data = await service.unlink_target(auth, linked_target_id)
    return ResponseModel.success(
        data=data,
        message=SocialAuthMsg.TARGET_UNLINKED,
        request_id=_request_id(request),
    )


# ------------------------------------------------------------------------------
# Endpoints: Authorization Flow (按平台)
# ------------------------------------------------------------------------------


@router.post(
    "/{provider}/begin",
    summary="发起授权",
    description=(
        "生成本次授权的 nonce 并返回三方授权地址。同一平台旧的进行中授权会被替换。"
        "redirect 模式下 navigate=true 时直接 303 跳转到授权地址。"
    ),
    response_model=ResponseModel[BeginResponse],
)
async def begin_authorization(
    request: Request,
    provider: ProviderDep,
    auth: CurrentAuth,
    service: SocialAuthServiceDep,
    obj_in: BeginRequest | None = None,
    navigate: Annotated[bool, Query(description="redirect 模式直接跳转")] = False,
) -> ResponseModel[BeginResponse] | RedirectResponse:
    data = await service.begin(auth, provider, obj_in or BeginRequest())

    if navigate and data.mode == LinkMode.REDIRECT:
        return RedirectResponse(
            data.auth_url,
            status_code=status.HTTP_303_SEE_OTHER,
            headers=NO_STORE_HEADERS,
        )

    return ResponseModel.success(
        data=data,
        message=SocialAuthMsg.AUTH_URL_ISSUED,
        request_id=_request_id(request),
    )


@router.get(
    "/{provider}/callback",
    summary="授权回调 (浏览器落地)",
    description=(
        "三方平台授权完成后的落地地址。popup 模式渲染桥接页 (postMessage 回 opener)，"
        "redirect 模式 303 跳回前端页面。无需 Bearer，身份由 state 绑定。"
    ),
    response_class=HTMLResponse,
)
async def callback_landing(
    request: Request,
    provider: ProviderDep,
    service: SocialAuthServiceDep,
    code: str | None = None,
    state: str | None = None,
    error: str | None = None,
    error_description: str | None = None,
    user_id: Annotated[str | None, Query(alias="userId")] = None,
) -> Response:
    params = CallbackParams(
        code=code, state=state, error=error, error_description=error_description
    )
    return await service.complete_callback(request, provider, params, user_hint=user_id)


@router.post(
    "/{provider}/callback",
    summary="授权回调 (前端转交)",
    description="前端将回调参数 {code, state, error} 以 JSON 转交，直接返回对账结果。",
    response_model=ResponseModel[CallbackResult],
)
async def callback_relay(
    request: Request,
    provider: ProviderDep,
    params: CallbackParams,
    auth: CurrentAuth,
    service: SocialAuthServiceDep,
) -> ResponseModel[CallbackResult]:
    result = await service.reconcile_callback(auth, provider, params)

    if not result.is_success:
        raise AppException(
            SocialAuthError.from_code(result.error_code),
            message=result.reason or "",
            data=result.model_dump(mode="json"),
        )
    return ResponseModel.success(
        data=result,
        message=SocialAuthMsg.ACCOUNT_LINKED,
        request_id=_request_id(request),
    )


@router.get(
    "/{provider}/attempt",
    summary="授权状态",
    description="opener 轮询本平台最近一次授权的状态。弹窗等待超时会被记录为 Cancelled。",
    response_model=ResponseModel[AttemptStatus],
)
async def read_attempt(
    request: Request,
    provider: ProviderDep,
    auth: CurrentAuth,
    service: SocialAuthServiceDep,
) -> ResponseModel[AttemptStatus]:
    data = await service.attempt_status(auth, provider)
    return ResponseModel.success(data=data, request_id=_request_id(request))


@router.post(
    "/{provider}/attempt/cancel",
    summary="取消授权",
    description="opener 检测到弹窗被关闭时调用。nonce 立即作废，迟到的回调按会话无效处理。",
    response_model=ResponseModel[AttemptStatus],
)
async def cancel_attempt(
    request: Request,
    provider: ProviderDep,
    auth: CurrentAuth,
    service: SocialAuthServiceDep,
) -> ResponseModel[AttemptStatus]:
    data = await service.cancel_attempt(auth, provider)
    return ResponseModel.success(
        data=data,
        message=SocialAuthMsg.ATTEMPT_CANCELLED,
        request_id=_request_id(request),
    )
