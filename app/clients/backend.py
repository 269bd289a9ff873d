"""
File: app/clients/backend.py
Description: 上游后端 (Backend REST API) 网关

本模块负责：
1. 维护全局共享的 httpx.AsyncClient (连接池复用，lifespan 关闭)
2. 封装社交授权相关的上游接口 (授权链接 / 授权码交换 / 目标列表 / 批量绑定 / 解绑)
3. 解析上游统一信封 {success, data, message}
4. 将网络错误、超时、非 2xx、success=false、响应体格式不符统一转换为 UpstreamError

约定：
- 每次调用显式传入 AuthContext，不读取任何全局用户状态
- 不做自动重试 (授权码在三方平台侧是一次性的)
- 上游字段为 camelCase，在本模块内转换为本服务的 snake_case 结构

Author: jinmozhe
Created: 2026-03-02
"""

from collections.abc import AsyncGenerator
from typing import Any, TypeVar

import httpx
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError

from app.core.config import settings
from app.core.exceptions import UpstreamError
from app.core.logging import logger
from app.core.security import AuthContext
from app.utils.masking import QUERY_SENSITIVE_KEYS, mask_sensitive_data

M = TypeVar("M", bound=BaseModel)

# ------------------------------------------------------------------------------
# 1. 上游数据结构 (仅用于解析，不直接对外输出)
# ------------------------------------------------------------------------------


class UpstreamModel(BaseModel):
    """上游 DTO 基类：忽略未知字段，兼容 camelCase / snake_case"""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class UpstreamTarget(UpstreamModel):
    """上游返回的目标 (Page / Channel)"""

    provider_target_id: str = Field(
        validation_alias=AliasChoices("providerTargetId", "provider_target_id")
    )
    name: str = ""
    type: str = "page"
    category: str | None = None
    profile_picture_url: str | None = Field(
        default=None,
        validation_alias=AliasChoices("profilePictureUrl", "profile_picture_url"),
    )
    # 已绑定目标才有后端 ID
    backend_id: str | None = Field(default=None, validation_alias="id")


class UpstreamAccount(UpstreamModel):
    """上游返回的社交账号"""

    backend_id: str | None = Field(default=None, validation_alias="id")
    provider: str | None = None
    provider_account_id: str = Field(
        validation_alias=AliasChoices(
            "providerAccountId", "providerUserId", "provider_account_id"
        )
    )
    display_name: str | None = Field(
        default=None,
        validation_alias=AliasChoices("displayName", "accountName", "name"),
    )


class AuthUrlPayload(UpstreamModel):
    """GET /social-auth/{provider} 的 data"""

    auth_url: str = Field(validation_alias=AliasChoices("authUrl", "auth_url"))
    # 后端自行生成 state 时会一并返回
    state: str | None = None


class ExchangePayload(UpstreamModel):
    """授权码交换成功后的 data"""

    social_account: UpstreamAccount = Field(
        validation_alias=AliasChoices("socialAccount", "social_account")
    )
    # 部分后端在交换时直接附带可绑定目标
    available_targets: list[UpstreamTarget] | None = Field(
        default=None,
        validation_alias=AliasChoices("availableTargets", "available_targets"),
    )
    # 上游账号原始快照 (已脱敏)，落库到 extra_data
    account_snapshot: dict[str, Any] = Field(default_factory=dict, exclude=True)


# ------------------------------------------------------------------------------
# 2. 网关客户端
# ------------------------------------------------------------------------------


class BackendClient:
    """
    上游后端网关。

    用法:
        client = BackendClient(http)
        payload = await client.get_auth_url(auth, "facebook", state=nonce)
    """

    def __init__(self, http: httpx.AsyncClient):
        self.http = http

    async def _request(
        self,
        method: str,
        path: str,
        auth: AuthContext,
        *,
        params: dict[str, Any] | None = None,
        json: Any = None,
    ) -> Any:
        """
        发送请求并解包上游信封，返回 data 字段。
        """
        headers: dict[str, str] = {"X-User-ID": auth.user_id}
        if auth.bearer:
            headers["Authorization"] = auth.authorization

        log = logger.bind(
            upstream_method=method,
            upstream_path=path,
            params=mask_sensitive_data(params or {}, QUERY_SENSITIVE_KEYS),
        )

        try:
            response = await self.http.request(
                method, path, params=params, json=json, headers=headers
            )
        except httpx.HTTPError as exc:
            log.bind(detail=str(exc)).warning("Upstream request failed")
            raise UpstreamError(f"Backend unreachable: {exc.__class__.__name__}") from exc

        try:
            body = response.json() if response.content else None
        except ValueError:
            body = None

        if response.is_error:
            message = _extract_message(body) or response.reason_phrase
            log.bind(upstream_status=response.status_code, detail=message).warning(
                "Upstream returned error status"
            )
            raise UpstreamError(message, status_code=response.status_code)

        # 兼容未包信封的响应：整体视为 data
        if not isinstance(body, dict) or "success" not in body:
            return body

        if not body.get("success"):
            message = _extract_message(body) or "Backend reported failure"
            log.bind(upstream_status=response.status_code, detail=message).warning(
                "Upstream reported success=false"
            )
            raise UpstreamError(message, status_code=response.status_code)

        log.bind(upstream_status=response.status_code).debug("Upstream call succeeded")
        return body.get("data")

    # --------------------------------------------------------------------------
    # 授权流程
    # --------------------------------------------------------------------------

    async def get_auth_url(
        self, auth: AuthContext, provider: str, state: str
    ) -> AuthUrlPayload:
        """GET /social-auth/{provider} -> {authUrl, state?}"""
        data = await self._request(
            "GET", f"/social-auth/{provider}", auth, params={"state": state}
        )
        return _parse(AuthUrlPayload, data, "authorization url")

    async def exchange_code(
        self, auth: AuthContext, provider: str, code: str, state: str
    ) -> ExchangePayload:
        """
        GET /social-auth/{provider}/callback?code&state&userId

        userId 取自 AuthContext (即发起授权时绑定的用户)，而非回调地址中的参数。
        """
        data = await self._request(
            "GET",
            f"/social-auth/{provider}/callback",
            auth,
            params={"code": code, "state": state, "userId": auth.user_id},
        )
        payload = _parse(ExchangePayload, data, "code exchange")
        raw_account = data.get("socialAccount") if isinstance(data, dict) else None
        if isinstance(raw_account, dict):
            payload.account_snapshot = mask_sensitive_data(raw_account)
        return payload

    # --------------------------------------------------------------------------
    # 目标发现与绑定
    # --------------------------------------------------------------------------

    async def list_targets(
        self, auth: AuthContext, provider: str, account_id: str
    ) -> list[UpstreamTarget]:
        """GET /social-auth/{provider}/targets -> {targets: [...]}"""
        data = await self._request(
            "GET",
            f"/social-auth/{provider}/targets",
            auth,
            params={"socialAccountId": account_id},
        )
        raw_targets = data.get("targets") if isinstance(data, dict) else data
        if raw_targets is None:
            return []
        if not isinstance(raw_targets, list):
            raise UpstreamError("Malformed targets payload")

        try:
            return [UpstreamTarget.model_validate(item) for item in raw_targets]
        except ValidationError as exc:
            raise UpstreamError("Malformed targets payload") from exc

    async def link_selected(
        self,
        auth: AuthContext,
        provider: str,
        provider_target_ids: list[str],
        workspace_id: str | None = None,
    ) -> Any:
        """
        POST /social-auth/link-selected

        返回原始 data，由 Selective Linker 判断是逐项结果还是粗粒度布尔值。
        """
        body: dict[str, Any] = {
            "userId": auth.user_id,
            "provider": provider,
            "providerTargetIds": provider_target_ids,
        }
        if workspace_id:
            body["brandId"] = workspace_id

        return await self._request("POST", "/social-auth/link-selected", auth, json=body)

    async def unlink_account(self, auth: AuthContext, account_id: str) -> None:
        """DELETE /social-auth/{userId}/accounts/{socialAccountId}"""
        await self._request(
            "DELETE", f"/social-auth/{auth.user_id}/accounts/{account_id}", auth
        )

    async def unlink_target(self, auth: AuthContext, target_id: str) -> None:
        """DELETE /social-auth/{userId}/targets/{linkedTargetId}"""
        await self._request(
            "DELETE", f"/social-auth/{auth.user_id}/targets/{target_id}", auth
        )


# ------------------------------------------------------------------------------
# 3. 辅助函数
# ------------------------------------------------------------------------------


def _extract_message(body: Any) -> str | None:
    if isinstance(body, dict):
        message = body.get("message") or body.get("error")
        if message:
            return str(message)
    return None


def _parse(model: type[M], data: Any, what: str) -> M:
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        raise UpstreamError(f"Malformed {what} payload") from exc


# ------------------------------------------------------------------------------
# 4. 全局客户端生命周期
# ------------------------------------------------------------------------------

_http_client: httpx.AsyncClient | None = None


def get_http_client() -> httpx.AsyncClient:
    """获取 (必要时创建) 全局共享的 httpx.AsyncClient"""
    global _http_client
    if _http_client is None:
        _http_client = httpx.AsyncClient(
            base_url=settings.BACKEND_API_BASE_URL,
            timeout=settings.BACKEND_TIMEOUT_SECONDS,
            headers={"Accept": "application/json"},
        )
    return _http_client


async def get_backend_client() -> AsyncGenerator[BackendClient, None]:
    """
    上游网关依赖。
    测试中 override 此依赖，注入基于 httpx.MockTransport 的客户端。
    """
    yield BackendClient(get_http_client())


async def close_backend_client() -> None:
    """
    关闭全局 httpx 客户端。
    应在 FastAPI 应用的 lifespan shutdown 事件中调用。
    """
    global _http_client
    if _http_client is not None:
        await _http_client.aclose()
        _http_client = None
