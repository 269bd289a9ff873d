"""
File: app/domains/social_auth/schemas.py
Description: 社交授权绑定领域 Pydantic 模型 (Schema)

本模块定义了授权绑定流程的输入/输出数据结构：
1. 内部状态: LinkAttempt (nonce 绑定的授权尝试)、AttemptRecord (每用户每平台的进行中记录)、TargetSnapshot
2. 输入模型: BeginRequest、CallbackParams、LinkRequest
3. 输出模型: BeginResponse、CallbackResult、AttemptStatus、SocialAccountRead、
   LinkedTargetRead、AvailableTarget、TargetList、LinkBatchResult、UnlinkResult

规范：
- 严格遵循 Pydantic V2 写法 (ConfigDict)
- 响应模型开启 from_attributes=True 以支持 ORM 转换
- 授权码与 nonce 不出现在任何响应中

Author: jinmozhe
Created: 2026-03-02
"""

from datetime import UTC, datetime, timedelta
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from app.domains.social_auth.constants import (
    CallbackOutcome,
    LinkMode,
    LinkStatus,
    Provider,
    SocialAuthError,
)
from app.domains.social_auth.flow import AttemptState, TargetsState


def utc_now() -> datetime:
    return datetime.now(UTC)


# ------------------------------------------------------------------------------
# Internal State (内部状态，存放于 Redis)
# ------------------------------------------------------------------------------


class LinkAttempt(BaseModel):
    """
    一次进行中的授权尝试。
    以 nonce 为 Key 存放，被匹配的回调消费且仅消费一次。
    """

    provider: Provider
    nonce: str
    mode: LinkMode
    user_id: str = Field(..., description="发起授权时绑定的用户 (权威身份)")
    return_path: str | None = None
    created_at: datetime = Field(default_factory=utc_now)

    def expires_at(self, ttl_seconds: int) -> datetime:
        return self.created_at + timedelta(seconds=ttl_seconds)

    def is_expired(self, ttl_seconds: int, now: datetime | None = None) -> bool:
        return (now or utc_now()) >= self.expires_at(ttl_seconds)


class AttemptRecord(BaseModel):
    """
    每个 (user, provider) 至多一条的进行中记录。
    用于替换旧尝试、opener 轮询状态与取消。
    """

    provider: Provider
    user_id: str
    nonce: str
    mode: LinkMode
    return_path: str | None = None
    attempt_state: AttemptState
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    error_code: str | None = None
    reason: str | None = None
    result_id: str | None = None
    social_account_id: UUID | None = None

    @property
    def is_pending(self) -> bool:
        return self.attempt_state == AttemptState.CALLBACK_PENDING

    def age_seconds(self, now: datetime | None = None) -> float:
        return ((now or utc_now()) - self.created_at).total_seconds()


# ------------------------------------------------------------------------------
# Targets (目标)
# ------------------------------------------------------------------------------


class AvailableTarget(BaseModel):
    """
    可绑定目标 (尚未挂到工作区)。
    瞬态数据：每次访问由 Target Discovery 重新计算，不落库。
    """

    provider_target_id: str = Field(..., description="三方目标ID (Page ID 等)")
    name: str = Field(..., description="目标名称")
    type: str = Field(default="page", description="目标类型 (page/channel/...)")
    category: str | None = Field(default=None, description="分类")
    profile_picture_url: str | None = Field(default=None, description="头像URL")

    def matches(self, q: str) -> bool:
        """名称或分类包含关键字 (大小写不敏感)"""
        needle = q.casefold()
        return needle in self.name.casefold() or (
            self.category is not None and needle in self.category.casefold()
        )


class LinkedTargetRead(BaseModel):
    """已绑定目标 (响应)"""

    id: UUID = Field(..., description="本地绑定记录 ID")
    social_account_id: UUID
    provider: str
    provider_target_id: str
    name: str
    type: str
    category: str | None = None
    profile_picture_url: str | None = None
    workspace_id: str | None = None

    model_config = ConfigDict(from_attributes=True)


class TargetSnapshot(BaseModel):
    """某账号的可绑定目标快照 (Redis 缓存)"""

    account_id: UUID
    provider: Provider
    targets_state: TargetsState
    targets: list[AvailableTarget] = Field(default_factory=list)
    fetched_at: datetime = Field(default_factory=utc_now)

    def ids(self) -> set[str]:
        return {t.provider_target_id for t in self.targets}


class TargetList(BaseModel):
    """Target Discovery 响应"""

    account_id: UUID
    provider: Provider
    targets_state: TargetsState
    targets: list[AvailableTarget] = Field(default_factory=list)
    linked: list[LinkedTargetRead] = Field(default_factory=list)
    q: str | None = Field(default=None, description="本次使用的搜索关键字")
    total: int = Field(..., description="过滤前的可绑定目标总数")
    fetched_at: datetime


# ------------------------------------------------------------------------------
# Accounts (社交账号)
# ------------------------------------------------------------------------------


class SocialAccountRead(BaseModel):
    """社交账号 (响应)"""

    id: UUID = Field(..., description="本地账号 ID")
    provider: str
    provider_account_id: str
    display_name: str | None = None
    linked_at: datetime
    targets: list[LinkedTargetRead] = Field(default_factory=list)

    model_config = ConfigDict(from_attributes=True)


class AccountUnlinked(BaseModel):
    account_id: UUID
    removed_targets: int


# ------------------------------------------------------------------------------
# Input Schemas (输入模型)
# ------------------------------------------------------------------------------


class BeginRequest(BaseModel):
    """发起授权请求参数"""

    mode: LinkMode = Field(default=LinkMode.POPUP, description="授权模式")
    return_path: str | None = Field(
        default=None,
        max_length=512,
        description="redirect 模式完成后的站内落地路径 (以 / 开头)",
        examples=["/social-accounts"],
    )

    @field_validator("return_path")
    @classmethod
    def validate_return_path(cls, v: str | None) -> str | None:
        """只允许站内相对路径，防止开放重定向"""
        if v is None:
            return None
        if not v.startswith("/") or v.startswith("//") or "\\" in v:
            raise ValueError("return_path 必须是以 / 开头的站内路径")
        return v


class CallbackParams(BaseModel):
    """
    三方平台回调参数。
    GET 回调从 query 解析；POST 回调由前端原样转交。
    """

    code: str | None = Field(default=None, description="授权码")
    state: str | None = Field(default=None, description="关联令牌 (nonce)")
    error: str | None = Field(default=None, description="平台错误码")
    error_description: str | None = Field(default=None, description="平台错误描述")


class LinkRequest(BaseModel):
    """批量绑定目标请求参数"""

    provider_target_ids: list[str] = Field(
        default_factory=list, max_length=500, description="选中的三方目标ID"
    )
    select_all: bool = Field(
        default=False, description="全选当前快照中 (按 q 过滤后) 的全部目标"
    )
    q: str | None = Field(default=None, max_length=100, description="全选时的搜索关键字")
    workspace_id: str | None = Field(
        default=None, max_length=64, description="目标归属的工作区 (品牌/团队)"
    )

    @field_validator("provider_target_ids")
    @classmethod
    def dedupe_ids(cls, v: list[str]) -> list[str]:
        """去空、去重，保持提交顺序"""
        seen: dict[str, None] = {}
        for item in v:
            value = item.strip()
            if value:
                seen.setdefault(value, None)
        return list(seen)


# ------------------------------------------------------------------------------
# Output Schemas (输出/响应模型)
# ------------------------------------------------------------------------------


class BeginResponse(BaseModel):
    provider: Provider
    mode: LinkMode
    auth_url: str = Field(..., description="三方平台授权地址")
    attempt_state: AttemptState
    expires_at: datetime = Field(..., description="本次授权会话过期时间 (UTC)")


class AttemptStatus(BaseModel):
    """opener 轮询的授权状态 (不包含 nonce)"""

    provider: Provider
    attempt_state: AttemptState
    mode: LinkMode | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    error_code: str | None = None
    reason: str | None = None
    result_id: str | None = None
    social_account_id: UUID | None = None

    @classmethod
    def from_record(cls, record: AttemptRecord) -> "AttemptStatus":
        return cls.model_validate(record.model_dump(exclude={"nonce", "user_id"}))

    @classmethod
    def idle(cls, provider: Provider) -> "AttemptStatus":
        return cls(provider=provider, attempt_state=AttemptState.IDLE)


class CallbackResult(BaseModel):
    """
    回调对账结果。
    成功时携带新绑定的账号 (以及上游顺带返回的可绑定目标)，失败时携带错误码与原因。
    """

    outcome: CallbackOutcome
    provider: Provider
    attempt_state: AttemptState
    mode: LinkMode | None = None
    return_path: str | None = None
    error_code: str | None = None
    reason: str | None = None
    social_account: SocialAccountRead | None = None
    available_targets: list[AvailableTarget] = Field(default_factory=list)

    @property
    def is_success(self) -> bool:
        return self.outcome == CallbackOutcome.SUCCESS

    @classmethod
    def failure(
        cls,
        provider: Provider,
        error: SocialAuthError,
        reason: str | None = None,
        *,
        mode: LinkMode | None = None,
        return_path: str | None = None,
    ) -> "CallbackResult":
        return cls(
            outcome=CallbackOutcome.ERROR,
            provider=provider,
            attempt_state=AttemptState.FAILED,
            mode=mode,
            return_path=return_path,
            error_code=error.code,
            reason=reason or error.msg,
        )


class LinkBatchResult(BaseModel):
    """
    批量绑定结果。

    不变式:
    - succeeded 与 failed 互斥 (同时出现时以 failed 为准)
    - 每个提交的 id 恰好出现在 succeeded / failed / unreported 之一
    - coarse=True 表示上游只返回了整体布尔值，逐项结果是统一推断的
    - persisted=False 表示上游已绑定成功，但本地投影写入失败 (已回滚)
    """

    succeeded: list[str] = Field(default_factory=list)
    failed: dict[str, str] = Field(default_factory=dict)
    unreported: list[str] = Field(default_factory=list)
    coarse: bool = False
    persisted: bool = True
    status: LinkStatus
    linked: list[LinkedTargetRead] = Field(default_factory=list)

    @classmethod
    def settle(
        cls,
        submitted: list[str],
        succeeded: list[str] | set[str],
        failed: dict[str, str],
        *,
        coarse: bool = False,
    ) -> "LinkBatchResult":
        """按提交顺序归并上游结果，忽略未提交的 id"""
        submitted_set = set(submitted)
        ok = set(succeeded)
        failed_map = {k: v for k, v in failed.items() if k in submitted_set}

        succeeded_ids = [i for i in submitted if i in ok and i not in failed_map]
        failed_ids = {i: failed_map[i] for i in submitted if i in failed_map}
        unreported = [
            i for i in submitted if i not in ok and i not in failed_map
        ]

        if succeeded_ids and len(succeeded_ids) == len(submitted):
            status = LinkStatus.FULL
        elif succeeded_ids:
            status = LinkStatus.PARTIAL
        else:
            status = LinkStatus.FAILED

        return cls(
            succeeded=succeeded_ids,
            failed=failed_ids,
            unreported=unreported,
            coarse=coarse,
            status=status,
        )

    @classmethod
    def uniform(
        cls, submitted: list[str], ok: bool, reason: str | None = None
    ) -> "LinkBatchResult":
        """粗粒度结果：全部成功或全部失败"""
        if ok:
            return cls.settle(submitted, submitted, {}, coarse=True)
        return cls.settle(
            submitted, [], {i: reason or "link failed" for i in submitted}, coarse=True
        )


class UnlinkResult(BaseModel):
    linked_target_id: UUID
    provider_target_id: str
    # None 表示解绑后重新发现失败，暂时无法判断
    available_again: bool | None = None
