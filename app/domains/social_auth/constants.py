"""
File: app/domains/social_auth/constants.py
Description: 社交授权绑定领域常量定义 (枚举 + 错误码 + 提示文案)
Namespace: social_auth.*

1. 枚举: 平台 (Provider)、授权模式 (LinkMode)、回调结果、跨窗口消息类型、批量绑定状态
2. Error 定义: 继承 BaseErrorCode，包含 (HTTP状态, 业务码, 默认文案)
3. Msg 定义: 纯字符串常量，用于 Router 返回成功响应
4. Reason 定义: 回调失败时展示给用户的原因文案

Author: jinmozhe
Created: 2026-03-02
"""

from enum import StrEnum

from starlette.status import (
    HTTP_200_OK,
    HTTP_400_BAD_REQUEST,
    HTTP_403_FORBIDDEN,
    HTTP_404_NOT_FOUND,
    HTTP_409_CONFLICT,
    HTTP_502_BAD_GATEWAY,
)

from app.core.error_code import BaseErrorCode

# ==============================================================================
# 1. 枚举 (Enums)
# ==============================================================================


class Provider(StrEnum):
    """三方平台标识"""

    FACEBOOK = "facebook"
    INSTAGRAM = "instagram"
    TIKTOK = "tiktok"
    TWITTER = "twitter"


class LinkMode(StrEnum):
    """
    授权模式，在 begin() 时确定并随 LinkAttempt 全程携带。
    - popup: 新窗口授权，回调页通过 postMessage 通知 opener
    - redirect: 当前页跳转授权，回调后跳回 return_path
    """

    POPUP = "popup"
    REDIRECT = "redirect"


class CallbackOutcome(StrEnum):
    SUCCESS = "success"
    ERROR = "error"


class BridgeMessageType(StrEnum):
    """popup -> opener 消息类型"""

    SUCCESS = "SOCIAL_AUTH_SUCCESS"
    ERROR = "SOCIAL_AUTH_ERROR"


class LinkStatus(StrEnum):
    """批量绑定整体状态"""

    FULL = "full"
    PARTIAL = "partial"
    FAILED = "failed"


# ==============================================================================
# 2. 错误码定义 (Error Codes)
# 用于 Service 层抛出异常: raise AppException(SocialAuthError.ACCOUNT_NOT_FOUND)
# ==============================================================================


class SocialAuthError(BaseErrorCode):
    """
    社交授权绑定领域错误定义
    Tuple Structure: (HTTP_Status, Code_String, Default_Message)
    """

    # 回调阶段 (Callback Reconciler)
    AUTHORIZATION_DENIED = (
        HTTP_403_FORBIDDEN,
        "social_auth.authorization_denied",
        "用户拒绝了平台授权",
    )
    CALLBACK_MALFORMED = (
        HTTP_400_BAD_REQUEST,
        "social_auth.callback_malformed",
        "授权回调参数不完整",
    )
    NONCE_INVALID = (
        HTTP_400_BAD_REQUEST,
        "social_auth.nonce_invalid",
        "授权会话无效或已过期",
    )
    EXCHANGE_FAILED = (
        HTTP_502_BAD_GATEWAY,
        "social_auth.exchange_failed",
        "授权码交换失败",
    )
    CANCELLED = (HTTP_409_CONFLICT, "social_auth.cancelled", "授权已取消")

    # 发起阶段 (Authorization Initiator)
    PROVIDER_UNSUPPORTED = (
        HTTP_400_BAD_REQUEST,
        "social_auth.provider_unsupported",
        "不支持的平台",
    )
    AUTH_URL_FAILED = (
        HTTP_502_BAD_GATEWAY,
        "social_auth.auth_url_failed",
        "获取授权链接失败",
    )

    # 目标发现与绑定 (Target Discovery / Selective Linker)
    DISCOVERY_FAILED = (
        HTTP_502_BAD_GATEWAY,
        "social_auth.discovery_failed",
        "获取可绑定目标失败",
    )
    EMPTY_SELECTION = (
        HTTP_400_BAD_REQUEST,
        "social_auth.empty_selection",
        "请至少选择一个目标",
    )
    # 部分失败仍返回 HTTP 200，前端据 code 区分
    LINK_PARTIAL_FAILURE = (
        HTTP_200_OK,
        "social_auth.link_partial_failure",
        "部分目标绑定失败",
    )
    LINK_TOTAL_FAILURE = (
        HTTP_502_BAD_GATEWAY,
        "social_auth.link_total_failure",
        "目标绑定失败",
    )
    UNLINK_FAILED = (
        HTTP_502_BAD_GATEWAY,
        "social_auth.unlink_failed",
        "解绑失败",
    )

    # 资源不存在 (HTTP 404)
    ACCOUNT_NOT_FOUND = (
        HTTP_404_NOT_FOUND,
        "social_auth.account_not_found",
        "社交账号不存在",
    )
    TARGET_NOT_FOUND = (
        HTTP_404_NOT_FOUND,
        "social_auth.target_not_found",
        "绑定目标不存在",
    )
    ATTEMPT_NOT_FOUND = (
        HTTP_404_NOT_FOUND,
        "social_auth.attempt_not_found",
        "没有进行中的授权",
    )
    RESULT_NOT_FOUND = (
        HTTP_404_NOT_FOUND,
        "social_auth.result_not_found",
        "授权结果不存在或已读取",
    )

    @classmethod
    def from_code(cls, code: str | None) -> "SocialAuthError":
        """按业务码反查 (用于把 CallbackResult 中的 error_code 还原为 HTTP 状态)"""
        for member in cls:
            if member.code == code:
                return member
        return cls.EXCHANGE_FAILED


# ==============================================================================
# 3. 回调失败原因 (Callback Reasons)
# ==============================================================================


class CallbackReason:
    """回调失败时展示给用户的原因 (服务端生成的部分)"""

    CODE_MISSING = "authorization code missing"
    STATE_MISSING = "state parameter missing"
    SESSION_INVALID = "invalid or expired session"
    ACCOUNT_NOT_SAVED = "linked account could not be saved"
    POPUP_TIMEOUT = "popup closed or timed out"
    POPUP_CLOSED = "popup closed by user"
    EXPIRED = "attempt expired"


# ==============================================================================
# 4. 成功提示语 (Success Messages)
# ==============================================================================


class SocialAuthMsg:
    """
    社交授权绑定领域成功提示文案
    """

    AUTH_URL_ISSUED = "授权链接已生成"
    ACCOUNT_LINKED = "社交账号绑定成功"
    ATTEMPT_CANCELLED = "授权已取消"
    ACCOUNT_UNLINKED = "社交账号已解绑"
    TARGETS_LOADED = "可绑定目标已加载"
    TARGETS_LINKED = "目标绑定成功"
    TARGET_UNLINKED = "目标已解绑"
