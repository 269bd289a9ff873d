"""
File: app/core/security.py
Description: 安全工具模块 (JWT)

本模块负责：
1. JWT 签发: 生成无状态的 Access Token (本地调试与测试使用)
2. JWT 校验: 校验签名与有效期，提取主体 (sub = user_id)
3. 高熵随机令牌: 生成 OAuth 关联令牌 (state nonce) 与结果暂存 ID

说明：
用户会话的签发与续期由身份层负责 (不在本服务范围)，
本服务只需校验前端携带的 Bearer Token 并原样转发给上游后端。

Author: jinmozhe
Created: 2025-12-05
Updated: 2026-03-02 (Drop password hashing, add decode & nonce)
"""

import secrets
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from jose import JWTError, jwt

from app.core.config import settings

# nonce 熵长度 (字节)，token_urlsafe(32) 约 43 个字符
NONCE_BYTES = 32


@dataclass(frozen=True, slots=True)
class AuthContext:
    """
    调用方上下文 (显式传入各组件，不读取全局单例)。

    - user_id: 稳定的用户标识 (JWT sub)
    - bearer: 转发给上游后端的凭证
    """

    user_id: str
    bearer: str

    @property
    def authorization(self) -> str:
        """Authorization 请求头的值"""
        return f"Bearer {self.bearer}"


def _require_secret_key() -> str:
    # 静态检查器现在知道 secret_key 必定是 str 类型
    secret_key = settings.SECRET_KEY
    if secret_key is None:
        raise ValueError("SECRET_KEY configuration is missing.")
    return secret_key


# ------------------------------------------------------------------------------
# 1. JWT 处理 (JSON Web Token)
# ------------------------------------------------------------------------------


def create_access_token(
    subject: str | Any, expires_delta: timedelta | None = None
) -> str:
    """
    生成 JWT Access Token (短效, 无状态)。

    Args:
        subject: 主体标识 (通常为 user_id)
        expires_delta: 自定义过期时间差 (可选，默认为配置中的 ACCESS_TOKEN_EXPIRE_MINUTES)

    Returns:
        str: 编码后的 JWT 字符串
    """
    if expires_delta:
        expire = datetime.now(UTC) + expires_delta
    else:
        expire = datetime.now(UTC) + timedelta(
            minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES
        )

    # sub: Subject (用户ID) / exp: 过期时间戳 / type: Token 类型
    to_encode = {"exp": expire, "sub": str(subject), "type": "access"}

    return jwt.encode(to_encode, _require_secret_key(), algorithm=settings.ALGORITHM)


def decode_access_token(token: str) -> str | None:
    """
    校验 JWT 并返回主体 (user_id)。

    签名错误、已过期、缺少 sub 均返回 None，由调用方决定如何拒绝。
    """
    try:
        payload = jwt.decode(
            token,
            _require_secret_key(),
            algorithms=[settings.ALGORITHM],
        )
    except JWTError:
        return None

    subject = payload.get("sub")
    if not subject:
        return None
    return str(subject)


# ------------------------------------------------------------------------------
# 2. 随机令牌 (Random Tokens)
# ------------------------------------------------------------------------------


def generate_nonce() -> str:
    """
    生成 OAuth 关联令牌 (state nonce)。
    使用 secrets 模块，保证不可预测。
    """
    return secrets.token_urlsafe(NONCE_BYTES)


def generate_result_id() -> str:
    """生成 redirect 模式结果暂存 ID (不可枚举)"""
    return secrets.token_urlsafe(16)
