"""
File: app/api/deps.py
Description: 全局依赖注入定义 (DB Session + Authentication Context)

本模块负责：
1. 数据库会话管理 (get_db / DBSession)
2. JWT 鉴权与调用方上下文提取 (get_auth_context / CurrentAuth)

调用方上下文 (AuthContext) 显式携带 user_id 与 Bearer 凭证，
由 Router 逐层传入 Service / Gateway，而不是从全局单例读取，
使授权绑定状态机可以脱离 HTTP 层单独测试。

Author: jinmozhe
Created: 2025-12-05
Updated: 2026-03-02 (AuthContext instead of User lookup)
"""

from collections.abc import AsyncGenerator
from typing import Annotated

from fastapi import Depends, Header
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.error_code import SystemErrorCode
from app.core.exceptions import AppException
from app.core.security import AuthContext, decode_access_token
from app.db.session import AsyncSessionLocal

# ------------------------------------------------------------------------------
# 1. Database Dependencies
# ------------------------------------------------------------------------------


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    获取异步数据库会话依赖。
    使用 async with 确保请求结束时自动关闭 session。
    """
    async with AsyncSessionLocal() as session:
        yield session


# 数据库会话依赖类型别名
DBSession = Annotated[AsyncSession, Depends(get_db)]


# ------------------------------------------------------------------------------
# 2. Authentication Dependencies (JWT 鉴权)
# ------------------------------------------------------------------------------


async def get_token_from_header(
    authorization: Annotated[str | None, Header()] = None,
) -> str:
    """
    从 Authorization Header 提取 Bearer Token。
    格式要求: Authorization: Bearer <token>
    """
    if not authorization:
        raise AppException(
            SystemErrorCode.UNAUTHORIZED, message="Missing Authorization Header"
        )

    scheme, _, param = authorization.partition(" ")
    if scheme.lower() != "bearer" or not param:
        raise AppException(
            SystemErrorCode.UNAUTHORIZED, message="Invalid Authentication Scheme"
        )

    return param


async def get_auth_context(
    token: Annotated[str, Depends(get_token_from_header)],
) -> AuthContext:
    """
    解析 JWT 并构造调用方上下文。
    签名错误或过期时统一返回 401，不暴露 jose 异常细节。
    """
    user_id = decode_access_token(token)
    if user_id is None:
        raise AppException(
            SystemErrorCode.UNAUTHORIZED, message="Invalid Token or Expired"
        )

    return AuthContext(user_id=user_id, bearer=token)


# 已登录调用方依赖
# 用法: async def endpoint(auth: CurrentAuth): ...
CurrentAuth = Annotated[AuthContext, Depends(get_auth_context)]
