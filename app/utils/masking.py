"""
File: app/utils/masking.py
Description: 敏感数据脱敏工具 (Data Masking)

本模块提供 OAuth 流程敏感信息脱敏功能，用于日志记录时的隐私保护。
授权码 (code)、关联令牌 (state/nonce)、Bearer 凭证一旦落入日志，
即可被用于重放或冒用，因此必须在写日志前处理。

特性：
1. 令牌掩码: 保留前 4 位便于排查，其余掩盖。
2. 递归脱敏: 深度遍历字典/列表，自动过滤敏感 Key。
3. 供 Loguru patcher 使用，对所有 extra 字段统一生效。

Author: jinmozhe
Created: 2025-11-26
Updated: 2026-03-02 (OAuth code / state masking)
"""

from collections.abc import Mapping
from typing import Any

# ==============================================================================
# 1. 敏感字段黑名单 (大小写不敏感)
# ==============================================================================
SENSITIVE_KEYS = {
    "password",
    "secret",
    "token",
    "access_token",
    "refresh_token",
    "bearer",
    "authorization",
    "api_key",
    "client_secret",
    "auth_code",
    "state",
    "nonce",
}

# URL 查询参数中的 code 即授权码 (日志 extra 中的 code 则是业务错误码，不应掩盖)
QUERY_SENSITIVE_KEYS = SENSITIVE_KEYS | {"code"}

# ==============================================================================
# 2. 基础脱敏函数
# ==============================================================================


def _normalize_key(key: str) -> str:
    """accessToken / access_token / access-token 视为同一个 Key"""
    return key.lower().replace("_", "").replace("-", "")


def is_sensitive_key(key: Any, keys: frozenset[str] | set[str] = SENSITIVE_KEYS) -> bool:
    if not isinstance(key, str):
        return False
    return _normalize_key(key) in {_normalize_key(k) for k in keys}


def mask_token(value: Any) -> str:
    """
    令牌脱敏。
    规则: 保留前 4 位，其余用 * 替换；过短的值完全掩盖。
    示例: AQBx9f0kT2... -> AQBx******
    """
    if value is None:
        return ""
    text = str(value)
    if len(text) <= 8:
        return "******"
    return f"{text[:4]}******"


# ==============================================================================
# 3. 递归脱敏工具 (核心)
# ==============================================================================


def mask_sensitive_data(data: Any, keys: frozenset[str] | set[str] = SENSITIVE_KEYS) -> Any:
    """
    递归遍历数据结构（字典、列表），自动对敏感字段进行脱敏。

    注意：返回数据的浅拷贝副本，不修改原数据。
    """
    if isinstance(data, Mapping):
        new_data = {}
        for k, v in data.items():
            if is_sensitive_key(k, keys):
                new_data[k] = mask_token(v)
            else:
                new_data[k] = mask_sensitive_data(v, keys)
        return new_data

    if isinstance(data, list | tuple):
        return [mask_sensitive_data(item, keys) for item in data]

    return data


def mask_query_params(params: Mapping[str, str]) -> dict[str, str]:
    """
    URL 查询参数脱敏 (用于访问日志)。
    回调地址 ?code=...&state=... 中的授权码与 nonce 会被掩盖。
    """
    return {
        k: mask_token(v) if is_sensitive_key(k, QUERY_SENSITIVE_KEYS) else v
        for k, v in params.items()
    }
