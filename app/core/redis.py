"""
File: app/core/redis.py
Description: Redis 客户端管理 (Async)

本模块负责：
1. 创建全局 Redis 连接池 (基于 redis-py 的 asyncio 扩展)
2. 提供依赖注入所需的 Redis 客户端生成器
3. 统一 Key 命名空间 (build_key)，避免各组件手写拼接
4. 管理连接生命周期 (初始化与关闭)

注意：
使用 decode_responses=True，确保从 Redis 读取的数据自动解码为 str，
避免在业务逻辑中处理 bytes 类型。

Author: jinmozhe
Created: 2025-12-05
Updated: 2026-03-02 (Key namespace for social auth)
"""

from collections.abc import AsyncGenerator

from redis.asyncio import Redis, from_url

from app.core.config import settings

# 全站 Key 前缀，多个服务共用同一 Redis 实例时避免冲突
KEY_PREFIX = "slo"

# ------------------------------------------------------------------------------
# 全局 Redis 客户端实例 (Singleton)
# ------------------------------------------------------------------------------
# redis-py 内部维护了连接池 (ConnectionPool)，因此创建一个全局实例即可。
# 所有操作都会自动从池中获取连接并在使用后归还。
redis_client: Redis = from_url(
    settings.REDIS_URL,
    encoding="utf-8",
    decode_responses=True,
)


def build_key(*parts: str) -> str:
    """
    拼接带命名空间的 Redis Key。

    示例:
    build_key("social_auth", "nonce", "abc") -> "slo:social_auth:nonce:abc"
    """
    return ":".join((KEY_PREFIX, *parts))


async def get_redis() -> AsyncGenerator[Redis, None]:
    """
    获取 Redis 客户端依赖。

    用法:
    @router.get("/")
    async def endpoint(redis: Annotated[Redis, Depends(get_redis)]):
        val = await redis.get("key")

    封装为依赖注入后，测试中可以 override 这个依赖，注入 FakeRedis。
    """
    yield redis_client


async def close_redis() -> None:
    """
    关闭 Redis 连接池。
    应在 FastAPI 应用的 lifespan shutdown 事件中调用。
    """
    await redis_client.close()
