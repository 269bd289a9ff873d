"""
File: app/domains/social_auth/correlation.py
Description: 关联令牌存储 (Correlation Store)

本模块是授权绑定流程中唯一的共享可变资源，基于 Redis 实现：
1. nonce -> LinkAttempt: create 写入 (SET NX + TTL)，consume 原子读删 (GETDEL)
2. (user, provider) -> AttemptRecord: 进行中记录，原子替换 (SET GET) 并作废旧 nonce，支持轮询与取消
3. result_id -> CallbackResult: redirect 模式结果暂存，只能读取一次

安全约束：
- consume 只成功一次；未知、过期、已消费的 nonce 对外表现完全一致 (返回 None)
- 即使 Redis TTL 尚未触发，超过有效期的 LinkAttempt 在首次消费时也会被拒绝
- redirect 与 popup 都跨执行上下文，因此存储放在服务端而不是浏览器

Author: jinmozhe
Created: 2026-03-02
"""

import orjson
from pydantic import ValidationError
from redis.asyncio import Redis

from app.core.config import settings
from app.core.exceptions import AppException
from app.core.logging import logger
from app.core.redis import build_key
from app.core.security import generate_nonce, generate_result_id
from app.domains.social_auth.constants import LinkMode, Provider, SocialAuthError
from app.domains.social_auth.schemas import (
    AttemptRecord,
    CallbackResult,
    LinkAttempt,
    utc_now,
)

NAMESPACE = "social_auth"


class CorrelationStore:
    """
    关联令牌存储。

    用法:
        store = CorrelationStore(redis)
        attempt = await store.create(Provider.FACEBOOK, LinkMode.POPUP, user_id="u1")
        same = await store.consume(attempt.nonce)   # -> LinkAttempt
        again = await store.consume(attempt.nonce)  # -> None
    """

    def __init__(
        self,
        redis: Redis,
        nonce_ttl: int = settings.SOCIAL_AUTH_NONCE_TTL_SECONDS,
        result_ttl: int = settings.SOCIAL_AUTH_RESULT_TTL_SECONDS,
    ):
        self.redis = redis
        self.nonce_ttl = nonce_ttl
        self.result_ttl = result_ttl

    # --------------------------------------------------------------------------
    # Key 规则
    # --------------------------------------------------------------------------

    @staticmethod
    def _nonce_key(nonce: str) -> str:
        return build_key(NAMESPACE, "nonce", nonce)

    @staticmethod
    def _record_key(user_id: str, provider: Provider) -> str:
        return build_key(NAMESPACE, "attempt", user_id, provider.value)

    @staticmethod
    def _result_key(result_id: str) -> str:
        return build_key(NAMESPACE, "result", result_id)

    # --------------------------------------------------------------------------
    # 1. nonce (单次使用)
    # --------------------------------------------------------------------------

    async def create(
        self,
        provider: Provider,
        mode: LinkMode,
        user_id: str,
        return_path: str | None = None,
        *,
        nonce: str | None = None,
    ) -> LinkAttempt:
        """
        创建 LinkAttempt 并以 nonce 为 Key 持久化。

        nonce 可由调用方传入 (例如上游已生成 state)，否则在此生成。
        Key 已存在时拒绝覆盖 (AUTH_URL_FAILED)，保证一个 nonce 只对应一次尝试。
        """
        attempt = LinkAttempt(
            provider=provider,
            nonce=nonce or generate_nonce(),
            mode=mode,
            user_id=user_id,
            return_path=return_path,
        )

        stored = await self.redis.set(
            self._nonce_key(attempt.nonce),
            attempt.model_dump_json(),
            ex=self.nonce_ttl,
            nx=True,
        )
        if not stored:
            logger.bind(provider=provider.value, user_id=user_id).warning("Nonce collision")
            raise AppException(SocialAuthError.AUTH_URL_FAILED)

        logger.bind(
            provider=provider.value, user_id=user_id, mode=mode.value
        ).debug("Link attempt created")
        return attempt

    async def consume(self, nonce: str | None) -> LinkAttempt | None:
        """
        消费 nonce (破坏性读取)。
        未知 / 过期 / 已消费 一律返回 None，不区分原因。
        """
        if not nonce:
            return None

        raw = await self.redis.getdel(self._nonce_key(nonce))
        if raw is None:
            logger.debug("Nonce rejected")
            return None

        try:
            attempt = LinkAttempt.model_validate_json(raw)
        except ValidationError:
            logger.warning("Corrupted link attempt discarded")
            return None

        if attempt.is_expired(self.nonce_ttl):
            logger.bind(provider=attempt.provider.value).debug("Nonce rejected")
            return None

        return attempt

    async def invalidate(self, nonce: str) -> bool:
        """作废 nonce (取消 / 被新尝试替换)，返回是否真的删除了"""
        return bool(await self.redis.delete(self._nonce_key(nonce)))

    # --------------------------------------------------------------------------
    # 2. 进行中记录 (每用户每平台一条)
    # --------------------------------------------------------------------------

    async def get_record(self, user_id: str, provider: Provider) -> AttemptRecord | None:
        raw = await self.redis.get(self._record_key(user_id, provider))
        if raw is None:
            return None
        try:
            return AttemptRecord.model_validate_json(raw)
        except ValidationError:
            logger.bind(provider=provider.value).warning("Corrupted attempt record discarded")
            return None

    async def save_record(self, record: AttemptRecord) -> AttemptRecord:
        """写入记录，保留期与 nonce 相同 (终态结果也会在此期间可查)"""
        record.updated_at = utc_now()
        await self.redis.set(
            self._record_key(record.user_id, record.provider),
            record.model_dump_json(),
            ex=max(self.nonce_ttl, self.result_ttl),
        )
        return record

    async def replace_record(self, record: AttemptRecord) -> AttemptRecord | None:
        """
        写入新的进行中记录，并作废被替换的旧尝试。

        SET ... GET 原子地换入新记录并取回旧值；并发发起时每次写入都会作废它换出的 nonce，
        最终只有记录中的那个 nonce 仍可消费。
        返回被替换的旧记录 (不存在、已结束或就是本次记录时返回 None)。
        """
        record.updated_at = utc_now()
        raw = await self.redis.set(
            self._record_key(record.user_id, record.provider),
            record.model_dump_json(),
            ex=max(self.nonce_ttl, self.result_ttl),
            get=True,
        )
        if raw is None:
            return None

        try:
            previous = AttemptRecord.model_validate_json(raw)
        except ValidationError:
            logger.bind(provider=record.provider.value).warning(
                "Corrupted attempt record discarded"
            )
            return None

        if not previous.is_pending or previous.nonce == record.nonce:
            return None

        await self.invalidate(previous.nonce)
        logger.bind(provider=record.provider.value, user_id=record.user_id).info(
            "Pending link attempt superseded"
        )
        return previous

    # --------------------------------------------------------------------------
    # 3. 结果暂存 (redirect 模式，单次读取)
    # --------------------------------------------------------------------------

    async def put_result(self, user_id: str, result: CallbackResult) -> str:
        result_id = generate_result_id()
        payload = {"user_id": user_id, "result": result.model_dump(mode="json")}
        await self.redis.set(
            self._result_key(result_id), orjson.dumps(payload), ex=self.result_ttl
        )
        return result_id

    async def pop_result(self, result_id: str, user_id: str) -> CallbackResult | None:
        """
        读取并删除结果。
        仅结果所属用户可读取；其他用户读取时不删除，直接返回 None。
        """
        key = self._result_key(result_id)
        raw = await self.redis.get(key)
        if raw is None:
            return None

        payload = orjson.loads(raw)
        if payload.get("user_id") != user_id:
            logger.bind(user_id=user_id).warning("Result read by non-owner rejected")
            return None

        # 并发读取时只有一个 delete 成功
        if not await self.redis.delete(key):
            return None
        return CallbackResult.model_validate(payload["result"])

    async def attach_result(self, attempt: LinkAttempt, result_id: str) -> None:
        """把结果 ID 记到对应的进行中记录上，供 opener 轮询时取回"""
        record = await self.get_record(attempt.user_id, attempt.provider)
        if record is None or record.nonce != attempt.nonce:
            return
        record.result_id = result_id
        await self.save_record(record)
