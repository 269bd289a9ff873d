"""
File: tests/unit/test_correlation.py
Description: 关联令牌存储单元测试

覆盖：
1. nonce 单次使用 (第二次消费失败)
2. 未知 / 过期 nonce 与已消费 nonce 表现一致
3. 同一用户同一平台的新记录原子替换旧记录并作废旧 nonce；nonce 冲突按 AUTH_URL_FAILED 拒绝
4. 结果暂存只能被所属用户读取一次

Author: jinmozhe
Created: 2026-03-02
"""

from datetime import timedelta

import pytest

from app.core.exceptions import AppException
from app.domains.social_auth.constants import (
    CallbackOutcome,
    LinkMode,
    Provider,
    SocialAuthError,
)
from app.domains.social_auth.correlation import CorrelationStore
from app.domains.social_auth.flow import AttemptState
from app.domains.social_auth.schemas import (
    AttemptRecord,
    CallbackResult,
    LinkAttempt,
    utc_now,
)


async def _pending_record(store: CorrelationStore, attempt: LinkAttempt) -> AttemptRecord:
    return await store.save_record(
        AttemptRecord(
            provider=attempt.provider,
            user_id=attempt.user_id,
            nonce=attempt.nonce,
            mode=attempt.mode,
            attempt_state=AttemptState.CALLBACK_PENDING,
        )
    )


async def test_consume_is_single_use(store: CorrelationStore) -> None:
    attempt = await store.create(Provider.FACEBOOK, LinkMode.POPUP, user_id="user-1")

    first = await store.consume(attempt.nonce)
    second = await store.consume(attempt.nonce)

    assert first is not None
    assert first.nonce == attempt.nonce
    assert first.user_id == "user-1"
    assert second is None


async def test_unknown_and_missing_nonce_rejected(store: CorrelationStore) -> None:
    assert await store.consume("never-issued") is None
    assert await store.consume(None) is None
    assert await store.consume("") is None


async def test_generated_nonces_are_unique(store: CorrelationStore) -> None:
    a = await store.create(Provider.FACEBOOK, LinkMode.POPUP, user_id="user-1")
    b = await store.create(Provider.FACEBOOK, LinkMode.POPUP, user_id="user-1")

    assert a.nonce != b.nonce
    assert len(a.nonce) >= 32


async def test_create_refuses_to_overwrite_nonce(store: CorrelationStore) -> None:
    await store.create(Provider.TIKTOK, LinkMode.REDIRECT, user_id="user-1", nonce="fixed")

    with pytest.raises(AppException) as exc_info:
        await store.create(Provider.TIKTOK, LinkMode.REDIRECT, user_id="user-1", nonce="fixed")

    assert exc_info.value.code == SocialAuthError.AUTH_URL_FAILED.code


async def test_expired_attempt_rejected_on_first_use(store: CorrelationStore) -> None:
    # Redis TTL 尚未触发，但 LinkAttempt 本身已超过有效期
    stale = LinkAttempt(
        provider=Provider.FACEBOOK,
        nonce="stale-nonce",
        mode=LinkMode.POPUP,
        user_id="user-1",
        created_at=utc_now() - timedelta(seconds=store.nonce_ttl + 5),
    )
    await store.redis.set(store._nonce_key(stale.nonce), stale.model_dump_json())

    assert await store.consume(stale.nonce) is None
    # 读取即删除，不会残留
    assert await store.redis.get(store._nonce_key(stale.nonce)) is None


async def test_replace_record_invalidates_pending_nonce(store: CorrelationStore) -> None:
    old = await store.create(Provider.FACEBOOK, LinkMode.POPUP, user_id="user-1")
    await _pending_record(store, old)
    new = await store.create(Provider.FACEBOOK, LinkMode.POPUP, user_id="user-1")

    previous = await store.replace_record(
        AttemptRecord(
            provider=Provider.FACEBOOK,
            user_id="user-1",
            nonce=new.nonce,
            mode=LinkMode.POPUP,
            attempt_state=AttemptState.CALLBACK_PENDING,
        )
    )

    assert previous is not None
    assert previous.nonce == old.nonce
    assert await store.consume(old.nonce) is None
    assert await store.consume(new.nonce) is not None


async def test_replace_record_ignores_finished_attempt(store: CorrelationStore) -> None:
    attempt = await store.create(Provider.FACEBOOK, LinkMode.POPUP, user_id="user-1")
    record = await _pending_record(store, attempt)
    record.attempt_state = AttemptState.ACCOUNT_LINKED
    await store.save_record(record)

    new = await store.create(Provider.FACEBOOK, LinkMode.POPUP, user_id="user-1")
    previous = await store.replace_record(
        AttemptRecord(
            provider=Provider.FACEBOOK,
            user_id="user-1",
            nonce=new.nonce,
            mode=LinkMode.POPUP,
            attempt_state=AttemptState.CALLBACK_PENDING,
        )
    )

    assert previous is None
    current = await store.get_record("user-1", Provider.FACEBOOK)
    assert current is not None
    assert current.nonce == new.nonce


async def test_result_is_owner_only_and_single_use(store: CorrelationStore) -> None:
    result = CallbackResult(
        outcome=CallbackOutcome.SUCCESS,
        provider=Provider.INSTAGRAM,
        attempt_state=AttemptState.ACCOUNT_LINKED,
        mode=LinkMode.REDIRECT,
    )
    result_id = await store.put_result("user-1", result)

    # 其他用户读取失败，且不会删除结果
    assert await store.pop_result(result_id, "user-2") is None

    popped = await store.pop_result(result_id, "user-1")
    assert popped is not None
    assert popped.provider == Provider.INSTAGRAM
    assert await store.pop_result(result_id, "user-1") is None


async def test_attach_result_only_to_matching_attempt(store: CorrelationStore) -> None:
    old = await store.create(Provider.FACEBOOK, LinkMode.REDIRECT, user_id="user-1")
    new = await store.create(Provider.FACEBOOK, LinkMode.REDIRECT, user_id="user-1")
    await _pending_record(store, new)

    await store.attach_result(old, "result-old")
    record = await store.get_record("user-1", Provider.FACEBOOK)
    assert record is not None
    assert record.result_id is None

    await store.attach_result(new, "result-new")
    record = await store.get_record("user-1", Provider.FACEBOOK)
    assert record is not None
    assert record.result_id == "result-new"
