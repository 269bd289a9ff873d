"""
File: tests/unit/test_linker.py
Description: 选择性绑定单元测试

覆盖：
1. 上游返回形态归并 (逐项 / results / targets / 粗粒度)
2. 空选择不发请求
3. 部分成功：成功的目标落库并从快照移出
4. 上游整体拒绝：统一失败
5. 本地落库失败：回滚本地投影，快照仍按上游结果更新

Author: jinmozhe
Created: 2026-03-02
"""

import orjson
import pytest
from sqlalchemy.exc import OperationalError

from app.clients.backend import UpstreamTarget
from app.core.exceptions import AppException
from app.core.security import AuthContext
from app.db.models.social_account import SocialAccount
from app.domains.social_auth.constants import LinkStatus, SocialAuthError
from app.domains.social_auth.linker import interpret_link_response
from app.domains.social_auth.repository import SocialAccountUpsert
from app.domains.social_auth.service import SocialAuthService

LINK_PATH = "/social-auth/link-selected"


async def _linked_account(
    service: SocialAuthService, fake_backend, auth: AuthContext
) -> SocialAccount:
    account, _ = await service.account_repo.upsert(
        SocialAccountUpsert(
            user_id=auth.user_id,
            provider="facebook",
            provider_account_id="fb-account-1",
            backend_account_id="backend-account-1",
            display_name="Jane Doe",
        )
    )
    await service.account_repo.session.commit()
    await service.discovery.seed(
        auth.user_id,
        account,
        [
            UpstreamTarget.model_validate(fake_backend.page("p1", "Coffee Shop", "Food")),
            UpstreamTarget.model_validate(fake_backend.page("p2", "Book Club", "Community")),
            UpstreamTarget.model_validate(fake_backend.page("p3", "Bike Repair")),
        ],
    )
    return account


# ------------------------------------------------------------------------------
# 上游返回形态
# ------------------------------------------------------------------------------


def test_interpret_succeeded_and_failed_lists() -> None:
    result, _ = interpret_link_response(
        ["p1", "p2", "p3"],
        {"succeeded": ["p1"], "failed": [{"providerTargetId": "p2", "reason": "no permission"}]},
    )

    assert result.succeeded == ["p1"]
    assert result.failed == {"p2": "no permission"}
    assert result.unreported == ["p3"]
    assert result.status == LinkStatus.PARTIAL
    assert not result.coarse


def test_interpret_failed_wins_over_succeeded() -> None:
    result, _ = interpret_link_response(
        ["p1", "p2"], {"succeeded": ["p1", "p2"], "failed": {"p2": "rate limited"}}
    )

    assert result.succeeded == ["p1"]
    assert result.failed == {"p2": "rate limited"}


def test_interpret_ignores_ids_that_were_not_submitted() -> None:
    result, _ = interpret_link_response(["p1"], {"succeeded": ["p1", "p9"], "failed": {"p8": "x"}})

    assert result.succeeded == ["p1"]
    assert result.failed == {}
    assert result.status == LinkStatus.FULL


def test_interpret_results_shape() -> None:
    result, _ = interpret_link_response(
        ["p1", "p2"],
        {
            "results": [
                {"providerTargetId": "p1", "success": True},
                {"providerTargetId": "p2", "success": False, "message": "page restricted"},
            ]
        },
    )

    assert result.succeeded == ["p1"]
    assert result.failed == {"p2": "page restricted"}


def test_interpret_targets_shape_keeps_backend_ids() -> None:
    result, targets = interpret_link_response(
        ["p1", "p2"],
        {"targets": [{"id": "bt-1", "providerTargetId": "p1", "name": "Coffee Shop"}]},
    )

    assert result.succeeded == ["p1"]
    assert result.unreported == ["p2"]
    assert targets["p1"].backend_id == "bt-1"


@pytest.mark.parametrize(
    ("data", "status"),
    [(True, LinkStatus.FULL), (None, LinkStatus.FULL), (False, LinkStatus.FAILED)],
)
def test_interpret_coarse_boolean(data, status: LinkStatus) -> None:
    result, _ = interpret_link_response(["p1", "p2"], data)

    assert result.coarse
    assert result.status == status


# ------------------------------------------------------------------------------
# 批量绑定
# ------------------------------------------------------------------------------


async def test_empty_selection_sends_nothing(
    service: SocialAuthService, fake_backend, auth: AuthContext
) -> None:
    account = await _linked_account(service, fake_backend, auth)

    with pytest.raises(AppException) as exc_info:
        await service.linker.link(auth, account, [])

    assert exc_info.value.code == SocialAuthError.EMPTY_SELECTION.code
    assert fake_backend.calls("POST", LINK_PATH) == []


async def test_partial_success_persists_only_succeeded(
    service: SocialAuthService, fake_backend, auth: AuthContext
) -> None:
    account = await _linked_account(service, fake_backend, auth)
    fake_backend.on(
        "POST",
        LINK_PATH,
        data={"succeeded": ["p1", "p3"], "failed": {"p2": "permission missing"}},
    )

    result = await service.linker.link(auth, account, ["p1", "p2", "p3"], workspace_id="brand-1")

    assert result.status == LinkStatus.PARTIAL
    assert result.failed == {"p2": "permission missing"}
    assert [t.provider_target_id for t in result.linked] == ["p1", "p3"]
    assert result.linked[0].name == "Coffee Shop"
    assert result.linked[0].workspace_id == "brand-1"

    body = orjson.loads(fake_backend.calls("POST", LINK_PATH)[0].content)
    assert body["providerTargetIds"] == ["p1", "p2", "p3"]
    assert body["userId"] == auth.user_id
    assert body["brandId"] == "brand-1"

    rows = await service.target_repo.list_by_account(account.id)
    assert {r.provider_target_id for r in rows} == {"p1", "p3"}

    snapshot = await service.discovery.snapshot(auth.user_id, account.id)
    assert snapshot is not None
    assert snapshot.ids() == {"p2"}


async def test_upstream_rejection_fails_every_target(
    service: SocialAuthService, fake_backend, auth: AuthContext
) -> None:
    account = await _linked_account(service, fake_backend, auth)
    fake_backend.on("POST", LINK_PATH, success=False, message="token expired", status_code=401)

    result = await service.linker.link(auth, account, ["p1", "p2"])

    assert result.status == LinkStatus.FAILED
    assert result.coarse
    assert result.failed == {"p1": "token expired", "p2": "token expired"}
    assert result.linked == []
    assert await service.target_repo.list_by_account(account.id) == []

    # 失败后快照不变，可直接重试
    snapshot = await service.discovery.snapshot(auth.user_id, account.id)
    assert snapshot is not None
    assert snapshot.ids() == {"p1", "p2", "p3"}


async def test_relinking_same_target_does_not_duplicate(
    service: SocialAuthService, fake_backend, auth: AuthContext
) -> None:
    account = await _linked_account(service, fake_backend, auth)
    fake_backend.on("POST", LINK_PATH, data=True)

    await service.linker.link(auth, account, ["p1"])
    await service.linker.link(auth, account, ["p1"])

    rows = await service.target_repo.list_by_account(account.id)
    assert len(rows) == 1


async def test_local_save_failure_still_settles_snapshot(
    service: SocialAuthService,
    fake_backend,
    auth: AuthContext,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    account = await _linked_account(service, fake_backend, auth)
    account_id = account.id
    fake_backend.on("POST", LINK_PATH, data={"succeeded": ["p1", "p3"]})

    upsert = service.target_repo.upsert
    calls = 0

    async def flaky_upsert(obj_in):
        nonlocal calls
        calls += 1
        if calls == 2:
            raise OperationalError("INSERT INTO linked_targets", {}, Exception("disk I/O error"))
        return await upsert(obj_in)

    monkeypatch.setattr(service.target_repo, "upsert", flaky_upsert)

    result = await service.linker.link(auth, account, ["p1", "p2", "p3"])

    # 上游结果原样返回，本地投影整体回滚
    assert result.status == LinkStatus.PARTIAL
    assert result.succeeded == ["p1", "p3"]
    assert result.persisted is False
    assert result.linked == []
    assert await service.target_repo.list_by_account(account_id) == []

    # 已在上游绑定的目标不再出现在可绑定列表中
    snapshot = await service.discovery.snapshot(auth.user_id, account_id)
    assert snapshot is not None
    assert snapshot.ids() == {"p2"}
