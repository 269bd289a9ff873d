"""
File: tests/unit/test_discovery.py
Description: 目标发现单元测试

Author: jinmozhe
Created: 2026-03-02
"""

import pytest

from app.core.exceptions import AppException
from app.core.security import AuthContext
from app.db.models.social_account import SocialAccount
from app.domains.social_auth.constants import SocialAuthError
from app.domains.social_auth.discovery import search_targets
from app.domains.social_auth.flow import TargetsState
from app.domains.social_auth.repository import LinkedTargetUpsert, SocialAccountUpsert
from app.domains.social_auth.schemas import AvailableTarget
from app.domains.social_auth.service import SocialAuthService

TARGETS_PATH = "/social-auth/facebook/targets"


async def _account(service: SocialAuthService, auth: AuthContext) -> SocialAccount:
    account, _ = await service.account_repo.upsert(
        SocialAccountUpsert(
            user_id=auth.user_id,
            provider="facebook",
            provider_account_id="fb-account-1",
            backend_account_id="backend-account-1",
        )
    )
    await service.account_repo.session.commit()
    return account


def test_search_is_case_insensitive_on_name_or_category() -> None:
    targets = [
        AvailableTarget(provider_target_id="p1", name="Coffee Shop", category="Food"),
        AvailableTarget(provider_target_id="p2", name="Book Club", category="Community"),
        AvailableTarget(provider_target_id="p3", name="Bike Repair"),
    ]

    assert [t.provider_target_id for t in search_targets(targets, "COFFEE")] == ["p1"]
    assert [t.provider_target_id for t in search_targets(targets, "commun")] == ["p2"]
    assert [t.provider_target_id for t in search_targets(targets, "b")] == ["p2", "p3"]
    assert search_targets(targets, "  ") == targets
    assert search_targets(targets, None) == targets
    assert search_targets(targets, "nothing") == []


async def test_discover_excludes_already_linked_targets(
    service: SocialAuthService, fake_backend, auth: AuthContext
) -> None:
    account = await _account(service, auth)
    await service.target_repo.upsert(
        LinkedTargetUpsert(
            social_account_id=account.id,
            user_id=auth.user_id,
            provider="facebook",
            provider_target_id="p1",
            name="Coffee Shop",
            type="page",
        )
    )
    await service.target_repo.session.commit()
    fake_backend.targets(
        [
            fake_backend.page("p1", "Coffee Shop"),
            fake_backend.page("p2", "Book Club"),
            fake_backend.page("p2", "Book Club"),
        ]
    )

    snapshot = await service.discovery.discover(auth, account)

    assert [t.provider_target_id for t in snapshot.targets] == ["p2"]
    assert snapshot.targets_state == TargetsState.TARGETS_LOADED
    sent = fake_backend.calls("GET", TARGETS_PATH)[0]
    assert sent.url.params["socialAccountId"] == "backend-account-1"


async def test_discover_uses_cached_snapshot_until_refresh(
    service: SocialAuthService, fake_backend, auth: AuthContext
) -> None:
    account = await _account(service, auth)
    fake_backend.targets([fake_backend.page("p1", "Coffee Shop")])

    await service.discovery.discover(auth, account)
    await service.discovery.discover(auth, account)
    assert len(fake_backend.calls("GET", TARGETS_PATH)) == 1

    await service.discovery.discover(auth, account, refresh=True)
    assert len(fake_backend.calls("GET", TARGETS_PATH)) == 2


async def test_empty_target_list_is_valid(
    service: SocialAuthService, fake_backend, auth: AuthContext
) -> None:
    account = await _account(service, auth)
    fake_backend.targets([])

    snapshot = await service.discovery.discover(auth, account)

    assert snapshot.targets == []
    assert snapshot.targets_state == TargetsState.TARGETS_LOADED


async def test_upstream_failure_raises_discovery_failed(
    service: SocialAuthService, fake_backend, auth: AuthContext
) -> None:
    account = await _account(service, auth)
    fake_backend.on("GET", TARGETS_PATH, success=False, message="token expired", status_code=500)

    with pytest.raises(AppException) as exc_info:
        await service.discovery.discover(auth, account)

    assert exc_info.value.code == SocialAuthError.DISCOVERY_FAILED.code
    assert exc_info.value.message == "token expired"
    assert exc_info.value.data == {"targets_state": TargetsState.TARGETS_LOAD_FAILED.value}
    assert await service.discovery.snapshot(auth.user_id, account.id) is None
