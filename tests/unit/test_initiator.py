"""
File: tests/unit/test_initiator.py
Description: 授权发起器单元测试

Author: jinmozhe
Created: 2026-03-02
"""

import asyncio

import httpx
import pytest

from app.clients.backend import BackendClient
from app.core.config import settings
from app.core.exceptions import AppException
from app.core.security import AuthContext
from app.domains.social_auth.constants import LinkMode, Provider, SocialAuthError
from app.domains.social_auth.correlation import CorrelationStore
from app.domains.social_auth.flow import AttemptState
from app.domains.social_auth.initiator import (
    AuthorizationInitiator,
    bind_state,
    normalize_auth_url,
)


@pytest.fixture
def initiator(store: CorrelationStore, backend_client: BackendClient) -> AuthorizationInitiator:
    return AuthorizationInitiator(store, backend_client)


# ------------------------------------------------------------------------------
# URL 规范化
# ------------------------------------------------------------------------------


def test_bare_facebook_url_gets_dialog_path() -> None:
    url = normalize_auth_url(
        Provider.FACEBOOK, "https://www.facebook.com?client_id=42&scope=pages_show_list"
    )

    parsed = httpx.URL(url)
    assert parsed.path == f"/{settings.FACEBOOK_GRAPH_VERSION}/dialog/oauth"
    assert parsed.params["client_id"] == "42"
    assert parsed.params["scope"] == "pages_show_list"


def test_complete_facebook_url_untouched() -> None:
    original = "https://www.facebook.com/v19.0/dialog/oauth?client_id=42"
    assert normalize_auth_url(Provider.FACEBOOK, original) == original


def test_other_providers_untouched() -> None:
    original = "https://www.tiktok.com?client_key=abc"
    assert httpx.URL(normalize_auth_url(Provider.TIKTOK, original)).path in ("", "/")


def test_bind_state_appends_nonce() -> None:
    url, nonce = bind_state("https://provider.example.com/oauth?client_id=1", "n-123")

    assert nonce == "n-123"
    assert httpx.URL(url).params["state"] == "n-123"


def test_bind_state_keeps_upstream_state() -> None:
    url, nonce = bind_state("https://provider.example.com/oauth?state=upstream", "n-123")

    assert nonce == "upstream"
    assert httpx.URL(url).params.get_list("state") == ["upstream"]


# ------------------------------------------------------------------------------
# begin
# ------------------------------------------------------------------------------


async def test_begin_popup_persists_attempt(
    initiator: AuthorizationInitiator,
    store: CorrelationStore,
    fake_backend,
    auth: AuthContext,
) -> None:
    fake_backend.auth_url("facebook", "https://www.facebook.com?client_id=42")

    response = await initiator.begin(auth, Provider.FACEBOOK, LinkMode.POPUP)

    record = await store.get_record(auth.user_id, Provider.FACEBOOK)
    assert record is not None
    assert record.attempt_state == AttemptState.CALLBACK_PENDING
    assert response.attempt_state == AttemptState.CALLBACK_PENDING

    # 授权链接、上游请求与存储中的 nonce 是同一个
    auth_url = httpx.URL(response.auth_url)
    assert auth_url.params["state"] == record.nonce
    assert "/dialog/oauth" in auth_url.path
    sent = fake_backend.calls("GET", "/social-auth/facebook")[0]
    assert sent.url.params["state"] == record.nonce
    assert sent.headers["Authorization"] == auth.authorization

    attempt = await store.consume(record.nonce)
    assert attempt is not None
    assert attempt.mode == LinkMode.POPUP


async def test_begin_adopts_backend_minted_state(
    initiator: AuthorizationInitiator,
    store: CorrelationStore,
    fake_backend,
    auth: AuthContext,
) -> None:
    fake_backend.on(
        "GET",
        "/social-auth/instagram",
        data={"authUrl": "https://api.instagram.com/oauth/authorize?state=minted-by-backend"},
    )

    await initiator.begin(auth, Provider.INSTAGRAM, LinkMode.POPUP)

    record = await store.get_record(auth.user_id, Provider.INSTAGRAM)
    assert record is not None
    assert record.nonce == "minted-by-backend"


async def test_begin_redirect_defaults_return_path(
    initiator: AuthorizationInitiator,
    store: CorrelationStore,
    fake_backend,
    auth: AuthContext,
) -> None:
    fake_backend.auth_url("twitter")

    await initiator.begin(auth, Provider.TWITTER, LinkMode.REDIRECT)

    record = await store.get_record(auth.user_id, Provider.TWITTER)
    assert record is not None
    assert record.mode == LinkMode.REDIRECT
    assert record.return_path == settings.SOCIAL_AUTH_DEFAULT_RETURN_PATH


async def test_begin_failure_creates_no_attempt(
    initiator: AuthorizationInitiator,
    store: CorrelationStore,
    fake_backend,
    auth: AuthContext,
) -> None:
    fake_backend.on(
        "GET", "/social-auth/facebook", success=False, message="provider disabled", status_code=503
    )

    with pytest.raises(AppException) as exc_info:
        await initiator.begin(auth, Provider.FACEBOOK, LinkMode.POPUP)

    assert exc_info.value.code == SocialAuthError.AUTH_URL_FAILED.code
    assert exc_info.value.message == "provider disabled"
    assert await store.get_record(auth.user_id, Provider.FACEBOOK) is None


async def test_second_begin_supersedes_first(
    initiator: AuthorizationInitiator,
    store: CorrelationStore,
    fake_backend,
    auth: AuthContext,
) -> None:
    fake_backend.auth_url("facebook")

    first = await initiator.begin(auth, Provider.FACEBOOK, LinkMode.POPUP)
    second = await initiator.begin(auth, Provider.FACEBOOK, LinkMode.POPUP)

    first_nonce = httpx.URL(first.auth_url).params["state"]
    second_nonce = httpx.URL(second.auth_url).params["state"]
    assert first_nonce != second_nonce
    assert await store.consume(first_nonce) is None
    assert await store.consume(second_nonce) is not None


async def test_concurrent_begins_leave_one_live_nonce(
    initiator: AuthorizationInitiator,
    store: CorrelationStore,
    fake_backend,
    auth: AuthContext,
) -> None:
    fake_backend.auth_url("facebook")

    responses = await asyncio.gather(
        initiator.begin(auth, Provider.FACEBOOK, LinkMode.POPUP),
        initiator.begin(auth, Provider.FACEBOOK, LinkMode.POPUP),
    )

    nonces = [httpx.URL(r.auth_url).params["state"] for r in responses]
    record = await store.get_record(auth.user_id, Provider.FACEBOOK)
    assert record is not None
    assert record.nonce in nonces

    consumed = [await store.consume(nonce) for nonce in nonces]
    live = [attempt for attempt in consumed if attempt is not None]
    assert len(live) == 1
    assert live[0].nonce == record.nonce
