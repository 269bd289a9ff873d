"""
File: tests/unit/test_notifier.py
Description: 跨上下文通知单元测试 (桥接页 / 303 跳转)

Author: jinmozhe
Created: 2026-03-02
"""

from datetime import UTC, datetime
from uuid import uuid4

import httpx
from starlette.requests import Request

from app.domains.social_auth.constants import (
    BridgeMessageType,
    CallbackOutcome,
    LinkMode,
    Provider,
    SocialAuthError,
)
from app.domains.social_auth.flow import AttemptState
from app.domains.social_auth.notifier import (
    BRIDGE_TEMPLATE,
    CrossContextNotifier,
    build_message,
)
from app.domains.social_auth.schemas import CallbackResult, SocialAccountRead

ORIGIN = "https://app.example.com"


def _request() -> Request:
    return Request(
        {
            "type": "http",
            "method": "GET",
            "path": "/api/v1/social-auth/facebook/callback",
            "query_string": b"",
            "headers": [],
        }
    )


def _success(mode: LinkMode = LinkMode.POPUP, return_path: str | None = None) -> CallbackResult:
    return CallbackResult(
        outcome=CallbackOutcome.SUCCESS,
        provider=Provider.FACEBOOK,
        attempt_state=AttemptState.ACCOUNT_LINKED,
        mode=mode,
        return_path=return_path,
        social_account=SocialAccountRead(
            id=uuid4(),
            provider="facebook",
            provider_account_id="fb-account-1",
            display_name="Jane Doe",
            linked_at=datetime.now(UTC),
        ),
    )


def test_bridge_page_posts_to_frontend_origin_only() -> None:
    notifier = CrossContextNotifier(ORIGIN + "/")

    response = notifier.deliver(_request(), _success(), result_id="r-1")
    body = response.body.decode()

    assert response.status_code == 200
    assert f'var targetOrigin = "{ORIGIN}";' in body
    assert '"*"' not in body
    assert BridgeMessageType.SUCCESS.value in body
    assert "fb-account-1" in body


def test_bridge_page_escapes_untrusted_reason() -> None:
    notifier = CrossContextNotifier(ORIGIN)
    result = CallbackResult.failure(
        Provider.FACEBOOK,
        SocialAuthError.AUTHORIZATION_DENIED,
        "</script><script>alert(1)</script>",
        mode=LinkMode.POPUP,
    )

    body = notifier.deliver(_request(), result).body.decode()

    assert "<script>alert(1)" not in body
    assert BridgeMessageType.ERROR.value in body
    assert body.count("<script>") == 1


def test_unknown_mode_falls_back_to_bridge_page() -> None:
    notifier = CrossContextNotifier(ORIGIN)
    result = CallbackResult.failure(Provider.TIKTOK, SocialAuthError.NONCE_INVALID)

    response = notifier.deliver(_request(), result)

    assert response.media_type == "text/html"
    assert "linkError=social_auth.nonce_invalid" in response.body.decode()


def test_redirect_carries_result_id_only() -> None:
    notifier = CrossContextNotifier(ORIGIN)

    response = notifier.deliver(
        _request(), _success(LinkMode.REDIRECT, "/settings/social"), result_id="r-1"
    )

    assert response.status_code == 303
    location = httpx.URL(response.headers["location"])
    assert location.host == "app.example.com"
    assert location.path == "/settings/social"
    assert dict(location.params) == {"linkResult": "r-1"}


def test_redirect_without_result_carries_error_code() -> None:
    notifier = CrossContextNotifier(ORIGIN)
    result = CallbackResult.failure(
        Provider.FACEBOOK,
        SocialAuthError.EXCHANGE_FAILED,
        "code already used",
        mode=LinkMode.REDIRECT,
        return_path="/settings/social",
    )

    response = notifier.deliver(_request(), result)

    location = httpx.URL(response.headers["location"])
    assert dict(location.params) == {"linkError": SocialAuthError.EXCHANGE_FAILED.code}
    assert "code already used" not in response.headers["location"]


def test_responses_are_never_cached() -> None:
    notifier = CrossContextNotifier(ORIGIN)

    for response in (
        notifier.deliver(_request(), _success()),
        notifier.deliver(_request(), _success(LinkMode.REDIRECT), result_id="r-1"),
    ):
        assert response.headers["cache-control"] == "no-store"
        assert response.headers["referrer-policy"] == "no-referrer"


def test_build_message_shapes() -> None:
    ok = build_message(_success(), result_id="r-1")
    failed = build_message(
        CallbackResult.failure(Provider.FACEBOOK, SocialAuthError.CALLBACK_MALFORMED, "state parameter missing")
    )

    assert ok["type"] == "SOCIAL_AUTH_SUCCESS"
    assert ok["provider"] == "facebook"
    assert ok["data"]["result_id"] == "r-1"
    assert ok["data"]["social_account"]["provider_account_id"] == "fb-account-1"
    assert failed == {
        "type": "SOCIAL_AUTH_ERROR",
        "provider": "facebook",
        "error": {
            "code": SocialAuthError.CALLBACK_MALFORMED.code,
            "message": "state parameter missing",
        },
    }


def test_bridge_page_rendered_from_template() -> None:
    notifier = CrossContextNotifier(ORIGIN)
    result = CallbackResult.failure(
        Provider.FACEBOOK,
        SocialAuthError.EXCHANGE_FAILED,
        'bad "quote" & <tag>',
        mode=LinkMode.POPUP,
    )

    response = notifier.deliver(_request(), result)
    body = response.body.decode()

    assert response.template.name == BRIDGE_TEMPLATE
    assert response.context["origin"] == ORIGIN
    # 文本走 HTML 转义，脚本内的值走 tojson 转义
    assert "&lt;tag&gt;" in body
    assert "\\u003ctag\\u003e" in body
    assert "<tag>" not in body
