"""
File: app/domains/social_auth/notifier.py
Description: 跨上下文通知 (Cross-Context Notifier)

回调对账完成后，把结果送回发起授权的页面：
1. popup 模式: 渲染桥接页 (templates/social_auth/bridge.html)，脚本向 window.opener 发送 postMessage
   ({type: SOCIAL_AUTH_SUCCESS | SOCIAL_AUTH_ERROR, provider, data | error})，
   targetOrigin 固定为前端站点 origin (从不使用 "*")，随后关闭弹窗；
   若 opener 已不存在，则在弹窗内跳转回前端页面
2. redirect 模式: 303 跳回 return_path，只在 URL 上携带一次性的结果 ID，
   授权码与错误详情不进入浏览器历史

桥接页由 Jinja2 渲染：文本走 autoescape，嵌入脚本的值一律经 tojson 过滤器输出。
响应均设置 Cache-Control: no-store 与 Referrer-Policy: no-referrer。

Author: jinmozhe
Created: 2026-03-02
Updated: 2026-03-09 (Jinja2 模板渲染桥接页)
"""

from pathlib import Path
from typing import Any

import httpx
from fastapi import Request
from fastapi.responses import HTMLResponse, RedirectResponse
from fastapi.templating import Jinja2Templates
from starlette.status import HTTP_303_SEE_OTHER

from app.core.config import settings
from app.domains.social_auth.constants import BridgeMessageType, LinkMode
from app.domains.social_auth.schemas import CallbackResult

TEMPLATE_DIR = Path(__file__).resolve().parents[2] / "templates"
BRIDGE_TEMPLATE = "social_auth/bridge.html"

templates = Jinja2Templates(directory=TEMPLATE_DIR)

NO_STORE_HEADERS = {
    "Cache-Control": "no-store",
    "Pragma": "no-cache",
    "Referrer-Policy": "no-referrer",
}

# 前端页面读取结果时使用的查询参数
RESULT_PARAM = "linkResult"
ERROR_PARAM = "linkError"


def build_message(result: CallbackResult, result_id: str | None = None) -> dict[str, Any]:
    """构造 popup -> opener 的消息体"""
    if result.is_success:
        data = result.model_dump(
            mode="json", include={"social_account", "available_targets"}
        )
        data["result_id"] = result_id
        return {
            "type": BridgeMessageType.SUCCESS.value,
            "provider": result.provider.value,
            "data": data,
        }
    return {
        "type": BridgeMessageType.ERROR.value,
        "provider": result.provider.value,
        "error": {"code": result.error_code, "message": result.reason},
    }


class CrossContextNotifier:
    """
    跨上下文通知组件。
    """

    def __init__(self, frontend_origin: str = settings.frontend_origin):
        self.frontend_origin = frontend_origin.rstrip("/")

    def landing_url(self, result: CallbackResult, result_id: str | None) -> str:
        """前端落地地址：有结果 ID 时携带结果 ID，否则只携带错误码"""
        path = result.return_path or settings.SOCIAL_AUTH_DEFAULT_RETURN_PATH
        url = httpx.URL(f"{self.frontend_origin}{path}")
        if result_id:
            return str(url.copy_merge_params({RESULT_PARAM: result_id}))
        if result.error_code:
            return str(url.copy_merge_params({ERROR_PARAM: result.error_code}))
        return str(url)

    def deliver(
        self, request: Request, result: CallbackResult, result_id: str | None = None
    ) -> HTMLResponse | RedirectResponse:
        """
        按 LinkAttempt 的 mode 投递结果。
        mode 未知 (会话无效，找不到 LinkAttempt) 时按 popup 处理，
        桥接页自身会在没有 opener 时退化为页面跳转。
        """
        if result.mode == LinkMode.REDIRECT:
            return self.redirect(result, result_id)
        return self.bridge_page(request, result, result_id)

    def redirect(self, result: CallbackResult, result_id: str | None) -> RedirectResponse:
        return RedirectResponse(
            self.landing_url(result, result_id),
            status_code=HTTP_303_SEE_OTHER,
            headers=NO_STORE_HEADERS,
        )

    def bridge_page(
        self, request: Request, result: CallbackResult, result_id: str | None
    ) -> HTMLResponse:
        if result.is_success:
            title, text = "Account connected", "Account connected. You can close this window."
        else:
            title = "Connection failed"
            text = f"Connection failed: {result.reason or result.error_code}"

        return templates.TemplateResponse(
            request=request,
            name=BRIDGE_TEMPLATE,
            context={
                "title": title,
                "text": text,
                "message": build_message(result, result_id),
                "origin": self.frontend_origin,
                "fallback": self.landing_url(result, result_id),
            },
            headers=NO_STORE_HEADERS,
        )
