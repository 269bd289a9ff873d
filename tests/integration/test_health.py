"""
File: tests/integration/test_health.py
Description: 健康检查与根路由集成测试

Author: jinmozhe
Created: 2025-11-26
Updated: 2026-03-02 (health 使用统一信封)
"""

from httpx import AsyncClient


async def test_health_check(client: AsyncClient) -> None:
    """
    测试：GET /health
    验证：
    1. 状态码 200
    2. 统一信封 code=success，data={"status": "ok"}
    3. 中间件仍然工作：响应头中存在 X-Request-ID
    """
    # 注意：/health 挂载在根路径，没有 /api/v1 前缀
    response = await client.get("/health")

    assert response.status_code == 200

    body = response.json()
    assert body["code"] == "success"
    assert body["data"] == {"status": "ok"}

    request_id_header = response.headers.get("X-Request-ID")
    assert request_id_header is not None
    assert request_id_header != ""


async def test_root_points_to_social_auth_api(client: AsyncClient) -> None:
    response = await client.get("/")

    assert response.status_code == 200
    assert response.json()["data"]["api_prefix"] == "/api/v1/social-auth"
