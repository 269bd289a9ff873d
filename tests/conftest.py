"""
File: tests/conftest.py
Description: Pytest 全局 Fixtures 配置 (Async + 独立测试资源)

外部资源全部替换为进程内实现：
1. PostgreSQL -> 每个测试一个 aiosqlite 文件库 (tmp_path)
2. Redis      -> fakeredis (FakeAsyncRedis)
3. 上游后端    -> httpx.MockTransport (FakeBackend 按路由返回预设响应并记录请求)

HTTP 测试通过 httpx.AsyncClient(ASGITransport) 在进程内驱动应用，
并用 app.dependency_overrides 注入上述资源。

Author: jinmozhe
Created: 2025-11-26
Updated: 2026-03-02 (aiosqlite / fakeredis / MockTransport)
"""

import asyncio
import os
import sys
from collections.abc import AsyncGenerator, Callable
from pathlib import Path
from typing import Any

# ------------------------------------------------------------------------------
# Windows 平台特定修复 (必须在任何 async 操作之前)
# ------------------------------------------------------------------------------
if sys.platform == "win32":
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

# ------------------------------------------------------------------------------
# 1. 环境配置 (必须在导入 app 之前，Settings 在导入时实例化)
# ------------------------------------------------------------------------------
os.environ.setdefault("SECRET_KEY", "test-secret-key-for-social-link-orchestrator")
os.environ.setdefault("SQLALCHEMY_DATABASE_URI", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("BACKEND_SERVICE_TOKEN", "service-token")
os.environ.setdefault("FRONTEND_ORIGIN", "https://app.example.com")

import httpx
import pytest
import pytest_asyncio
from fakeredis import FakeAsyncRedis
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from app.api.deps import get_db
from app.clients.backend import BackendClient, get_backend_client
from app.core.redis import get_redis
from app.core.security import AuthContext, create_access_token
from app.db.models import Base, LinkedTarget, SocialAccount
from app.domains.social_auth.correlation import CorrelationStore
from app.domains.social_auth.notifier import CrossContextNotifier
from app.domains.social_auth.repository import (
    LinkedTargetRepository,
    SocialAccountRepository,
)
from app.domains.social_auth.service import SocialAuthService
from app.main import app

USER_ID = "user-1"
OTHER_USER_ID = "user-2"
BACKEND_BASE_URL = "http://backend.test/api"


# ------------------------------------------------------------------------------
# 2. 上游后端替身
# ------------------------------------------------------------------------------

Handler = Callable[[httpx.Request], httpx.Response]


class FakeBackend:
    """
    上游后端替身。
    按 (method, path) 注册响应；未注册的路由返回 404 信封。
    """

    def __init__(self) -> None:
        self.routes: dict[tuple[str, str], Handler] = {}
        self.requests: list[httpx.Request] = []

    def on(
        self,
        method: str,
        path: str,
        *,
        data: Any = None,
        success: bool = True,
        message: str | None = None,
        status_code: int = 200,
        handler: Handler | None = None,
    ) -> None:
        if handler is None:
            body: dict[str, Any] = {"success": success, "data": data}
            if message is not None:
                body["message"] = message

            def handler(request: httpx.Request) -> httpx.Response:
                return httpx.Response(status_code, json=body)

        self.routes[(method.upper(), path)] = handler

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path.removeprefix("/api")
        handler = self.routes.get((request.method, path))
        if handler is None:
            return httpx.Response(404, json={"success": False, "message": "not found"})
        return handler(request)

    def calls(self, method: str, path: str) -> list[httpx.Request]:
        return [
            r
            for r in self.requests
            if r.method == method.upper() and r.url.path.removeprefix("/api") == path
        ]

    @staticmethod
    def page(target_id: str, name: str, category: str | None = None) -> dict[str, Any]:
        """构造上游返回的 Page"""
        return {"providerTargetId": target_id, "name": name, "type": "page", "category": category}

    # --- 常用上游响应 ---

    def auth_url(self, provider: str = "facebook", url: str | None = None) -> None:
        self.on(
            "GET",
            f"/social-auth/{provider}",
            data={"authUrl": url or f"https://{provider}.example.com/oauth?client_id=abc"},
        )

    def exchange(
        self,
        provider: str = "facebook",
        account_id: str = "fb-account-1",
        available_targets: list[dict[str, Any]] | None = None,
    ) -> None:
        data: dict[str, Any] = {
            "socialAccount": {
                "id": "backend-account-1",
                "provider": provider,
                "providerAccountId": account_id,
                "displayName": "Jane Doe",
                "accessToken": "secret-access-token",
            }
        }
        if available_targets is not None:
            data["availableTargets"] = available_targets
        self.on("GET", f"/social-auth/{provider}/callback", data=data)

    def targets(self, targets: list[dict[str, Any]], provider: str = "facebook") -> None:
        self.on("GET", f"/social-auth/{provider}/targets", data={"targets": targets})


# ------------------------------------------------------------------------------
# 3. 资源 Fixtures
# ------------------------------------------------------------------------------


@pytest_asyncio.fixture
async def db_engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    """每个测试一个独立的 SQLite 文件库"""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(db_engine: AsyncEngine) -> AsyncGenerator[AsyncSession, None]:
    async_session_factory = async_sessionmaker(
        bind=db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )
    async with async_session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def redis() -> AsyncGenerator[FakeAsyncRedis, None]:
    client = FakeAsyncRedis(decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()


@pytest.fixture
def fake_backend() -> FakeBackend:
    return FakeBackend()


@pytest_asyncio.fixture
async def backend_client(fake_backend: FakeBackend) -> AsyncGenerator[BackendClient, None]:
    http = httpx.AsyncClient(
        transport=httpx.MockTransport(fake_backend.handle), base_url=BACKEND_BASE_URL
    )
    yield BackendClient(http)
    await http.aclose()


# ------------------------------------------------------------------------------
# 4. 领域 Fixtures
# ------------------------------------------------------------------------------


@pytest.fixture
def auth() -> AuthContext:
    return AuthContext(user_id=USER_ID, bearer=create_access_token(USER_ID))


@pytest.fixture
def other_auth() -> AuthContext:
    return AuthContext(user_id=OTHER_USER_ID, bearer=create_access_token(OTHER_USER_ID))


@pytest.fixture
def store(redis: FakeAsyncRedis) -> CorrelationStore:
    return CorrelationStore(redis)


@pytest.fixture
def account_repo(db_session: AsyncSession) -> SocialAccountRepository:
    return SocialAccountRepository(model=SocialAccount, session=db_session)


@pytest.fixture
def target_repo(db_session: AsyncSession) -> LinkedTargetRepository:
    return LinkedTargetRepository(model=LinkedTarget, session=db_session)


@pytest.fixture
def service(
    account_repo: SocialAccountRepository,
    target_repo: LinkedTargetRepository,
    store: CorrelationStore,
    backend_client: BackendClient,
) -> SocialAuthService:
    return SocialAuthService(
        account_repo=account_repo,
        target_repo=target_repo,
        store=store,
        backend=backend_client,
        notifier=CrossContextNotifier("https://app.example.com"),
    )


# ------------------------------------------------------------------------------
# 5. HTTP Fixtures
# ------------------------------------------------------------------------------


@pytest.fixture
def auth_headers(auth: AuthContext) -> dict[str, str]:
    return {"Authorization": auth.authorization}


@pytest.fixture
def other_auth_headers(other_auth: AuthContext) -> dict[str, str]:
    return {"Authorization": other_auth.authorization}


@pytest_asyncio.fixture
async def client(
    db_session: AsyncSession,
    redis: FakeAsyncRedis,
    backend_client: BackendClient,
) -> AsyncGenerator[AsyncClient, None]:
    """获取异步 HTTP 客户端 (数据库 / Redis / 上游均已替换)"""

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        yield db_session

    async def override_get_redis() -> AsyncGenerator[FakeAsyncRedis, None]:
        yield redis

    async def override_get_backend_client() -> AsyncGenerator[BackendClient, None]:
        yield backend_client

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_redis] = override_get_redis
    app.dependency_overrides[get_backend_client] = override_get_backend_client

    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test"  # type: ignore
    ) as ac:
        yield ac

    app.dependency_overrides.clear()
