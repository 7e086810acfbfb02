import json
import os
import tempfile

# 必须在导入 shop 之前设置，避免默认库落在工作目录
_tmp_dir = tempfile.mkdtemp(prefix="shop-test-")
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_tmp_dir}/shop.db")
os.environ.setdefault("ENABLE_SCHEDULER", "false")
os.environ.setdefault("TOKEN_ISSUER_URL", "")
os.environ.setdefault("WEBHOOK_SECRET", "")

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession

from shop.core.database import Base, PoolCapabilities
from shop.services.fulfillment import FulfillmentService
from shop.services.token_issuer import TokenIssuerClient


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'shop.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def capabilities():
    """SQLite 测试库：有预占字段，不支持 SKIP LOCKED"""
    return PoolCapabilities(supports_reservation=True, supports_skip_locked=False)


class FakeIssuerServer:
    """模拟 Token 发放服务"""

    def __init__(self):
        self.login_calls = 0
        self.token_requests = []
        self.registered_users = {"1001"}
        # 依次返回的失败响应，例如 [None, 500] 表示第二次创建返回 500
        self.failures = []
        self.revoke_next = False
        self._issued = 0

    def handler(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/api/auth/login":
            self.login_calls += 1
            return httpx.Response(200, json={"code": 0, "data": {"token": f"jwt-{self.login_calls}"}})

        if request.url.path.startswith("/api/admin/tokens/by-linuxdo/"):
            if self.revoke_next:
                self.revoke_next = False
                return httpx.Response(401, json={"code": 401, "msg": "unauthorized"})

            user_id = request.url.path.rsplit("/", 1)[-1]
            self.token_requests.append({
                "user_id": user_id,
                "name": json.loads(request.content)["name"],
                "authorization": request.headers.get("Authorization"),
            })

            failure = self.failures.pop(0) if self.failures else None
            if failure:
                return httpx.Response(failure, json={"code": 500, "msg": "internal error"})

            if user_id not in self.registered_users:
                return httpx.Response(200, json={"code": 2, "msg": "user not found"})

            self._issued += 1
            return httpx.Response(200, json={
                "code": 0,
                "data": {"id": self._issued, "token": f"tok-{self._issued}", "username": f"user{user_id}"},
            })

        return httpx.Response(404, json={"code": 404, "msg": "not found"})


@pytest.fixture
def issuer_server():
    return FakeIssuerServer()


@pytest_asyncio.fixture
async def issuer(issuer_server):
    client = TokenIssuerClient(
        base_url="https://issuer.test",
        username="admin",
        password="secret",
        transport=httpx.MockTransport(issuer_server.handler),
    )
    yield client
    await client.aclose()


@pytest.fixture
def service(session_factory, issuer, capabilities):
    return FulfillmentService(session_factory=session_factory, issuer=issuer, capabilities=capabilities)
