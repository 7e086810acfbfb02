"""
外部 Token 发放服务客户端
用于动态生成 Token 的商品发货

管理员 JWT 有效期 24h，缓存在进程内并提前 1h 刷新；
调用返回 401 时立即作废缓存并重新登录一次
"""
from pydantic import BaseModel
from typing import Callable, Optional, Union
from shop.core.config import get_settings
from shop.core.exceptions import TokenIssuerError
import asyncio
import threading
import time
import httpx
import logging

logger = logging.getLogger(__name__)

# code=2 表示用户不存在（尚未在发放服务注册）
USER_NOT_REGISTERED_CODE = 2


class CredentialCache:
    """进程级管理员凭证缓存（线程安全）"""

    def __init__(self, refresh_margin: float, clock: Callable[[], float] = time.time):
        self._lock = threading.Lock()
        self._token: Optional[str] = None
        self._expires_at: float = 0.0
        self._refresh_margin = refresh_margin
        self._clock = clock

    def get(self) -> Optional[str]:
        """返回仍在有效期内的凭证；进入刷新窗口后作废并返回 None"""
        with self._lock:
            if self._token and self._clock() < self._expires_at - self._refresh_margin:
                return self._token
            self._token = None
            self._expires_at = 0.0
            return None

    def store(self, token: str, ttl: float) -> None:
        with self._lock:
            self._token = token
            self._expires_at = self._clock() + ttl

    def invalidate(self) -> None:
        with self._lock:
            self._token = None
            self._expires_at = 0.0


class IssueResult(BaseModel):
    """Token 创建结果"""
    success: bool
    token: Optional[str] = None
    token_id: Optional[str] = None
    username: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[int] = None
    http_status: Optional[int] = None

    @property
    def user_not_registered(self) -> bool:
        return self.error_code == USER_NOT_REGISTERED_CODE or self.http_status == 404


class TokenIssuerClient:
    """Token 发放服务客户端"""

    def __init__(
        self,
        base_url: Optional[str] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.time,
    ):
        settings = get_settings()
        self.base_url = (base_url if base_url is not None else settings.token_issuer_url).rstrip("/")
        self.username = username if username is not None else settings.token_issuer_username
        self.password = password if password is not None else settings.token_issuer_password
        self.credential_ttl = settings.token_credential_ttl_hours * 3600
        self.credentials = CredentialCache(
            refresh_margin=settings.token_refresh_margin_minutes * 60,
            clock=clock,
        )
        self.client = httpx.AsyncClient(
            timeout=timeout or settings.token_issuer_timeout,
            transport=transport,
        )
        self._login_lock = asyncio.Lock()

    def is_configured(self) -> bool:
        """检查发放服务是否已配置"""
        return bool(self.base_url and self.username and self.password)

    async def _login(self) -> str:
        if not self.is_configured():
            raise TokenIssuerError("token issuer credentials not configured")

        response = await self.client.post(
            f"{self.base_url}/api/auth/login",
            json={"username": self.username, "password": self.password},
        )
        if response.status_code != 200:
            raise TokenIssuerError(f"token issuer login failed: {response.status_code}")

        data = response.json()
        token = (data.get("data") or {}).get("token")
        if data.get("code") != 0 or not token:
            raise TokenIssuerError(f"token issuer login failed: {data.get('msg') or 'Unknown error'}")

        self.credentials.store(token, self.credential_ttl)
        logger.info("Token 发放服务管理员登录成功")
        return token

    async def get_credential(self) -> str:
        """获取管理员 JWT（优先使用缓存）"""
        token = self.credentials.get()
        if token:
            return token
        async with self._login_lock:
            # 等锁期间可能已被其他协程刷新
            return self.credentials.get() or await self._login()

    async def _post_token(self, user_id: Union[str, int], name: str) -> httpx.Response:
        jwt = await self.get_credential()
        return await self.client.post(
            f"{self.base_url}/api/admin/tokens/by-linuxdo/{user_id}",
            json={"name": name},
            headers={"Authorization": f"Bearer {jwt}"},
        )

    async def create_token(self, user_id: Union[str, int], name: str) -> IssueResult:
        """
        为外部用户创建 Token

        Args:
            user_id: 用户在发放服务中的外部 ID
            name: Token 名称/备注

        失败不抛异常，统一返回 success=False 的结果
        """
        try:
            response = await self._post_token(user_id, name)
            if response.status_code == 401:
                # 凭证被服务端提前作废
                self.credentials.invalidate()
                response = await self._post_token(user_id, name)

            if response.status_code == 404:
                return IssueResult(success=False, error="user not found", http_status=404)

            data = response.json()
            payload = data.get("data") or {}
            if data.get("code") == 0 and payload.get("token"):
                return IssueResult(
                    success=True,
                    token=payload["token"],
                    token_id=str(payload["id"]) if payload.get("id") is not None else None,
                    username=payload.get("username"),
                    http_status=response.status_code,
                )

            return IssueResult(
                success=False,
                error=data.get("msg") or "Failed to create token",
                error_code=data.get("code"),
                http_status=response.status_code,
            )
        except (httpx.HTTPError, ValueError, TokenIssuerError) as e:
            logger.error(f"Token 发放服务调用异常: {e}")
            return IssueResult(success=False, error=str(e) or type(e).__name__)

    async def aclose(self):
        await self.client.aclose()


# 创建服务单例
token_issuer = TokenIssuerClient()
