"""Tests for the token issuer client and its credential cache."""
import httpx

from shop.services.token_issuer import CredentialCache, TokenIssuerClient


class FakeClock:
    def __init__(self, now=1_000_000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class TestCredentialCache:
    """Tests for CredentialCache."""

    def test_empty_cache_returns_none(self):
        cache = CredentialCache(refresh_margin=3600)
        assert cache.get() is None

    def test_returns_token_until_refresh_window(self):
        clock = FakeClock()
        cache = CredentialCache(refresh_margin=3600, clock=clock)
        cache.store("jwt", ttl=24 * 3600)

        clock.advance(22 * 3600)
        assert cache.get() == "jwt"

        clock.advance(3600 + 1)
        assert cache.get() is None

    def test_invalidate_drops_token(self):
        cache = CredentialCache(refresh_margin=0)
        cache.store("jwt", ttl=3600)

        cache.invalidate()

        assert cache.get() is None


def make_client(handler, clock=None, **kwargs):
    params = dict(base_url="https://issuer.test/", username="admin", password="secret")
    params.update(kwargs)
    return TokenIssuerClient(
        transport=httpx.MockTransport(handler),
        clock=clock or FakeClock(),
        **params,
    )


class TestTokenIssuerClient:
    """Tests for TokenIssuerClient.create_token()."""

    async def test_creates_token_with_bearer_credential(self, issuer, issuer_server):
        result = await issuer.create_token("1001", "ldc-shop-O1")

        assert result.success is True
        assert result.token == "tok-1"
        assert result.token_id == "1"
        assert result.username == "user1001"
        assert issuer_server.token_requests[0]["authorization"] == "Bearer jwt-1"

    async def test_login_is_cached_between_calls(self, issuer, issuer_server):
        await issuer.create_token("1001", "a")
        await issuer.create_token("1001", "b")

        assert issuer_server.login_calls == 1

    async def test_refreshes_credential_before_expiry(self, issuer_server):
        clock = FakeClock()
        client = make_client(issuer_server.handler, clock=clock)
        try:
            await client.create_token("1001", "a")
            clock.advance(23 * 3600 + 60)
            await client.create_token("1001", "b")
        finally:
            await client.aclose()

        assert issuer_server.login_calls == 2
        assert issuer_server.token_requests[1]["authorization"] == "Bearer jwt-2"

    async def test_unauthorized_invalidates_and_retries_once(self, issuer, issuer_server):
        await issuer.create_token("1001", "a")
        issuer_server.revoke_next = True

        result = await issuer.create_token("1001", "b")

        assert result.success is True
        assert issuer_server.login_calls == 2

    async def test_unregistered_user_by_code(self, issuer):
        result = await issuer.create_token("2002", "a")

        assert result.success is False
        assert result.error_code == 2
        assert result.user_not_registered is True

    async def test_unregistered_user_by_http_404(self):
        def handler(request):
            if request.url.path == "/api/auth/login":
                return httpx.Response(200, json={"code": 0, "data": {"token": "jwt"}})
            return httpx.Response(404, text="not found")

        client = make_client(handler)
        try:
            result = await client.create_token("3003", "a")
        finally:
            await client.aclose()

        assert result.success is False
        assert result.user_not_registered is True

    async def test_server_error_is_not_unregistered(self, issuer, issuer_server):
        issuer_server.failures = [500]

        result = await issuer.create_token("1001", "a")

        assert result.success is False
        assert result.user_not_registered is False
        assert result.error == "internal error"

    async def test_network_error_returns_failure(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = make_client(handler)
        try:
            result = await client.create_token("1001", "a")
        finally:
            await client.aclose()

        assert result.success is False
        assert "connection refused" in result.error

    async def test_login_rejected_returns_failure(self):
        def handler(request):
            return httpx.Response(200, json={"code": 1, "msg": "bad password"})

        client = make_client(handler)
        try:
            result = await client.create_token("1001", "a")
        finally:
            await client.aclose()

        assert result.success is False
        assert "bad password" in result.error

    async def test_unconfigured_client_fails_without_requests(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200, json={})

        client = make_client(handler, base_url="", username="", password="")
        try:
            assert client.is_configured() is False
            result = await client.create_token("1001", "a")
        finally:
            await client.aclose()

        assert result.success is False
        assert calls == []
