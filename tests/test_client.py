"""Tests for the platform HTTP client and credential providers.

Covers:
- Auth header per platform convention (bearer, custom header, site header)
- 401 triggers exactly one refresh and one repeat
- Error statuses raise HTTPError with the right retryable flag
- Transport failures raise PlatformUnavailableError
- Connection test against the health endpoint
- OAuth client-credentials token caching and refresh
"""

from __future__ import annotations

import httpx
import pytest

from src.cms_bridge.sync.client import (
    CredentialProvider,
    OAuthClientCredentialsProvider,
    PlatformClient,
)
from src.cms_bridge.sync.exceptions import HTTPError, PlatformUnavailableError


class CountingProvider(CredentialProvider):
    """Hands out token-N, bumping N on every refresh."""

    def __init__(self) -> None:
        self.refreshes = 0

    async def get_token(self, platform: str, site_id: str) -> str:
        return f"token-{self.refreshes}"

    async def refresh(self, platform: str, site_id: str) -> str:
        self.refreshes += 1
        return f"token-{self.refreshes}"


# ── Headers ──────────────────────────────────────────────────────────────────


class TestAuthHeaders:
    async def test_bearer_token(self, make_config, make_client, fake_api):
        client = make_client(make_config("wordpress"), token="wp-token")
        await client.request("GET", "/wp-json/wp/v2/posts")

        request = fake_api.requests[0]
        assert request.headers["Authorization"] == "Bearer wp-token"
        assert str(request.url) == "https://wordpress.test/wp-json/wp/v2/posts"

    async def test_shopify_access_token_header(self, make_config, make_client, fake_api):
        client = make_client(make_config("shopify"), token="shpat_123")
        await client.request("GET", "/shop.json")

        assert fake_api.requests[0].headers["X-Shopify-Access-Token"] == "shpat_123"
        assert "Authorization" not in fake_api.requests[0].headers

    async def test_wix_site_header(self, make_config, make_client, fake_api):
        client = make_client(make_config("wix", site_id="site-42"), token="wix-key")
        await client.request("GET", "/blog/v3/draft-posts")

        headers = fake_api.requests[0].headers
        assert headers["Authorization"] == "wix-key"
        assert headers["wix-site-id"] == "site-42"

    async def test_json_body_sent(self, make_config, make_client, fake_api):
        client = make_client(make_config("shopify"))
        await client.request("POST", "/products.json", {"product": {"title": "Hat"}})

        assert fake_api.body() == {"product": {"title": "Hat"}}


# ── Responses ────────────────────────────────────────────────────────────────


class TestResponses:
    async def test_returns_decoded_json(self, make_config, make_client, fake_api):
        fake_api.respond(201, {"product": {"id": 1}})
        client = make_client(make_config("shopify"))

        assert await client.request("POST", "/products.json", {}) == {"product": {"id": 1}}

    async def test_empty_body_returns_none(self, make_config, make_client, fake_api):
        fake_api.respond(204)
        client = make_client(make_config("shopify"))

        assert await client.request("DELETE", "/products/1.json") is None

    @pytest.mark.parametrize(("status_code", "retryable"), [(500, True), (503, True), (429, True), (404, False), (422, False)])
    async def test_error_status_raises(self, make_config, make_client, fake_api, status_code, retryable):
        fake_api.respond(status_code, {"errors": "nope"})
        client = make_client(make_config("shopify"))

        with pytest.raises(HTTPError) as exc_info:
            await client.request("GET", "/products/1.json")
        assert exc_info.value.status_code == status_code
        assert exc_info.value.retryable is retryable

    async def test_transport_error_is_unavailable(self, make_config):
        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        config = make_config("shopify")
        client = PlatformClient(config, CountingProvider(), transport=httpx.MockTransport(refuse))

        with pytest.raises(PlatformUnavailableError) as exc_info:
            await client.request("GET", "/shop.json")
        assert exc_info.value.retryable is True


class TestUnauthorizedRefresh:
    """A 401 refreshes credentials once and repeats once."""

    async def test_refresh_then_success(self, make_config, fake_api):
        fake_api.respond(401, {"errors": "expired"})
        fake_api.respond(200, {"ok": True})
        provider = CountingProvider()
        client = PlatformClient(make_config("wordpress"), provider, transport=fake_api.transport)

        assert await client.request("GET", "/wp-json/wp/v2/posts") == {"ok": True}
        assert provider.refreshes == 1
        assert len(fake_api.requests) == 2
        assert fake_api.requests[1].headers["Authorization"] == "Bearer token-1"

    async def test_second_401_surfaces(self, make_config, fake_api):
        fake_api.always(401, {"errors": "denied"})
        provider = CountingProvider()
        client = PlatformClient(make_config("wordpress"), provider, transport=fake_api.transport)

        with pytest.raises(HTTPError) as exc_info:
            await client.request("GET", "/wp-json/wp/v2/posts")
        assert exc_info.value.status_code == 401
        assert provider.refreshes == 1
        assert len(fake_api.requests) == 2


class TestConnectionCheck:
    async def test_connected(self, make_config, make_client, fake_api):
        result = await make_client(make_config("shopify")).test_connection()
        assert result["connected"] is True
        assert "latency_ms" in result
        assert fake_api.requests[0].url.path == "/shop.json"

    async def test_not_connected(self, make_config, make_client, fake_api):
        fake_api.always(500, {"errors": "down"})
        result = await make_client(make_config("shopify")).test_connection()
        assert result["connected"] is False
        assert "500" in result["error"]


# ── OAuth ────────────────────────────────────────────────────────────────────


class TestOAuthProvider:
    """Client-credentials grant with cached tokens."""

    async def test_token_cached_until_refresh(self, fake_api):
        fake_api.always(200, {"access_token": "abc", "expires_in": 3600})
        provider = OAuthClientCredentialsProvider(
            token_url="https://optimizely.test/oauth2/token",
            client_id="client",
            client_secret="secret",
            transport=fake_api.transport,
        )

        assert await provider.get_token("optimizely", "default") == "abc"
        assert await provider.get_token("optimizely", "default") == "abc"
        assert len(fake_api.requests) == 1

        request = fake_api.requests[0]
        assert request.method == "POST"
        assert b"grant_type=client_credentials" in request.content
        assert request.headers["Authorization"].startswith("Basic ")

        await provider.refresh("optimizely", "default")
        assert len(fake_api.requests) == 2

    async def test_expired_token_refetched(self, fake_api):
        fake_api.always(200, {"access_token": "short", "expires_in": 30})
        provider = OAuthClientCredentialsProvider(
            token_url="https://optimizely.test/oauth2/token",
            client_id="client",
            client_secret="secret",
            transport=fake_api.transport,
        )

        await provider.get_token("optimizely", "default")
        await provider.get_token("optimizely", "default")
        # expires_in below the safety margin is never cached
        assert len(fake_api.requests) == 2

    async def test_token_endpoint_error(self, fake_api):
        fake_api.always(401, {"error": "invalid_client"})
        provider = OAuthClientCredentialsProvider(
            token_url="https://optimizely.test/oauth2/token",
            client_id="client",
            client_secret="wrong",
            transport=fake_api.transport,
        )

        with pytest.raises(HTTPError):
            await provider.get_token("optimizely", "default")
