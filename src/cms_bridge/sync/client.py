"""Async HTTP client for platform REST APIs, plus credential providers.

PlatformClient adds platform-specific auth headers from an injected
CredentialProvider keyed by (platform, site_id). A 401 triggers exactly
one credential refresh and one repeat of the request; any other error
status raises HTTPError. Connection failures and timeouts raise
PlatformUnavailableError. Retrying is the caller's concern (RetryPolicy).

An httpx.AsyncClient is opened per request so the client holds no
connection state between queue runs.
"""

from __future__ import annotations

import asyncio
import base64
import time
from abc import ABC, abstractmethod
from typing import Any

import httpx
import structlog

from src.cms_bridge.sync.exceptions import HTTPError, InvalidPayloadError, PlatformUnavailableError
from src.cms_bridge.sync.schemas import PlatformConfig

logger = structlog.get_logger(__name__)


# ── Credential Providers ────────────────────────────────────────────────────


class CredentialProvider(ABC):
    """Source of API credentials for a (platform, site_id) pair.

    Methods:
        get_token: Current token, fetching one if none is cached.
        refresh: Discard any cached token and obtain a fresh one.
    """

    @abstractmethod
    async def get_token(self, platform: str, site_id: str) -> str:
        """Return the current credential."""

    @abstractmethod
    async def refresh(self, platform: str, site_id: str) -> str:
        """Force a new credential."""


class StaticCredentialProvider(CredentialProvider):
    """Long-lived tokens configured up front (API keys, app passwords)."""

    def __init__(self, tokens: dict[tuple[str, str], str] | None = None) -> None:
        self._tokens = dict(tokens or {})

    def set_token(self, platform: str, site_id: str, token: str) -> None:
        self._tokens[(platform, site_id)] = token

    async def get_token(self, platform: str, site_id: str) -> str:
        return self._tokens.get((platform, site_id), "")

    async def refresh(self, platform: str, site_id: str) -> str:
        # Static tokens cannot be renewed; the repeat request reuses it.
        return await self.get_token(platform, site_id)


class OAuthClientCredentialsProvider(CredentialProvider):
    """OAuth2 client-credentials grant with an in-memory cached access token.

    POSTs ``grant_type=client_credentials`` to ``token_url`` with HTTP Basic
    client authentication and caches the access token until shortly before
    ``expires_in`` elapses.

    Args:
        token_url: Token endpoint (e.g. ``{api_url}/oauth2/token``).
        client_id: OAuth client id.
        client_secret: OAuth client secret.
        scope: Space-separated scopes to request.
        timeout: Request timeout in seconds.
        transport: Optional httpx transport (tests use httpx.MockTransport).
    """

    EXPIRY_MARGIN_SECONDS = 60

    def __init__(
        self,
        token_url: str,
        client_id: str,
        client_secret: str,
        scope: str = "cms:read cms:write",
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._token_url = token_url
        self._client_id = client_id
        self._client_secret = client_secret
        self._scope = scope
        self._timeout = timeout
        self._transport = transport
        self._tokens: dict[tuple[str, str], tuple[str, float]] = {}
        self._lock = asyncio.Lock()

    async def get_token(self, platform: str, site_id: str) -> str:
        cached = self._tokens.get((platform, site_id))
        if cached and cached[1] > time.monotonic():
            return cached[0]
        return await self.refresh(platform, site_id)

    async def refresh(self, platform: str, site_id: str) -> str:
        async with self._lock:
            basic = base64.b64encode(f"{self._client_id}:{self._client_secret}".encode()).decode()
            try:
                async with httpx.AsyncClient(
                    timeout=self._timeout, transport=self._transport
                ) as client:
                    response = await client.post(
                        self._token_url,
                        data={"grant_type": "client_credentials", "scope": self._scope},
                        headers={"Authorization": f"Basic {basic}"},
                    )
            except httpx.TransportError as exc:
                raise PlatformUnavailableError(f"Token endpoint unreachable: {exc}") from exc

            if response.status_code >= 400:
                raise HTTPError(response.status_code, response.text)

            data = response.json()
            token = data["access_token"]
            expires_in = int(data.get("expires_in", 3600))
            self._tokens[(platform, site_id)] = (
                token,
                time.monotonic() + max(0, expires_in - self.EXPIRY_MARGIN_SECONDS),
            )
            logger.info("oauth.token_refreshed", platform=platform, expires_in=expires_in)
            return token


# ── Platform Client ─────────────────────────────────────────────────────────


class PlatformClient:
    """REST client for one platform.

    Args:
        config: PlatformConfig supplying base URL, auth scheme and timeout.
        credentials: CredentialProvider for this platform's site.
        transport: Optional httpx transport override.
    """

    def __init__(
        self,
        config: PlatformConfig,
        credentials: CredentialProvider,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._config = config
        self._credentials = credentials
        self._transport = transport

    async def request(self, method: str, path: str, body: dict[str, Any] | None = None) -> Any:
        """Send a request and return the decoded JSON body (None when empty).

        Raises:
            HTTPError: Non-success status (after one refresh on 401).
            PlatformUnavailableError: Connection failure or timeout.
            InvalidPayloadError: Success status with an undecodable body.
        """
        token = await self._credentials.get_token(self._config.platform, self._config.site_id)
        response = await self._send(method, path, body, token)

        if response.status_code == 401:
            logger.info(
                "platform.credentials_refresh",
                platform=self._config.platform,
                method=method,
                path=path,
            )
            token = await self._credentials.refresh(self._config.platform, self._config.site_id)
            response = await self._send(method, path, body, token)

        if response.status_code >= 400:
            raise HTTPError(response.status_code, response.text)

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise InvalidPayloadError(
                f"{self._config.platform} returned non-JSON body for {method} {path}"
            ) from exc

    async def test_connection(self) -> dict[str, Any]:
        """Call the platform's health endpoint.

        Returns a dict with ``connected`` and either ``status_code`` or
        ``error``; never raises for platform-side failures.
        """
        start = time.monotonic()
        try:
            await self.request("GET", self._config.health_path)
        except (HTTPError, PlatformUnavailableError, InvalidPayloadError) as exc:
            logger.warning(
                "platform.connection_test_failed",
                platform=self._config.platform,
                error=str(exc),
            )
            return {"connected": False, "error": str(exc)}
        return {
            "connected": True,
            "latency_ms": round((time.monotonic() - start) * 1000, 2),
        }

    # ── Internals ────────────────────────────────────────────────────────────

    def _headers(self, token: str) -> dict[str, str]:
        headers = {"Accept": "application/json", "Content-Type": "application/json"}
        scheme = self._config.auth_scheme
        if token:
            if scheme == "bearer":
                headers[self._config.auth_header] = f"Bearer {token}"
            elif scheme == "basic":
                encoded = base64.b64encode(token.encode()).decode() if ":" in token else token
                headers[self._config.auth_header] = f"Basic {encoded}"
            else:
                headers[self._config.auth_header] = token
        if self._config.site_header and self._config.site_id:
            headers[self._config.site_header] = self._config.site_id
        return headers

    async def _send(
        self,
        method: str,
        path: str,
        body: dict[str, Any] | None,
        token: str,
    ) -> httpx.Response:
        try:
            async with httpx.AsyncClient(
                base_url=self._config.api_url.rstrip("/"),
                timeout=self._config.request_timeout_seconds,
                transport=self._transport,
            ) as client:
                return await client.request(
                    method,
                    path,
                    json=body,
                    headers=self._headers(token),
                )
        except httpx.TransportError as exc:
            raise PlatformUnavailableError(
                f"{self._config.platform} unreachable for {method} {path}: {exc}"
            ) from exc
