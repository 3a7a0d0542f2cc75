"""Shared fixtures for sync engine tests.

Provides:
- A throwaway SQLite database (aiosqlite) with every sync table created
- Identity Map, entity store and transformer registry bound to it
- make_config: PlatformConfig factory using each platform's wire defaults
- fake_api: scripted httpx.MockTransport that records requests
- make_coordinator: fully wired SyncCoordinator against fake_api
"""

from __future__ import annotations

import json
from collections.abc import AsyncGenerator
from typing import Any
from unittest.mock import AsyncMock

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from src.cms_bridge.config import PLATFORM_DEFAULTS
from src.cms_bridge.core.database import build_engine, init_db
from src.cms_bridge.sync.client import PlatformClient, StaticCredentialProvider
from src.cms_bridge.sync.coordinator import SyncCoordinator
from src.cms_bridge.sync.entity_store import SqlEntityStore
from src.cms_bridge.sync.identity_map import IdentityMap
from src.cms_bridge.sync.retry import RetryPolicy
from src.cms_bridge.sync.schemas import PlatformConfig
from src.cms_bridge.sync.transformers import TransformerRegistry, default_registry


# ── Database ─────────────────────────────────────────────────────────────────


@pytest_asyncio.fixture
async def engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """File-backed SQLite engine with all tables created."""
    db_engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'sync.db'}")
    await init_db(db_engine)
    yield db_engine
    await db_engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest.fixture
def identity_map(session_factory) -> IdentityMap:
    return IdentityMap(session_factory)


@pytest.fixture
def store(session_factory) -> SqlEntityStore:
    return SqlEntityStore(session_factory)


@pytest.fixture
def registry() -> TransformerRegistry:
    return default_registry()


# ── Platform Config ──────────────────────────────────────────────────────────


@pytest.fixture
def make_config():
    """Factory: PlatformConfig for a platform with its defaults plus overrides."""

    def _make(platform: str = "shopify", **overrides: Any) -> PlatformConfig:
        options = dict(PLATFORM_DEFAULTS[platform])
        options.update(overrides)
        return PlatformConfig(platform=platform, api_url=f"https://{platform}.test", **options)

    return _make


# ── Fake Platform API ────────────────────────────────────────────────────────


class FakePlatformAPI:
    """Scripted platform API behind httpx.MockTransport.

    Responses queued with ``respond`` are returned in order; once the script
    runs out every request gets ``default_status`` with ``default_json``.
    """

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self._script: list[tuple[int, Any]] = []
        self.default_status = 200
        self.default_json: Any = {}
        self.transport = httpx.MockTransport(self._handle)

    def respond(self, status_code: int, json_body: Any = None) -> None:
        self._script.append((status_code, json_body))

    def always(self, status_code: int, json_body: Any = None) -> None:
        self.default_status = status_code
        self.default_json = json_body

    def body(self, index: int = -1) -> Any:
        return json.loads(self.requests[index].content)

    def _handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self._script:
            status_code, json_body = self._script.pop(0)
        else:
            status_code, json_body = self.default_status, self.default_json
        if json_body is None:
            return httpx.Response(status_code)
        return httpx.Response(status_code, json=json_body)


@pytest.fixture
def fake_api() -> FakePlatformAPI:
    return FakePlatformAPI()


@pytest.fixture
def make_client(fake_api):
    def _make(config: PlatformConfig, token: str = "test-token") -> PlatformClient:
        credentials = StaticCredentialProvider({(config.platform, config.site_id): token})
        return PlatformClient(config, credentials, transport=fake_api.transport)

    return _make


@pytest.fixture
def make_coordinator(make_config, make_client, registry, identity_map, store, session_factory):
    """Factory: SyncCoordinator with zero-delay retries against fake_api."""

    def _make(platform: str = "shopify", **overrides: Any) -> SyncCoordinator:
        config = make_config(platform, **overrides)
        return SyncCoordinator(
            config=config,
            registry=registry,
            identity_map=identity_map,
            store=store,
            client=make_client(config),
            session_factory=session_factory,
            retry_policy=RetryPolicy(max_attempts=3, base_delay_ms=0, sleep=AsyncMock()),
        )

    return _make
