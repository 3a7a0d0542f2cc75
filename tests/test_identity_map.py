"""Tests for the Identity Map.

Covers:
- Lookups in both directions after an upsert
- Re-upsert of the same pair refreshes timestamp and direction only
- Conflicting bindings rejected from either side
- Idempotent removal
- Platform and entity type scoping of bindings
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from src.cms_bridge.sync.exceptions import ConflictError
from src.cms_bridge.sync.identity_map import inbound_mapping, outbound_mapping
from src.cms_bridge.sync.schemas import MappingDirection, SyncMapping


class TestLookup:
    """Bindings are readable from both ends."""

    async def test_lookup_both_directions(self, identity_map):
        await identity_map.upsert(outbound_mapping("shopify", "product", "cms-1", "ext-1"))

        assert await identity_map.lookup_by_cms_id("shopify", "product", "cms-1") == "ext-1"
        assert await identity_map.lookup_by_external_id("shopify", "product", "ext-1") == "cms-1"

    async def test_lookup_missing_returns_none(self, identity_map):
        assert await identity_map.lookup_by_cms_id("shopify", "product", "nope") is None
        assert await identity_map.lookup_by_external_id("shopify", "product", "nope") is None

    async def test_bindings_scoped_by_platform_and_type(self, identity_map):
        await identity_map.upsert(outbound_mapping("shopify", "product", "cms-1", "42"))
        await identity_map.upsert(outbound_mapping("wordpress", "content", "cms-1", "42"))

        assert await identity_map.lookup_by_cms_id("shopify", "order", "cms-1") is None
        assert await identity_map.lookup_by_cms_id("wordpress", "content", "cms-1") == "42"
        assert await identity_map.count("shopify") == 1


class TestUpsert:
    """Create, refresh and conflict semantics."""

    async def test_reupsert_refreshes_sync_metadata(self, identity_map):
        earlier = datetime.now(timezone.utc) - timedelta(hours=1)
        await identity_map.upsert(
            SyncMapping(
                platform="shopify",
                cms_entity_type="product",
                cms_id="cms-1",
                external_id="ext-1",
                last_synced_at=earlier,
                last_sync_direction=MappingDirection.OUTBOUND,
            )
        )
        await identity_map.upsert(inbound_mapping("shopify", "product", "cms-1", "ext-1"))

        mappings = await identity_map.list_mappings("shopify")
        assert len(mappings) == 1
        assert mappings[0].last_sync_direction == MappingDirection.INBOUND
        assert mappings[0].last_synced_at > earlier

    async def test_cms_id_bound_elsewhere_conflicts(self, identity_map):
        await identity_map.upsert(outbound_mapping("shopify", "product", "cms-1", "ext-1"))

        with pytest.raises(ConflictError):
            await identity_map.upsert(outbound_mapping("shopify", "product", "cms-1", "ext-2"))

        assert await identity_map.lookup_by_cms_id("shopify", "product", "cms-1") == "ext-1"

    async def test_external_id_bound_elsewhere_conflicts(self, identity_map):
        await identity_map.upsert(outbound_mapping("shopify", "product", "cms-1", "ext-1"))

        with pytest.raises(ConflictError):
            await identity_map.upsert(inbound_mapping("shopify", "product", "cms-2", "ext-1"))

        assert await identity_map.lookup_by_external_id("shopify", "product", "ext-1") == "cms-1"


class TestRemove:
    """Removal is idempotent."""

    async def test_remove_existing_then_again(self, identity_map):
        await identity_map.upsert(outbound_mapping("shopify", "product", "cms-1", "ext-1"))

        assert await identity_map.remove("shopify", "product", "cms-1") is True
        assert await identity_map.remove("shopify", "product", "cms-1") is False
        assert await identity_map.lookup_by_external_id("shopify", "product", "ext-1") is None

    async def test_removed_external_id_can_rebind(self, identity_map):
        await identity_map.upsert(outbound_mapping("shopify", "product", "cms-1", "ext-1"))
        await identity_map.remove("shopify", "product", "cms-1")

        await identity_map.upsert(outbound_mapping("shopify", "product", "cms-2", "ext-1"))
        assert await identity_map.lookup_by_external_id("shopify", "product", "ext-1") == "cms-2"


class TestListMappings:
    async def test_filters_by_entity_type_and_paginates(self, identity_map):
        for i in range(3):
            await identity_map.upsert(outbound_mapping("shopify", "product", f"p{i}", f"x{i}"))
        await identity_map.upsert(outbound_mapping("shopify", "order", "o1", "y1"))

        products = await identity_map.list_mappings("shopify", entity_type="product")
        assert {m.cms_id for m in products} == {"p0", "p1", "p2"}

        page = await identity_map.list_mappings("shopify", limit=2)
        assert len(page) == 2
        assert all(m.last_synced_at.tzinfo is not None for m in page)
