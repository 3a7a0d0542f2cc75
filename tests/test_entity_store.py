"""Tests for the SQL entity store and its change events."""

from __future__ import annotations

import pytest

from src.cms_bridge.sync.entity_store import EntityNotFoundError
from src.cms_bridge.sync.guard import mutation_origin
from src.cms_bridge.sync.schemas import LOCAL_ORIGIN, ChangeAction


@pytest.fixture
def events(store):
    received = []

    async def listener(event):
        received.append(event)

    store.subscribe(listener)
    return received


class TestCrud:
    async def test_create_and_load(self, store):
        entity = await store.create("product", {"title": "Hat", "vendor": "Acme"})

        loaded = await store.load("product", entity["id"])
        assert loaded["title"] == "Hat"
        assert loaded["vendor"] == "Acme"
        assert loaded["status"] == "draft"
        assert loaded["entity_type"] == "product"

    async def test_load_wrong_type_is_none(self, store):
        entity = await store.create("product", {"title": "Hat"})
        assert await store.load("order", entity["id"]) is None

    async def test_update_merges(self, store):
        entity = await store.create("product", {"title": "Hat", "vendor": "Acme", "status": "draft"})

        updated = await store.update("product", entity["id"], {"status": "published", "color": "red"})

        assert updated["title"] == "Hat"
        assert updated["vendor"] == "Acme"
        assert updated["color"] == "red"
        assert updated["status"] == "published"

    async def test_update_missing_raises(self, store):
        with pytest.raises(EntityNotFoundError):
            await store.update("product", "nope", {"title": "x"})

    async def test_delete(self, store):
        entity = await store.create("product", {"title": "Hat"})
        assert await store.delete("product", entity["id"]) is True
        assert await store.delete("product", entity["id"]) is False

    async def test_query_filters(self, store):
        a = await store.create("product", {"title": "a", "status": "published", "vendor": "x"})
        await store.create("product", {"title": "b", "status": "draft", "vendor": "x"})
        c = await store.create("product", {"title": "c", "status": "published", "vendor": "y"})

        assert await store.query("product", {"status": "published"}) == [a["id"], c["id"]]
        assert await store.query("product", {"status": "published", "vendor": "y"}) == [c["id"]]
        assert len(await store.query("product")) == 3


class TestChangeEvents:
    async def test_local_mutations_emit_local_origin(self, store, events):
        entity = await store.create("product", {"title": "Hat"})
        await store.update("product", entity["id"], {"title": "Cap"})
        await store.delete("product", entity["id"])

        assert [e.action for e in events] == [ChangeAction.CREATE, ChangeAction.UPDATE, ChangeAction.DELETE]
        assert all(e.origin == LOCAL_ORIGIN for e in events)
        assert events[-1].data["title"] == "Cap"

    async def test_inbound_scope_tags_origin(self, store, events):
        with mutation_origin("shopify"):
            await store.create("product", {"title": "Hat"})

        assert events[0].origin == "external:shopify"

    async def test_failing_listener_does_not_block_others(self, store):
        received = []

        async def broken(event):
            raise RuntimeError("listener down")

        async def working(event):
            received.append(event)

        store.subscribe(broken)
        store.subscribe(working)

        entity = await store.create("product", {"title": "Hat"})

        assert len(received) == 1
        assert await store.load("product", entity["id"]) is not None
