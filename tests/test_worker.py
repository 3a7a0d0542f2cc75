"""Tests for the background queue worker."""

from __future__ import annotations

from src.cms_bridge.sync.coordinator import CoordinatorRegistry
from src.cms_bridge.sync.schemas import QueueDirection, SyncOperation
from src.cms_bridge.sync.worker import SyncWorker


class TestSyncWorker:
    async def test_no_platforms_does_not_start(self):
        worker = SyncWorker(CoordinatorRegistry())
        assert worker.start() is False
        assert worker.running is False

    async def test_start_and_stop(self, make_coordinator):
        coordinators = CoordinatorRegistry()
        coordinators.add(make_coordinator("wix"))
        worker = SyncWorker(coordinators, interval_seconds=60)

        assert worker.start() is True
        assert worker.running is True
        worker.stop()
        assert worker.running is False

    async def test_run_once_drains_every_platform(self, make_coordinator, store, fake_api):
        shopify = make_coordinator("shopify")
        wix = make_coordinator("wix")
        coordinators = CoordinatorRegistry()
        coordinators.add(shopify)
        coordinators.add(wix)
        entity = await store.create("product", {"title": "Hat"})
        await shopify.queue.enqueue(
            SyncOperation(
                platform="shopify",
                direction=QueueDirection.TO_EXTERNAL,
                entity_type="product",
                action="update",
                payload={"entity_id": entity["id"]},
            )
        )
        fake_api.respond(201, {"product": {"id": 1}})

        results = await SyncWorker(coordinators).run_once()

        assert results["shopify"]["processed"] == 1
        assert results["wix"]["processed"] == 0

    async def test_run_once_recovers_stale_claims(self, make_coordinator, store, fake_api):
        shopify = make_coordinator("shopify")
        coordinators = CoordinatorRegistry()
        coordinators.add(shopify)
        entity = await store.create("product", {"title": "Hat"})
        await shopify.queue.enqueue(
            SyncOperation(
                platform="shopify",
                direction=QueueDirection.TO_EXTERNAL,
                entity_type="product",
                action="update",
                payload={"entity_id": entity["id"]},
            )
        )
        await shopify.queue.claim()  # abandoned by a crashed runner
        fake_api.respond(201, {"product": {"id": 1}})

        results = await SyncWorker(coordinators, claim_timeout_seconds=-1).run_once()

        assert results["shopify"]["processed"] == 1
