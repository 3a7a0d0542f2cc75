"""Tests for the Inbound Webhook Processor.

Covers:
- HMAC signature verification (hex with prefix, base64), strict vs lenient
  platforms without a secret
- Event name parsing for path, dotted and topic-constant spellings
- Create, update, status transition and delete flows against the local store
- Gates: direction, entity type, unknown action, bad payloads
- Stale mappings and idempotent deletes
- Deferred inbound processing through the queue
"""

from __future__ import annotations

import json

import pytest

from src.cms_bridge.sync.exceptions import (
    InvalidPayloadError,
    InvalidSignatureError,
    UnknownActionError,
    UnsupportedEntityTypeError,
)
from src.cms_bridge.sync.identity_map import inbound_mapping
from src.cms_bridge.sync.observers import StatsObserver
from src.cms_bridge.sync.queue import SyncQueue
from src.cms_bridge.sync.retry import RetryPolicy
from src.cms_bridge.sync.schemas import MappingDirection, SyncAction, SyncDirection
from src.cms_bridge.sync.webhooks import (
    WebhookProcessor,
    compute_signature,
    parse_action,
    split_event_name,
    verify_signature,
)

SECRET = "shpss_test_secret"


def _body(payload: dict) -> bytes:
    return json.dumps(payload).encode()


def _sign(raw: bytes, secret: str = SECRET) -> str:
    return compute_signature(secret, raw, "base64")


@pytest.fixture
def make_processor(make_config, registry, identity_map, store, session_factory):
    def _make(platform: str = "shopify", deferred: bool = False, **overrides) -> WebhookProcessor:
        overrides.setdefault("webhook_secret", SECRET)
        config = make_config(platform, **overrides)
        queue = SyncQueue(session_factory, platform, RetryPolicy(base_delay_ms=0)) if deferred else None
        return WebhookProcessor(config, registry, identity_map, store, StatsObserver(), queue=queue)

    return _make


# ── Signatures ───────────────────────────────────────────────────────────────


class TestVerifySignature:
    def test_base64_signature_accepted(self, make_config):
        raw = b'{"id": 1}'
        verify_signature(make_config("shopify", webhook_secret=SECRET), raw, _sign(raw))

    def test_hex_signature_with_prefix(self, make_config):
        raw = b'{"id": 1}'
        config = make_config("wordpress", webhook_secret="wp-secret")
        signature = "sha256=" + compute_signature("wp-secret", raw, "hex").upper()
        verify_signature(config, raw, signature)

    def test_tampered_body_rejected(self, make_config):
        raw = b'{"id": 1}'
        with pytest.raises(InvalidSignatureError):
            verify_signature(make_config("shopify", webhook_secret=SECRET), b'{"id": 2}', _sign(raw))

    def test_missing_signature_rejected(self, make_config):
        with pytest.raises(InvalidSignatureError):
            verify_signature(make_config("shopify", webhook_secret=SECRET), b"{}", None)

    def test_lenient_platform_without_secret_passes(self, make_config):
        verify_signature(make_config("shopify", webhook_secret=None), b"{}", None)

    def test_strict_platform_without_secret_rejected(self, make_config):
        with pytest.raises(InvalidSignatureError):
            verify_signature(make_config("wordpress", webhook_secret=None), b"{}", "sha256=abc")


# ── Event Names ──────────────────────────────────────────────────────────────


class TestEventNames:
    @pytest.mark.parametrize(
        ("event_name", "expected"),
        [
            ("products/create", ("products", "create")),
            ("node.update", ("node", "update")),
            ("taxonomy_term.delete", ("taxonomy_term", "delete")),
            ("PRODUCTS_CREATE", ("products", "create")),
            ("ORDERS_PARTIALLY_FULFILLED", ("orders", "partially_fulfilled")),
            ("draft_post_updated", ("draft_post", "updated")),
            ("/orders/paid/", ("orders", "paid")),
        ],
    )
    def test_split_event_name(self, event_name, expected):
        assert split_event_name(event_name) == expected

    def test_name_without_separator_rejected(self):
        with pytest.raises(UnknownActionError):
            split_event_name("products")

    def test_parse_action_aliases(self):
        assert parse_action("created") == "create"
        assert parse_action("paid") == "status"
        assert parse_action("remove") == "delete"
        with pytest.raises(UnknownActionError):
            parse_action("explode")


# ── Processing ───────────────────────────────────────────────────────────────


class TestProcess:
    """Verified webhooks mutate the local store under the platform's origin."""

    async def test_products_create(self, make_processor, store, identity_map):
        raw = _body({"id": 632910392, "title": "Hat", "body_html": "<p>warm</p>", "status": "active"})

        result = await make_processor().process("products/create", raw, _sign(raw))

        assert result.success is True
        assert result.action == SyncAction.CREATED
        assert result.external_id == "632910392"
        entity = await store.load("product", result.cms_id)
        assert entity["title"] == "Hat"
        assert entity["status"] == "published"

        mappings = await identity_map.list_mappings("shopify")
        assert mappings[0].last_sync_direction == MappingDirection.INBOUND

    async def test_update_reuses_mapped_entity(self, make_processor, store):
        processor = make_processor()
        raw = _body({"id": 1, "title": "Hat", "vendor": "Acme"})
        created = await processor.process("products/create", raw, _sign(raw))

        raw = _body({"id": 1, "title": "Cap"})
        updated = await processor.process("products/update", raw, _sign(raw))

        assert updated.action == SyncAction.UPDATED
        assert updated.cms_id == created.cms_id
        entity = await store.load("product", created.cms_id)
        assert entity["title"] == "Cap"
        assert entity["vendor"] == "Acme"
        assert await store.query("product") == [created.cms_id]

    async def test_order_status_transition(self, make_processor, store):
        processor = make_processor()
        raw = _body({"id": 450789469, "name": "#1001", "financial_status": "paid"})
        created = await processor.process("orders/paid", raw, _sign(raw))
        assert (await store.load("order", created.cms_id))["status"] == "processing"

        raw = _body({"id": 450789469, "financial_status": "paid", "fulfillment_status": "fulfilled"})
        result = await processor.process("orders/fulfilled", raw, _sign(raw))

        assert result.action == SyncAction.STATUS_UPDATED
        assert (await store.load("order", created.cms_id))["status"] == "completed"

    async def test_topic_constant_event_name(self, make_processor):
        raw = _body({"id": 9, "title": "Hat"})
        result = await make_processor().process("PRODUCTS_CREATE", raw, _sign(raw))
        assert result.action == SyncAction.CREATED

    async def test_enveloped_payload(self, make_processor):
        raw = _body({"product": {"id": 10, "title": "Hat"}})
        result = await make_processor().process("products/create", raw, _sign(raw))
        assert result.external_id == "10"

    async def test_stale_mapping_recreates_entity(self, make_processor, store, identity_map):
        await identity_map.upsert(inbound_mapping("shopify", "product", "vanished", "11"))
        raw = _body({"id": 11, "title": "Hat"})

        result = await make_processor().process("products/update", raw, _sign(raw))

        assert result.action == SyncAction.CREATED
        assert result.cms_id != "vanished"
        assert await identity_map.lookup_by_external_id("shopify", "product", "11") == result.cms_id


class TestDelete:
    async def test_delete_removes_entity_and_mapping(self, make_processor, store, identity_map):
        processor = make_processor()
        raw = _body({"id": 5, "title": "Hat"})
        created = await processor.process("products/create", raw, _sign(raw))

        raw = _body({"id": 5})
        result = await processor.process("products/delete", raw, _sign(raw))

        assert result.action == SyncAction.DELETED
        assert await store.load("product", created.cms_id) is None
        assert await identity_map.lookup_by_external_id("shopify", "product", "5") is None

    async def test_repeated_delete_is_idempotent(self, make_processor):
        processor = make_processor()
        raw = _body({"id": 404})

        first = await processor.process("products/delete", raw, _sign(raw))
        second = await processor.process("products/delete", raw, _sign(raw))

        assert first.success and second.success
        assert second.message == "already deleted"


# ── Gates ────────────────────────────────────────────────────────────────────


class TestGates:
    async def test_bad_signature_mutates_nothing(self, make_processor, store, identity_map):
        raw = _body({"id": 1, "title": "Hat"})

        with pytest.raises(InvalidSignatureError):
            await make_processor().process("products/create", raw, _sign(raw, "wrong-secret"))

        assert await store.query("product") == []
        assert await identity_map.count("shopify") == 0

    async def test_outbound_only_platform_disabled(self, make_processor, store):
        raw = _body({"id": 1, "title": "Hat"})
        processor = make_processor(sync_direction=SyncDirection.TO_EXTERNAL)

        result = await processor.process("products/create", raw, _sign(raw))

        assert result.success is False
        assert result.message == "disabled"
        assert await store.query("product") == []
        assert result.entity_type == "product"

    async def test_disabled_result_never_echoes_unresolved_event_name(self, make_processor):
        raw = _body({"id": 1})
        processor = make_processor(sync_direction=SyncDirection.TO_EXTERNAL)

        result = await processor.process("widgets/create", raw, _sign(raw))

        assert result.message == "disabled"
        assert result.entity_type == "unknown"

    def test_entity_type_for(self, make_processor):
        processor = make_processor()
        assert processor.entity_type_for("ORDERS_PAID") == "order"
        assert processor.entity_type_for("widgets/create") == "unknown"
        assert processor.entity_type_for("gibberish") == "unknown"

    async def test_entity_type_disabled(self, make_processor, store):
        raw = _body({"id": 1, "name": "#1"})
        processor = make_processor(enabled_entity_types=["product"])

        result = await processor.process("orders/create", raw, _sign(raw))

        assert result.message == "disabled"
        assert await store.query("order") == []

    async def test_unknown_action(self, make_processor):
        raw = _body({"id": 1})
        with pytest.raises(UnknownActionError):
            await make_processor().process("products/explode", raw, _sign(raw))

    async def test_unknown_entity(self, make_processor):
        raw = _body({"id": 1})
        with pytest.raises(UnsupportedEntityTypeError):
            await make_processor().process("widgets/create", raw, _sign(raw))

    async def test_invalid_json(self, make_processor):
        raw = b"not json"
        with pytest.raises(InvalidPayloadError):
            await make_processor().process("products/create", raw, _sign(raw))

    async def test_payload_without_id(self, make_processor, store):
        raw = _body({"title": "Hat"})
        with pytest.raises(InvalidPayloadError):
            await make_processor().process("products/create", raw, _sign(raw))
        assert await store.query("product") == []


# ── Deferred ─────────────────────────────────────────────────────────────────


class TestDeferred:
    async def test_accept_queues_without_mutation(self, make_processor, store, session_factory):
        processor = make_processor(deferred=True)
        raw = _body({"id": 1, "title": "Hat"})

        result = await processor.accept("products/create", raw, _sign(raw))

        assert result.success is True
        assert result.message == "queued"
        assert await store.query("product") == []
        queue = SyncQueue(session_factory, "shopify", RetryPolicy())
        assert await queue.pending_count() == 1

    async def test_accept_still_verifies(self, make_processor, session_factory):
        processor = make_processor(deferred=True)
        raw = _body({"id": 1})

        with pytest.raises(InvalidSignatureError):
            await processor.accept("products/create", raw, "bogus")

        assert await SyncQueue(session_factory, "shopify", RetryPolicy()).pending_count() == 0

    async def test_accept_without_queue_processes(self, make_processor, store):
        raw = _body({"id": 1, "title": "Hat"})
        result = await make_processor().accept("products/create", raw, _sign(raw))
        assert result.action == SyncAction.CREATED
