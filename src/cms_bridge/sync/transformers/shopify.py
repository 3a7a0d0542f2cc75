"""Shopify Admin REST API transformers (products, orders, customers).

Shopify wraps every request and response body in a singular envelope
(``{"product": {...}}``); webhooks deliver the bare resource.
"""

from __future__ import annotations

from typing import Any

from src.cms_bridge.sync.transformers.base import (
    StatusMap,
    Transformer,
    carried_status,
    compact,
    split_tags,
)

PRODUCT_STATUS = StatusMap({"published": "active", "draft": "draft", "archived": "archived"})

CUSTOMER_STATUS = StatusMap(
    {"active": "enabled", "disabled": "disabled", "invited": "invited", "declined": "declined"}
)


def _join_tags(tags: Any) -> str | None:
    if tags is None:
        return None
    if isinstance(tags, str):
        return tags
    return ", ".join(str(t) for t in tags)


class ShopifyProductTransformer(Transformer):
    platform = "shopify"
    entity_type = "product"
    aliases = ("products",)
    collection_path = "/products.json"
    item_path = "/products/{id}.json"
    envelope = "product"

    def to_external(self, entity: dict[str, Any]) -> dict[str, Any]:
        return compact(
            {
                "title": entity.get("title"),
                "body_html": entity.get("body"),
                "vendor": entity.get("vendor"),
                "product_type": entity.get("product_type"),
                "handle": entity.get("slug"),
                "status": PRODUCT_STATUS.to_external(entity.get("status")),
                "tags": _join_tags(entity.get("tags")),
            }
        )

    def to_local(self, payload: dict[str, Any]) -> dict[str, Any]:
        return compact(
            {
                "title": payload.get("title"),
                "body": payload.get("body_html"),
                "vendor": payload.get("vendor"),
                "product_type": payload.get("product_type"),
                "slug": payload.get("handle"),
                "status": PRODUCT_STATUS.to_local(payload.get("status")),
                "tags": split_tags(payload.get("tags")),
            }
        )


def determine_order_status(payload: dict[str, Any]) -> str:
    """Collapse Shopify's financial/fulfillment/cancel state into one status.

    cancelled wins over everything; paid and fulfilled is completed; paid
    alone is processing; fulfilled alone is fulfilled; otherwise pending.
    """
    if payload.get("cancelled_at") or payload.get("cancel_reason"):
        return "cancelled"
    paid = payload.get("financial_status") == "paid"
    fulfilled = payload.get("fulfillment_status") == "fulfilled"
    if paid and fulfilled:
        return "completed"
    if paid:
        return "processing"
    if fulfilled:
        return "fulfilled"
    return "pending"


# Inverse of determine_order_status for statuses the CMS can set
_ORDER_STATE: dict[str, dict[str, Any]] = {
    "completed": {"financial_status": "paid", "fulfillment_status": "fulfilled"},
    "processing": {"financial_status": "paid"},
    "fulfilled": {"financial_status": "pending", "fulfillment_status": "fulfilled"},
    "pending": {"financial_status": "pending"},
}


def _order_state(status: str) -> dict[str, Any]:
    if status == "cancelled":
        return {"cancel_reason": "other"}
    return _ORDER_STATE.get(status, {})


def _derived_order_status(status: str) -> str:
    return determine_order_status(_order_state(status))


class ShopifyOrderTransformer(Transformer):
    """Orders: status is derived from payment, fulfillment and cancellation.

    CMS statuses outside the derived vocabulary travel in ``cms_status``
    and are restored while the order state still matches.
    """

    platform = "shopify"
    entity_type = "order"
    aliases = ("orders",)
    collection_path = "/orders.json"
    item_path = "/orders/{id}.json"
    envelope = "order"

    def to_external(self, entity: dict[str, Any]) -> dict[str, Any]:
        status = entity.get("status")
        payload = compact(
            {
                "name": entity.get("title"),
                "note": entity.get("body"),
                "email": entity.get("email"),
                "tags": _join_tags(entity.get("tags")),
                "cms_status": status,
            }
        )
        if status is not None:
            payload.update(_order_state(status))
        if status == "cancelled" and entity.get("cancel_reason"):
            payload["cancel_reason"] = entity["cancel_reason"]
        return payload

    def to_local(self, payload: dict[str, Any]) -> dict[str, Any]:
        return compact(
            {
                "title": payload.get("name"),
                "body": payload.get("note"),
                "email": payload.get("email"),
                "status": carried_status(
                    payload, determine_order_status(payload), _derived_order_status
                ),
                "total_price": payload.get("total_price"),
                "currency": payload.get("currency"),
                "cancel_reason": payload.get("cancel_reason"),
                "tags": split_tags(payload.get("tags")),
            }
        )


class ShopifyCustomerTransformer(Transformer):
    platform = "shopify"
    entity_type = "customer"
    aliases = ("customers",)
    collection_path = "/customers.json"
    item_path = "/customers/{id}.json"
    envelope = "customer"

    def to_external(self, entity: dict[str, Any]) -> dict[str, Any]:
        first_name = last_name = None
        if entity.get("title"):
            first_name, _, last_name = entity["title"].partition(" ")
        return compact(
            {
                "first_name": first_name,
                "last_name": last_name if last_name else None,
                "email": entity.get("email"),
                "phone": entity.get("phone"),
                "note": entity.get("body"),
                "state": CUSTOMER_STATUS.to_external(entity.get("status")),
                "tags": _join_tags(entity.get("tags")),
            }
        )

    def to_local(self, payload: dict[str, Any]) -> dict[str, Any]:
        name = " ".join(
            part for part in (payload.get("first_name"), payload.get("last_name")) if part
        )
        return compact(
            {
                "title": name or None,
                "email": payload.get("email"),
                "phone": payload.get("phone"),
                "body": payload.get("note"),
                "status": CUSTOMER_STATUS.to_local(payload.get("state")),
                "tags": split_tags(payload.get("tags")),
            }
        )
