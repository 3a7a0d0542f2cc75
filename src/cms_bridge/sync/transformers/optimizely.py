"""Optimizely CMS Content Management API transformer."""

from __future__ import annotations

from typing import Any

from src.cms_bridge.sync.transformers.base import StatusMap, Transformer, compact

OPTIMIZELY_STATUS = StatusMap(
    {
        "published": "Published",
        "draft": "CheckedOut",
        "pending": "AwaitingApproval",
        "scheduled": "DelayedPublish",
        "rejected": "Rejected",
        "archived": "PreviouslyPublished",
    }
)

CONTENT_TYPE_MAP = {
    "blog_post": "BlogPost",
    "article": "ArticlePage",
    "page": "StandardPage",
    "product": "ProductPage",
    "news": "NewsArticle",
}


class OptimizelyContentTransformer(Transformer):
    platform = "optimizely"
    entity_type = "content"
    aliases = ("page", "pages", "block", "contents")
    collection_path = "/api/episerver/v3.0/contentmanagement"
    item_path = "/api/episerver/v3.0/contentmanagement/{id}"
    update_method = "PATCH"

    def to_external(self, entity: dict[str, Any]) -> dict[str, Any]:
        content_type = CONTENT_TYPE_MAP.get(entity.get("kind") or "", "StandardPage")
        return compact(
            {
                "name": entity.get("title"),
                "contentType": [content_type],
                "mainBody": entity.get("body"),
                "metaDescription": entity.get("excerpt"),
                "routeSegment": entity.get("slug"),
                "status": OPTIMIZELY_STATUS.to_external(entity.get("status")),
                "startPublish": entity.get("publish_at"),
                "_cmsSourceId": entity.get("id"),
            }
        )

    def to_local(self, payload: dict[str, Any]) -> dict[str, Any]:
        body = payload.get("mainBody")
        if isinstance(body, dict):
            body = body.get("value")
        return compact(
            {
                "title": payload.get("name"),
                "body": body,
                "excerpt": payload.get("metaDescription"),
                "slug": payload.get("routeSegment"),
                "status": OPTIMIZELY_STATUS.to_local(payload.get("status")),
                "publish_at": payload.get("startPublish"),
            }
        )

    def external_id_of(self, payload: dict[str, Any]) -> str | None:
        link = payload.get("contentLink")
        if isinstance(link, dict) and link.get("id") is not None:
            return str(link["id"])
        for key in ("contentId", "id"):
            if payload.get(key) not in (None, ""):
                return str(payload[key])
        return None
