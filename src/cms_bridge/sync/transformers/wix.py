"""Wix Blog API (draft posts) transformer."""

from __future__ import annotations

from typing import Any

from src.cms_bridge.sync.transformers.base import StatusMap, Transformer, compact

WIX_STATUS = StatusMap(
    {
        "published": "PUBLISHED",
        "draft": "UNPUBLISHED",
        "scheduled": "SCHEDULED",
        "trashed": "DELETED",
    }
)


class WixContentTransformer(Transformer):
    platform = "wix"
    entity_type = "content"
    aliases = ("post", "posts", "draft_post", "draftpost", "contents")
    collection_path = "/blog/v3/draft-posts"
    item_path = "/blog/v3/draft-posts/{id}"
    update_method = "PATCH"
    envelope = "draftPost"

    def to_external(self, entity: dict[str, Any]) -> dict[str, Any]:
        return compact(
            {
                "title": entity.get("title"),
                "richContent": None
                if entity.get("body") is None
                else {"nodes": [], "html": entity["body"]},
                "excerpt": entity.get("excerpt"),
                "status": WIX_STATUS.to_external(entity.get("status")),
                "hashtags": entity.get("tags"),
                "seoSlug": entity.get("slug"),
            }
        )

    def to_local(self, payload: dict[str, Any]) -> dict[str, Any]:
        rich = payload.get("richContent")
        body = rich.get("html") if isinstance(rich, dict) else payload.get("contentText")
        return compact(
            {
                "title": payload.get("title"),
                "body": body,
                "excerpt": payload.get("excerpt"),
                "status": WIX_STATUS.to_local(payload.get("status")),
                "tags": payload.get("hashtags"),
                "slug": payload.get("seoSlug"),
            }
        )
