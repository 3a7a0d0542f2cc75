"""WordPress REST API (wp/v2 posts) transformer."""

from __future__ import annotations

import re
from typing import Any

from src.cms_bridge.sync.transformers.base import StatusMap, Transformer, compact

EXCERPT_LENGTH = 150

_TAG_RE = re.compile(r"<[^>]+>")

WORDPRESS_STATUS = StatusMap(
    {
        "published": "publish",
        "draft": "draft",
        "private": "private",
        "pending": "pending",
        "scheduled": "future",
        "trashed": "trash",
    },
    extra_to_local={"auto-draft": "draft", "inherit": "draft"},
)


def _rendered(value: Any) -> Any:
    # wp/v2 returns {"rendered": "..."} objects; webhook payloads send plain strings
    if isinstance(value, dict):
        return value.get("rendered", value.get("raw"))
    return value


def generate_excerpt(body: str | None, length: int = EXCERPT_LENGTH) -> str | None:
    """Plain-text excerpt of at most ``length`` characters, cut on a word boundary."""
    if not body:
        return None
    text = " ".join(_TAG_RE.sub(" ", body).split())
    if len(text) <= length:
        return text
    cut = text[:length].rsplit(" ", 1)[0]
    return f"{cut}..."


class WordPressContentTransformer(Transformer):
    platform = "wordpress"
    entity_type = "content"
    aliases = ("post", "posts", "page", "pages", "contents")
    collection_path = "/wp-json/wp/v2/posts"
    item_path = "/wp-json/wp/v2/posts/{id}"
    update_method = "PUT"

    def to_external(self, entity: dict[str, Any]) -> dict[str, Any]:
        excerpt = entity.get("excerpt") or generate_excerpt(entity.get("body"))
        return compact(
            {
                "title": entity.get("title"),
                "content": entity.get("body"),
                "excerpt": excerpt,
                "slug": entity.get("slug"),
                "status": WORDPRESS_STATUS.to_external(entity.get("status")),
                "categories": entity.get("categories"),
                "tags": entity.get("tags"),
                "meta": {"_headless_cms_id": entity.get("id")},
            }
        )

    def to_local(self, payload: dict[str, Any]) -> dict[str, Any]:
        return compact(
            {
                "title": _rendered(payload.get("title")),
                "body": _rendered(payload.get("content")),
                "excerpt": _rendered(payload.get("excerpt")),
                "slug": payload.get("slug"),
                "status": WORDPRESS_STATUS.to_local(payload.get("status")),
                "categories": payload.get("categories"),
                "tags": payload.get("tags"),
            }
        )
