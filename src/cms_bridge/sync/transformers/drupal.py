"""Drupal headless_cms_bridge module transformers (nodes, users, taxonomy terms)."""

from __future__ import annotations

from typing import Any

from src.cms_bridge.sync.transformers.base import Transformer, carried_status, compact

_PUBLISHED_STATES = {"published"}
# Any other CMS status leaves the Drupal account active
_BLOCKED_USER_STATES = {"blocked", "disabled", "archived", "trashed"}


def _as_bool(value: Any) -> bool | None:
    if value is None:
        return None
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes")
    return bool(value)


def _user_state(status: str) -> str:
    return "blocked" if status in _BLOCKED_USER_STATES else "active"


def _term_state(status: str) -> str:
    return "published" if status in _PUBLISHED_STATES else "draft"


class DrupalTransformer(Transformer):
    """Shared id handling: webhooks send nid/uid/tid, the bridge API answers drupal_id."""

    platform = "drupal"

    def external_id_of(self, payload: dict[str, Any]) -> str | None:
        for key in (self.id_field, "drupal_id", "id"):
            value = payload.get(key)
            if value not in (None, ""):
                return str(value)
        return None


class DrupalNodeTransformer(DrupalTransformer):
    """Nodes carry both a moderation_state and a boolean published flag.

    moderation_state is authoritative when present; the boolean is the
    fallback for sites without content moderation.
    """

    entity_type = "node"
    aliases = ("nodes", "article", "page", "content")
    collection_path = "/api/v1/drupal/node"
    item_path = "/api/v1/drupal/node/{id}"
    envelope = "node"
    id_field = "nid"

    def to_external(self, entity: dict[str, Any]) -> dict[str, Any]:
        status = entity.get("status")
        return compact(
            {
                "cms_id": entity.get("id"),
                "title": entity.get("title"),
                "body": entity.get("body"),
                "summary": entity.get("excerpt"),
                "type": entity.get("bundle") or "article",
                "moderation_state": status,
                "status": None if status is None else status in _PUBLISHED_STATES,
                "path": entity.get("slug"),
            }
        )

    def to_local(self, payload: dict[str, Any]) -> dict[str, Any]:
        status = payload.get("moderation_state")
        if status is None:
            published = _as_bool(payload.get("status"))
            if published is not None:
                status = "published" if published else "draft"
        body = payload.get("body")
        if isinstance(body, dict):
            body = body.get("value")
        return compact(
            {
                "title": payload.get("title"),
                "body": body,
                "excerpt": payload.get("summary"),
                "bundle": payload.get("type"),
                "status": status,
                "slug": payload.get("path"),
            }
        )


class DrupalUserTransformer(DrupalTransformer):
    """Users are active or blocked in Drupal; the CMS status rides along as cms_status."""

    entity_type = "user"
    aliases = ("users",)
    collection_path = "/api/v1/drupal/user"
    item_path = "/api/v1/drupal/user/{id}"
    envelope = "user"
    id_field = "uid"

    def to_external(self, entity: dict[str, Any]) -> dict[str, Any]:
        status = entity.get("status")
        return compact(
            {
                "cms_id": entity.get("id"),
                "name": entity.get("title"),
                "mail": entity.get("email"),
                "signature": entity.get("body"),
                "status": None if status is None else _user_state(status) == "active",
                "cms_status": status,
                "roles": entity.get("roles"),
            }
        )

    def to_local(self, payload: dict[str, Any]) -> dict[str, Any]:
        active = _as_bool(payload.get("status"))
        derived = None if active is None else ("active" if active else "blocked")
        return compact(
            {
                "title": payload.get("name"),
                "email": payload.get("mail"),
                "body": payload.get("signature"),
                "status": carried_status(payload, derived, _user_state),
                "roles": payload.get("roles"),
            }
        )


class DrupalTermTransformer(DrupalTransformer):
    entity_type = "taxonomy_term"
    aliases = ("taxonomy_terms", "term", "terms")
    collection_path = "/api/v1/drupal/taxonomy_term"
    item_path = "/api/v1/drupal/taxonomy_term/{id}"
    envelope = "term"
    id_field = "tid"

    def to_external(self, entity: dict[str, Any]) -> dict[str, Any]:
        status = entity.get("status")
        return compact(
            {
                "cms_id": entity.get("id"),
                "name": entity.get("title"),
                "description": entity.get("body"),
                "vid": entity.get("vocabulary") or "tags",
                "status": None if status is None else status in _PUBLISHED_STATES,
                "cms_status": status,
            }
        )

    def to_local(self, payload: dict[str, Any]) -> dict[str, Any]:
        published = _as_bool(payload.get("status"))
        derived = None if published is None else ("published" if published else "draft")
        description = payload.get("description")
        if isinstance(description, dict):
            description = description.get("value")
        return compact(
            {
                "title": payload.get("name"),
                "body": description,
                "vocabulary": payload.get("vid"),
                "status": carried_status(payload, derived, _term_state),
            }
        )
