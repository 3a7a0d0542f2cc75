"""Transformer ABC, status vocabulary helper, and the transformer registry.

A Transformer owns everything platform-specific about one entity type:
field mapping in both directions, the REST resource it lives at, the
request envelope the platform expects, and the webhook topic aliases that
name it. Local entities are flat dicts with at least id, title, body and
status; extra fields ride along at the top level.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import Any

from src.cms_bridge.sync.exceptions import UnsupportedEntityTypeError


class StatusMap:
    """Bidirectional status vocabulary with pass-through for unknown values.

    Args:
        to_external: Local status -> platform status.
        extra_to_local: Platform statuses that collapse onto a local status
            but are never produced outbound (e.g. WordPress "auto-draft").
    """

    def __init__(
        self,
        to_external: dict[str, str],
        extra_to_local: dict[str, str] | None = None,
    ) -> None:
        self._to_external = dict(to_external)
        self._to_local = {v: k for k, v in to_external.items()}
        self._to_local.update(extra_to_local or {})

    def to_external(self, status: str | None) -> str | None:
        if status is None:
            return None
        return self._to_external.get(status, status)

    def to_local(self, status: str | None) -> str | None:
        if status is None:
            return None
        return self._to_local.get(status, status)


class Transformer(ABC):
    """Maps one CMS entity type to and from one platform resource.

    Class attributes:
        platform: Platform key (e.g. "shopify").
        entity_type: Local entity type this transformer handles.
        aliases: Webhook topic spellings that name this entity type.
        collection_path: REST path for create (POST).
        item_path: REST path template for update/delete, with ``{id}``.
        update_method: HTTP verb for updates (PUT or PATCH).
        envelope: Key the platform wraps request/response bodies in, if any.
        id_field: Key holding the platform id inside the unwrapped payload.

    Methods:
        to_external: CMS entity -> platform payload (unwrapped).
        to_local: Platform payload -> partial CMS entity. Keys absent from
            the payload are omitted so merges never blank existing fields.
    """

    platform: str = ""
    entity_type: str = ""
    aliases: tuple[str, ...] = ()
    collection_path: str = ""
    item_path: str = ""
    update_method: str = "PUT"
    envelope: str | None = None
    id_field: str = "id"

    @abstractmethod
    def to_external(self, entity: dict[str, Any]) -> dict[str, Any]:
        """Convert a CMS entity into the platform's representation."""

    @abstractmethod
    def to_local(self, payload: dict[str, Any]) -> dict[str, Any]:
        """Convert a platform payload into CMS entity fields."""

    # ── Wire helpers ─────────────────────────────────────────────────────────

    def wrap(self, payload: dict[str, Any]) -> dict[str, Any]:
        """Apply the request envelope."""
        if self.envelope:
            return {self.envelope: payload}
        return payload

    def unwrap(self, body: Any) -> dict[str, Any]:
        """Strip the response/webhook envelope if present."""
        if not isinstance(body, dict):
            return {}
        if self.envelope and isinstance(body.get(self.envelope), dict):
            return body[self.envelope]
        return body

    def external_id_of(self, payload: dict[str, Any]) -> str | None:
        """Read the platform id from an unwrapped payload."""
        value = payload.get(self.id_field)
        if value is None or value == "":
            return None
        return str(value)

    def item_url(self, external_id: str) -> str:
        return self.item_path.format(id=external_id)

    def names(self) -> tuple[str, ...]:
        """All spellings this entity type may appear under in webhook topics."""
        return (self.entity_type, *self.aliases)


def compact(fields: dict[str, Any]) -> dict[str, Any]:
    """Drop keys whose value is None."""
    return {k: v for k, v in fields.items() if v is not None}


def carried_status(
    payload: dict[str, Any],
    derived: str | None,
    derive: Callable[[str], str],
) -> str | None:
    """Restore the CMS status echoed back in ``cms_status``.

    Platforms whose own state is coarser than the CMS vocabulary (a boolean,
    or a status derived from several fields) get the CMS status alongside it.
    The echo wins only while it still agrees with the platform state, so a
    real change on the platform side is never masked by a stale echo.

    Args:
        payload: Unwrapped platform payload.
        derived: Local status read from the platform's own state.
        derive: Maps a CMS status to the local status its outbound form
            would read back as.
    """
    echoed = payload.get("cms_status")
    if echoed is not None and derived is not None and derive(echoed) == derived:
        return echoed
    return derived


def split_tags(value: Any) -> list[str] | None:
    """Normalise a comma-separated string or list of tags into a list."""
    if value is None:
        return None
    if isinstance(value, str):
        return [t.strip() for t in value.split(",") if t.strip()]
    return [str(t) for t in value]


class TransformerRegistry:
    """Lookup of transformers by (platform, entity_type) and topic alias."""

    def __init__(self, transformers: list[Transformer] | None = None) -> None:
        self._by_key: dict[tuple[str, str], Transformer] = {}
        for transformer in transformers or []:
            self.register(transformer)

    def register(self, transformer: Transformer) -> None:
        self._by_key[(transformer.platform, transformer.entity_type)] = transformer

    def get(self, platform: str, entity_type: str) -> Transformer:
        """Return the transformer for a pair.

        Raises:
            UnsupportedEntityTypeError: If no transformer is registered.
        """
        transformer = self._by_key.get((platform, entity_type))
        if transformer is None:
            raise UnsupportedEntityTypeError(platform, entity_type)
        return transformer

    def resolve_alias(self, platform: str, name: str) -> str:
        """Map a webhook topic spelling (``products``, ``PRODUCT``) to an entity type.

        Raises:
            UnsupportedEntityTypeError: If no transformer claims the name.
        """
        wanted = name.strip().lower()
        for (registered_platform, entity_type), transformer in self._by_key.items():
            if registered_platform != platform:
                continue
            if wanted in transformer.names():
                return entity_type
        raise UnsupportedEntityTypeError(platform, name)

    def entity_types(self, platform: str) -> list[str]:
        return sorted(et for (p, et) in self._by_key if p == platform)
