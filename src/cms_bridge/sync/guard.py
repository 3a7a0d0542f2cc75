"""Loop-prevention guard: origin tags for local mutations.

Inbound sync performs its local mutations inside ``mutation_origin(platform)``.
The entity store stamps each ChangeEvent with the current origin, and the
coordinator skips outbound dispatch when the event came from the very
platform it would be sent back to. Other platforms still receive it.

The origin lives in a ContextVar so concurrent webhook handlers on the
same event loop never observe each other's scope.
"""

from __future__ import annotations

import contextvars
from collections.abc import Iterator
from contextlib import contextmanager

from src.cms_bridge.sync.schemas import LOCAL_ORIGIN, ChangeEvent

_EXTERNAL_PREFIX = "external:"

_origin_context: contextvars.ContextVar[str] = contextvars.ContextVar(
    "sync_origin", default=LOCAL_ORIGIN
)


def external_origin(platform: str) -> str:
    return f"{_EXTERNAL_PREFIX}{platform}"


def get_current_origin() -> str:
    """Origin of mutations in the current context (``local`` by default)."""
    return _origin_context.get()


def set_origin(origin: str) -> contextvars.Token[str]:
    """Set the origin for the current context. Returns a reset token."""
    return _origin_context.set(origin)


def reset_origin(token: contextvars.Token[str]) -> None:
    _origin_context.reset(token)


@contextmanager
def mutation_origin(platform: str) -> Iterator[str]:
    """Scope in which local mutations are attributed to ``platform``."""
    token = set_origin(external_origin(platform))
    try:
        yield get_current_origin()
    finally:
        reset_origin(token)


def should_dispatch(event: ChangeEvent, platform: str) -> bool:
    """False when ``event`` originated from ``platform`` itself."""
    return event.origin != external_origin(platform)
