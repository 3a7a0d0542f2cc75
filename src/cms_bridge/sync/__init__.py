"""Bidirectional content sync between the local CMS and external platforms.

Provides identity mapping, per-platform transformers, outbound dispatch
with retry, signed inbound webhook processing, loop prevention via origin
tags, and a durable queue with a time-budgeted batch runner.

Exports:
    SyncResult: Outcome of one inbound or outbound sync.
    ChangeEvent: Local lifecycle event stamped with its origin.
    PlatformConfig: Per-platform gates and wire conventions.
    SyncCoordinator: All sync components for one platform.
    CoordinatorRegistry: Coordinators keyed by platform.
    build_coordinators: Build coordinators from settings.
"""

from __future__ import annotations

from src.cms_bridge.sync.schemas import ChangeEvent, PlatformConfig, SyncResult

__all__ = [
    "ChangeEvent",
    "CoordinatorRegistry",
    "PlatformConfig",
    "SyncCoordinator",
    "SyncResult",
    "build_coordinators",
]


def __getattr__(name: str):  # noqa: N807
    """Lazy-load the coordinator to avoid a config <-> schemas import cycle."""
    if name in ("SyncCoordinator", "CoordinatorRegistry", "build_coordinators"):
        from src.cms_bridge.sync import coordinator

        return getattr(coordinator, name)
    msg = f"module {__name__!r} has no attribute {name!r}"
    raise AttributeError(msg)
