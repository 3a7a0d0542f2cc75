"""Error taxonomy for the sync engine.

Every error carries a ``retryable`` flag. The batch runner releases
retryable failures back to the queue and dead-letters everything else on
first failure, since repeating the call cannot change the outcome.
"""

from __future__ import annotations


class SyncError(Exception):
    """Base class for sync failures."""

    retryable: bool = False


class ConfigDisabledError(SyncError):
    """Sync direction or entity type is disabled for the platform."""


class InvalidSignatureError(SyncError):
    """Webhook signature missing or does not match the shared secret."""


class UnsupportedPlatformError(SyncError):
    """No coordinator is configured for the platform."""


class UnsupportedEntityTypeError(SyncError):
    """No transformer is registered for the (platform, entity_type) pair."""

    def __init__(self, platform: str, entity_type: str) -> None:
        self.platform = platform
        self.entity_type = entity_type
        super().__init__(f"Unsupported entity type for {platform}: {entity_type}")


class UnknownActionError(SyncError):
    """Webhook event or dispatch action is not recognised."""


class InvalidPayloadError(SyncError):
    """Payload could not be decoded or lacks required identifiers."""


class ConflictError(SyncError):
    """Identity binding would break one-to-one uniqueness."""


class HTTPError(SyncError):
    """Platform API answered with a non-success status.

    Client errors that a repeat cannot fix (bad request, missing resource,
    validation) are not retryable; everything else is treated as transient.
    """

    PERMANENT_STATUSES = frozenset({400, 403, 404, 405, 409, 410, 422})

    def __init__(self, status_code: int, body: str = "") -> None:
        self.status_code = status_code
        self.body = body
        self.retryable = status_code not in self.PERMANENT_STATUSES
        super().__init__(f"HTTP {status_code}: {body[:200]}")


class PlatformUnavailableError(SyncError):
    """Platform API could not be reached (connect error, timeout)."""

    retryable = True
