"""API middleware package."""

from src.cms_bridge.api.middleware.logging import LoggingMiddleware

__all__ = ["LoggingMiddleware"]
