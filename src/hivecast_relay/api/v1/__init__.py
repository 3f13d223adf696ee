# src/hivecast_relay/api/v1/__init__.py
"""Version 1 API endpoints."""

from .endpoints import links_router, notifications_router, relay_router, webhook_router

__all__ = [
    "links_router",
    "notifications_router",
    "relay_router",
    "webhook_router",
]
