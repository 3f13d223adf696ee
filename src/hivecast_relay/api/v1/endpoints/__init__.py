# src/hivecast_relay/api/v1/endpoints/__init__.py
"""API endpoint modules for version 1."""

from .links import router as links_router
from .notifications import router as notifications_router
from .relay import router as relay_router
from .webhook import router as webhook_router

__all__ = [
    "links_router",
    "notifications_router",
    "relay_router",
    "webhook_router",
]
