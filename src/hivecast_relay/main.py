# src/hivecast_relay/main.py
"""Main entry point for the Hivecast relay API."""

from __future__ import annotations

import logging

from fastapi import FastAPI

from hivecast_relay.api.v1 import links_router, notifications_router, relay_router, webhook_router
from hivecast_relay.api.v1.dependencies import get_hive_client, get_identity_registry
from hivecast_relay.core.settings import settings

logger = logging.getLogger(__name__)

app = FastAPI(
    title=settings.app_name,
    description="Relays Hive account activity to Farcaster mini-app notifications",
    version=settings.app_version,
)

app.include_router(webhook_router, prefix="/api/v1")
app.include_router(relay_router, prefix="/api/v1")
app.include_router(links_router, prefix="/api/v1")
app.include_router(notifications_router, prefix="/api/v1")


@app.on_event("shutdown")
async def on_shutdown() -> None:
    await get_hive_client().close()
    registry = get_identity_registry()
    if registry is not None:
        await registry.close()


@app.get("/health")
async def health_check() -> dict[str, str]:
    """Health check endpoint to verify the service is running."""
    return {"status": "ok"}


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint with basic information about the API."""
    return {
        "name": settings.app_name,
        "version": settings.app_version,
        "description": "Relays Hive account activity to Farcaster mini-app notifications",
        "docs": "/docs",
        "redoc": "/redoc",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("hivecast_relay.main:app", host="0.0.0.0", port=8000, reload=settings.debug)
