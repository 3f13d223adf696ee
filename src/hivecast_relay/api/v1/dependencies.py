"""Shared API dependencies: service wiring and cron authentication."""

from __future__ import annotations

import secrets
from collections.abc import Callable
from functools import lru_cache
from typing import Annotated

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from hivecast_relay.core.settings import settings
from hivecast_relay.db.session import SessionLocal
from hivecast_relay.services.broadcast import BroadcastService
from hivecast_relay.services.content_cache import ContentCache
from hivecast_relay.services.delivery_log import DeliveryLog
from hivecast_relay.services.ledger import HiveClient, IdentityRegistryClient
from hivecast_relay.services.preferences import PreferencesService
from hivecast_relay.services.relay import RelayOrchestrator, create_relay
from hivecast_relay.services.sender import BatchSender
from hivecast_relay.services.token_store import TokenStore, create_token_store
from hivecast_relay.services.webhook import WebhookProcessor, WebhookVerifier

# auto_error is off so a missing header can be allowed when no secret is set.
bearer_scheme = HTTPBearer(auto_error=False)

SessionFactory = Callable[[], Session]
RelayFactory = Callable[[str], RelayOrchestrator]


def get_session_factory() -> SessionFactory:
    """Return the factory every store uses to open short-lived sessions."""
    return SessionLocal


@lru_cache
def get_token_store() -> TokenStore:
    """Return the process-wide token store."""
    return create_token_store(settings)


@lru_cache
def get_content_cache() -> ContentCache:
    """Return the process-wide enrichment cache."""
    return ContentCache()


@lru_cache
def get_hive_client() -> HiveClient:
    return HiveClient()


@lru_cache
def get_identity_registry() -> IdentityRegistryClient | None:
    if not settings.identity_registry_url:
        return None
    return IdentityRegistryClient(settings.identity_registry_url)


SessionFactoryDep = Annotated[SessionFactory, Depends(get_session_factory)]
TokenStoreDep = Annotated[TokenStore, Depends(get_token_store)]


def get_preferences_service(session_factory: SessionFactoryDep) -> PreferencesService:
    return PreferencesService(session_factory)


def get_delivery_log(session_factory: SessionFactoryDep) -> DeliveryLog:
    return DeliveryLog(session_factory)


def get_webhook_processor(
    token_store: TokenStoreDep,
    preferences: Annotated[PreferencesService, Depends(get_preferences_service)],
    registry: Annotated[IdentityRegistryClient | None, Depends(get_identity_registry)],
) -> WebhookProcessor:
    return WebhookProcessor(WebhookVerifier(registry), token_store, preferences)


def get_relay_factory(
    session_factory: SessionFactoryDep,
    token_store: TokenStoreDep,
    hive: Annotated[HiveClient, Depends(get_hive_client)],
    cache: Annotated[ContentCache, Depends(get_content_cache)],
) -> RelayFactory:
    """Return a callable building an orchestrator for a given mode."""

    def build(mode: str) -> RelayOrchestrator:
        return create_relay(
            mode,
            session_factory=session_factory,
            token_store=token_store,
            hive=hive,
            cache=cache,
        )

    return build


def get_broadcast_service(
    session_factory: SessionFactoryDep,
    token_store: TokenStoreDep,
) -> BroadcastService:
    return BroadcastService(BatchSender(token_store), DeliveryLog(session_factory))


def require_cron_secret(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(bearer_scheme)],
) -> None:
    """Reject trigger calls without the configured bearer secret.

    When no ``CRON_SECRET`` is configured the trigger endpoints are open.

    Raises:
        HTTPException: If a secret is configured and the request does not carry it.
    """
    expected = settings.cron_secret
    if not expected:
        return
    supplied = credentials.credentials if credentials else ""
    if not secrets.compare_digest(supplied.encode(), expected.encode()):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid cron secret",
            headers={"WWW-Authenticate": "Bearer"},
        )


PreferencesDep = Annotated[PreferencesService, Depends(get_preferences_service)]
DeliveryLogDep = Annotated[DeliveryLog, Depends(get_delivery_log)]
WebhookProcessorDep = Annotated[WebhookProcessor, Depends(get_webhook_processor)]
RelayFactoryDep = Annotated[RelayFactory, Depends(get_relay_factory)]
BroadcastServiceDep = Annotated[BroadcastService, Depends(get_broadcast_service)]
