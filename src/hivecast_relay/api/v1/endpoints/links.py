# src/hivecast_relay/api/v1/endpoints/links.py
"""Account linking, preferences and delivery stats."""

from __future__ import annotations

from fastapi import APIRouter, HTTPException, status

from hivecast_relay.schemas.relay import (
    DeliveryLogItem,
    LinkCreate,
    LinkResponse,
    PreferencesResponse,
    PreferencesUpdate,
    StatsResponse,
)
from hivecast_relay.services.preferences import (
    InvalidPreferencesError,
    LinkPreferences,
    PreferencesError,
)
from hivecast_relay.services.token_store import TokenStoreError

from ..dependencies import DeliveryLogDep, PreferencesDep, TokenStoreDep

router = APIRouter(tags=["links"])


def _link_response(link: LinkPreferences, token_active: bool) -> LinkResponse:
    return LinkResponse(
        username=link.source_username,
        fid=link.fid,
        handle=link.handle,
        active=link.active,
        token_active=token_active,
        preferences=PreferencesResponse.model_validate(link),
    )


@router.post("/links", response_model=LinkResponse, status_code=status.HTTP_201_CREATED)
async def create_link(
    body: LinkCreate,
    token_store: TokenStoreDep,
    preferences: PreferencesDep,
) -> LinkResponse:
    """Link a Hive username to a fid that has already added the mini app."""
    token = token_store.get_by_fid(body.fid)
    if token is None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="No notification token registered for this fid",
        )
    try:
        token_store.link_source_username(body.fid, body.username)
        link = preferences.link_account(body.username, body.fid, token.handle)
    except (TokenStoreError, PreferencesError) as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Could not store account link",
        ) from exc
    return _link_response(link, token.is_active)


@router.get("/links/{username}", response_model=LinkResponse)
async def get_link(
    username: str,
    token_store: TokenStoreDep,
    preferences: PreferencesDep,
) -> LinkResponse:
    link = preferences.get(username)
    if link is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User is not linked")
    token = token_store.get_by_fid(link.fid) if link.fid is not None else None
    return _link_response(link, bool(token and token.is_active))


@router.patch("/links/{username}/preferences", response_model=PreferencesResponse)
async def update_preferences(
    username: str,
    body: PreferencesUpdate,
    preferences: PreferencesDep,
) -> PreferencesResponse:
    """Update toggles, schedule and batch size for a linked user."""
    try:
        link = preferences.update(username, **body.model_dump(exclude_none=True))
    except InvalidPreferencesError as exc:
        raise HTTPException(
            status_code=422, detail=str(exc)
        ) from exc
    except PreferencesError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Could not update preferences",
        ) from exc
    if link is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User is not linked")
    return PreferencesResponse.model_validate(link)


@router.get("/stats", response_model=StatsResponse)
async def delivery_stats(delivery_log: DeliveryLogDep, username: str | None = None) -> StatsResponse:
    """Delivery analytics, optionally for one user."""
    stats = delivery_log.stats(username)
    return StatsResponse(
        total=stats.total,
        successful=stats.successful,
        failed=stats.failed,
        by_type=stats.by_type,
        recent=[DeliveryLogItem(**entry) for entry in stats.recent],
    )
