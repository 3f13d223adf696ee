# src/hivecast_relay/schemas/relay.py
"""Schemas for relay runs, account links and delivery stats."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from hivecast_relay.models.user_link import MAX_BATCH_SIZE, MIN_BATCH_SIZE


class SentNotificationResponse(BaseModel):
    username: str
    type: str
    title: str
    body: str
    target_url: str


class RunSummaryResponse(BaseModel):
    """Result of one relay run."""

    mode: str
    processed_users: int
    total_sent: int
    errors: list[str]
    sent: list[SentNotificationResponse]


class LinkCreate(BaseModel):
    """Request to bind a Hive username to a Farcaster fid."""

    username: str = Field(
        ...,
        min_length=3,
        max_length=16,
        pattern=r"^[a-z0-9.-]+$",
        description="Hive account name",
    )
    fid: int = Field(..., gt=0, description="Farcaster fid that already registered a token")


class PreferencesUpdate(BaseModel):
    """Partial update of a user's delivery preferences."""

    model_config = ConfigDict(extra="forbid")

    notifications_enabled: bool | None = None
    notify_votes: bool | None = None
    notify_comments: bool | None = None
    notify_mentions: bool | None = None
    notify_follows: bool | None = None
    notify_reblogs: bool | None = None
    notify_transfers: bool | None = None
    scheduled_enabled: bool | None = None
    scheduled_hour: int | None = Field(None, ge=0, le=23)
    scheduled_minute: int | None = Field(None, ge=0, le=59)
    timezone: str | None = Field(None, min_length=1, max_length=50)
    max_notifications_per_batch: int | None = Field(None, ge=MIN_BATCH_SIZE, le=MAX_BATCH_SIZE)


class PreferencesResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    notifications_enabled: bool
    notify_votes: bool
    notify_comments: bool
    notify_mentions: bool
    notify_follows: bool
    notify_reblogs: bool
    notify_transfers: bool
    scheduled_enabled: bool
    scheduled_hour: int
    scheduled_minute: int
    timezone: str
    max_notifications_per_batch: int
    last_notification_at: datetime | None
    linked_at: datetime


class LinkResponse(BaseModel):
    """Link status for one Hive username."""

    username: str
    fid: int | None
    handle: str | None
    active: bool
    token_active: bool
    preferences: PreferencesResponse


class DeliveryLogItem(BaseModel):
    username: str
    type: str
    title: str
    body: str
    target_url: str | None
    success: bool
    error_message: str | None
    sent_at: datetime


class StatsResponse(BaseModel):
    """Delivery analytics."""

    total: int
    successful: int
    failed: int
    by_type: dict[str, int]
    recent: list[DeliveryLogItem]


class BroadcastRequest(BaseModel):
    """Operator notification sent to every active token."""

    title: str = Field(..., min_length=1, max_length=200)
    body: str = Field(..., min_length=1, max_length=1000)
    target_url: str | None = Field(None, max_length=1024, description="Defaults to the site root")


class BroadcastResponse(BaseModel):
    success: bool
    sent_count: int
    total_tokens: int
    error: str | None = None
