"""Operator-authored notifications sent to every active token."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

from hivecast_relay.core.settings import settings
from hivecast_relay.services.converter import (
    MAX_BODY_LENGTH,
    MAX_TITLE_LENGTH,
    ConvertedNotification,
    is_valid_url,
    truncate,
)
from hivecast_relay.services.delivery_log import DeliveryLog
from hivecast_relay.services.events import EventType
from hivecast_relay.services.sender import BatchSender, DeliveryResponse

logger = logging.getLogger(__name__)

# Broadcasts are logged under this name since they belong to no Hive account.
SYSTEM_USERNAME = "system"


class InvalidBroadcastError(ValueError):
    """Raised when a broadcast has no text or an unusable target URL."""


@dataclass
class BroadcastResult:
    success: bool
    sent_count: int = 0
    total_tokens: int = 0
    error: str | None = None
    results: list[DeliveryResponse] = field(default_factory=list)


class BroadcastService:
    """Builds a custom notification and sends it to all active tokens."""

    def __init__(
        self,
        sender: BatchSender,
        delivery_log: DeliveryLog,
        *,
        base_url: str | None = None,
    ) -> None:
        self.sender = sender
        self.delivery_log = delivery_log
        self.base_url = (base_url or settings.base_url).rstrip("/")

    def build(self, title: str, body: str, target_url: str | None = None) -> ConvertedNotification:
        """Return the notification to broadcast, truncated to Farcaster limits.

        Raises:
            InvalidBroadcastError: If title or body is blank, or the target URL is invalid.
        """
        if not title.strip() or not body.strip():
            raise InvalidBroadcastError("Title and body are required")
        url = target_url or self.base_url
        if not is_valid_url(url):
            raise InvalidBroadcastError(f"Target URL {url!r} is not a valid absolute URL")
        return ConvertedNotification(
            type=EventType.CUSTOM,
            title=truncate(title, MAX_TITLE_LENGTH),
            body=truncate(body, MAX_BODY_LENGTH),
            source_url=url,
            author_hint=SYSTEM_USERNAME,
            content_id_hint="",
        )

    async def broadcast(self, title: str, body: str, target_url: str | None = None) -> BroadcastResult:
        notification = self.build(title, body, target_url)
        result = await self.sender.send(notification)

        sent_count = sum(len(item.successful_tokens) for item in result.results)
        total_tokens = sum(
            len(item.successful_tokens) + len(item.invalid_tokens) + len(item.rate_limited_tokens)
            for item in result.results
        )
        error = None if result.success else result.error_summary
        await asyncio.to_thread(
            self.delivery_log.record,
            SYSTEM_USERNAME,
            None,
            notification,
            success=result.success,
            error_message=error,
        )
        logger.info(
            "Broadcast %r reached %d of %d tokens", notification.title, sent_count, total_tokens
        )
        return BroadcastResult(
            success=result.success,
            sent_count=sent_count,
            total_tokens=total_tokens,
            error=error,
            results=result.results,
        )
