"""Append-only delivery log, used for analytics and deduplication."""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from hivecast_relay.core.settings import settings
from hivecast_relay.db.time import as_utc, utcnow
from hivecast_relay.models import DeliveryLogEntry
from hivecast_relay.models.delivery_log import ERROR_MESSAGE_MAX_LENGTH
from hivecast_relay.services.converter import ConvertedNotification

logger = logging.getLogger(__name__)

_UNSAFE = re.compile(r"[^a-zA-Z0-9_-]")
RECENT_ENTRIES = 10


def dedup_signature(event_type: str, title: str, body: str, target_url: str | None) -> str:
    """Derive the dedup key for a notification; non-alphanumerics become ``_``."""
    return _UNSAFE.sub("_", f"{event_type}_{title}_{body}_{target_url or ''}")


def notification_signature(notification: ConvertedNotification) -> str:
    return dedup_signature(
        notification.type.value,
        notification.title,
        notification.body,
        notification.source_url,
    )


@dataclass
class DeliveryStats:
    """Aggregate counts over the delivery log."""

    total: int = 0
    successful: int = 0
    failed: int = 0
    by_type: dict[str, int] = field(default_factory=dict)
    recent: list[dict[str, Any]] = field(default_factory=list)


class DeliveryLog:
    """Reads and appends ``relay_delivery_log`` rows."""

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self._session_factory = session_factory

    def record(
        self,
        username: str,
        fid: int | None,
        notification: ConvertedNotification,
        *,
        success: bool,
        error_message: str | None = None,
    ) -> bool:
        """Append one attempt. Returns False if the row could not be written."""
        entry = DeliveryLogEntry(
            source_username=username,
            fid=fid,
            event_type=notification.type.value,
            title=notification.title,
            body=notification.body,
            target_url=notification.source_url,
            success=success,
            error_message=error_message[:ERROR_MESSAGE_MAX_LENGTH] if error_message else None,
            sent_at=utcnow(),
        )
        try:
            with self._session_factory() as session:
                session.add(entry)
                session.commit()
        except SQLAlchemyError:
            logger.error(
                "Failed to log %s delivery for %s (%s)",
                notification.type.value,
                username,
                notification.source_url,
                exc_info=True,
            )
            return False
        return True

    def processed_signatures(self, username: str, limit: int | None = None) -> set[str] | None:
        """Return signatures of the user's most recent attempts.

        Returns None when the log cannot be read, so callers can tell an
        unreadable history apart from an empty one.
        """
        stmt = (
            select(
                DeliveryLogEntry.event_type,
                DeliveryLogEntry.title,
                DeliveryLogEntry.body,
                DeliveryLogEntry.target_url,
            )
            .where(DeliveryLogEntry.source_username == username)
            .order_by(DeliveryLogEntry.sent_at.desc(), DeliveryLogEntry.id.desc())
            .limit(limit or settings.dedup_history_limit)
        )
        try:
            with self._session_factory() as session:
                rows = session.execute(stmt).all()
        except SQLAlchemyError:
            logger.warning("Could not read delivery history for %s", username, exc_info=True)
            return None
        return {dedup_signature(*row) for row in rows}

    def stats(self, username: str | None = None) -> DeliveryStats:
        """Summarise deliveries, optionally for a single user."""
        filters = []
        if username:
            filters.append(DeliveryLogEntry.source_username == username)

        try:
            with self._session_factory() as session:
                counts = session.execute(
                    select(DeliveryLogEntry.event_type, DeliveryLogEntry.success, func.count())
                    .where(*filters)
                    .group_by(DeliveryLogEntry.event_type, DeliveryLogEntry.success)
                ).all()
                recent_rows = session.execute(
                    select(DeliveryLogEntry)
                    .where(*filters)
                    .order_by(DeliveryLogEntry.sent_at.desc(), DeliveryLogEntry.id.desc())
                    .limit(RECENT_ENTRIES)
                ).scalars().all()
                recent = [
                    {
                        "username": row.source_username,
                        "type": row.event_type,
                        "title": row.title,
                        "body": row.body,
                        "target_url": row.target_url,
                        "success": row.success,
                        "error_message": row.error_message,
                        "sent_at": as_utc(row.sent_at),
                    }
                    for row in recent_rows
                ]
        except SQLAlchemyError:
            logger.warning("Could not read delivery stats", exc_info=True)
            return DeliveryStats()

        stats = DeliveryStats(recent=recent)
        for event_type, success, count in counts:
            stats.total += count
            if success:
                stats.successful += count
            else:
                stats.failed += count
            stats.by_type[event_type] = stats.by_type.get(event_type, 0) + count
        return stats
