"""Account links and per-user delivery preferences."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, fields
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from hivecast_relay.core.settings import settings
from hivecast_relay.db.time import as_utc, utcnow
from hivecast_relay.models import UserLink
from hivecast_relay.models.user_link import (
    DEFAULT_SCHEDULED_HOUR,
    DEFAULT_SCHEDULED_MINUTE,
    DEFAULT_TIMEZONE,
    MAX_BATCH_SIZE,
    MIN_BATCH_SIZE,
)
from hivecast_relay.services.events import EventType

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = frozenset(
    {
        "notifications_enabled",
        "notify_votes",
        "notify_comments",
        "notify_mentions",
        "notify_follows",
        "notify_reblogs",
        "notify_transfers",
        "scheduled_enabled",
        "scheduled_hour",
        "scheduled_minute",
        "timezone",
        "max_notifications_per_batch",
    }
)

MINUTES_PER_DAY = 24 * 60

_TOGGLE_BY_TYPE: dict[EventType, str] = {
    EventType.VOTE: "notify_votes",
    EventType.COMMENT: "notify_comments",
    EventType.MENTION: "notify_mentions",
    EventType.FOLLOW: "notify_follows",
    EventType.REBLOG: "notify_reblogs",
    EventType.TRANSFER: "notify_transfers",
}


class PreferencesError(RuntimeError):
    """Raised when a link or preference write fails."""


class InvalidPreferencesError(ValueError):
    """Raised when a preference value is outside its allowed range."""


@dataclass(frozen=True)
class LinkPreferences:
    """Detached snapshot of a ``relay_user_link`` row."""

    source_username: str
    fid: int | None
    handle: str | None
    active: bool
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
    last_scheduled_check: datetime | None
    last_scheduled_event_id: int
    last_processed_event_id: int
    linked_at: datetime
    last_notification_at: datetime | None

    @classmethod
    def from_model(cls, row: UserLink) -> LinkPreferences:
        values = {f.name: getattr(row, f.name) for f in fields(cls)}
        for name in ("last_scheduled_check", "linked_at", "last_notification_at"):
            if values[name] is not None:
                values[name] = as_utc(values[name])
        return cls(**values)

    def wants(self, event_type: EventType) -> bool:
        """Whether the user has this event type switched on."""
        return bool(getattr(self, _TOGGLE_BY_TYPE[event_type]))


def _minutes_apart(hour: int, minute: int, now: datetime) -> int:
    """Distance between a time of day and ``now`` in minutes, across midnight."""
    diff = abs((hour * 60 + minute) - (now.hour * 60 + now.minute))
    return min(diff, MINUTES_PER_DAY - diff)


def validate_preferences(changes: dict[str, Any]) -> None:
    """Reject unknown fields and out-of-range schedule or batch values."""
    unknown = set(changes) - UPDATABLE_FIELDS
    if unknown:
        raise InvalidPreferencesError(f"Unknown preference fields: {', '.join(sorted(unknown))}")
    hour = changes.get("scheduled_hour")
    if hour is not None and not 0 <= hour <= 23:
        raise InvalidPreferencesError("Hour must be between 0 and 23")
    minute = changes.get("scheduled_minute")
    if minute is not None and not 0 <= minute <= 59:
        raise InvalidPreferencesError("Minute must be between 0 and 59")
    batch = changes.get("max_notifications_per_batch")
    if batch is not None and not MIN_BATCH_SIZE <= batch <= MAX_BATCH_SIZE:
        raise InvalidPreferencesError(
            f"Batch size must be between {MIN_BATCH_SIZE} and {MAX_BATCH_SIZE}"
        )


class PreferencesService:
    """Reads and writes ``relay_user_link`` rows.

    Like the token store, reads degrade to empty results on storage errors
    while writes raise ``PreferencesError``.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock

    def _find(self, session: Session, username: str) -> UserLink | None:
        return session.execute(
            select(UserLink).where(UserLink.source_username == username)
        ).scalar_one_or_none()

    def get(self, username: str) -> LinkPreferences | None:
        try:
            with self._session_factory() as session:
                row = self._find(session, username)
                return LinkPreferences.from_model(row) if row else None
        except SQLAlchemyError:
            logger.warning("Could not read preferences for %s", username, exc_info=True)
            return None

    def get_by_fid(self, fid: int) -> LinkPreferences | None:
        try:
            with self._session_factory() as session:
                row = session.execute(
                    select(UserLink).where(UserLink.fid == fid).order_by(UserLink.id.desc())
                ).scalars().first()
                return LinkPreferences.from_model(row) if row else None
        except SQLAlchemyError:
            logger.warning("Could not read preferences for fid %s", fid, exc_info=True)
            return None

    def link_account(self, username: str, fid: int, handle: str | None) -> LinkPreferences:
        """Bind ``username`` to ``fid``, creating defaults or re-activating the link.

        ``linked_at`` is reset so history from before the (re)link is never
        delivered.
        """
        now = self._clock()
        try:
            with self._session_factory() as session:
                row = self._find(session, username)
                if row is None:
                    row = self._new_link(username, fid, handle, now)
                    session.add(row)
                else:
                    row.fid = fid
                    row.handle = handle
                    row.active = True
                    row.linked_at = now
                session.commit()
                session.refresh(row)
                snapshot = LinkPreferences.from_model(row)
        except SQLAlchemyError as exc:
            raise PreferencesError(f"Failed to link {username} to fid {fid}") from exc
        logger.info("Linked %s to fid %s", username, fid)
        return snapshot

    def create_defaults(self, username: str, fid: int | None, handle: str | None) -> LinkPreferences:
        """Create default preferences unless the user already has a row."""
        try:
            with self._session_factory() as session:
                row = self._find(session, username)
                if row is None:
                    row = self._new_link(username, fid, handle, self._clock())
                    session.add(row)
                    session.commit()
                    session.refresh(row)
                    logger.info("Created default preferences for %s", username)
                return LinkPreferences.from_model(row)
        except SQLAlchemyError as exc:
            raise PreferencesError(f"Failed to create preferences for {username}") from exc

    def _new_link(
        self, username: str, fid: int | None, handle: str | None, now: datetime
    ) -> UserLink:
        return UserLink(
            source_username=username,
            fid=fid,
            handle=handle,
            active=True,
            notifications_enabled=True,
            notify_votes=True,
            notify_comments=True,
            notify_mentions=True,
            notify_follows=True,
            notify_reblogs=True,
            notify_transfers=True,
            scheduled_enabled=False,
            scheduled_hour=DEFAULT_SCHEDULED_HOUR,
            scheduled_minute=DEFAULT_SCHEDULED_MINUTE,
            timezone=DEFAULT_TIMEZONE,
            max_notifications_per_batch=settings.default_batch_size,
            last_scheduled_event_id=0,
            last_processed_event_id=0,
            linked_at=now,
        )

    def update(self, username: str, **changes: Any) -> LinkPreferences | None:
        """Apply preference changes. Returns None when the user has no link."""
        changes = {key: value for key, value in changes.items() if value is not None}
        validate_preferences(changes)
        return self._write(username, changes)

    def deactivate(self, username: str) -> bool:
        return self._write(username, {"active": False}) is not None

    def deactivate_fid(self, fid: int) -> int:
        """Deactivate every link for ``fid``; returns how many were changed."""
        try:
            with self._session_factory() as session:
                rows = session.execute(select(UserLink).where(UserLink.fid == fid)).scalars().all()
                for row in rows:
                    row.active = False
                session.commit()
                return len(rows)
        except SQLAlchemyError as exc:
            raise PreferencesError(f"Failed to deactivate links for fid {fid}") from exc

    def mark_scheduled_check(self, username: str, when: datetime | None = None) -> None:
        self._write(username, {"last_scheduled_check": when or self._clock()})

    def set_scheduled_watermark(self, username: str, event_id: int) -> None:
        self._write(username, {"last_scheduled_event_id": event_id})

    def set_processed_watermark(self, username: str, event_id: int) -> None:
        self._write(username, {"last_processed_event_id": event_id})

    def touch_last_notification(self, username: str, when: datetime | None = None) -> None:
        self._write(username, {"last_notification_at": when or self._clock()})

    def _write(self, username: str, values: dict[str, Any]) -> LinkPreferences | None:
        try:
            with self._session_factory() as session:
                row = self._find(session, username)
                if row is None:
                    return None
                for name, value in values.items():
                    setattr(row, name, value)
                session.commit()
                session.refresh(row)
                return LinkPreferences.from_model(row)
        except SQLAlchemyError as exc:
            raise PreferencesError(f"Failed to update preferences for {username}") from exc

    def active_links(self) -> list[LinkPreferences]:
        """Links that are active and have notifications switched on."""
        return self._read_links(
            "active links",
            select(UserLink).where(
                UserLink.active.is_(True),
                UserLink.notifications_enabled.is_(True),
            ),
        )

    def scheduled_links(self, now: datetime | None = None) -> list[LinkPreferences]:
        """Links whose preferred delivery time falls in the current window.

        A link qualifies when its preferred UTC time of day is within
        ``schedule_window_minutes`` of ``now`` (so 07:58 matches a run at 08:01
        and 23:58 one at 00:02), and it was not checked in the last
        ``scheduled_recheck_hours``.
        """
        now = as_utc(now or self._clock())
        window = settings.schedule_window_minutes
        recheck_cutoff = now - timedelta(hours=settings.scheduled_recheck_hours)
        candidates = self._read_links(
            "scheduled links",
            select(UserLink).where(
                UserLink.active.is_(True),
                UserLink.notifications_enabled.is_(True),
                UserLink.scheduled_enabled.is_(True),
                UserLink.scheduled_hour.in_(
                    [(now.hour - 1) % 24, now.hour, (now.hour + 1) % 24]
                ),
            ),
        )
        return [
            link
            for link in candidates
            if _minutes_apart(link.scheduled_hour, link.scheduled_minute, now) <= window
            and (link.last_scheduled_check is None or link.last_scheduled_check < recheck_cutoff)
        ]

    def _read_links(self, description: str, stmt) -> list[LinkPreferences]:
        try:
            with self._session_factory() as session:
                rows = session.execute(stmt.order_by(UserLink.id)).scalars().all()
                return [LinkPreferences.from_model(row) for row in rows]
        except SQLAlchemyError:
            logger.warning("Could not read %s", description, exc_info=True)
            return []
