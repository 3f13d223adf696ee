"""SQLAlchemy model binding a Hive account to a Farcaster identity."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import BigInteger, Boolean, CheckConstraint, DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from hivecast_relay.db.session import Base
from hivecast_relay.db.time import utcnow

from .token import PK_TYPE

MIN_BATCH_SIZE = 1
MAX_BATCH_SIZE = 20
DEFAULT_BATCH_SIZE = 5
# 04:20 in GMT-3
DEFAULT_SCHEDULED_HOUR = 7
DEFAULT_SCHEDULED_MINUTE = 20
DEFAULT_TIMEZONE = "GMT-3"


class UserLink(Base):
    """Link and delivery preferences for one Hive username.

    Rows are deactivated rather than deleted so the delivery log keeps its
    meaning as dedup history.
    """

    __tablename__ = "relay_user_link"
    __table_args__ = (
        CheckConstraint(
            f"max_notifications_per_batch >= {MIN_BATCH_SIZE} "
            f"AND max_notifications_per_batch <= {MAX_BATCH_SIZE}",
            name="ck_user_link_batch_size",
        ),
        CheckConstraint(
            "scheduled_hour >= 0 AND scheduled_hour <= 23", name="ck_user_link_hour"
        ),
        CheckConstraint(
            "scheduled_minute >= 0 AND scheduled_minute <= 59", name="ck_user_link_minute"
        ),
    )

    id: Mapped[int] = mapped_column(PK_TYPE, primary_key=True, autoincrement=True)
    source_username: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    fid: Mapped[int | None] = mapped_column(BigInteger, nullable=True, index=True)
    handle: Mapped[str | None] = mapped_column(String(255), nullable=True)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    notifications_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    notify_votes: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    notify_comments: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    notify_mentions: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    notify_follows: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    notify_reblogs: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    notify_transfers: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    scheduled_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    scheduled_hour: Mapped[int] = mapped_column(
        Integer, nullable=False, default=DEFAULT_SCHEDULED_HOUR
    )
    scheduled_minute: Mapped[int] = mapped_column(
        Integer, nullable=False, default=DEFAULT_SCHEDULED_MINUTE
    )
    timezone: Mapped[str] = mapped_column(String(50), nullable=False, default=DEFAULT_TIMEZONE)
    max_notifications_per_batch: Mapped[int] = mapped_column(
        Integer, nullable=False, default=DEFAULT_BATCH_SIZE
    )

    # Watermarks
    last_scheduled_check: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    last_scheduled_event_id: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    last_processed_event_id: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    linked_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    last_notification_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
