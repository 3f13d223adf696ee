"""SQLAlchemy model for the append-only delivery log."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import BigInteger, Boolean, DateTime, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from hivecast_relay.db.session import Base
from hivecast_relay.db.time import utcnow

from .token import PK_TYPE

ERROR_MESSAGE_MAX_LENGTH = 500


class DeliveryLogEntry(Base):
    """Record of one delivery attempt, successful or not.

    Doubles as the dedup oracle for continuous polling.
    """

    __tablename__ = "relay_delivery_log"
    __table_args__ = (
        Index("ix_relay_delivery_log_user_sent", "source_username", "sent_at"),
        Index("ix_relay_delivery_log_type", "event_type"),
    )

    id: Mapped[int] = mapped_column(PK_TYPE, primary_key=True, autoincrement=True)
    source_username: Mapped[str] = mapped_column(String(255), nullable=False)
    fid: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    event_type: Mapped[str] = mapped_column(String(50), nullable=False)
    title: Mapped[str] = mapped_column(String(32), nullable=False)
    body: Mapped[str] = mapped_column(String(128), nullable=False)
    target_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    sent_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
