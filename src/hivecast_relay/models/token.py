"""SQLAlchemy model for delivery-network notification tokens."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import BigInteger, Boolean, DateTime, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from hivecast_relay.db.session import Base
from hivecast_relay.db.time import utcnow

# SQLite only autoincrements INTEGER primary keys.
PK_TYPE = BigInteger().with_variant(Integer(), "sqlite")


class DeliveryToken(Base):
    """One live Farcaster notification credential per fid."""

    __tablename__ = "relay_token"
    __table_args__ = (
        Index("ix_relay_token_source_username", "source_username"),
        Index("ix_relay_token_is_active", "is_active"),
    )

    id: Mapped[int] = mapped_column(PK_TYPE, primary_key=True, autoincrement=True)
    fid: Mapped[int] = mapped_column(BigInteger, unique=True, nullable=False)
    handle: Mapped[str | None] = mapped_column(String(255), nullable=True)
    source_username: Mapped[str | None] = mapped_column(String(255), nullable=True)
    token: Mapped[str] = mapped_column(Text, nullable=False)
    endpoint_url: Mapped[str] = mapped_column(Text, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )
