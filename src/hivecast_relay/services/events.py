"""Source-ledger activity events."""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any

_URL_PATTERN = re.compile(r"^@([^/]+)(?:/(.+))?$")


class EventType(Enum):
    """Closed set of Hive notification kinds the relay understands."""

    VOTE = "vote"
    COMMENT = "comment"
    MENTION = "mention"
    FOLLOW = "follow"
    REBLOG = "reblog"
    TRANSFER = "transfer"
    # Operator broadcasts; never produced from the Hive feed.
    CUSTOM = "custom"


# Hive reports replies under several names; all of them are comments to us.
_TYPE_ALIASES: dict[str, EventType] = {
    "vote": EventType.VOTE,
    "reply": EventType.COMMENT,
    "reply_comment": EventType.COMMENT,
    "comment": EventType.COMMENT,
    "mention": EventType.MENTION,
    "follow": EventType.FOLLOW,
    "reblog": EventType.REBLOG,
    "transfer": EventType.TRANSFER,
}


def parse_event_type(raw: str | None) -> EventType | None:
    """Map a raw Hive notification type to an EventType, or None if unsupported."""
    if not raw:
        return None
    return _TYPE_ALIASES.get(raw.strip().lower())


def parse_timestamp(raw: Any) -> datetime | None:
    """Parse Hive's naive ISO timestamps as UTC."""
    if isinstance(raw, datetime):
        return raw if raw.tzinfo else raw.replace(tzinfo=UTC)
    if not raw:
        return None
    text = str(raw).strip()
    if text.endswith("Z"):
        text = text[:-1]
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


@dataclass(frozen=True)
class SourceEvent:
    """Immutable notification read from the Hive account feed."""

    type: EventType | None
    raw_type: str
    message: str
    url: str
    timestamp: datetime | None
    id: int | None = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> SourceEvent:
        """Build an event from a ``bridge.account_notifications`` entry."""
        raw_type = str(payload.get("type") or "")
        raw_id = payload.get("id")
        try:
            event_id = int(raw_id) if raw_id is not None else None
        except (TypeError, ValueError):
            event_id = None
        return cls(
            type=parse_event_type(raw_type),
            raw_type=raw_type,
            message=str(payload.get("msg") or payload.get("message") or ""),
            url=str(payload.get("url") or ""),
            timestamp=parse_timestamp(payload.get("date") or payload.get("timestamp")),
            id=event_id,
        )

    @property
    def author(self) -> str:
        match = _URL_PATTERN.match(self.url)
        return match.group(1) if match else ""

    @property
    def permlink(self) -> str:
        match = _URL_PATTERN.match(self.url)
        return (match.group(2) or "") if match else ""

    @property
    def sort_key(self) -> float:
        """Epoch seconds used for oldest-first ordering; undated events sort first."""
        return self.timestamp.timestamp() if self.timestamp else 0.0

    @property
    def key(self) -> str:
        """Stable identity for the event, independent of conversion output."""
        stamp = self.timestamp.isoformat() if self.timestamp else ""
        return f"{self.raw_type}|{self.url}|{stamp}|{self.id if self.id is not None else ''}"
