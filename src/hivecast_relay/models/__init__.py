"""SQLAlchemy models for the relay."""

from .delivery_log import DeliveryLogEntry
from .token import DeliveryToken
from .user_link import UserLink

__all__ = [
    "DeliveryLogEntry",
    "DeliveryToken",
    "UserLink",
]
