"""
Pydantic schemas for API request/response models.

These schemas define the structure of API data for serialization and validation.
"""

from .relay import (
    LinkCreate,
    LinkResponse,
    PreferencesResponse,
    PreferencesUpdate,
    RunSummaryResponse,
    StatsResponse,
)
from .webhook import WebhookAck, WebhookEnvelope

__all__ = [
    "LinkCreate", "LinkResponse",
    "PreferencesResponse", "PreferencesUpdate",
    "RunSummaryResponse", "StatsResponse",
    "WebhookAck", "WebhookEnvelope",
]
