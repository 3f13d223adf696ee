# src/hivecast_relay/schemas/webhook.py
"""Webhook envelope schemas."""

from pydantic import BaseModel, Field


class WebhookEnvelope(BaseModel):
    """Signed lifecycle event sent by a Farcaster client."""

    header: str = Field(..., min_length=1, description="base64url JSON header")
    payload: str = Field(..., min_length=1, description="base64url JSON payload")
    signature: str = Field(..., min_length=1, description="base64url raw signature")


class WebhookAck(BaseModel):
    success: bool = True
    event: str
    fid: int
