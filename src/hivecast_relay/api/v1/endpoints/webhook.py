# src/hivecast_relay/api/v1/endpoints/webhook.py
"""Inbound Farcaster lifecycle webhook."""

from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException, status

from hivecast_relay.schemas.webhook import WebhookAck, WebhookEnvelope
from hivecast_relay.services.preferences import PreferencesError
from hivecast_relay.services.token_store import TokenStoreError
from hivecast_relay.services.webhook import UnknownWebhookEventError, WebhookVerificationError

from ..dependencies import WebhookProcessorDep

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhook", tags=["webhook"])


@router.post("", response_model=WebhookAck)
async def receive_webhook(envelope: WebhookEnvelope, processor: WebhookProcessorDep) -> WebhookAck:
    """Verify a signed lifecycle event and apply it to the token store."""
    try:
        outcome = await processor.process(envelope.model_dump())
    except WebhookVerificationError as exc:
        logger.warning("Rejected webhook: %s", exc)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid webhook signature",
        ) from exc
    except UnknownWebhookEventError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except (TokenStoreError, PreferencesError) as exc:
        logger.error("Failed to apply webhook", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Token store unavailable",
        ) from exc
    return WebhookAck(event=outcome.event.value, fid=outcome.fid)
