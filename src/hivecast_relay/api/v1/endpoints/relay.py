# src/hivecast_relay/api/v1/endpoints/relay.py
"""Cron triggers for relay runs."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from hivecast_relay.schemas.relay import RunSummaryResponse
from hivecast_relay.services.relay import RelayOrchestrator

from ..dependencies import RelayFactoryDep, require_cron_secret

router = APIRouter(
    prefix="/relay",
    tags=["relay"],
    dependencies=[Depends(require_cron_secret)],
)

CONTINUOUS = "continuous"
SCHEDULED = "scheduled"


async def _execute(relay: RelayOrchestrator, username: str | None = None) -> RunSummaryResponse:
    try:
        summary = await relay.run() if username is None else await relay.run_user(username)
    finally:
        await relay.sender.close()
    return RunSummaryResponse.model_validate(summary.as_dict())


@router.post("/run", response_model=RunSummaryResponse)
async def run_continuous(build_relay: RelayFactoryDep) -> RunSummaryResponse:
    """Deliver new notifications to every linked user."""
    return await _execute(build_relay(CONTINUOUS))


@router.post("/scheduled", response_model=RunSummaryResponse)
async def run_scheduled(build_relay: RelayFactoryDep) -> RunSummaryResponse:
    """Deliver notifications to users whose preferred time is now."""
    return await _execute(build_relay(SCHEDULED))


@router.post("/users/{username}/trigger", response_model=RunSummaryResponse)
async def trigger_user(
    username: str,
    build_relay: RelayFactoryDep,
) -> RunSummaryResponse:
    """Run scheduled delivery for one user right away."""
    return await _execute(build_relay(SCHEDULED), username)
