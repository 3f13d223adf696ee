from __future__ import annotations

import json
from collections.abc import Iterator
from typing import Any

import httpx
import pytest
from fastapi import FastAPI

from hivecast_relay.api.v1 import dependencies as deps
from hivecast_relay.core.settings import settings
from hivecast_relay.services.broadcast import SYSTEM_USERNAME, BroadcastService
from hivecast_relay.services.delivery_log import DeliveryLog
from hivecast_relay.services.sender import BatchSender
from hivecast_relay.services.token_store import DatabaseTokenStore
from tests.conftest import ENDPOINT_URL


@pytest.fixture()
def delivered_tokens(
    app: FastAPI, session_factory, token_store: DatabaseTokenStore
) -> Iterator[list[str]]:
    """Route broadcasts through a mock client endpoint that accepts every token."""
    seen: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        tokens = json.loads(request.content)["tokens"]
        seen.extend(tokens)
        return httpx.Response(200, json={"successfulTokens": tokens})

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    app.dependency_overrides[deps.get_broadcast_service] = lambda: BroadcastService(
        BatchSender(token_store, client=client), DeliveryLog(session_factory)
    )
    try:
        yield seen
    finally:
        app.dependency_overrides.pop(deps.get_broadcast_service, None)


def test_custom_notification_goes_to_all_active_tokens(
    client: Any, token_store: DatabaseTokenStore, delivery_log: DeliveryLog, delivered_tokens: list[str]
) -> None:
    token_store.add_or_update(1, None, "tok-a", ENDPOINT_URL, "alice")
    token_store.add_or_update(2, None, "tok-b", ENDPOINT_URL, None)

    r = client.post(
        "/api/v1/notifications/custom",
        json={"title": "Contest", "body": "Best trick contest starts now"},
    )

    assert r.status_code == 200
    assert r.json() == {"success": True, "sent_count": 2, "total_tokens": 2, "error": None}
    assert sorted(delivered_tokens) == ["tok-a", "tok-b"]
    assert delivery_log.stats(SYSTEM_USERNAME).by_type == {"custom": 1}


def test_custom_notification_without_tokens_is_a_no_op(client: Any) -> None:
    r = client.post("/api/v1/notifications/custom", json={"title": "Contest", "body": "Starts now"})

    assert r.status_code == 200
    assert r.json()["sent_count"] == 0


@pytest.mark.parametrize(
    "payload",
    [
        {"title": "Contest"},
        {"title": "", "body": "Starts now"},
        {"title": "Contest", "body": "Starts now", "target_url": "skatehive"},
    ],
)
def test_custom_notification_validation(client: Any, payload: dict[str, Any]) -> None:
    assert client.post("/api/v1/notifications/custom", json=payload).status_code == 422


def test_custom_notification_requires_cron_secret(client: Any) -> None:
    original = settings.cron_secret
    settings.cron_secret = "s3cret"
    try:
        r = client.post("/api/v1/notifications/custom", json={"title": "Contest", "body": "Starts now"})
    finally:
        settings.cron_secret = original

    assert r.status_code == 401
