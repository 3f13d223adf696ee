from __future__ import annotations

from typing import Any

from hivecast_relay.services.converter import ConvertedNotification
from hivecast_relay.services.delivery_log import DeliveryLog
from hivecast_relay.services.events import EventType
from hivecast_relay.services.token_store import DatabaseTokenStore
from tests.conftest import ENDPOINT_URL


def _link(client: Any, token_store: DatabaseTokenStore, username: str = "alice", fid: int = 7):
    token_store.add_or_update(fid, "skater", "tok", ENDPOINT_URL)
    return client.post("/api/v1/links", json={"username": username, "fid": fid})


def test_create_link_requires_registered_token(client: Any) -> None:
    r = client.post("/api/v1/links", json={"username": "alice", "fid": 7})

    assert r.status_code == 409


def test_create_link_binds_username_to_token(client: Any, token_store: DatabaseTokenStore) -> None:
    r = _link(client, token_store)

    assert r.status_code == 201
    body = r.json()
    assert body["username"] == "alice"
    assert body["fid"] == 7
    assert body["handle"] == "skater"
    assert body["token_active"] is True
    assert body["preferences"]["notify_votes"] is True
    assert token_store.get_by_fid(7).source_username == "alice"


def test_create_link_validates_username(client: Any, token_store: DatabaseTokenStore) -> None:
    token_store.add_or_update(7, None, "tok", ENDPOINT_URL)

    r = client.post("/api/v1/links", json={"username": "Not Valid!", "fid": 7})

    assert r.status_code == 422


def test_get_link(client: Any, token_store: DatabaseTokenStore) -> None:
    _link(client, token_store)

    assert client.get("/api/v1/links/alice").json()["fid"] == 7
    assert client.get("/api/v1/links/nobody").status_code == 404


def test_update_preferences(client: Any, token_store: DatabaseTokenStore) -> None:
    _link(client, token_store)

    r = client.patch(
        "/api/v1/links/alice/preferences",
        json={"notify_votes": False, "scheduled_enabled": True, "scheduled_hour": 9},
    )

    assert r.status_code == 200
    body = r.json()
    assert body["notify_votes"] is False
    assert body["scheduled_enabled"] is True
    assert body["scheduled_hour"] == 9
    assert body["notify_comments"] is True


def test_update_preferences_rejects_out_of_range_values(client: Any, token_store: DatabaseTokenStore) -> None:
    _link(client, token_store)

    assert client.patch(
        "/api/v1/links/alice/preferences", json={"max_notifications_per_batch": 21}
    ).status_code == 422
    assert client.patch(
        "/api/v1/links/alice/preferences", json={"scheduled_hour": 24}
    ).status_code == 422
    assert client.patch(
        "/api/v1/links/alice/preferences", json={"unknown_field": True}
    ).status_code == 422


def test_update_preferences_for_unknown_user(client: Any) -> None:
    r = client.patch("/api/v1/links/nobody/preferences", json={"notify_votes": False})

    assert r.status_code == 404


def test_stats(client: Any, delivery_log: DeliveryLog) -> None:
    notification = ConvertedNotification(
        type=EventType.FOLLOW,
        title="New Follower",
        body="@bob followed you",
        source_url="https://skatehive.app/profile/bob",
        author_hint="bob",
        content_id_hint="",
    )
    delivery_log.record("alice", 7, notification, success=True)
    delivery_log.record("alice", 7, notification, success=False, error_message="HTTP 500")

    r = client.get("/api/v1/stats", params={"username": "alice"})

    assert r.status_code == 200
    body = r.json()
    assert body["total"] == 2
    assert body["successful"] == 1
    assert body["failed"] == 1
    assert body["by_type"] == {"follow": 2}
    assert len(body["recent"]) == 2
