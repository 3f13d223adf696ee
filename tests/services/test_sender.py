from __future__ import annotations

import json

import httpx
import pytest

from hivecast_relay.services.converter import ConvertedNotification
from hivecast_relay.services.events import EventType
from hivecast_relay.services.sender import BatchSender, group_by_endpoint
from hivecast_relay.services.token_store import InMemoryTokenStore

ENDPOINT_A = "https://client-a.example/notify"
ENDPOINT_B = "https://client-b.example/notify"

NOTIFICATION = ConvertedNotification(
    type=EventType.COMMENT,
    title="New Comment",
    body='@bob: "Nice line"',
    source_url="https://skatehive.app/post/bob/re-ramp",
    author_hint="bob",
    content_id_hint="re-ramp",
)


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def _sender(store, handler, **kwargs) -> tuple[BatchSender, RecordingSleep]:
    sleep = RecordingSleep()
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    sender = BatchSender(
        store,
        client=client,
        max_retries=kwargs.pop("max_retries", 3),
        retry_base_delay=1.0,
        sleep=sleep,
        **kwargs,
    )
    return sender, sleep


def _accept_all(request: httpx.Request) -> httpx.Response:
    body = json.loads(request.content)
    return httpx.Response(200, json={"successfulTokens": body["tokens"]})


def test_group_by_endpoint_preserves_order(memory_store: InMemoryTokenStore) -> None:
    memory_store.add_or_update(1, None, "t1", ENDPOINT_A, "alice")
    memory_store.add_or_update(2, None, "t2", ENDPOINT_B, "bob")
    memory_store.add_or_update(3, None, "t3", ENDPOINT_A, "carol")

    grouped = group_by_endpoint(memory_store.get_active())

    assert grouped == {ENDPOINT_A: ["t1", "t3"], ENDPOINT_B: ["t2"]}


@pytest.mark.asyncio
async def test_send_posts_notification_payload(memory_store: InMemoryTokenStore) -> None:
    requests: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(json.loads(request.content))
        return _accept_all(request)

    memory_store.add_or_update(1, None, "t1", ENDPOINT_A, "alice")
    sender, _ = _sender(memory_store, handler)

    result = await sender.send(NOTIFICATION, ["alice"])

    assert result.success is True
    assert result.delivered is True
    assert result.error_summary is None
    payload = requests[0]
    assert payload["notificationId"].startswith("hivecast-")
    assert payload["title"] == "New Comment"
    assert payload["body"] == '@bob: "Nice line"'
    assert payload["targetUrl"] == NOTIFICATION.source_url
    assert payload["tokens"] == ["t1"]


@pytest.mark.asyncio
async def test_send_without_tokens_is_a_successful_no_op(memory_store: InMemoryTokenStore) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    sender, _ = _sender(memory_store, handler)

    result = await sender.send(NOTIFICATION, ["nobody"])

    assert result.success is True
    assert result.results == []
    assert result.delivered is False
    assert result.error_summary == "No active notification tokens"


@pytest.mark.asyncio
async def test_send_groups_tokens_per_endpoint(memory_store: InMemoryTokenStore) -> None:
    hosts: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        hosts.append(request.url.host)
        return _accept_all(request)

    memory_store.add_or_update(1, None, "t1", ENDPOINT_A, "alice")
    memory_store.add_or_update(2, None, "t2", ENDPOINT_B, "bob")
    sender, _ = _sender(memory_store, handler)

    result = await sender.send(NOTIFICATION)

    assert sorted(hosts) == ["client-a.example", "client-b.example"]
    assert len(result.results) == 2


@pytest.mark.asyncio
async def test_send_chunks_large_token_groups(memory_store: InMemoryTokenStore) -> None:
    sizes: list[int] = []

    def handler(request: httpx.Request) -> httpx.Response:
        sizes.append(len(json.loads(request.content)["tokens"]))
        return _accept_all(request)

    for fid in range(1, 6):
        memory_store.add_or_update(fid, None, f"t{fid}", ENDPOINT_A, "alice")
    sender, _ = _sender(memory_store, handler, max_tokens_per_request=2)

    await sender.send(NOTIFICATION, ["alice"])

    assert sizes == [2, 2, 1]


@pytest.mark.asyncio
async def test_send_retries_with_linear_backoff(memory_store: InMemoryTokenStore) -> None:
    attempts = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        attempts["count"] += 1
        if attempts["count"] < 3:
            return httpx.Response(500)
        return _accept_all(request)

    memory_store.add_or_update(1, None, "t1", ENDPOINT_A, "alice")
    sender, sleep = _sender(memory_store, handler)

    result = await sender.send(NOTIFICATION, ["alice"])

    assert result.delivered is True
    assert attempts["count"] == 3
    assert sleep.delays == [1.0, 2.0]


@pytest.mark.asyncio
async def test_exhausted_retries_report_tokens_as_rate_limited(
    memory_store: InMemoryTokenStore,
) -> None:
    """Tokens are kept when the endpoint never answers; they are not invalid."""

    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectTimeout("timed out", request=request)

    memory_store.add_or_update(1, None, "t1", ENDPOINT_A, "alice")
    sender, sleep = _sender(memory_store, handler)

    result = await sender.send(NOTIFICATION, ["alice"])

    assert result.success is False
    assert result.delivered is False
    assert result.results[0].rate_limited_tokens == ["t1"]
    assert "timed out" in result.error_summary
    assert sleep.delays == [1.0, 2.0]
    assert memory_store.get_by_fid(1) is not None


@pytest.mark.asyncio
async def test_invalid_tokens_are_removed_from_store(memory_store: InMemoryTokenStore) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"successfulTokens": [], "invalidTokens": ["t1"]})

    memory_store.add_or_update(1, None, "t1", ENDPOINT_A, "alice")
    sender, _ = _sender(memory_store, handler)

    result = await sender.send(NOTIFICATION, ["alice"])

    assert result.delivered is False
    assert result.error_summary == "All notification tokens were invalid"
    assert memory_store.get_by_fid(1) is None


@pytest.mark.asyncio
async def test_rate_limited_response_is_not_an_error(memory_store: InMemoryTokenStore) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"rateLimitedTokens": ["t1"]})

    memory_store.add_or_update(1, None, "t1", ENDPOINT_A, "alice")
    sender, sleep = _sender(memory_store, handler)

    result = await sender.send(NOTIFICATION, ["alice"])

    assert result.success is True
    assert result.delivered is False
    assert result.error_summary == "Delivery was rate limited"
    assert sleep.delays == []


@pytest.mark.asyncio
async def test_close_leaves_injected_client_open(memory_store: InMemoryTokenStore) -> None:
    client = httpx.AsyncClient(transport=httpx.MockTransport(_accept_all))
    sender = BatchSender(memory_store, client=client)

    await sender.close()

    assert client.is_closed is False
    await client.aclose()
