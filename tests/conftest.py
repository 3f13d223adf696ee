# tests/conftest.py
from __future__ import annotations

import base64
import json
import os
import time
from collections.abc import Callable, Generator, Iterator
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from nacl.signing import SigningKey
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

os.environ.setdefault("PYTEST_RUNNING", "true")

from hivecast_relay.api.v1 import dependencies as deps
from hivecast_relay.db.session import Base, create_tables, drop_tables
from hivecast_relay.main import app as fastapi_app
from hivecast_relay.services.content_cache import ContentCache
from hivecast_relay.services.delivery_log import DeliveryLog
from hivecast_relay.services.events import SourceEvent
from hivecast_relay.services.ledger import LedgerError
from hivecast_relay.services.preferences import PreferencesService
from hivecast_relay.services.token_store import DatabaseTokenStore, InMemoryTokenStore

ENDPOINT_URL = "https://client.example/notifications"
LINKED_AT = datetime(2024, 1, 1, tzinfo=UTC)


@pytest.fixture(scope="session")
def engine(tmp_path_factory: pytest.TempPathFactory) -> Generator[Engine, None, None]:
    # Relay runs reach the stores from worker threads, so each session needs its
    # own connection; an in-memory database would be private to one of them.
    db_path = tmp_path_factory.mktemp("db") / "relay.db"
    engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    create_tables(engine)
    try:
        yield engine
    finally:
        drop_tables(engine)
        engine.dispose()


@pytest.fixture()
def session_factory(engine: Engine) -> Iterator[Callable[[], Session]]:
    factory = sessionmaker(
        bind=engine,
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
    )
    try:
        yield factory
    finally:
        # Stores commit through their own sessions, so clean up table by table.
        with engine.begin() as cleanup_conn:
            for table in reversed(Base.metadata.sorted_tables):
                cleanup_conn.execute(table.delete())


@pytest.fixture()
def token_store(session_factory: Callable[[], Session]) -> DatabaseTokenStore:
    return DatabaseTokenStore(session_factory)


@pytest.fixture()
def memory_store() -> InMemoryTokenStore:
    return InMemoryTokenStore()


@pytest.fixture()
def preferences(session_factory: Callable[[], Session]) -> PreferencesService:
    return PreferencesService(session_factory)


@pytest.fixture()
def delivery_log(session_factory: Callable[[], Session]) -> DeliveryLog:
    return DeliveryLog(session_factory)


class FakeClock:
    """Manually advanced clock usable wherever a ``time.monotonic``-style callable is expected."""

    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture()
def fake_clock() -> FakeClock:
    return FakeClock()


class FakeHive:
    """Stand-in for ``HiveClient`` serving canned notifications and post bodies."""

    def __init__(
        self,
        notifications: dict[str, list[SourceEvent]] | None = None,
        contents: dict[tuple[str, str], str] | None = None,
    ) -> None:
        self.notifications = notifications or {}
        self.contents = contents or {}
        self.content_calls: list[tuple[str, str]] = []
        self.failing_users: set[str] = set()
        self.failing_contents: set[tuple[str, str]] = set()

    async def fetch_notifications(self, username: str, limit: int | None = None) -> list[SourceEvent]:
        if username in self.failing_users:
            raise LedgerError(f"Hive unavailable for {username}")
        return list(self.notifications.get(username, []))

    async def fetch_content(self, author: str, permlink: str) -> str | None:
        self.content_calls.append((author, permlink))
        if (author, permlink) in self.failing_contents:
            raise LedgerError(f"Hive timed out fetching @{author}/{permlink}")
        return self.contents.get((author, permlink))

    async def fetch_page_meta(self, url: str) -> None:
        return None

    async def close(self) -> None:
        return None


@pytest.fixture()
def fake_hive() -> FakeHive:
    return FakeHive()


def make_event(
    raw_type: str = "vote",
    *,
    msg: str = "",
    url: str = "@alice/my-first-post",
    date: datetime | str | None = None,
    event_id: int | None = None,
) -> SourceEvent:
    """Build a ``SourceEvent`` the way the Hive notification feed would deliver it."""
    when = date if date is not None else LINKED_AT + timedelta(hours=1)
    payload: dict[str, Any] = {
        "type": raw_type,
        "msg": msg,
        "url": url,
        "date": when.isoformat() if isinstance(when, datetime) else when,
    }
    if event_id is not None:
        payload["id"] = event_id
    return SourceEvent.from_payload(payload)


def _encode_b64(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode().rstrip("=")


def _encode_json(data: dict[str, Any]) -> str:
    return _encode_b64(json.dumps(data, separators=(",", ":")).encode())


def build_ed25519_envelope(
    signing_key: SigningKey,
    *,
    fid: Any = 42,
    event: str = "app_added",
    token: str | None = "tok-1",
    url: str = ENDPOINT_URL,
    timestamp: Any = None,
    username: str | None = None,
    key_type: str = "app",
) -> dict[str, str]:
    """Return a signed webhook envelope for an app (Ed25519) key."""
    header: dict[str, Any] = {
        "fid": fid,
        "type": key_type,
        "key": "0x" + signing_key.verify_key.encode().hex(),
        "timestamp": time.time() if timestamp is None else timestamp,
    }
    if username is not None:
        header["username"] = username
    payload: dict[str, Any] = {"event": event}
    if token is not None:
        payload["notificationDetails"] = {"url": url, "token": token}

    header_b64 = _encode_json(header)
    payload_b64 = _encode_json(payload)
    signature = signing_key.sign(f"{header_b64}.{payload_b64}".encode()).signature
    return {"header": header_b64, "payload": payload_b64, "signature": _encode_b64(signature)}


@pytest.fixture()
def app_key() -> SigningKey:
    return SigningKey.generate()


@pytest.fixture(scope="session")
def app() -> FastAPI:
    return fastapi_app


@pytest.fixture()
def content_cache(fake_clock: FakeClock) -> ContentCache:
    return ContentCache(ttl=300, max_entries=100, clock=fake_clock)


@pytest.fixture(autouse=True)
def override_dependencies(
    app: FastAPI,
    session_factory: Callable[[], Session],
    token_store: DatabaseTokenStore,
    fake_hive: FakeHive,
    content_cache: ContentCache,
) -> Iterator[None]:
    overrides: dict[Callable[..., Any], Callable[[], Any]] = {
        deps.get_session_factory: lambda: session_factory,
        deps.get_token_store: lambda: token_store,
        deps.get_hive_client: lambda: fake_hive,
        deps.get_content_cache: lambda: content_cache,
        deps.get_identity_registry: lambda: None,
    }
    for dependency, override in overrides.items():
        app.dependency_overrides[dependency] = override

    try:
        yield
    finally:
        for dependency in overrides:
            app.dependency_overrides.pop(dependency, None)


@pytest.fixture()
def client(app: FastAPI) -> Iterator[TestClient]:
    with TestClient(app, base_url="http://test") as test_client:
        yield test_client
