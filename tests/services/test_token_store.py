from __future__ import annotations

import pytest
from sqlalchemy.exc import OperationalError

from hivecast_relay.core.settings import Settings
from hivecast_relay.services.token_store import (
    DatabaseTokenStore,
    InMemoryTokenStore,
    TokenStore,
    TokenStoreConfigError,
    create_token_store,
)

ENDPOINT = "https://client.example/notifications"


@pytest.fixture(params=["database", "memory"])
def store(request, token_store: DatabaseTokenStore, memory_store: InMemoryTokenStore) -> TokenStore:
    return token_store if request.param == "database" else memory_store


def test_add_or_update_inserts_active_record(store: TokenStore) -> None:
    """A new fid is stored as an active token."""
    record = store.add_or_update(7, "skater", "tok-a", ENDPOINT, "alice")

    assert record.fid == 7
    assert record.is_active is True
    assert record.source_username == "alice"
    assert store.get_by_fid(7) == record


def test_add_or_update_reactivates_and_replaces_token(store: TokenStore) -> None:
    """Upserting a disabled fid forces it active with the new token."""
    store.add_or_update(7, "skater", "tok-a", ENDPOINT, "alice")
    store.disable(7)

    record = store.add_or_update(7, "skater", "tok-b", ENDPOINT)

    assert record.is_active is True
    assert record.token == "tok-b"
    assert len(store.get_all()) == 1


def test_add_or_update_without_username_keeps_existing_link(store: TokenStore) -> None:
    store.add_or_update(7, "skater", "tok-a", ENDPOINT, "alice")

    record = store.add_or_update(7, "skater", "tok-b", ENDPOINT)

    assert record.source_username == "alice"


def test_remove_and_missing_fid(store: TokenStore) -> None:
    store.add_or_update(7, None, "tok-a", ENDPOINT)

    assert store.remove(7) is True
    assert store.remove(7) is False
    assert store.get_by_fid(7) is None


def test_disable_hides_token_from_active_queries(store: TokenStore) -> None:
    """Disabled tokens are kept but excluded from active lookups."""
    store.add_or_update(7, None, "tok-a", ENDPOINT, "alice")
    store.add_or_update(8, None, "tok-b", ENDPOINT, "bob")

    assert store.disable(7) is True

    assert [record.fid for record in store.get_active()] == [8]
    assert store.get_for_source_users(["alice"]) == []
    assert store.get_by_fid(7).is_active is False


def test_enable_requires_existing_row(store: TokenStore) -> None:
    assert store.enable(99, "tok-z", ENDPOINT) is False

    store.add_or_update(7, None, "tok-a", ENDPOINT)
    store.disable(7)

    assert store.enable(7, "tok-new", ENDPOINT) is True
    record = store.get_by_fid(7)
    assert record.is_active is True
    assert record.token == "tok-new"


def test_get_for_source_users_filters_by_username(store: TokenStore) -> None:
    store.add_or_update(1, None, "tok-1", ENDPOINT, "alice")
    store.add_or_update(2, None, "tok-2", ENDPOINT, "bob")
    store.add_or_update(3, None, "tok-3", ENDPOINT)

    found = store.get_for_source_users(["alice", "carol"])

    assert [record.fid for record in found] == [1]
    assert store.get_for_source_users([]) == []


def test_link_source_username_and_lookup_by_token(store: TokenStore) -> None:
    store.add_or_update(5, "handle", "tok-5", ENDPOINT)

    assert store.link_source_username(5, "dave") is True
    assert store.link_source_username(6, "erin") is False
    assert store.get_by_token("tok-5").source_username == "dave"
    assert store.get_by_token("missing") is None


def test_database_reads_degrade_to_empty_on_storage_errors(mocker) -> None:
    """Storage failures during reads are logged and reported as no tokens."""
    factory = mocker.MagicMock(side_effect=OperationalError("SELECT", {}, Exception("db down")))
    store = DatabaseTokenStore(factory)

    assert store.get_active() == []
    assert store.get_for_source_users(["alice"]) == []
    assert store.get_by_fid(1) is None


def test_create_token_store_rejects_memory_when_durability_required() -> None:
    config = Settings(token_store_backend="memory", require_durable_store=True)

    with pytest.raises(TokenStoreConfigError):
        create_token_store(config)


def test_create_token_store_allows_memory_when_opted_in(caplog) -> None:
    config = Settings(token_store_backend="memory", require_durable_store=False)

    store = create_token_store(config)

    assert isinstance(store, InMemoryTokenStore)
    assert store.durable is False
    assert "lost when the process exits" in caplog.text


def test_create_token_store_defaults_to_database(session_factory) -> None:
    store = create_token_store(Settings(token_store_backend="database"), session_factory)

    assert isinstance(store, DatabaseTokenStore)
    assert store.durable is True
