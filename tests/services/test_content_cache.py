from __future__ import annotations

from hivecast_relay.services.content_cache import ContentCache


def test_entry_is_served_until_ttl_elapses(fake_clock) -> None:
    cache = ContentCache(ttl=300, max_entries=10, clock=fake_clock)
    cache.set("alice", "post", "Some cached body")

    fake_clock.advance(299.9)
    entry = cache.get("alice", "post")
    assert entry is not None
    assert entry.content == "Some cached body"

    fake_clock.advance(0.2)
    assert cache.get("alice", "post") is None


def test_failed_lookups_are_cached_as_none(fake_clock) -> None:
    """A None entry means "known to have no usable content", not a miss."""
    cache = ContentCache(ttl=300, max_entries=10, clock=fake_clock)
    cache.set("alice", "gone", None)

    entry = cache.get("alice", "gone")

    assert entry is not None
    assert entry.content is None


def test_prune_drops_oldest_entries_over_the_cap(fake_clock) -> None:
    cache = ContentCache(ttl=300, max_entries=2, clock=fake_clock)
    for index in range(4):
        cache.set("b", f"post-{index}", f"content {index}")
        fake_clock.advance(1)

    removed = cache.prune()

    assert removed == 2
    assert len(cache) == 2
    assert cache.get("b", "post-0") is None
    assert cache.get("b", "post-1") is None
    assert cache.get("b", "post-3").content == "content 3"


def test_prune_purges_expired_entries(fake_clock) -> None:
    cache = ContentCache(ttl=300, max_entries=10, clock=fake_clock)
    cache.set("a", "one", "first content")
    cache.set("a", "two", "second content")
    fake_clock.advance(301)

    assert cache.prune() == 2
    assert len(cache) == 0


def test_prune_on_small_cache_is_a_no_op(fake_clock) -> None:
    cache = ContentCache(ttl=300, max_entries=5, clock=fake_clock)
    cache.set("a", "p", "content")

    assert cache.prune() == 0
    assert len(cache) == 1


def test_clear_and_key_format(fake_clock) -> None:
    cache = ContentCache(ttl=300, max_entries=5, clock=fake_clock)
    cache.set("a", "p", "content")
    cache.clear()

    assert len(cache) == 0
    assert ContentCache.make_key("alice", "my-post") == "alice/my-post"
