from __future__ import annotations

from sqlalchemy.exc import OperationalError

from hivecast_relay.services.converter import ConvertedNotification
from hivecast_relay.services.delivery_log import (
    DeliveryLog,
    dedup_signature,
    notification_signature,
)
from hivecast_relay.services.events import EventType


def _notification(body: str = "@bob voted on your post", event_type=EventType.VOTE) -> ConvertedNotification:
    return ConvertedNotification(
        type=event_type,
        title="New Vote",
        body=body,
        source_url="https://skatehive.app/post/alice/p",
        author_hint="alice",
        content_id_hint="p",
    )


def test_dedup_signature_replaces_unsafe_characters() -> None:
    signature = dedup_signature("vote", "New Vote", "@bob: hi!", "https://x.io/a")

    assert signature == "vote_New_Vote__bob__hi__https___x_io_a"


def test_notification_signature_is_stable_across_instances() -> None:
    assert notification_signature(_notification()) == notification_signature(_notification())
    assert notification_signature(_notification()) != notification_signature(_notification("other"))


def test_record_then_processed_signatures(delivery_log: DeliveryLog) -> None:
    """Failed attempts count as processed too."""
    sent = _notification()
    failed = _notification("@carol voted on your post")
    delivery_log.record("alice", 7, sent, success=True)
    delivery_log.record("alice", 7, failed, success=False, error_message="rate limited")
    delivery_log.record("bob", 8, _notification("for bob"), success=True)

    signatures = delivery_log.processed_signatures("alice")

    assert signatures == {notification_signature(sent), notification_signature(failed)}


def test_processed_signatures_respects_history_limit(delivery_log: DeliveryLog) -> None:
    for index in range(5):
        delivery_log.record("alice", 7, _notification(f"body {index}"), success=True)

    assert len(delivery_log.processed_signatures("alice", limit=3)) == 3


def test_processed_signatures_returns_none_when_unreadable(mocker) -> None:
    factory = mocker.MagicMock(side_effect=OperationalError("SELECT", {}, Exception("db down")))

    assert DeliveryLog(factory).processed_signatures("alice") is None


def test_record_failure_is_reported_not_raised(mocker) -> None:
    factory = mocker.MagicMock(side_effect=OperationalError("INSERT", {}, Exception("db down")))

    assert DeliveryLog(factory).record("alice", 7, _notification(), success=True) is False


def test_record_truncates_long_error_messages(delivery_log: DeliveryLog) -> None:
    delivery_log.record("alice", 7, _notification(), success=False, error_message="x" * 900)

    recent = delivery_log.stats("alice").recent

    assert len(recent[0]["error_message"]) == 500


def test_stats_counts_by_type_and_outcome(delivery_log: DeliveryLog) -> None:
    delivery_log.record("alice", 7, _notification("a"), success=True)
    delivery_log.record("alice", 7, _notification("b"), success=False, error_message="nope")
    delivery_log.record(
        "bob", 8, _notification("c", event_type=EventType.FOLLOW), success=True
    )

    overall = delivery_log.stats()
    alice = delivery_log.stats("alice")

    assert (overall.total, overall.successful, overall.failed) == (3, 2, 1)
    assert overall.by_type == {"vote": 2, "follow": 1}
    assert alice.total == 2
    assert {entry["username"] for entry in alice.recent} == {"alice"}
    assert alice.recent[0]["sent_at"].tzinfo is not None
