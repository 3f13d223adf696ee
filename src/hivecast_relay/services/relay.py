"""Relay runs: select users, find their new Hive events, deliver and log them.

A single ``RelayOrchestrator`` serves both delivery modes. What differs
between them is injected:

- a ``UserSelector`` decides which linked users are due this run
  (continuous polling takes everyone, scheduled delivery takes users whose
  preferred time falls in the current window);
- a ``Watermark`` decides whether an event was already handled (continuous
  mode compares dedup signatures against the delivery log, scheduled mode
  compares provider event ids against a high-water mark).

Everything between fetch and log is shared.
Store access is synchronous SQLAlchemy work, so it runs in worker threads
while users are processed concurrently on the event loop.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy.orm import Session

from hivecast_relay.core.settings import settings
from hivecast_relay.db.time import as_utc, utcnow
from hivecast_relay.services.content_cache import ContentCache
from hivecast_relay.services.converter import (
    ConvertedNotification,
    EnrichmentUnavailableError,
    NotificationConverter,
)
from hivecast_relay.services.delivery_log import DeliveryLog, notification_signature
from hivecast_relay.services.events import SourceEvent
from hivecast_relay.services.ledger import HiveClient
from hivecast_relay.services.preferences import LinkPreferences, PreferencesError, PreferencesService
from hivecast_relay.services.sender import BatchSender
from hivecast_relay.services.token_store import TokenStore

logger = logging.getLogger(__name__)

ProcessedCheck = Callable[[SourceEvent, ConvertedNotification], bool]


@dataclass
class SentNotification:
    username: str
    type: str
    title: str
    body: str
    target_url: str


@dataclass
class RunSummary:
    """Outcome of one relay run."""

    mode: str
    processed_users: int = 0
    total_sent: int = 0
    errors: list[str] = field(default_factory=list)
    sent: list[SentNotification] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


class UserSelector(ABC):
    """Chooses which linked users a run processes."""

    mode: str

    @abstractmethod
    def select(self, now: datetime) -> list[LinkPreferences]:
        """Return the links due for processing at ``now``."""

    def begin(self, link: LinkPreferences, now: datetime) -> None:
        """Hook called before a selected user is processed."""


class ContinuousSelector(UserSelector):
    """Every user with an active token and notifications switched on.

    Users with a linked token but no preferences row get default
    preferences on their first run.
    """

    mode = "continuous"

    def __init__(self, token_store: TokenStore, preferences: PreferencesService) -> None:
        self.token_store = token_store
        self.preferences = preferences

    def select(self, now: datetime) -> list[LinkPreferences]:
        selected: list[LinkPreferences] = []
        seen: set[str] = set()
        for token in self.token_store.get_active():
            username = token.source_username
            if not username or username in seen:
                continue
            seen.add(username)
            link = self.preferences.get(username)
            if link is None:
                try:
                    link = self.preferences.create_defaults(username, token.fid, token.handle)
                except PreferencesError:
                    logger.warning(
                        "Could not create default preferences for %s; skipping this run",
                        username,
                        exc_info=True,
                    )
                    continue
            if link.active and link.notifications_enabled:
                selected.append(link)
        return selected


class ScheduledSelector(UserSelector):
    """Users whose preferred delivery time falls within the current window."""

    mode = "scheduled"

    def __init__(self, token_store: TokenStore, preferences: PreferencesService) -> None:
        self.token_store = token_store
        self.preferences = preferences

    def select(self, now: datetime) -> list[LinkPreferences]:
        links = self.preferences.scheduled_links(now)
        if not links:
            return []
        with_tokens = {
            token.source_username
            for token in self.token_store.get_for_source_users(
                [link.source_username for link in links]
            )
        }
        return [link for link in links if link.source_username in with_tokens]

    def begin(self, link: LinkPreferences, now: datetime) -> None:
        self.preferences.mark_scheduled_check(link.source_username, now)


class Watermark(ABC):
    """Tracks which events a user has already been sent."""

    #: Whether events must be handled strictly in order for the mark to stay correct.
    ordered = False

    @abstractmethod
    def snapshot(self, link: LinkPreferences) -> ProcessedCheck:
        """Return a predicate answering ``has_been_processed`` for this user."""

    def skip_before_conversion(self, link: LinkPreferences, event: SourceEvent) -> bool:
        """Cheap pre-check that lets obviously handled events skip enrichment."""
        return False

    @abstractmethod
    def commit(self, link: LinkPreferences, attempted: list[SourceEvent]) -> None:
        """Record that ``attempted`` events were handled."""


class SignatureWatermark(Watermark):
    """Dedup by signature against the user's delivery log.

    Failed attempts count as processed so a permanently failing event is not
    retried every minute. If the log cannot be read, every event is treated
    as new and a duplicate may be sent.
    """

    def __init__(self, delivery_log: DeliveryLog, preferences: PreferencesService) -> None:
        self.delivery_log = delivery_log
        self.preferences = preferences

    def snapshot(self, link: LinkPreferences) -> ProcessedCheck:
        signatures = self.delivery_log.processed_signatures(link.source_username)
        if signatures is None:
            logger.warning(
                "Delivery history unavailable for %s; treating all events as unprocessed",
                link.source_username,
            )
            signatures = set()

        def has_been_processed(event: SourceEvent, notification: ConvertedNotification) -> bool:
            return notification_signature(notification) in signatures

        return has_been_processed

    def commit(self, link: LinkPreferences, attempted: list[SourceEvent]) -> None:
        ids = [event.id for event in attempted if event.id is not None]
        if ids and max(ids) > link.last_processed_event_id:
            self.preferences.set_processed_watermark(link.source_username, max(ids))


class EventIdWatermark(Watermark):
    """Dedup by provider event id against a per-user high-water mark.

    Events without an id can never be proven new and are skipped.
    """

    ordered = True

    def __init__(self, preferences: PreferencesService) -> None:
        self.preferences = preferences

    def skip_before_conversion(self, link: LinkPreferences, event: SourceEvent) -> bool:
        return event.id is None or event.id <= link.last_scheduled_event_id

    def snapshot(self, link: LinkPreferences) -> ProcessedCheck:
        threshold = link.last_scheduled_event_id

        def has_been_processed(event: SourceEvent, notification: ConvertedNotification) -> bool:
            return event.id is None or event.id <= threshold

        return has_been_processed

    def commit(self, link: LinkPreferences, attempted: list[SourceEvent]) -> None:
        ids = [event.id for event in attempted if event.id is not None]
        if ids and max(ids) > link.last_scheduled_event_id:
            self.preferences.set_scheduled_watermark(link.source_username, max(ids))


class RelayOrchestrator:
    """Runs the fetch, filter, convert, send and log pipeline for due users."""

    def __init__(
        self,
        *,
        hive: HiveClient,
        converter: NotificationConverter,
        sender: BatchSender,
        delivery_log: DeliveryLog,
        preferences: PreferencesService,
        selector: UserSelector,
        watermark: Watermark,
        user_concurrency: int | None = None,
        send_interval: float | None = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.hive = hive
        self.converter = converter
        self.sender = sender
        self.delivery_log = delivery_log
        self.preferences = preferences
        self.selector = selector
        self.watermark = watermark
        self.user_concurrency = user_concurrency or settings.user_concurrency
        self.send_interval = settings.send_interval_seconds if send_interval is None else send_interval
        self._clock = clock
        self._sleep = sleep

    @property
    def mode(self) -> str:
        return self.selector.mode

    async def run(self) -> RunSummary:
        """Process every due user once."""
        now = self._clock()
        summary = RunSummary(mode=self.mode)
        try:
            links = await asyncio.to_thread(self.selector.select, now)
        except Exception as exc:
            logger.error("Could not select users for the %s run", self.mode, exc_info=True)
            summary.errors.append(f"Could not select users: {exc}")
            return summary
        if not links:
            logger.info("No users due for %s notifications", self.mode)
            return summary

        semaphore = asyncio.Semaphore(self.user_concurrency)

        async def guarded(link: LinkPreferences) -> None:
            async with semaphore:
                await self._process_guarded(link, now, summary)

        await asyncio.gather(*(guarded(link) for link in links))
        logger.info(
            "%s run processed %d users, sent %d notifications, %d errors",
            self.mode.capitalize(),
            summary.processed_users,
            summary.total_sent,
            len(summary.errors),
        )
        return summary

    async def run_user(self, username: str) -> RunSummary:
        """Process one user immediately, ignoring the selector's timing rules."""
        summary = RunSummary(mode=self.mode)
        link = await asyncio.to_thread(self.preferences.get, username)
        if link is None or not link.active:
            summary.errors.append(f"No active link for {username}")
            return summary
        await self._process_guarded(link, self._clock(), summary)
        return summary

    async def _process_guarded(
        self, link: LinkPreferences, now: datetime, summary: RunSummary
    ) -> None:
        username = link.source_username
        try:
            await asyncio.to_thread(self.selector.begin, link, now)
            sent = await self.process_user(link)
        except Exception as exc:
            logger.error("Failed to process notifications for %s", username, exc_info=True)
            summary.errors.append(f"Failed to process notifications for {username}: {exc}")
            return
        summary.processed_users += 1
        summary.total_sent += len(sent)
        summary.sent.extend(sent)

    async def select_pending(
        self, link: LinkPreferences, events: list[SourceEvent]
    ) -> list[tuple[SourceEvent, ConvertedNotification]]:
        """Return the oldest unprocessed events for ``link``, converted and capped."""
        username = link.source_username
        linked_at = as_utc(link.linked_at)
        eligible = [
            event
            for event in events
            if event.type is not None
            and event.timestamp is not None
            and event.timestamp >= linked_at
            and link.wants(event.type)
        ]
        eligible.sort(key=lambda event: (event.sort_key, event.id or 0))

        self.converter.cache.prune()
        has_been_processed = await asyncio.to_thread(self.watermark.snapshot, link)
        cap = link.max_notifications_per_batch
        pending: list[tuple[SourceEvent, ConvertedNotification]] = []
        batch_signatures: set[str] = set()
        for event in eligible:
            if len(pending) >= cap:
                break
            if self.watermark.skip_before_conversion(link, event):
                continue
            try:
                notification = await self.converter.convert(event, username)
            except EnrichmentUnavailableError as exc:
                logger.info("Deferring %s event for %s to a later run: %s", event.raw_type, username, exc)
                if self.watermark.ordered:
                    break
                continue
            if notification is None:
                continue
            signature = notification_signature(notification)
            if has_been_processed(event, notification) or signature in batch_signatures:
                logger.debug("Skipping processed %s event for %s", event.raw_type, username)
                continue
            batch_signatures.add(signature)
            pending.append((event, notification))
        return pending

    async def process_user(self, link: LinkPreferences) -> list[SentNotification]:
        """Deliver one batch to one user and return what was sent."""
        username = link.source_username
        events = await self.hive.fetch_notifications(username)
        pending = await self.select_pending(link, events)
        if not pending:
            logger.debug("No new notifications for %s", username)
            return []

        sent: list[SentNotification] = []
        attempted: list[SourceEvent] = []
        for index, (event, notification) in enumerate(pending):
            if index:
                await self._sleep(self.send_interval)
            success, error = await self._deliver(username, notification)
            await asyncio.to_thread(
                self.delivery_log.record,
                username,
                link.fid,
                notification,
                success=success,
                error_message=error,
            )
            attempted.append(event)
            if success:
                sent.append(
                    SentNotification(
                        username=username,
                        type=notification.type.value,
                        title=notification.title,
                        body=notification.body,
                        target_url=notification.source_url,
                    )
                )

        if sent:
            await asyncio.to_thread(self.preferences.touch_last_notification, username, self._clock())
        await asyncio.to_thread(self.watermark.commit, link, attempted)
        logger.info("Sent %d/%d %s notifications to %s", len(sent), len(pending), self.mode, username)
        return sent

    async def _deliver(
        self, username: str, notification: ConvertedNotification
    ) -> tuple[bool, str | None]:
        try:
            result = await self.sender.send(notification, [username])
        except Exception as exc:
            logger.error(
                "Sending %s notification to %s failed (%s)",
                notification.type.value,
                username,
                notification.source_url,
                exc_info=True,
            )
            return False, str(exc) or exc.__class__.__name__
        if not result.delivered:
            logger.warning(
                "%s notification to %s not delivered (%s): %s",
                notification.type.value,
                username,
                notification.source_url,
                result.error_summary,
            )
        return result.delivered, result.error_summary


def create_relay(
    mode: str,
    *,
    session_factory: Callable[[], Session],
    token_store: TokenStore,
    hive: HiveClient,
    cache: ContentCache,
    sender: BatchSender | None = None,
    clock: Callable[[], datetime] = utcnow,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> RelayOrchestrator:
    """Wire an orchestrator for ``mode`` ("continuous" or "scheduled")."""
    preferences = PreferencesService(session_factory, clock=clock)
    delivery_log = DeliveryLog(session_factory)
    if mode == "continuous":
        selector: UserSelector = ContinuousSelector(token_store, preferences)
        watermark: Watermark = SignatureWatermark(delivery_log, preferences)
    elif mode == "scheduled":
        selector = ScheduledSelector(token_store, preferences)
        watermark = EventIdWatermark(preferences)
    else:
        raise ValueError(f"Unknown relay mode {mode!r}")

    return RelayOrchestrator(
        hive=hive,
        converter=NotificationConverter(hive, cache),
        sender=sender or BatchSender(token_store, sleep=sleep),
        delivery_log=delivery_log,
        preferences=preferences,
        selector=selector,
        watermark=watermark,
        clock=clock,
        sleep=sleep,
    )
