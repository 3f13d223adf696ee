"""Hive event to Farcaster notification conversion.

Conversion is deterministic for a given event: the probability gates used
for low-value event types draw from a random source seeded by the event's
own identity, so the same event always takes the same enrichment branch and
therefore always yields the same deduplication signature.

If content the event calls for cannot be fetched because Hive is failing,
conversion raises ``EnrichmentUnavailableError`` instead of falling back, so
the event is retried later with the same body it would have had.
"""

from __future__ import annotations

import logging
import random
import re
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

from pydantic import HttpUrl, TypeAdapter, ValidationError

from hivecast_relay.core.settings import settings
from hivecast_relay.services.content_cache import ContentCache
from hivecast_relay.services.events import EventType, SourceEvent
from hivecast_relay.services.ledger import HiveClient, LedgerError

logger = logging.getLogger(__name__)

MAX_TITLE_LENGTH = 32
MAX_BODY_LENGTH = 128
MAX_URL_LENGTH = 1024
SNIPPET_LENGTH = 80
MIN_CONTENT_LENGTH = 10
ELLIPSIS = "…"

_SAFE_SEGMENT = re.compile(r"^[A-Za-z0-9._-]+$")
_LEADING_ACTOR = re.compile(r"^@([a-z0-9.-]+)")
_DATED_PERMLINK_SUFFIX = re.compile(r"20\d{6}t\d{6}\w+z")

_MARKDOWN_IMAGE = re.compile(r"!\[[^\]]*\]\([^)]*\)")
_IFRAME = re.compile(r"<iframe\b.*?(?:</iframe>|/>)", re.IGNORECASE | re.DOTALL)
_HTML_TAG = re.compile(r"<[^>]+>")
_MARKDOWN_LINK = re.compile(r"\[([^\]]*)\]\([^)]*\)")
_BARE_IMAGE_URL = re.compile(r"https?://\S+\.(?:png|jpe?g|gif|webp)\S*", re.IGNORECASE)
_EMPHASIS = re.compile(r"(\*{1,3}|_{1,3}|~~)(.+?)\1", re.DOTALL)
_HEADING = re.compile(r"^\s{0,3}#{1,6}\s*", re.MULTILINE)
_WHITESPACE = re.compile(r"\s+")

_url_adapter = TypeAdapter(HttpUrl)


class EnrichmentUnavailableError(RuntimeError):
    """Content needed for a notification could not be fetched right now."""


class Enrichment(Enum):
    ALWAYS = "always"
    SOMETIMES = "sometimes"
    NEVER = "never"


class Target(Enum):
    POST = "post"
    PROFILE = "profile"
    WALLET = "wallet"


@dataclass(frozen=True)
class _TypePolicy:
    title: str
    enrichment: Enrichment
    target: Target
    default_body: str
    snippet_format: str | None = None


_POLICIES: dict[EventType, _TypePolicy] = {
    EventType.VOTE: _TypePolicy(
        "New Vote", Enrichment.SOMETIMES, Target.POST,
        '@{actor} voted on "{post}"', '@{actor} voted on "{snippet}"',
    ),
    EventType.COMMENT: _TypePolicy(
        "New Comment", Enrichment.ALWAYS, Target.POST,
        '@{actor} commented on "{post}"', '@{actor}: "{snippet}"',
    ),
    EventType.MENTION: _TypePolicy(
        "You were mentioned", Enrichment.ALWAYS, Target.POST,
        '@{actor} mentioned you in "{post}"', '@{actor} mentioned you: "{snippet}"',
    ),
    EventType.FOLLOW: _TypePolicy(
        "New Follower", Enrichment.NEVER, Target.PROFILE,
        "@{actor} started following you",
    ),
    EventType.REBLOG: _TypePolicy(
        "Post Reblogged", Enrichment.SOMETIMES, Target.POST,
        "@{actor} reblogged your post", '@{actor} reblogged "{snippet}"',
    ),
    EventType.TRANSFER: _TypePolicy(
        "Transfer Received", Enrichment.NEVER, Target.WALLET,
        "Received a transfer",
    ),
}

if set(_POLICIES) != set(EventType) - {EventType.CUSTOM}:
    raise RuntimeError("Every Hive EventType needs a conversion policy")


@dataclass(frozen=True)
class ConvertedNotification:
    """Farcaster-ready notification derived from one Hive event."""

    type: EventType
    title: str
    body: str
    source_url: str
    author_hint: str
    content_id_hint: str


def truncate(text: str, limit: int) -> str:
    """Collapse whitespace and cut ``text`` to ``limit`` characters with an ellipsis."""
    text = _WHITESPACE.sub(" ", text).strip()
    if len(text) <= limit:
        return text
    return text[: limit - len(ELLIPSIS)].rstrip() + ELLIPSIS


def clean_markup(content: str) -> str:
    """Strip images, iframes, HTML and markdown emphasis, keeping link text."""
    text = _MARKDOWN_IMAGE.sub(" ", content)
    text = _IFRAME.sub(" ", text)
    text = _HTML_TAG.sub(" ", text)
    text = _MARKDOWN_LINK.sub(r"\1", text)
    text = _BARE_IMAGE_URL.sub(" ", text)
    text = _HEADING.sub("", text)
    text = _EMPHASIS.sub(r"\2", text)
    return _WHITESPACE.sub(" ", text).strip()


def is_valid_url(url: str) -> bool:
    if len(url) > MAX_URL_LENGTH:
        return False
    try:
        _url_adapter.validate_python(url)
    except ValidationError:
        return False
    return True


def build_target_url(base_url: str, target: Target, author: str, permlink: str) -> str:
    """Build the deep link for an event, falling back to ``base_url``.

    Author and permlink segments that are empty or contain characters outside
    Hive's account/permlink alphabet never make it into a link.
    """
    base = base_url.rstrip("/")
    author_ok = bool(author) and bool(_SAFE_SEGMENT.match(author))
    permlink_ok = bool(permlink) and bool(_SAFE_SEGMENT.match(permlink))

    if target is Target.WALLET:
        candidate = f"{base}/wallet"
    elif target is Target.PROFILE and author_ok:
        candidate = f"{base}/profile/{author}"
    elif target is Target.POST and author_ok and permlink_ok:
        candidate = f"{base}/post/{author}/{permlink}"
    else:
        candidate = base

    if is_valid_url(candidate):
        return candidate
    logger.warning("Generated deep link %s is not a valid URL, using base URL", candidate)
    return base


def describe_permlink(permlink: str, default: str) -> str:
    """Human-friendly post reference derived from a permlink."""
    if not permlink:
        return default
    readable = _DATED_PERMLINK_SUFFIX.sub("", permlink).replace("-", " ").strip()
    if not readable:
        return default
    return readable[:30] + "..."


def _event_rng(event: SourceEvent) -> random.Random:
    return random.Random(event.key)


class NotificationConverter:
    """Turns ``SourceEvent`` objects into ``ConvertedNotification`` values."""

    def __init__(
        self,
        hive: HiveClient | None,
        cache: ContentCache,
        *,
        base_url: str | None = None,
        vote_probability: float | None = None,
        reblog_probability: float | None = None,
        rng_factory: Callable[[SourceEvent], random.Random] = _event_rng,
    ) -> None:
        self.hive = hive
        self.cache = cache
        self.base_url = (base_url or settings.base_url).rstrip("/")
        self.probabilities = {
            EventType.VOTE: (
                settings.vote_enrichment_probability if vote_probability is None else vote_probability
            ),
            EventType.REBLOG: (
                settings.reblog_enrichment_probability
                if reblog_probability is None
                else reblog_probability
            ),
        }
        self._rng_factory = rng_factory

    async def convert(self, event: SourceEvent, source_username: str) -> ConvertedNotification | None:
        """Convert one event, returning None for unsupported or unlinkable events.

        Raises ``EnrichmentUnavailableError`` when enrichment was chosen but Hive
        could not answer; the caller should leave the event for a later run.
        """
        if event.type is None:
            logger.debug(
                "Dropping unsupported %r event for %s (%s)", event.raw_type, source_username, event.url
            )
            return None

        policy = _POLICIES[event.type]
        author, permlink = event.author, event.permlink
        source_url = build_target_url(self.base_url, policy.target, author, permlink)
        if not is_valid_url(source_url):
            logger.error("Base URL %s is not a valid URL; dropping %s event", self.base_url, event.raw_type)
            return None

        body = None
        if self._should_enrich(event, policy):
            body = await self._enriched_body(event, policy, author, permlink)
        if body is None:
            body = self._fallback_body(event, policy, author, permlink)

        return ConvertedNotification(
            type=event.type,
            title=truncate(policy.title, MAX_TITLE_LENGTH),
            body=truncate(body, MAX_BODY_LENGTH),
            source_url=source_url,
            author_hint=author,
            content_id_hint=permlink,
        )

    def _should_enrich(self, event: SourceEvent, policy: _TypePolicy) -> bool:
        if policy.enrichment is Enrichment.NEVER or self.hive is None:
            return False
        if not event.author or not event.permlink:
            return False
        if policy.enrichment is Enrichment.ALWAYS:
            return True
        probability = self.probabilities.get(event.type, 0.0)
        return self._rng_factory(event).random() < probability

    async def fetch_content(self, author: str, permlink: str) -> str | None:
        """Return cleaned post content, consulting the cache first.

        Only definitive answers are cached; a Hive failure raises
        ``EnrichmentUnavailableError`` and leaves the cache untouched.
        """
        cached = self.cache.get(author, permlink)
        if cached is not None:
            return cached.content

        content: str | None = None
        try:
            raw = await self.hive.fetch_content(author, permlink) if self.hive else None
        except LedgerError as exc:
            logger.warning("Content fetch failed for @%s/%s: %s", author, permlink, exc)
            raise EnrichmentUnavailableError(f"content for @{author}/{permlink} unavailable") from exc
        if raw:
            cleaned = clean_markup(raw)
            content = cleaned if len(cleaned) >= MIN_CONTENT_LENGTH else None

        self.cache.set(author, permlink, content)
        return content

    async def _enriched_body(
        self, event: SourceEvent, policy: _TypePolicy, author: str, permlink: str
    ) -> str | None:
        content = await self.fetch_content(author, permlink)
        if content is None and event.type in (EventType.COMMENT, EventType.MENTION):
            content = await self._page_meta_content(author, permlink)
        if content is None or policy.snippet_format is None:
            return None
        snippet = content[:SNIPPET_LENGTH].rstrip()
        return policy.snippet_format.format(actor=self._actor(event, author), snippet=snippet)

    async def _page_meta_content(self, author: str, permlink: str) -> str | None:
        if self.hive is None:
            return None
        url = f"{self.base_url}/post/{author}/{permlink}"
        try:
            meta = await self.hive.fetch_page_meta(url)
        except LedgerError as exc:
            logger.warning("Page meta fallback failed for %s: %s", url, exc)
            raise EnrichmentUnavailableError(f"page meta for {url} unavailable") from exc
        if meta is None:
            return None
        text = clean_markup(meta.description or meta.title or "")
        return text if len(text) >= MIN_CONTENT_LENGTH else None

    def _fallback_body(
        self, event: SourceEvent, policy: _TypePolicy, author: str, permlink: str
    ) -> str:
        if event.message.strip():
            return event.message
        default_post = "a post" if event.type is EventType.MENTION else "your post"
        return policy.default_body.format(
            actor=author or "someone",
            post=describe_permlink(permlink, default_post),
        )

    @staticmethod
    def _actor(event: SourceEvent, author: str) -> str:
        match = _LEADING_ACTOR.match(event.message)
        return match.group(1) if match else author
