"""Read-only clients for the Hive API and the Farcaster identity registry.

The relay only ever reads from these collaborators:

- ``HiveClient`` fetches account notifications and post bodies over JSON-RPC
  and, as a last resort, scrapes meta tags from rendered pages.
- ``IdentityRegistryClient`` lists the keys currently registered for a fid so
  inbound webhook signatures can be cross-checked.
"""

from __future__ import annotations

import asyncio
import html
import itertools
import logging
import re
from dataclasses import dataclass
from typing import Any

import httpx

from hivecast_relay.core.settings import settings
from hivecast_relay.services.events import SourceEvent

logger = logging.getLogger(__name__)

HTTP_OK = 200

_META_PATTERN = re.compile(
    r"<meta\s+[^>]*?(?:property|name)\s*=\s*[\"'](?P<name>og:title|og:description|description)[\"']"
    r"[^>]*?content\s*=\s*[\"'](?P<content>[^\"']*)[\"']",
    re.IGNORECASE,
)
_META_PATTERN_REVERSED = re.compile(
    r"<meta\s+[^>]*?content\s*=\s*[\"'](?P<content>[^\"']*)[\"']"
    r"[^>]*?(?:property|name)\s*=\s*[\"'](?P<name>og:title|og:description|description)[\"']",
    re.IGNORECASE,
)


class LedgerError(RuntimeError):
    """Raised when the Hive API or identity registry cannot serve a request."""


@dataclass(frozen=True)
class PageMeta:
    """Title/description scraped from a rendered page."""

    title: str | None
    description: str | None


class _HttpReader:
    """Lazily created, shared ``httpx.AsyncClient`` with a bounded timeout."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout_seconds: float,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self._client = client
        self._owns_client = client is None
        self._client_lock = asyncio.Lock()

    async def _ensure_client(self) -> httpx.AsyncClient:
        async with self._client_lock:
            if self._client is None:
                self._client = httpx.AsyncClient(
                    timeout=httpx.Timeout(self.timeout_seconds),
                    follow_redirects=True,
                )
        return self._client

    async def close(self) -> None:
        """Clean up underlying HTTP client resources."""
        async with self._client_lock:
            if self._client is not None and self._owns_client:
                await self._client.aclose()
            self._client = None


class HiveClient(_HttpReader):
    """JSON-RPC reader for the Hive blockchain."""

    def __init__(
        self,
        base_url: str | None = None,
        *,
        timeout_seconds: float | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(
            base_url or settings.hive_api_url,
            timeout_seconds=timeout_seconds or settings.http_timeout_seconds,
            client=client,
        )
        self._ids = itertools.count(1)

    async def _call(self, method: str, params: Any) -> Any:
        client = await self._ensure_client()
        payload = {"jsonrpc": "2.0", "method": method, "params": params, "id": next(self._ids)}
        try:
            response = await client.post(self.base_url, json=payload)
        except httpx.HTTPError as exc:
            raise LedgerError(f"Hive request {method} failed: {exc}") from exc

        if response.status_code != HTTP_OK:
            raise LedgerError(f"Hive responded with {response.status_code} for {method}")

        try:
            body = response.json()
        except ValueError as exc:
            raise LedgerError(f"Hive returned malformed JSON for {method}") from exc

        if not isinstance(body, dict):
            raise LedgerError(f"Unexpected Hive response shape for {method}")
        if body.get("error"):
            raise LedgerError(f"Hive error for {method}: {body['error']}")
        return body.get("result")

    async def fetch_notifications(self, username: str, limit: int | None = None) -> list[SourceEvent]:
        """Return the most recent account notifications for ``username``."""
        result = await self._call(
            "bridge.account_notifications",
            {"account": username, "limit": limit or settings.notifications_fetch_limit},
        )
        if not isinstance(result, list):
            raise LedgerError(f"Unexpected notifications payload for {username}")
        return [SourceEvent.from_payload(item) for item in result if isinstance(item, dict)]

    async def fetch_content(self, author: str, permlink: str) -> str | None:
        """Return the body of a post or comment, or None when it does not exist."""
        if not author or not permlink:
            return None
        result = await self._call("condenser_api.get_content", [author, permlink])
        if not isinstance(result, dict):
            return None
        body = result.get("body")
        return body if isinstance(body, str) and body else None

    async def fetch_page_meta(self, url: str) -> PageMeta | None:
        """Scrape OpenGraph title/description from a rendered page."""
        client = await self._ensure_client()
        try:
            response = await client.get(url, headers={"Accept": "text/html"})
        except httpx.HTTPError as exc:
            raise LedgerError(f"Page fetch failed for {url}: {exc}") from exc
        if response.status_code != HTTP_OK:
            return None

        found: dict[str, str] = {}
        for pattern in (_META_PATTERN, _META_PATTERN_REVERSED):
            for match in pattern.finditer(response.text):
                found.setdefault(match.group("name").lower(), html.unescape(match.group("content")))

        title = found.get("og:title")
        description = found.get("og:description") or found.get("description")
        if not title and not description:
            return None
        return PageMeta(title=title, description=description)


class IdentityRegistryClient(_HttpReader):
    """Reads registered keys for a fid from a Farcaster hub HTTP API."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout_seconds: float | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        super().__init__(
            base_url,
            timeout_seconds=timeout_seconds or settings.http_timeout_seconds,
            client=client,
        )

    async def _get(self, path: str, params: dict[str, Any]) -> dict[str, Any]:
        client = await self._ensure_client()
        try:
            response = await client.get(f"{self.base_url}{path}", params=params)
        except httpx.HTTPError as exc:
            raise LedgerError(f"Identity registry request failed: {exc}") from exc
        if response.status_code != HTTP_OK:
            raise LedgerError(f"Identity registry responded with {response.status_code}")
        try:
            body = response.json()
        except ValueError as exc:
            raise LedgerError("Identity registry returned malformed JSON") from exc
        return body if isinstance(body, dict) else {}

    async def fetch_keys(self, fid: int, key_type: str) -> set[str]:
        """Return lower-cased hex keys currently registered for ``fid``.

        Custody keys are the fid's custody address; app/ed25519 keys are the
        active signer keys.
        """
        if key_type == "custody":
            body = await self._get(
                "/v1/onChainEventsByFid",
                {"fid": fid, "event_type": "EVENT_TYPE_ID_REGISTER"},
            )
            return {
                str(event.get("idRegisterEventBody", {}).get("to", "")).lower()
                for event in body.get("events", [])
                if event.get("idRegisterEventBody", {}).get("to")
            }

        body = await self._get("/v1/onChainSignersByFid", {"fid": fid})
        return {
            str(event.get("signerEventBody", {}).get("key", "")).lower()
            for event in body.get("events", [])
            if event.get("signerEventBody", {}).get("key")
        }
