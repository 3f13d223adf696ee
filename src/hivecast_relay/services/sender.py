"""Delivery of converted notifications to Farcaster client endpoints."""

from __future__ import annotations

import asyncio
import logging
import secrets
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

import httpx

from hivecast_relay.core.settings import settings
from hivecast_relay.services.converter import ConvertedNotification
from hivecast_relay.services.token_store import TokenRecord, TokenStore, TokenStoreError

logger = logging.getLogger(__name__)


class DeliveryError(RuntimeError):
    """Raised for a single failed delivery attempt."""


@dataclass
class DeliveryResponse:
    """Outcome of delivering one notification to one endpoint."""

    endpoint_url: str
    successful_tokens: list[str] = field(default_factory=list)
    invalid_tokens: list[str] = field(default_factory=list)
    rate_limited_tokens: list[str] = field(default_factory=list)
    error: str | None = None

    @classmethod
    def from_payload(cls, endpoint_url: str, payload: Any) -> DeliveryResponse:
        if not isinstance(payload, dict):
            raise DeliveryError(f"Unexpected response body from {endpoint_url}")

        def tokens(key: str) -> list[str]:
            value = payload.get(key) or []
            return [str(token) for token in value] if isinstance(value, list) else []

        return cls(
            endpoint_url=endpoint_url,
            successful_tokens=tokens("successfulTokens"),
            invalid_tokens=tokens("invalidTokens"),
            rate_limited_tokens=tokens("rateLimitedTokens"),
        )


@dataclass
class SendResult:
    """Aggregate result for one notification across endpoint groups."""

    success: bool
    results: list[DeliveryResponse] = field(default_factory=list)

    @property
    def delivered(self) -> bool:
        """Whether at least one token accepted the notification."""
        return any(result.successful_tokens for result in self.results)

    @property
    def error_summary(self) -> str | None:
        if self.delivered:
            return None
        if not self.results:
            return "No active notification tokens"
        errors = [result.error for result in self.results if result.error]
        if errors:
            return "; ".join(errors)
        if any(result.invalid_tokens for result in self.results):
            return "All notification tokens were invalid"
        return "Delivery was rate limited"


def new_notification_id() -> str:
    return f"hivecast-{secrets.token_hex(12)}"


def group_by_endpoint(tokens: Iterable[TokenRecord]) -> dict[str, list[str]]:
    """Group token values by their delivery endpoint, preserving order."""
    grouped: dict[str, list[str]] = {}
    for record in tokens:
        grouped.setdefault(record.endpoint_url, []).append(record.token)
    return grouped


class BatchSender:
    """Posts notifications to Farcaster endpoints with retries.

    Each endpoint group is sent in chunks of at most
    ``max_tokens_per_request`` tokens. A chunk is attempted up to
    ``max_retries`` times with a linearly growing delay; when every attempt
    fails, its tokens are reported as rate limited rather than invalid.
    Tokens the endpoint reports as invalid are removed from the store.
    """

    def __init__(
        self,
        token_store: TokenStore,
        *,
        client: httpx.AsyncClient | None = None,
        max_retries: int | None = None,
        retry_base_delay: float | None = None,
        max_tokens_per_request: int | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.token_store = token_store
        self.max_retries = max_retries or settings.send_max_retries
        self.retry_base_delay = (
            settings.send_retry_base_delay_seconds if retry_base_delay is None else retry_base_delay
        )
        self.max_tokens_per_request = max_tokens_per_request or settings.max_tokens_per_request
        self._client = client
        self._owns_client = client is None
        self._client_lock = asyncio.Lock()
        self._sleep = sleep

    async def _ensure_client(self) -> httpx.AsyncClient:
        async with self._client_lock:
            if self._client is None:
                self._client = httpx.AsyncClient(
                    timeout=httpx.Timeout(settings.http_timeout_seconds)
                )
        return self._client

    async def close(self) -> None:
        async with self._client_lock:
            if self._client is not None and self._owns_client:
                await self._client.aclose()
            self._client = None

    async def send(
        self,
        notification: ConvertedNotification,
        target_usernames: list[str] | None = None,
    ) -> SendResult:
        """Deliver ``notification`` to the given users, or to every active token."""
        if target_usernames is not None:
            tokens = await asyncio.to_thread(self.token_store.get_for_source_users, target_usernames)
        else:
            tokens = await asyncio.to_thread(self.token_store.get_active)
        if not tokens:
            logger.info(
                "No active tokens for %s; skipping %s notification",
                target_usernames or "any user",
                notification.type.value,
            )
            return SendResult(success=True, results=[])

        results: list[DeliveryResponse] = []
        for endpoint_url, endpoint_tokens in group_by_endpoint(tokens).items():
            for start in range(0, len(endpoint_tokens), self.max_tokens_per_request):
                chunk = endpoint_tokens[start : start + self.max_tokens_per_request]
                results.append(await self._send_chunk(notification, endpoint_url, chunk))

        return SendResult(
            success=all(result.error is None for result in results),
            results=results,
        )

    async def _send_chunk(
        self,
        notification: ConvertedNotification,
        endpoint_url: str,
        tokens: list[str],
    ) -> DeliveryResponse:
        payload = {
            "notificationId": new_notification_id(),
            "title": notification.title,
            "body": notification.body,
            "targetUrl": notification.source_url,
            "tokens": tokens,
        }

        last_error: str | None = None
        for attempt in range(1, self.max_retries + 1):
            try:
                response = await self._post(endpoint_url, payload)
            except DeliveryError as exc:
                last_error = str(exc)
                logger.warning(
                    "Delivery attempt %d/%d to %s failed: %s",
                    attempt,
                    self.max_retries,
                    endpoint_url,
                    exc,
                )
            else:
                await asyncio.to_thread(self._remove_invalid_tokens, response.invalid_tokens)
                return response

            if attempt < self.max_retries:
                await self._sleep(self.retry_base_delay * attempt)

        logger.warning(
            "Giving up on %s after %d attempts for %s notification (%s)",
            endpoint_url,
            self.max_retries,
            notification.type.value,
            notification.source_url,
        )
        return DeliveryResponse(
            endpoint_url=endpoint_url,
            rate_limited_tokens=list(tokens),
            error=last_error,
        )

    async def _post(self, endpoint_url: str, payload: dict[str, Any]) -> DeliveryResponse:
        client = await self._ensure_client()
        try:
            response = await client.post(endpoint_url, json=payload)
        except httpx.HTTPError as exc:
            raise DeliveryError(f"Request to {endpoint_url} failed: {exc}") from exc

        if not response.is_success:
            raise DeliveryError(f"HTTP {response.status_code} from {endpoint_url}")
        try:
            body = response.json()
        except ValueError as exc:
            raise DeliveryError(f"Malformed JSON from {endpoint_url}") from exc
        return DeliveryResponse.from_payload(endpoint_url, body)

    def _remove_invalid_tokens(self, invalid_tokens: list[str]) -> None:
        for token in invalid_tokens:
            record = self.token_store.get_by_token(token)
            if record is None:
                continue
            try:
                self.token_store.remove(record.fid)
            except TokenStoreError:
                logger.error("Could not remove invalid token for fid %s", record.fid, exc_info=True)
            else:
                logger.info("Removed invalid token for fid %s", record.fid)
