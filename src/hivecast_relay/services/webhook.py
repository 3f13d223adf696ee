"""Verification and handling of Farcaster mini-app lifecycle webhooks.

Envelopes carry three base64url strings. The header names the signing fid,
key type and key; the signature covers ``header + "." + payload`` exactly as
received. Custody keys sign with secp256k1 (EIP-191 personal messages), app
keys with Ed25519.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import math
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any

from eth_account import Account
from eth_account.messages import encode_defunct
from eth_keys import keys as eth_keys
from nacl.exceptions import BadSignatureError
from nacl.signing import VerifyKey

from hivecast_relay.core.settings import settings
from hivecast_relay.services.ledger import IdentityRegistryClient, LedgerError
from hivecast_relay.services.preferences import PreferencesService
from hivecast_relay.services.token_store import TokenStore

logger = logging.getLogger(__name__)

ED25519_KEY_BYTES = 32
ED25519_SIGNATURE_BYTES = 64
ECDSA_SIGNATURE_BYTES = 65
ADDRESS_BYTES = 20
# Header timestamps above this are milliseconds.
_MILLISECOND_THRESHOLD = 10**12


class WebhookVerificationError(ValueError):
    """Raised when an envelope cannot be decoded or authenticated."""


class UnknownWebhookEventError(ValueError):
    """Raised for authenticated envelopes naming an unsupported event."""


class KeyType(Enum):
    CUSTODY = "custody"
    APP = "app"
    ED25519 = "ed25519"

    @property
    def uses_ecdsa(self) -> bool:
        return self is KeyType.CUSTODY


class WebhookEvent(Enum):
    APP_ADDED = "app_added"
    APP_REMOVED = "app_removed"
    NOTIFICATIONS_ENABLED = "notifications_enabled"
    NOTIFICATIONS_DISABLED = "notifications_disabled"


# Farcaster clients have used several names for the same lifecycle events.
_EVENT_ALIASES: dict[str, WebhookEvent] = {
    "app_added": WebhookEvent.APP_ADDED,
    "miniapp_added": WebhookEvent.APP_ADDED,
    "frame_added": WebhookEvent.APP_ADDED,
    "app_removed": WebhookEvent.APP_REMOVED,
    "miniapp_removed": WebhookEvent.APP_REMOVED,
    "frame_removed": WebhookEvent.APP_REMOVED,
    "notifications_enabled": WebhookEvent.NOTIFICATIONS_ENABLED,
    "notifications_disabled": WebhookEvent.NOTIFICATIONS_DISABLED,
}


@dataclass(frozen=True)
class NotificationDetails:
    url: str
    token: str


@dataclass(frozen=True)
class DecodedEnvelope:
    """Parsed header and payload of a webhook envelope."""

    fid: int
    key_type: KeyType
    key: str
    timestamp: float | None
    username: str | None
    raw_event: str
    details: NotificationDetails | None
    signing_input: bytes
    signature: bytes

    @property
    def event(self) -> WebhookEvent | None:
        return _EVENT_ALIASES.get(self.raw_event)


def b64url_decode(data: str) -> bytes:
    """Decode URL-safe base64, accepting omitted padding."""
    if not isinstance(data, str) or not data:
        raise WebhookVerificationError("Expected a non-empty base64url string")
    padding = "=" * (-len(data) % 4)
    try:
        return base64.urlsafe_b64decode(data + padding)
    except (binascii.Error, ValueError) as err:
        raise WebhookVerificationError(f"Invalid base64url encoding: {err}") from err


def _decode_json(data: str, part: str) -> dict[str, Any]:
    try:
        decoded = json.loads(b64url_decode(data))
    except (UnicodeDecodeError, json.JSONDecodeError) as err:
        raise WebhookVerificationError(f"Envelope {part} is not valid JSON") from err
    if not isinstance(decoded, dict):
        raise WebhookVerificationError(f"Envelope {part} must be a JSON object")
    return decoded


def _decode_key(key: str) -> bytes:
    """Decode a hex key (optionally 0x-prefixed), falling back to base64url."""
    text = key.strip()
    hex_text = text[2:] if text.lower().startswith("0x") else text
    try:
        return bytes.fromhex(hex_text)
    except ValueError:
        return b64url_decode(text)


def normalize_key(key: str) -> str:
    return "0x" + _decode_key(key).hex()


def _parse_fid(value: Any) -> int:
    if isinstance(value, bool):
        raise WebhookVerificationError("Header fid must be an integer")
    if isinstance(value, int):
        fid = value
    elif isinstance(value, str) and value.strip().isascii() and value.strip().isdigit():
        fid = int(value)
    else:
        raise WebhookVerificationError(f"Header fid must be an integer, got {value!r}")
    if fid < 0:
        raise WebhookVerificationError("Header fid must not be negative")
    return fid


def decode_envelope(envelope: Mapping[str, Any]) -> DecodedEnvelope:
    """Decode an envelope without checking its signature."""
    header_b64 = envelope.get("header")
    payload_b64 = envelope.get("payload")
    signature_b64 = envelope.get("signature")
    if not all(isinstance(part, str) and part for part in (header_b64, payload_b64, signature_b64)):
        raise WebhookVerificationError("Envelope must contain header, payload and signature")

    header = _decode_json(header_b64, "header")
    payload = _decode_json(payload_b64, "payload")

    missing = [name for name in ("fid", "type", "key") if header.get(name) in (None, "")]
    if missing:
        raise WebhookVerificationError(f"Envelope header is missing {', '.join(missing)}")
    fid = _parse_fid(header["fid"])
    if not isinstance(header["type"], str) or not isinstance(header["key"], str):
        raise WebhookVerificationError("Header type and key must be strings")
    try:
        key_type = KeyType(header["type"].lower())
    except ValueError as err:
        raise WebhookVerificationError(f"Unsupported header value: {err}") from err

    timestamp = header.get("timestamp")
    if timestamp is not None:
        try:
            timestamp = float(timestamp)
        except (TypeError, ValueError) as err:
            raise WebhookVerificationError("Header timestamp must be numeric") from err
        if not math.isfinite(timestamp):
            raise WebhookVerificationError("Header timestamp must be finite")
        if timestamp > _MILLISECOND_THRESHOLD:
            timestamp /= 1000.0

    username = header.get("username")
    details = None
    raw_details = payload.get("notificationDetails")
    if isinstance(raw_details, dict) and raw_details.get("url") and raw_details.get("token"):
        details = NotificationDetails(url=str(raw_details["url"]), token=str(raw_details["token"]))

    return DecodedEnvelope(
        fid=fid,
        key_type=key_type,
        key=header["key"],
        timestamp=timestamp,
        username=username if isinstance(username, str) else None,
        raw_event=str(payload.get("event") or ""),
        details=details,
        signing_input=f"{header_b64}.{payload_b64}".encode(),
        signature=b64url_decode(signature_b64),
    )


def verify_ed25519(key: str, message: bytes, signature: bytes) -> bool:
    try:
        key_bytes = _decode_key(key)
    except WebhookVerificationError:
        return False
    if len(key_bytes) != ED25519_KEY_BYTES or len(signature) != ED25519_SIGNATURE_BYTES:
        return False
    try:
        VerifyKey(key_bytes).verify(message, signature)
    except BadSignatureError:
        return False
    return True


def address_for_key(key: str) -> str | None:
    """Return the lower-cased Ethereum address for an address or public key."""
    try:
        key_bytes = _decode_key(key)
    except WebhookVerificationError:
        return None
    try:
        if len(key_bytes) == ADDRESS_BYTES:
            return "0x" + key_bytes.hex()
        if len(key_bytes) == 33:
            return eth_keys.PublicKey.from_compressed_bytes(key_bytes).to_address().lower()
        if len(key_bytes) == 65 and key_bytes[0] == 0x04:
            key_bytes = key_bytes[1:]
        if len(key_bytes) == 64:
            return eth_keys.PublicKey(key_bytes).to_address().lower()
    except Exception:
        return None
    return None


def verify_ecdsa(key: str, message: bytes, signature: bytes) -> bool:
    expected = address_for_key(key)
    if expected is None or len(signature) != ECDSA_SIGNATURE_BYTES:
        return False
    try:
        recovered = Account.recover_message(encode_defunct(primitive=message), signature=signature)
    except Exception:
        return False
    return recovered.lower() == expected


class WebhookVerifier:
    """Authenticates webhook envelopes."""

    def __init__(
        self,
        registry: IdentityRegistryClient | None = None,
        *,
        max_age_seconds: int | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.registry = registry
        self.max_age_seconds = (
            settings.webhook_max_age_seconds if max_age_seconds is None else max_age_seconds
        )
        self._clock = clock

    async def verify(self, envelope: Mapping[str, Any]) -> bool:
        """Return True only for a fresh, correctly signed envelope."""
        try:
            await self.verify_decoded(decode_envelope(envelope))
        except WebhookVerificationError as exc:
            logger.warning("Rejected webhook envelope: %s", exc)
            return False
        return True

    async def verify_decoded(self, decoded: DecodedEnvelope) -> None:
        """Raise ``WebhookVerificationError`` unless ``decoded`` is authentic."""
        if decoded.timestamp is not None:
            age = self._clock() - decoded.timestamp
            if age > self.max_age_seconds:
                raise WebhookVerificationError(f"Envelope for fid {decoded.fid} expired {age:.0f}s ago")
            if -age > self.max_age_seconds:
                raise WebhookVerificationError(f"Envelope for fid {decoded.fid} is dated in the future")

        if decoded.key_type.uses_ecdsa:
            valid = verify_ecdsa(decoded.key, decoded.signing_input, decoded.signature)
        else:
            valid = verify_ed25519(decoded.key, decoded.signing_input, decoded.signature)
        if not valid:
            raise WebhookVerificationError(
                f"Invalid {decoded.key_type.value} signature for fid {decoded.fid}"
            )

        if self.registry is not None:
            await self._check_registry(decoded)

    async def _check_registry(self, decoded: DecodedEnvelope) -> None:
        try:
            registered = await self.registry.fetch_keys(decoded.fid, decoded.key_type.value)
        except LedgerError as exc:
            raise WebhookVerificationError(
                f"Could not confirm key for fid {decoded.fid}: {exc}"
            ) from exc

        declared = (
            address_for_key(decoded.key)
            if decoded.key_type.uses_ecdsa
            else normalize_key(decoded.key)
        )
        if declared not in registered:
            raise WebhookVerificationError(f"Key is not registered for fid {decoded.fid}")


@dataclass(frozen=True)
class WebhookOutcome:
    fid: int
    event: WebhookEvent


class WebhookProcessor:
    """Applies authenticated lifecycle events to the token store."""

    def __init__(
        self,
        verifier: WebhookVerifier,
        token_store: TokenStore,
        preferences: PreferencesService | None = None,
    ) -> None:
        self.verifier = verifier
        self.token_store = token_store
        self.preferences = preferences

    async def process(self, envelope: Mapping[str, Any]) -> WebhookOutcome:
        """Verify ``envelope`` and apply its event.

        Raises:
            WebhookVerificationError: If the envelope is malformed or not authentic.
            UnknownWebhookEventError: If the event is not a supported lifecycle event.
        """
        decoded = decode_envelope(envelope)
        await self.verifier.verify_decoded(decoded)

        event = decoded.event
        if event is None:
            raise UnknownWebhookEventError(f"Unsupported webhook event {decoded.raw_event!r}")

        fid = decoded.fid
        if event is WebhookEvent.APP_ADDED:
            if decoded.details is not None:
                record = self.token_store.add_or_update(
                    fid,
                    decoded.username,
                    decoded.details.token,
                    decoded.details.url,
                )
                if record.source_username and self.preferences is not None:
                    self.preferences.create_defaults(record.source_username, fid, record.handle)
        elif event is WebhookEvent.APP_REMOVED:
            self.token_store.remove(fid)
            if self.preferences is not None:
                self.preferences.deactivate_fid(fid)
        elif event is WebhookEvent.NOTIFICATIONS_ENABLED:
            if decoded.details is None:
                raise WebhookVerificationError("notifications_enabled requires notificationDetails")
            if not self.token_store.enable(fid, decoded.details.token, decoded.details.url):
                self.token_store.add_or_update(
                    fid, decoded.username, decoded.details.token, decoded.details.url
                )
        elif event is WebhookEvent.NOTIFICATIONS_DISABLED:
            self.token_store.disable(fid)

        logger.info("Processed %s webhook for fid %s", event.value, fid)
        return WebhookOutcome(fid=fid, event=event)
