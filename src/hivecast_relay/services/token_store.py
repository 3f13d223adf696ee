"""Registry of Farcaster notification tokens keyed by fid.

Two backends share one contract:

- ``DatabaseTokenStore`` persists tokens in the ``relay_token`` table and is
  the production source of truth.
- ``InMemoryTokenStore`` keeps tokens in a process-local dict. Every token is
  lost when the process exits; it exists for local development and tests.

Read methods never raise on storage failures. They log and return an empty
result so one broken query degrades a relay run instead of aborting it.
Write methods raise ``TokenStoreError``.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable
from dataclasses import dataclass, replace
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from hivecast_relay.core.settings import Settings
from hivecast_relay.db.session import SessionLocal
from hivecast_relay.db.time import utcnow
from hivecast_relay.models import DeliveryToken

logger = logging.getLogger(__name__)


class TokenStoreError(RuntimeError):
    """Raised when a token write cannot be persisted."""


class TokenStoreConfigError(TokenStoreError):
    """Raised when the configured backend does not meet durability requirements."""


@dataclass(frozen=True)
class TokenRecord:
    """Detached snapshot of one fid's notification credential."""

    fid: int
    handle: str | None
    token: str
    endpoint_url: str
    is_active: bool
    source_username: str | None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_model(cls, row: DeliveryToken) -> TokenRecord:
        return cls(
            fid=row.fid,
            handle=row.handle,
            token=row.token,
            endpoint_url=row.endpoint_url,
            is_active=row.is_active,
            source_username=row.source_username,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )


class TokenStore(ABC):
    """Contract shared by every token backend."""

    durable: bool = False

    @abstractmethod
    def add_or_update(
        self,
        fid: int,
        handle: str | None,
        token: str,
        endpoint_url: str,
        source_username: str | None = None,
    ) -> TokenRecord:
        """Upsert the token for ``fid`` and force it active.

        A ``source_username`` of None keeps whatever username is already linked.
        """

    @abstractmethod
    def remove(self, fid: int) -> bool:
        """Delete the token for ``fid``. Returns False when none existed."""

    @abstractmethod
    def disable(self, fid: int) -> bool:
        """Mark the token for ``fid`` inactive without deleting it."""

    @abstractmethod
    def enable(self, fid: int, token: str, endpoint_url: str) -> bool:
        """Reactivate ``fid`` with a fresh token. Returns False when no row exists."""

    @abstractmethod
    def link_source_username(self, fid: int, source_username: str) -> bool:
        """Attach a Hive username to an existing token."""

    @abstractmethod
    def get_active(self) -> list[TokenRecord]:
        """Return every active token."""

    @abstractmethod
    def get_for_source_users(self, usernames: Iterable[str]) -> list[TokenRecord]:
        """Return active tokens linked to any of ``usernames``."""

    @abstractmethod
    def get_by_fid(self, fid: int) -> TokenRecord | None:
        """Return the token for ``fid`` regardless of its active flag."""

    @abstractmethod
    def get_by_token(self, token: str) -> TokenRecord | None:
        """Return the record holding ``token``."""

    @abstractmethod
    def get_all(self) -> list[TokenRecord]:
        """Return every token, active or not."""


class InMemoryTokenStore(TokenStore):
    """Process-local backend. Nothing survives a restart."""

    durable = False

    def __init__(self, clock: Callable[[], datetime] = utcnow) -> None:
        self._tokens: dict[int, TokenRecord] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def add_or_update(
        self,
        fid: int,
        handle: str | None,
        token: str,
        endpoint_url: str,
        source_username: str | None = None,
    ) -> TokenRecord:
        now = self._clock()
        with self._lock:
            existing = self._tokens.get(fid)
            record = TokenRecord(
                fid=fid,
                handle=handle,
                token=token,
                endpoint_url=endpoint_url,
                is_active=True,
                source_username=(
                    source_username
                    if source_username is not None
                    else (existing.source_username if existing else None)
                ),
                created_at=existing.created_at if existing else now,
                updated_at=now,
            )
            self._tokens[fid] = record
        logger.info("Stored notification token for fid %s", fid)
        return record

    def remove(self, fid: int) -> bool:
        with self._lock:
            removed = self._tokens.pop(fid, None) is not None
        if removed:
            logger.info("Removed notification token for fid %s", fid)
        return removed

    def disable(self, fid: int) -> bool:
        return self._update(fid, is_active=False)

    def enable(self, fid: int, token: str, endpoint_url: str) -> bool:
        return self._update(fid, is_active=True, token=token, endpoint_url=endpoint_url)

    def link_source_username(self, fid: int, source_username: str) -> bool:
        return self._update(fid, source_username=source_username)

    def _update(self, fid: int, **changes: object) -> bool:
        with self._lock:
            existing = self._tokens.get(fid)
            if existing is None:
                return False
            self._tokens[fid] = replace(existing, updated_at=self._clock(), **changes)
        return True

    def get_active(self) -> list[TokenRecord]:
        with self._lock:
            return [record for record in self._tokens.values() if record.is_active]

    def get_for_source_users(self, usernames: Iterable[str]) -> list[TokenRecord]:
        wanted = set(usernames)
        if not wanted:
            return []
        with self._lock:
            return [
                record
                for record in self._tokens.values()
                if record.is_active and record.source_username in wanted
            ]

    def get_by_fid(self, fid: int) -> TokenRecord | None:
        with self._lock:
            return self._tokens.get(fid)

    def get_by_token(self, token: str) -> TokenRecord | None:
        with self._lock:
            for record in self._tokens.values():
                if record.token == token:
                    return record
        return None

    def get_all(self) -> list[TokenRecord]:
        with self._lock:
            return list(self._tokens.values())


class DatabaseTokenStore(TokenStore):
    """Relational backend built on the ``relay_token`` table."""

    durable = True

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self._session_factory = session_factory

    def add_or_update(
        self,
        fid: int,
        handle: str | None,
        token: str,
        endpoint_url: str,
        source_username: str | None = None,
    ) -> TokenRecord:
        try:
            return self._upsert(fid, handle, token, endpoint_url, source_username)
        except IntegrityError:
            # A concurrent writer inserted the same fid first; the retry updates it.
            logger.info("Concurrent insert for fid %s, retrying as update", fid)
            try:
                return self._upsert(fid, handle, token, endpoint_url, source_username)
            except SQLAlchemyError as exc:
                raise TokenStoreError(f"Failed to store token for fid {fid}") from exc
        except SQLAlchemyError as exc:
            raise TokenStoreError(f"Failed to store token for fid {fid}") from exc

    def _upsert(
        self,
        fid: int,
        handle: str | None,
        token: str,
        endpoint_url: str,
        source_username: str | None,
    ) -> TokenRecord:
        with self._session_factory() as session:
            row = session.execute(
                select(DeliveryToken).where(DeliveryToken.fid == fid)
            ).scalar_one_or_none()
            if row is None:
                row = DeliveryToken(
                    fid=fid,
                    handle=handle,
                    token=token,
                    endpoint_url=endpoint_url,
                    source_username=source_username,
                    is_active=True,
                )
                session.add(row)
            else:
                row.handle = handle
                row.token = token
                row.endpoint_url = endpoint_url
                row.is_active = True
                row.updated_at = utcnow()
                if source_username is not None:
                    row.source_username = source_username
            session.commit()
            session.refresh(row)
            record = TokenRecord.from_model(row)
        logger.info("Stored notification token for fid %s", fid)
        return record

    def remove(self, fid: int) -> bool:
        try:
            with self._session_factory() as session:
                row = session.execute(
                    select(DeliveryToken).where(DeliveryToken.fid == fid)
                ).scalar_one_or_none()
                if row is None:
                    return False
                session.delete(row)
                session.commit()
        except SQLAlchemyError as exc:
            raise TokenStoreError(f"Failed to remove token for fid {fid}") from exc
        logger.info("Removed notification token for fid %s", fid)
        return True

    def disable(self, fid: int) -> bool:
        return self._update(fid, is_active=False)

    def enable(self, fid: int, token: str, endpoint_url: str) -> bool:
        return self._update(fid, is_active=True, token=token, endpoint_url=endpoint_url)

    def link_source_username(self, fid: int, source_username: str) -> bool:
        return self._update(fid, source_username=source_username)

    def _update(self, fid: int, **changes: object) -> bool:
        try:
            with self._session_factory() as session:
                row = session.execute(
                    select(DeliveryToken).where(DeliveryToken.fid == fid)
                ).scalar_one_or_none()
                if row is None:
                    return False
                for name, value in changes.items():
                    setattr(row, name, value)
                row.updated_at = utcnow()
                session.commit()
        except SQLAlchemyError as exc:
            raise TokenStoreError(f"Failed to update token for fid {fid}") from exc
        return True

    def _read(self, description: str, stmt) -> list[TokenRecord]:
        try:
            with self._session_factory() as session:
                rows = session.execute(stmt).scalars().all()
                return [TokenRecord.from_model(row) for row in rows]
        except SQLAlchemyError:
            logger.warning("Token store read failed (%s)", description, exc_info=True)
            return []

    def get_active(self) -> list[TokenRecord]:
        return self._read(
            "active tokens",
            select(DeliveryToken)
            .where(DeliveryToken.is_active.is_(True))
            .order_by(DeliveryToken.created_at.desc()),
        )

    def get_for_source_users(self, usernames: Iterable[str]) -> list[TokenRecord]:
        wanted = sorted(set(usernames))
        if not wanted:
            return []
        return self._read(
            f"tokens for {len(wanted)} users",
            select(DeliveryToken).where(
                DeliveryToken.is_active.is_(True),
                DeliveryToken.source_username.in_(wanted),
            ),
        )

    def get_by_fid(self, fid: int) -> TokenRecord | None:
        found = self._read(f"fid {fid}", select(DeliveryToken).where(DeliveryToken.fid == fid))
        return found[0] if found else None

    def get_by_token(self, token: str) -> TokenRecord | None:
        found = self._read("token lookup", select(DeliveryToken).where(DeliveryToken.token == token))
        return found[0] if found else None

    def get_all(self) -> list[TokenRecord]:
        return self._read(
            "all tokens", select(DeliveryToken).order_by(DeliveryToken.created_at.desc())
        )


def create_token_store(
    config: Settings,
    session_factory: Callable[[], Session] | None = None,
) -> TokenStore:
    """Build the token backend named by ``config.token_store_backend``.

    Raises:
        TokenStoreConfigError: If the memory backend is selected while a
            durable store is required.
    """
    if config.token_store_backend == "memory":
        if config.require_durable_store:
            raise TokenStoreConfigError(
                "TOKEN_STORE_BACKEND=memory is not durable; set REQUIRE_DURABLE_STORE=false "
                "to run with process-local tokens"
            )
        logger.warning(
            "Using in-memory token store: every registered token is lost when the process exits"
        )
        return InMemoryTokenStore()

    return DatabaseTokenStore(session_factory or SessionLocal)
