# mcp_oauth/storage/storage_interfaces.py
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Callable, List, Optional

from ..oauth.models import (
    AuthCodeData,
    AccessTokenData,
    RefreshTokenData,
    OAuthClient,
    StorageStats,
    HealthCheckResult,
    utc_now,
)
from .errors import TransactionStateError

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


class AbstractStorageTransaction(ABC):
    """
    Buffers writes and applies them all-or-nothing on commit().

    Usable as an async context manager: a clean exit commits, an exception
    rolls back and propagates.
    """

    def __init__(self) -> None:
        self._state = "active"

    @property
    def state(self) -> str:
        return self._state

    def _ensure_active(self) -> None:
        if self._state != "active":
            raise TransactionStateError(f"Transaction is {self._state}, cannot perform operations.")

    @abstractmethod
    async def save_access_token(self, access_token_data: AccessTokenData) -> None:
        pass

    @abstractmethod
    async def save_refresh_token(self, refresh_token_data: RefreshTokenData) -> None:
        pass

    @abstractmethod
    async def delete_access_token(self, access_token: str) -> None:
        pass

    @abstractmethod
    async def delete_refresh_token(self, refresh_token: str) -> None:
        pass

    @abstractmethod
    async def delete_auth_code(self, code: str) -> None:
        pass

    @abstractmethod
    async def consume_refresh_token(self, refresh_token: str) -> None:
        """
        Deletes the refresh token on commit, and fails the whole commit with
        StaleRecordError unless the token is still stored and unexpired then.
        """
        pass

    @abstractmethod
    async def commit(self) -> None:
        """Apply every buffered operation atomically."""
        pass

    @abstractmethod
    async def rollback(self) -> None:
        """Discard every buffered operation."""
        pass

    async def __aenter__(self) -> "AbstractStorageTransaction":
        self._ensure_active()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self._state != "active":
            return
        if exc_type is None:
            await self.commit()
        else:
            await self.rollback()


class AbstractOAuthStorage(ABC):
    """
    Abstract base class for the OAuth storage backend.

    Owns clients, authorization codes, access tokens and refresh tokens.
    Expired records are reported as not found on every read, whether or not
    they have been purged yet.
    """

    def __init__(self, clock: Optional[Clock] = None) -> None:
        self._clock: Clock = clock or utc_now

    def now(self) -> datetime:
        return self._clock()

    # Lifecycle

    @abstractmethod
    async def initialize(self) -> None:
        """Connect to / prepare the storage backend. Idempotent."""
        pass

    @abstractmethod
    async def teardown(self) -> None:
        """Release connections, timers and other resources. Idempotent."""
        pass

    @abstractmethod
    async def health_check(self) -> HealthCheckResult:
        pass

    @abstractmethod
    async def get_stats(self) -> StorageStats:
        pass

    # Clients

    @abstractmethod
    async def save_client(self, client: OAuthClient) -> None:
        """Store a client registration, replacing any previous one with the same id."""
        pass

    @abstractmethod
    async def get_client(self, client_id: str) -> Optional[OAuthClient]:
        pass

    @abstractmethod
    async def list_clients(self) -> List[str]:
        pass

    # Authorization codes

    @abstractmethod
    async def save_auth_code(self, auth_code_data: AuthCodeData) -> None:
        """Store a new authorization code. Raises DuplicateRecordError if the code exists."""
        pass

    @abstractmethod
    async def get_auth_code(self, code: str) -> Optional[AuthCodeData]:
        pass

    @abstractmethod
    async def mark_auth_code_used(self, code: str) -> bool:
        """
        Atomically flips ``used`` from False to True.

        Returns True for exactly one caller per code, including under
        concurrency. Returns False when the code was already used, is
        unknown, or has expired.
        """
        pass

    @abstractmethod
    async def delete_auth_code(self, code: str) -> bool:
        pass

    # Access tokens

    @abstractmethod
    async def save_access_token(self, access_token_data: AccessTokenData) -> None:
        pass

    @abstractmethod
    async def get_access_token(self, access_token: str) -> Optional[AccessTokenData]:
        pass

    @abstractmethod
    async def delete_access_token(self, access_token: str) -> bool:
        pass

    # Refresh tokens

    @abstractmethod
    async def save_refresh_token(self, refresh_token_data: RefreshTokenData) -> None:
        pass

    @abstractmethod
    async def get_refresh_token(self, refresh_token: str) -> Optional[RefreshTokenData]:
        pass

    @abstractmethod
    async def delete_refresh_token(self, refresh_token: str) -> bool:
        pass

    @abstractmethod
    async def delete_tokens_for_client(self, client_id: str) -> int:
        """Remove every access and refresh token issued to a client. Returns the number removed."""
        pass

    # Maintenance

    @abstractmethod
    async def cleanup_expired(self) -> int:
        """Purge expired records. Returns the number of records removed."""
        pass

    @abstractmethod
    async def begin_transaction(self) -> AbstractStorageTransaction:
        pass

    def _ttl_seconds(self, expires_at: datetime) -> float:
        """Remaining lifetime of a record. Raises ValueError for records already expired."""
        ttl = (expires_at - self.now()).total_seconds()
        if ttl <= 0:
            raise ValueError(f"Invalid TTL: {ttl:.3f}s (expires_at must be in the future).")
        return ttl
