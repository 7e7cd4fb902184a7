# mcp_oauth/storage/memory_storage.py
import asyncio
import logging
import threading
import time
from typing import Dict, List, Optional, Tuple, Union

from ..oauth.models import (
    AuthCodeData,
    AccessTokenData,
    RefreshTokenData,
    OAuthClient,
    StorageStats,
    HealthCheckResult,
    ComponentHealth,
)
from .errors import DuplicateRecordError, StaleRecordError, StorageError, StorageNotInitializedError
from .storage_interfaces import AbstractOAuthStorage, AbstractStorageTransaction, Clock

logger = logging.getLogger(__name__)

_CODE = "code"
_ACCESS = "access"
_REFRESH = "refresh"

ExpiringRecord = Union[AuthCodeData, AccessTokenData, RefreshTokenData]


class InMemoryOAuthStorage(AbstractOAuthStorage):
    """
    Process-local OAuth storage backed by dictionaries.

    Every mutation happens under a single lock and never spans an ``await``,
    so check-and-set operations such as mark_auth_code_used are atomic for
    concurrent coroutines and for threads sharing the instance.

    Records expire through per-record loop timers; reads also compare
    ``expires_at`` with the clock so a late timer never yields a stale hit.
    Values are deep-copied on the way in and out.

    State is lost on process restart and is not shared between processes.
    """

    def __init__(self, clock: Optional[Clock] = None, name: str = "InMemoryOAuthStorage"):
        super().__init__(clock)
        self.name = name
        self._lock = threading.RLock()
        self._clients: Dict[str, OAuthClient] = {}
        self._records: Dict[str, Dict[str, ExpiringRecord]] = {_CODE: {}, _ACCESS: {}, _REFRESH: {}}
        self._timers: Dict[Tuple[str, str], asyncio.TimerHandle] = {}
        self._initialized = False
        logger.info(f"{self.name} created.")

    async def initialize(self) -> None:
        self._initialized = True
        logger.info(f"{self.name}: initialized.")

    async def teardown(self) -> None:
        if not self._initialized:
            return
        with self._lock:
            for handle in self._timers.values():
                handle.cancel()
            self._timers.clear()
        self._initialized = False
        logger.info(f"{self.name}: torn down, expiry timers cancelled.")

    # Internal record helpers. Callers hold self._lock.

    def _schedule_expiry(self, kind: str, key: str, record: ExpiringRecord) -> None:
        ttl = self._ttl_seconds(record.expires_at)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop in this thread: rely on read-time checks and cleanup_expired()
            return
        self._cancel_timer(kind, key)
        self._timers[(kind, key)] = loop.call_later(ttl, self._expire_record, kind, key)

    def _cancel_timer(self, kind: str, key: str) -> None:
        handle = self._timers.pop((kind, key), None)
        if handle is not None:
            handle.cancel()

    def _expire_record(self, kind: str, key: str) -> None:
        with self._lock:
            self._timers.pop((kind, key), None)
            record = self._records[kind].get(key)
            if record is None:
                return
            if record.is_expired(self.now()):
                del self._records[kind][key]
                logger.debug(f"{self.name}: {kind} record expired by timer.")
            else:
                # Fired early relative to the clock; try again
                self._schedule_expiry(kind, key, record)

    def _put(self, kind: str, key: str, record: ExpiringRecord) -> None:
        self._ensure_initialized()
        if key in self._records[kind]:
            raise DuplicateRecordError(f"{kind} record already exists.")
        self._ttl_seconds(record.expires_at)
        self._records[kind][key] = record.model_copy(deep=True)
        self._schedule_expiry(kind, key, record)

    def _get(self, kind: str, key: str) -> Optional[ExpiringRecord]:
        with self._lock:
            self._ensure_initialized()
            record = self._records[kind].get(key)
            if record is None or record.is_expired(self.now()):
                return None
            return record.model_copy(deep=True)

    def _ensure_initialized(self) -> None:
        if not self._initialized:
            raise StorageNotInitializedError(f"{self.name} is not initialized.")

    def _pop(self, kind: str, key: str) -> bool:
        self._cancel_timer(kind, key)
        return self._records[kind].pop(key, None) is not None

    # Clients

    async def save_client(self, client: OAuthClient) -> None:
        with self._lock:
            self._ensure_initialized()
            self._clients[client.client_id] = client.model_copy(deep=True)
        logger.debug(f"{self.name}: saved client '{client.client_id}'.")

    async def get_client(self, client_id: str) -> Optional[OAuthClient]:
        with self._lock:
            self._ensure_initialized()
            client = self._clients.get(client_id)
            return client.model_copy(deep=True) if client else None

    async def list_clients(self) -> List[str]:
        with self._lock:
            self._ensure_initialized()
            return list(self._clients.keys())

    # Authorization codes

    async def save_auth_code(self, auth_code_data: AuthCodeData) -> None:
        with self._lock:
            self._put(_CODE, auth_code_data.code, auth_code_data)

    async def get_auth_code(self, code: str) -> Optional[AuthCodeData]:
        return self._get(_CODE, code)

    async def mark_auth_code_used(self, code: str) -> bool:
        with self._lock:
            self._ensure_initialized()
            record = self._records[_CODE].get(code)
            if record is None or record.is_expired(self.now()):
                return False
            if record.used:
                return False
            record.used = True
            return True

    async def delete_auth_code(self, code: str) -> bool:
        with self._lock:
            self._ensure_initialized()
            return self._pop(_CODE, code)

    # Access tokens

    async def save_access_token(self, access_token_data: AccessTokenData) -> None:
        with self._lock:
            self._put(_ACCESS, access_token_data.access_token, access_token_data)

    async def get_access_token(self, access_token: str) -> Optional[AccessTokenData]:
        return self._get(_ACCESS, access_token)

    async def delete_access_token(self, access_token: str) -> bool:
        with self._lock:
            self._ensure_initialized()
            return self._pop(_ACCESS, access_token)

    # Refresh tokens

    async def save_refresh_token(self, refresh_token_data: RefreshTokenData) -> None:
        with self._lock:
            self._put(_REFRESH, refresh_token_data.refresh_token, refresh_token_data)

    async def get_refresh_token(self, refresh_token: str) -> Optional[RefreshTokenData]:
        return self._get(_REFRESH, refresh_token)

    async def delete_refresh_token(self, refresh_token: str) -> bool:
        with self._lock:
            self._ensure_initialized()
            return self._pop(_REFRESH, refresh_token)

    async def delete_tokens_for_client(self, client_id: str) -> int:
        deleted = 0
        with self._lock:
            self._ensure_initialized()
            for kind in (_ACCESS, _REFRESH):
                keys = [key for key, record in self._records[kind].items() if record.client_id == client_id]
                for key in keys:
                    deleted += int(self._pop(kind, key))
        logger.info(f"{self.name}: deleted {deleted} tokens for client '{client_id}'.")
        return deleted

    # Maintenance

    async def cleanup_expired(self) -> int:
        removed = 0
        with self._lock:
            self._ensure_initialized()
            now = self.now()
            for kind, records in self._records.items():
                expired = [key for key, record in records.items() if record.is_expired(now)]
                for key in expired:
                    removed += int(self._pop(kind, key))
        if removed:
            logger.info(f"{self.name}: cleanup removed {removed} expired records.")
        return removed

    async def begin_transaction(self) -> "InMemoryStorageTransaction":
        self._ensure_initialized()
        return InMemoryStorageTransaction(self)

    async def health_check(self) -> HealthCheckResult:
        start = time.perf_counter()
        if not self._initialized:
            return HealthCheckResult(
                healthy=False,
                message="In-memory storage is not initialized",
                response_time_ms=(time.perf_counter() - start) * 1000,
                components={"memory": ComponentHealth(healthy=False, message="not initialized")},
                errors=["storage not initialized"],
            )
        stats = await self.get_stats()
        return HealthCheckResult(
            healthy=True,
            message="In-memory storage is operational",
            response_time_ms=(time.perf_counter() - start) * 1000,
            components={
                "memory": ComponentHealth(
                    healthy=True,
                    message=f"{stats.access_tokens} tokens, {stats.authorization_codes} codes",
                ),
            },
        )

    def _estimate_memory_usage(self) -> int:
        """Rough footprint: serialized JSON length of every stored value, two bytes per character."""
        values = [*self._clients.values()]
        for records in self._records.values():
            values.extend(records.values())
        return sum(len(value.model_dump_json(by_alias=True)) * 2 for value in values)

    async def get_stats(self) -> StorageStats:
        with self._lock:
            self._ensure_initialized()
            now = self.now()
            live = {
                kind: sum(1 for record in records.values() if not record.is_expired(now))
                for kind, records in self._records.items()
            }
            return StorageStats(
                clients=len(self._clients),
                access_tokens=live[_ACCESS],
                refresh_tokens=live[_REFRESH],
                authorization_codes=live[_CODE],
                memory_usage_bytes=self._estimate_memory_usage(),
                active_connections=1,
            )


class InMemoryStorageTransaction(AbstractStorageTransaction):
    """Buffers operations and applies them under one lock acquisition on commit."""

    def __init__(self, storage: InMemoryOAuthStorage):
        super().__init__()
        self._storage = storage
        self._operations: List[Tuple[str, str, str, Optional[ExpiringRecord]]] = []

    def _buffer_save(self, kind: str, key: str, record: ExpiringRecord) -> None:
        self._ensure_active()
        self._storage._ttl_seconds(record.expires_at)
        self._operations.append(("save", kind, key, record.model_copy(deep=True)))

    def _buffer_delete(self, kind: str, key: str, op: str = "delete") -> None:
        self._ensure_active()
        self._operations.append((op, kind, key, None))

    async def save_access_token(self, access_token_data: AccessTokenData) -> None:
        self._buffer_save(_ACCESS, access_token_data.access_token, access_token_data)

    async def save_refresh_token(self, refresh_token_data: RefreshTokenData) -> None:
        self._buffer_save(_REFRESH, refresh_token_data.refresh_token, refresh_token_data)

    async def delete_access_token(self, access_token: str) -> None:
        self._buffer_delete(_ACCESS, access_token)

    async def delete_refresh_token(self, refresh_token: str) -> None:
        self._buffer_delete(_REFRESH, refresh_token)

    async def delete_auth_code(self, code: str) -> None:
        self._buffer_delete(_CODE, code)

    async def consume_refresh_token(self, refresh_token: str) -> None:
        self._buffer_delete(_REFRESH, refresh_token, op="consume")

    async def commit(self) -> None:
        self._ensure_active()
        storage = self._storage
        with storage._lock:
            # Validate every write before applying any of them
            present: Dict[Tuple[str, str], bool] = {}
            now = storage.now()
            try:
                storage._ensure_initialized()
                for op, kind, key, record in self._operations:
                    if op == "consume":
                        stored = storage._records[kind].get(key)
                        live = stored is not None and not stored.is_expired(now)
                        if not present.get((kind, key), live):
                            raise StaleRecordError(f"{kind} record was already consumed or has expired.")
                        present[(kind, key)] = False
                        continue
                    if op == "delete":
                        present[(kind, key)] = False
                        continue
                    if present.get((kind, key), key in storage._records[kind]):
                        raise DuplicateRecordError(f"{kind} record already exists.")
                    storage._ttl_seconds(record.expires_at)
                    present[(kind, key)] = True
            except (StorageError, ValueError):
                self._operations.clear()
                self._state = "rolled_back"
                raise

            for op, kind, key, record in self._operations:
                if op in ("delete", "consume"):
                    storage._pop(kind, key)
                else:
                    storage._records[kind][key] = record
                    storage._schedule_expiry(kind, key, record)
        self._operations.clear()
        self._state = "committed"

    async def rollback(self) -> None:
        self._ensure_active()
        self._operations.clear()
        self._state = "rolled_back"
