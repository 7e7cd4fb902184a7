# mcp_oauth/storage/redis_storage.py
import asyncio
import json
import logging
import math
import re
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, TypeVar, Union

import redis.asyncio as aioredis
from redis.backoff import ExponentialBackoff
from redis.exceptions import (
    ConnectionError as RedisConnectionError,
    TimeoutError as RedisTimeoutError,
    RedisError,
    WatchError,
)

from ..oauth.models import (
    AuthCodeData,
    AccessTokenData,
    RefreshTokenData,
    OAuthClient,
    StorageStats,
    HealthCheckResult,
    ComponentHealth,
)
from .errors import (
    StorageError,
    StorageNotInitializedError,
    StorageUnavailableError,
    StorageTimeoutError,
    DuplicateRecordError,
    StaleRecordError,
)
from .storage_interfaces import AbstractOAuthStorage, AbstractStorageTransaction, Clock

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Stores an authorization code hash only if the key is absent, and sets its TTL.
# KEYS[1] = code key
# ARGV = ttl_ms, clientId, redirectUri, codeChallenge, scopes(json), expiresAt(epoch s)
STORE_AUTH_CODE_LUA = """
if redis.call('EXISTS', KEYS[1]) == 1 then
  return 0
end
redis.call('HSET', KEYS[1],
  'clientId', ARGV[2],
  'redirectUri', ARGV[3],
  'codeChallenge', ARGV[4],
  'scopes', ARGV[5],
  'expiresAt', ARGV[6],
  'used', '0')
redis.call('PEXPIRE', KEYS[1], ARGV[1])
return 1
"""

# Atomic check-and-set of the used flag. HSET keeps the key's TTL.
# KEYS[1] = code key, ARGV[1] = current epoch seconds
# Returns -1 if missing or expired, 0 if already used, 1 if this call marked it.
MARK_AUTH_CODE_USED_LUA = """
local fields = redis.call('HMGET', KEYS[1], 'used', 'expiresAt')
local used = fields[1]
if not used then
  return -1
end
if tonumber(fields[2]) <= tonumber(ARGV[1]) then
  return -1
end
if used == '1' then
  return 0
end
redis.call('HSET', KEYS[1], 'used', '1')
return 1
"""


def _as_str(value: Union[bytes, str]) -> str:
    return value.decode("utf-8") if isinstance(value, bytes) else value


class RedisOAuthStorage(AbstractOAuthStorage):
    """
    Redis-based OAuth storage shared safely by any number of server processes.

    Every record lives under a namespaced key whose native TTL matches the
    record's expires_at, so expired data disappears without a sweep.
    Authorization codes are hashes so the single-use flag can be flipped by
    a server-side script; tokens and clients are camelCase JSON strings.

    All calls are bounded by ``operation_timeout``. Idempotent calls retry on
    connection errors with exponential backoff; mark_auth_code_used and
    transaction commits do not.
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        ssl: bool = False,
        key_prefix: str = "oauth:",
        connect_timeout: float = 5.0,
        operation_timeout: float = 2.0,
        retry_attempts: int = 5,
        retry_base_delay: float = 0.1,
        retry_max_delay: float = 2.0,
        redis_client: Optional[aioredis.Redis] = None,
        clock: Optional[Clock] = None,
        name: str = "RedisOAuthStorage",
    ):
        super().__init__(clock)
        self.name = name
        self.host = host
        self.port = port
        self.db = db
        self._password = password
        self.ssl = ssl
        self.key_prefix = key_prefix
        self.connect_timeout = connect_timeout
        self.operation_timeout = operation_timeout
        self.retry_attempts = retry_attempts
        self._backoff = ExponentialBackoff(cap=retry_max_delay, base=retry_base_delay)

        self._redis_client: Optional[aioredis.Redis] = redis_client
        self._owns_client = redis_client is None
        self._store_code_script = None
        self._mark_used_script = None
        self._initialized = False
        logger.info(f"{self.name} created for {host}:{port}/{db} with key prefix '{key_prefix}'.")

    # Lifecycle

    async def initialize(self) -> None:
        """Establish the Redis connection and register the Lua scripts."""
        if self._initialized:
            return

        if self._redis_client is None:
            connection_params: Dict[str, Any] = {
                "host": self.host,
                "port": self.port,
                "db": self.db,
                "decode_responses": False,
                "socket_connect_timeout": self.connect_timeout,
                "socket_timeout": self.operation_timeout,
            }
            if self._password:
                connection_params["password"] = self._password
            if self.ssl:
                connection_params["ssl"] = True
            self._redis_client = aioredis.Redis(**connection_params)
            self._owns_client = True

        client = self._redis_client
        try:
            await self._execute("PING", client.ping)
        except StorageError:
            logger.error(f"{self.name}: failed to connect to Redis at {self.host}:{self.port}.", exc_info=True)
            if self._owns_client:
                await client.aclose()
                self._redis_client = None
            raise

        self._store_code_script = client.register_script(STORE_AUTH_CODE_LUA)
        self._mark_used_script = client.register_script(MARK_AUTH_CODE_USED_LUA)
        self._initialized = True
        logger.info(f"{self.name}: successfully connected to Redis.")

    async def teardown(self) -> None:
        """Clean up the Redis connection."""
        if self._redis_client is not None and self._owns_client:
            try:
                await self._redis_client.aclose()
            except RedisError as e:
                logger.warning(f"{self.name}: error while closing Redis connection: {e}")
            self._redis_client = None
        self._initialized = False
        logger.info(f"{self.name}: connection closed.")

    def _get_client(self) -> aioredis.Redis:
        """Get initialized Redis client or raise error if not ready."""
        if not self._initialized or self._redis_client is None:
            raise StorageNotInitializedError(f"{self.name} not initialized.")
        return self._redis_client

    async def _execute(
        self,
        operation: str,
        call: Callable[[], Awaitable[T]],
        retry: bool = True,
    ) -> T:
        """
        Runs one Redis call under the operation timeout.

        Connection failures and timeouts are retried with exponential backoff
        when ``retry`` is set. Failures surface as StorageError subclasses,
        never as a default result.
        """
        attempts = self.retry_attempts if retry else 0
        failure: Optional[StorageError] = None
        cause: Optional[BaseException] = None

        for attempt in range(attempts + 1):
            try:
                return await asyncio.wait_for(call(), timeout=self.operation_timeout)
            except (asyncio.TimeoutError, RedisTimeoutError) as e:
                failure = StorageTimeoutError(
                    f"Redis {operation} timed out after {self.operation_timeout}s."
                )
                cause = e
            except RedisConnectionError as e:
                failure = StorageUnavailableError(f"Redis {operation} failed: connection error.")
                cause = e
            except RedisError as e:
                raise StorageError(f"Redis {operation} failed: {e}") from e

            if attempt < attempts:
                delay = self._backoff.compute(attempt)
                logger.warning(
                    f"{self.name}: {operation} attempt {attempt + 1}/{attempts + 1} failed ({cause!r}); "
                    f"retrying in {delay:.2f}s."
                )
                await asyncio.sleep(delay)

        logger.error(f"{self.name}: {operation} failed after {attempts + 1} attempt(s): {cause!r}")
        raise failure from cause

    # Keys

    def _get_key(self, namespace: str, identifier: str) -> str:
        return f"{self.key_prefix}{namespace}:{identifier}"

    def _get_code_key(self, code: str) -> str:
        return self._get_key("code", code)

    def _get_access_token_key(self, token: str) -> str:
        return self._get_key("token:access", token)

    def _get_refresh_token_key(self, token: str) -> str:
        return self._get_key("token:refresh", token)

    def _get_client_key(self, client_id: str) -> str:
        return self._get_key("client", client_id)

    def _get_pattern(self, namespace: str) -> str:
        # Escape glob metacharacters that may appear in a custom prefix
        escaped_prefix = re.sub(r"([\[\]\*\?\\])", r"\\\1", self.key_prefix)
        return f"{escaped_prefix}{namespace}:*"

    async def _scan_keys(self, namespace: str) -> List[str]:
        client = self._get_client()

        async def collect() -> List[str]:
            return [_as_str(k) async for k in client.scan_iter(match=self._get_pattern(namespace), count=500)]

        return await self._execute("SCAN", collect)

    def _ttl_ms(self, expires_at: datetime) -> int:
        return max(1, math.ceil(self._ttl_seconds(expires_at) * 1000))

    # Clients

    async def save_client(self, client: OAuthClient) -> None:
        redis_client = self._get_client()
        payload = client.model_dump_json(by_alias=True).encode("utf-8")
        await self._execute("SET", lambda: redis_client.set(self._get_client_key(client.client_id), payload))
        logger.debug(f"{self.name}: saved client '{client.client_id}'.")

    async def get_client(self, client_id: str) -> Optional[OAuthClient]:
        redis_client = self._get_client()
        data_bytes = await self._execute("GET", lambda: redis_client.get(self._get_client_key(client_id)))
        if not data_bytes:
            return None
        try:
            return OAuthClient.model_validate_json(data_bytes)
        except ValueError as e:
            logger.error(f"{self.name}: error deserializing client '{client_id}': {e}")
            return None

    async def list_clients(self) -> List[str]:
        prefix = self._get_client_key("")
        return [key[len(prefix):] for key in await self._scan_keys("client")]

    # Authorization codes

    async def save_auth_code(self, auth_code_data: AuthCodeData) -> None:
        self._get_client()
        ttl_ms = self._ttl_ms(auth_code_data.expires_at)
        stored = await self._execute(
            "EVALSHA store_auth_code",
            lambda: self._store_code_script(
                keys=[self._get_code_key(auth_code_data.code)],
                args=[
                    ttl_ms,
                    auth_code_data.client_id,
                    auth_code_data.redirect_uri,
                    auth_code_data.code_challenge,
                    json.dumps(auth_code_data.scopes),
                    repr(auth_code_data.expires_at.timestamp()),
                ],
            ),
            retry=False,
        )
        if int(stored) != 1:
            raise DuplicateRecordError("Authorization code already exists.")

    async def get_auth_code(self, code: str) -> Optional[AuthCodeData]:
        client = self._get_client()
        raw = await self._execute("HGETALL", lambda: client.hgetall(self._get_code_key(code)))
        if not raw:
            return None
        fields = {_as_str(k): _as_str(v) for k, v in raw.items()}
        try:
            record = AuthCodeData(
                code=code,
                client_id=fields["clientId"],
                redirect_uri=fields["redirectUri"],
                code_challenge=fields["codeChallenge"],
                scopes=json.loads(fields["scopes"]),
                expires_at=datetime.fromtimestamp(float(fields["expiresAt"]), tz=timezone.utc),
                used=fields.get("used") == "1",
            )
        except (KeyError, ValueError) as e:
            logger.error(f"{self.name}: error deserializing authorization code: {e}")
            return None
        return None if record.is_expired(self.now()) else record

    async def mark_auth_code_used(self, code: str) -> bool:
        self._get_client()
        now_ts = repr(self.now().timestamp())
        result = await self._execute(
            "EVALSHA mark_auth_code_used",
            lambda: self._mark_used_script(keys=[self._get_code_key(code)], args=[now_ts]),
            retry=False,
        )
        result = int(result)
        if result == -1:
            logger.debug(f"{self.name}: mark_auth_code_used on a missing or expired code.")
        return result == 1

    async def delete_auth_code(self, code: str) -> bool:
        client = self._get_client()
        return bool(await self._execute("DEL", lambda: client.delete(self._get_code_key(code))))

    # Access and refresh tokens

    async def _save_token(self, key: str, record: Union[AccessTokenData, RefreshTokenData]) -> None:
        client = self._get_client()
        ttl_ms = self._ttl_ms(record.expires_at)
        payload = record.model_dump_json(by_alias=True).encode("utf-8")
        stored = await self._execute(
            "SET", lambda: client.set(key, payload, px=ttl_ms, nx=True), retry=False
        )
        if not stored:
            raise DuplicateRecordError("Token already exists.")

    async def _load_token(self, key: str, model: type) -> Optional[Any]:
        client = self._get_client()
        data_bytes = await self._execute("GET", lambda: client.get(key))
        if not data_bytes:
            return None
        try:
            record = model.model_validate_json(data_bytes)
        except ValueError as e:
            logger.error(f"{self.name}: error deserializing {model.__name__}: {e}")
            return None
        return None if record.is_expired(self.now()) else record

    async def _delete_key(self, key: str) -> bool:
        client = self._get_client()
        return bool(await self._execute("DEL", lambda: client.delete(key)))

    async def save_access_token(self, access_token_data: AccessTokenData) -> None:
        await self._save_token(self._get_access_token_key(access_token_data.access_token), access_token_data)

    async def get_access_token(self, access_token: str) -> Optional[AccessTokenData]:
        return await self._load_token(self._get_access_token_key(access_token), AccessTokenData)

    async def delete_access_token(self, access_token: str) -> bool:
        return await self._delete_key(self._get_access_token_key(access_token))

    async def save_refresh_token(self, refresh_token_data: RefreshTokenData) -> None:
        await self._save_token(self._get_refresh_token_key(refresh_token_data.refresh_token), refresh_token_data)

    async def get_refresh_token(self, refresh_token: str) -> Optional[RefreshTokenData]:
        return await self._load_token(self._get_refresh_token_key(refresh_token), RefreshTokenData)

    async def delete_refresh_token(self, refresh_token: str) -> bool:
        return await self._delete_key(self._get_refresh_token_key(refresh_token))

    async def delete_tokens_for_client(self, client_id: str) -> int:
        client = self._get_client()
        deleted = 0
        for namespace in ("token:access", "token:refresh"):
            for key in await self._scan_keys(namespace):
                data_bytes = await self._execute("GET", lambda k=key: client.get(k))
                if not data_bytes:
                    continue
                try:
                    owner = json.loads(data_bytes).get("clientId")
                except ValueError:
                    continue
                if owner == client_id:
                    deleted += int(await self._delete_key(key))
        logger.info(f"{self.name}: deleted {deleted} tokens for client '{client_id}'.")
        return deleted

    # Maintenance

    async def cleanup_expired(self) -> int:
        # Keys carry native TTLs, Redis expires them itself
        self._get_client()
        logger.debug(f"{self.name}: cleanup_expired is a no-op, Redis TTLs handle expiry.")
        return 0

    async def begin_transaction(self) -> "RedisStorageTransaction":
        return RedisStorageTransaction(self)

    async def health_check(self) -> HealthCheckResult:
        start = time.perf_counter()

        if not self._initialized or self._redis_client is None:
            return HealthCheckResult(
                healthy=False,
                message="Redis client not connected",
                response_time_ms=(time.perf_counter() - start) * 1000,
                components={"connection": ComponentHealth(healthy=False, message="Not connected")},
                errors=["Redis client not connected"],
            )

        client = self._redis_client
        try:
            ping_start = time.perf_counter()
            await self._execute("PING", client.ping, retry=False)
            ping_ms = (time.perf_counter() - ping_start) * 1000

            test_key = self._get_key("health", "check")
            test_value = str(time.time_ns()).encode("utf-8")
            await self._execute("SETEX", lambda: client.setex(test_key, 10, test_value), retry=False)
            read_back = await self._execute("GET", lambda: client.get(test_key), retry=False)
            read_write_ok = read_back == test_value

            stats = await self.get_stats()
        except StorageError as e:
            return HealthCheckResult(
                healthy=False,
                message="Health check failed",
                response_time_ms=(time.perf_counter() - start) * 1000,
                components={"connection": ComponentHealth(healthy=False, message=str(e))},
                errors=[str(e)],
            )

        total_ms = (time.perf_counter() - start) * 1000
        healthy = total_ms < 100 and read_write_ok
        if healthy:
            message = "Redis storage is healthy"
        elif read_write_ok and total_ms < 500:
            message = "Redis storage is degraded (high latency)"
        else:
            message = "Redis storage is unhealthy"

        return HealthCheckResult(
            healthy=healthy,
            message=message,
            response_time_ms=total_ms,
            components={
                "connection": ComponentHealth(healthy=True, message=f"Connected to {self.host}:{self.port}"),
                "ping": ComponentHealth(healthy=ping_ms < 50, message=f"{ping_ms:.1f}ms"),
                "read_write": ComponentHealth(
                    healthy=read_write_ok,
                    message="Read/write successful" if read_write_ok else "Read/write failed",
                ),
                "storage": ComponentHealth(
                    healthy=True,
                    message=f"{stats.access_tokens} tokens, {stats.authorization_codes} codes",
                ),
            },
            errors=[] if read_write_ok else ["read/write round-trip mismatch"],
        )

    async def get_stats(self) -> StorageStats:
        client = self._get_client()
        stats = StorageStats(
            clients=len(await self._scan_keys("client")),
            access_tokens=len(await self._scan_keys("token:access")),
            refresh_tokens=len(await self._scan_keys("token:refresh")),
            authorization_codes=len(await self._scan_keys("code")),
        )
        try:
            memory_info = await self._execute("INFO memory", lambda: client.info("memory"), retry=False)
            clients_info = await self._execute("INFO clients", lambda: client.info("clients"), retry=False)
        except StorageError as e:
            # INFO may be disabled on managed Redis offerings
            logger.debug(f"{self.name}: could not read Redis INFO: {e}")
        else:
            if "used_memory" in memory_info:
                stats.memory_usage_bytes = int(memory_info["used_memory"])
            if "connected_clients" in clients_info:
                stats.active_connections = int(clients_info["connected_clients"])
        return stats


class RedisStorageTransaction(AbstractStorageTransaction):
    """
    Buffers writes and applies them with WATCH + MULTI/EXEC on commit.

    The keys about to be created are watched and checked for existence
    first, so a duplicate id aborts the whole transaction instead of
    leaving it half applied. Consumed keys are watched too and must still
    exist, so only one of several concurrent commits can consume a token.
    """

    def __init__(self, storage: RedisOAuthStorage):
        super().__init__()
        self._storage = storage
        # (command, key, payload, ttl_ms)
        self._operations: List[Tuple[str, str, Optional[bytes], Optional[int]]] = []

    def _buffer_save(self, key: str, record: Union[AccessTokenData, RefreshTokenData]) -> None:
        self._ensure_active()
        ttl_ms = self._storage._ttl_ms(record.expires_at)
        self._operations.append(("set", key, record.model_dump_json(by_alias=True).encode("utf-8"), ttl_ms))

    def _buffer_delete(self, key: str, command: str = "del") -> None:
        self._ensure_active()
        self._operations.append((command, key, None, None))

    async def save_access_token(self, access_token_data: AccessTokenData) -> None:
        self._buffer_save(self._storage._get_access_token_key(access_token_data.access_token), access_token_data)

    async def save_refresh_token(self, refresh_token_data: RefreshTokenData) -> None:
        self._buffer_save(self._storage._get_refresh_token_key(refresh_token_data.refresh_token), refresh_token_data)

    async def delete_access_token(self, access_token: str) -> None:
        self._buffer_delete(self._storage._get_access_token_key(access_token))

    async def delete_refresh_token(self, refresh_token: str) -> None:
        self._buffer_delete(self._storage._get_refresh_token_key(refresh_token))

    async def delete_auth_code(self, code: str) -> None:
        self._buffer_delete(self._storage._get_code_key(code))

    async def consume_refresh_token(self, refresh_token: str) -> None:
        self._buffer_delete(self._storage._get_refresh_token_key(refresh_token), command="consume")

    async def _apply(self) -> None:
        client = self._storage._get_client()
        new_keys = [key for command, key, _, _ in self._operations if command == "set"]
        consumed_keys = list(dict.fromkeys(key for command, key, _, _ in self._operations if command == "consume"))
        async with client.pipeline(transaction=True) as pipe:
            if new_keys or consumed_keys:
                await pipe.watch(*new_keys, *consumed_keys)
            if consumed_keys and await pipe.exists(*consumed_keys) != len(consumed_keys):
                raise StaleRecordError("Token was already consumed or has expired.")
            if new_keys and await pipe.exists(*new_keys):
                raise DuplicateRecordError("Token already exists.")
            pipe.multi()
            for command, key, payload, ttl_ms in self._operations:
                if command == "set":
                    pipe.set(key, payload, px=ttl_ms)
                else:
                    pipe.delete(key)
            try:
                await pipe.execute()
            except WatchError as e:
                if consumed_keys:
                    raise StaleRecordError("A consumed token changed before the commit applied.") from e
                raise DuplicateRecordError("A token key was created concurrently.") from e

    async def commit(self) -> None:
        self._ensure_active()
        try:
            await self._storage._execute("MULTI/EXEC", self._apply, retry=False)
        except StorageError:
            self._state = "rolled_back"
            self._operations.clear()
            raise
        self._operations.clear()
        self._state = "committed"

    async def rollback(self) -> None:
        self._ensure_active()
        self._operations.clear()
        self._state = "rolled_back"
