# In-memory backend specifics: copies, timers and thread safety.

import asyncio
import threading
from datetime import timedelta

import pytest

from mcp_oauth.oauth.models import AccessTokenData, AuthCodeData, OAuthClient, RefreshTokenData, utc_now
from mcp_oauth.storage.errors import StaleRecordError, StorageNotInitializedError
from mcp_oauth.storage.memory_storage import InMemoryOAuthStorage


def _code(expires_at, code="code-1"):
    return AuthCodeData(
        code=code,
        client_id="c1",
        redirect_uri="https://app/cb",
        code_challenge="E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM",
        scopes=["read"],
        expires_at=expires_at,
    )


class TestInMemoryOAuthStorage:
    @pytest.mark.asyncio
    async def test_values_are_copied_in_and_out(self, memory_storage, clock):
        record = AccessTokenData(
            access_token="at-1", client_id="c1", scopes=["read"], expires_at=clock() + timedelta(hours=1)
        )
        await memory_storage.save_access_token(record)
        record.scopes.append("admin")

        loaded = await memory_storage.get_access_token("at-1")
        assert loaded.scopes == ["read"]

        loaded.scopes.append("admin")
        assert (await memory_storage.get_access_token("at-1")).scopes == ["read"]

    @pytest.mark.asyncio
    async def test_timer_removes_expired_record(self):
        storage = InMemoryOAuthStorage()
        await storage.initialize()
        try:
            await storage.save_auth_code(_code(utc_now() + timedelta(milliseconds=50)))
            assert storage._records["code"]

            await asyncio.sleep(0.3)
            assert not storage._records["code"]
        finally:
            await storage.teardown()

    @pytest.mark.asyncio
    async def test_teardown_cancels_timers(self, clock):
        storage = InMemoryOAuthStorage(clock=clock)
        await storage.initialize()
        await storage.save_auth_code(_code(clock() + timedelta(minutes=10)))
        assert storage._timers

        await storage.teardown()
        assert not storage._timers

    @pytest.mark.asyncio
    async def test_health_requires_initialize(self, clock):
        storage = InMemoryOAuthStorage(clock=clock)
        assert (await storage.health_check()).healthy is False

        await storage.initialize()
        assert (await storage.health_check()).healthy is True
        await storage.teardown()

    @pytest.mark.asyncio
    async def test_stats_skip_expired_records(self, memory_storage, clock):
        await memory_storage.save_auth_code(_code(clock() + timedelta(seconds=5)))
        clock.advance(5)
        assert (await memory_storage.get_stats()).authorization_codes == 0

    @pytest.mark.asyncio
    async def test_operations_require_initialize(self, clock):
        storage = InMemoryOAuthStorage(clock=clock)
        with pytest.raises(StorageNotInitializedError):
            await storage.get_client("c1")
        with pytest.raises(StorageNotInitializedError):
            await storage.save_auth_code(_code(clock() + timedelta(minutes=10)))
        with pytest.raises(StorageNotInitializedError):
            await storage.begin_transaction()
        with pytest.raises(StorageNotInitializedError):
            await storage.get_stats()

        await storage.initialize()
        await storage.teardown()
        with pytest.raises(StorageNotInitializedError):
            await storage.get_access_token("at-1")

    @pytest.mark.asyncio
    async def test_stats_estimate_memory_usage(self, memory_storage, clock):
        empty = await memory_storage.get_stats()
        assert empty.memory_usage_bytes == 0
        assert empty.active_connections == 1

        client = OAuthClient(client_id="c1", client_secret_hash="hash", redirect_uris=["https://app/cb"])
        await memory_storage.save_client(client)
        await memory_storage.save_auth_code(_code(clock() + timedelta(minutes=10)))

        stats = await memory_storage.get_stats()
        expected = 2 * (
            len(client.model_dump_json(by_alias=True))
            + len(_code(clock() + timedelta(minutes=10)).model_dump_json(by_alias=True))
        )
        assert stats.memory_usage_bytes == expected

    @pytest.mark.asyncio
    async def test_expired_refresh_token_cannot_be_consumed(self, memory_storage, clock):
        await memory_storage.save_refresh_token(RefreshTokenData(
            refresh_token="rt-1", client_id="c1", expires_at=clock() + timedelta(seconds=30)
        ))
        transaction = await memory_storage.begin_transaction()
        await transaction.consume_refresh_token("rt-1")
        clock.advance(30)

        with pytest.raises(StaleRecordError):
            await transaction.commit()

    def test_mark_used_is_atomic_across_threads(self, clock):
        storage = InMemoryOAuthStorage(clock=clock)
        asyncio.run(storage.initialize())
        asyncio.run(storage.save_auth_code(_code(clock() + timedelta(minutes=10))))

        results = []
        barrier = threading.Barrier(8)

        def worker():
            barrier.wait()
            results.append(asyncio.run(storage.mark_auth_code_used("code-1")))

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert results.count(True) == 1
        assert results.count(False) == 7
