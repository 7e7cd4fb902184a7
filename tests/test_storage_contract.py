# Storage behaviour shared by the in-memory and Redis backends.

import asyncio
from datetime import timedelta

import pytest

from mcp_oauth.oauth.models import AccessTokenData, AuthCodeData, OAuthClient, RefreshTokenData
from mcp_oauth.storage.errors import DuplicateRecordError, StaleRecordError, TransactionStateError


def _code(clock, code="code-1", seconds=600, **overrides):
    fields = dict(
        code=code,
        client_id="c1",
        redirect_uri="https://app/cb",
        code_challenge="E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM",
        scopes=["read"],
        expires_at=clock() + timedelta(seconds=seconds),
    )
    fields.update(overrides)
    return AuthCodeData(**fields)


def _access(clock, token="at-1", client_id="c1", seconds=3600, refresh_token=None):
    return AccessTokenData(
        access_token=token,
        client_id=client_id,
        scopes=["read"],
        expires_at=clock() + timedelta(seconds=seconds),
        refresh_token=refresh_token,
    )


def _refresh(clock, token="rt-1", client_id="c1", seconds=86400, access_token=None):
    return RefreshTokenData(
        refresh_token=token,
        client_id=client_id,
        scopes=["read"],
        expires_at=clock() + timedelta(seconds=seconds),
        access_token=access_token,
    )


class TestClients:
    @pytest.mark.asyncio
    async def test_save_and_get_client(self, storage):
        client = OAuthClient(
            client_id="c1", client_secret_hash="$2b$04$hash", redirect_uris=["https://app/cb"], allowed_scopes=["read"]
        )
        await storage.save_client(client)

        loaded = await storage.get_client("c1")
        assert loaded == client
        assert await storage.get_client("missing") is None
        assert await storage.list_clients() == ["c1"]

    @pytest.mark.asyncio
    async def test_save_client_replaces_registration(self, storage):
        await storage.save_client(OAuthClient(client_id="c1", client_secret_hash="h1", redirect_uris=["https://a/cb"]))
        await storage.save_client(OAuthClient(client_id="c1", client_secret_hash="h2", redirect_uris=["https://b/cb"]))

        loaded = await storage.get_client("c1")
        assert loaded.client_secret_hash == "h2"
        assert loaded.redirect_uris == ["https://b/cb"]


class TestAuthorizationCodes:
    @pytest.mark.asyncio
    async def test_save_and_get(self, storage, clock):
        record = _code(clock)
        await storage.save_auth_code(record)

        loaded = await storage.get_auth_code("code-1")
        assert loaded is not None
        assert loaded.client_id == "c1"
        assert loaded.scopes == ["read"]
        assert loaded.used is False
        assert loaded.expires_at == record.expires_at

    @pytest.mark.asyncio
    async def test_duplicate_code_rejected(self, storage, clock):
        await storage.save_auth_code(_code(clock))
        with pytest.raises(DuplicateRecordError):
            await storage.save_auth_code(_code(clock))

    @pytest.mark.asyncio
    async def test_non_positive_ttl_rejected(self, storage, clock):
        with pytest.raises(ValueError):
            await storage.save_auth_code(_code(clock, seconds=0))
        assert await storage.get_auth_code("code-1") is None

    @pytest.mark.asyncio
    async def test_mark_used_succeeds_once(self, storage, clock):
        await storage.save_auth_code(_code(clock))

        assert await storage.mark_auth_code_used("code-1") is True
        assert await storage.mark_auth_code_used("code-1") is False
        assert (await storage.get_auth_code("code-1")).used is True

    @pytest.mark.asyncio
    async def test_mark_used_unknown_code(self, storage):
        assert await storage.mark_auth_code_used("nope") is False

    @pytest.mark.asyncio
    async def test_mark_used_concurrently(self, storage, clock):
        await storage.save_auth_code(_code(clock))

        results = await asyncio.gather(*(storage.mark_auth_code_used("code-1") for _ in range(20)))
        assert results.count(True) == 1
        assert results.count(False) == 19

    @pytest.mark.asyncio
    async def test_expired_code_not_found_and_not_markable(self, storage, clock):
        await storage.save_auth_code(_code(clock, seconds=10))

        clock.advance(9)
        assert await storage.get_auth_code("code-1") is not None
        clock.advance(1)
        assert await storage.get_auth_code("code-1") is None
        assert await storage.mark_auth_code_used("code-1") is False

    @pytest.mark.asyncio
    async def test_delete_code(self, storage, clock):
        await storage.save_auth_code(_code(clock))
        assert await storage.delete_auth_code("code-1") is True
        assert await storage.delete_auth_code("code-1") is False
        assert await storage.get_auth_code("code-1") is None


class TestTokens:
    @pytest.mark.asyncio
    async def test_access_token_lifecycle(self, storage, clock):
        await storage.save_access_token(_access(clock, refresh_token="rt-1"))

        loaded = await storage.get_access_token("at-1")
        assert loaded.client_id == "c1"
        assert loaded.refresh_token == "rt-1"

        assert await storage.delete_access_token("at-1") is True
        assert await storage.get_access_token("at-1") is None

    @pytest.mark.asyncio
    async def test_refresh_token_lifecycle(self, storage, clock):
        await storage.save_refresh_token(_refresh(clock, access_token="at-1"))

        loaded = await storage.get_refresh_token("rt-1")
        assert loaded.access_token == "at-1"

        assert await storage.delete_refresh_token("rt-1") is True
        assert await storage.get_refresh_token("rt-1") is None

    @pytest.mark.asyncio
    async def test_duplicate_token_rejected(self, storage, clock):
        await storage.save_access_token(_access(clock))
        with pytest.raises(DuplicateRecordError):
            await storage.save_access_token(_access(clock))

    @pytest.mark.asyncio
    async def test_expiry_is_an_exclusive_deadline(self, storage, clock):
        await storage.save_access_token(_access(clock, seconds=60))

        clock.advance(59)
        assert await storage.get_access_token("at-1") is not None
        clock.advance(1)
        assert await storage.get_access_token("at-1") is None

    @pytest.mark.asyncio
    async def test_delete_tokens_for_client(self, storage, clock):
        await storage.save_access_token(_access(clock, token="at-1"))
        await storage.save_refresh_token(_refresh(clock, token="rt-1"))
        await storage.save_access_token(_access(clock, token="at-2", client_id="c2"))

        assert await storage.delete_tokens_for_client("c1") == 2
        assert await storage.get_access_token("at-1") is None
        assert await storage.get_refresh_token("rt-1") is None
        assert await storage.get_access_token("at-2") is not None


class TestTransactions:
    @pytest.mark.asyncio
    async def test_commit_applies_all(self, storage, clock):
        async with await storage.begin_transaction() as transaction:
            await transaction.save_access_token(_access(clock, refresh_token="rt-1"))
            await transaction.save_refresh_token(_refresh(clock, access_token="at-1"))
            assert await storage.get_access_token("at-1") is None

        assert transaction.state == "committed"
        assert await storage.get_access_token("at-1") is not None
        assert await storage.get_refresh_token("rt-1") is not None

    @pytest.mark.asyncio
    async def test_exception_rolls_back(self, storage, clock):
        with pytest.raises(RuntimeError):
            async with await storage.begin_transaction() as transaction:
                await transaction.save_access_token(_access(clock))
                raise RuntimeError("boom")

        assert transaction.state == "rolled_back"
        assert await storage.get_access_token("at-1") is None

    @pytest.mark.asyncio
    async def test_duplicate_aborts_whole_transaction(self, storage, clock):
        await storage.save_refresh_token(_refresh(clock))

        transaction = await storage.begin_transaction()
        await transaction.save_access_token(_access(clock))
        await transaction.save_refresh_token(_refresh(clock))
        with pytest.raises(DuplicateRecordError):
            await transaction.commit()

        assert await storage.get_access_token("at-1") is None

    @pytest.mark.asyncio
    async def test_rotation_deletes_and_saves_together(self, storage, clock):
        await storage.save_access_token(_access(clock, token="at-old"))
        await storage.save_refresh_token(_refresh(clock, token="rt-old"))

        async with await storage.begin_transaction() as transaction:
            await transaction.delete_refresh_token("rt-old")
            await transaction.delete_access_token("at-old")
            await transaction.save_access_token(_access(clock, token="at-new"))
            await transaction.save_refresh_token(_refresh(clock, token="rt-new"))

        assert await storage.get_access_token("at-old") is None
        assert await storage.get_refresh_token("rt-old") is None
        assert await storage.get_access_token("at-new") is not None
        assert await storage.get_refresh_token("rt-new") is not None

    @pytest.mark.asyncio
    async def test_refresh_token_consumed_once(self, storage, clock):
        await storage.save_refresh_token(_refresh(clock, token="rt-old"))

        first = await storage.begin_transaction()
        second = await storage.begin_transaction()
        for transaction, suffix in ((first, "a"), (second, "b")):
            await transaction.consume_refresh_token("rt-old")
            await transaction.save_access_token(_access(clock, token=f"at-{suffix}"))
            await transaction.save_refresh_token(_refresh(clock, token=f"rt-{suffix}"))

        await first.commit()
        with pytest.raises(StaleRecordError):
            await second.commit()

        assert second.state == "rolled_back"
        assert await storage.get_refresh_token("rt-old") is None
        assert await storage.get_refresh_token("rt-a") is not None
        assert await storage.get_access_token("at-b") is None
        assert await storage.get_refresh_token("rt-b") is None

    @pytest.mark.asyncio
    async def test_consuming_missing_refresh_token_aborts(self, storage, clock):
        transaction = await storage.begin_transaction()
        await transaction.consume_refresh_token("rt-missing")
        await transaction.save_access_token(_access(clock))
        with pytest.raises(StaleRecordError):
            await transaction.commit()

        assert await storage.get_access_token("at-1") is None

    @pytest.mark.asyncio
    async def test_finished_transaction_rejects_operations(self, storage, clock):
        transaction = await storage.begin_transaction()
        await transaction.rollback()

        with pytest.raises(TransactionStateError):
            await transaction.save_access_token(_access(clock))
        with pytest.raises(TransactionStateError):
            await transaction.commit()


class TestOperations:
    @pytest.mark.asyncio
    async def test_stats_count_records(self, storage, clock):
        await storage.save_client(OAuthClient(client_id="c1", client_secret_hash="h", redirect_uris=["https://a/cb"]))
        await storage.save_auth_code(_code(clock))
        await storage.save_access_token(_access(clock))
        await storage.save_refresh_token(_refresh(clock))

        stats = await storage.get_stats()
        assert stats.clients == 1
        assert stats.authorization_codes == 1
        assert stats.access_tokens == 1
        assert stats.refresh_tokens == 1

    @pytest.mark.asyncio
    async def test_health_check_reports_components(self, storage):
        result = await storage.health_check()
        assert result.components
        assert result.response_time_ms >= 0
        assert "message" in result.details

    @pytest.mark.asyncio
    async def test_cleanup_expired_is_safe_to_repeat(self, storage, clock):
        await storage.save_access_token(_access(clock, seconds=5))
        clock.advance(10)

        await storage.cleanup_expired()
        assert await storage.cleanup_expired() == 0
        assert await storage.get_access_token("at-1") is None
