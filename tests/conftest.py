# Shared fixtures for the OAuth provider and storage tests.

from datetime import datetime, timedelta, timezone

import fakeredis
import pytest

from mcp_oauth.oauth.models import OAuthClientConfig
from mcp_oauth.oauth.pkce import generate_pkce_code_challenge, generate_pkce_code_verifier
from mcp_oauth.oauth.provider import PlexusAuthorizationProvider
from mcp_oauth.storage.memory_storage import InMemoryOAuthStorage
from mcp_oauth.storage.redis_storage import RedisOAuthStorage
from mcp_oauth.utils.security import ClientSecretHasher

CLIENT_ID = "c1"
CLIENT_SECRET = "s3cret-for-c1"
REDIRECT_URI = "https://app/cb"


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)


def make_pkce_pair():
    verifier = generate_pkce_code_verifier()
    return verifier, generate_pkce_code_challenge(verifier)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
async def memory_storage(clock):
    storage = InMemoryOAuthStorage(clock=clock)
    await storage.initialize()
    yield storage
    await storage.teardown()


@pytest.fixture
async def redis_client():
    client = fakeredis.FakeAsyncRedis()
    await client.flushall()
    yield client
    await client.flushall()
    await client.aclose()


@pytest.fixture
async def redis_storage(clock, redis_client):
    storage = RedisOAuthStorage(
        redis_client=redis_client,
        clock=clock,
        retry_attempts=2,
        retry_base_delay=0.001,
        retry_max_delay=0.01,
    )
    await storage.initialize()
    yield storage
    await storage.teardown()


@pytest.fixture(params=["memory", "redis"])
async def storage(request, clock):
    """Each storage contract test runs against both backends."""
    if request.param == "memory":
        backend = InMemoryOAuthStorage(clock=clock)
        redis_client = None
    else:
        redis_client = fakeredis.FakeAsyncRedis()
        await redis_client.flushall()
        backend = RedisOAuthStorage(redis_client=redis_client, clock=clock)
    await backend.initialize()
    yield backend
    await backend.teardown()
    if redis_client is not None:
        await redis_client.flushall()
        await redis_client.aclose()


@pytest.fixture
def client_configs():
    return [
        OAuthClientConfig(
            client_id=CLIENT_ID,
            client_secret=CLIENT_SECRET,
            redirect_uris=[REDIRECT_URI],
            scopes=["read", "write"],
        ),
        OAuthClientConfig(
            client_id="c2",
            client_secret="other-secret",
            redirect_uris=["https://other/cb"],
            scopes=["read"],
        ),
    ]


@pytest.fixture
async def provider(storage, client_configs, clock):
    oauth_provider = PlexusAuthorizationProvider(
        storage=storage,
        clients=client_configs,
        hasher=ClientSecretHasher(rounds=4),
        clock=clock,
    )
    await oauth_provider.initialize()
    return oauth_provider
