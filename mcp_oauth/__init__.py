# mcp_oauth/__init__.py
# Embeddable OAuth 2.1 authorization server: provider logic and storage backends.

from typing import Optional

from .settings import Settings, settings as global_settings
from .oauth.provider import PlexusAuthorizationProvider
from .storage.storage_interfaces import AbstractOAuthStorage, Clock
from .storage.factory import create_oauth_storage
from .utils.security import ClientSecretHasher


def create_oauth_provider(
    settings: Optional[Settings] = None,
    storage: Optional[AbstractOAuthStorage] = None,
    clock: Optional[Clock] = None,
) -> PlexusAuthorizationProvider:
    """
    Wires a provider from settings: storage backend, configured clients,
    credential lifetimes, bcrypt cost and the expired record
    cleanup interval.

    Call ``await provider.initialize()`` before serving requests.
    """
    settings = settings or global_settings
    storage = storage or create_oauth_storage(settings, clock=clock)
    return PlexusAuthorizationProvider(
        storage=storage,
        clients=settings.clients,
        access_token_lifetime_seconds=settings.access_token_lifetime_seconds,
        refresh_token_lifetime_seconds=settings.refresh_token_lifetime_seconds,
        auth_code_lifetime_seconds=settings.auth_code_lifetime_seconds,
        hasher=ClientSecretHasher(rounds=settings.bcrypt_rounds),
        clock=clock,
        cleanup_interval_seconds=settings.cleanup_interval_seconds,
    )


__all__ = [
    "Settings",
    "global_settings",
    "PlexusAuthorizationProvider",
    "create_oauth_storage",
    "create_oauth_provider",
]
