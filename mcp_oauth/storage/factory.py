# mcp_oauth/storage/factory.py
import logging
from typing import Optional

from ..settings import Settings, settings as global_settings
from .memory_storage import InMemoryOAuthStorage
from .redis_storage import RedisOAuthStorage
from .storage_interfaces import AbstractOAuthStorage, Clock

logger = logging.getLogger(__name__)


def create_oauth_storage(settings: Optional[Settings] = None, clock: Optional[Clock] = None) -> AbstractOAuthStorage:
    """
    Builds the storage backend selected by ``settings.storage_backend``.

    The returned instance is not initialized; the caller owns its lifecycle
    (initialize() / teardown()). A new instance is returned on every call.
    """
    settings = settings or global_settings

    if settings.storage_backend == "memory":
        logger.info("Using InMemoryOAuthStorage for OAuth records.")
        return InMemoryOAuthStorage(clock=clock)

    if settings.storage_backend == "redis":
        logger.info(f"Using RedisOAuthStorage at {settings.redis_host}:{settings.redis_port}/{settings.redis_db}.")
        return RedisOAuthStorage(
            host=settings.redis_host,
            port=settings.redis_port,
            db=settings.redis_db,
            password=settings.redis_password,
            ssl=settings.redis_ssl,
            key_prefix=settings.redis_key_prefix,
            connect_timeout=settings.connect_timeout_seconds,
            operation_timeout=settings.operation_timeout_seconds,
            retry_attempts=settings.retry_attempts,
            retry_base_delay=settings.retry_base_delay_seconds,
            retry_max_delay=settings.retry_max_delay_seconds,
            clock=clock,
        )

    raise ValueError(f"Unsupported storage_backend: {settings.storage_backend}")
