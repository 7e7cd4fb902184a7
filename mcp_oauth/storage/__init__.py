# mcp_oauth/storage/__init__.py
# Storage backends for OAuth clients, authorization codes and tokens.
# The settings-driven factory lives in .factory and is imported by the package root.

from .errors import (
    StorageError,
    StorageNotInitializedError,
    StorageUnavailableError,
    StorageTimeoutError,
    DuplicateRecordError,
    TransactionStateError,
    StaleRecordError,
)
from .storage_interfaces import AbstractOAuthStorage, AbstractStorageTransaction, Clock
from .memory_storage import InMemoryOAuthStorage, InMemoryStorageTransaction
from .redis_storage import RedisOAuthStorage, RedisStorageTransaction
from .cleanup import ExpiredRecordCleaner

__all__ = [
    "StorageError",
    "StorageNotInitializedError",
    "StorageUnavailableError",
    "StorageTimeoutError",
    "DuplicateRecordError",
    "TransactionStateError",
    "StaleRecordError",
    "AbstractOAuthStorage",
    "AbstractStorageTransaction",
    "Clock",
    "InMemoryOAuthStorage",
    "InMemoryStorageTransaction",
    "RedisOAuthStorage",
    "RedisStorageTransaction",
    "ExpiredRecordCleaner",
]
