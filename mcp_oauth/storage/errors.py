# mcp_oauth/storage/errors.py


class StorageError(Exception):
    """Base class for infrastructure failures in an OAuth storage backend."""


class StorageNotInitializedError(StorageError):
    """An operation was attempted before initialize() or after teardown()."""


class StorageUnavailableError(StorageError):
    """The backend could not be reached, even after retrying."""


class StorageTimeoutError(StorageUnavailableError):
    """A backend call did not complete within the configured operation timeout."""


class DuplicateRecordError(StorageError):
    """A record with the same identifier already exists."""


class TransactionStateError(StorageError):
    """A transaction was used after it was committed or rolled back."""


class StaleRecordError(StorageError):
    """A record a transaction consumes was removed or replaced before the commit applied."""
