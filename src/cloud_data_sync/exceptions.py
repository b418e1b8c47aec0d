"""
Exception hierarchy for cloud data synchronization.

Backends wrap vendor-specific SDK errors into ``BackendError`` so the sync
engine never inspects provider error types. Store failures are reported as
``StoreError`` (or one of its subclasses).
"""

from typing import Optional


class CloudSyncError(Exception):
    """Base exception for all synchronization errors."""

    pass


class ConfigurationError(CloudSyncError):
    """
    Raised when the configuration is invalid or unresolvable.

    Reasons may include:
    - No providers or no mappings configured
    - Duplicate provider IDs
    - A mapping referencing an unknown provider
    - Unknown provider type or missing provider section
    """

    pass


class BackendError(CloudSyncError):
    """
    Raised when an operation against a storage backend fails.

    Attributes:
        operation: Backend operation that failed (e.g. ``list_objects``)
        bucket: Bucket the operation targeted
        key: Object name, if the operation was object-scoped
        not_found: True when the backend reported the bucket/object as absent
        cause: Original vendor exception
    """

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        bucket: Optional[str] = None,
        key: Optional[str] = None,
        not_found: bool = False,
        cause: Optional[BaseException] = None,
    ):
        self.operation = operation
        self.bucket = bucket
        self.key = key
        self.not_found = not_found
        self.cause = cause

        full_message = message
        if cause is not None:
            full_message += f": {cause}"

        super().__init__(full_message)


class StoreError(CloudSyncError):
    """Raised when reading or writing the metadata store fails."""

    pass


class SchemaError(StoreError):
    """
    Raised when a schema migration fails while opening the store.

    The store is left at its pre-migration version.
    """

    def __init__(self, message: str, version: Optional[int] = None):
        self.version = version
        if version is not None:
            message = f"{message} (migration {version})"
        super().__init__(message)


class ClosedError(StoreError):
    """Raised when an operation is attempted on a closed store."""

    pass


class MappingError(CloudSyncError):
    """Raised when a whole mapping cannot be synchronized."""

    def __init__(self, message: str, mapping_key: Optional[str] = None):
        self.mapping_key = mapping_key
        super().__init__(message)


class SyncCancelledError(CloudSyncError):
    """
    Raised when a cancellation was requested during synchronization.

    Attributes:
        result: Partial result of the interrupted mapping, when available
    """

    def __init__(self, message: str = "Synchronization cancelled", result=None):
        self.result = result
        super().__init__(message)
