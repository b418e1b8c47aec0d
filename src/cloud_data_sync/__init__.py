"""
One-way incremental synchronization of objects between storage buckets.

Core components:
- MetadataStore: durable per-object sync records with schema migrations
- SyncEngine: change detection, streaming transfer and deletion per mapping
- SyncDriver: runs the engine over every configured mapping
- StorageBackend: provider abstraction (S3/MinIO, GCS, Azure)
"""

from .backend import ObjectDescriptor, StorageBackend, UploadResult
from .driver import SyncDriver
from .engine import Mapping, MappingResult, MappingStatus, SyncCounts, SyncEngine, mapping_key
from .exceptions import (
    BackendError,
    ClosedError,
    CloudSyncError,
    ConfigurationError,
    MappingError,
    SchemaError,
    StoreError,
    SyncCancelledError,
)
from .metadata_store import MetadataStore, SyncRecord, SyncRecordStatus

__version__ = "0.1.0"

__all__ = [
    "BackendError",
    "ClosedError",
    "CloudSyncError",
    "ConfigurationError",
    "Mapping",
    "MappingError",
    "MappingResult",
    "MappingStatus",
    "MetadataStore",
    "ObjectDescriptor",
    "SchemaError",
    "StorageBackend",
    "StoreError",
    "SyncCancelledError",
    "SyncCounts",
    "SyncDriver",
    "SyncEngine",
    "SyncRecord",
    "SyncRecordStatus",
    "UploadResult",
    "mapping_key",
]
