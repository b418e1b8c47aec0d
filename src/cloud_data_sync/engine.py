"""
Incremental one-way synchronization between two buckets.

Provides:
- Mapping definition and deterministic mapping keys
- Change detection against stored sync records
- Streaming transfers from source to target backend
- Deletion of target objects removed from the source
- Per-mapping result counts
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from .backend import (
    CancellableStream,
    ObjectDescriptor,
    StorageBackend,
    raise_if_cancelled,
    to_utc,
)
from .exceptions import BackendError, MappingError, StoreError, SyncCancelledError
from .metadata_store import MetadataStore, SyncRecord, SyncRecordStatus

logger = logging.getLogger(__name__)


# ============================================================================
# Data Classes
# ============================================================================

@dataclass(frozen=True)
class Mapping:
    """A configured source bucket -> target bucket pairing."""
    source_provider_id: str
    source_bucket: str
    target_provider_id: str
    target_bucket: str

    @property
    def key(self) -> str:
        return mapping_key(self)

    def to_dict(self) -> Dict[str, str]:
        """Convert to dictionary."""
        return {
            "source_provider_id": self.source_provider_id,
            "source_bucket": self.source_bucket,
            "target_provider_id": self.target_provider_id,
            "target_bucket": self.target_bucket,
        }


def mapping_key(mapping: Mapping) -> str:
    """Build the metadata partition key for a mapping."""
    return (
        f"{mapping.source_provider_id}:{mapping.source_bucket}"
        f"->{mapping.target_provider_id}:{mapping.target_bucket}"
    )


class ObjectOutcome(str, Enum):
    """Result of processing one source object."""
    SYNCED = "synced"
    SKIPPED = "skipped"
    FAILED = "failed"


class MappingStatus(str, Enum):
    """Overall result of a mapping run."""
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class SyncCounts:
    """Immutable tally of a sync run; combine partial tallies with ``+``."""
    synced: int = 0
    skipped: int = 0
    errors: int = 0
    removed: int = 0
    delete_errors: int = 0
    pruned: int = 0

    @classmethod
    def for_outcome(cls, outcome: ObjectOutcome) -> "SyncCounts":
        if outcome == ObjectOutcome.SYNCED:
            return cls(synced=1)
        if outcome == ObjectOutcome.SKIPPED:
            return cls(skipped=1)
        return cls(errors=1)

    def __add__(self, other: "SyncCounts") -> "SyncCounts":
        return SyncCounts(
            synced=self.synced + other.synced,
            skipped=self.skipped + other.skipped,
            errors=self.errors + other.errors,
            removed=self.removed + other.removed,
            delete_errors=self.delete_errors + other.delete_errors,
            pruned=self.pruned + other.pruned,
        )

    def to_dict(self) -> Dict[str, int]:
        """Convert to dictionary."""
        return {
            "synced": self.synced,
            "skipped": self.skipped,
            "errors": self.errors,
            "removed": self.removed,
            "delete_errors": self.delete_errors,
            "pruned": self.pruned,
        }


@dataclass
class MappingResult:
    """Observable outcome of synchronizing one mapping."""
    mapping: Mapping
    status: MappingStatus = MappingStatus.SUCCESS
    counts: SyncCounts = field(default_factory=SyncCounts)
    total_source_objects: int = 0
    target_listed: bool = True
    error_message: Optional[str] = None
    start_time: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    duration_seconds: float = 0.0

    @property
    def mapping_key(self) -> str:
        return mapping_key(self.mapping)

    @property
    def succeeded(self) -> bool:
        return self.status == MappingStatus.SUCCESS

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "mapping_key": self.mapping_key,
            "status": self.status.value,
            **self.counts.to_dict(),
            "total_source_objects": self.total_source_objects,
            "target_listed": self.target_listed,
            "error_message": self.error_message,
            "start_time": self.start_time.isoformat(),
            "duration_seconds": self.duration_seconds,
        }


# ============================================================================
# Sync Engine
# ============================================================================

class SyncEngine:
    """Drives one mapping to convergence with its source bucket."""

    def __init__(
        self,
        store: MetadataStore,
        max_workers: int = 1,
        strict_target_listing: bool = False,
    ):
        """
        Initialize sync engine.

        Args:
            store: Metadata store holding per-object sync records
            max_workers: Concurrent object transfers (1 = one at a time)
            strict_target_listing: Abort a mapping when the target bucket
                cannot be listed for any reason other than "not found"
        """
        if max_workers < 1:
            raise ValueError(f"max_workers must be >= 1, got {max_workers}")

        self.store = store
        self.max_workers = max_workers
        self.strict_target_listing = strict_target_listing

    def sync_mapping(
        self,
        mapping: Mapping,
        source: StorageBackend,
        target: StorageBackend,
        cancel_event: Optional[threading.Event] = None,
    ) -> MappingResult:
        """
        Synchronize a single mapping.

        Args:
            mapping: Mapping to synchronize
            source: Backend holding the source bucket
            target: Backend holding the target bucket
            cancel_event: Optional cancellation signal

        Returns:
            MappingResult with counts for the sync and deletion phases

        Raises:
            MappingError: If the source cannot be listed or the target
                bucket cannot be ensured
            SyncCancelledError: If cancellation was requested; carries the
                partial MappingResult
        """
        key = mapping_key(mapping)
        result = MappingResult(mapping=mapping)
        started = time.monotonic()

        try:
            source_objects = self._list_source(mapping, source, cancel_event)
            result.total_source_objects = len(source_objects)

            target_objects, result.target_listed = self._list_target(
                mapping, target, cancel_event
            )

            result.counts = self._sync_objects(
                key, mapping, source, target, source_objects, cancel_event
            )
            logger.info(
                f"[{key}] Object synchronization phase complete: "
                f"synced={result.counts.synced} skipped={result.counts.skipped} "
                f"errors={result.counts.errors} "
                f"total_source_objects={result.total_source_objects}"
            )

            result.counts = result.counts + self._remove_deleted_objects(
                key, mapping, target, source_objects, target_objects, cancel_event
            )
            if result.target_listed:
                result.counts = result.counts + self._prune_stale_records(
                    key, source_objects, target_objects
                )
        except SyncCancelledError as e:
            result.status = MappingStatus.CANCELLED
            result.error_message = str(e)
            if e.result is not None:
                result.counts = result.counts + e.result.counts
            result.duration_seconds = time.monotonic() - started
            logger.warning(f"[{key}] Synchronization cancelled")
            raise SyncCancelledError(str(e), result=result) from e

        result.duration_seconds = time.monotonic() - started
        return result

    # ------------------------------------------------------------------
    # Listing
    # ------------------------------------------------------------------

    def _list_source(
        self,
        mapping: Mapping,
        source: StorageBackend,
        cancel_event: Optional[threading.Event],
    ) -> Dict[str, ObjectDescriptor]:
        key = mapping_key(mapping)
        logger.debug(f"[{key}] Listing objects from source bucket {mapping.source_bucket}")
        try:
            objects = source.list_objects(mapping.source_bucket, cancel_event=cancel_event)
        except BackendError as e:
            logger.error(f"[{key}] Failed to list objects from source bucket: {e}")
            raise MappingError(
                f"Error listing objects from source bucket {mapping.source_bucket}: {e}",
                mapping_key=key,
            ) from e
        logger.debug(f"[{key}] Listed {len(objects)} source objects")
        return objects

    def _list_target(
        self,
        mapping: Mapping,
        target: StorageBackend,
        cancel_event: Optional[threading.Event],
    ):
        """List the target and make sure the bucket exists.

        Returns a (listing, listed) pair; ``listed`` is False when the
        listing failed and the empty listing is a stand-in.
        """
        key = mapping_key(mapping)
        target_objects: Dict[str, ObjectDescriptor] = {}
        listed = True

        logger.debug(f"[{key}] Listing objects from target bucket {mapping.target_bucket}")
        try:
            target_objects = target.list_objects(mapping.target_bucket, cancel_event=cancel_event)
            logger.debug(f"[{key}] Listed {len(target_objects)} target objects")
        except BackendError as e:
            if e.not_found:
                logger.info(f"[{key}] Target bucket {mapping.target_bucket} does not exist yet")
            else:
                listed = False
                if self.strict_target_listing:
                    logger.error(f"[{key}] Target bucket is unreachable: {e}")
                    raise MappingError(
                        f"Error listing objects from target bucket {mapping.target_bucket}: {e}",
                        mapping_key=key,
                    ) from e
                logger.warning(
                    f"[{key}] Failed to list objects from target bucket, "
                    f"continuing with an empty listing: {e}"
                )

        logger.debug(f"[{key}] Ensuring target bucket exists")
        try:
            target.ensure_bucket_exists(mapping.target_bucket, cancel_event=cancel_event)
        except BackendError as e:
            logger.error(f"[{key}] Failed to ensure target bucket exists: {e}")
            raise MappingError(
                f"Error ensuring target bucket {mapping.target_bucket} exists: {e}",
                mapping_key=key,
            ) from e

        return target_objects, listed

    # ------------------------------------------------------------------
    # Sync phase
    # ------------------------------------------------------------------

    def _sync_objects(
        self,
        key: str,
        mapping: Mapping,
        source: StorageBackend,
        target: StorageBackend,
        source_objects: Dict[str, ObjectDescriptor],
        cancel_event: Optional[threading.Event],
    ) -> SyncCounts:
        counts = SyncCounts()

        if self.max_workers == 1:
            for name, descriptor in source_objects.items():
                try:
                    outcome = self._sync_object(
                        key, mapping, source, target, descriptor, cancel_event
                    )
                except SyncCancelledError as e:
                    raise SyncCancelledError(
                        str(e), result=MappingResult(mapping=mapping, counts=counts)
                    ) from e
                counts = counts + SyncCounts.for_outcome(outcome)
            return counts

        cancelled: Optional[SyncCancelledError] = None
        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            futures = {
                executor.submit(
                    self._sync_object, key, mapping, source, target, descriptor, cancel_event
                ): name
                for name, descriptor in source_objects.items()
            }
            for future in as_completed(futures):
                try:
                    outcome = future.result()
                except SyncCancelledError as e:
                    cancelled = e
                    continue
                counts = counts + SyncCounts.for_outcome(outcome)

        if cancelled is not None:
            raise SyncCancelledError(
                str(cancelled), result=MappingResult(mapping=mapping, counts=counts)
            ) from cancelled
        return counts

    def _needs_sync(self, key: str, descriptor: ObjectDescriptor) -> bool:
        try:
            stored = self.store.get(key, descriptor.name)
        except StoreError as e:
            logger.warning(
                f"[{key}] Error fetching metadata for {descriptor.name}, "
                f"proceeding as if object is new/changed: {e}"
            )
            return True

        if stored is None:
            logger.info(f"[{key}] {descriptor.name} not found in metadata, needs sync")
            return True

        if (
            stored.etag == descriptor.etag
            and to_utc(stored.last_modified) == to_utc(descriptor.last_modified)
            and stored.status == SyncRecordStatus.SUCCESS
        ):
            logger.debug(f"[{key}] {descriptor.name} unchanged and last sync succeeded, skipping")
            return False

        logger.info(
            f"[{key}] {descriptor.name} changed or previous sync failed, needs sync "
            f"(stored etag={stored.etag} modified={stored.last_modified.isoformat()} "
            f"status={stored.status.value}; source etag={descriptor.etag} "
            f"modified={descriptor.last_modified.isoformat()})"
        )
        return True

    def _sync_object(
        self,
        key: str,
        mapping: Mapping,
        source: StorageBackend,
        target: StorageBackend,
        descriptor: ObjectDescriptor,
        cancel_event: Optional[threading.Event],
    ) -> ObjectOutcome:
        """Decide on and transfer one object; never raises except on cancellation."""
        raise_if_cancelled(cancel_event)
        name = descriptor.name

        if not self._needs_sync(key, descriptor):
            return ObjectOutcome.SKIPPED

        logger.debug(f"[{key}] Getting {name} from source")
        try:
            source_info, stream = source.get_object(
                mapping.source_bucket, name, cancel_event=cancel_event
            )
        except BackendError as e:
            logger.error(f"[{key}] Error getting {name} from source: {e}")
            self._record(key, descriptor, SyncRecordStatus.FAILED_GET)
            return ObjectOutcome.FAILED

        content_type = source_info.content_type or descriptor.content_type
        reader = CancellableStream(stream, cancel_event)
        try:
            logger.debug(
                f"[{key}] Uploading {name} to target "
                f"({descriptor.size} bytes, {content_type})"
            )
            target.upload_object(
                mapping.target_bucket,
                name,
                reader,
                descriptor.size,
                content_type,
                cancel_event=cancel_event,
            )
        except SyncCancelledError:
            raise
        except Exception as e:
            # Vendor errors from the source stream surface inside the target SDK
            if reader.read_error is not None:
                logger.error(f"[{key}] Error reading {name} from source: {e}")
                status = SyncRecordStatus.FAILED_GET
            elif isinstance(e, BackendError):
                logger.error(f"[{key}] Error uploading {name} to target: {e}")
                status = SyncRecordStatus.FAILED_UPLOAD
            else:
                logger.exception(f"[{key}] Unexpected error uploading {name} to target")
                status = SyncRecordStatus.FAILED_UPLOAD
            self._record(key, descriptor, status, content_type)
            return ObjectOutcome.FAILED
        finally:
            _close_quietly(stream, name)

        logger.info(f"[{key}] Object {name} synchronized successfully")
        self._record(key, descriptor, SyncRecordStatus.SUCCESS, content_type)
        return ObjectOutcome.SYNCED

    def _record(
        self,
        key: str,
        descriptor: ObjectDescriptor,
        status: SyncRecordStatus,
        content_type: Optional[str] = None,
    ) -> None:
        record = SyncRecord(
            mapping_key=key,
            object_name=descriptor.name,
            size=descriptor.size,
            last_modified=descriptor.last_modified,
            etag=descriptor.etag,
            content_type=content_type or descriptor.content_type,
            last_synced_at=datetime.now(timezone.utc),
            status=status,
        )
        logger.debug(f"[{key}] Upserting metadata for {descriptor.name} ({status.value})")
        try:
            self.store.upsert(record)
        except StoreError as e:
            logger.error(f"[{key}] Error updating metadata for {descriptor.name}: {e}")

    # ------------------------------------------------------------------
    # Deletion phase
    # ------------------------------------------------------------------

    def _remove_deleted_objects(
        self,
        key: str,
        mapping: Mapping,
        target: StorageBackend,
        source_objects: Dict[str, ObjectDescriptor],
        target_objects: Dict[str, ObjectDescriptor],
        cancel_event: Optional[threading.Event],
    ) -> SyncCounts:
        """Delete target objects whose source counterpart is gone."""
        logger.info(f"[{key}] Checking for objects to remove from target")
        removed = 0
        errors = 0

        for name in target_objects:
            if name in source_objects:
                continue
            try:
                raise_if_cancelled(cancel_event)
            except SyncCancelledError as e:
                partial = SyncCounts(removed=removed, delete_errors=errors)
                raise SyncCancelledError(
                    str(e), result=MappingResult(mapping=mapping, counts=partial)
                ) from e

            logger.info(f"[{key}] Removing {name} from target (deleted from source)")
            try:
                target.delete_object(mapping.target_bucket, name, cancel_event=cancel_event)
            except SyncCancelledError:
                raise
            except BackendError as e:
                logger.error(f"[{key}] Error removing {name} from target: {e}")
                errors += 1
                continue
            except Exception:
                logger.exception(f"[{key}] Unexpected error removing {name} from target")
                errors += 1
                continue

            try:
                self.store.delete(key, name)
            except StoreError as e:
                logger.error(f"[{key}] Error removing metadata for {name}: {e}")
            removed += 1

        logger.info(f"[{key}] Object removal phase complete: removed={removed} errors={errors}")
        return SyncCounts(removed=removed, delete_errors=errors)

    def _prune_stale_records(
        self,
        key: str,
        source_objects: Dict[str, ObjectDescriptor],
        target_objects: Dict[str, ObjectDescriptor],
    ) -> SyncCounts:
        """Drop records for objects absent from both the source and the target."""
        try:
            records = self.store.list_by_mapping(key)
        except StoreError as e:
            logger.warning(f"[{key}] Cannot list metadata for pruning: {e}")
            return SyncCounts()

        pruned = 0
        for record in records:
            name = record.object_name
            if name in source_objects or name in target_objects:
                continue
            try:
                self.store.delete(key, name)
            except StoreError as e:
                logger.warning(f"[{key}] Cannot prune metadata for {name}: {e}")
                continue
            logger.debug(f"[{key}] Pruned stale metadata for {name} ({record.status.value})")
            pruned += 1

        if pruned:
            logger.info(f"[{key}] Pruned {pruned} stale metadata records")
        return SyncCounts(pruned=pruned)


def _close_quietly(stream, name: str) -> None:
    close = getattr(stream, "close", None)
    if close is None:
        return
    try:
        close()
    except Exception as e:
        logger.warning(f"Error closing source stream for {name}: {e}")
