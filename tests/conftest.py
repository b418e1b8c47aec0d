"""
Shared fixtures: an in-memory storage backend with failure injection,
a temporary metadata store and a sample mapping.
"""

import hashlib
import io
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

import pytest

from cloud_data_sync.backend import (
    CancellableStream,
    ObjectDescriptor,
    StorageBackend,
    UploadResult,
    raise_if_cancelled,
)
from cloud_data_sync.engine import Mapping, SyncEngine
from cloud_data_sync.exceptions import BackendError
from cloud_data_sync.metadata_store import MetadataStore


@dataclass
class StoredObject:
    data: bytes
    last_modified: datetime
    etag: str
    content_type: Optional[str] = None


class TrackedStream(io.BytesIO):
    """BytesIO that remembers whether it was closed by the caller."""

    def __init__(self, data: bytes, read_error: Optional[Exception] = None):
        super().__init__(data)
        self.was_closed = False
        self.read_error = read_error

    def read(self, size: int = -1) -> bytes:
        if self.read_error is not None and self.tell() > 0:
            raise self.read_error
        return super().read(size)

    def close(self) -> None:
        self.was_closed = True
        super().close()


class InMemoryBackend(StorageBackend):
    """Thread-safe in-memory StorageBackend with failure injection."""

    provider_type = "memory"

    def __init__(self):
        self.buckets: Dict[str, Dict[str, StoredObject]] = {}
        self.fail_list: Dict[str, BackendError] = {}
        self.fail_get = set()
        self.fail_read: Dict[str, Exception] = {}
        self.fail_upload = set()
        self.fail_delete = set()
        self.fail_ensure = False
        self.on_upload: Optional[Callable[[str], None]] = None
        self.calls: List[tuple] = []
        self.streams: List[TrackedStream] = []
        self.closed = False
        self._lock = threading.Lock()
        self._clock = datetime(2024, 1, 1, tzinfo=timezone.utc)

    # -- test helpers ---------------------------------------------------

    def _tick(self) -> datetime:
        self._clock += timedelta(seconds=1)
        return self._clock

    def put(
        self,
        bucket: str,
        name: str,
        data: bytes = b"content",
        content_type: Optional[str] = "text/plain",
        last_modified: Optional[datetime] = None,
        etag: Optional[str] = None,
    ) -> StoredObject:
        with self._lock:
            obj = StoredObject(
                data=data,
                last_modified=last_modified or self._tick(),
                etag=etag or hashlib.md5(data).hexdigest(),
                content_type=content_type,
            )
            self.buckets.setdefault(bucket, {})[name] = obj
            return obj

    def names(self, bucket: str) -> set:
        return set(self.buckets.get(bucket, {}))

    def calls_for(self, operation: str) -> List[tuple]:
        return [c for c in self.calls if c[0] == operation]

    def _descriptor(self, bucket: str, name: str, obj: StoredObject) -> ObjectDescriptor:
        return ObjectDescriptor(
            name=name,
            bucket=bucket,
            size=len(obj.data),
            last_modified=obj.last_modified,
            etag=obj.etag,
            content_type=obj.content_type,
        )

    def _record(self, *call) -> None:
        with self._lock:
            self.calls.append(call)

    # -- StorageBackend -------------------------------------------------

    def list_objects(self, bucket, cancel_event=None):
        raise_if_cancelled(cancel_event)
        self._record("list_objects", bucket)
        if bucket in self.fail_list:
            raise self.fail_list[bucket]
        with self._lock:
            if bucket not in self.buckets:
                raise BackendError(
                    f"bucket {bucket} not found", operation="list_objects",
                    bucket=bucket, not_found=True,
                )
            return {
                name: self._descriptor(bucket, name, obj)
                for name, obj in self.buckets[bucket].items()
            }

    def get_object(self, bucket, name, cancel_event=None):
        raise_if_cancelled(cancel_event)
        self._record("get_object", bucket, name)
        if name in self.fail_get:
            raise BackendError(f"get {name} failed", operation="get_object", bucket=bucket, key=name)
        with self._lock:
            obj = self.buckets.get(bucket, {}).get(name)
            if obj is None:
                raise BackendError(
                    f"{name} not found", operation="get_object",
                    bucket=bucket, key=name, not_found=True,
                )
            stream = TrackedStream(obj.data, self.fail_read.get(name))
            self.streams.append(stream)
            return self._descriptor(bucket, name, obj), stream

    def upload_object(self, bucket, name, stream, size, content_type=None, cancel_event=None):
        raise_if_cancelled(cancel_event)
        self._record("upload_object", bucket, name)
        if self.on_upload is not None:
            self.on_upload(name)
        if name in self.fail_upload:
            raise BackendError(
                f"upload {name} failed", operation="upload_object", bucket=bucket, key=name
            )

        reader = CancellableStream(stream, cancel_event)
        chunks = []
        while True:
            chunk = reader.read(4)
            if not chunk:
                break
            chunks.append(chunk)
        data = b"".join(chunks)

        with self._lock:
            if bucket not in self.buckets:
                raise BackendError(
                    f"bucket {bucket} not found", operation="upload_object",
                    bucket=bucket, key=name, not_found=True,
                )
            obj = StoredObject(
                data=data,
                last_modified=self._tick(),
                etag=hashlib.md5(data).hexdigest(),
                content_type=content_type,
            )
            self.buckets[bucket][name] = obj
        return UploadResult(bucket=bucket, key=name, etag=obj.etag, size=len(data))

    def delete_object(self, bucket, name, cancel_event=None):
        raise_if_cancelled(cancel_event)
        self._record("delete_object", bucket, name)
        if name in self.fail_delete:
            raise BackendError(
                f"delete {name} failed", operation="delete_object", bucket=bucket, key=name
            )
        with self._lock:
            self.buckets.get(bucket, {}).pop(name, None)

    def bucket_exists(self, bucket, cancel_event=None):
        raise_if_cancelled(cancel_event)
        with self._lock:
            return bucket in self.buckets

    def ensure_bucket_exists(self, bucket, cancel_event=None):
        raise_if_cancelled(cancel_event)
        self._record("ensure_bucket_exists", bucket)
        if self.fail_ensure:
            raise BackendError(
                f"cannot create {bucket}", operation="ensure_bucket_exists", bucket=bucket
            )
        with self._lock:
            self.buckets.setdefault(bucket, {})

    def close(self):
        self.closed = True


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def store(tmp_path):
    """Open a metadata store in a temporary directory."""
    store = MetadataStore.open(tmp_path / "state" / "data.db")
    yield store
    store.close()


@pytest.fixture
def source():
    backend = InMemoryBackend()
    backend.buckets["src-bucket"] = {}
    return backend


@pytest.fixture
def target():
    backend = InMemoryBackend()
    backend.buckets["dst-bucket"] = {}
    return backend


@pytest.fixture
def mapping():
    return Mapping(
        source_provider_id="gcp",
        source_bucket="src-bucket",
        target_provider_id="minio",
        target_bucket="dst-bucket",
    )


@pytest.fixture
def engine(store):
    return SyncEngine(store)


@pytest.fixture
def make_backend():
    """Factory for additional in-memory backends with pre-created buckets."""
    def factory(*buckets):
        backend = InMemoryBackend()
        for bucket in buckets:
            backend.buckets[bucket] = {}
        return backend
    return factory
