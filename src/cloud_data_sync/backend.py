"""
Storage backend abstraction.

Provides:
- Abstract interface implemented by every storage provider
- Object descriptors produced by bucket listings
- Cancellation helpers shared by all providers
"""

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, BinaryIO, Dict, Optional, Tuple

from .exceptions import SyncCancelledError

logger = logging.getLogger(__name__)


def to_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize a timestamp to timezone-aware UTC (naive values are taken as UTC)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def raise_if_cancelled(cancel_event: Optional[threading.Event]) -> None:
    """Raise SyncCancelledError if the cancellation event is set."""
    if cancel_event is not None and cancel_event.is_set():
        raise SyncCancelledError()


@dataclass
class ObjectDescriptor:
    """Live listing of an object in a bucket."""
    name: str
    bucket: str
    size: int
    last_modified: datetime
    etag: str = ""
    content_type: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)

    def __post_init__(self):
        self.last_modified = to_utc(self.last_modified)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "name": self.name,
            "bucket": self.bucket,
            "size": self.size,
            "last_modified": self.last_modified.isoformat(),
            "etag": self.etag,
            "content_type": self.content_type,
            "metadata": dict(self.metadata),
        }


@dataclass
class UploadResult:
    """Outcome of a successful upload."""
    bucket: str
    key: str
    etag: str = ""
    size: int = 0


class CancellableStream:
    """
    File-like wrapper that aborts reads once cancellation is requested.

    Providers hand this to their SDK upload call, so a transfer in progress
    fails with SyncCancelledError instead of completing after shutdown.
    An error raised by the wrapped stream is kept in read_error so a
    caller can tell a failing source apart from a failing upload.
    """

    def __init__(self, stream: BinaryIO, cancel_event: Optional[threading.Event] = None):
        self._stream = stream
        self._cancel_event = cancel_event
        self.bytes_read = 0
        self.read_error: Optional[Exception] = None

    def read(self, size: int = -1) -> bytes:
        raise_if_cancelled(self._cancel_event)
        try:
            chunk = self._stream.read(size)
        except SyncCancelledError:
            raise
        except Exception as e:
            self.read_error = e
            raise
        self.bytes_read += len(chunk)
        return chunk

    def readable(self) -> bool:
        return True

    def seekable(self) -> bool:
        return False

    def tell(self) -> int:
        return self.bytes_read

    def close(self) -> None:
        close = getattr(self._stream, "close", None)
        if close is not None:
            close()


class StorageBackend(ABC):
    """
    Abstract base class for object storage providers.

    Every operation accepts an optional cancellation event and raises
    BackendError (wrapping the vendor exception) on failure.
    """

    provider_type: str = "abstract"

    @abstractmethod
    def list_objects(
        self,
        bucket: str,
        cancel_event: Optional[threading.Event] = None,
    ) -> Dict[str, ObjectDescriptor]:
        """
        List all objects in a bucket.

        Args:
            bucket: Bucket (or container) name
            cancel_event: Optional cancellation signal

        Returns:
            Mapping of object name to ObjectDescriptor
        """
        pass

    @abstractmethod
    def get_object(
        self,
        bucket: str,
        name: str,
        cancel_event: Optional[threading.Event] = None,
    ) -> Tuple[ObjectDescriptor, BinaryIO]:
        """
        Open an object for streaming.

        Returns:
            Tuple of (ObjectDescriptor, readable byte stream). The caller
            must close the stream.
        """
        pass

    @abstractmethod
    def upload_object(
        self,
        bucket: str,
        name: str,
        stream: BinaryIO,
        size: int,
        content_type: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> UploadResult:
        """
        Upload an object from a byte stream.

        Args:
            bucket: Destination bucket
            name: Destination object name
            stream: Readable byte stream, consumed without full buffering
            size: Number of bytes expected from the stream
            content_type: MIME type to store with the object
            cancel_event: Optional cancellation signal

        Returns:
            UploadResult describing the stored object
        """
        pass

    @abstractmethod
    def delete_object(
        self,
        bucket: str,
        name: str,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        """Delete an object from a bucket."""
        pass

    @abstractmethod
    def bucket_exists(
        self,
        bucket: str,
        cancel_event: Optional[threading.Event] = None,
    ) -> bool:
        """Check whether a bucket exists."""
        pass

    @abstractmethod
    def ensure_bucket_exists(
        self,
        bucket: str,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        """Create the bucket if it does not exist."""
        pass

    @abstractmethod
    def close(self) -> None:
        """Release client resources."""
        pass
