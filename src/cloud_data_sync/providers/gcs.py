"""
Google Cloud Storage (GCS) backend.

Features:
- Integration with GCS buckets
- Streaming reads (BlobReader) and streaming uploads
- NotFound errors normalized to BackendError(not_found=True)
"""

import logging
import threading
from typing import BinaryIO, Dict, Optional, Tuple

from ..backend import (
    CancellableStream,
    ObjectDescriptor,
    StorageBackend,
    UploadResult,
    raise_if_cancelled,
)
from ..exceptions import BackendError

logger = logging.getLogger(__name__)

try:
    from google.cloud import storage
    from google.api_core.exceptions import Conflict, GoogleAPIError, NotFound
    HAS_GCS = True
except ImportError:
    HAS_GCS = False
    logger.warning("google-cloud-storage not installed. GCS provider will not be available.")


class GCSBackend(StorageBackend):
    """Google Cloud Storage implementation of StorageBackend."""

    provider_type = "gcs"

    DEFAULT_CHUNK_SIZE = 5 * 1024 * 1024  # 5 MB

    def __init__(
        self,
        project_id: Optional[str] = None,
        credentials_path: Optional[str] = None,
    ):
        """
        Initialize GCS storage backend.

        Args:
            project_id: Google Cloud project ID
            credentials_path: Path to service account JSON (uses ADC if not provided)

        Raises:
            ImportError: If google-cloud-storage is not installed
        """
        if not HAS_GCS:
            raise ImportError(
                "google-cloud-storage is required for GCS support. "
                "Install with: pip install google-cloud-storage"
            )

        self.project_id = project_id
        if credentials_path:
            self._client = storage.Client.from_service_account_json(
                credentials_path,
                project=project_id,
            )
        else:
            self._client = storage.Client(project=project_id)

        logger.info(f"Initialized GCS backend (project={project_id or 'default'})")

    def _wrap(
        self,
        error: Exception,
        operation: str,
        bucket: str,
        key: Optional[str] = None,
    ) -> BackendError:
        location = f"gs://{bucket}/{key}" if key else f"gs://{bucket}"
        logger.debug(f"GCS {operation} failed for {location}: {error}")
        return BackendError(
            f"GCS {operation} failed for {location}",
            operation=operation,
            bucket=bucket,
            key=key,
            not_found=isinstance(error, NotFound),
            cause=error,
        )

    def list_objects(
        self,
        bucket: str,
        cancel_event: Optional[threading.Event] = None,
    ) -> Dict[str, ObjectDescriptor]:
        """List all blobs in a GCS bucket."""
        raise_if_cancelled(cancel_event)
        logger.debug(f"Listing objects in gs://{bucket}")

        objects = {}
        try:
            for blob in self._client.list_blobs(bucket):
                # Skip directory placeholders
                if blob.name.endswith("/"):
                    continue
                objects[blob.name] = ObjectDescriptor(
                    name=blob.name,
                    bucket=bucket,
                    size=blob.size or 0,
                    last_modified=blob.updated,
                    etag=blob.etag or "",
                    content_type=blob.content_type,
                    metadata=dict(blob.metadata or {}),
                )
        except GoogleAPIError as e:
            raise self._wrap(e, "list_objects", bucket) from e

        logger.debug(f"Found {len(objects)} objects in gs://{bucket}")
        return objects

    def get_object(
        self,
        bucket: str,
        name: str,
        cancel_event: Optional[threading.Event] = None,
    ) -> Tuple[ObjectDescriptor, BinaryIO]:
        """Open a GCS blob for streaming reads."""
        raise_if_cancelled(cancel_event)
        try:
            blob = self._client.bucket(bucket).get_blob(name)
            if blob is None:
                raise BackendError(
                    f"GCS object gs://{bucket}/{name} not found",
                    operation="get_object",
                    bucket=bucket,
                    key=name,
                    not_found=True,
                )
            reader = blob.open("rb", chunk_size=self.DEFAULT_CHUNK_SIZE)
        except GoogleAPIError as e:
            raise self._wrap(e, "get_object", bucket, name) from e

        descriptor = ObjectDescriptor(
            name=blob.name,
            bucket=bucket,
            size=blob.size or 0,
            last_modified=blob.updated,
            etag=blob.etag or "",
            content_type=blob.content_type,
            metadata=dict(blob.metadata or {}),
        )
        return descriptor, reader

    def upload_object(
        self,
        bucket: str,
        name: str,
        stream: BinaryIO,
        size: int,
        content_type: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> UploadResult:
        """Stream an object into a GCS bucket."""
        raise_if_cancelled(cancel_event)
        logger.debug(f"Uploading gs://{bucket}/{name} ({size} bytes)")

        try:
            blob = self._client.bucket(bucket).blob(name, chunk_size=self.DEFAULT_CHUNK_SIZE)
            blob.upload_from_file(
                CancellableStream(stream, cancel_event),
                size=size,
                content_type=content_type,
                rewind=False,
            )
        except GoogleAPIError as e:
            raise self._wrap(e, "upload_object", bucket, name) from e

        logger.debug(f"Uploaded gs://{bucket}/{name} (ETag: {blob.etag})")
        return UploadResult(
            bucket=bucket,
            key=name,
            etag=blob.etag or "",
            size=blob.size if blob.size is not None else size,
        )

    def delete_object(
        self,
        bucket: str,
        name: str,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        """Delete a blob; an already missing blob counts as deleted."""
        raise_if_cancelled(cancel_event)
        try:
            self._client.bucket(bucket).blob(name).delete()
        except NotFound:
            logger.debug(f"gs://{bucket}/{name} already absent")
            return
        except GoogleAPIError as e:
            raise self._wrap(e, "delete_object", bucket, name) from e
        logger.debug(f"Deleted gs://{bucket}/{name}")

    def bucket_exists(
        self,
        bucket: str,
        cancel_event: Optional[threading.Event] = None,
    ) -> bool:
        """Check whether a GCS bucket exists."""
        raise_if_cancelled(cancel_event)
        try:
            return self._client.bucket(bucket).exists()
        except GoogleAPIError as e:
            raise self._wrap(e, "bucket_exists", bucket) from e

    def ensure_bucket_exists(
        self,
        bucket: str,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        """Create the GCS bucket if it does not exist."""
        if self.bucket_exists(bucket, cancel_event=cancel_event):
            return

        raise_if_cancelled(cancel_event)
        logger.info(f"Creating GCS bucket: {bucket}")
        try:
            self._client.create_bucket(bucket, project=self.project_id)
        except Conflict:
            # Created concurrently
            return
        except GoogleAPIError as e:
            raise self._wrap(e, "ensure_bucket_exists", bucket) from e

    def close(self) -> None:
        """Close the GCS client."""
        self._client.close()
        logger.debug("Closed GCS backend")
