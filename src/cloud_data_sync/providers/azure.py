"""
Azure Blob Storage backend.

Features:
- Connection string or account name/key authentication
- Chunked streaming downloads and uploads
- Containers play the role of buckets
"""

import logging
import threading
from typing import BinaryIO, Dict, Iterator, Optional, Tuple

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
    from azure.storage.blob import BlobServiceClient, ContentSettings
    from azure.core.exceptions import AzureError, ResourceExistsError, ResourceNotFoundError
    HAS_AZURE = True
except ImportError:
    HAS_AZURE = False
    logger.warning("azure-storage-blob not installed. Azure provider will not be available.")


class _ChunkReader:
    """Read-only file-like view over a downloader's chunk iterator."""

    def __init__(self, chunks: Iterator[bytes]):
        self._chunks = chunks
        self._buffer = b""
        self._exhausted = False

    def read(self, size: int = -1) -> bytes:
        while not self._exhausted and (size < 0 or len(self._buffer) < size):
            try:
                self._buffer += next(self._chunks)
            except StopIteration:
                self._exhausted = True

        if size < 0:
            data, self._buffer = self._buffer, b""
        else:
            data, self._buffer = self._buffer[:size], self._buffer[size:]
        return data

    def close(self) -> None:
        self._buffer = b""
        self._exhausted = True


class AzureBlobBackend(StorageBackend):
    """Azure Blob Storage implementation of StorageBackend."""

    provider_type = "azure"

    def __init__(
        self,
        account_name: Optional[str] = None,
        account_key: Optional[str] = None,
        endpoint_url: Optional[str] = None,
        connection_string: Optional[str] = None,
    ):
        """
        Initialize Azure Blob Storage backend.

        Args:
            account_name: Storage account name
            account_key: Storage account key
            endpoint_url: Custom account URL (e.g. Azurite)
            connection_string: Connection string (preferred when given)

        Raises:
            ImportError: If azure-storage-blob is not installed
            ValueError: If neither connection_string nor account credentials provided
        """
        if not HAS_AZURE:
            raise ImportError(
                "azure-storage-blob is required for Azure support. "
                "Install with: pip install azure-storage-blob"
            )

        if not connection_string and not (account_name and account_key):
            raise ValueError("Provide either connection_string or account_name/account_key")

        if connection_string:
            self._client = BlobServiceClient.from_connection_string(connection_string)
        else:
            account_url = endpoint_url or f"https://{account_name}.blob.core.windows.net"
            self._client = BlobServiceClient(
                account_url=account_url,
                credential={"account_name": account_name, "account_key": account_key},
            )

        logger.info(f"Initialized Azure backend (account={self._client.account_name})")

    def _wrap(
        self,
        error: Exception,
        operation: str,
        container: str,
        key: Optional[str] = None,
    ) -> BackendError:
        location = f"{container}/{key}" if key else container
        logger.debug(f"Azure {operation} failed for {location}: {error}")
        return BackendError(
            f"Azure {operation} failed for {location}",
            operation=operation,
            bucket=container,
            key=key,
            not_found=isinstance(error, ResourceNotFoundError),
            cause=error,
        )

    def list_objects(
        self,
        bucket: str,
        cancel_event: Optional[threading.Event] = None,
    ) -> Dict[str, ObjectDescriptor]:
        """List all blobs in a container."""
        raise_if_cancelled(cancel_event)
        logger.debug(f"Listing blobs in container {bucket}")

        objects = {}
        try:
            container = self._client.get_container_client(bucket)
            for blob in container.list_blobs(include=["metadata"]):
                # Skip directory placeholders
                if blob.name.endswith("/"):
                    continue
                content_settings = blob.content_settings
                objects[blob.name] = ObjectDescriptor(
                    name=blob.name,
                    bucket=bucket,
                    size=blob.size,
                    last_modified=blob.last_modified,
                    etag=(blob.etag or "").strip('"'),
                    content_type=content_settings.content_type if content_settings else None,
                    metadata=dict(blob.metadata or {}),
                )
        except AzureError as e:
            raise self._wrap(e, "list_objects", bucket) from e

        logger.debug(f"Found {len(objects)} blobs in container {bucket}")
        return objects

    def get_object(
        self,
        bucket: str,
        name: str,
        cancel_event: Optional[threading.Event] = None,
    ) -> Tuple[ObjectDescriptor, BinaryIO]:
        """Open a blob as a chunked stream."""
        raise_if_cancelled(cancel_event)
        try:
            downloader = self._client.get_blob_client(bucket, name).download_blob()
        except AzureError as e:
            raise self._wrap(e, "get_object", bucket, name) from e

        properties = downloader.properties
        content_settings = properties.content_settings
        descriptor = ObjectDescriptor(
            name=name,
            bucket=bucket,
            size=properties.size,
            last_modified=properties.last_modified,
            etag=(properties.etag or "").strip('"'),
            content_type=content_settings.content_type if content_settings else None,
            metadata=dict(properties.metadata or {}),
        )
        return descriptor, _ChunkReader(downloader.chunks())

    def upload_object(
        self,
        bucket: str,
        name: str,
        stream: BinaryIO,
        size: int,
        content_type: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> UploadResult:
        """Stream an object into a container, overwriting any existing blob."""
        raise_if_cancelled(cancel_event)
        logger.debug(f"Uploading {bucket}/{name} ({size} bytes)")

        try:
            response = self._client.get_blob_client(bucket, name).upload_blob(
                CancellableStream(stream, cancel_event),
                length=size,
                overwrite=True,
                content_settings=ContentSettings(content_type=content_type),
            )
        except AzureError as e:
            raise self._wrap(e, "upload_object", bucket, name) from e

        etag = (response.get("etag") or "").strip('"')
        logger.debug(f"Uploaded {bucket}/{name} (ETag: {etag})")
        return UploadResult(bucket=bucket, key=name, etag=etag, size=size)

    def delete_object(
        self,
        bucket: str,
        name: str,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        """Delete a blob; an already missing blob counts as deleted."""
        raise_if_cancelled(cancel_event)
        try:
            self._client.get_blob_client(bucket, name).delete_blob()
        except ResourceNotFoundError:
            logger.debug(f"{bucket}/{name} already absent")
            return
        except AzureError as e:
            raise self._wrap(e, "delete_object", bucket, name) from e
        logger.debug(f"Deleted {bucket}/{name}")

    def bucket_exists(
        self,
        bucket: str,
        cancel_event: Optional[threading.Event] = None,
    ) -> bool:
        """Check whether a container exists."""
        raise_if_cancelled(cancel_event)
        try:
            return self._client.get_container_client(bucket).exists()
        except AzureError as e:
            raise self._wrap(e, "bucket_exists", bucket) from e

    def ensure_bucket_exists(
        self,
        bucket: str,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        """Create the container if it does not exist."""
        if self.bucket_exists(bucket, cancel_event=cancel_event):
            return

        raise_if_cancelled(cancel_event)
        logger.info(f"Creating Azure container: {bucket}")
        try:
            self._client.create_container(bucket)
        except ResourceExistsError:
            return
        except AzureError as e:
            raise self._wrap(e, "ensure_bucket_exists", bucket) from e

    def close(self) -> None:
        """Close the Azure service client."""
        self._client.close()
        logger.debug("Closed Azure backend")
