"""
AWS S3 storage backend.

Features:
- AWS S3 and S3-compatible endpoints (MinIO) through boto3
- Streaming transfers via managed uploads (multipart for large objects)
- Configurable storage class for uploaded objects
- Vendor error codes normalized to BackendError
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
    import boto3
    from boto3.s3.transfer import TransferConfig
    from botocore.config import Config
    from botocore.exceptions import BotoCoreError, ClientError
    HAS_BOTO3 = True
except ImportError:
    HAS_BOTO3 = False
    logger.warning("boto3 not installed. S3 provider will not be available.")


_NOT_FOUND_CODES = {"404", "NoSuchBucket", "NoSuchKey", "NotFound"}


def _error_code(error: Exception) -> Optional[str]:
    if HAS_BOTO3 and isinstance(error, ClientError):
        return error.response.get("Error", {}).get("Code")
    return None


class S3Backend(StorageBackend):
    """AWS S3 (and S3-compatible) implementation of StorageBackend."""

    provider_type = "aws"

    # Multipart chunk size (5 MB minimum for S3)
    DEFAULT_CHUNK_SIZE = 5 * 1024 * 1024

    VALID_STORAGE_CLASSES = {"STANDARD", "STANDARD_IA", "GLACIER", "DEEP_ARCHIVE"}

    def __init__(
        self,
        region: str = "us-east-1",
        access_key_id: Optional[str] = None,
        secret_access_key: Optional[str] = None,
        endpoint: Optional[str] = None,
        disable_ssl: bool = False,
        storage_class: Optional[str] = None,
        provider_type: str = "aws",
    ):
        """
        Initialize S3 storage backend.

        Args:
            region: AWS region
            access_key_id: AWS access key (uses default chain if not provided)
            secret_access_key: AWS secret key (uses default chain if not provided)
            endpoint: Custom endpoint for S3-compatible services
            disable_ssl: Use plain HTTP when the endpoint has no scheme
            storage_class: Storage class applied to uploads
            provider_type: Provider type reported in logs ("aws" or "minio")

        Raises:
            ImportError: If boto3 is not installed
            ValueError: If storage class is invalid
        """
        if not HAS_BOTO3:
            raise ImportError("boto3 is required for S3 support. Install with: pip install boto3")

        if storage_class and storage_class not in self.VALID_STORAGE_CLASSES:
            raise ValueError(f"Invalid storage class: {storage_class}")

        self.region = region or "us-east-1"
        self.endpoint_url = self._endpoint_url(endpoint, disable_ssl)
        self.storage_class = storage_class
        self.provider_type = provider_type

        session_kwargs = {"region_name": self.region}
        if access_key_id and secret_access_key:
            session_kwargs["aws_access_key_id"] = access_key_id
            session_kwargs["aws_secret_access_key"] = secret_access_key
        session = boto3.Session(**session_kwargs)

        s3_options = {}
        if self.endpoint_url:
            # Required by most S3-compatible services
            s3_options["addressing_style"] = "path"

        config = Config(
            retries={"max_attempts": 3, "mode": "adaptive"},
            max_pool_connections=10,
            s3=s3_options or None,
        )
        self._client = session.client("s3", endpoint_url=self.endpoint_url, config=config)
        self._transfer_config = TransferConfig(
            multipart_threshold=self.DEFAULT_CHUNK_SIZE,
            multipart_chunksize=self.DEFAULT_CHUNK_SIZE,
        )

        logger.info(
            f"Initialized {self.provider_type} backend "
            f"(region={self.region}, endpoint={self.endpoint_url or 'default'})"
        )

    @staticmethod
    def _endpoint_url(endpoint: Optional[str], disable_ssl: bool) -> Optional[str]:
        if not endpoint:
            return None
        if "://" in endpoint:
            return endpoint
        scheme = "http" if disable_ssl else "https"
        return f"{scheme}://{endpoint}"

    def _wrap(
        self,
        error: Exception,
        operation: str,
        bucket: str,
        key: Optional[str] = None,
    ) -> BackendError:
        location = f"s3://{bucket}/{key}" if key else f"s3://{bucket}"
        logger.debug(f"S3 {operation} failed for {location}: {error}")
        return BackendError(
            f"S3 {operation} failed for {location}",
            operation=operation,
            bucket=bucket,
            key=key,
            not_found=_error_code(error) in _NOT_FOUND_CODES,
            cause=error,
        )

    def list_objects(
        self,
        bucket: str,
        cancel_event: Optional[threading.Event] = None,
    ) -> Dict[str, ObjectDescriptor]:
        """List all objects in an S3 bucket."""
        raise_if_cancelled(cancel_event)
        logger.debug(f"Listing objects in s3://{bucket}")

        objects = {}
        paginator = self._client.get_paginator("list_objects_v2")
        try:
            for page in paginator.paginate(Bucket=bucket):
                raise_if_cancelled(cancel_event)
                for obj in page.get("Contents", []):
                    # Skip directory placeholders
                    if obj["Key"].endswith("/"):
                        continue
                    objects[obj["Key"]] = ObjectDescriptor(
                        name=obj["Key"],
                        bucket=bucket,
                        size=obj["Size"],
                        last_modified=obj["LastModified"],
                        etag=obj.get("ETag", "").strip('"'),
                    )
        except (ClientError, BotoCoreError) as e:
            raise self._wrap(e, "list_objects", bucket) from e

        logger.debug(f"Found {len(objects)} objects in s3://{bucket}")
        return objects

    def get_object(
        self,
        bucket: str,
        name: str,
        cancel_event: Optional[threading.Event] = None,
    ) -> Tuple[ObjectDescriptor, BinaryIO]:
        """Open an S3 object as a streaming body."""
        raise_if_cancelled(cancel_event)
        try:
            response = self._client.get_object(Bucket=bucket, Key=name)
        except (ClientError, BotoCoreError) as e:
            raise self._wrap(e, "get_object", bucket, name) from e

        descriptor = ObjectDescriptor(
            name=name,
            bucket=bucket,
            size=response["ContentLength"],
            last_modified=response["LastModified"],
            etag=response.get("ETag", "").strip('"'),
            content_type=response.get("ContentType"),
            metadata=response.get("Metadata") or {},
        )
        return descriptor, response["Body"]

    def upload_object(
        self,
        bucket: str,
        name: str,
        stream: BinaryIO,
        size: int,
        content_type: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> UploadResult:
        """Stream an object into S3 (multipart above the chunk size)."""
        raise_if_cancelled(cancel_event)
        logger.debug(f"Uploading s3://{bucket}/{name} ({size} bytes)")

        extra_args = {}
        if content_type:
            extra_args["ContentType"] = content_type
        if self.storage_class:
            extra_args["StorageClass"] = self.storage_class

        try:
            self._client.upload_fileobj(
                CancellableStream(stream, cancel_event),
                Bucket=bucket,
                Key=name,
                ExtraArgs=extra_args or None,
                Config=self._transfer_config,
            )
            head = self._client.head_object(Bucket=bucket, Key=name)
        except (ClientError, BotoCoreError) as e:
            raise self._wrap(e, "upload_object", bucket, name) from e

        etag = head.get("ETag", "").strip('"')
        logger.debug(f"Uploaded s3://{bucket}/{name} (ETag: {etag})")
        return UploadResult(
            bucket=bucket,
            key=name,
            etag=etag,
            size=head.get("ContentLength", size),
        )

    def delete_object(
        self,
        bucket: str,
        name: str,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        """Delete an object from S3."""
        raise_if_cancelled(cancel_event)
        try:
            self._client.delete_object(Bucket=bucket, Key=name)
        except (ClientError, BotoCoreError) as e:
            raise self._wrap(e, "delete_object", bucket, name) from e
        logger.debug(f"Deleted s3://{bucket}/{name}")

    def bucket_exists(
        self,
        bucket: str,
        cancel_event: Optional[threading.Event] = None,
    ) -> bool:
        """Check whether an S3 bucket exists."""
        raise_if_cancelled(cancel_event)
        try:
            self._client.head_bucket(Bucket=bucket)
            return True
        except ClientError as e:
            if _error_code(e) in _NOT_FOUND_CODES:
                return False
            raise self._wrap(e, "bucket_exists", bucket) from e
        except BotoCoreError as e:
            raise self._wrap(e, "bucket_exists", bucket) from e

    def ensure_bucket_exists(
        self,
        bucket: str,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        """Create the S3 bucket if it does not exist."""
        if self.bucket_exists(bucket, cancel_event=cancel_event):
            return

        raise_if_cancelled(cancel_event)
        logger.info(f"Creating S3 bucket: {bucket}")
        try:
            if self.region == "us-east-1":
                self._client.create_bucket(Bucket=bucket)
            else:
                self._client.create_bucket(
                    Bucket=bucket,
                    CreateBucketConfiguration={"LocationConstraint": self.region},
                )
        except ClientError as e:
            if _error_code(e) == "BucketAlreadyOwnedByYou":
                return
            raise self._wrap(e, "ensure_bucket_exists", bucket) from e
        except BotoCoreError as e:
            raise self._wrap(e, "ensure_bucket_exists", bucket) from e

    def close(self) -> None:
        """Close the S3 client."""
        self._client.close()
        logger.debug(f"Closed {self.provider_type} backend")
