"""
Object store client for backup archives.

S3Storage wraps a boto3 S3 client scoped to one bucket. Every call is an
independent request; the handler keeps no state besides the client.
"""

import os
import posixpath
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterator, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .compression import strip_archive_extension

ARCHIVE_SUFFIX = '.tar.gz'

# Files above this size are sent as multipart uploads
MULTIPART_THRESHOLD = 100 * 1024 * 1024
MULTIPART_CHUNK_SIZE = 10 * 1024 * 1024


class StorageError(Exception):
    """Raised when storage operation fails."""
    pass


class UploadError(StorageError):
    """Raised when an object cannot be uploaded."""
    pass


class DownloadError(StorageError):
    """Raised when an object cannot be downloaded."""
    pass


class NotFoundError(DownloadError):
    """Raised when the requested object does not exist."""
    pass


class DeleteError(StorageError):
    """Raised when an object cannot be deleted."""
    pass


@dataclass(frozen=True)
class RemoteArchiveEntry:
    """A backup archive as seen in the bucket listing."""

    name: str
    storage_key: str
    last_modified: datetime
    size_bytes: int


def _error_code(error: ClientError) -> str:
    return error.response.get('Error', {}).get('Code', 'Unknown')


class S3Storage:
    """
    Handler for backup archives stored in AWS S3.

    Archives live under ``{prefix}/{name}.tar.gz``.
    """

    def __init__(self, bucket_name: str, region: str = 'us-west-2', client: Any = None):
        """
        Initialize S3 storage handler.

        Args:
            bucket_name: S3 bucket name
            region: AWS region
            client: Optional pre-built boto3 S3 client (credentials come from the
                default boto3 chain otherwise)
        """
        self.bucket_name = bucket_name
        self.region = region

        if client is not None:
            self.s3_client = client
            return

        try:
            self.s3_client = boto3.client('s3', region_name=region)
        except (BotoCoreError, ValueError) as e:
            raise StorageError(f"Failed to initialize S3 client: {e}")

    def location(self, key: str) -> str:
        """Return the s3:// URL of a key."""
        return f"s3://{self.bucket_name}/{key}"

    def put(
        self,
        key: str,
        local_path: str,
        metadata: Optional[Dict[str, str]] = None,
        extra_args: Optional[Dict[str, str]] = None,
    ) -> str:
        """
        Upload a local file.

        Args:
            key: Destination object key
            local_path: Path to local file
            metadata: Descriptive user metadata attached to the object
            extra_args: Additional put parameters (e.g. server-side encryption)

        Returns:
            The object key

        Raises:
            UploadError: If upload fails
        """
        if not os.path.exists(local_path):
            raise UploadError(f"Local file not found: {local_path}")

        params = {'Bucket': self.bucket_name, 'Key': key}
        if metadata:
            params['Metadata'] = dict(metadata)
        if extra_args:
            params.update(extra_args)

        try:
            file_size = os.path.getsize(local_path)

            if file_size > MULTIPART_THRESHOLD:
                self._multipart_upload(local_path, params)
            else:
                with open(local_path, 'rb') as f:
                    self.s3_client.put_object(Body=f, **params)

            return key

        except ClientError as e:
            raise UploadError(f"S3 upload failed ({_error_code(e)}): {e}") from e
        except (BotoCoreError, OSError) as e:
            raise UploadError(f"S3 upload failed: {e}") from e

    def _multipart_upload(self, local_path: str, params: Dict[str, Any]):
        """
        Upload large file using multipart upload.

        Args:
            local_path: Path to local file
            params: Bucket, Key and any metadata/encryption parameters
        """
        response = self.s3_client.create_multipart_upload(**params)
        upload_id = response['UploadId']
        bucket, key = params['Bucket'], params['Key']

        parts = []

        try:
            with open(local_path, 'rb') as f:
                part_number = 1

                while True:
                    data = f.read(MULTIPART_CHUNK_SIZE)
                    if not data:
                        break

                    response = self.s3_client.upload_part(
                        Bucket=bucket,
                        Key=key,
                        PartNumber=part_number,
                        UploadId=upload_id,
                        Body=data
                    )

                    parts.append({
                        'PartNumber': part_number,
                        'ETag': response['ETag']
                    })

                    part_number += 1

            self.s3_client.complete_multipart_upload(
                Bucket=bucket,
                Key=key,
                UploadId=upload_id,
                MultipartUpload={'Parts': parts}
            )

        except Exception:
            try:
                self.s3_client.abort_multipart_upload(
                    Bucket=bucket,
                    Key=key,
                    UploadId=upload_id
                )
            except (ClientError, BotoCoreError):
                pass
            raise

    def get(self, key: str):
        """
        Open an object for reading.

        Managed-key (SSE-KMS) objects are returned decrypted by S3.

        Args:
            key: Object key

        Returns:
            A readable stream (botocore StreamingBody)

        Raises:
            NotFoundError: If the object does not exist
            DownloadError: If the request fails
        """
        try:
            response = self.s3_client.get_object(Bucket=self.bucket_name, Key=key)
            return response['Body']
        except ClientError as e:
            code = _error_code(e)
            if code in ('NoSuchKey', '404', 'NotFound'):
                raise NotFoundError(f"Backup not found: {self.location(key)}") from e
            raise DownloadError(f"S3 download failed ({code}): {e}") from e
        except BotoCoreError as e:
            raise DownloadError(f"S3 download failed: {e}") from e

    def download(self, key: str, local_path: str) -> int:
        """
        Stream an object to a local file.

        Returns:
            Number of bytes written

        Raises:
            NotFoundError: If the object does not exist
            DownloadError: If the transfer fails
        """
        body = self.get(key)
        written = 0
        try:
            with open(local_path, 'wb') as f:
                for chunk in body.iter_chunks(chunk_size=MULTIPART_CHUNK_SIZE):
                    f.write(chunk)
                    written += len(chunk)
        except (BotoCoreError, OSError) as e:
            raise DownloadError(f"Failed to download {self.location(key)}: {e}") from e
        finally:
            body.close()
        return written

    def exists(self, key: str) -> bool:
        """
        Check whether an object exists.

        Raises:
            StorageError: If the check itself fails
        """
        try:
            self.s3_client.head_object(Bucket=self.bucket_name, Key=key)
            return True
        except ClientError as e:
            if _error_code(e) in ('404', 'NoSuchKey', 'NotFound'):
                return False
            raise StorageError(f"S3 head failed ({_error_code(e)}): {e}") from e
        except BotoCoreError as e:
            raise StorageError(f"S3 head failed: {e}") from e

    def delete(self, key: str):
        """
        Delete an object from S3.

        Args:
            key: S3 object key to delete

        Raises:
            DeleteError: If deletion fails
        """
        try:
            self.s3_client.delete_object(
                Bucket=self.bucket_name,
                Key=key
            )
        except ClientError as e:
            raise DeleteError(f"S3 delete failed ({_error_code(e)}): {e}") from e
        except BotoCoreError as e:
            raise DeleteError(f"Failed to delete from S3: {e}") from e

    def list_entries(self, prefix: str) -> Iterator[RemoteArchiveEntry]:
        """
        Lazily list archives stored directly under a prefix.

        Only ``.tar.gz`` objects are returned; nested keys are skipped.

        Args:
            prefix: Key prefix (without trailing slash)

        Yields:
            RemoteArchiveEntry for each archive

        Raises:
            StorageError: If listing fails
        """
        folder = prefix.strip('/')
        list_prefix = f"{folder}/" if folder else ''

        try:
            paginator = self.s3_client.get_paginator('list_objects_v2')

            for page in paginator.paginate(Bucket=self.bucket_name, Prefix=list_prefix):
                for obj in page.get('Contents', []):
                    key = obj['Key']
                    filename = key[len(list_prefix):]

                    if '/' in filename or not filename.endswith(ARCHIVE_SUFFIX):
                        continue

                    yield RemoteArchiveEntry(
                        name=strip_archive_extension(posixpath.basename(key)),
                        storage_key=key,
                        last_modified=obj['LastModified'],
                        size_bytes=obj['Size']
                    )

        except ClientError as e:
            raise StorageError(f"S3 list failed ({_error_code(e)}): {e}") from e
        except BotoCoreError as e:
            raise StorageError(f"Failed to list S3 objects: {e}") from e

    def test_connection(self) -> bool:
        """
        Test S3 connection and bucket access.

        Returns:
            True if connection is successful

        Raises:
            StorageError: If connection test fails
        """
        try:
            self.s3_client.head_bucket(Bucket=self.bucket_name)
            return True
        except ClientError as e:
            error_code = _error_code(e)
            if error_code == '404':
                raise StorageError(f"Bucket does not exist: {self.bucket_name}")
            elif error_code == '403':
                raise StorageError(f"Access denied to bucket: {self.bucket_name}")
            else:
                raise StorageError(f"S3 connection test failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"Failed to connect to S3: {e}")


def create_storage(config) -> S3Storage:
    """
    Build the S3 handler for a backup configuration.

    Args:
        config: BackupConfig

    Returns:
        S3Storage bound to the configured bucket and region
    """
    return S3Storage(bucket_name=config.s3.bucket, region=config.region)
