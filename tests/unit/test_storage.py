"""
Unit tests for the S3 storage handler (openclaw_backup/backup/storage.py).

S3 is mocked with moto.
"""

from unittest.mock import MagicMock, patch

import pytest
from botocore.exceptions import ClientError

from openclaw_backup.backup.storage import (
    DeleteError,
    NotFoundError,
    S3Storage,
    StorageError,
    UploadError,
    create_storage,
)

TEST_BUCKET = 'test-bucket'
TEST_PREFIX = 'openclaw-aws-backups/instance-i-test'

NAME = 'openclaw-aws-backup-2024-01-15T12-00-00'
KEY = f"{TEST_PREFIX}/{NAME}.tar.gz"


class TestS3StoragePut:
    """Test uploads."""

    def test_put_uploads_file_with_metadata(self, s3_storage, mock_s3, tmp_path):
        archive = tmp_path / "a.tar.gz"
        archive.write_bytes(b"archive bytes")

        key = s3_storage.put(KEY, str(archive), metadata={'instance-id': 'i-test', 'encrypted': 'false'})

        assert key == KEY
        head = mock_s3.head_object(Bucket=TEST_BUCKET, Key=KEY)
        assert head['ContentLength'] == len(b"archive bytes")
        assert head['Metadata']['instance-id'] == 'i-test'

    def test_put_passes_extra_args(self, tmp_path):
        client = MagicMock()
        storage = S3Storage(TEST_BUCKET, client=client)
        archive = tmp_path / "a.tar.gz"
        archive.write_bytes(b"x")

        storage.put(KEY, str(archive), extra_args={'ServerSideEncryption': 'aws:kms', 'SSEKMSKeyId': 'alias/k'})

        kwargs = client.put_object.call_args.kwargs
        assert kwargs['ServerSideEncryption'] == 'aws:kms'
        assert kwargs['SSEKMSKeyId'] == 'alias/k'
        assert kwargs['Key'] == KEY

    def test_put_missing_file(self, s3_storage, tmp_path):
        with pytest.raises(UploadError, match="not found"):
            s3_storage.put(KEY, str(tmp_path / "missing"))

    def test_put_client_error_becomes_upload_error(self, tmp_path):
        client = MagicMock()
        client.put_object.side_effect = ClientError(
            {'Error': {'Code': 'AccessDenied', 'Message': 'denied'}}, 'PutObject'
        )
        storage = S3Storage(TEST_BUCKET, client=client)
        archive = tmp_path / "a.tar.gz"
        archive.write_bytes(b"x")

        with pytest.raises(UploadError, match="AccessDenied"):
            storage.put(KEY, str(archive))

    def test_multipart_upload_aborted_on_failure(self, tmp_path):
        client = MagicMock()
        client.create_multipart_upload.return_value = {'UploadId': 'up-1'}
        client.upload_part.side_effect = ClientError(
            {'Error': {'Code': 'InternalError', 'Message': 'boom'}}, 'UploadPart'
        )
        storage = S3Storage(TEST_BUCKET, client=client)
        archive = tmp_path / "big.tar.gz"
        archive.write_bytes(b"x" * 64)

        with patch('openclaw_backup.backup.storage.MULTIPART_THRESHOLD', 16):
            with pytest.raises(UploadError):
                storage.put(KEY, str(archive))

        client.abort_multipart_upload.assert_called_once_with(Bucket=TEST_BUCKET, Key=KEY, UploadId='up-1')


class TestS3StorageGet:
    """Test downloads and existence checks."""

    def test_download_round_trip(self, s3_storage, mock_s3, tmp_path):
        mock_s3.put_object(Bucket=TEST_BUCKET, Key=KEY, Body=b"payload" * 1000)
        dest = tmp_path / "out.tar.gz"

        written = s3_storage.download(KEY, str(dest))

        assert written == 7000
        assert dest.read_bytes() == b"payload" * 1000

    def test_get_returns_stream(self, s3_storage, mock_s3):
        mock_s3.put_object(Bucket=TEST_BUCKET, Key=KEY, Body=b"payload")

        body = s3_storage.get(KEY)

        assert body.read() == b"payload"

    def test_get_missing_key(self, s3_storage):
        with pytest.raises(NotFoundError):
            s3_storage.get(f"{TEST_PREFIX}/missing.tar.gz")

    def test_exists(self, s3_storage, mock_s3):
        mock_s3.put_object(Bucket=TEST_BUCKET, Key=KEY, Body=b"x")

        assert s3_storage.exists(KEY) is True
        assert s3_storage.exists(f"{TEST_PREFIX}/other.tar.gz") is False


class TestS3StorageList:
    """Test listing of archives."""

    def test_list_only_direct_archives(self, s3_storage, mock_s3):
        mock_s3.put_object(Bucket=TEST_BUCKET, Key=KEY, Body=b"12345")
        mock_s3.put_object(Bucket=TEST_BUCKET, Key=f"{TEST_PREFIX}/notes.txt", Body=b"x")
        mock_s3.put_object(Bucket=TEST_BUCKET, Key=f"{TEST_PREFIX}/nested/{NAME}.tar.gz", Body=b"x")
        mock_s3.put_object(Bucket=TEST_BUCKET, Key=f"elsewhere/{NAME}.tar.gz", Body=b"x")

        entries = list(s3_storage.list_entries(TEST_PREFIX))

        assert len(entries) == 1
        assert entries[0].name == NAME
        assert entries[0].storage_key == KEY
        assert entries[0].size_bytes == 5
        assert entries[0].last_modified is not None

    def test_list_paginates(self, s3_storage, mock_s3):
        for i in range(1001):
            mock_s3.put_object(Bucket=TEST_BUCKET, Key=f"{TEST_PREFIX}/b-{i:04d}.tar.gz", Body=b"")

        assert sum(1 for _ in s3_storage.list_entries(TEST_PREFIX)) == 1001

    def test_list_empty_prefix(self, s3_storage):
        assert list(s3_storage.list_entries(TEST_PREFIX)) == []

    def test_list_missing_bucket(self, mock_s3):
        storage = S3Storage('no-such-bucket', client=mock_s3)

        with pytest.raises(StorageError):
            list(storage.list_entries(TEST_PREFIX))


class TestS3StorageDelete:

    def test_delete(self, s3_storage, mock_s3):
        mock_s3.put_object(Bucket=TEST_BUCKET, Key=KEY, Body=b"x")

        s3_storage.delete(KEY)

        assert s3_storage.exists(KEY) is False

    def test_delete_error(self):
        client = MagicMock()
        client.delete_object.side_effect = ClientError(
            {'Error': {'Code': 'AccessDenied', 'Message': 'denied'}}, 'DeleteObject'
        )

        with pytest.raises(DeleteError):
            S3Storage(TEST_BUCKET, client=client).delete(KEY)


class TestConnection:

    def test_connection_ok(self, s3_storage):
        assert s3_storage.test_connection() is True

    def test_connection_missing_bucket(self, mock_s3):
        with pytest.raises(StorageError, match="does not exist"):
            S3Storage('no-such-bucket', client=mock_s3).test_connection()

    def test_create_storage_from_config(self, backup_config):
        storage = create_storage(backup_config)

        assert storage.bucket_name == TEST_BUCKET
        assert storage.region == backup_config.region
