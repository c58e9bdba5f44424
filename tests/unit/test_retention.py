"""
Unit tests for retention policy enforcement (openclaw_backup/backup/retention.py).
"""

from dataclasses import replace
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest

from openclaw_backup.backup.retention import (
    RetentionManager,
    prune_old_backups,
    select_for_deletion,
)
from openclaw_backup.backup.storage import DeleteError, RemoteArchiveEntry
from openclaw_backup.config import RetentionPolicy

PREFIX = 'openclaw-aws-backup'
STORAGE_PREFIX = 'openclaw-aws-backups/instance-i-test'


def _entry(name, last_modified=None):
    return RemoteArchiveEntry(
        name=name,
        storage_key=f"{STORAGE_PREFIX}/{name}.tar.gz",
        last_modified=last_modified or datetime(2024, 6, 1, tzinfo=timezone.utc),
        size_bytes=100,
    )


def _names(days):
    return [f"{PREFIX}-2024-01-{day:02d}T12-00-00" for day in days]


class TestSelectForDeletion:
    """Test the ordering rules."""

    def test_keeps_newest_by_name_timestamp(self):
        entries = [_entry(n) for n in _names([3, 1, 5, 2, 4])]

        kept, to_delete = select_for_deletion(entries, PREFIX, keep=3)

        assert [e.name for e in kept] == _names([5, 4, 3])
        assert [e.name for e in to_delete] == _names([2, 1])

    def test_ignores_upload_time(self):
        # Re-uploaded old archive has the newest LastModified but the oldest name
        old = _entry(_names([1])[0], datetime(2030, 1, 1, tzinfo=timezone.utc))
        new = _entry(_names([2])[0], datetime(2024, 1, 2, tzinfo=timezone.utc))

        kept, to_delete = select_for_deletion([old, new], PREFIX, keep=1)

        assert kept == [new]
        assert to_delete == [old]

    def test_suffix_orders_same_second(self):
        base = f"{PREFIX}-2024-01-01T12-00-00"
        entries = [_entry(base), _entry(f"{base}-2"), _entry(f"{base}-1")]

        kept, to_delete = select_for_deletion(entries, PREFIX, keep=1)

        assert kept[0].name == f"{base}-2"
        assert [e.name for e in to_delete] == [f"{base}-1", base]

    def test_foreign_names_never_deleted(self):
        entries = [_entry(n) for n in _names([1, 2])] + [_entry('manual-copy'), _entry('other-2024-01-01T00-00-00')]

        kept, to_delete = select_for_deletion(entries, PREFIX, keep=1)

        assert [e.name for e in to_delete] == _names([1])
        assert 'manual-copy' not in [e.name for e in kept + to_delete]

    def test_fewer_than_keep(self):
        kept, to_delete = select_for_deletion([_entry(n) for n in _names([1, 2])], PREFIX, keep=30)

        assert len(kept) == 2
        assert to_delete == []

    def test_keep_must_be_positive(self):
        with pytest.raises(ValueError):
            select_for_deletion([], PREFIX, keep=0)


class TestRetentionManager:
    """Test enforcement against the bucket."""

    def test_keep_three_of_five(self, backup_config, s3_storage, mock_s3):
        config = replace(backup_config, retention=RetentionPolicy(keep=3))
        for name in _names([1, 2, 3, 4, 5]):
            mock_s3.put_object(Bucket='test-bucket', Key=f"{config.s3.prefix}/{name}.tar.gz", Body=b"x")

        result = prune_old_backups(config, s3_storage)

        assert result.deleted_count == 2
        assert sorted(result.deleted) == _names([1, 2])
        remaining = sorted(e.name for e in s3_storage.list_entries(config.s3.prefix))
        assert remaining == _names([3, 4, 5])

    def test_nothing_to_delete(self, backup_config, s3_storage, mock_s3):
        mock_s3.put_object(Bucket='test-bucket', Key=f"{backup_config.s3.prefix}/{_names([1])[0]}.tar.gz", Body=b"x")

        manager = RetentionManager(backup_config, s3_storage)
        result = manager.enforce_policy()

        assert result.deleted == []
        assert any("No old backups to clean" in line for line in manager.logs)

    def test_failed_delete_does_not_stop_others(self, backup_config):
        config = replace(backup_config, retention=RetentionPolicy(keep=1))
        storage = MagicMock()
        storage.list_entries.return_value = iter([_entry(n) for n in _names([1, 2, 3])])
        storage.delete.side_effect = [DeleteError("denied"), None]

        result = RetentionManager(config, storage).enforce_policy()

        assert result.deleted == _names([1])
        assert len(result.errors) == 1
        assert "denied" in result.errors[0]
        assert storage.delete.call_count == 2
