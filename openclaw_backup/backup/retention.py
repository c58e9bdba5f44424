"""
Retention policy enforcement for backups.

Keeps the newest ``retention.keep`` archives in the bucket and deletes the
rest. Age comes from the timestamp in the archive name, not from object
metadata, so re-uploads or copies do not change an archive's place in line.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional, Tuple

from openclaw_backup.config import BackupConfig
from .naming import parse_archive_name
from .storage import RemoteArchiveEntry, S3Storage, StorageError, create_storage

logger = logging.getLogger(__name__)


@dataclass
class PruneResult:
    """Outcome of one retention pass."""

    deleted: List[str] = field(default_factory=list)
    kept: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def deleted_count(self) -> int:
        return len(self.deleted)


def _sort_key(item: Tuple[RemoteArchiveEntry, Tuple[datetime, int]]):
    entry, (timestamp, sequence) = item
    return timestamp, sequence, entry.name


def select_for_deletion(entries: List[RemoteArchiveEntry], prefix: str, keep: int) -> Tuple[List[RemoteArchiveEntry], List[RemoteArchiveEntry]]:
    """
    Split archives into the ones to keep and the ones to delete.

    Entries whose name does not follow the naming convention are ignored
    entirely: they are neither kept nor deleted.

    Args:
        entries: Remote listing
        prefix: Archive name prefix
        keep: Number of newest archives to keep (>= 1)

    Returns:
        (kept, to_delete), both newest first
    """
    if keep < 1:
        raise ValueError(f"keep must be at least 1 (got {keep})")

    parsed = []
    for entry in entries:
        stamp = parse_archive_name(entry.name, prefix)
        if stamp is not None:
            parsed.append((entry, stamp))

    parsed.sort(key=_sort_key, reverse=True)
    ordered = [entry for entry, _ in parsed]
    return ordered[:keep], ordered[keep:]


class RetentionManager:
    """
    Enforces the count-based retention policy on the remote archives.

    Deletion is best-effort per archive: a failed delete is recorded and the
    remaining deletions still run.
    """

    def __init__(self, config: BackupConfig, storage: Optional[S3Storage] = None):
        """
        Args:
            config: Backup configuration
            storage: Object store handler (built from config when omitted)
        """
        self.config = config
        self.storage = storage or create_storage(config)
        self.logs = []

    def enforce_policy(self) -> PruneResult:
        """
        Delete archives beyond the retention window.

        Returns:
            PruneResult with deleted/kept names and per-archive errors

        Raises:
            StorageError: If the archives cannot be listed
        """
        keep = self.config.retention.keep
        self._log(f"Enforcing retention policy: keep last {keep} backups")

        entries = list(self.storage.list_entries(self.config.s3.prefix))
        kept, to_delete = select_for_deletion(entries, self.config.archive_prefix, keep)

        result = PruneResult(kept=[entry.name for entry in kept])

        if not to_delete:
            self._log(f"No old backups to clean ({len(kept)}/{keep})")
            return result

        self._log(f"Found {len(to_delete)} old backups to delete")

        for entry in to_delete:
            try:
                self.storage.delete(entry.storage_key)
                result.deleted.append(entry.name)
                self._log(f"Deleted: {entry.storage_key}")
            except StorageError as e:
                error_msg = f"Failed to delete {entry.storage_key}: {e}"
                result.errors.append(error_msg)
                self._log(error_msg, logging.WARNING)

        self._log(
            f"Retention enforcement complete. "
            f"Deleted: {result.deleted_count}, "
            f"Kept: {len(result.kept)}, "
            f"Errors: {len(result.errors)}"
        )
        return result

    def _log(self, message: str, level: int = logging.INFO):
        """
        Add a log message with timestamp.

        Args:
            message: Log message
            level: logging level for the module logger
        """
        timestamp = datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')
        self.logs.append(f"[{timestamp}] {message}")
        logger.log(level, message)


def prune_old_backups(config: BackupConfig, storage: Optional[S3Storage] = None) -> PruneResult:
    """
    Enforce the retention policy once.

    Returns:
        PruneResult from RetentionManager.enforce_policy()
    """
    manager = RetentionManager(config, storage)
    return manager.enforce_policy()
