"""
Backup executor - orchestrates the complete backup workflow.

Workflow:
1. Snapshot the config and workspace trees into a scratch directory
2. Pack the snapshot into a tar.gz archive
3. Encrypt the archive (client-key only)
4. Upload to S3 (with SSE-KMS parameters for managed-key)
5. Remove the scratch directory and archive
6. Enforce retention (if auto-clean is enabled)
7. Record local metadata

A failure in steps 1-4 aborts the run after local cleanup. Steps 6 and 7 run
once the archive is safely stored, so their failures only produce warnings.
"""

import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional

from openclaw_backup.config import BackupConfig, Config
from openclaw_backup.utils.crypto import KeyResolver
from openclaw_backup.utils.formatting import format_bytes
from openclaw_backup.utils.scratch import create_scratch_dir, remove_path, sweep_orphaned_scratch
from .compression import DEFAULT_FORMAT, create_archive, get_archive_size
from .encryption import EncryptionFilter, create_filter
from .metadata import BackupMetadata, MetadataStore
from .naming import generate_archive_name, storage_key_for
from .retention import PruneResult, RetentionManager
from .sources import SourceError, create_live_data_source
from .storage import S3Storage, create_storage

logger = logging.getLogger(__name__)

BACKUP_FORMAT_VERSION = '2.0'


@dataclass
class BackupResult:
    """Outcome of a successful backup run."""

    name: str
    storage_key: str
    remote_location: str
    size_bytes: int
    encrypted: bool
    encryption_method: str
    timestamp: str
    pruned: Optional[PruneResult] = None
    metadata_path: Optional[str] = None
    warnings: List[str] = field(default_factory=list)
    logs: List[str] = field(default_factory=list)


class BackupExecutor:
    """
    Orchestrates the complete backup workflow for one configuration.
    """

    def __init__(
        self,
        config: BackupConfig,
        storage: Optional[S3Storage] = None,
        encryption_filter: Optional[EncryptionFilter] = None,
        key_resolver: Optional[KeyResolver] = None,
        metadata_store: Optional[MetadataStore] = None,
        temp_dir: Optional[str] = None,
        exclude_patterns: Optional[List[str]] = None,
        allow_overwrite: bool = False,
    ):
        """
        Initialize backup executor.

        Args:
            config: Backup configuration
            storage: Object store handler (built from config when omitted)
            encryption_filter: Encryption strategy (built from config when omitted)
            key_resolver: Key resolver for client-key encryption
            metadata_store: Where metadata records are written
            temp_dir: Base directory for scratch space
            exclude_patterns: Glob patterns left out of the snapshot
            allow_overwrite: Reuse an archive name that already exists remotely
                instead of picking a suffixed one
        """
        self.config = config
        self.storage = storage or create_storage(config)
        self.encryption = encryption_filter or create_filter(
            config.encryption, key_resolver or KeyResolver(Config.KEYS_DIR)
        )
        self.metadata_store = metadata_store or MetadataStore(Config.METADATA_DIR)
        self.temp_dir = temp_dir or Config.TEMP_DIR
        self.exclude_patterns = exclude_patterns
        self.allow_overwrite = allow_overwrite

        self.scratch_dir = None
        self.archive_path = None
        self.logs = []
        self.warnings = []

    def execute(self) -> BackupResult:
        """
        Execute the backup.

        Returns:
            BackupResult describing the stored archive

        Raises:
            SourceError, CompressionError, EncryptionError, StorageError: If
                any step up to and including the upload fails
        """
        for orphan in sweep_orphaned_scratch(self.temp_dir):
            self._log(f"Removed orphaned scratch directory: {orphan}", logging.WARNING)

        started_at = datetime.now(timezone.utc)
        name = self._generate_name(started_at)
        storage_key = storage_key_for(self.config.s3.prefix, name, DEFAULT_FORMAT)

        self._log(f"Starting backup: {name}")
        self._log(f"Instance: {self.config.instance_id}")

        try:
            size_bytes = self._execute_workflow(name, storage_key, started_at)
        except Exception as e:
            self._log(f"Backup failed: {e}", logging.ERROR)
            raise
        finally:
            self._cleanup()

        result = BackupResult(
            name=name,
            storage_key=storage_key,
            remote_location=self.storage.location(storage_key),
            size_bytes=size_bytes,
            encrypted=self.encryption.encrypted,
            encryption_method=self.encryption.method,
            timestamp=started_at.isoformat(),
        )

        if self.config.retention.auto_clean:
            result.pruned = self._apply_retention()

        result.metadata_path = self._record_metadata(result)

        self._log(f"Backup complete: {name}")
        result.warnings = list(self.warnings)
        result.logs = list(self.logs)
        return result

    def _generate_name(self, started_at: datetime) -> str:
        if self.allow_overwrite:
            return generate_archive_name(self.config.archive_prefix, moment=started_at)

        def is_taken(candidate: str) -> bool:
            key = storage_key_for(self.config.s3.prefix, candidate, DEFAULT_FORMAT)
            return self.storage.exists(key)

        return generate_archive_name(self.config.archive_prefix, is_taken, moment=started_at)

    def _execute_workflow(self, name: str, storage_key: str, started_at: datetime) -> int:
        """Run steps 1-4 and return the uploaded size in bytes."""
        # Step 1: Snapshot
        self.scratch_dir = create_scratch_dir(name, self.temp_dir)
        snapshot_dir = os.path.join(self.scratch_dir, name)
        os.makedirs(snapshot_dir)

        self._log("Copying OpenClaw configuration and workspace")
        source = create_live_data_source(self.config.live_paths, self.exclude_patterns)
        acquired = source.acquire(snapshot_dir)
        if not acquired:
            raise SourceError(
                f"Nothing to back up: {self.config.live_paths.openclaw_dir} does not exist"
            )
        for message in source.warnings:
            self._warn(message)
        self._log(f"Acquired {len(acquired)} items")

        # Step 2: Package
        self._log("Creating archive")
        self.archive_path = create_archive(
            [snapshot_dir],
            os.path.join(self.scratch_dir, name),
            DEFAULT_FORMAT
        )
        remove_path(snapshot_dir)
        self._log(f"Archive created: {os.path.basename(self.archive_path)} "
                  f"({format_bytes(get_archive_size(self.archive_path))})")

        # Step 3: Encrypt
        if self.encryption.transforms_locally:
            self._log(f"Encrypting archive ({self.encryption.method})")
            self.encryption.encrypt_file(self.archive_path)

        size_bytes = get_archive_size(self.archive_path)

        # Step 4: Upload
        if self.encryption.encrypted:
            self._log(f"Uploading to S3 (encrypted with {self.encryption.method})")
        else:
            self._log("Uploading to S3 (no encryption)")

        self.storage.put(
            storage_key,
            self.archive_path,
            metadata=self._object_metadata(started_at),
            extra_args=self.encryption.upload_params(),
        )
        self._log(f"Uploaded to {self.storage.location(storage_key)}")

        return size_bytes

    def _object_metadata(self, started_at: datetime) -> dict:
        """Descriptive object metadata; restores never rely on it."""
        return {
            'backup-version': BACKUP_FORMAT_VERSION,
            'instance-id': self.config.instance_id,
            'timestamp': started_at.isoformat(),
            'encrypted': 'true' if self.encryption.encrypted else 'false',
            'encryption-method': self.encryption.method,
        }

    def _apply_retention(self) -> Optional[PruneResult]:
        """Run the retention pass; failures become warnings."""
        manager = RetentionManager(self.config, self.storage)
        try:
            pruned = manager.enforce_policy()
        except Exception as e:
            self._warn(f"Could not clean old backups: {e}")
            return None
        finally:
            self.logs.extend(manager.logs)

        for error in pruned.errors:
            self._warn(error)
        return pruned

    def _record_metadata(self, result: BackupResult) -> Optional[str]:
        """Write the local metadata record; failures become warnings."""
        metadata = BackupMetadata(
            name=result.name,
            timestamp=result.timestamp,
            instance_id=self.config.instance_id,
            region=self.config.region,
            size_bytes=result.size_bytes,
            remote_location=result.remote_location,
            encrypted=result.encrypted,
            encryption_method=result.encryption_method,
            key_ref=self.encryption.key_ref,
        )
        try:
            return self.metadata_store.record(metadata)
        except OSError as e:
            self._warn(f"Could not save backup metadata: {e}")
            return None

    def _cleanup(self):
        """Remove the archive and scratch directory."""
        for path in (self.archive_path, self.scratch_dir):
            try:
                if remove_path(path):
                    self._log(f"Removed {path}", logging.DEBUG)
            except OSError as e:
                self._warn(f"Failed to cleanup {path}: {e}")

    def _warn(self, message: str):
        self.warnings.append(message)
        self._log(f"Warning: {message}", logging.WARNING)

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


def create_backup(config: BackupConfig, **kwargs) -> BackupResult:
    """
    Create one backup.

    Args:
        config: Backup configuration
        **kwargs: Passed through to BackupExecutor

    Returns:
        BackupResult with name, size and remote location
    """
    executor = BackupExecutor(config, **kwargs)
    return executor.execute()
