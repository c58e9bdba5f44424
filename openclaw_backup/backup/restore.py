"""
Restore executor - replaces the live OpenClaw data with a stored backup.

Workflow:
1. Discover archives in S3
2. Select one (caller)
3. Confirm (caller; see would_overwrite_live_data)
4. Download into a scratch directory
5. Decrypt (client-key only)
6. Extract
7. Validate that the config tree carries openclaw.json (warning only)
8. Swap the config tree in atomically, then replace the workspace
9. Remove the scratch directory

Steps 4-7 never touch live data, so a failure there leaves the installation
as it was. The config swap stages the new tree next to the live one and
then exchanges them with two renames. The previous tree is held aside until
the workspace has been replaced too; if anything goes wrong up to that point
the held tree is put back. A workspace outside the config tree is replaced
by remove-then-copy and is not rolled back.
"""

import glob
import logging
import os
import shutil
import warnings
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional

from openclaw_backup.config import BackupConfig, Config, LiveDataPaths
from openclaw_backup.utils.crypto import KeyResolver
from openclaw_backup.utils.scratch import create_scratch_dir, remove_path, sweep_orphaned_scratch
from .compression import CorruptArchiveError, extract_archive, strip_archive_extension
from .encryption import EncryptionFilter, create_filter
from .sources import CONFIG_DIRNAME, WORKSPACE_DIRNAME
from .storage import NotFoundError, RemoteArchiveEntry, S3Storage, create_storage

logger = logging.getLogger(__name__)

STATUS_COMPLETE = 'complete'
STATUS_FAILED = 'failed'
STATUS_CANCELLED = 'cancelled'

HOLD_MARKER = '.restore-hold-'
STAGING_MARKER = '.restore-new-'
PRE_RESTORE_MARKER = '.pre-restore-'


class RestoreError(Exception):
    """Raised when a restore cannot proceed."""
    pass


class NoBackupsError(RestoreError):
    """Raised when there is nothing to restore from."""
    pass


class ValidationWarning(UserWarning):
    """A restored archive is usable but incomplete."""
    pass


@dataclass
class RestoreResult:
    """Outcome of a restore run."""

    status: str
    storage_key: str
    name: Optional[str] = None
    config_restored: bool = False
    workspace_restored: bool = False
    preserved_files: List[str] = field(default_factory=list)
    pre_restore_copy: Optional[str] = None
    error: Optional[Exception] = None
    warnings: List[str] = field(default_factory=list)
    logs: List[str] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.status == STATUS_COMPLETE


def would_overwrite_live_data(paths: LiveDataPaths) -> bool:
    """True when a restore would replace existing live data."""
    return os.path.exists(paths.openclaw_dir) or os.path.exists(paths.workspace_dir)


def sort_by_recency(entries: List[RemoteArchiveEntry]) -> List[RemoteArchiveEntry]:
    """Order entries newest first, as shown to the user."""
    return sorted(entries, key=lambda e: (e.last_modified, e.name), reverse=True)


def select_backup(entries: List[RemoteArchiveEntry], selection: str) -> RemoteArchiveEntry:
    """
    Pick an entry by archive name or storage key.

    Raises:
        NotFoundError: If nothing matches
    """
    for entry in entries:
        if selection in (entry.name, entry.storage_key):
            return entry
    raise NotFoundError(f"No backup named {selection}")


def _siblings(live_dir: str, marker: str) -> List[str]:
    return sorted(glob.glob(f"{glob.escape(live_dir)}{marker}*"), reverse=True)


def recover_interrupted_restore(paths: LiveDataPaths) -> List[str]:
    """
    Repair the config tree after a restore that died mid-swap.

    - A held-aside tree with no live tree (or an empty one) next to it is
      moved back.
    - A held-aside tree next to a live tree holding the primary config file
      is left over from a completed swap and is removed.
    - A held-aside tree next to any other live tree is kept.
    - Staging trees are always incomplete and are removed.

    Returns:
        Human readable descriptions of the actions taken
    """
    live_dir = paths.openclaw_dir.rstrip(os.sep)
    actions = []

    for staging in _siblings(live_dir, STAGING_MARKER):
        remove_path(staging)
        actions.append(f"Removed incomplete staging tree {staging}")

    for hold in _siblings(live_dir, HOLD_MARKER):
        if os.path.isdir(live_dir) and not os.listdir(live_dir):
            os.rmdir(live_dir)
        if not os.path.exists(live_dir):
            os.rename(hold, live_dir)
            actions.append(f"Moved {hold} back to {live_dir}")
        elif os.path.exists(os.path.join(live_dir, paths.primary_config)):
            remove_path(hold)
            actions.append(f"Removed stale held-aside tree {hold}")
        else:
            actions.append(
                f"Kept held-aside tree {hold}: {live_dir} has no {paths.primary_config}. "
                f"Check both and remove the one you do not need"
            )

    return actions


def _locate_archive_root(extract_dir: str) -> str:
    """
    Find the directory holding openclaw-config/ and workspace/.

    Archives carry a single top-level directory named after the backup.
    """
    for candidate in [extract_dir] + sorted(glob.glob(os.path.join(glob.escape(extract_dir), '*'))):
        if not os.path.isdir(candidate):
            continue
        if os.path.isdir(os.path.join(candidate, CONFIG_DIRNAME)) or \
                os.path.isdir(os.path.join(candidate, WORKSPACE_DIRNAME)):
            return candidate

    raise CorruptArchiveError("Archive does not contain OpenClaw configuration or workspace data")


class RestoreExecutor:
    """
    Orchestrates restoring one archive over the live data.

    The executor never prompts: selection and confirmation come from the
    caller.
    """

    def __init__(
        self,
        config: BackupConfig,
        storage: Optional[S3Storage] = None,
        encryption_filter: Optional[EncryptionFilter] = None,
        key_resolver: Optional[KeyResolver] = None,
        temp_dir: Optional[str] = None,
        keep_pre_restore_copy: bool = False,
    ):
        """
        Initialize restore executor.

        Args:
            config: Backup configuration
            storage: Object store handler (built from config when omitted)
            encryption_filter: Encryption strategy (built from config when omitted)
            key_resolver: Key resolver for client-key encryption
            temp_dir: Base directory for scratch space
            keep_pre_restore_copy: Leave a full copy of the current config tree at
                ``<openclaw_dir>.pre-restore-<timestamp>``
        """
        self.config = config
        self.paths = config.live_paths
        self.storage = storage or create_storage(config)
        self.encryption = encryption_filter or create_filter(
            config.encryption, key_resolver or KeyResolver(Config.KEYS_DIR)
        )
        self.temp_dir = temp_dir or Config.TEMP_DIR
        self.keep_pre_restore_copy = keep_pre_restore_copy

        self.scratch_dir = None
        self.result = None
        self.swap = None
        self.logs = []

    def discover(self) -> List[RemoteArchiveEntry]:
        """
        List restorable archives, newest first.

        Raises:
            NoBackupsError: If the bucket holds no archives
            StorageError: If listing fails
        """
        entries = sort_by_recency(list(self.storage.list_entries(self.config.s3.prefix)))
        if not entries:
            raise NoBackupsError(f"No backups found in s3://{self.config.s3.bucket}/{self.config.s3.prefix}/")
        return entries

    def would_overwrite(self) -> bool:
        return would_overwrite_live_data(self.paths)

    def restore(self, storage_key: str, confirmed: bool = False) -> RestoreResult:
        """
        Restore an archive over the live data.

        Args:
            storage_key: Key of the selected archive
            confirmed: Caller's go-ahead; nothing happens without it

        Returns:
            RestoreResult with status complete, failed or cancelled. On failure
            ``error`` holds the exception and the config tree is back to what it
            was before the restore.
        """
        self.result = RestoreResult(status=STATUS_FAILED, storage_key=storage_key,
                                    name=strip_archive_extension(os.path.basename(storage_key)))

        if not confirmed:
            self._log("Restore cancelled")
            self.result.status = STATUS_CANCELLED
            return self._finish()

        self._log(f"Restoring {storage_key}")

        try:
            for orphan in sweep_orphaned_scratch(self.temp_dir):
                self._log(f"Removed orphaned scratch directory: {orphan}", logging.WARNING)
            for action in recover_interrupted_restore(self.paths):
                self._warn(action)

            self._execute_workflow(storage_key)
            self.result.status = STATUS_COMPLETE
            self._log("Restore complete. Restart OpenClaw for changes to take effect")
        except Exception as e:
            self.result.status = STATUS_FAILED
            self.result.error = e
            self._log(f"Restore failed: {e}", logging.ERROR)
        finally:
            self._cleanup()

        return self._finish()

    def _execute_workflow(self, storage_key: str):
        self.scratch_dir = create_scratch_dir(self.result.name, self.temp_dir)

        # Step 4: Download
        archive_path = os.path.join(self.scratch_dir, os.path.basename(storage_key))
        self._log(f"Downloading {self.storage.location(storage_key)}")
        size = self.storage.download(storage_key, archive_path)
        self._log(f"Download complete ({size} bytes)")

        # Step 5: Decrypt
        if self.encryption.transforms_locally:
            self._log(f"Decrypting archive ({self.encryption.method})")
            self.encryption.decrypt_file(archive_path)

        # Step 6: Extract
        self._log("Extracting backup")
        extract_dir = extract_archive(archive_path, os.path.join(self.scratch_dir, 'extracted'))
        remove_path(archive_path)
        root = _locate_archive_root(extract_dir)

        config_source = os.path.join(root, CONFIG_DIRNAME)
        workspace_source = os.path.join(root, WORKSPACE_DIRNAME)
        has_config = os.path.isdir(config_source)
        has_workspace = os.path.isdir(workspace_source)

        # Step 7: Validate
        primary_missing = has_config and not os.path.exists(
            os.path.join(config_source, self.paths.primary_config)
        )
        if primary_missing:
            self._validation_warning(
                f"Backup missing essential files: {self.paths.primary_config}. "
                f"The current {self.paths.primary_config} will be preserved if it exists."
            )

        # Step 8: Replace
        if has_config:
            self._log("Restoring OpenClaw configuration")
            self._replace_config(config_source, primary_missing, has_workspace)
            self.result.config_restored = True

        if has_workspace:
            self._log("Restoring workspace")
            try:
                self._replace_workspace(workspace_source)
            except Exception:
                if self.swap is not None:
                    self._log("Workspace restore failed, rolling back configuration", logging.ERROR)
                    self._undo_swap()
                    self.result.config_restored = False
                raise
            self.result.workspace_restored = True

        self._release_hold()

    def _replace_config(self, source_dir: str, primary_missing: bool, archive_has_workspace: bool):
        """
        Swap the live config tree for source_dir.

        The new tree is fully built in a staging directory before the live
        tree is touched; the swap itself is two renames. The previous tree
        stays held aside (see _release_hold and _undo_swap).
        """
        live_dir = self.paths.openclaw_dir.rstrip(os.sep)
        stamp = datetime.now(timezone.utc).strftime('%Y%m%dT%H%M%S%f')
        staging_dir = f"{live_dir}{STAGING_MARKER}{stamp}"
        hold_dir = f"{live_dir}{HOLD_MARKER}{stamp}"
        live_exists = os.path.exists(live_dir)

        os.makedirs(os.path.dirname(live_dir) or '.', exist_ok=True)

        try:
            shutil.copytree(source_dir, staging_dir, symlinks=True)
            if live_exists:
                self._carry_over(live_dir, staging_dir, primary_missing, archive_has_workspace)
                if self.keep_pre_restore_copy:
                    copy_dir = f"{live_dir}{PRE_RESTORE_MARKER}{stamp}"
                    self._log(f"Backing up current config to: {copy_dir}")
                    shutil.copytree(live_dir, copy_dir, symlinks=True)
                    self.result.pre_restore_copy = copy_dir
        except Exception:
            remove_path(staging_dir)
            raise

        held = False
        try:
            if live_exists:
                os.rename(live_dir, hold_dir)
                held = True
            os.rename(staging_dir, live_dir)
        except Exception:
            self._log("Restore failed, rolling back", logging.ERROR)
            self._rollback(live_dir, staging_dir, hold_dir if held else None)
            raise

        self.swap = (live_dir, hold_dir if held else None)

    def _carry_over(self, live_dir: str, staging_dir: str, primary_missing: bool, archive_has_workspace: bool):
        """Copy what the archive lacks from the live tree into staging."""
        primary = self.paths.primary_config
        live_primary = os.path.join(live_dir, primary)
        if primary_missing and os.path.exists(live_primary):
            self._log(f"Preserving existing {primary}")
            shutil.copy2(live_primary, os.path.join(staging_dir, primary))
            self.result.preserved_files.append(primary)

        # A nested workspace is archived separately; keep the current one when
        # the archive has none so the swap does not drop it
        if self.paths.workspace_is_nested and not archive_has_workspace:
            relative = os.path.relpath(self.paths.workspace_dir, live_dir)
            live_workspace = os.path.join(live_dir, relative)
            staged_workspace = os.path.join(staging_dir, relative)
            if os.path.isdir(live_workspace) and not os.path.exists(staged_workspace):
                self._log("Preserving existing workspace")
                os.makedirs(os.path.dirname(staged_workspace), exist_ok=True)
                shutil.copytree(live_workspace, staged_workspace, symlinks=True)

    def _rollback(self, live_dir: str, staging_dir: str, hold_dir: Optional[str]):
        if hold_dir is not None:
            if os.path.exists(live_dir):
                remove_path(live_dir)
            os.rename(hold_dir, live_dir)
        remove_path(staging_dir)

    def _undo_swap(self):
        """Put the held-aside config tree back in place of the restored one."""
        live_dir, hold_dir = self.swap
        self.swap = None
        try:
            remove_path(live_dir)
            if hold_dir is not None:
                os.rename(hold_dir, live_dir)
        except OSError as e:
            self._warn(f"Could not roll back configuration: {e}. Previous tree kept at {hold_dir}")

    def _release_hold(self):
        """Drop the held-aside config tree once the restore has succeeded."""
        if self.swap is None:
            return
        _, hold_dir = self.swap
        self.swap = None
        if hold_dir is None:
            return
        try:
            remove_path(hold_dir)
        except OSError as e:
            self._warn(f"Could not remove previous config tree {hold_dir}: {e}")

    def _replace_workspace(self, source_dir: str):
        workspace_dir = self.paths.workspace_dir
        remove_path(workspace_dir)
        os.makedirs(os.path.dirname(workspace_dir.rstrip(os.sep)) or '.', exist_ok=True)
        shutil.copytree(source_dir, workspace_dir, symlinks=True)

    def _cleanup(self):
        """Remove the downloaded archive and extracted files."""
        try:
            remove_path(self.scratch_dir)
        except OSError as e:
            self._warn(f"Failed to cleanup {self.scratch_dir}: {e}")

    def _finish(self) -> RestoreResult:
        self.result.logs = list(self.logs)
        return self.result

    def _validation_warning(self, message: str):
        warnings.warn(message, ValidationWarning, stacklevel=3)
        self._warn(message)

    def _warn(self, message: str):
        self.result.warnings.append(message)
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


def list_backups(config: BackupConfig, storage: Optional[S3Storage] = None) -> List[RemoteArchiveEntry]:
    """List remote archives newest first (empty list when there are none)."""
    storage = storage or create_storage(config)
    return sort_by_recency(list(storage.list_entries(config.s3.prefix)))


def restore_backup(config: BackupConfig, storage_key: str, confirmed: bool = False, **kwargs) -> RestoreResult:
    """
    Restore one archive.

    Args:
        config: Backup configuration
        storage_key: Key of the archive to restore
        confirmed: Caller's go-ahead
        **kwargs: Passed through to RestoreExecutor

    Returns:
        RestoreResult
    """
    executor = RestoreExecutor(config, **kwargs)
    return executor.restore(storage_key, confirmed=confirmed)
