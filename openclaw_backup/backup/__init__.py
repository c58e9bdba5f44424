"""
Backup module for openclaw-backup.

This module handles the core backup functionality including:
- Snapshot of the live config and workspace trees
- Compression
- Encryption (SSE-KMS or local Fernet)
- Storage (S3)
- Backup and restore orchestration
- Retention policy enforcement
"""

from .executor import BackupExecutor, BackupResult, create_backup
from .restore import RestoreExecutor, RestoreResult, list_backups, restore_backup
from .retention import PruneResult, RetentionManager, prune_old_backups
from .storage import RemoteArchiveEntry, S3Storage

__all__ = [
    'BackupExecutor',
    'BackupResult',
    'create_backup',
    'RestoreExecutor',
    'RestoreResult',
    'list_backups',
    'restore_backup',
    'PruneResult',
    'RetentionManager',
    'prune_old_backups',
    'RemoteArchiveEntry',
    'S3Storage',
]
