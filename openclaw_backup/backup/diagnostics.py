"""
Pre-flight checks for a backup configuration.

Each check runs independently and reports a CheckResult; one failing check
does not stop the others. The probe object written by the upload check is
deleted again.
"""

import logging
import os
import tempfile
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, List, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from openclaw_backup.config import BackupConfig, Config, ConfigError, validate_config
from openclaw_backup.utils.crypto import KeyResolver
from .encryption import create_filter
from .storage import S3Storage, StorageError, create_storage

logger = logging.getLogger(__name__)

PROBE_NAME = '.openclaw-backup-probe'


@dataclass
class CheckResult:
    name: str
    passed: bool
    message: str


def check_configuration(config: BackupConfig) -> CheckResult:
    try:
        validate_config(config)
    except ConfigError as e:
        return CheckResult('configuration', False, str(e))
    return CheckResult(
        'configuration', True,
        f"Instance {config.instance_id}, bucket {config.s3.bucket}, region {config.region}"
    )


def check_connectivity(config: BackupConfig, storage: S3Storage) -> CheckResult:
    try:
        storage.test_connection()
    except StorageError as e:
        return CheckResult('s3 connectivity', False, str(e))
    return CheckResult('s3 connectivity', True, f"Bucket {config.s3.bucket} is accessible")


def check_encryption_key(config: BackupConfig, key_resolver: Optional[KeyResolver] = None,
                         kms_client: Any = None) -> CheckResult:
    """
    Check that the configured key can be used.

    Managed keys are looked up in KMS and must be enabled; client keys must
    resolve locally.
    """
    policy = config.encryption

    if policy.is_managed_key:
        kms = kms_client or boto3.client('kms', region_name=config.region)
        try:
            response = kms.describe_key(KeyId=policy.key_ref)
        except (ClientError, BotoCoreError) as e:
            return CheckResult('encryption key', False, f"KMS key {policy.key_ref} not accessible: {e}")

        key_state = response['KeyMetadata'].get('KeyState')
        if key_state != 'Enabled':
            return CheckResult('encryption key', False, f"KMS key {policy.key_ref} is {key_state}")
        return CheckResult('encryption key', True, f"KMS key {policy.key_ref} is enabled")

    if policy.is_client_key:
        resolver = key_resolver or KeyResolver(Config.KEYS_DIR)
        if resolver.can_resolve(policy.key_ref):
            return CheckResult('encryption key', True, f"Client key {policy.key_ref} is available")
        return CheckResult('encryption key', False, f"Client key {policy.key_ref} cannot be resolved")

    return CheckResult('encryption key', True, "Encryption disabled, skipped")


def check_upload(config: BackupConfig, storage: S3Storage, upload_params: Optional[dict] = None) -> CheckResult:
    """Write and delete a tiny probe object under the backup prefix."""
    key = f"{config.s3.prefix.rstrip('/')}/{PROBE_NAME}"
    fd, probe_path = tempfile.mkstemp(prefix='openclaw-probe-')
    try:
        with os.fdopen(fd, 'w') as f:
            f.write(f"probe {datetime.now(timezone.utc).isoformat()}\n")
        storage.put(key, probe_path, metadata={'purpose': 'connectivity-test'}, extra_args=upload_params)
        storage.delete(key)
    except StorageError as e:
        return CheckResult('test upload', False, str(e))
    finally:
        os.remove(probe_path)
    return CheckResult('test upload', True, f"Wrote and removed {storage.location(key)}")


def check_listing(config: BackupConfig, storage: S3Storage) -> CheckResult:
    try:
        count = sum(1 for _ in storage.list_entries(config.s3.prefix))
    except StorageError as e:
        return CheckResult('listing', False, str(e))
    return CheckResult('listing', True, f"{count} backups found")


def run_diagnostics(
    config: BackupConfig,
    storage: Optional[S3Storage] = None,
    key_resolver: Optional[KeyResolver] = None,
    kms_client: Any = None,
) -> List[CheckResult]:
    """
    Run every check against a configuration.

    Args:
        config: Backup configuration
        storage: Object store handler (built from config when omitted)
        key_resolver: Resolver for client keys
        kms_client: boto3 KMS client for the managed-key check

    Returns:
        List of CheckResult in execution order
    """
    storage = storage or create_storage(config)
    results = [
        check_configuration(config),
        check_connectivity(config, storage),
        check_encryption_key(config, key_resolver, kms_client),
    ]

    # Probe uploads carry the same server-side encryption parameters as archives
    upload_params = create_filter(config.encryption, key_resolver).upload_params()
    results.append(check_upload(config, storage, upload_params))
    results.append(check_listing(config, storage))

    for result in results:
        level = logging.INFO if result.passed else logging.WARNING
        logger.log(level, f"{result.name}: {'ok' if result.passed else 'FAILED'} - {result.message}")

    return results
