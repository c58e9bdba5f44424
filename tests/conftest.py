"""
Shared pytest fixtures for openclaw-backup tests.

This module provides fixtures for:
- Isolated home, temp and live-data directories
- Backup configurations (plain, managed-key, client-key)
- Mock AWS services (S3, KMS) using moto
- Client-key resolvers with a key file on disk
"""

import json
import tarfile
from dataclasses import replace

import pytest
import boto3
from cryptography.fernet import Fernet
from moto import mock_aws

from openclaw_backup.backup.storage import S3Storage
from openclaw_backup.config import (
    BackupConfig,
    Config,
    EncryptionPolicy,
    LiveDataPaths,
    RetentionPolicy,
    S3Location,
)
from openclaw_backup.utils.crypto import KeyResolver, key_filename

TEST_BUCKET = 'test-bucket'
TEST_REGION = 'us-east-1'
TEST_PREFIX = 'openclaw-aws-backups/instance-i-test'
TEST_KEY_REF = 'test-client-key'


@pytest.fixture(autouse=True)
def isolated_environment(tmp_path, monkeypatch):
    """
    Point every Config location at tmp_path and clear host settings.

    Nothing in the tests may touch the real home directory or AWS account.
    """
    home = tmp_path / 'home'
    monkeypatch.setattr(Config, 'HOME_DIR', str(home))
    monkeypatch.setattr(Config, 'CONFIG_FILE', str(home / 'backup-config.json'))
    monkeypatch.setattr(Config, 'METADATA_DIR', str(home / 'backups'))
    monkeypatch.setattr(Config, 'KEYS_DIR', str(home / 'keys'))
    monkeypatch.setattr(Config, 'LOG_DIR', str(home / 'logs'))
    monkeypatch.setattr(Config, 'TEMP_DIR', str(tmp_path / 'scratch'))
    monkeypatch.setattr(Config, 'OPENCLAW_DIR', str(tmp_path / 'live' / '.openclaw'))

    monkeypatch.setenv('AWS_ACCESS_KEY_ID', 'testing')
    monkeypatch.setenv('AWS_SECRET_ACCESS_KEY', 'testing')
    monkeypatch.setenv('AWS_SECURITY_TOKEN', 'testing')
    monkeypatch.setenv('AWS_SESSION_TOKEN', 'testing')
    monkeypatch.setenv('AWS_DEFAULT_REGION', TEST_REGION)
    for name in ('AWS_REGION', 'AWS_PROFILE', 'OPENCLAW_INSTANCE_ID', 'OPENCLAW_BACKUP_PASSPHRASE',
                 'OPENCLAW_BACKUP_CONFIG'):
        monkeypatch.delenv(name, raising=False)

    return tmp_path


@pytest.fixture
def live_data(tmp_path):
    """
    Create a live OpenClaw installation.

    Creates:
    - .openclaw/openclaw.json
    - .openclaw/agents/main/settings.json
    - .openclaw/workspace/notes.md
    - .openclaw/workspace/projects/todo.txt
    """
    root = tmp_path / 'live' / '.openclaw'
    (root / 'agents' / 'main').mkdir(parents=True)
    (root / 'openclaw.json').write_text(json.dumps({'model': 'current', 'version': 3}))
    (root / 'agents' / 'main' / 'settings.json').write_text('{"temperature": 0.2}')

    workspace = root / 'workspace'
    (workspace / 'projects').mkdir(parents=True)
    (workspace / 'notes.md').write_text('# Notes\n')
    (workspace / 'projects' / 'todo.txt').write_text('ship it\n')

    return LiveDataPaths(openclaw_dir=str(root), workspace_dir=str(workspace))


@pytest.fixture
def backup_config(live_data):
    """Unencrypted configuration pointing at the live_data installation."""
    return BackupConfig(
        instance_id='i-test',
        region=TEST_REGION,
        s3=S3Location(bucket=TEST_BUCKET, prefix=TEST_PREFIX),
        encryption=EncryptionPolicy(),
        retention=RetentionPolicy(keep=30, auto_clean=True),
        paths=live_data,
    )


@pytest.fixture
def managed_key_config(backup_config):
    return replace(
        backup_config,
        encryption=EncryptionPolicy(enabled=True, method='managed-key', key_ref='alias/openclaw-test'),
    )


@pytest.fixture
def client_key_config(backup_config):
    return replace(
        backup_config,
        encryption=EncryptionPolicy(enabled=True, method='client-key', key_ref=TEST_KEY_REF),
    )


@pytest.fixture
def key_resolver(tmp_path):
    """KeyResolver with a generated key file for TEST_KEY_REF."""
    keys_dir = tmp_path / 'keys'
    keys_dir.mkdir()
    (keys_dir / key_filename(TEST_KEY_REF)).write_bytes(Fernet.generate_key())
    return KeyResolver(str(keys_dir))


@pytest.fixture
def other_key_resolver(tmp_path):
    """KeyResolver holding a different key under the same reference."""
    keys_dir = tmp_path / 'other-keys'
    keys_dir.mkdir()
    (keys_dir / key_filename(TEST_KEY_REF)).write_bytes(Fernet.generate_key())
    return KeyResolver(str(keys_dir))


@pytest.fixture
def mock_s3():
    """
    Mock AWS S3 service using moto.

    Creates the test bucket in us-east-1 and yields a boto3 client.
    """
    with mock_aws():
        client = boto3.client('s3', region_name=TEST_REGION)
        client.create_bucket(Bucket=TEST_BUCKET)
        yield client


@pytest.fixture
def s3_storage(mock_s3):
    return S3Storage(bucket_name=TEST_BUCKET, region=TEST_REGION, client=mock_s3)


@pytest.fixture
def sample_archive(tmp_path):
    """
    Create an archive laid out like a backup.

    openclaw-aws-backup-2024-01-15T12-00-00/
        openclaw-config/openclaw.json   {"model": "restored"}
        openclaw-config/agents/main/settings.json
        workspace/notes.md              "# Restored notes"
    """
    name = 'openclaw-aws-backup-2024-01-15T12-00-00'
    root = tmp_path / 'archive-src' / name
    (root / 'openclaw-config' / 'agents' / 'main').mkdir(parents=True)
    (root / 'openclaw-config' / 'openclaw.json').write_text('{"model": "restored"}')
    (root / 'openclaw-config' / 'agents' / 'main' / 'settings.json').write_text('{"temperature": 0.9}')
    (root / 'workspace').mkdir()
    (root / 'workspace' / 'notes.md').write_text('# Restored notes\n')

    archive_path = tmp_path / f'{name}.tar.gz'
    with tarfile.open(archive_path, 'w:gz') as tar:
        tar.add(root, arcname=name)

    return archive_path
