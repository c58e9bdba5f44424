import json
import os
import tempfile
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

from openclaw_backup.utils.environment import resolve_instance_id, resolve_region
from openclaw_backup.utils.formatting import validate_bucket_name


class Config:
    """Filesystem locations, overridable through the environment"""

    HOME_DIR = os.environ.get('OPENCLAW_BACKUP_HOME') or os.path.expanduser('~/.openclaw-backup')
    CONFIG_FILE = os.path.join(HOME_DIR, 'backup-config.json')
    METADATA_DIR = os.path.join(HOME_DIR, 'backups')
    KEYS_DIR = os.environ.get('OPENCLAW_BACKUP_KEYS_DIR') or os.path.join(HOME_DIR, 'keys')
    LOG_DIR = os.environ.get('OPENCLAW_BACKUP_LOG_DIR') or os.path.join(HOME_DIR, 'logs')

    # Scratch space for snapshots, archives and extraction
    TEMP_DIR = os.environ.get('OPENCLAW_BACKUP_TEMP_DIR') or tempfile.gettempdir()

    # Live data
    OPENCLAW_DIR = os.environ.get('OPENCLAW_DIR') or os.path.expanduser('~/.openclaw')

    DEBUG = os.environ.get('OPENCLAW_BACKUP_DEBUG', 'false').lower() == 'true'

    @classmethod
    def for_home(cls, home_dir: str) -> 'Config':
        """Build a Config rooted at another home directory."""
        settings = cls()
        settings.HOME_DIR = home_dir
        settings.CONFIG_FILE = os.path.join(home_dir, 'backup-config.json')
        settings.METADATA_DIR = os.path.join(home_dir, 'backups')
        settings.KEYS_DIR = os.path.join(home_dir, 'keys')
        settings.LOG_DIR = os.path.join(home_dir, 'logs')
        return settings


class ConfigError(ValueError):
    """Raised when the backup configuration is invalid."""
    pass


class ConfigMissingError(ConfigError):
    """Raised when no backup configuration exists."""
    pass


ENCRYPTION_NONE = 'none'
ENCRYPTION_MANAGED_KEY = 'managed-key'
ENCRYPTION_CLIENT_KEY = 'client-key'
ENCRYPTION_METHODS = (ENCRYPTION_NONE, ENCRYPTION_MANAGED_KEY, ENCRYPTION_CLIENT_KEY)

# Method names written by earlier releases of the tool
LEGACY_METHODS = {
    'kms': ENCRYPTION_MANAGED_KEY,
    'gpg': ENCRYPTION_CLIENT_KEY,
}

DEFAULT_RETENTION_KEEP = 30
DEFAULT_ARCHIVE_PREFIX = 'openclaw-aws-backup'


@dataclass(frozen=True)
class S3Location:
    bucket: str
    prefix: str


@dataclass(frozen=True)
class EncryptionPolicy:
    enabled: bool = False
    method: str = ENCRYPTION_NONE
    key_ref: Optional[str] = None

    @property
    def is_client_key(self) -> bool:
        return self.enabled and self.method == ENCRYPTION_CLIENT_KEY

    @property
    def is_managed_key(self) -> bool:
        return self.enabled and self.method == ENCRYPTION_MANAGED_KEY


@dataclass(frozen=True)
class RetentionPolicy:
    keep: int = DEFAULT_RETENTION_KEEP
    auto_clean: bool = True


@dataclass(frozen=True)
class LiveDataPaths:
    """Where the application keeps its live configuration and workspace."""

    openclaw_dir: str
    workspace_dir: str
    primary_config: str = 'openclaw.json'

    @property
    def workspace_is_nested(self) -> bool:
        config_root = Path(self.openclaw_dir)
        return config_root in Path(self.workspace_dir).parents


@dataclass(frozen=True)
class BackupConfig:
    """
    Immutable backup configuration.

    Built once per invocation and handed to each executor; nothing in the
    package mutates it or looks it up globally.
    """

    instance_id: str
    region: str
    s3: S3Location
    encryption: EncryptionPolicy = field(default_factory=EncryptionPolicy)
    retention: RetentionPolicy = field(default_factory=RetentionPolicy)
    paths: Optional[LiveDataPaths] = None
    archive_prefix: str = DEFAULT_ARCHIVE_PREFIX

    def __post_init__(self):
        validate_config(self)

    @property
    def live_paths(self) -> LiveDataPaths:
        if self.paths is not None:
            return self.paths
        return default_live_paths()

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        if self.paths is None:
            data.pop('paths')
        return data


def default_live_paths(openclaw_dir: Optional[str] = None) -> LiveDataPaths:
    root = openclaw_dir or Config.OPENCLAW_DIR
    return LiveDataPaths(openclaw_dir=root, workspace_dir=os.path.join(root, 'workspace'))


def default_storage_prefix(instance_id: str) -> str:
    return f"openclaw-aws-backups/instance-{instance_id}"


def validate_config(config: BackupConfig):
    """
    Check configuration invariants.

    Raises:
        ConfigError: If any invariant is violated
    """
    if not config.instance_id:
        raise ConfigError("instance_id is required")
    if not config.region:
        raise ConfigError("region is required")

    if not config.s3.bucket:
        raise ConfigError("s3.bucket is required")
    if not validate_bucket_name(config.s3.bucket):
        raise ConfigError(f"Invalid S3 bucket name: {config.s3.bucket}")
    if not config.s3.prefix.strip('/'):
        raise ConfigError("s3.prefix is required")

    if not isinstance(config.retention.keep, int) or config.retention.keep < 1:
        raise ConfigError(f"retention.keep must be at least 1 (got {config.retention.keep!r})")

    policy = config.encryption
    if policy.method not in ENCRYPTION_METHODS:
        raise ConfigError(
            f"Invalid encryption method: {policy.method}. Valid options: {list(ENCRYPTION_METHODS)}"
        )
    if policy.enabled and policy.method == ENCRYPTION_NONE:
        raise ConfigError("encryption is enabled but no method is set")
    if not policy.enabled and policy.method != ENCRYPTION_NONE:
        raise ConfigError(f"encryption method {policy.method} is set but encryption is disabled")
    if policy.enabled and not policy.key_ref:
        raise ConfigError(f"encryption.key_ref is required for {policy.method}")

    if not config.archive_prefix:
        raise ConfigError("archive_prefix is required")


def _parse_encryption(data: Dict[str, Any]) -> EncryptionPolicy:
    enabled = bool(data.get('enabled', False))
    method = data.get('method') or ENCRYPTION_NONE
    method = LEGACY_METHODS.get(method, method)
    key_ref = data.get('key_ref') or data.get('kmsKeyAlias') or data.get('gpgRecipient')
    return EncryptionPolicy(enabled=enabled, method=method, key_ref=key_ref)


def config_from_dict(data: Dict[str, Any]) -> BackupConfig:
    """
    Build a BackupConfig from its JSON form.

    Region and instance id fall back through the environment when absent.

    Raises:
        ConfigError: If the data is malformed
    """
    if not isinstance(data, dict):
        raise ConfigError("Configuration must be a JSON object")

    instance_id = resolve_instance_id(data.get('instance_id') or data.get('instanceId'))
    region = resolve_region(data.get('region'))

    s3_data = data.get('s3') or {}
    s3 = S3Location(
        bucket=s3_data.get('bucket', ''),
        prefix=s3_data.get('prefix') or default_storage_prefix(instance_id),
    )

    retention_data = data.get('retention') or {}
    retention = RetentionPolicy(
        keep=retention_data.get('keep', DEFAULT_RETENTION_KEEP),
        auto_clean=bool(retention_data.get('auto_clean', retention_data.get('autoClean', True))),
    )

    paths = None
    paths_data = data.get('paths')
    if paths_data:
        openclaw_dir = os.path.expanduser(paths_data.get('openclaw_dir') or Config.OPENCLAW_DIR)
        paths = LiveDataPaths(
            openclaw_dir=openclaw_dir,
            workspace_dir=os.path.expanduser(
                paths_data.get('workspace_dir') or os.path.join(openclaw_dir, 'workspace')
            ),
            primary_config=paths_data.get('primary_config') or 'openclaw.json',
        )

    return BackupConfig(
        instance_id=instance_id,
        region=region,
        s3=s3,
        encryption=_parse_encryption(data.get('encryption') or {}),
        retention=retention,
        paths=paths,
        archive_prefix=data.get('archive_prefix') or DEFAULT_ARCHIVE_PREFIX,
    )


def load_config(config_file: Optional[str] = None) -> BackupConfig:
    """
    Load the backup configuration from disk.

    Raises:
        ConfigMissingError: If the file does not exist
        ConfigError: If the file is unreadable or invalid
    """
    path = config_file or Config.CONFIG_FILE

    if not os.path.exists(path):
        raise ConfigMissingError(f"No configuration found at {path}. Run: openclaw-backup init")

    try:
        with open(path, 'r') as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigError(f"Failed to read configuration {path}: {e}") from e

    return config_from_dict(data)


def save_config(config: BackupConfig, config_file: Optional[str] = None) -> str:
    """Write the configuration as JSON, replacing any previous record."""
    path = config_file or Config.CONFIG_FILE
    os.makedirs(os.path.dirname(path) or '.', exist_ok=True)

    tmp_path = f"{path}.tmp"
    with open(tmp_path, 'w') as f:
        json.dump(config.to_dict(), f, indent=2)
    os.replace(tmp_path, path)
    return path
