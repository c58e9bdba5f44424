"""openclaw-backup - back up and restore an OpenClaw installation to S3.

All prompting happens here; the backup package itself never asks the user
anything.
"""
import os
import sys
import warnings
from typing import Optional

import click

from openclaw_backup import __version__, configure_logging
from openclaw_backup.backup.diagnostics import run_diagnostics
from openclaw_backup.backup.executor import create_backup
from openclaw_backup.backup.restore import (
    STATUS_CANCELLED,
    STATUS_COMPLETE,
    ValidationWarning,
    list_backups,
    restore_backup,
    select_backup,
    would_overwrite_live_data,
)
from openclaw_backup.backup.retention import prune_old_backups
from openclaw_backup.backup.storage import NotFoundError
from openclaw_backup.config import (
    DEFAULT_RETENTION_KEEP,
    ENCRYPTION_CLIENT_KEY,
    ENCRYPTION_MANAGED_KEY,
    ENCRYPTION_METHODS,
    ENCRYPTION_NONE,
    BackupConfig,
    Config,
    ConfigError,
    EncryptionPolicy,
    LiveDataPaths,
    RetentionPolicy,
    S3Location,
    default_storage_prefix,
    load_config,
    save_config,
)
from openclaw_backup.utils.crypto import PASSPHRASE_ENV, KeyResolver
from openclaw_backup.utils.environment import resolve_instance_id, resolve_region
from openclaw_backup.utils.formatting import format_bytes, format_timestamp


def _fail(message: str):
    click.secho(f"Error: {message}", fg='red', err=True)
    sys.exit(1)


def _load(ctx: click.Context) -> BackupConfig:
    try:
        return load_config(ctx.obj['config_file'])
    except ConfigError as e:
        _fail(str(e))


def _key_resolver() -> KeyResolver:
    return KeyResolver(Config.KEYS_DIR)


@click.group()
@click.version_option(version=__version__, prog_name="openclaw-backup")
@click.option('--config-file', type=click.Path(dir_okay=False), default=None,
              envvar='OPENCLAW_BACKUP_CONFIG',
              help='Backup configuration file (default: ~/.openclaw-backup/backup-config.json)')
@click.option('--debug', is_flag=True, default=Config.DEBUG, help='Verbose logging')
@click.pass_context
def cli(ctx: click.Context, config_file: Optional[str], debug: bool) -> None:
    """Back up and restore OpenClaw configuration and workspace to S3.

    \b
    Commands:
        init      Write the backup configuration
        create    Create a backup now
        list      List backups in S3
        restore   Restore a backup
        prune     Delete backups beyond the retention limit
        test      Check configuration, credentials and bucket access
    """
    ctx.ensure_object(dict)
    ctx.obj['config_file'] = config_file or Config.CONFIG_FILE
    configure_logging(Config.LOG_DIR, debug)


@cli.command()
@click.option('--bucket', required=True, help='S3 bucket name')
@click.option('--region', default=None, help='AWS region (default: from the AWS environment)')
@click.option('--instance-id', default=None, help='Instance identifier (default: $OPENCLAW_INSTANCE_ID)')
@click.option('--prefix', default=None, help='Key prefix inside the bucket')
@click.option('--encryption', type=click.Choice(ENCRYPTION_METHODS), default=ENCRYPTION_MANAGED_KEY,
              show_default=True)
@click.option('--key-ref', default=None,
              help='KMS key id/alias (managed-key) or key name (client-key)')
@click.option('--keep', type=click.IntRange(min=1), default=DEFAULT_RETENTION_KEEP, show_default=True,
              help='Number of backups to keep')
@click.option('--no-auto-clean', is_flag=True, help='Do not prune old backups after each backup')
@click.option('--openclaw-dir', type=click.Path(file_okay=False), default=None,
              help='OpenClaw config directory (default: ~/.openclaw)')
@click.option('--workspace-dir', type=click.Path(file_okay=False), default=None,
              help='OpenClaw workspace directory (default: <openclaw-dir>/workspace)')
@click.option('--force', is_flag=True, help='Overwrite an existing configuration')
@click.pass_context
def init(ctx: click.Context, bucket: str, region: Optional[str], instance_id: Optional[str],
         prefix: Optional[str], encryption: str, key_ref: Optional[str], keep: int,
         no_auto_clean: bool, openclaw_dir: Optional[str], workspace_dir: Optional[str],
         force: bool) -> None:
    """Write the backup configuration."""
    config_file = ctx.obj['config_file']
    if os.path.exists(config_file) and not force:
        _fail(f"Configuration already exists at {config_file} (use --force to replace it)")

    instance_id = resolve_instance_id(instance_id)

    if encryption == ENCRYPTION_MANAGED_KEY:
        key_ref = key_ref or f"alias/openclaw-aws-backup-{instance_id}"
    elif encryption == ENCRYPTION_CLIENT_KEY:
        key_ref = key_ref or f"openclaw-backup-{instance_id}"
    else:
        key_ref = None

    paths = None
    if openclaw_dir or workspace_dir:
        root = os.path.abspath(os.path.expanduser(openclaw_dir or Config.OPENCLAW_DIR))
        paths = LiveDataPaths(
            openclaw_dir=root,
            workspace_dir=os.path.abspath(os.path.expanduser(workspace_dir or os.path.join(root, 'workspace'))),
        )

    try:
        config = BackupConfig(
            instance_id=instance_id,
            region=resolve_region(region),
            s3=S3Location(bucket=bucket, prefix=(prefix or default_storage_prefix(instance_id)).strip('/')),
            encryption=EncryptionPolicy(
                enabled=encryption != ENCRYPTION_NONE,
                method=encryption,
                key_ref=key_ref,
            ),
            retention=RetentionPolicy(keep=keep, auto_clean=not no_auto_clean),
            paths=paths,
        )
    except ConfigError as e:
        _fail(str(e))

    path = save_config(config, config_file)
    click.secho(f"✓ Configuration saved: {path}", fg='green')
    click.echo(f"  Bucket:     s3://{config.s3.bucket}/{config.s3.prefix}/")
    click.echo(f"  Region:     {config.region}")
    click.echo(f"  Encryption: {config.encryption.method}" +
               (f" ({config.encryption.key_ref})" if config.encryption.key_ref else ""))
    click.echo(f"  Retention:  keep {config.retention.keep}" +
               (", auto-clean" if config.retention.auto_clean else ""))

    if config.encryption.is_client_key:
        resolver = _key_resolver()
        if not resolver.can_resolve(config.encryption.key_ref):
            click.secho(f"⚠ No key available for {config.encryption.key_ref}. Set {PASSPHRASE_ENV} "
                        f"or place a Fernet key in {resolver.key_path(config.encryption.key_ref)}",
                        fg='yellow')

    click.echo("\nNext: openclaw-backup test")


@cli.command()
@click.option('--exclude', multiple=True, help='Glob pattern to leave out (repeatable)')
@click.option('--allow-overwrite', is_flag=True,
              help='Reuse the archive name if it already exists instead of adding a suffix')
@click.pass_context
def create(ctx: click.Context, exclude: tuple, allow_overwrite: bool) -> None:
    """Create a backup now."""
    config = _load(ctx)

    click.secho(f"Creating backup for instance {config.instance_id}...", fg='cyan', bold=True)
    try:
        result = create_backup(
            config,
            key_resolver=_key_resolver(),
            exclude_patterns=list(exclude) or None,
            allow_overwrite=allow_overwrite,
        )
    except Exception as e:
        _fail(f"Backup failed: {e}")

    click.secho(f"✓ Backup complete: {result.name}", fg='green')
    click.echo(f"  Location: {result.remote_location}")
    click.echo(f"  Size:     {format_bytes(result.size_bytes)}")
    click.echo(f"  Encryption: {result.encryption_method}")
    if result.pruned and result.pruned.deleted_count:
        click.echo(f"  Removed {result.pruned.deleted_count} old backup(s)")
    for warning in result.warnings:
        click.secho(f"⚠ {warning}", fg='yellow')


@cli.command(name='list')
@click.pass_context
def list_command(ctx: click.Context) -> None:
    """List backups in S3, newest first."""
    config = _load(ctx)

    try:
        entries = list_backups(config)
    except Exception as e:
        _fail(f"Failed to list backups: {e}")

    if not entries:
        click.echo(f"No backups found in s3://{config.s3.bucket}/{config.s3.prefix}/")
        return

    click.secho(f"Backups in s3://{config.s3.bucket}/{config.s3.prefix}/", bold=True)
    for index, entry in enumerate(entries, 1):
        click.echo(f"  {index:>3}. {entry.name}  {format_timestamp(entry.last_modified)}  "
                   f"{format_bytes(entry.size_bytes):>10}")
    click.echo(f"\n{len(entries)} backup(s), keeping {config.retention.keep}")


@cli.command()
@click.argument('name', required=False)
@click.option('--yes', '-y', is_flag=True, help='Do not ask for confirmation (restores the latest backup '
                                                 'when NAME is omitted)')
@click.option('--keep-pre-restore-copy', is_flag=True,
              help='Keep a copy of the current config next to it before replacing it')
@click.pass_context
def restore(ctx: click.Context, name: Optional[str], yes: bool, keep_pre_restore_copy: bool) -> None:
    """Restore a backup over the current OpenClaw data.

    NAME is an archive name or key as shown by `list`. Without it you are
    asked to pick one.
    """
    config = _load(ctx)

    try:
        entries = list_backups(config)
    except Exception as e:
        _fail(f"Failed to list backups: {e}")

    if not entries:
        _fail(f"No backups found in s3://{config.s3.bucket}/{config.s3.prefix}/")

    if name:
        try:
            entry = select_backup(entries, name)
        except NotFoundError as e:
            _fail(str(e))
    elif yes:
        entry = entries[0]
    else:
        for index, candidate in enumerate(entries, 1):
            click.echo(f"  {index:>3}. {candidate.name}  {format_timestamp(candidate.last_modified)}  "
                       f"{format_bytes(candidate.size_bytes):>10}")
        choice = click.prompt("Select backup to restore", type=click.IntRange(1, len(entries)), default=1)
        entry = entries[choice - 1]

    confirmed = yes
    if not confirmed:
        if would_overwrite_live_data(config.live_paths):
            click.secho(f"This will replace {config.live_paths.openclaw_dir} and "
                        f"{config.live_paths.workspace_dir}.", fg='yellow')
        confirmed = click.confirm(click.style(f"Restore {entry.name}?", fg='red'))

    # Validation problems are printed from result.warnings below
    with warnings.catch_warnings():
        warnings.simplefilter('ignore', ValidationWarning)
        result = restore_backup(
            config,
            entry.storage_key,
            confirmed=confirmed,
            key_resolver=_key_resolver(),
            keep_pre_restore_copy=keep_pre_restore_copy,
        )

    for warning in result.warnings:
        click.secho(f"⚠ {warning}", fg='yellow')

    if result.status == STATUS_CANCELLED:
        click.echo("Restore cancelled")
        return
    if result.status != STATUS_COMPLETE:
        _fail(f"Restore failed: {result.error}")

    click.secho(f"✓ Restored {result.name}", fg='green')
    if result.pre_restore_copy:
        click.echo(f"  Previous config kept at: {result.pre_restore_copy}")
    click.echo("  Restart OpenClaw for the changes to take effect")


@cli.command()
@click.pass_context
def prune(ctx: click.Context) -> None:
    """Delete backups beyond the retention limit."""
    config = _load(ctx)

    try:
        result = prune_old_backups(config)
    except Exception as e:
        _fail(f"Prune failed: {e}")

    for name in result.deleted:
        click.echo(f"  Deleted {name}")
    click.secho(f"✓ Deleted {result.deleted_count}, kept {len(result.kept)}",
                fg='green' if not result.errors else 'yellow')
    for error in result.errors:
        click.secho(f"⚠ {error}", fg='yellow')
    if result.errors:
        sys.exit(1)


@cli.command()
@click.pass_context
def test(ctx: click.Context) -> None:
    """Check configuration, credentials and bucket access."""
    config = _load(ctx)

    click.secho("Testing backup configuration...", fg='cyan', bold=True)
    try:
        results = run_diagnostics(config, key_resolver=_key_resolver())
    except Exception as e:
        _fail(str(e))

    for check in results:
        mark, colour = ('✓', 'green') if check.passed else ('✗', 'red')
        click.secho(f" {mark} {check.name}: {check.message}", fg=colour)

    if not all(check.passed for check in results):
        _fail("Some checks failed")
    click.secho("All checks passed", fg='green')


def main():
    cli(obj={})


if __name__ == '__main__':
    main()
