# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
pgsnap command line.

Every failure ends the process with a status that identifies the failing
stage, so cron wrappers and operators can tell them apart:

    backup:  1 db auth, 2 storage keys, 3 account/bucket, 4 region,
             10 export, 20 upload
    restore: 1 usage, 2 db auth, 3 download, 4 apply, 5 storage keys,
             6 region, 7 account id

Both: 75 another run holds the lock, 78 invalid configuration.
"""

import asyncio
from pathlib import Path
from typing import Dict, List, NoReturn, Tuple, Type

import click
from rich.console import Console
from rich.table import Table

from pgsnap import __version__
from pgsnap.config import PipelineConfig
from pgsnap.core import list_remote, run_backup, run_restore, run_upload
from pgsnap.env import create_config_from_env, legacy_always_purge, local_dirs_from_env
from pgsnap.exceptions import (
    CompressionError,
    ConfigurationError,
    DownloadError,
    ExportError,
    PgSnapError,
    PreconditionMissing,
    RestoreApplyError,
    RunLockedError,
    TransferError,
    UploadError,
    UsageError,
)
from pgsnap.log import configure_logging
from pgsnap.naming import filename_from_uri, parse_remote_uri
from pgsnap.storage.retention import (
    cleanup_restore_artifacts,
    list_local_artifacts,
    prune_stale_runs,
)
from pgsnap.validation import PreconditionCheck

EXIT_LOCKED = 75
EXIT_CONFIG = 78

BACKUP_PRECONDITION_CODES: Dict[PreconditionCheck, int] = {
    PreconditionCheck.DB_AUTH: 1,
    PreconditionCheck.STORAGE_CREDENTIALS: 2,
    PreconditionCheck.STORAGE_LOCATION: 3,
    PreconditionCheck.STORAGE_REGION: 4,
}

RESTORE_PRECONDITION_CODES: Dict[PreconditionCheck, int] = {
    PreconditionCheck.DB_AUTH: 2,
    PreconditionCheck.STORAGE_CREDENTIALS: 5,
    PreconditionCheck.STORAGE_REGION: 6,
    PreconditionCheck.STORAGE_LOCATION: 7,
}

# Checked in order, so subclasses come before their bases
BACKUP_ERROR_CODES: List[Tuple[Type[PgSnapError], int]] = [
    (ExportError, 10),
    (CompressionError, 10),
    (UploadError, 20),
    (TransferError, 20),
    (RunLockedError, EXIT_LOCKED),
    (ConfigurationError, EXIT_CONFIG),
]

RESTORE_ERROR_CODES: List[Tuple[Type[PgSnapError], int]] = [
    (UsageError, 1),
    (DownloadError, 3),
    (TransferError, 3),
    (RestoreApplyError, 4),
    (CompressionError, 4),
    (RunLockedError, EXIT_LOCKED),
    (ConfigurationError, EXIT_CONFIG),
]

RESTORE_USAGE = "Usage: pgsnap restore s3://<bucket>/<path>/<filename>.sql.gz"


class RestoreCommand(click.Command):
    """Reports click's own argument errors with the restore usage status."""

    def parse_args(self, ctx, args):
        try:
            return super().parse_args(ctx, args)
        except click.UsageError as e:
            e.exit_code = 1
            raise


def exit_code_for(
    error: PgSnapError,
    precondition_codes: Dict[PreconditionCheck, int],
    error_codes: List[Tuple[Type[PgSnapError], int]],
) -> int:
    """Map a pipeline error to the process exit status."""
    if isinstance(error, PreconditionMissing):
        return precondition_codes.get(error.check, 1)
    for error_cls, code in error_codes:
        if isinstance(error, error_cls):
            return code
    return 1


def _fail(
    error: PgSnapError,
    precondition_codes: Dict[PreconditionCheck, int],
    error_codes: List[Tuple[Type[PgSnapError], int]],
) -> NoReturn:
    click.echo(f"[ERROR] {error.message}", err=True)
    raise SystemExit(exit_code_for(error, precondition_codes, error_codes))


def _load_config() -> PipelineConfig:
    try:
        return create_config_from_env()
    except ConfigurationError as e:
        click.echo(f"[ERROR] {e}", err=True)
        raise SystemExit(EXIT_CONFIG)


@click.group()
@click.version_option(version=__version__)
@click.option("-v", "--verbose", is_flag=True, help="Log debug output.")
@click.option("--json-logs", is_flag=True, help="Log JSON lines instead of console output.")
def main(verbose, json_logs):
    """pgsnap: PostgreSQL snapshots to S3-compatible object storage."""
    configure_logging(level="DEBUG" if verbose else "INFO", json_output=json_logs)


@main.command()
@click.option(
    "--purge-always",
    is_flag=True,
    help="Delete the local artifact even when the upload fails.",
)
def backup(purge_always):
    """Export the database, compress it and upload it.

    The local artifact is removed after a successful upload and kept after
    a failure (see `pgsnap upload` to retry it).
    """
    config = _load_config()
    if purge_always:
        config = legacy_always_purge(config)

    try:
        result = asyncio.run(run_backup(config))
    except PgSnapError as e:
        _fail(e, BACKUP_PRECONDITION_CODES, BACKUP_ERROR_CODES)

    click.echo(result.remote_uri)


@main.command(cls=RestoreCommand)
@click.argument("remote_uris", nargs=-1, metavar="REMOTE_URI")
@click.option("--cleanup", is_flag=True, help="Delete the downloaded artifact afterwards.")
def restore(remote_uris, cleanup):
    """Download a snapshot and replay it into the database.

    Example: pgsnap restore s3://backups-bucket/daily/orders_01-06-2025_02:00.sql.gz
    """
    if len(remote_uris) != 1:
        click.echo(RESTORE_USAGE, err=True)
        raise SystemExit(1)

    remote_uri = remote_uris[0]
    try:
        parse_remote_uri(remote_uri)
        filename_from_uri(remote_uri)
    except UsageError as e:
        click.echo(f"[ERROR] {e.message}", err=True)
        click.echo(RESTORE_USAGE, err=True)
        raise SystemExit(1)

    config = _load_config()

    try:
        result = asyncio.run(run_restore(config, remote_uri, cleanup=cleanup))
    except PgSnapError as e:
        _fail(e, RESTORE_PRECONDITION_CODES, RESTORE_ERROR_CODES)

    click.echo(f"Restored {result.remote_uri} into '{config.connection.database}'")


@main.command("cleanup-restore")
@click.argument("filename", required=False)
def cleanup_restore(filename):
    """Delete downloaded artifacts from the restore directory.

    Safe to run repeatedly. Without FILENAME every artifact is removed.
    """
    try:
        _, restore_dir = local_dirs_from_env()
    except ConfigurationError as e:
        click.echo(f"[ERROR] {e}", err=True)
        raise SystemExit(EXIT_CONFIG)

    if filename is not None and Path(filename).name != filename:
        click.echo(f"[ERROR] Expected a bare filename, got {filename!r}", err=True)
        raise SystemExit(1)

    removed = cleanup_restore_artifacts(restore_dir, filename)
    click.echo(f"Removed {len(removed)} file(s) from {restore_dir}")


@main.command()
@click.argument("path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def upload(path):
    """Upload an artifact kept by a failed backup."""
    config = _load_config()

    try:
        result = asyncio.run(run_upload(config, path))
    except PgSnapError as e:
        _fail(e, BACKUP_PRECONDITION_CODES, BACKUP_ERROR_CODES)

    click.echo(result.remote_uri)


@main.command("list")
@click.option("--prefix", default=None, help="Path prefix to list (default: R2_PATH).")
@click.option("--local", "local", is_flag=True, help="List artifacts kept in the local backup directory instead.")
def list_cmd(prefix, local):
    """List snapshot artifacts in object storage, newest first.

    With --local, list artifacts kept by failed backups instead.
    """
    console = Console()

    if local:
        _list_local(console)
        return

    config = _load_config()

    try:
        artifacts = asyncio.run(list_remote(config, prefix))
    except PgSnapError as e:
        _fail(e, BACKUP_PRECONDITION_CODES, RESTORE_ERROR_CODES)

    if not artifacts:
        console.print("[dim]No snapshots found.[/dim]")
        return

    table = Table(title=f"Snapshots in {config.remote.bucket}")
    table.add_column("Remote address", style="bold cyan")
    table.add_column("Database")
    table.add_column("Taken", style="dim")
    table.add_column("Size", justify="right")

    for artifact in artifacts:
        table.add_row(
            f"s3://{config.remote.bucket}/{artifact.key}",
            artifact.database_name or "?",
            artifact.timestamp.strftime("%Y-%m-%d %H:%M") if artifact.timestamp else "?",
            _human_size(artifact.size),
        )

    console.print(table)


def _list_local(console: Console) -> None:
    try:
        backup_dir, _ = local_dirs_from_env()
    except ConfigurationError as e:
        click.echo(f"[ERROR] {e}", err=True)
        raise SystemExit(EXIT_CONFIG)

    artifacts = list_local_artifacts(backup_dir)
    if not artifacts:
        console.print(f"[dim]No kept artifacts in {backup_dir}.[/dim]")
        return

    table = Table(title=f"Kept in {backup_dir}")
    table.add_column("Run", style="dim")
    table.add_column("File", style="bold cyan")
    table.add_column("Size", justify="right")

    for artifact in artifacts:
        table.add_row(
            artifact["run_id"] or "-",
            artifact["filename"],
            _human_size(artifact["size"]),
        )

    console.print(table)
    total = sum(a["size"] for a in artifacts)
    click.echo(f"{len(artifacts)} kept artifact(s), {_human_size(total)}")


@main.command()
@click.option("--older-than", "days", type=click.IntRange(min=0), default=7, show_default=True,
              help="Prune kept runs older than this many days.")
@click.option("--dry-run", is_flag=True, help="Only report what would be deleted.")
def prune(days, dry_run):
    """Delete local artifacts kept by old failed backups."""
    try:
        backup_dir, _ = local_dirs_from_env()
        runs, freed = prune_stale_runs(backup_dir, days, dry_run=dry_run)
    except ConfigurationError as e:
        click.echo(f"[ERROR] {e}", err=True)
        raise SystemExit(EXIT_CONFIG)

    verb = "Would remove" if dry_run else "Removed"
    click.echo(f"{verb} {runs} run(s), {_human_size(freed)}")


@main.command()
@click.option("--at", "at", default=None, help="Daily time in HH:MM UTC (default: PGSNAP_SCHEDULE or 02:00).")
def schedule(at):
    """Run backups daily until interrupted."""
    from pgsnap.scheduler import run_scheduler
    from pgsnap.validation import validate

    config = _load_config()
    try:
        if at:
            config = config.with_updates(schedule_cron=at)
        validate(config)
    except PgSnapError as e:
        _fail(e, BACKUP_PRECONDITION_CODES, BACKUP_ERROR_CODES)

    try:
        asyncio.run(run_scheduler(config))
    except KeyboardInterrupt:
        click.echo("Scheduler stopped.")


def _human_size(size: int) -> str:
    value = float(size)
    for unit in ("B", "KiB", "MiB", "GiB"):
        if value < 1024 or unit == "GiB":
            return f"{value:.0f} {unit}" if unit == "B" else f"{value:.1f} {unit}"
        value /= 1024
    return f"{size} B"


if __name__ == "__main__":
    main()
