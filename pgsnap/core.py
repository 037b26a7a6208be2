# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
pgsnap Core - Backup and restore pipeline orchestration.

Each invocation is one linear run through a small state machine:

    backup:   INIT -> EXPORTED -> COMPRESSED -> UPLOADED -> CLEANED
    restore:  INIT -> DOWNLOADED -> APPLIED -> CLEANED
    upload:   COMPRESSED -> UPLOADED -> CLEANED   (retry of a kept artifact)

Any non-terminal state can move to FAILED, which records the failing
stage. A failure is never retried or downgraded here: the run applies its
retention policy and re-raises the original exception.
"""

import asyncio
from dataclasses import dataclass, field, replace
from datetime import datetime, UTC
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, List, Type

import structlog
from ulid import ULID

from pgsnap.backup.manager import write_snapshot
from pgsnap.backup.restore import apply_snapshot
from pgsnap.config import PipelineConfig, RetentionAction
from pgsnap.exceptions import (
    DownloadError,
    ExportError,
    PgSnapError,
    RestoreApplyError,
    UploadError,
)
from pgsnap.lock import run_lock
from pgsnap.naming import (
    SnapshotArtifact,
    filename_from_uri,
    object_key,
    parse_artifact_filename,
    parse_remote_uri,
    resolve_remote_uri,
)
from pgsnap.storage.compressor import decompress_stream, iter_file
from pgsnap.storage.retention import apply_retention, cleanup_restore_artifacts
from pgsnap.storage.transfer import (
    RemoteArtifact,
    create_s3_client,
    download_artifact,
    list_artifacts,
    upload_artifact,
)
from pgsnap.validation import validate

logger = structlog.get_logger()


class PipelineKind(str, Enum):
    BACKUP = "backup"
    RESTORE = "restore"
    UPLOAD = "upload"


class PipelineStage(str, Enum):
    """Stage that was running when a pipeline failed."""

    PRECONDITIONS = "preconditions"
    LOCK = "lock"
    EXPORT = "export"
    UPLOAD = "upload"
    DOWNLOAD = "download"
    APPLY = "apply"


class PipelineState(str, Enum):
    INIT = "init"
    EXPORTED = "exported"
    COMPRESSED = "compressed"
    UPLOADED = "uploaded"
    DOWNLOADED = "downloaded"
    APPLIED = "applied"
    CLEANED = "cleaned"
    FAILED = "failed"


TERMINAL_STATES = {PipelineState.CLEANED, PipelineState.FAILED}

VALID_TRANSITIONS: dict[PipelineState, set[PipelineState]] = {
    PipelineState.INIT: {PipelineState.EXPORTED, PipelineState.DOWNLOADED, PipelineState.FAILED},
    PipelineState.EXPORTED: {PipelineState.COMPRESSED, PipelineState.FAILED},
    PipelineState.COMPRESSED: {PipelineState.UPLOADED, PipelineState.FAILED},
    PipelineState.UPLOADED: {PipelineState.CLEANED, PipelineState.FAILED},
    PipelineState.DOWNLOADED: {PipelineState.APPLIED, PipelineState.FAILED},
    PipelineState.APPLIED: {PipelineState.CLEANED, PipelineState.FAILED},
    PipelineState.CLEANED: set(),
    PipelineState.FAILED: set(),
}


class TransitionRuleError(ValueError):
    """Raised when an invalid pipeline state transition is requested."""


def ensure_transition_allowed(current: PipelineState, target: PipelineState) -> None:
    if current in TERMINAL_STATES:
        raise TransitionRuleError(f"Cannot transition terminal state '{current.value}'.")

    allowed_targets = VALID_TRANSITIONS[current]
    if target not in allowed_targets:
        allowed_text = ", ".join(sorted(state.value for state in allowed_targets))
        raise TransitionRuleError(
            f"Invalid transition '{current.value}' -> '{target.value}'. Allowed: [{allowed_text}]"
        )


@dataclass
class PipelineRun:
    """State of one pipeline invocation."""

    kind: PipelineKind
    run_id: str = field(default_factory=lambda: str(ULID()))
    state: PipelineState = PipelineState.INIT
    history: List[PipelineState] = field(default_factory=list)
    failed_stage: PipelineStage | None = None
    error: str | None = None
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def __post_init__(self) -> None:
        if not self.history:
            self.history.append(self.state)

    def advance(self, target: PipelineState) -> None:
        ensure_transition_allowed(self.state, target)
        self.state = target
        self.history.append(target)

    def fail(self, stage: PipelineStage, error: BaseException) -> None:
        if self.state not in TERMINAL_STATES:
            self.advance(PipelineState.FAILED)
        self.failed_stage = stage
        self.error = str(error)

    @property
    def elapsed_seconds(self) -> float:
        return (datetime.now(UTC) - self.started_at).total_seconds()


@dataclass
class BackupResult:
    """Result of a backup (or upload retry) run."""

    run_id: str
    artifact: SnapshotArtifact
    remote_uri: str
    state: str
    original_size: int
    compressed_size: int
    duration_seconds: float
    local_retained: bool
    history: List[str] = field(default_factory=list)


@dataclass
class RestoreResult:
    """Result of a restore run."""

    run_id: str
    remote_uri: str
    local_path: Path
    state: str
    downloaded_bytes: int
    applied_bytes: int
    duration_seconds: float
    local_retained: bool
    history: List[str] = field(default_factory=list)


async def _run_stage(
    awaitable: Awaitable[Any],
    timeout: float | None,
    error_cls: Type[PgSnapError],
    what: str,
) -> Any:
    """Await one blocking stage, converting a timeout into the stage's error."""
    try:
        return await asyncio.wait_for(awaitable, timeout)
    except TimeoutError as e:
        raise error_cls(
            f"{what} timed out after {timeout}s",
            details={"timeout": timeout},
        ) from e


def _record_failure(run: PipelineRun, stage: PipelineStage, error: BaseException, log: Any) -> None:
    run.fail(stage, error)
    if isinstance(error, PgSnapError):
        error.run = run
    log.error(
        f"{run.kind.value}_failed",
        stage=stage.value,
        error=str(error),
        duration=run.elapsed_seconds,
    )


async def run_backup(config: PipelineConfig, now: datetime | None = None) -> BackupResult:
    """
    Run the backup pipeline: export, compress, upload, apply retention.

    Args:
        config: Pipeline configuration
        now: Snapshot time (default: current UTC time)

    Returns:
        BackupResult for the completed run

    Raises:
        PreconditionMissing: A required credential is absent (no side effects)
        RunLockedError: Another run holds the lock file
        ExportError / CompressionError: pg_dump or compression failed
        UploadError: The artifact did not reach object storage intact
    """
    run = PipelineRun(PipelineKind.BACKUP)
    log = logger.bind(run_id=run.run_id, pipeline="backup")

    try:
        validate(config)
    except PgSnapError as e:
        _record_failure(run, PipelineStage.PRECONDITIONS, e, log)
        raise

    try:
        with run_lock(config.lock_path):
            return await _backup(config, run, now, log)
    except PgSnapError as e:
        if run.state not in TERMINAL_STATES:
            _record_failure(run, PipelineStage.LOCK, e, log)
        raise


async def _backup(
    config: PipelineConfig,
    run: PipelineRun,
    now: datetime | None,
    log: Any,
) -> BackupResult:
    remote = config.remote
    timestamp = (now or datetime.now(UTC)).replace(second=0, microsecond=0)
    artifact = SnapshotArtifact(
        database_name=config.connection.database,
        timestamp=timestamp,
    )
    workdir = config.backup_dir / run.run_id
    key = object_key(remote.path_prefix, artifact.filename)
    artifact = replace(
        artifact,
        local_path=workdir / artifact.filename,
        remote_uri=resolve_remote_uri(remote.bucket, remote.path_prefix, artifact.filename),
    )

    log.info(
        "backup_started",
        database=artifact.database_name,
        artifact=artifact.filename,
        remote_uri=artifact.remote_uri,
    )

    stage = PipelineStage.EXPORT
    try:
        stats = await _run_stage(
            write_snapshot(
                config.connection,
                artifact.local_path,
                chunk_size=config.chunk_size,
                compression_level=config.compression_level,
            ),
            config.export_timeout,
            ExportError,
            "Export",
        )
        # Export and compression are a single streamed pass
        run.advance(PipelineState.EXPORTED)
        run.advance(PipelineState.COMPRESSED)

        stage = PipelineStage.UPLOAD
        await _upload(config, artifact.local_path, remote.bucket, key, log)
        run.advance(PipelineState.UPLOADED)

    except Exception as e:
        _record_failure(run, stage, e, log)
        apply_retention(config.backup_retention, False, workdir)
        raise

    local_retained = not apply_retention(config.backup_retention, True, workdir)
    run.advance(PipelineState.CLEANED)

    log.info(
        "backup_completed",
        remote_uri=artifact.remote_uri,
        original_size=stats.original_size,
        compressed_size=stats.compressed_size,
        local_retained=local_retained,
        duration=run.elapsed_seconds,
    )

    return BackupResult(
        run_id=run.run_id,
        artifact=artifact,
        remote_uri=artifact.remote_uri,
        state=run.state.value,
        original_size=stats.original_size,
        compressed_size=stats.compressed_size,
        duration_seconds=run.elapsed_seconds,
        local_retained=local_retained,
        history=[s.value for s in run.history],
    )


async def _upload(
    config: PipelineConfig,
    local_path: Path,
    bucket: str,
    key: str,
    log: Any,
) -> None:
    log.info(
        "upload_started",
        local_path=str(local_path),
        bucket=bucket,
        key=key,
        endpoint=config.remote.resolved_endpoint,
    )
    try:
        async with create_s3_client(config.remote) as s3_client:
            receipt = await _run_stage(
                upload_artifact(
                    s3_client,
                    local_path,
                    bucket,
                    key,
                    multipart_threshold=config.multipart_threshold,
                    part_size=config.part_size,
                ),
                config.transfer_timeout,
                UploadError,
                "Upload",
            )
    except PgSnapError:
        raise
    except Exception as e:
        raise UploadError(
            f"Upload failed: {e}",
            details={"bucket": bucket, "key": key},
        ) from e

    log.info("upload_succeeded", key=key, size=receipt.size, parts=receipt.parts)


async def run_upload(config: PipelineConfig, local_path: Path) -> BackupResult:
    """
    Upload an artifact kept by an earlier failed backup.

    The artifact keeps its original name, so the remote address matches
    what the failed run would have produced. On success the backup
    retention policy is applied to the artifact's run directory (only if
    it lives inside the configured backup directory).

    Raises:
        PreconditionMissing: A required credential is absent
        UploadError: The artifact did not reach object storage intact
    """
    run = PipelineRun(PipelineKind.UPLOAD, state=PipelineState.COMPRESSED)
    log = logger.bind(run_id=run.run_id, pipeline="upload")

    try:
        validate(config)
    except PgSnapError as e:
        _record_failure(run, PipelineStage.PRECONDITIONS, e, log)
        raise

    remote = config.remote
    local_path = Path(local_path)
    parsed = parse_artifact_filename(local_path.name)
    if parsed:
        database_name, timestamp = parsed
    else:
        database_name, timestamp = config.connection.database, run.started_at
    key = object_key(remote.path_prefix, local_path.name)
    remote_uri = resolve_remote_uri(remote.bucket, remote.path_prefix, local_path.name)
    artifact = SnapshotArtifact(
        database_name=database_name,
        timestamp=timestamp,
        local_path=local_path,
        remote_uri=remote_uri,
    )
    size = local_path.stat().st_size if local_path.exists() else 0

    try:
        with run_lock(config.lock_path):
            try:
                await _upload(config, local_path, remote.bucket, key, log)
            except Exception as e:
                _record_failure(run, PipelineStage.UPLOAD, e, log)
                raise
    except PgSnapError as e:
        if run.state not in TERMINAL_STATES:
            _record_failure(run, PipelineStage.LOCK, e, log)
        raise

    run.advance(PipelineState.UPLOADED)

    local_retained = True
    run_dir = local_path.resolve().parent
    if run_dir.parent == config.backup_dir.resolve():
        local_retained = not apply_retention(config.backup_retention, True, run_dir)
    run.advance(PipelineState.CLEANED)

    log.info("upload_retry_completed", remote_uri=remote_uri, local_retained=local_retained)

    return BackupResult(
        run_id=run.run_id,
        artifact=artifact,
        remote_uri=remote_uri,
        state=run.state.value,
        original_size=0,
        compressed_size=size,
        duration_seconds=run.elapsed_seconds,
        local_retained=local_retained,
        history=[s.value for s in run.history],
    )


async def run_restore(
    config: PipelineConfig,
    remote_uri: str,
    cleanup: bool = False,
) -> RestoreResult:
    """
    Run the restore pipeline: download, decompress, apply.

    The remote address is checked before anything else; a malformed
    address fails without any network or database activity.

    Args:
        config: Pipeline configuration (bucket is taken from the address)
        remote_uri: s3://<bucket>/<path>/<filename>.sql.gz
        cleanup: Delete the downloaded artifact afterwards, whatever the
            outcome (default: apply config.restore_retention)

    Raises:
        UsageError: The address is malformed
        PreconditionMissing: A required credential is absent
        DownloadError: The artifact could not be fetched
        RestoreApplyError: The target database rejected the snapshot
    """
    run = PipelineRun(PipelineKind.RESTORE)
    log = logger.bind(run_id=run.run_id, pipeline="restore")

    try:
        bucket, key = parse_remote_uri(remote_uri)
        filename = filename_from_uri(remote_uri)
        validate(config, require_bucket=False)
    except PgSnapError as e:
        _record_failure(run, PipelineStage.PRECONDITIONS, e, log)
        raise

    try:
        with run_lock(config.lock_path):
            return await _restore(config, run, remote_uri, bucket, key, filename, cleanup, log)
    except PgSnapError as e:
        if run.state not in TERMINAL_STATES:
            _record_failure(run, PipelineStage.LOCK, e, log)
        raise


async def _restore(
    config: PipelineConfig,
    run: PipelineRun,
    remote_uri: str,
    bucket: str,
    key: str,
    filename: str,
    cleanup: bool,
    log: Any,
) -> RestoreResult:
    local_path = config.restore_dir / filename

    log.info(
        "restore_started",
        remote_uri=remote_uri,
        local_path=str(local_path),
        database=config.connection.database,
    )

    stage = PipelineStage.DOWNLOAD
    try:
        try:
            async with create_s3_client(config.remote) as s3_client:
                downloaded = await _run_stage(
                    download_artifact(
                        s3_client,
                        bucket,
                        key,
                        local_path,
                        chunk_size=config.chunk_size,
                    ),
                    config.transfer_timeout,
                    DownloadError,
                    "Download",
                )
        except PgSnapError:
            raise
        except Exception as e:
            raise DownloadError(
                f"Download failed: {e}",
                details={"bucket": bucket, "key": key},
            ) from e
        run.advance(PipelineState.DOWNLOADED)
        log.info("download_succeeded", local_path=str(local_path), size=downloaded)

        stage = PipelineStage.APPLY
        source = iter_file(local_path, config.chunk_size)
        try:
            applied = await _run_stage(
                apply_snapshot(
                    config.connection,
                    decompress_stream(source, chunk_size=config.chunk_size),
                    single_transaction=config.single_transaction,
                ),
                config.apply_timeout,
                RestoreApplyError,
                "Restore",
            )
        finally:
            # Releases the file handle if psql stopped reading early
            await source.aclose()
        run.advance(PipelineState.APPLIED)

    except Exception as e:
        _record_failure(run, stage, e, log)
        _restore_retention(config, filename, False, cleanup)
        raise

    local_retained = not _restore_retention(config, filename, True, cleanup)
    run.advance(PipelineState.CLEANED)

    log.info(
        "restore_completed",
        database=config.connection.database,
        applied_bytes=applied,
        local_retained=local_retained,
        duration=run.elapsed_seconds,
    )

    return RestoreResult(
        run_id=run.run_id,
        remote_uri=remote_uri,
        local_path=local_path,
        state=run.state.value,
        downloaded_bytes=downloaded,
        applied_bytes=applied,
        duration_seconds=run.elapsed_seconds,
        local_retained=local_retained,
        history=[s.value for s in run.history],
    )


def _restore_retention(config: PipelineConfig, filename: str, succeeded: bool, cleanup: bool) -> bool:
    """Remove the downloaded artifact if requested; True if removed."""
    action = config.restore_retention.action_for(succeeded)
    if not cleanup and action == RetentionAction.KEEP:
        return False
    try:
        return bool(cleanup_restore_artifacts(config.restore_dir, filename))
    except OSError as e:
        logger.warning("restore_cleanup_failed", filename=filename, error=str(e))
        return False


async def list_remote(config: PipelineConfig, path_prefix: str | None = None) -> List[RemoteArtifact]:
    """
    List snapshot artifacts in the configured bucket, newest first.

    Args:
        config: Pipeline configuration
        path_prefix: Prefix to list (default: the configured path)

    Raises:
        PreconditionMissing: Storage credentials or location are absent
        DownloadError: The listing request failed
    """
    validate(config)
    remote = config.remote
    prefix = remote.path_prefix if path_prefix is None else path_prefix

    try:
        async with create_s3_client(remote) as s3_client:
            return await _run_stage(
                list_artifacts(s3_client, remote.bucket, prefix),
                config.transfer_timeout,
                DownloadError,
                "Listing",
            )
    except PgSnapError:
        raise
    except Exception as e:
        raise DownloadError(
            f"Listing failed: {e}",
            details={"bucket": remote.bucket, "prefix": prefix},
        ) from e
