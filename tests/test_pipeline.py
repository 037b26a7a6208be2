# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
End-to-end pipeline tests.

pg_dump and psql are replaced by small Python processes and object
storage by a local moto server, so the whole backup and restore paths
run for real: subprocess streaming, gzip, upload verification, download
and retention.

These tests verify:
1. A successful backup lands at the expected address and leaves no local files
2. A failed upload keeps the artifact for a retry
3. Cleanup only ever touches the run's own directory
4. Restore replays the exact exported SQL
5. Failures carry the failing stage
"""

import asyncio
import gzip
from dataclasses import replace
from datetime import datetime
from pathlib import Path

import pytest

from conftest import (
    SAMPLE_SQL,
    TEST_BUCKET,
    get_s3_object_content,
    python_command,
    s3_object_exists,
)
from pgsnap.backup.restore import apply_snapshot
from pgsnap.config import ConnectionProfile
from pgsnap.core import (
    PipelineStage,
    PipelineState,
    PipelineRun,
    PipelineKind,
    TransitionRuleError,
    list_remote,
    run_backup,
    run_restore,
    run_upload,
)
from pgsnap.env import legacy_always_purge
from pgsnap.exceptions import (
    DownloadError,
    ExportError,
    PreconditionMissing,
    RestoreApplyError,
    RunLockedError,
    UploadError,
    UsageError,
)
from pgsnap.lock import run_lock

SNAPSHOT_TIME = datetime(2025, 6, 1, 2, 0)
ARTIFACT = "orders_01-06-2025_02:00.sql.gz"
REMOTE_URI = f"s3://{TEST_BUCKET}/daily/{ARTIFACT}"


def _files_under(path: Path) -> list:
    if not path.exists():
        return []
    return [p for p in path.rglob("*") if p.is_file()]


# ============================================================================
# Test 1: BACKUP
# ============================================================================

@pytest.mark.asyncio
async def test_backup_scenario(test_config, s3_client, fake_pg_dump):
    """
    orders at 01-06-2025 02:00 lands at s3://backups-bucket/daily/... and the
    local backup directory is empty afterwards.
    """
    fake_pg_dump(SAMPLE_SQL)

    result = await run_backup(test_config, now=SNAPSHOT_TIME)

    assert result.remote_uri == REMOTE_URI
    assert result.artifact.filename == ARTIFACT
    assert result.state == "cleaned"
    assert result.history == ["init", "exported", "compressed", "uploaded", "cleaned"]
    assert result.original_size == len(SAMPLE_SQL)
    assert result.local_retained is False

    content = await get_s3_object_content(s3_client, TEST_BUCKET, f"daily/{ARTIFACT}")
    assert gzip.decompress(content) == SAMPLE_SQL

    assert test_config.backup_dir.exists()
    assert list(test_config.backup_dir.iterdir()) == []


@pytest.mark.asyncio
async def test_backup_without_prefix_goes_to_bucket_root(test_config, s3_client, fake_pg_dump):
    """No path prefix: the artifact sits at the bucket root."""
    fake_pg_dump()
    config = test_config.with_updates(remote=replace(test_config.remote, path_prefix=None))

    result = await run_backup(config, now=SNAPSHOT_TIME)

    assert result.remote_uri == f"s3://{TEST_BUCKET}/{ARTIFACT}"
    assert await s3_object_exists(s3_client, TEST_BUCKET, ARTIFACT)


@pytest.mark.asyncio
async def test_backup_export_failure(test_config, s3_client, fake_pg_dump):
    """pg_dump failing aborts before upload and leaves no partial artifact."""
    fake_pg_dump(b"CREATE TABLE half", exit_status=1)

    with pytest.raises(ExportError) as exc_info:
        await run_backup(test_config, now=SNAPSHOT_TIME)

    run = exc_info.value.run
    assert run.state == PipelineState.FAILED
    assert run.failed_stage == PipelineStage.EXPORT
    assert "fake exit 1" in exc_info.value.details["stderr"]
    assert not await s3_object_exists(s3_client, TEST_BUCKET, f"daily/{ARTIFACT}")
    assert _files_under(test_config.backup_dir) == []


@pytest.mark.asyncio
async def test_backup_export_timeout(test_config, s3_client, monkeypatch):
    """A hung pg_dump is killed once the export timeout expires."""
    monkeypatch.setattr(
        "pgsnap.backup.manager.build_dump_command",
        lambda profile: python_command("import time; time.sleep(30)"),
    )
    config = test_config.with_updates(export_timeout=0.5)

    with pytest.raises(ExportError, match="timed out"):
        await run_backup(config, now=SNAPSHOT_TIME)

    assert _files_under(config.backup_dir) == []


@pytest.mark.asyncio
async def test_upload_failure_keeps_artifact(test_config, s3_client, fake_pg_dump):
    """A failed upload keeps the local artifact so it can be retried."""
    fake_pg_dump()
    config = test_config.with_updates(
        remote=replace(test_config.remote, bucket="missing-bucket")
    )

    with pytest.raises(UploadError) as exc_info:
        await run_backup(config, now=SNAPSHOT_TIME)

    run = exc_info.value.run
    assert run.failed_stage == PipelineStage.UPLOAD
    assert [s.value for s in run.history] == ["init", "exported", "compressed", "failed"]

    kept = _files_under(config.backup_dir)
    assert [p.name for p in kept] == [ARTIFACT]
    assert kept[0].parent.name == run.run_id
    assert gzip.decompress(kept[0].read_bytes()) == SAMPLE_SQL

    # Retry against the right bucket
    retry = await run_upload(test_config, kept[0])

    assert retry.remote_uri == REMOTE_URI
    assert retry.history == ["compressed", "uploaded", "cleaned"]
    assert await s3_object_exists(s3_client, TEST_BUCKET, f"daily/{ARTIFACT}")
    assert list(test_config.backup_dir.iterdir()) == []


@pytest.mark.asyncio
async def test_upload_failure_with_always_purge(test_config, s3_client, fake_pg_dump):
    """The always-purge profile deletes the artifact even on failure."""
    fake_pg_dump()
    config = legacy_always_purge(
        test_config.with_updates(remote=replace(test_config.remote, bucket="missing-bucket"))
    )

    with pytest.raises(UploadError):
        await run_backup(config, now=SNAPSHOT_TIME)

    assert _files_under(config.backup_dir) == []


@pytest.mark.asyncio
async def test_cleanup_scope_is_the_run_directory(test_config, s3_client, fake_pg_dump):
    """Artifacts kept by earlier runs survive a later successful run."""
    fake_pg_dump()
    earlier = test_config.backup_dir / "01HZZZZZZZZZZZZZZZZZZZZZZZ" / "orders_31-05-2025_02:00.sql.gz"
    earlier.parent.mkdir(parents=True)
    earlier.write_bytes(b"kept")
    unrelated = test_config.backup_dir / "notes.txt"
    unrelated.write_text("operator notes")

    await run_backup(test_config, now=SNAPSHOT_TIME)

    assert earlier.read_bytes() == b"kept"
    assert unrelated.exists()
    assert sorted(p.name for p in _files_under(test_config.backup_dir)) == [
        "notes.txt",
        "orders_31-05-2025_02:00.sql.gz",
    ]


@pytest.mark.asyncio
async def test_backup_missing_credentials_has_no_side_effects(test_config, fake_pg_dump):
    """A precondition failure happens before any directory is created."""
    fake_pg_dump()
    config = test_config.with_updates(
        remote=replace(test_config.remote, access_key_id=None)
    )

    with pytest.raises(PreconditionMissing) as exc_info:
        await run_backup(config, now=SNAPSHOT_TIME)

    assert exc_info.value.run.failed_stage == PipelineStage.PRECONDITIONS
    assert not config.backup_dir.exists()


@pytest.mark.asyncio
async def test_backup_refuses_overlapping_run(test_config, s3_client, fake_pg_dump, temp_dir: Path):
    """A held lock file stops a second run immediately."""
    fake_pg_dump()
    config = test_config.with_updates(lock_path=temp_dir / "pgsnap.lock")

    with run_lock(config.lock_path):
        with pytest.raises(RunLockedError):
            await run_backup(config, now=SNAPSHOT_TIME)

    assert not config.backup_dir.exists()

    result = await run_backup(config, now=SNAPSHOT_TIME)
    assert result.state == "cleaned"


@pytest.mark.asyncio
async def test_backup_unwritable_directory_is_an_export_failure(offline_config, fake_pg_dump, temp_dir: Path):
    """A backup directory that cannot be created fails the export stage."""
    fake_pg_dump()
    blocker = temp_dir / "not-a-directory"
    blocker.write_text("regular file")
    config = offline_config.with_updates(backup_dir=blocker / "backups")

    with pytest.raises(ExportError) as exc_info:
        await run_backup(config, now=SNAPSHOT_TIME)

    assert exc_info.value.run.failed_stage == PipelineStage.EXPORT
    assert blocker.read_text() == "regular file"


# ============================================================================
# Test 2: RESTORE
# ============================================================================

async def _put_snapshot(s3_client, sql: bytes = SAMPLE_SQL) -> None:
    await s3_client.put_object(
        Bucket=TEST_BUCKET,
        Key=f"daily/{ARTIFACT}",
        Body=gzip.compress(sql),
    )


@pytest.mark.asyncio
async def test_restore_replays_snapshot(test_config, s3_client, fake_psql):
    """psql receives exactly the exported SQL, in order."""
    await _put_snapshot(s3_client)
    sink = fake_psql()

    result = await run_restore(test_config, REMOTE_URI)

    assert sink.read_bytes() == SAMPLE_SQL
    assert result.applied_bytes == len(SAMPLE_SQL)
    assert result.history == ["init", "downloaded", "applied", "cleaned"]
    # Restore keeps the download unless asked otherwise
    assert result.local_retained is True
    assert (test_config.restore_dir / ARTIFACT).exists()


@pytest.mark.asyncio
async def test_restore_with_cleanup(test_config, s3_client, fake_psql):
    """--cleanup removes the downloaded artifact."""
    await _put_snapshot(s3_client)
    fake_psql()

    result = await run_restore(test_config, REMOTE_URI, cleanup=True)

    assert result.local_retained is False
    assert _files_under(test_config.restore_dir) == []


@pytest.mark.asyncio
async def test_backup_then_restore_round_trip(test_config, s3_client, fake_pg_dump, fake_psql):
    """What the backup exported is what the restore applies."""
    sql = b"".join(b"INSERT INTO orders VALUES (%d, 'x');\n" % i for i in range(2000))
    fake_pg_dump(sql)
    sink = fake_psql()

    backup = await run_backup(test_config, now=SNAPSHOT_TIME)
    await run_restore(test_config, backup.remote_uri)

    assert sink.read_bytes() == sql


@pytest.mark.asyncio
async def test_restore_apply_failure(test_config, s3_client, fake_psql):
    """psql rejecting the snapshot fails the apply stage."""
    await _put_snapshot(s3_client)
    fake_psql(exit_status=3)

    with pytest.raises(RestoreApplyError) as exc_info:
        await run_restore(test_config, REMOTE_URI)

    assert exc_info.value.run.failed_stage == PipelineStage.APPLY
    assert exc_info.value.details["exit_status"] == 3
    assert "rebuild" in exc_info.value.message


@pytest.mark.asyncio
async def test_restore_corrupt_artifact(test_config, s3_client, fake_psql):
    """A corrupt artifact fails the apply stage, never silently."""
    await s3_client.put_object(
        Bucket=TEST_BUCKET,
        Key=f"daily/{ARTIFACT}",
        Body=gzip.compress(SAMPLE_SQL)[:-12],
    )
    fake_psql()

    with pytest.raises(RestoreApplyError):
        await run_restore(test_config, REMOTE_URI)


@pytest.mark.asyncio
async def test_restore_unreadable_artifact_is_an_apply_failure(test_config, s3_client, fake_psql, monkeypatch):
    """A read error on the downloaded artifact fails the apply stage."""
    await _put_snapshot(s3_client)
    fake_psql()

    async def failing_reader(path, chunk_size=1024):
        yield gzip.compress(SAMPLE_SQL)[:10]
        raise OSError(5, "Input/output error")

    monkeypatch.setattr("pgsnap.core.iter_file", failing_reader)

    with pytest.raises(RestoreApplyError) as exc_info:
        await run_restore(test_config, REMOTE_URI)

    assert exc_info.value.run.failed_stage == PipelineStage.APPLY
    assert "Input/output error" in exc_info.value.message


@pytest.mark.asyncio
async def test_apply_closes_input_when_psql_exits_early(monkeypatch):
    """The input stream is closed as soon as psql stops reading."""
    monkeypatch.setattr(
        "pgsnap.backup.restore.build_apply_command",
        lambda profile, single_transaction=True: python_command("import sys; sys.exit(1)"),
    )
    closed = []

    async def endless_sql():
        try:
            while True:
                yield b"SELECT 1;\n" * 6554
        finally:
            closed.append(True)

    with pytest.raises(RestoreApplyError) as exc_info:
        await asyncio.wait_for(
            apply_snapshot(ConnectionProfile(database="orders", passfile=None), endless_sql()),
            timeout=30,
        )

    assert closed == [True]
    assert exc_info.value.details["exit_status"] == 1


@pytest.mark.asyncio
async def test_restore_missing_object(test_config, s3_client, fake_psql):
    """A missing object fails the download stage."""
    sink = fake_psql()

    with pytest.raises(DownloadError) as exc_info:
        await run_restore(test_config, f"s3://{TEST_BUCKET}/daily/nope.sql.gz")

    assert exc_info.value.run.failed_stage == PipelineStage.DOWNLOAD
    assert not sink.exists()


@pytest.mark.asyncio
async def test_restore_malformed_address(offline_config, fake_psql):
    """A malformed address fails before any network or database activity."""
    sink = fake_psql()

    with pytest.raises(UsageError):
        await run_restore(offline_config, "backups-bucket/daily/x.sql.gz")

    assert not sink.exists()
    assert not offline_config.restore_dir.exists()


# ============================================================================
# Test 3: LISTING AND STATE MACHINE
# ============================================================================

@pytest.mark.asyncio
async def test_list_remote(test_config, s3_client, fake_pg_dump):
    """Listing shows uploaded snapshots."""
    fake_pg_dump()
    await run_backup(test_config, now=SNAPSHOT_TIME)

    artifacts = await list_remote(test_config)

    assert [a.key for a in artifacts] == [f"daily/{ARTIFACT}"]
    assert artifacts[0].database_name == "orders"


def test_state_machine_rejects_skipped_stage():
    """A run cannot jump from INIT straight to UPLOADED."""
    run = PipelineRun(PipelineKind.BACKUP)

    with pytest.raises(TransitionRuleError):
        run.advance(PipelineState.UPLOADED)


def test_state_machine_terminal_states():
    """Nothing follows CLEANED or FAILED."""
    run = PipelineRun(PipelineKind.RESTORE)
    run.advance(PipelineState.DOWNLOADED)
    run.fail(PipelineStage.APPLY, RuntimeError("boom"))

    assert run.state == PipelineState.FAILED
    assert run.failed_stage == PipelineStage.APPLY
    with pytest.raises(TransitionRuleError):
        run.advance(PipelineState.APPLIED)
