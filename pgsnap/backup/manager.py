# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
pgsnap Backup Manager - Produce compressed database snapshots.

This module runs pg_dump and streams its output through the gzip
compressor straight into the run's local artifact. pg_dump exports a
transactionally consistent snapshot, so writes against the live database
during the dump do not affect the result.

The export is produced without ownership or privilege statements, so a
snapshot can be restored by a different role than the one that created it.
"""

import asyncio
import os
from pathlib import Path
from typing import AsyncIterator, List

import aiofiles
import structlog

from pgsnap.config import ConnectionProfile
from pgsnap.exceptions import ExportError
from pgsnap.storage.compressor import CompressionStats, compress_stream

logger = structlog.get_logger()

PG_DUMP = "pg_dump"


def build_dump_command(profile: ConnectionProfile) -> List[str]:
    """
    Build the pg_dump argument list for a connection profile.

    The password is never part of the command line; it travels through
    the child environment (see ConnectionProfile.subprocess_env).
    """
    return [
        PG_DUMP,
        f"--host={profile.host}",
        f"--port={profile.port}",
        f"--username={profile.username}",
        "--format=plain",
        "--no-owner",
        "--no-privileges",
        "--no-password",
        profile.database,
    ]


async def _read_chunks(stream: asyncio.StreamReader, chunk_size: int) -> AsyncIterator[bytes]:
    while True:
        chunk = await stream.read(chunk_size)
        if not chunk:
            break
        yield chunk


async def write_snapshot(
    profile: ConnectionProfile,
    artifact_path: Path,
    chunk_size: int = 64 * 1024,
    compression_level: int = 6,
) -> CompressionStats:
    """
    Export a database and write it as a gzip artifact.

    The artifact is written to a temporary file and renamed into place
    only after pg_dump exits successfully, so ``artifact_path`` never
    holds a partial export.

    Args:
        profile: Connection profile of the source database
        artifact_path: Final path of the .sql.gz artifact
        chunk_size: Read size for pg_dump output
        compression_level: gzip level

    Returns:
        CompressionStats for the export

    Raises:
        ExportError: If pg_dump fails or the artifact cannot be written locally
        CompressionError: If compression fails
    """
    try:
        artifact_path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise ExportError(
            f"Could not create {artifact_path.parent}: {e}",
            details={"database": profile.database, "path": str(artifact_path.parent)},
        ) from e

    temp_path = artifact_path.with_name(artifact_path.name + ".tmp")
    command = build_dump_command(profile)

    logger.info(
        "export_started",
        database=profile.database,
        host=profile.host,
        port=profile.port,
    )

    try:
        proc = await asyncio.create_subprocess_exec(
            *command,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=profile.subprocess_env(os.environ),
        )
    except OSError as e:
        raise ExportError(
            f"Could not start {command[0]}: {e}",
            details={"database": profile.database},
        ) from e

    # Drain stderr concurrently so a chatty pg_dump cannot block on a full pipe
    stderr_task = asyncio.create_task(proc.stderr.read())

    try:
        async with aiofiles.open(temp_path, "wb") as out:
            stats = await compress_stream(
                _read_chunks(proc.stdout, chunk_size),
                out,
                level=compression_level,
            )
        returncode = await proc.wait()
        stderr = await stderr_task
    except OSError as e:
        # Local write failed (disk full, unwritable directory)
        await _abort(proc, stderr_task, temp_path)
        raise ExportError(
            f"Could not write {temp_path}: {e}",
            details={"database": profile.database, "path": str(temp_path)},
        ) from e
    except BaseException:
        # Cancelled (timeout) or compression failed: partial output is invalid
        await _abort(proc, stderr_task, temp_path)
        raise

    if returncode != 0:
        temp_path.unlink(missing_ok=True)
        raise ExportError(
            f"pg_dump failed with exit status {returncode}",
            details={
                "database": profile.database,
                "stderr": stderr.decode("utf-8", errors="replace").strip()[-2000:],
            },
        )

    try:
        temp_path.replace(artifact_path)
    except OSError as e:
        temp_path.unlink(missing_ok=True)
        raise ExportError(
            f"Could not move export into place at {artifact_path}: {e}",
            details={"database": profile.database, "path": str(artifact_path)},
        ) from e

    logger.info(
        "export_succeeded",
        database=profile.database,
        artifact=str(artifact_path),
        original_size=stats.original_size,
        compressed_size=stats.compressed_size,
    )

    return stats


async def _abort(
    proc: asyncio.subprocess.Process,
    stderr_task: asyncio.Task,
    temp_path: Path,
) -> None:
    """Stop pg_dump and drop the partial output."""
    if proc.returncode is None:
        proc.kill()
        await proc.wait()
    stderr_task.cancel()
    temp_path.unlink(missing_ok=True)
