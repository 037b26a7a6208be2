# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
pgsnap Restore - Replay a snapshot against a target database.

Statements are fed to psql in the order they appear in the export, one
chunk at a time, with write backpressure. psql runs with ON_ERROR_STOP
so the first failing statement aborts the whole restore.

There is no partial-apply recovery. Without single-transaction mode a
failed restore leaves the target partially applied and it must be
rebuilt before retrying.
"""

import asyncio
import os
from contextlib import aclosing
from typing import AsyncIterator, List

import structlog

from pgsnap.config import ConnectionProfile
from pgsnap.errors import explain_restore_tainted
from pgsnap.exceptions import CompressionError, RestoreApplyError

logger = structlog.get_logger()

PSQL = "psql"


def build_apply_command(profile: ConnectionProfile, single_transaction: bool = True) -> List[str]:
    """Build the psql argument list for a connection profile."""
    command = [
        PSQL,
        f"--host={profile.host}",
        f"--port={profile.port}",
        f"--username={profile.username}",
        f"--dbname={profile.database}",
        "--no-psqlrc",
        "--no-password",
        "--quiet",
        "--set=ON_ERROR_STOP=1",
    ]
    if single_transaction:
        command.append("--single-transaction")
    return command


async def apply_snapshot(
    profile: ConnectionProfile,
    chunks: AsyncIterator[bytes],
    single_transaction: bool = True,
) -> int:
    """
    Stream SQL into psql.

    Args:
        profile: Connection profile of the target database
        chunks: Decompressed SQL export, in order
        single_transaction: Wrap the replay in one transaction

    Returns:
        Number of SQL bytes fed to psql

    Raises:
        RestoreApplyError: If psql cannot start, reports an error, or the
            input stream fails part way
    """
    command = build_apply_command(profile, single_transaction)

    logger.info(
        "apply_started",
        database=profile.database,
        host=profile.host,
        single_transaction=single_transaction,
    )

    try:
        proc = await asyncio.create_subprocess_exec(
            *command,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
            env=profile.subprocess_env(os.environ),
        )
    except OSError as e:
        raise RestoreApplyError(
            f"Could not start {command[0]}: {e}",
            details={"database": profile.database},
        ) from e

    stderr_task = asyncio.create_task(proc.stderr.read())
    fed = 0
    pipe_closed = False

    try:
        async with aclosing(chunks) as stream:
            async for chunk in stream:
                try:
                    proc.stdin.write(chunk)
                    await proc.stdin.drain()
                except (BrokenPipeError, ConnectionResetError):
                    # psql stopped reading; its exit status says why
                    pipe_closed = True
                    break
                fed += len(chunk)

        if not pipe_closed:
            proc.stdin.close()
            try:
                await proc.stdin.wait_closed()
            except (BrokenPipeError, ConnectionResetError):
                pass

        returncode = await proc.wait()
        stderr = await stderr_task

    except CompressionError as e:
        await _kill(proc, stderr_task)
        raise RestoreApplyError(
            f"{explain_restore_tainted(profile.database)} Cause: {e.message}",
            details={"database": profile.database, "applied_bytes": fed},
        ) from e
    except OSError as e:
        # The local artifact could not be read
        await _kill(proc, stderr_task)
        raise RestoreApplyError(
            f"{explain_restore_tainted(profile.database)} Cause: {e}",
            details={"database": profile.database, "applied_bytes": fed},
        ) from e
    except BaseException:
        await _kill(proc, stderr_task)
        raise

    if returncode != 0:
        raise RestoreApplyError(
            explain_restore_tainted(profile.database),
            details={
                "database": profile.database,
                "exit_status": returncode,
                "applied_bytes": fed,
                "stderr": stderr.decode("utf-8", errors="replace").strip()[-2000:],
            },
        )

    logger.info("apply_succeeded", database=profile.database, applied_bytes=fed)

    return fed


async def _kill(proc: asyncio.subprocess.Process, stderr_task: asyncio.Task) -> None:
    """Stop psql before it can commit anything more."""
    if proc.returncode is None:
        proc.kill()
        await proc.wait()
    stderr_task.cancel()
