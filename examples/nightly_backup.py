# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Example: embedding pgsnap in a long-running service.

Runs one backup immediately, prints what is stored remotely, then keeps
the daily schedule running until interrupted.

Run with:
    python examples/nightly_backup.py

Environment variables:
    PGSNAP_DB_NAME: Database to back up
    PGPASSWORD: Database password (or PGPASSFILE)
    R2_ACCOUNT_ID, R2_BUCKET, R2_PATH: Remote location
    AWS_ACCESS_KEY_ID, AWS_SECRET_ACCESS_KEY, AWS_DEFAULT_REGION: Storage credentials
    PGSNAP_SCHEDULE: Daily run time in UTC (HH:MM), defaults to 02:00
"""

import asyncio
import signal

from pgsnap import create_config_from_env, keep_everything, list_remote, run_backup
from pgsnap.exceptions import PgSnapError
from pgsnap.log import configure_logging
from pgsnap.scheduler import run_scheduler


async def main() -> None:
    configure_logging(level="INFO")

    # Keep local copies too; this host doubles as a warm standby
    config = keep_everything(create_config_from_env())

    try:
        result = await run_backup(config)
        print(f"Stored {result.remote_uri} ({result.compressed_size} bytes)")
    except PgSnapError as e:
        print(f"Initial backup failed during {e.stage}: {e}")

    for artifact in await list_remote(config):
        print(f"  {artifact.key}  {artifact.size}")

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    await run_scheduler(config, stop)


if __name__ == "__main__":
    asyncio.run(main())
