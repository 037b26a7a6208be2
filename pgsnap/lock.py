# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Single-flight guard for pipeline runs.

Overlapping cron invocations are not prevented by the pipeline itself.
When a lock file is configured, each run takes an exclusive, non-blocking
flock on it and a second run fails immediately instead of waiting.
"""

import fcntl
import os
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from pgsnap.exceptions import RunLockedError


@contextmanager
def run_lock(lock_path: Path | None) -> Iterator[None]:
    """
    Hold an exclusive lock for the duration of a run.

    Does nothing when lock_path is None.

    Raises:
        RunLockedError: If another process holds the lock
    """
    if lock_path is None:
        yield
        return

    lock_path.parent.mkdir(parents=True, exist_ok=True)
    lock_fd = open(lock_path, "a+")
    try:
        try:
            fcntl.flock(lock_fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError as e:
            raise RunLockedError(
                "Another pgsnap run holds the lock",
                details={"lock_path": str(lock_path)},
            ) from e

        lock_fd.seek(0)
        lock_fd.truncate()
        lock_fd.write(f"{os.getpid()}\n")
        lock_fd.flush()
        try:
            yield
        finally:
            fcntl.flock(lock_fd, fcntl.LOCK_UN)
    finally:
        lock_fd.close()
