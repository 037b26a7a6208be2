# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
pgsnap Retention - Decide what survives of local working copies.

A backup run owns exactly one directory, ``<backup_dir>/<run_id>/``.
Retention only ever removes that directory, never its siblings, so a
failed run cannot delete artifacts kept by earlier runs.

Restore cleanup is a separate, idempotent action that is off by default.
"""

import re
import shutil
from datetime import datetime, timedelta, UTC
from pathlib import Path
from typing import List, Tuple

import structlog

from pgsnap.config import RetentionAction, RetentionPolicy
from pgsnap.naming import ARTIFACT_SUFFIX

logger = structlog.get_logger()

# Run directories are named after the run ULID
_RUN_ID_RE = re.compile(r"^[0-9A-HJKMNP-TV-Z]{26}$")


def purge_directory(path: Path) -> bool:
    """
    Remove a directory tree if it exists.

    Returns:
        True if something was removed, False if it was already gone
    """
    if not path.exists():
        return False
    shutil.rmtree(path)
    return True


def apply_retention(policy: RetentionPolicy, succeeded: bool, workdir: Path) -> bool:
    """
    Apply a retention policy to one run's working directory.

    Args:
        policy: Retention policy for this pipeline
        succeeded: Whether the run completed successfully
        workdir: The run's own working directory

    Returns:
        True if the directory was deleted
    """
    action = policy.action_for(succeeded)

    if action == RetentionAction.KEEP:
        # Nothing was produced, nothing to keep
        if workdir.is_dir() and not any(workdir.iterdir()):
            workdir.rmdir()
            return True
        logger.info(
            "local_artifacts_kept",
            workdir=str(workdir),
            succeeded=succeeded,
        )
        return False

    try:
        removed = purge_directory(workdir)
    except OSError as e:
        # Not fatal: the run outcome is already decided
        logger.warning(
            "local_cleanup_failed",
            workdir=str(workdir),
            error=str(e),
        )
        return False

    logger.info(
        "local_artifacts_deleted",
        workdir=str(workdir),
        succeeded=succeeded,
        removed=removed,
    )
    return removed


def cleanup_restore_artifacts(restore_dir: Path, filename: str | None = None) -> List[Path]:
    """
    Remove downloaded artifacts from the restore directory.

    Safe to call repeatedly; missing files are ignored.

    Args:
        restore_dir: Restore working directory
        filename: Only remove this artifact (default: all artifacts)

    Returns:
        Paths that were removed
    """
    if not restore_dir.exists():
        return []

    if filename is not None:
        candidates = [restore_dir / filename, restore_dir / f"{filename}.part"]
    else:
        candidates = [
            p for p in restore_dir.iterdir()
            if p.is_file() and (p.name.endswith(ARTIFACT_SUFFIX) or p.name.endswith(".part"))
        ]

    removed: List[Path] = []
    for path in candidates:
        if path.parent != restore_dir:
            continue
        try:
            path.unlink()
            removed.append(path)
        except FileNotFoundError:
            pass

    logger.info(
        "restore_artifacts_cleaned",
        restore_dir=str(restore_dir),
        removed=len(removed),
    )

    return removed


def list_local_artifacts(base_dir: Path) -> List[dict]:
    """
    List artifacts kept under a local directory.

    Args:
        base_dir: Backup or restore directory

    Returns:
        List of artifact info dicts, oldest first
    """
    if not base_dir.exists():
        return []

    artifacts = []

    for artifact in base_dir.rglob(f"*{ARTIFACT_SUFFIX}"):
        stat = artifact.stat()
        artifacts.append({
            "filename": artifact.name,
            "path": str(artifact),
            "run_id": artifact.parent.name if artifact.parent != base_dir else None,
            "size": stat.st_size,
            "modified_at": datetime.fromtimestamp(stat.st_mtime, UTC).isoformat(),
        })

    artifacts.sort(key=lambda a: a["modified_at"])
    return artifacts


def prune_stale_runs(
    backup_dir: Path,
    max_age_days: int,
    dry_run: bool = False,
) -> Tuple[int, int]:
    """
    Delete kept run directories older than max_age_days.

    Args:
        backup_dir: Backup working directory
        max_age_days: Maximum age in days
        dry_run: If True, only report what would be deleted

    Returns:
        Tuple of (runs_deleted, bytes_freed)
    """
    if max_age_days < 0:
        raise ValueError(f"max_age_days must be >= 0, got {max_age_days}")

    cutoff = datetime.now(UTC) - timedelta(days=max_age_days)

    if not backup_dir.exists():
        return (0, 0)

    runs_deleted = 0
    bytes_freed = 0

    for run_dir in backup_dir.iterdir():
        if not run_dir.is_dir() or not _RUN_ID_RE.match(run_dir.name):
            continue

        mtime = datetime.fromtimestamp(run_dir.stat().st_mtime, UTC)
        if mtime >= cutoff:
            continue

        size = sum(f.stat().st_size for f in run_dir.rglob("*") if f.is_file())

        if not dry_run:
            try:
                shutil.rmtree(run_dir)
            except OSError as e:
                logger.warning(
                    "prune_run_error",
                    path=str(run_dir),
                    error=str(e),
                )
                continue

        runs_deleted += 1
        bytes_freed += size

        logger.debug(
            "run_dir_pruned" if not dry_run else "run_dir_would_prune",
            path=str(run_dir),
            age_days=(datetime.now(UTC) - mtime).days,
        )

    logger.info(
        "run_pruning_complete",
        runs_deleted=runs_deleted,
        bytes_freed=bytes_freed,
        dry_run=dry_run,
    )

    return (runs_deleted, bytes_freed)
