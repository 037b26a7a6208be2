# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Environment-based configuration helpers and retention profiles.

These helpers build a PipelineConfig from the process environment once,
at start-up, and offer ready-made retention profiles on top of
PipelineConfig.with_updates().

Missing credentials are not rejected here: the precondition validator
reports them with a dedicated exit status. Only malformed
values (a port that is not a number, an unknown boolean) fail early.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Mapping, Tuple

from pgsnap.config import (
    DEFAULT_BACKUP_DIR,
    DEFAULT_CHUNK_SIZE,
    DEFAULT_RESTORE_DIR,
    ConnectionProfile,
    PipelineConfig,
    RemoteProfile,
    RetentionAction,
    RetentionPolicy,
)
from pgsnap.errors import explain_invalid_bool_env, explain_invalid_int_env
from pgsnap.exceptions import ConfigurationError

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


def _parse_int(env: Mapping[str, str], name: str, default: int | None) -> int | None:
    value = env.get(name)
    if value is None or value.strip() == "":
        return default
    try:
        number = int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(explain_invalid_int_env(name, value)) from exc
    if number <= 0:
        raise ConfigurationError(explain_invalid_int_env(name, value))
    return number


def _parse_bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    value = env.get(name)
    if value is None or value.strip() == "":
        return default
    lowered = value.strip().lower()
    if lowered in _TRUE:
        return True
    if lowered in _FALSE:
        return False
    raise ConfigurationError(explain_invalid_bool_env(name, value))


def _parse_path(env: Mapping[str, str], name: str, default: Path | None) -> Path | None:
    value = env.get(name)
    if not value:
        return default
    return Path(value).expanduser()


def _keep_or_delete(keep: bool) -> RetentionAction:
    return RetentionAction.KEEP if keep else RetentionAction.DELETE


def local_dirs_from_env(env: Mapping[str, str] | None = None) -> Tuple[Path, Path]:
    """
    Read the local working directories only.

    Local housekeeping (pruning, restore cleanup) needs no database or
    storage settings, so it does not go through create_config_from_env().

    Returns:
        Tuple of (backup_dir, restore_dir)
    """

    env = os.environ if env is None else env
    return (
        _parse_path(env, "PGSNAP_BACKUP_DIR", DEFAULT_BACKUP_DIR),
        _parse_path(env, "PGSNAP_RESTORE_DIR", DEFAULT_RESTORE_DIR),
    )


def create_config_from_env(env: Mapping[str, str] | None = None) -> PipelineConfig:
    """
    Create a PipelineConfig from environment variables.

    Database:
        - PGSNAP_DB_NAME: Database to back up or restore into (required)
        - PGSNAP_DB_HOST: default localhost
        - PGSNAP_DB_PORT: default 5432
        - PGSNAP_DB_USER: default postgres
        - PGPASSWORD: Password (optional if a credential file exists)
        - PGPASSFILE: Credential file (default: ~/.pgpass)

    Object storage:
        - AWS_ACCESS_KEY_ID / AWS_SECRET_ACCESS_KEY: Access keys
        - AWS_DEFAULT_REGION: Region token, 'auto' for R2
        - R2_ACCOUNT_ID: Account identifier (derives the endpoint)
        - R2_BUCKET: Bucket name
        - R2_PATH: Path prefix inside the bucket (optional)
        - PGSNAP_S3_ENDPOINT_URL: Endpoint override (optional)

    Local working area and behaviour:
        - PGSNAP_BACKUP_DIR / PGSNAP_RESTORE_DIR
        - PGSNAP_KEEP_ON_SUCCESS: Keep the local artifact after upload (default: no)
        - PGSNAP_KEEP_ON_FAILURE: Keep the local artifact after a failure (default: yes)
        - PGSNAP_CHUNK_SIZE: Streaming chunk size in bytes
        - PGSNAP_EXPORT_TIMEOUT / PGSNAP_TRANSFER_TIMEOUT / PGSNAP_APPLY_TIMEOUT: seconds
        - PGSNAP_SINGLE_TRANSACTION: Restore in one transaction (default: yes)
        - PGSNAP_LOCK_FILE: Lock file guarding against overlapping runs
        - PGSNAP_SCHEDULE: Daily schedule in HH:MM (UTC)

    Args:
        env: Mapping to read from (default: os.environ)

    Raises:
        ConfigurationError: If a value is malformed
    """

    env = os.environ if env is None else env
    backup_dir, restore_dir = local_dirs_from_env(env)

    connection = ConnectionProfile(
        database=env.get("PGSNAP_DB_NAME", ""),
        host=env.get("PGSNAP_DB_HOST") or "localhost",
        port=_parse_int(env, "PGSNAP_DB_PORT", 5432),
        username=env.get("PGSNAP_DB_USER") or "postgres",
        password=env.get("PGPASSWORD") or None,
        passfile=_parse_path(env, "PGPASSFILE", Path.home() / ".pgpass"),
    )

    remote = RemoteProfile(
        account_id=env.get("R2_ACCOUNT_ID") or None,
        bucket=env.get("R2_BUCKET") or None,
        path_prefix=env.get("R2_PATH") or None,
        access_key_id=env.get("AWS_ACCESS_KEY_ID") or None,
        secret_access_key=env.get("AWS_SECRET_ACCESS_KEY") or None,
        # An unset region is reported by the validator, not defaulted
        region=env.get("AWS_DEFAULT_REGION") or None,
        endpoint_url=env.get("PGSNAP_S3_ENDPOINT_URL") or None,
    )

    backup_retention = RetentionPolicy(
        on_success=_keep_or_delete(_parse_bool(env, "PGSNAP_KEEP_ON_SUCCESS", False)),
        on_failure=_keep_or_delete(_parse_bool(env, "PGSNAP_KEEP_ON_FAILURE", True)),
    )

    return PipelineConfig(
        connection=connection,
        remote=remote,
        backup_dir=backup_dir,
        restore_dir=restore_dir,
        backup_retention=backup_retention,
        chunk_size=_parse_int(env, "PGSNAP_CHUNK_SIZE", DEFAULT_CHUNK_SIZE),
        export_timeout=_parse_int(env, "PGSNAP_EXPORT_TIMEOUT", None),
        transfer_timeout=_parse_int(env, "PGSNAP_TRANSFER_TIMEOUT", None),
        apply_timeout=_parse_int(env, "PGSNAP_APPLY_TIMEOUT", None),
        single_transaction=_parse_bool(env, "PGSNAP_SINGLE_TRANSACTION", True),
        lock_path=_parse_path(env, "PGSNAP_LOCK_FILE", None),
        schedule_cron=env.get("PGSNAP_SCHEDULE") or None,
    )


# ============================================================================
# Profiles
# ============================================================================

def legacy_always_purge(config: PipelineConfig) -> PipelineConfig:
    """
    Delete the local backup artifact whatever the outcome.

    Reproduces the always-purge behaviour of the cron-script deployment.
    A failed upload then loses the only copy of that snapshot.
    """

    return config.with_updates(
        backup_retention=RetentionPolicy(
            on_success=RetentionAction.DELETE,
            on_failure=RetentionAction.DELETE,
        ),
    )


def keep_everything(config: PipelineConfig) -> PipelineConfig:
    """
    Keep every local artifact, backup and restore alike.

    Useful while debugging a pipeline; pair it with `pgsnap prune`.
    """

    keep = RetentionPolicy(
        on_success=RetentionAction.KEEP,
        on_failure=RetentionAction.KEEP,
    )
    return config.with_updates(
        backup_retention=keep,
        restore_retention=keep,
    )
