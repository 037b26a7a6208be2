# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Human-friendly error message helpers for pgsnap.

These helpers centralize wording for missing credentials and malformed
settings so that the validator, the environment loader and the CLI all
present the same actionable messages.
"""

from pathlib import Path
from typing import List


def _join(names: List[str]) -> str:
    return " and ".join(names)


def explain_missing_db_auth(passfile: Path | None) -> str:
    """
    Explain that no database password is available.
    """

    where = str(passfile) if passfile else "~/.pgpass"
    return (
        f"PGPASSWORD not set and {where} not found. "
        "Export PGPASSWORD or create a credential file (chmod 600); "
        "pg_dump and psql cannot prompt for a password when run unattended."
    )


def explain_missing_storage_credentials(missing: List[str]) -> str:
    """
    Explain that object storage access keys are missing.
    """

    return (
        f"{_join(missing)} not set. "
        "Set the object storage access key id and secret before running."
    )


def explain_missing_region(missing: List[str]) -> str:
    """
    Explain that the storage region/mode token is missing.
    """

    return (
        f"{_join(missing)} not set. "
        "Set it to 'auto' for Cloudflare R2 (object storage is region-less)."
    )


def explain_missing_storage_location(missing: List[str]) -> str:
    """
    Explain that the storage account id and/or bucket are missing.
    """

    return (
        f"{_join(missing)} not set. "
        "Set the storage account identifier and bucket name."
    )


def explain_bad_remote_uri(uri: str) -> str:
    """
    Explain that a restore address is not a fully qualified s3:// URI.
    """

    return (
        f"Invalid remote address: {uri!r}. "
        "Expected s3://<bucket>/<path>/<filename>.sql.gz"
    )


def explain_invalid_int_env(name: str, value: str | None) -> str:
    """
    Explain that an integer environment value is invalid.
    """

    return f"Invalid {name} value: {value!r}. It must be a positive integer."


def explain_invalid_bool_env(name: str, value: str | None) -> str:
    """
    Explain that a boolean environment value is invalid.
    """

    return (
        f"Invalid {name} value: {value!r}. "
        "Expected one of: 1, 0, true, false, yes, no."
    )


def explain_restore_tainted(database: str) -> str:
    """
    Explain that a failed restore leaves the target in an unknown state.
    """

    return (
        f"Restore into '{database}' failed. The target may be partially applied; "
        "rebuild it from scratch before retrying."
    )
