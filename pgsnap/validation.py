# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Precondition validation - pure gate run before any side effect.

Checks run in a fixed order and stop at the first failure, so removing
any single required value always produces the same, specific failure:

1. Database authentication (password or credential file)
2. Object storage access key id and secret
3. Object storage region/mode token
4. Object storage account id and bucket
"""

from enum import Enum
from typing import List

from pgsnap.config import PipelineConfig
from pgsnap.errors import (
    explain_missing_db_auth,
    explain_missing_region,
    explain_missing_storage_credentials,
    explain_missing_storage_location,
)
from pgsnap.exceptions import PreconditionMissing


class PreconditionCheck(str, Enum):
    """Individual precondition checks, in evaluation order."""

    DB_AUTH = "db_auth"
    STORAGE_CREDENTIALS = "storage_credentials"
    STORAGE_REGION = "storage_region"
    STORAGE_LOCATION = "storage_location"


def check_preconditions(
    config: PipelineConfig,
    require_bucket: bool = True,
) -> PreconditionMissing | None:
    """
    Return the first failed precondition, or None if all are satisfied.

    Args:
        config: Pipeline configuration
        require_bucket: Whether the bucket must be configured (restore
            reads it from the remote address instead)
    """
    connection = config.connection
    remote = config.remote

    if not connection.has_auth():
        return PreconditionMissing(
            PreconditionCheck.DB_AUTH,
            ["PGPASSWORD"],
            explain_missing_db_auth(connection.passfile),
        )

    missing: List[str] = []
    if not remote.access_key_id:
        missing.append("AWS_ACCESS_KEY_ID")
    if not remote.secret_access_key:
        missing.append("AWS_SECRET_ACCESS_KEY")
    if missing:
        return PreconditionMissing(
            PreconditionCheck.STORAGE_CREDENTIALS,
            missing,
            explain_missing_storage_credentials(missing),
        )

    if not remote.region:
        missing = ["AWS_DEFAULT_REGION"]
        return PreconditionMissing(
            PreconditionCheck.STORAGE_REGION,
            missing,
            explain_missing_region(missing),
        )

    # An explicit endpoint stands in for the account id
    if not remote.account_id and not remote.endpoint_url:
        missing.append("R2_ACCOUNT_ID")
    if require_bucket and not remote.bucket:
        missing.append("R2_BUCKET")
    if missing:
        return PreconditionMissing(
            PreconditionCheck.STORAGE_LOCATION,
            missing,
            explain_missing_storage_location(missing),
        )

    return None


def validate(config: PipelineConfig, require_bucket: bool = True) -> PipelineConfig:
    """
    Validate preconditions, raising on the first missing value.

    Returns:
        The same config, now known to be usable

    Raises:
        PreconditionMissing: Carrying the failed check and missing names
    """
    failure = check_preconditions(config, require_bucket=require_bucket)
    if failure is not None:
        raise failure
    return config
