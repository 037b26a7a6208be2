# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Naming and remote addressing tests.

Artifact names and remote addresses are what operators copy into restore
commands, so their exact shape is tested here.
"""

from datetime import datetime

import pytest

from pgsnap.exceptions import UsageError
from pgsnap.naming import (
    SnapshotArtifact,
    artifact_filename,
    endpoint_url,
    filename_from_uri,
    object_key,
    parse_artifact_filename,
    parse_remote_uri,
    resolve_remote_uri,
)


# ============================================================================
# Test 1: ARTIFACT NAMES
# ============================================================================

def test_artifact_filename_format():
    """Names follow {db}_{dd-mm-yyyy_HH:MM}.sql.gz."""
    name = artifact_filename("orders", datetime(2025, 6, 1, 2, 0))
    assert name == "orders_01-06-2025_02:00.sql.gz"


def test_same_minute_backups_collide():
    """Two backups in the same minute get the same name (accepted)."""
    first = artifact_filename("orders", datetime(2025, 6, 1, 2, 0, 5))
    second = artifact_filename("orders", datetime(2025, 6, 1, 2, 0, 55))
    assert first == second


def test_different_minutes_never_collide():
    """Backups in different minutes always get different names."""
    names = {
        artifact_filename("orders", datetime(2025, 6, 1, 2, minute))
        for minute in range(60)
    }
    assert len(names) == 60

    assert artifact_filename("orders", datetime(2025, 6, 1, 2, 0)) != artifact_filename(
        "orders", datetime(2025, 6, 2, 2, 0)
    )


def test_snapshot_artifact_filename_property():
    """SnapshotArtifact derives its filename from database and time."""
    artifact = SnapshotArtifact(database_name="orders", timestamp=datetime(2025, 6, 1, 2, 0))
    assert artifact.filename == "orders_01-06-2025_02:00.sql.gz"
    assert artifact.compressed is True


def test_parse_artifact_filename():
    """Names that follow the contract parse back to database and time."""
    parsed = parse_artifact_filename("my_db_01-06-2025_02:00.sql.gz")
    assert parsed == ("my_db", datetime(2025, 6, 1, 2, 0))

    assert parse_artifact_filename("notes.txt") is None
    assert parse_artifact_filename("orders_99-99-2025_02:00.sql.gz") is None


# ============================================================================
# Test 2: REMOTE ADDRESSES
# ============================================================================

def test_resolve_remote_uri_with_prefix():
    """Artifacts land under the configured path."""
    uri = resolve_remote_uri("backups-bucket", "daily", "orders_01-06-2025_02:00.sql.gz")
    assert uri == "s3://backups-bucket/daily/orders_01-06-2025_02:00.sql.gz"


def test_resolve_remote_uri_normalises_slashes():
    """Leading and trailing slashes of the prefix are ignored."""
    uri = resolve_remote_uri("b", "/daily/pg/", "x.sql.gz")
    assert uri == "s3://b/daily/pg/x.sql.gz"


@pytest.mark.parametrize("prefix", [None, "", "/"])
def test_resolve_remote_uri_without_prefix(prefix):
    """Without a prefix the artifact sits at the bucket root."""
    assert resolve_remote_uri("b", prefix, "x.sql.gz") == "s3://b/x.sql.gz"
    assert object_key(prefix, "x.sql.gz") == "x.sql.gz"


def test_endpoint_url():
    """The R2 endpoint is derived from the account id."""
    assert endpoint_url("abc123") == "https://abc123.r2.cloudflarestorage.com"


def test_parse_remote_uri():
    """Addresses split into bucket and key."""
    bucket, key = parse_remote_uri("s3://backups-bucket/daily/orders_01-06-2025_02:00.sql.gz")
    assert bucket == "backups-bucket"
    assert key == "daily/orders_01-06-2025_02:00.sql.gz"
    assert filename_from_uri("s3://backups-bucket/daily/orders_01-06-2025_02:00.sql.gz") == (
        "orders_01-06-2025_02:00.sql.gz"
    )


@pytest.mark.parametrize(
    "uri",
    [
        "",
        "orders_01-06-2025_02:00.sql.gz",
        "https://bucket/key.sql.gz",
        "s3://",
        "s3://bucket",
        "s3://bucket/",
        "s3://bucket/daily/",
    ],
)
def test_parse_remote_uri_rejects_malformed(uri):
    """Anything but s3://<bucket>/<key> is a usage error."""
    with pytest.raises(UsageError):
        parse_remote_uri(uri)


def test_filename_from_uri_rejects_dot_segments():
    """A key ending in '..' cannot escape the restore directory."""
    with pytest.raises(UsageError):
        filename_from_uri("s3://bucket/daily/..")
