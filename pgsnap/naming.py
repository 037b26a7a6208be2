# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Snapshot naming and remote addressing.

Artifact names are part of the operator-facing contract:

    {database_name}_{dd-mm-yyyy_HH:MM}.sql.gz

and remote addresses have the shape

    s3://{bucket}/[{path_prefix}/]{filename}

resolved against a per-account endpoint.
"""

import re
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path, PurePosixPath
from typing import Tuple

TIMESTAMP_FORMAT = "%d-%m-%Y_%H:%M"
ARTIFACT_SUFFIX = ".sql.gz"
URI_SCHEME = "s3://"

_ARTIFACT_RE = re.compile(
    r"^(?P<db>.+)_(?P<ts>\d{2}-\d{2}-\d{4}_\d{2}:\d{2})\.sql\.gz$"
)


@dataclass(frozen=True)
class SnapshotArtifact:
    """A single compressed database export."""

    database_name: str
    timestamp: datetime
    local_path: Path | None = None
    remote_uri: str | None = None
    compressed: bool = True

    @property
    def filename(self) -> str:
        return artifact_filename(self.database_name, self.timestamp)


def format_timestamp(timestamp: datetime) -> str:
    """Format a timestamp to minute precision for artifact names."""
    return timestamp.strftime(TIMESTAMP_FORMAT)


def artifact_filename(database_name: str, timestamp: datetime) -> str:
    """
    Build the artifact filename for a backup.

    Two backups of the same database started within the same minute get
    the same name; the later upload overwrites the earlier one.
    """
    return f"{database_name}_{format_timestamp(timestamp)}{ARTIFACT_SUFFIX}"


def parse_artifact_filename(filename: str) -> Tuple[str, datetime] | None:
    """
    Extract (database_name, timestamp) from an artifact filename.

    Returns None for names that do not follow the naming contract.
    """
    match = _ARTIFACT_RE.match(filename)
    if not match:
        return None
    try:
        timestamp = datetime.strptime(match.group("ts"), TIMESTAMP_FORMAT)
    except ValueError:
        return None
    return match.group("db"), timestamp


def endpoint_url(account_id: str) -> str:
    """Cloudflare R2 endpoint for an account."""
    return f"https://{account_id}.r2.cloudflarestorage.com"


def _clean_prefix(path_prefix: str | None) -> str:
    return (path_prefix or "").strip("/")


def object_key(path_prefix: str | None, filename: str) -> str:
    """Key of an artifact inside its bucket."""
    prefix = _clean_prefix(path_prefix)
    return f"{prefix}/{filename}" if prefix else filename


def resolve_remote_uri(bucket: str, path_prefix: str | None, filename: str) -> str:
    """
    Fully qualified remote address of an artifact.

    Without a path prefix the artifact sits at the bucket root.
    """
    return f"{URI_SCHEME}{bucket}/{object_key(path_prefix, filename)}"


def parse_remote_uri(uri: str) -> Tuple[str, str]:
    """
    Split an s3:// address into (bucket, key).

    Raises:
        UsageError: If the address is not s3://<bucket>/<key>
    """
    from pgsnap.errors import explain_bad_remote_uri
    from pgsnap.exceptions import UsageError

    if not uri or not uri.startswith(URI_SCHEME):
        raise UsageError(explain_bad_remote_uri(uri))

    bucket, _, key = uri[len(URI_SCHEME):].partition("/")
    if not bucket or not key or key.endswith("/"):
        raise UsageError(explain_bad_remote_uri(uri))

    return bucket, key


def filename_from_uri(uri: str) -> str:
    """Basename of a remote address, used for the local download path."""
    from pgsnap.errors import explain_bad_remote_uri
    from pgsnap.exceptions import UsageError

    _, key = parse_remote_uri(uri)
    name = PurePosixPath(key).name
    if name in ("", ".", ".."):
        raise UsageError(explain_bad_remote_uri(uri))
    return name
