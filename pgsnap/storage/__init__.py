# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Artifact Storage - Compression, object storage transfer and local retention.
"""

from pgsnap.storage.compressor import (
    compress_stream,
    decompress_stream,
    iter_file,
    CompressionStats,
)

from pgsnap.storage.transfer import (
    create_s3_client,
    upload_artifact,
    download_artifact,
    list_artifacts,
    RemoteArtifact,
    UploadReceipt,
)

from pgsnap.storage.retention import (
    apply_retention,
    cleanup_restore_artifacts,
    list_local_artifacts,
    prune_stale_runs,
)

__all__ = [
    # Compressor
    "compress_stream",
    "decompress_stream",
    "iter_file",
    "CompressionStats",
    # Transfer
    "create_s3_client",
    "upload_artifact",
    "download_artifact",
    "list_artifacts",
    "RemoteArtifact",
    "UploadReceipt",
    # Retention
    "apply_retention",
    "cleanup_restore_artifacts",
    "list_local_artifacts",
    "prune_stale_runs",
]
