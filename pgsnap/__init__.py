# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
pgsnap - Periodic PostgreSQL snapshots to S3-compatible object storage.

Exports a database with pg_dump, gzips it, uploads it to object storage
(Cloudflare R2 by default) and restores it on demand. Package name: pgsnap.
"""

__version__ = "0.1.0"

# Configuration
from pgsnap.config import (
    ConnectionProfile,
    PipelineConfig,
    RemoteProfile,
    RetentionAction,
    RetentionPolicy,
)

# Core functions
from pgsnap.core import (
    run_backup,
    run_restore,
    run_upload,
    list_remote,
)

# Environment-based configuration and profiles (additional helpers)
from pgsnap.env import (
    create_config_from_env,
    legacy_always_purge,
    keep_everything,
)

__all__ = [
    # Version
    "__version__",
    # Configuration
    "ConnectionProfile",
    "PipelineConfig",
    "RemoteProfile",
    "RetentionAction",
    "RetentionPolicy",
    "create_config_from_env",
    "legacy_always_purge",
    "keep_everything",
    # Core orchestration functions
    "run_backup",
    "run_restore",
    "run_upload",
    "list_remote",
]
