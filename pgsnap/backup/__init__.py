# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Snapshot Engine - Database export and replay.
"""

from pgsnap.backup.manager import (
    build_dump_command,
    write_snapshot,
)

from pgsnap.backup.restore import (
    build_apply_command,
    apply_snapshot,
)

__all__ = [
    # Manager
    "build_dump_command",
    "write_snapshot",
    # Restore
    "build_apply_command",
    "apply_snapshot",
]
