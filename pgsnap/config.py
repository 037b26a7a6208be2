# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
pgsnap Configuration - Immutable configuration data structures.

All configuration is frozen (immutable) after creation and passed
explicitly into every pipeline component. Structural problems (bad sizes,
bad schedule) are rejected here; missing credentials are reported later
by the precondition validator so each gets its own exit status.
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Dict, List

from pgsnap.naming import endpoint_url

DEFAULT_BACKUP_DIR = Path.home() / "backups" / "postgres"
DEFAULT_RESTORE_DIR = DEFAULT_BACKUP_DIR / "restore-tmp"
DEFAULT_CHUNK_SIZE = 64 * 1024
DEFAULT_PART_SIZE = 8 * 1024 * 1024
MIN_PART_SIZE = 5 * 1024 * 1024  # S3 minimum for non-final parts
REGIONLESS = "auto"


class RetentionAction(str, Enum):
    """What happens to a local working copy after a run."""

    KEEP = "keep"
    DELETE = "delete"


@dataclass(frozen=True)
class RetentionPolicy:
    """Retention rule applied to a run's local working directory."""

    on_success: RetentionAction = RetentionAction.DELETE
    on_failure: RetentionAction = RetentionAction.KEEP

    def action_for(self, succeeded: bool) -> RetentionAction:
        return self.on_success if succeeded else self.on_failure


BACKUP_RETENTION = RetentionPolicy(
    on_success=RetentionAction.DELETE,
    on_failure=RetentionAction.KEEP,
)
RESTORE_RETENTION = RetentionPolicy(
    on_success=RetentionAction.KEEP,
    on_failure=RetentionAction.KEEP,
)


def _validate_cron_time(time_str: str) -> bool:
    """Validate HH:MM time format."""
    if not time_str:
        return False
    try:
        parts = time_str.split(":")
        if len(parts) != 2:
            return False
        hour, minute = int(parts[0]), int(parts[1])
        return 0 <= hour <= 23 and 0 <= minute <= 59
    except (ValueError, AttributeError):
        return False


@dataclass(frozen=True)
class ConnectionProfile:
    """
    Parameters needed to authenticate to and address a database.

    The password is resolved out of band (environment or credential file)
    and is excluded from repr so it cannot leak into logs.
    """

    database: str
    host: str = "localhost"
    port: int = 5432
    username: str = "postgres"
    password: str | None = field(default=None, repr=False)
    passfile: Path | None = field(default_factory=lambda: Path.home() / ".pgpass")

    def has_auth(self) -> bool:
        """True if a password or an existing credential file is available."""
        if self.password:
            return True
        return bool(self.passfile and self.passfile.is_file())

    def subprocess_env(self, base: Dict[str, str] | None = None) -> Dict[str, str]:
        """
        Build the environment for pg_dump/psql child processes.

        Args:
            base: Environment to start from (usually os.environ)

        Returns:
            New dict; the caller's mapping is never modified
        """
        env = dict(base or {})
        if self.password:
            env["PGPASSWORD"] = self.password
        elif self.passfile:
            env.pop("PGPASSWORD", None)
            env["PGPASSFILE"] = str(self.passfile)
        return env


@dataclass(frozen=True)
class RemoteProfile:
    """Object storage account, location and access keys."""

    account_id: str | None = None
    bucket: str | None = None
    path_prefix: str | None = None
    access_key_id: str | None = field(default=None, repr=False)
    secret_access_key: str | None = field(default=None, repr=False)
    region: str | None = REGIONLESS
    # Overrides the account-derived endpoint (other S3-compatible stores)
    endpoint_url: str | None = None

    @property
    def resolved_endpoint(self) -> str | None:
        if self.endpoint_url:
            return self.endpoint_url
        if self.account_id:
            return endpoint_url(self.account_id)
        return None


@dataclass(frozen=True)
class PipelineConfig:
    """
    Immutable configuration for one backup or restore invocation.

    Built once at process start (see pgsnap.env.create_config_from_env)
    and handed to every stage.
    """

    connection: ConnectionProfile

    remote: RemoteProfile = field(default_factory=RemoteProfile)

    # Local working area; each backup run gets its own subdirectory
    backup_dir: Path = DEFAULT_BACKUP_DIR

    # Where downloaded artifacts land during restore
    restore_dir: Path = DEFAULT_RESTORE_DIR

    backup_retention: RetentionPolicy = BACKUP_RETENTION
    restore_retention: RetentionPolicy = RESTORE_RETENTION

    # Read size for every streaming stage
    chunk_size: int = DEFAULT_CHUNK_SIZE

    # Files at or above this size are uploaded in parts
    multipart_threshold: int = DEFAULT_PART_SIZE
    part_size: int = DEFAULT_PART_SIZE

    # gzip level, 1 (fast) to 9 (small)
    compression_level: int = 6

    # Per-stage timeouts in seconds (None = wait forever)
    export_timeout: float | None = None
    transfer_timeout: float | None = None
    apply_timeout: float | None = None

    # Replay the whole export in one transaction
    single_transaction: bool = True

    # Exclusive lock file guarding against overlapping runs
    lock_path: Path | None = None

    # Daily schedule in HH:MM for the scheduler daemon
    schedule_cron: str | None = None

    def __post_init__(self) -> None:
        """Validate configuration after creation."""
        errors: List[str] = []

        if not self.connection.database:
            errors.append("database name is required")

        if not 1 <= self.connection.port <= 65535:
            errors.append(f"port must be 1-65535, got {self.connection.port}")

        if self.chunk_size < 1:
            errors.append(f"chunk_size must be >= 1, got {self.chunk_size}")

        if self.part_size < MIN_PART_SIZE:
            errors.append(
                f"part_size must be >= {MIN_PART_SIZE} bytes, got {self.part_size}"
            )

        if self.multipart_threshold < 1:
            errors.append(
                f"multipart_threshold must be >= 1, got {self.multipart_threshold}"
            )

        if not 1 <= self.compression_level <= 9:
            errors.append(
                f"compression_level must be 1-9, got {self.compression_level}"
            )

        for name in ("export_timeout", "transfer_timeout", "apply_timeout"):
            value = getattr(self, name)
            if value is not None and value <= 0:
                errors.append(f"{name} must be > 0, got {value}")

        if self.schedule_cron and not _validate_cron_time(self.schedule_cron):
            errors.append(f"Invalid schedule_cron format: {self.schedule_cron}, expected HH:MM")

        if errors:
            from pgsnap.exceptions import ConfigurationError

            raise ConfigurationError(
                "Configuration validation failed",
                details={"errors": errors},
            )

    def with_updates(self, **kwargs) -> "PipelineConfig":
        """
        Create a new config with updated values.

        Since the config is frozen, this creates a new instance.
        """
        return replace(self, **kwargs)
