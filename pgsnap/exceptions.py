# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
pgsnap Exceptions - Custom exceptions for the pgsnap package.

Every pipeline failure maps to exactly one exception class so callers
(the CLI, cron wrappers) can tell the failing stage apart without
inspecting internal state.
"""

from typing import List


class PgSnapError(Exception):
    """Base exception for all pgsnap errors."""

    stage: str = "unknown"

    def __init__(self, message: str, details: dict | None = None):
        self.message = message
        self.details = details or {}
        # Set by the pipeline to the PipelineRun that failed
        self.run = None
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class ConfigurationError(PgSnapError):
    """Raised when configuration values are malformed."""

    stage = "configuration"


class UsageError(PgSnapError):
    """Raised when the command line is used incorrectly."""

    stage = "usage"


class PreconditionMissing(PgSnapError):
    """
    Raised when a required credential or environment value is absent.

    Attributes:
        check: The PreconditionCheck that failed
        missing: Names of the missing values
    """

    stage = "preconditions"

    def __init__(self, check, missing: List[str], message: str):
        self.check = check
        self.missing = list(missing)
        super().__init__(message, details={"missing": self.missing})


class ExportError(PgSnapError):
    """Raised when the database export fails."""

    stage = "export"


class CompressionError(PgSnapError):
    """Raised when compressing or decompressing a snapshot fails."""

    stage = "compression"


class TransferError(PgSnapError):
    """Raised when moving an artifact to or from object storage fails."""

    stage = "transfer"


class UploadError(TransferError):
    """Raised when an upload to object storage fails."""

    stage = "upload"


class DownloadError(TransferError):
    """Raised when a download from object storage fails."""

    stage = "download"


class RestoreApplyError(PgSnapError):
    """Raised when replaying a snapshot against the target database fails."""

    stage = "apply"


class RunLockedError(PgSnapError):
    """Raised when another pipeline run holds the lock file."""

    stage = "lock"
