"""Error taxonomy.

Process-fatal errors (``ConfigError``, ``BinaryNotFound``) are checked once,
before any job starts. Everything else is local to one job: the batch drivers
turn it into a failed :class:`~doradobatch.models.JobResult` and move on.
"""

from __future__ import annotations

from typing import Optional


class DoradoBatchError(Exception):
    """Base class for all doradobatch errors."""


class ConfigError(DoradoBatchError):
    """Missing or invalid command-line argument / configuration value."""


class BinaryNotFound(DoradoBatchError):
    """The Dorado binary is missing or not executable at the resolved path."""


class JobError(DoradoBatchError):
    """An error that abandons a single job without affecting its siblings."""


class StagingIOError(JobError):
    """Download, extraction, or fast5 conversion failed."""


class InputNotFound(JobError):
    """The staged input path does not exist."""


class BasecallExecutionError(JobError):
    """The basecaller (or its summary step) exited non-zero."""

    def __init__(self, message: str, *, returncode: Optional[int] = None) -> None:
        super().__init__(message)
        self.returncode = returncode


class JobCancelled(JobError):
    """The job was aborted through its cancel token."""
