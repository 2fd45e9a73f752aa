"""Exception hierarchy for cachemgr.

All cachemgr-specific exceptions inherit from CacheMgrError, so callers can
catch broadly (CacheMgrError) or narrowly (e.g., PreconditionError).
"""

from __future__ import annotations


class CacheMgrError(Exception):
    """Base exception for all cachemgr errors."""


class PreconditionError(CacheMgrError):
    """Raised when a job cannot start because its environment is not ready.

    Examples: missing or read-only target directory, no cache sub-directories,
    missing worker binary. These are expected failures: the operation ends
    ``failed`` and the message is shown to the caller verbatim.
    """


class WorkerFailedError(CacheMgrError):
    """Raised when a worker process exits with an unexpected non-zero code."""

    def __init__(self, binary: str, exit_code: int | None, stderr: str) -> None:
        self.binary = binary
        self.exit_code = exit_code
        self.stderr = stderr
        detail = stderr.strip() or "no error output"
        super().__init__(f"{binary} failed with exit code {exit_code}: {detail}")


class InvalidTransitionError(CacheMgrError):
    """Raised when an operation status change would move backwards."""


class LineCountError(CacheMgrError):
    """Raised when a file stays unreadable after every retry."""


class StateStoreError(CacheMgrError):
    """Raised when the durable state store is used before it is opened."""
