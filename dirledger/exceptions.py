"""Ledger exception types.

Convention:
- Per-file conditions (``UnreadableContentError``) and per-subtree conditions
  (``CycleDetectedError``) are caught by the scan engine, recorded, and never
  abort a scan.
- ``StorageError`` is raised only after the transaction-boundary retries are
  exhausted.
- ``IntegrityViolation`` and ``OutOfOrderError`` abort the current transaction
  and propagate; they indicate a logic or environment defect and are never
  retried.
"""

from __future__ import annotations


class LedgerError(Exception):
    """Base class for all dirledger errors."""


class NotFoundError(LedgerError):
    """Raised when a Directory or FileVersion lookup finds nothing."""


class OutOfOrderError(LedgerError):
    """Raised when an append carries a timestamp not later than the current latest."""

    def __init__(self, dir_id: int, file_name: str, timestamp: object, latest: object) -> None:
        super().__init__(
            f"Out-of-order append for {file_name!r} in directory {dir_id}: "
            f"{timestamp} is not later than {latest}"
        )
        self.dir_id = dir_id
        self.file_name = file_name
        self.timestamp = timestamp
        self.latest = latest


class IntegrityViolation(LedgerError):
    """Raised on a write referencing a missing Directory, or on detected corruption."""


class UnreadableContentError(LedgerError):
    """Raised when a file exists but its content cannot be fingerprinted."""


class StorageError(LedgerError):
    """Raised when the backing store stays unavailable after retries."""


class CycleDetectedError(LedgerError):
    """Raised by the walker when a physical directory would be entered twice."""

    def __init__(self, path: object) -> None:
        super().__init__(f"Directory cycle detected at {path}")
        self.path = path


class ScanInProgressError(LedgerError):
    """Raised when a scan of a root is requested while one is already running."""
