"""Exception hierarchy for gum.

Every error carries the process exit code the CLI should use for it:

- 1: generic failure
- 2: configuration problem
- 3: storage error
- 4: permission error
"""

from __future__ import annotations

import sqlite3
from typing import Optional

EXIT_FAILURE = 1
EXIT_CONFIG = 2
EXIT_STORAGE = 3
EXIT_PERMISSION = 4


class GumError(Exception):
    """Base class for all gum errors."""

    exit_code = EXIT_FAILURE


class ConfigError(GumError):
    """Configuration could not be resolved into usable paths."""

    exit_code = EXIT_CONFIG


class StorageError(GumError):
    """A store operation failed.

    Carries the operation name and the natural key that was being written
    or read, so the operator can tell what failed without a traceback.

    >>> err = StorageError("upsert_project", "path='/x'", "disk I/O error")
    >>> str(err)
    "upsert_project(path='/x'): disk I/O error"
    """

    exit_code = EXIT_STORAGE

    def __init__(self, operation: str, key: Optional[str], message: str):
        self.operation = operation
        self.key = key
        self.message = message
        target = f"{operation}({key})" if key else operation
        super().__init__(f"{target}: {message}")


class StoragePermissionError(StorageError):
    """The store or cache location is not writable."""

    exit_code = EXIT_PERMISSION


class MalformedCacheEntry(GumError):
    """A legacy cache envelope or payload failed validation."""

    def __init__(self, key: str, reason: str):
        self.key = key
        self.reason = reason
        super().__init__(f"malformed cache entry '{key}': {reason}")


class BackupMissingError(GumError):
    """Rollback needs a backup file that does not exist."""

    def __init__(self, missing: list[str]):
        self.missing = missing
        super().__init__(f"missing backup file(s): {', '.join(missing)}")


class MigrationStateError(GumError):
    """The requested migration transition is not valid from the current state."""


class Cancelled(GumError):
    """A long-running operation observed its cancellation signal.

    ``result`` holds whatever progress was committed before stopping.
    """

    def __init__(self, result=None):
        self.result = result
        super().__init__("operation cancelled; committed progress was kept")


_LOCKED_MARKERS = ("database is locked", "database is busy", "database table is locked")
_PERMISSION_MARKERS = (
    "readonly database",
    "read-only",
    "unable to open database file",
    "permission denied",
)


def is_transient(exc: BaseException) -> bool:
    """True if exc is lock contention that is worth retrying.

    >>> is_transient(sqlite3.OperationalError("database is locked"))
    True
    >>> is_transient(sqlite3.OperationalError("no such table: x"))
    False
    """
    if not isinstance(exc, sqlite3.OperationalError):
        return False
    msg = str(exc).lower()
    return any(marker in msg for marker in _LOCKED_MARKERS)


def wrap_storage_error(operation: str, key: Optional[str], exc: BaseException) -> StorageError:
    """Convert a low-level exception into the matching StorageError subclass.

    >>> wrap_storage_error("clear", None, sqlite3.OperationalError(
    ...     "attempt to write a readonly database")).exit_code
    4
    >>> wrap_storage_error("clear", None, sqlite3.DatabaseError("malformed")).exit_code
    3
    """
    msg = str(exc)
    if isinstance(exc, PermissionError) or any(m in msg.lower() for m in _PERMISSION_MARKERS):
        return StoragePermissionError(operation, key, msg)
    return StorageError(operation, key, msg)
