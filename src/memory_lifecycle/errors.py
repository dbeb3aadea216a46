"""Typed errors for the memory lifecycle engine.

Every error carries a machine-readable ``code``, the ``operation`` that
failed, the affected project/title, a UTC timestamp and at least one
actionable suggestion. ``retryable`` tells retry policies (tenacity in the
record store, callers elsewhere) whether trying again can help.
"""

from __future__ import annotations

import errno
from datetime import datetime, timezone
from typing import Any


class MemoryEngineError(Exception):
    """Base class for all engine errors."""

    code = "MEMORY_ENGINE_ERROR"
    retryable = False
    suggestions: tuple[str, ...] = ()

    def __init__(
        self,
        message: str,
        *,
        operation: str = "unknown",
        project: str | None = None,
        title: str | None = None,
        context: dict[str, Any] | None = None,
        code: str | None = None,
    ):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.operation = operation
        self.project = project
        self.title = title
        self.context = dict(context or {})
        self.timestamp = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")

    @property
    def user_message(self) -> str:
        """Message followed by a bulleted list of suggestions."""
        if not self.suggestions:
            return self.message
        bullets = "\n".join(f"- {s}" for s in self.suggestions)
        return f"{self.message}\n\nSuggestions:\n{bullets}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": type(self).__name__,
            "code": self.code,
            "message": self.message,
            "operation": self.operation,
            "project": self.project,
            "title": self.title,
            "context": self.context,
            "timestamp": self.timestamp,
            "retryable": self.retryable,
            "suggestions": list(self.suggestions),
        }


# ---------------------------------------------------------------------------
# Record store
# ---------------------------------------------------------------------------


class NotFoundError(MemoryEngineError):
    """A requested project or memory does not exist."""

    code = "NOT_FOUND"
    suggestions = (
        "List available memories or projects before reading",
        "Check the project and title spelling",
        "Store the memory first if it should exist",
    )

    @classmethod
    def for_memory(cls, project: str, title: str, operation: str) -> NotFoundError:
        return cls(
            f"Memory '{title}' not found in project '{project}'",
            operation=operation,
            project=project,
            title=title,
            code="MEMORY_NOT_FOUND",
        )

    @classmethod
    def for_project(cls, project: str, operation: str) -> NotFoundError:
        return cls(
            f"Project '{project}' not found",
            operation=operation,
            project=project,
            code="PROJECT_NOT_FOUND",
        )


class CorruptStoreError(MemoryEngineError):
    """Durable bytes could not be parsed; never auto-repaired."""

    code = "CORRUPT_STORE"
    suggestions = (
        "Restore the project from its most recent valid backup",
        "Inspect the file manually for truncation or encoding problems",
    )


class InvalidRecordError(MemoryEngineError):
    """A record, title or project name failed validation before a write."""

    code = "INVALID_RECORD"
    suggestions = (
        "Use a non-empty title",
        "Project names may contain letters, digits, '.', '_' and '-' only",
    )


class FileSystemError(MemoryEngineError):
    """Wraps an underlying OS-level I/O failure."""

    code = "FILESYSTEM_ERROR"
    suggestions = (
        "Check disk space availability",
        "Verify file and directory permissions",
        "Ensure the storage path is accessible",
    )

    # Errors that will not go away by retrying.
    _PERMANENT_ERRNOS = frozenset({errno.ENOENT, errno.EACCES, errno.EPERM, errno.EISDIR, errno.ENOTDIR, errno.EROFS})

    def __init__(self, message: str, *, cause: BaseException | None = None, path: str | None = None, **kwargs: Any):
        context = dict(kwargs.pop("context", None) or {})
        if path is not None:
            context["path"] = path
        if cause is not None:
            context["cause"] = f"{type(cause).__name__}: {cause}"
        super().__init__(message, context=context, **kwargs)
        self.path = path
        self.cause = cause
        cause_errno = getattr(cause, "errno", None)
        self.retryable = cause_errno not in self._PERMANENT_ERRNOS


class OperationCancelledError(MemoryEngineError):
    """A maintenance pass observed its cancellation signal."""

    code = "OPERATION_CANCELLED"
    suggestions = ("Re-run the maintenance pass when it can complete",)


# ---------------------------------------------------------------------------
# Backups
# ---------------------------------------------------------------------------


class BackupError(MemoryEngineError):
    """Base class for backup-subsystem errors."""

    code = "BACKUP_ERROR"


class CooldownActiveError(BackupError):
    """An unforced backup was requested inside the cooldown window."""

    code = "COOLDOWN_ACTIVE"
    retryable = True
    suggestions = (
        "Wait for the cooldown window to pass",
        "Pass force=True to bypass the cooldown",
    )

    def __init__(self, project: str, retry_after: float, cooldown_seconds: float, last_backup_at: str | None = None):
        super().__init__(
            f"Backup cooldown active for project '{project}' (retry in {retry_after:.1f}s)",
            operation="backup",
            project=project,
            context={
                "cooldown_seconds": cooldown_seconds,
                "retry_after": retry_after,
                "last_backup_at": last_backup_at,
            },
        )
        self.retry_after = retry_after


class SourceNotFoundError(BackupError):
    """The project record to back up does not exist."""

    code = "SOURCE_NOT_FOUND"
    suggestions = (
        "Store at least one memory in the project before backing it up",
        "Check the project name spelling",
    )


class BackupNotFoundError(BackupError):
    """The backup file to restore or delete does not exist."""

    code = "BACKUP_NOT_FOUND"
    suggestions = ("List available backups for the project and pick an existing one",)


class BackupCorruptedError(BackupError):
    """The backup failed validation; it is never used for restore."""

    code = "BACKUP_CORRUPTED"
    suggestions = (
        "Try restoring from a different backup",
        "Run the corrupted-backup cleanup to remove unusable files",
    )


class BackupFailedError(BackupError):
    """Copying the project record to its backup location failed."""

    code = "BACKUP_FAILED"
    retryable = True
    suggestions = (
        "Check disk space availability",
        "Verify backup directory permissions",
    )


# ---------------------------------------------------------------------------
# Similarity engine
# ---------------------------------------------------------------------------


class VectorShapeError(MemoryEngineError):
    """Similarity input vectors are malformed or of mismatched length."""

    code = "VECTOR_SHAPE"
    suggestions = (
        "Make sure every embedding comes from the same model",
        "Reject empty or non-numeric vectors before storing them",
    )


def is_retryable_error(exception: BaseException) -> bool:
    """
    Determine if an exception is worth retrying.

    Only engine errors that declare themselves retryable qualify; timeouts
    of bounded I/O are treated as transient.
    """
    if isinstance(exception, MemoryEngineError):
        return exception.retryable
    return isinstance(exception, TimeoutError)
