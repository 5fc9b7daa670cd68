"""
ArchForge Error Taxonomy

Every failure the library can surface derives from ArchforgeError so
the CLI can catch one type at the top level. Sanitizers never raise;
these are for the transformer, the migration guard and the executor.
"""

from __future__ import annotations

from pathlib import Path


class ArchforgeError(Exception):
    """Base class for all ArchForge failures."""


class TaskNotFoundError(ArchforgeError):
    """The requested task id has no section in the task source."""

    def __init__(self, task_id: str, source: str | Path):
        self.task_id = task_id
        self.source = str(source)
        super().__init__(f"Task {task_id} not found in {self.source}")


class TaskValidationError(ArchforgeError):
    """A task field is malformed and has no safe default."""


class InvalidTransitionError(ArchforgeError):
    """A step status change that would move backwards or sideways."""


class PathTraversalError(ArchforgeError):
    """A supplied path escapes the directory that must contain it."""

    def __init__(self, candidate: str | Path, container: str | Path):
        self.candidate = str(candidate)
        self.container = str(container)
        super().__init__(f"Path '{self.candidate}' escapes '{self.container}'")


class IOFailureError(ArchforgeError):
    """A copy, write or permission failure on the project filesystem."""


class TaskSourceError(IOFailureError):
    """The task source file could not be read."""


class BackupDirectoryError(IOFailureError):
    """The backup directory could not be created or is not writable."""


class BackupFailedError(ArchforgeError):
    """
    Aggregate signal raised after a backup batch was rolled back.

    The triggering I/O error is chained as ``__cause__`` and kept on
    ``cause``. ``rolled_back`` lists the backup files that were removed.
    """

    def __init__(self, message: str, cause: BaseException | None = None, rolled_back: list[Path] | None = None):
        super().__init__(message)
        self.cause = cause
        self.rolled_back = rolled_back or []
        self.partial_rollback = True
