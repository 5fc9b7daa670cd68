"""
ArchForge Config Migration Guard

Protects configuration files that already exist in a target project
before generated ones overwrite them.

  Scan → Decide → Backup (atomic) → Replace → Prune (optional)

Backups are all-or-nothing per batch: if any copy fails, every backup
made by that call is removed before BackupFailedError is raised.
Backup names carry a nanosecond timestamp and a random suffix so two
runs against the same directory never clobber each other. No lock is
taken on the directory.

An interrupted process (Ctrl-C, kill) is not rolled back; whatever
backups were completed stay on disk.
"""

from __future__ import annotations

import os
import re
import secrets
import shutil
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Literal

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, model_validator

from archforge.errors import BackupDirectoryError, BackupFailedError
from archforge.sanitizer import sanitize_path_against_escape

# editor settings, lint config, type-checker config, test-runner config, ignore-file
CONFIG_CANDIDATES: tuple[str, ...] = (
    ".vscode/settings.json",
    "eslint.config.js",
    "tsconfig.json",
    "vitest.config.ts",
    ".gitignore",
)

DEFAULT_BACKUP_DIR = ".backups"
DEFAULT_KEEP_COUNT = 10
DEFAULT_GUIDANCE = "docs/MIGRATION.md"
IGNORE_MARKER = "# ArchForge"

BACKUP_NAME_RE = re.compile(r"\.backup-\d+-[0-9a-f]{6}(?:\.[^./\\]+)?$")

MigrationMode = Literal["dry-run", "force", "interactive"]
DecisionAction = Literal["report", "replace", "backup-and-replace", "keep"]
MigrationStatus = Literal["dry-run", "kept", "replaced", "backed-up-and-replaced"]


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

class ExistingFile(BaseModel):
    """A candidate config file that is already present in the project."""
    relative_path: str
    absolute_path: Path
    size: int = 0


class BackupRecord(BaseModel):
    """Proof that an original file was durably copied before being overwritten."""
    original_path: Path
    backup_path: Path
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


_CONFIRMATION_KEY = object()


class ForceConfirmation:
    """
    Token proving the caller confirmed a backup-less overwrite twice.

    Only ``from_answers`` can build one, so force mode cannot be
    requested by accident.
    """

    __slots__ = ()

    def __init__(self, _key: object = None):
        if _key is not _CONFIRMATION_KEY:
            raise TypeError("use ForceConfirmation.from_answers()")

    @classmethod
    def from_answers(cls, first: bool, second: bool) -> "ForceConfirmation":
        if not (first and second):
            raise ValueError("force mode needs two explicit confirmations")
        return cls(_CONFIRMATION_KEY)


class MigrationOptions(BaseModel):
    """Every recognised migration option. There is no open-ended bag."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    dry_run: bool = False
    force: bool = False
    force_confirmation: ForceConfirmation | None = None
    backup_dir: Path | None = None
    keep_count: int | None = Field(default=DEFAULT_KEEP_COUNT, ge=0)
    cleanup_old_backups: bool = True

    @model_validator(mode="after")
    def check_mode(self) -> "MigrationOptions":
        if self.dry_run and self.force:
            raise ValueError("dry_run and force are mutually exclusive")
        if self.force and not isinstance(self.force_confirmation, ForceConfirmation):
            raise ValueError("force mode requires a ForceConfirmation")
        return self

    @property
    def mode(self) -> MigrationMode:
        if self.dry_run:
            return "dry-run"
        if self.force:
            return "force"
        return "interactive"


class MigrationDecision(BaseModel):
    mode: MigrationMode
    action: DecisionAction
    files: list[ExistingFile] = Field(default_factory=list)
    message: str = ""


class MigrationResult(BaseModel):
    status: MigrationStatus
    decision: MigrationDecision
    backup_dir: Path | None = None
    backups: list[BackupRecord] = Field(default_factory=list)
    written: list[Path] = Field(default_factory=list)
    pruned: list[Path] = Field(default_factory=list)
    guidance: str | None = None


# ---------------------------------------------------------------------------
# Naming + Copy Primitives
# ---------------------------------------------------------------------------

def _random_suffix() -> str:
    return secrets.token_hex(3)


def make_backup_name(path: Path, timestamp: int | None = None, suffix: str | None = None) -> str:
    """``{stem}.backup-{timestamp}-{hex6}{ext}``, keeping the extension last."""
    path = Path(path)
    ts = time.time_ns() if timestamp is None else timestamp
    rand = _random_suffix() if suffix is None else suffix
    return f"{path.stem}.backup-{ts}-{rand}{path.suffix}"


def durable_copy(source: Path, destination: Path) -> None:
    """
    Copy ``source`` to a new file at ``destination`` and fsync it.

    The destination must not exist. A partially written destination is
    removed before the error propagates.
    """
    with open(source, "rb") as src, open(destination, "xb") as dst:
        try:
            shutil.copyfileobj(src, dst)
            dst.flush()
            os.fsync(dst.fileno())
        except BaseException:
            dst.close()
            destination.unlink(missing_ok=True)
            raise


def prune_old_backups(backup_dir: Path, keep_count: int) -> list[Path]:
    """
    Delete all but the ``keep_count`` most recently modified backups.

    Only files matching the backup-name pattern are considered. When the
    directory already holds ``keep_count`` or fewer, nothing is stat'ed.
    Housekeeping only: deletion errors are logged, not raised.
    """
    if keep_count < 0:
        raise ValueError("keep_count must be >= 0")
    backup_dir = Path(backup_dir)
    if not backup_dir.is_dir():
        return []

    with os.scandir(backup_dir) as it:
        entries = [e for e in it if BACKUP_NAME_RE.search(e.name) and e.is_file()]

    if len(entries) <= keep_count:
        logger.debug(f"[MIGRATION] {len(entries)} backups <= keep {keep_count}, nothing to prune")
        return []

    ranked = sorted(entries, key=lambda e: (e.stat().st_mtime_ns, e.name), reverse=True)
    removed = []
    for entry in ranked[keep_count:]:
        path = Path(entry.path)
        try:
            path.unlink()
            removed.append(path)
        except OSError as e:
            logger.warning(f"[MIGRATION] Could not prune {path}: {e}")

    logger.info(f"[MIGRATION] Pruned {len(removed)} old backups from {backup_dir}")
    return removed


def merge_ignore_entries(existing: str | None, entries: list[str], marker: str = IGNORE_MARKER) -> str:
    """
    Append the entries missing from an ignore-file under a marker comment.

    Entries already present (as whole lines) are never duplicated. With
    nothing to add, the text comes back unchanged.
    """
    text = existing or ""
    present = {line.strip() for line in text.splitlines()}
    additions = [e for e in entries if e.strip() and e.strip() not in present]
    if not additions:
        return text

    block = "\n".join(([marker] if marker not in present else []) + additions) + "\n"
    if not text.strip():
        return block
    return text.rstrip("\n") + "\n\n" + block


# ---------------------------------------------------------------------------
# Guard
# ---------------------------------------------------------------------------

class ConfigMigrationGuard:
    """
    Runs the migration state machine for one project.

    ``copier``, ``clock`` and ``token_source`` are seams for fault
    injection and deterministic naming in tests.
    """

    def __init__(
        self,
        project_root: Path,
        candidates: tuple[str, ...] | list[str] = CONFIG_CANDIDATES,
        copier: Callable[[Path, Path], None] = durable_copy,
        clock: Callable[[], int] = time.time_ns,
        token_source: Callable[[], str] = _random_suffix,
        guidance: str = DEFAULT_GUIDANCE,
    ):
        self.project_root = Path(project_root).resolve()
        self.candidates = tuple(candidates)
        self._copier = copier
        self._clock = clock
        self._token_source = token_source
        self.guidance = guidance

    # --- Scan ---

    def scan(self, candidates: list[str] | tuple[str, ...] | None = None) -> list[ExistingFile]:
        """Report which candidate paths already exist as files."""
        found = []
        for rel in candidates if candidates is not None else self.candidates:
            path = sanitize_path_against_escape(rel, self.project_root, allow_absolute=False)
            if path.is_file():
                found.append(ExistingFile(relative_path=rel, absolute_path=path, size=path.stat().st_size))
        logger.info(f"[MIGRATION] Scan found {len(found)} existing config files")
        return found

    # --- Decide ---

    def decide(self, existing: list[ExistingFile], options: MigrationOptions, answer: bool = True) -> MigrationDecision:
        """
        Pick what happens next. Performs no I/O.

        ``answer`` is the interactive choice: True backs up and replaces,
        False keeps every existing file untouched.
        """
        mode = options.mode
        if mode == "dry-run":
            names = ", ".join(f.relative_path for f in existing) or "nothing"
            return MigrationDecision(mode=mode, action="report", files=existing, message=f"Would back up: {names}")

        if not existing:
            return MigrationDecision(mode=mode, action="replace", message="No existing config files to protect")

        if mode == "force":
            logger.warning(f"[MIGRATION] Force mode: overwriting {len(existing)} files without backup")
            return MigrationDecision(
                mode=mode, action="replace", files=existing,
                message="Force mode confirmed, backups skipped",
            )

        if answer:
            return MigrationDecision(
                mode=mode, action="backup-and-replace", files=existing,
                message=f"Backing up {len(existing)} files before replacing them",
            )
        return MigrationDecision(
            mode=mode, action="keep", files=existing,
            message=f"Existing configuration kept. See {self.guidance} to merge the generated settings by hand.",
        )

    # --- Backup ---

    def resolve_backup_dir(self, backup_dir: Path | str | None = None) -> Path:
        """
        Validate, create and probe the backup directory.

        Raises:
            PathTraversalError: a relative custom directory escapes the project.
            BackupDirectoryError: the directory cannot be created or written.
        """
        target = sanitize_path_against_escape(
            backup_dir if backup_dir is not None else DEFAULT_BACKUP_DIR,
            self.project_root,
        )
        probe = target / f".write-probe-{self._token_source()}"
        try:
            target.mkdir(parents=True, exist_ok=True)
            probe.write_bytes(b"")
            probe.unlink()
        except OSError as e:
            raise BackupDirectoryError(f"Backup directory {target} is not writable: {e}") from e
        return target

    def backup_name(self, path: Path) -> str:
        return make_backup_name(path, timestamp=self._clock(), suffix=self._token_source())

    def backup_all(self, existing: list[ExistingFile], backup_dir: Path | str | None = None) -> list[BackupRecord]:
        """
        Durably copy every existing file into the backup directory, in order.

        All-or-nothing: on the first failure, the backups made by this
        call are deleted and BackupFailedError is raised with the
        original error as its cause.
        """
        try:
            target = self.resolve_backup_dir(backup_dir)
        except BackupDirectoryError as e:
            raise BackupFailedError(str(e), cause=e) from e

        records: list[BackupRecord] = []
        for item in existing:
            backup_path = target / self.backup_name(item.absolute_path)
            try:
                self._copier(item.absolute_path, backup_path)
            except OSError as e:
                rolled_back = self._rollback(records)
                logger.error(
                    f"[MIGRATION] Backup of {item.relative_path} failed, rolled back {len(rolled_back)} backups: {e}"
                )
                raise BackupFailedError(
                    f"Backup of {item.relative_path} failed: {e}",
                    cause=e,
                    rolled_back=rolled_back,
                ) from e
            records.append(BackupRecord(original_path=item.absolute_path, backup_path=backup_path))
            logger.debug(f"[MIGRATION] {item.relative_path} → {backup_path.name}")

        logger.info(f"[MIGRATION] Backed up {len(records)} files to {target}")
        return records

    @staticmethod
    def _rollback(records: list[BackupRecord]) -> list[Path]:
        removed = []
        for record in reversed(records):
            try:
                record.backup_path.unlink(missing_ok=True)
                removed.append(record.backup_path)
            except OSError as e:
                logger.warning(f"[MIGRATION] Rollback could not remove {record.backup_path}: {e}")
        return removed

    # --- Replace ---

    def replace(self, generated: dict[str, str]) -> list[Path]:
        """Overwrite each path with its generated content. I/O errors propagate."""
        written = []
        for rel, content in generated.items():
            path = sanitize_path_against_escape(rel, self.project_root, allow_absolute=False)
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content, encoding="utf-8")
            written.append(path)
        logger.info(f"[MIGRATION] Wrote {len(written)} config files")
        return written

    # --- Full run ---

    def run(self, generated: dict[str, str], options: MigrationOptions, answer: bool = True) -> MigrationResult:
        """
        Drive Scan → Decide → Backup → Replace → Prune for ``generated``.

        Every generated path that already exists is protected, whether or
        not it is one of the default candidates.
        """
        existing = self.scan(list(generated))
        decision = self.decide(existing, options, answer)

        if decision.action == "report":
            return MigrationResult(status="dry-run", decision=decision)
        if decision.action == "keep":
            return MigrationResult(status="kept", decision=decision, guidance=self.guidance)

        backups: list[BackupRecord] = []
        backup_dir: Path | None = None
        if decision.action == "backup-and-replace":
            backup_dir = self.resolve_backup_dir(options.backup_dir)
            backups = self.backup_all(existing, backup_dir)

        written = self.replace(generated)

        pruned: list[Path] = []
        if backup_dir is not None and options.cleanup_old_backups and options.keep_count is not None:
            pruned = prune_old_backups(backup_dir, options.keep_count)

        return MigrationResult(
            status="backed-up-and-replaced" if backups else "replaced",
            decision=decision,
            backup_dir=backup_dir,
            backups=backups,
            written=written,
            pruned=pruned,
        )
