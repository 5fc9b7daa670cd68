"""
ArchForge Sanitizer

Pure functions that clean untrusted strings before they are placed
into shell commands, git ref names or filesystem paths.

The text sanitizers never raise. They degrade hostile input to a safe
subset instead; callers get injection safety, not semantic fidelity.
"""

from __future__ import annotations

import os
import re
from pathlib import Path

from archforge.errors import PathTraversalError

# Characters with special meaning to a POSIX shell, plus quotes.
SHELL_METACHARACTERS = "`${}|&;<>'\""

_SHELL_META_RE = re.compile(r"[`${}|&;<>'\"]")
_BRANCH_ILLEGAL_RE = re.compile(r"[^A-Za-z0-9/_-]")
_SEPARATOR_RUN_RE = re.compile(r"[-/_]{2,}")
_SLUG_RE = re.compile(r"[^a-z0-9]+")
_SCRIPT_NAME_RE = re.compile(r"[^A-Za-z0-9\-_: ]")

BRANCH_FALLBACK = "branch"


def sanitize_shell_text(text: str) -> str:
    """
    Strip shell metacharacters and quotes, then trim whitespace.

    Idempotent: removing characters can never introduce new ones, and the
    trailing trim leaves nothing for a second pass to trim.
    """
    return _SHELL_META_RE.sub("", text or "").strip()


def has_shell_metacharacters(text: str) -> bool:
    return bool(_SHELL_META_RE.search(text or ""))


def sanitize_branch_name(text: str) -> str:
    """
    Restrict a candidate git ref to ``[A-Za-z0-9/_-]``.

    Illegal characters become dashes, runs of separators collapse to a
    single one (a slash wins over a dash, a dash over an underscore), and
    separators are trimmed from both ends. Input that degrades to nothing
    yields ``BRANCH_FALLBACK``.
    """
    name = _BRANCH_ILLEGAL_RE.sub("-", text or "")
    name = _SEPARATOR_RUN_RE.sub(_collapse_separators, name)
    name = name.strip("-/_")
    return name or BRANCH_FALLBACK


def _collapse_separators(match: re.Match) -> str:
    run = match.group(0)
    if "/" in run:
        return "/"
    if "-" in run:
        return "-"
    return "_"


def slugify(text: str) -> str:
    """Lowercase and join alphanumeric runs with single dashes."""
    return _SLUG_RE.sub("-", (text or "").lower()).strip("-")


def sanitize_script_name(name: str) -> str:
    """Keep only characters valid in a package.json script name."""
    return _SCRIPT_NAME_RE.sub("", name or "")


def sanitize_path_against_escape(
    candidate: str | Path,
    container: str | Path,
    allow_absolute: bool = True,
) -> Path:
    """
    Resolve ``candidate`` and make sure a relative path stays inside ``container``.

    Absolute candidates are returned resolved without a containment check
    when ``allow_absolute`` is set; their writability is the caller's
    concern. Paths that must live in the project pass ``allow_absolute=False``.

    Raises:
        PathTraversalError: a relative candidate resolves outside the
            container, or an absolute one was not allowed.
    """
    candidate_path = Path(candidate).expanduser()
    container_path = Path(container).resolve()

    if candidate_path.is_absolute():
        if not allow_absolute:
            raise PathTraversalError(candidate, container_path)
        return candidate_path.resolve()

    resolved = (container_path / candidate_path).resolve()
    if resolved != container_path and not _is_within(resolved, container_path):
        raise PathTraversalError(candidate, container_path)
    return resolved


def _is_within(path: Path, container: Path) -> bool:
    try:
        return os.path.commonpath([path, container]) == str(container)
    except ValueError:
        # different drives on Windows
        return False
