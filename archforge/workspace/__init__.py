"""
ArchForge Project Workspace

The narrow command surface used to drive git, gh and the package
manager inside a target project. Commands are always argv lists
handed to subprocess; nothing goes through a shell.

Transient git failures are retried with exponential backoff. Errors
that retrying cannot fix (not a repo, nothing to commit, bad ref,
permissions) fail on the first attempt.
"""

from __future__ import annotations

import subprocess
from pathlib import Path

from loguru import logger
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from archforge.errors import ArchforgeError

NO_RETRY_PATTERNS = (
    "not a git repository",
    "no changes added to commit",
    "nothing to commit",
    "did not match any file",
    "fatal: bad object",
    "permission denied",
    "already exists",
)


class WorkspaceError(ArchforgeError):
    pass


class TransientGitError(WorkspaceError):
    """A git failure worth retrying (lock contention, flaky remote)."""


class ProjectWorkspace:
    """
    Runs version-control and process tools inside one project root.
    """

    def __init__(self, repo_path: Path, retries: int = 3, timeout: int = 300, retry_wait=None):
        self.repo_path = Path(repo_path).resolve()
        self.retries = retries
        self.timeout = timeout
        self._retry_wait = retry_wait or wait_exponential(multiplier=0.5, max=4)

    # ------------------------------------------------------------------
    # Git
    # ------------------------------------------------------------------

    def is_git_repo(self) -> bool:
        try:
            out = self._git("rev-parse", "--is-inside-work-tree", capture=True)
        except WorkspaceError:
            return False
        return out.strip() == "true"

    def has_uncommitted_changes(self) -> bool:
        return bool(self._git("status", "--porcelain", capture=True).strip())

    def current_branch(self) -> str:
        return self._git("rev-parse", "--abbrev-ref", "HEAD", capture=True).strip()

    def checkout_branch(self, branch: str) -> str:
        """Create ``branch`` or switch to it when it already exists."""
        if self._branch_exists(branch):
            self._git("checkout", branch)
            logger.info(f"[WORKSPACE] Switched to branch: {branch}")
            return f"Switched to branch: {branch}"
        self._git("checkout", "-b", branch)
        logger.info(f"[WORKSPACE] Created branch: {branch}")
        return f"Created branch: {branch}"

    def commit(self, message: str, add_all: bool = True) -> str | None:
        """Stage and commit changes. Returns the new sha, or None if clean."""
        if add_all:
            self._git("add", "-A")

        result = self._git("status", "--porcelain", capture=True)
        if not result.strip():
            logger.info("[WORKSPACE] Nothing to commit.")
            return None

        self._git("commit", "-m", message)
        sha = self._git("rev-parse", "HEAD", capture=True).strip()
        return sha

    def _branch_exists(self, name: str) -> bool:
        res = self._git("branch", "--list", name, capture=True)
        return any(line.strip("* ").strip() == name for line in res.splitlines())

    # ------------------------------------------------------------------
    # Change requests + commands
    # ------------------------------------------------------------------

    def open_change_request(self, title: str, body: str, source_branch: str, target_branch: str) -> str:
        """Open a pull request with the GitHub CLI. Returns its URL."""
        out = self._run_cmd(
            ["gh", "pr", "create", "--title", title, "--body", body, "--head", source_branch, "--base", target_branch],
            cwd=self.repo_path,
            capture=True,
            timeout=self.timeout,
        )
        url = out.strip()
        logger.info(f"[WORKSPACE] Change request opened: {url}")
        return url

    def run_command(self, argv: list[str]) -> str:
        return self._run_cmd(argv, cwd=self.repo_path, capture=True, timeout=self.timeout)

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    def _git(self, *args: str, check: bool = True, capture: bool = False) -> str:
        for attempt in Retrying(
            stop=stop_after_attempt(self.retries),
            wait=self._retry_wait,
            retry=retry_if_exception_type(TransientGitError),
            reraise=True,
        ):
            with attempt:
                return self._run_cmd(
                    ["git", *args], cwd=self.repo_path, check=check, capture=capture,
                    timeout=self.timeout, transient=True,
                )
        return ""

    @staticmethod
    def _run_cmd(
        cmd: list[str],
        cwd: Path,
        check: bool = True,
        capture: bool = False,
        timeout: int = 300,
        transient: bool = False,
    ) -> str:
        try:
            result = subprocess.run(cmd, cwd=cwd, capture_output=True, text=True, timeout=timeout)
        except FileNotFoundError as e:
            raise WorkspaceError(f"Command not found: {cmd[0]}") from e
        except subprocess.TimeoutExpired as e:
            raise WorkspaceError(f"Timed out after {timeout}s: {' '.join(cmd)}") from e

        if check and result.returncode != 0:
            message = f"{cmd[0]} failed: {' '.join(cmd[:3])}\n{result.stderr.strip()}"
            stderr = result.stderr.lower()
            if transient and not any(p in stderr for p in NO_RETRY_PATTERNS):
                logger.debug(f"[WORKSPACE] Transient failure, may retry: {message}")
                raise TransientGitError(message)
            raise WorkspaceError(message)
        return result.stdout if capture else ""
