import subprocess

import pytest
from tenacity import wait_none

from archforge.workspace import ProjectWorkspace, TransientGitError, WorkspaceError


class FakeRun:
    """Stands in for subprocess.run; replies are consumed in order."""

    def __init__(self, replies):
        self.replies = list(replies)
        self.calls = []

    def __call__(self, cmd, cwd=None, capture_output=True, text=True, timeout=None):
        self.calls.append(cmd)
        code, stdout, stderr = self.replies.pop(0) if self.replies else (0, "", "")
        return subprocess.CompletedProcess(cmd, code, stdout, stderr)


@pytest.fixture
def fake_run(monkeypatch):
    def install(*replies):
        fake = FakeRun(replies)
        monkeypatch.setattr("archforge.workspace.subprocess.run", fake)
        return fake
    return install


def _ws(tmp_path, retries=3):
    return ProjectWorkspace(tmp_path, retries=retries, retry_wait=wait_none())


def test_transient_failure_is_retried(tmp_path, fake_run):
    fake = fake_run(
        (128, "", "fatal: Unable to create '.git/index.lock': File exists."),
        (0, "", ""),
    )
    _ws(tmp_path)._git("add", "-A")
    assert len(fake.calls) == 2


def test_retries_give_up(tmp_path, fake_run):
    fake = fake_run(*[(1, "", "error: could not lock config file")] * 5)
    with pytest.raises(TransientGitError):
        _ws(tmp_path, retries=3)._git("fetch")
    assert len(fake.calls) == 3


def test_permanent_failure_is_not_retried(tmp_path, fake_run):
    fake = fake_run((128, "", "fatal: not a git repository (or any of the parent directories)"))
    assert _ws(tmp_path).is_git_repo() is False
    assert len(fake.calls) == 1


def test_checkout_creates_missing_branch(tmp_path, fake_run):
    fake = fake_run((0, "", ""), (0, "", ""))
    message = _ws(tmp_path).checkout_branch("feature/T001-x")
    assert message == "Created branch: feature/T001-x"
    assert fake.calls[-1] == ["git", "checkout", "-b", "feature/T001-x"]


def test_checkout_switches_to_existing_branch(tmp_path, fake_run):
    fake = fake_run((0, "  main\n* feature/T001-x\n", ""), (0, "", ""))
    assert _ws(tmp_path).checkout_branch("feature/T001-x").startswith("Switched")
    assert fake.calls[-1] == ["git", "checkout", "feature/T001-x"]


def test_commit_returns_sha(tmp_path, fake_run):
    fake = fake_run((0, "", ""), (0, " M a.ts\n", ""), (0, "", ""), (0, "abc123\n", ""))
    assert _ws(tmp_path).commit("feat(domain): T001 - x") == "abc123"
    assert fake.calls[2] == ["git", "commit", "-m", "feat(domain): T001 - x"]


def test_commit_nothing_to_commit(tmp_path, fake_run):
    fake_run((0, "", ""), (0, "", ""))
    assert _ws(tmp_path).commit("feat: x") is None


def test_change_request_passes_argv(tmp_path, fake_run):
    fake = fake_run((0, "https://example.invalid/pull/7\n", ""))
    url = _ws(tmp_path).open_change_request("title", "body", "feature/x", "main")
    assert url == "https://example.invalid/pull/7"
    assert fake.calls[0] == [
        "gh", "pr", "create", "--title", "title", "--body", "body", "--head", "feature/x", "--base", "main",
    ]


def test_missing_tool(tmp_path, monkeypatch):
    def boom(*args, **kwargs):
        raise FileNotFoundError("npm")

    monkeypatch.setattr("archforge.workspace.subprocess.run", boom)
    with pytest.raises(WorkspaceError, match="Command not found: npm"):
        _ws(tmp_path).run_command(["npm", "test"])


def test_failed_command_raises(tmp_path, fake_run):
    fake_run((1, "", "2 tests failed"))
    with pytest.raises(WorkspaceError, match="2 tests failed"):
        _ws(tmp_path).run_command(["npm", "test"])
