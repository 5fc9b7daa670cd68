import pytest

from archforge.event_bus import EventBus
from archforge.executor import LocalExecutor
from archforge.models import Task
from archforge.transformer import build_workflow
from archforge.workspace import WorkspaceError


class FakeWorkspace:
    """Records calls instead of touching git, gh or npm."""

    def __init__(self, fail_on: str | None = None):
        self.calls: list[tuple] = []
        self.fail_on = fail_on

    def _record(self, *call):
        self.calls.append(call)
        if self.fail_on == call[0]:
            raise WorkspaceError(f"{call[0]} exploded")

    def checkout_branch(self, branch):
        self._record("checkout", branch)
        return f"Created branch: {branch}"

    def run_command(self, argv):
        self._record("run", *argv)
        return ""

    def commit(self, message, add_all=True):
        self._record("commit", message)
        return "abc123"

    def open_change_request(self, title, body, source_branch, target_branch):
        self._record("pr", title, source_branch, target_branch)
        return "https://example.invalid/pr/1"


@pytest.fixture
def workflow():
    return build_workflow(Task(id="T001", title="Create user entity", layer="domain"))


def _executor(tmp_path, workspace, bus=None, scorer=None):
    return LocalExecutor(tmp_path, workspace=workspace, event_bus=bus or EventBus(), scorer=scorer)


def test_runs_every_step_in_order(tmp_path, workflow):
    ws = FakeWorkspace()
    bus = EventBus()
    events = []
    bus.subscribe(events.append)

    report = _executor(tmp_path, ws, bus).execute(workflow)

    assert report.status == "succeeded"
    assert report.steps_run == 7
    assert all(s.status == "SUCCEEDED" for s in workflow.steps)
    assert [c[0] for c in ws.calls] == ["checkout", "run", "run", "run", "commit", "pr"]
    assert ws.calls[1][1:] == ("npm", "test")
    assert (tmp_path / "src/features/project-init/domain/entities").is_dir()
    assert (tmp_path / "src/features/project-init/domain/T001.ts").read_text().startswith("// Generated for T001")

    started = [e.step_id for e in events if e.event_type == "step.started"]
    assert started == [s.id for s in workflow.steps]
    assert workflow.to_document()["evaluation"]["final_status"] == "SUCCEEDED"


def test_first_failure_stops_the_run(tmp_path, workflow):
    ws = FakeWorkspace(fail_on="commit")
    bus = EventBus()
    events = []
    bus.subscribe(events.append)

    report = _executor(tmp_path, ws, bus).execute(workflow)

    assert report.status == "failed"
    assert report.failed_step == "commit-T001"
    statuses = [s.status for s in workflow.steps]
    assert statuses == ["SUCCEEDED"] * 5 + ["FAILED", "PENDING"]
    assert "commit exploded" in workflow.steps[5].execution_log
    assert "pr" not in [c[0] for c in ws.calls]
    assert events[-1].event_type == "step.failed"


def test_failed_validation_blocks_commit(tmp_path, workflow):
    ws = FakeWorkspace(fail_on="run")

    report = _executor(tmp_path, ws).execute(workflow)

    assert report.failed_step == "run-validation-T001"
    assert [c[0] for c in ws.calls] == ["checkout", "run"]


def test_existing_file_with_other_content_fails(tmp_path, workflow):
    target = tmp_path / "src/features/project-init/domain/T001.ts"
    target.parent.mkdir(parents=True)
    target.write_text("hand written")

    report = _executor(tmp_path, FakeWorkspace()).execute(workflow)

    assert report.failed_step == "create-file-T001-0"
    assert target.read_text() == "hand written"


def test_rerun_skips_succeeded_and_stops_at_failed(tmp_path, workflow):
    _executor(tmp_path, FakeWorkspace(fail_on="commit")).execute(workflow)

    ws = FakeWorkspace()
    report = _executor(tmp_path, ws).execute(workflow)

    assert report.status == "failed"
    assert report.steps_run == 0
    assert ws.calls == []


def test_scorer_sets_scores(tmp_path, workflow):
    report = _executor(tmp_path, FakeWorkspace(), scorer=lambda step: 1.0).execute(workflow)

    assert report.final_rlhf_score == 1.0
    assert all(s.rlhf_score == 1.0 for s in workflow.steps)


def test_dry_run_touches_nothing(tmp_path, workflow):
    ws = FakeWorkspace()

    report = LocalExecutor(tmp_path, workspace=ws, dry_run=True).execute(workflow)

    assert report.status == "succeeded"
    assert ws.calls == []
    assert list(tmp_path.iterdir()) == []
    assert workflow.steps[4].execution_log == "DRY RUN: would run npm test, npm run lint, npm run typecheck"


def test_absolute_file_path_is_refused(tmp_path):
    from archforge.models import Step, Workflow, WorkflowMetadata

    root = tmp_path / "proj"
    root.mkdir()
    outside = tmp_path / "outside"
    wf = Workflow(
        metadata=WorkflowMetadata(layer="domain", task_id="T001"),
        steps=[Step(id="create-file-T001-0", type="create-file", path=str(outside / "evil.ts"), template="x")],
    )

    report = _executor(root, FakeWorkspace()).execute(wf)

    assert report.failed_step == "create-file-T001-0"
    assert "escapes" in report.error
    assert not outside.exists()


def test_absolute_source_root_is_refused(tmp_path):
    from archforge.config_loader import ScaffoldConfig
    from archforge.transformer import WorkflowTransformer

    root = tmp_path / "proj"
    root.mkdir()
    task = Task(id="T001", title="x", layer="domain")
    wf = WorkflowTransformer(scaffold=ScaffoldConfig(source_root=str(tmp_path / "elsewhere"))).build_workflow(task)

    report = _executor(root, FakeWorkspace()).execute(wf)

    assert report.failed_step == "create-directories-T001"
    assert not (tmp_path / "elsewhere").exists()


def test_newline_in_script_name_stays_one_command(tmp_path):
    from archforge.config_loader import ValidationConfig
    from archforge.transformer import WorkflowTransformer

    task = Task(id="T001", title="x", layer="domain")
    wf = WorkflowTransformer(
        validation=ValidationConfig(scripts=["lint\ntouch /tmp/pwned"], package_manager="npm\nrm"),
    ).build_workflow(task)
    ws = FakeWorkspace()

    _executor(tmp_path, ws).execute(wf)

    runs = [c[1:] for c in ws.calls if c[0] == "run"]
    assert len(runs) == 1
    assert runs[0][:2] == ("npmrm", "run")
    assert "touch" not in runs[0][0]
