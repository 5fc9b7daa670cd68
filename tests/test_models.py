import pytest
from pydantic import ValidationError

from archforge.errors import InvalidTransitionError
from archforge.models import Step, StepAction, Task, Workflow, WorkflowMetadata


def _task(**overrides):
    fields = {"id": "T001", "title": "Create user entity", "layer": "domain"}
    fields.update(overrides)
    return Task(**fields)


# ---------------------------------------------------------------------------
# Task
# ---------------------------------------------------------------------------

def test_task_defaults():
    task = _task()
    assert task.task_id == "T001"
    assert task.story_points == 1
    assert task.priority == "Primary"
    assert task.dependencies == ()


def test_task_is_frozen():
    task = _task()
    with pytest.raises(ValidationError):
        task.title = "changed"


@pytest.mark.parametrize("bad_id", ["T 001", "T001;rm", "../T001", ""])
def test_task_rejects_bad_ids(bad_id):
    with pytest.raises(ValidationError):
        _task(id=bad_id)


def test_task_rejects_unknown_layer():
    with pytest.raises(ValidationError):
        _task(layer="ui")


def test_task_rejects_escaping_files():
    with pytest.raises(ValidationError):
        _task(files=("../../etc/passwd",))
    with pytest.raises(ValidationError):
        _task(files=("/abs/file.ts",))


def test_task_story_points_must_be_positive():
    with pytest.raises(ValidationError):
        _task(story_points=0)


# ---------------------------------------------------------------------------
# Step lifecycle
# ---------------------------------------------------------------------------

def _file_step():
    return Step(id="create-file-T001-0", type="create-file", path="src/x.ts", template="")


def test_step_happy_path():
    step = _file_step()
    assert step.status == "PENDING"
    step.start()
    step.succeed(1.5)
    assert step.status == "SUCCEEDED"
    assert step.rlhf_score == 1.5
    assert step.is_terminal


def test_step_score_is_clamped():
    step = _file_step()
    step.start()
    step.succeed(9.0)
    assert step.rlhf_score == 2.0


def test_step_fail_appends_reason():
    step = _file_step()
    step.start()
    step.fail("disk full")
    assert step.status == "FAILED"
    assert "FAILED: disk full" in step.execution_log


@pytest.mark.parametrize("target", ["SUCCEEDED", "FAILED"])
def test_step_cannot_skip_running(target):
    step = _file_step()
    with pytest.raises(InvalidTransitionError):
        step.status = target


def test_step_cannot_move_backwards():
    step = _file_step()
    step.start()
    step.succeed()
    with pytest.raises(InvalidTransitionError):
        step.status = "PENDING"
    with pytest.raises(InvalidTransitionError):
        step.start()


def test_step_score_bounds_on_construction():
    with pytest.raises(ValidationError):
        Step(id="x", type="create-file", rlhf_score=3.0)


# ---------------------------------------------------------------------------
# Shell payload checks
# ---------------------------------------------------------------------------

def test_commit_with_metacharacters_is_rejected():
    with pytest.raises(ValidationError):
        Step(id="commit-T001", type="commit", action=StepAction(commit_message="feat: x; rm -rf /"))


def test_unsanitized_branch_is_rejected():
    with pytest.raises(ValidationError):
        Step(id="b", type="create-branch", action=StepAction(branch_name="feature//bad name"))


def test_validation_script_with_metacharacters_is_rejected():
    with pytest.raises(ValidationError):
        Step(id="v", type="run-validation", validation_script="npm test && curl evil")


def test_file_templates_may_contain_anything():
    step = Step(id="f", type="create-file", path="a.ts", template="const x = `${y}`;")
    assert step.template.startswith("const")


# ---------------------------------------------------------------------------
# Workflow
# ---------------------------------------------------------------------------

def _metadata():
    return WorkflowMetadata(layer="domain", task_id="T001")


def test_workflow_rejects_out_of_order_steps():
    with pytest.raises(ValidationError):
        Workflow(
            metadata=_metadata(),
            steps=[
                Step(id="c", type="commit", action=StepAction(commit_message="feat: x")),
                Step(id="b", type="create-branch", action=StepAction(branch_name="feature/x")),
            ],
        )


def test_workflow_evaluation_only_when_final():
    step = _file_step()
    wf = Workflow(metadata=_metadata(), steps=[step])
    assert "evaluation" not in wf.to_document()

    step.start()
    step.succeed(1.0)
    doc = wf.to_document()
    assert doc["evaluation"] == {"final_status": "SUCCEEDED", "final_rlhf_score": 1.0}
    assert "domain_steps" in doc


def test_workflow_document_roundtrip_keeps_statuses():
    step = _file_step()
    step.start()
    step.succeed()
    wf = Workflow(metadata=_metadata(), steps=[step, _file_step()])

    restored = Workflow.from_document(wf.to_document())

    assert [s.status for s in restored.steps] == ["SUCCEEDED", "PENDING"]
    assert restored.final_status() is None


@pytest.mark.parametrize("script", ["npm test\r\nrm -rf x", "npm\ttest", "npm test\x00"])
def test_validation_script_rejects_control_characters(script):
    with pytest.raises(ValidationError):
        Step(id="v", type="run-validation", validation_script=script)


def test_validation_script_lines_are_newline_separated():
    step = Step(id="v", type="run-validation", validation_script="npm test\nnpm run lint")
    assert step.validation_script.split("\n") == ["npm test", "npm run lint"]
