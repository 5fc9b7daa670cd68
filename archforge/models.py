"""
ArchForge Step Model

Task, Step and Workflow records. Tasks are parsed once and frozen.
Steps are born PENDING and only ever move forward. A Workflow is the
fixed, ordered list of Steps generated for one Task.
"""

from __future__ import annotations

import re
from pathlib import PurePosixPath
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from archforge.errors import InvalidTransitionError
from archforge.sanitizer import has_shell_metacharacters, sanitize_branch_name

Layer = Literal["domain", "data", "infra", "presentation", "main"]
Priority = Literal["Primary", "Secondary", "Integration"]

LAYERS: tuple[str, ...] = ("domain", "data", "infra", "presentation", "main")

StepType = Literal[
    "create-branch",
    "create-directories",
    "create-file",
    "run-validation",
    "commit",
    "open-change-request",
]
StepStatus = Literal["PENDING", "RUNNING", "SUCCEEDED", "FAILED"]

# Position of each step type in a workflow. Resource-creating steps rank
# below the steps that consume them.
STEP_ORDER: dict[str, int] = {
    "create-branch": 0,
    "create-directories": 1,
    "create-file": 2,
    "run-validation": 3,
    "commit": 4,
    "open-change-request": 5,
}

# Step types whose payload ends up on a subprocess command line.
SHELL_STEP_TYPES = frozenset({"create-branch", "run-validation", "commit", "open-change-request"})

_TRANSITIONS: dict[str, frozenset[str]] = {
    "PENDING": frozenset({"RUNNING"}),
    "RUNNING": frozenset({"SUCCEEDED", "FAILED"}),
    "SUCCEEDED": frozenset(),
    "FAILED": frozenset(),
}

_TASK_ID_RE = re.compile(r"^[A-Za-z0-9_.-]+$")
# Newline separates validation commands; nothing else below 0x20 is allowed.
_CONTROL_CHAR_RE = re.compile(r"[\x00-\x1f\x7f]")

RLHF_MIN = -2.0
RLHF_MAX = 2.0


# ---------------------------------------------------------------------------
# Task
# ---------------------------------------------------------------------------

class Task(BaseModel):
    """A semantic unit of work parsed from a task list."""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    task_id: str = Field(..., alias="id", min_length=1)
    title: str
    description: str = ""
    layer: Layer
    story_points: int = Field(default=1, ge=1)
    priority: Priority = "Primary"
    dependencies: tuple[str, ...] = ()
    acceptance_criteria: tuple[str, ...] = ()
    files: tuple[str, ...] = ()

    @field_validator("task_id")
    @classmethod
    def check_task_id(cls, value: str) -> str:
        if not _TASK_ID_RE.match(value) or ".." in value:
            raise ValueError(f"task id '{value}' may only contain letters, digits, '.', '_' and '-'")
        return value

    @field_validator("files")
    @classmethod
    def check_files(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        for name in value:
            pure = PurePosixPath(name.replace("\\", "/"))
            if pure.is_absolute() or ".." in pure.parts:
                raise ValueError(f"artifact '{name}' must be a relative path inside the layer")
        return value


# ---------------------------------------------------------------------------
# Step
# ---------------------------------------------------------------------------

class FolderSpec(BaseModel):
    base_path: str
    folders: list[str] = Field(default_factory=list)


class StepAction(BaseModel):
    """Type-specific payload. Only the fields relevant to a step type are set."""
    branch_name: str | None = None
    create_folders: FolderSpec | None = None
    commit_message: str | None = None
    source_branch: str | None = None
    target_branch: str | None = None
    title: str | None = None
    body: str | None = None

    def shell_texts(self) -> list[str]:
        return [
            value
            for value in (self.commit_message, self.title, self.body, self.target_branch)
            if value is not None
        ]

    def branch_refs(self) -> list[str]:
        return [value for value in (self.branch_name, self.source_branch) if value is not None]


class Step(BaseModel):
    """
    One atomic unit of scaffold work.

    ``status`` may only move PENDING -> RUNNING -> SUCCEEDED | FAILED.
    Assigning it directly goes through the same check as ``transition``.
    """

    id: str
    type: StepType
    status: StepStatus = "PENDING"
    rlhf_score: float | None = Field(default=None, ge=RLHF_MIN, le=RLHF_MAX)
    execution_log: str = ""
    path: str | None = None
    template: str | None = None
    action: StepAction | None = None
    validation_script: str | None = None

    @model_validator(mode="after")
    def check_shell_payload(self) -> "Step":
        if self.type not in SHELL_STEP_TYPES:
            return self

        texts = list(self.action.shell_texts()) if self.action else []
        if self.validation_script:
            texts.append(self.validation_script)
        for text in texts:
            if has_shell_metacharacters(text):
                raise ValueError(f"step {self.id}: shell payload contains metacharacters: {text[:60]!r}")

        for line in (self.validation_script or "").split("\n"):
            if _CONTROL_CHAR_RE.search(line):
                raise ValueError(f"step {self.id}: validation line contains a control character: {line[:60]!r}")

        for ref in self.action.branch_refs() if self.action else []:
            if ref != sanitize_branch_name(ref):
                raise ValueError(f"step {self.id}: branch '{ref}' is not a sanitized ref")
        return self

    def __setattr__(self, name: str, value: Any) -> None:
        if name == "status" and value != self.status:
            allowed = _TRANSITIONS.get(self.status, frozenset())
            if value not in allowed:
                raise InvalidTransitionError(
                    f"step {self.id}: cannot move from {self.status} to {value}"
                )
        super().__setattr__(name, value)

    @property
    def is_terminal(self) -> bool:
        return self.status in ("SUCCEEDED", "FAILED")

    def transition(self, status: StepStatus) -> None:
        self.status = status

    def start(self) -> None:
        self.transition("RUNNING")

    def succeed(self, score: float | None = None) -> None:
        if score is not None:
            self.rlhf_score = max(RLHF_MIN, min(RLHF_MAX, score))
        self.transition("SUCCEEDED")

    def fail(self, reason: str) -> None:
        self.append_log(f"FAILED: {reason}")
        self.transition("FAILED")

    def append_log(self, line: str) -> None:
        if self.execution_log:
            self.execution_log += "\n"
        self.execution_log += line

    def to_document(self) -> dict[str, Any]:
        document = self.model_dump(exclude_none=True)
        # rlhf_score is part of the document even before it is graded
        document["rlhf_score"] = self.rlhf_score
        return document


# ---------------------------------------------------------------------------
# Workflow
# ---------------------------------------------------------------------------

class WorkflowMetadata(BaseModel):
    layer: Layer
    project_type: str = "cli"
    architecture_style: str = "clean-architecture"
    source: str = ""
    task_id: str
    story_points: int = 1
    dependencies: list[str] = Field(default_factory=list)


class Workflow(BaseModel):
    """Ordered Steps for one Task, plus the metadata they were built from."""

    metadata: WorkflowMetadata
    steps: list[Step] = Field(default_factory=list)

    @model_validator(mode="after")
    def check_order(self) -> "Workflow":
        ranks = [STEP_ORDER[step.type] for step in self.steps]
        if ranks != sorted(ranks):
            raise ValueError("workflow steps are out of order: " + ", ".join(s.type for s in self.steps))
        return self

    @property
    def steps_key(self) -> str:
        return f"{self.metadata.layer}_steps"

    @property
    def step_types(self) -> list[str]:
        return [step.type for step in self.steps]

    def pending(self) -> list[Step]:
        return [step for step in self.steps if step.status == "PENDING"]

    def final_status(self) -> str | None:
        """SUCCEEDED once every step has, FAILED if any has, else None."""
        if any(step.status == "FAILED" for step in self.steps):
            return "FAILED"
        if self.steps and all(step.status == "SUCCEEDED" for step in self.steps):
            return "SUCCEEDED"
        return None

    def final_rlhf_score(self) -> float | None:
        scores = [step.rlhf_score for step in self.steps if step.rlhf_score is not None]
        if not scores:
            return None
        return round(sum(scores) / len(scores), 2)

    def to_document(self) -> dict[str, Any]:
        document: dict[str, Any] = {
            "metadata": self.metadata.model_dump(),
            self.steps_key: [step.to_document() for step in self.steps],
        }
        status = self.final_status()
        if status:
            document["evaluation"] = {
                "final_status": status,
                "final_rlhf_score": self.final_rlhf_score(),
            }
        return document

    @classmethod
    def from_document(cls, document: dict[str, Any]) -> "Workflow":
        metadata = WorkflowMetadata(**document["metadata"])
        raw_steps = document.get(f"{metadata.layer}_steps") or document.get("steps") or []
        return cls(metadata=metadata, steps=[Step(**raw) for raw in raw_steps])
