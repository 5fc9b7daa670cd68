"""
ArchForge Step Executor

Consumes a Workflow and performs its side effects, one step at a
time, in declaration order. Later steps assume earlier ones finished
durably, so steps are never reordered, skipped ahead of, or run in
parallel. The first failure stops the run; remaining steps stay
PENDING.

StepExecutor is the contract. LocalExecutor is the implementation
that touches the local filesystem and drives git/gh through
ProjectWorkspace.
"""

from __future__ import annotations

import shlex
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Callable, Literal, Optional

from loguru import logger
from pydantic import BaseModel

from archforge.errors import ArchforgeError, IOFailureError
from archforge.event_bus import STEP_FAILED, STEP_STARTED, STEP_SUCCEEDED, EventBus
from archforge.models import Step, Workflow
from archforge.sanitizer import sanitize_path_against_escape
from archforge.workspace import ProjectWorkspace

Scorer = Callable[[Step], Optional[float]]


class ExecutionReport(BaseModel):
    task_id: str
    status: Literal["succeeded", "failed"]
    steps_run: int = 0
    failed_step: str | None = None
    error: str | None = None
    final_rlhf_score: float | None = None


class StepExecutor(ABC):
    """
    Drives a Workflow to completion.

    Subclasses implement ``run_step``; ordering, status transitions,
    scoring and events are handled here so every executor honours the
    same contract.
    """

    name: str = "executor"

    def __init__(self, event_bus: EventBus | None = None, scorer: Scorer | None = None):
        self.event_bus = event_bus or EventBus()
        self.scorer = scorer

    def execute(self, workflow: Workflow) -> ExecutionReport:
        task_id = workflow.metadata.task_id
        steps_run = 0

        for step in workflow.steps:
            if step.status == "SUCCEEDED":
                # resumed workflow
                continue
            if step.status != "PENDING":
                return self._report(workflow, "failed", steps_run, step, f"step is {step.status}")

            step.start()
            self.event_bus.emit(STEP_STARTED, self.name, {"type": step.type}, task_id=task_id, step_id=step.id)
            steps_run += 1

            try:
                output = self.run_step(step, workflow)
            except (ArchforgeError, OSError) as e:
                step.fail(str(e))
                logger.error(f"[EXECUTOR] {step.id} failed: {e}")
                self.event_bus.emit(STEP_FAILED, self.name, {"error": str(e)}, task_id=task_id, step_id=step.id)
                return self._report(workflow, "failed", steps_run, step, str(e))

            if output:
                step.append_log(output)
            step.succeed(self.scorer(step) if self.scorer else None)
            logger.info(f"[EXECUTOR] {step.id} succeeded")
            self.event_bus.emit(
                STEP_SUCCEEDED, self.name, {"rlhf_score": step.rlhf_score},
                task_id=task_id, step_id=step.id,
            )

        return self._report(workflow, "succeeded", steps_run)

    @abstractmethod
    def run_step(self, step: Step, workflow: Workflow) -> str:
        """Perform one step's side effects and return log text."""
        ...

    @staticmethod
    def _report(
        workflow: Workflow,
        status: Literal["succeeded", "failed"],
        steps_run: int,
        step: Step | None = None,
        error: str | None = None,
    ) -> ExecutionReport:
        return ExecutionReport(
            task_id=workflow.metadata.task_id,
            status=status,
            steps_run=steps_run,
            failed_step=step.id if step else None,
            error=error,
            final_rlhf_score=workflow.final_rlhf_score(),
        )


class LocalExecutor(StepExecutor):
    """
    Executes steps against a project checkout on the local machine.

    With ``dry_run`` each step only logs what it would do; paths are
    still checked against the project root.
    """

    name = "local-executor"

    def __init__(
        self,
        project_root: Path,
        workspace: ProjectWorkspace | None = None,
        event_bus: EventBus | None = None,
        scorer: Scorer | None = None,
        dry_run: bool = False,
    ):
        super().__init__(event_bus=event_bus, scorer=scorer)
        self.project_root = Path(project_root).resolve()
        self.workspace = workspace or ProjectWorkspace(self.project_root)
        self.dry_run = dry_run

    def run_step(self, step: Step, workflow: Workflow) -> str:
        if self.dry_run:
            return self._describe(step)
        handler = {
            "create-branch": self._create_branch,
            "create-directories": self._create_directories,
            "create-file": self._create_file,
            "run-validation": self._run_validation,
            "commit": self._commit,
            "open-change-request": self._open_change_request,
        }[step.type]
        return handler(step)

    def _project_path(self, relative: str | None) -> Path:
        """Step paths are project-relative; absolute ones are refused."""
        return sanitize_path_against_escape(relative or "", self.project_root, allow_absolute=False)

    def _create_branch(self, step: Step) -> str:
        return self.workspace.checkout_branch(step.action.branch_name)

    def _create_directories(self, step: Step) -> str:
        spec = step.action.create_folders
        created = []
        for folder in spec.folders:
            path = self._project_path(f"{spec.base_path}/{folder}")
            path.mkdir(parents=True, exist_ok=True)
            created.append(folder)
        return f"Created {len(created)} folders under {spec.base_path}: {', '.join(created)}"

    def _create_file(self, step: Step) -> str:
        path = self._project_path(step.path)
        content = step.template or ""
        if path.exists():
            if path.read_text(encoding="utf-8") == content:
                return f"Unchanged: {step.path}"
            raise IOFailureError(f"{step.path} already exists with different content")
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
        return f"Created: {step.path}"

    def _run_validation(self, step: Step) -> str:
        lines = []
        for line in (step.validation_script or "").split("\n"):
            argv = shlex.split(line)
            if not argv:
                continue
            self.workspace.run_command(argv)
            lines.append(f"OK: {line}")
        return "\n".join(lines)

    def _commit(self, step: Step) -> str:
        sha = self.workspace.commit(step.action.commit_message)
        return f"Committed {sha}" if sha else "Nothing to commit"

    def _open_change_request(self, step: Step) -> str:
        action = step.action
        url = self.workspace.open_change_request(
            title=action.title,
            body=action.body or "",
            source_branch=action.source_branch,
            target_branch=action.target_branch,
        )
        return f"Change request: {url}"

    def _describe(self, step: Step) -> str:
        action = step.action
        if step.type == "create-branch":
            return f"DRY RUN: would check out {action.branch_name}"
        if step.type == "create-directories":
            for folder in action.create_folders.folders:
                self._project_path(f"{action.create_folders.base_path}/{folder}")
            return f"DRY RUN: would create {len(action.create_folders.folders)} folders"
        if step.type == "create-file":
            self._project_path(step.path)
            return f"DRY RUN: would write {step.path}"
        if step.type == "run-validation":
            return "DRY RUN: would run " + ", ".join((step.validation_script or "").split("\n"))
        if step.type == "commit":
            return "DRY RUN: would commit " + action.commit_message.split("\n", 1)[0]
        return f"DRY RUN: would open a change request {action.source_branch} → {action.target_branch}"
