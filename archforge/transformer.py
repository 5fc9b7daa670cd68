"""
ArchForge Transformer — Task List → Workflow

Turns one task from a markdown task list into the fixed, ordered
Step sequence the executor drives:

  branch → directories → source files → test files
         → validation → commit → change request

Parsing is a labeled-field extractor over a constrained outline,
not a markdown parser. The expansion is pure data shaping: the same
Task always yields the same Workflow.

Every string that can reach a subprocess passes through the
sanitizer here, and the Step model rejects anything that slipped by.
"""

from __future__ import annotations

import re
from pathlib import Path, PurePosixPath

import yaml
from loguru import logger
from pydantic import ValidationError

from archforge.config_loader import GitFlowConfig, ScaffoldConfig, ValidationConfig
from archforge.errors import TaskNotFoundError, TaskSourceError, TaskValidationError
from archforge.models import (
    LAYERS,
    FolderSpec,
    Step,
    StepAction,
    Task,
    Workflow,
    WorkflowMetadata,
)
from archforge.sanitizer import (
    sanitize_branch_name,
    sanitize_script_name,
    sanitize_shell_text,
    slugify,
)

# ---------------------------------------------------------------------------
# Layer Layout
# ---------------------------------------------------------------------------

LAYER_DIRECTORIES: dict[str, list[str]] = {
    "domain": ["entities", "value-objects", "use-cases", "repositories", "services", "events"],
    "data": ["repositories", "mappers", "validators"],
    "infra": ["file-system", "git", "templates", "ai"],
    "presentation": ["components", "screens", "hooks", "styles"],
    "main": ["di", "cli", "config"],
}

MAX_SUBJECT_LENGTH = 72
MAX_COMMIT_LENGTH = 500

PRIORITIES = ("Primary", "Secondary", "Integration")


# ---------------------------------------------------------------------------
# Task Parsing
# ---------------------------------------------------------------------------

_FIELD_LABELS = {
    "title": "title",
    "description": "description",
    "layer": "layer",
    "story points": "story_points",
    "effort": "story_points",
    "priority": "priority",
    "dependencies": "dependencies",
    "acceptance criteria": "acceptance_criteria",
    "files": "files",
}

_LABEL_RE = re.compile(
    r"^\s*\*{0,2}(?P<label>" + "|".join(re.escape(k) for k in _FIELD_LABELS) + r")"
    r"\s*(?::\*{0,2}|\*{0,2}\s*:)\s*(?P<value>.*)$",
    re.IGNORECASE,
)
_BULLET_RE = re.compile(r"^\s*[-*]\s+(?:\[[ xX]\]\s*)?(?P<item>.+?)\s*$")
_HEADING_ID_RE = re.compile(r"^###\s+(?P<id>[A-Za-z0-9_.-]+)", re.MULTILINE)


def _section_for(task_id: str, source_text: str) -> tuple[str, str] | None:
    """Return (heading remainder, body) of the ``### <task_id>`` section."""
    pattern = re.compile(
        r"^###\s+" + re.escape(task_id) + r"(?=[:\s]|$)[: \t]*(?P<heading>[^\n]*)\n?(?P<body>.*?)(?=^###\s|\Z)",
        re.MULTILINE | re.DOTALL,
    )
    match = pattern.search(source_text)
    if not match:
        return None
    return match.group("heading").strip(), match.group("body")


def _collect_fields(body: str) -> dict[str, list[str]]:
    """Group section lines under the last labeled field seen."""
    fields: dict[str, list[str]] = {}
    current: str | None = None
    for line in body.splitlines():
        match = _LABEL_RE.match(line)
        if match:
            current = _FIELD_LABELS[match.group("label").lower()]
            fields[current] = []
            value = match.group("value").strip().strip("*").strip()
            if value:
                fields[current].append(value)
        elif current is not None:
            fields[current].append(line.rstrip())
    return fields


def _bullets(lines: list[str]) -> list[str]:
    items = []
    for line in lines:
        match = _BULLET_RE.match(line)
        if match:
            items.append(match.group("item"))
    return items


def _comma_list(lines: list[str]) -> list[str]:
    values: list[str] = []
    for line in lines:
        bullet = _BULLET_RE.match(line)
        text = bullet.group("item") if bullet else line
        values.extend(part.strip().strip("`") for part in text.split(","))
    return [v for v in values if v and v.lower() not in ("none", "n/a", "-")]


def parse_task(task_id: str, source_text: str, source: str | Path = "<string>") -> Task:
    """
    Extract one task from a task-list outline.

    Missing optional fields take defaults (effort 1, no dependencies,
    priority Primary). A missing section is fatal.

    Raises:
        TaskNotFoundError: no ``### <task_id>`` heading in the source.
        TaskValidationError: the layer is missing or unknown, or the
            effort is below one.
    """
    section = _section_for(task_id, source_text)
    if section is None:
        raise TaskNotFoundError(task_id, source)

    heading, body = section
    fields = _collect_fields(body)

    title_lines = [line for line in fields.get("title", []) if line.strip()]
    title = title_lines[0].strip() if title_lines else (heading or f"Task {task_id}")

    description = "\n".join(fields.get("description", [])).strip()

    layer_lines = [line for line in fields.get("layer", []) if line.strip()]
    layer = layer_lines[0].strip().strip("`").lower() if layer_lines else ""
    if layer not in LAYERS:
        raise TaskValidationError(
            f"Task {task_id} in {source}: layer '{layer}' is not one of {', '.join(LAYERS)}"
        )

    story_points = 1
    effort_text = " ".join(fields.get("story_points", []))
    effort_match = re.search(r"-?\d+", effort_text)
    if effort_match:
        story_points = int(effort_match.group())
    elif effort_text.strip():
        logger.warning(f"[TRANSFORMER] {task_id}: unreadable effort '{effort_text.strip()}', using 1")

    priority = "Primary"
    priority_text = " ".join(fields.get("priority", [])).strip()
    if priority_text:
        for candidate in PRIORITIES:
            if candidate.lower() in priority_text.lower():
                priority = candidate
                break
        else:
            logger.warning(f"[TRANSFORMER] {task_id}: unknown priority '{priority_text}', using Primary")

    try:
        task = Task(
            id=task_id,
            title=title,
            description=description,
            layer=layer,
            story_points=story_points,
            priority=priority,
            dependencies=_comma_list(fields.get("dependencies", [])),
            acceptance_criteria=_bullets(fields.get("acceptance_criteria", [])),
            files=_comma_list(fields.get("files", [])),
        )
    except ValidationError as e:
        raise TaskValidationError(f"Task {task_id} in {source}: {e}") from e

    logger.debug(f"[TRANSFORMER] Parsed {task_id} ({task.layer}, {task.story_points} pts) from {source}")
    return task


def load_task(task_id: str, path: Path) -> Task:
    """Read a task-list file and parse one task from it."""
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise TaskSourceError(f"Failed to read task file at {path}: {e}") from e
    return parse_task(task_id, text, source=path)


def list_task_ids(source_text: str) -> list[str]:
    """All task ids introduced by a level-3 heading, in document order."""
    return [m.group("id").rstrip(":") for m in _HEADING_ID_RE.finditer(source_text)]


# ---------------------------------------------------------------------------
# Commit Message Checks
# ---------------------------------------------------------------------------

def validate_commit_message(message: str, max_length: int = MAX_COMMIT_LENGTH) -> str | None:
    """Return a description of the problem, or None if the message is fine."""
    if not message or not message.strip():
        return "Commit message cannot be empty"
    subject = message.split("\n", 1)[0]
    if len(subject) > MAX_SUBJECT_LENGTH:
        return f"Commit subject line should be {MAX_SUBJECT_LENGTH} characters or less"
    if len(message) > max_length:
        return f"Commit message exceeds maximum length of {max_length} characters"
    return None


def _fit_commit_message(subject: str, body: str) -> str:
    if len(subject) > MAX_SUBJECT_LENGTH:
        logger.warning(f"[TRANSFORMER] Commit subject too long, truncating: {subject}")
        subject = subject[: MAX_SUBJECT_LENGTH - 3] + "..."
    message = f"{subject}\n\n{body}" if body else subject
    if len(message) > MAX_COMMIT_LENGTH:
        logger.warning("[TRANSFORMER] Commit message too long, truncating body")
        message = message[: MAX_COMMIT_LENGTH - 3] + "..."
    return message


# ---------------------------------------------------------------------------
# Workflow Builder
# ---------------------------------------------------------------------------

class WorkflowTransformer:
    """
    Expands a Task into its Workflow.

    The step sequence never varies by content, only the number of
    generated file steps does (one source and one test per artifact).
    """

    def __init__(
        self,
        git_flow: GitFlowConfig | None = None,
        scaffold: ScaffoldConfig | None = None,
        validation: ValidationConfig | None = None,
    ):
        self.git_flow = git_flow or GitFlowConfig()
        self.scaffold = scaffold or ScaffoldConfig()
        self.validation = validation or ValidationConfig()

    def build_workflow(self, task: Task, source: str | Path = "") -> Workflow:
        metadata = WorkflowMetadata(
            layer=task.layer,
            project_type=self.scaffold.project_type,
            source=str(source) or f"TASK-{task.task_id}",
            task_id=task.task_id,
            story_points=task.story_points,
            dependencies=list(task.dependencies),
        )

        artifacts = self._artifacts_for(task)
        steps: list[Step] = [self._branch_step(task), self._directory_step(task)]
        steps.extend(
            self._file_step(f"create-file-{task.task_id}-{i}", path, self._source_template(task, path))
            for i, path in enumerate(artifacts)
        )
        steps.extend(
            self._file_step(f"create-test-{task.task_id}-{i}", self._test_path(path), self._test_template(task, path))
            for i, path in enumerate(artifacts)
        )
        steps.append(self._validation_step(task))
        steps.append(self._commit_step(task))
        steps.append(self._change_request_step(task))

        logger.info(f"[TRANSFORMER] {task.task_id} → {len(steps)} steps ({len(artifacts)} artifacts)")
        return Workflow(metadata=metadata, steps=steps)

    # --- Naming ---

    def branch_name(self, task: Task) -> str:
        return sanitize_branch_name(f"{self.git_flow.branch_prefix}{task.task_id}-{slugify(task.title)}")

    def base_path(self, task: Task) -> str:
        return f"{self.scaffold.source_root}/{self.scaffold.feature}/{task.layer}"

    def _artifacts_for(self, task: Task) -> list[str]:
        base = self.base_path(task)
        names = list(task.files) or [task.task_id]
        paths = []
        for name in names:
            pure = PurePosixPath(name)
            if not pure.suffix:
                pure = pure.with_name(pure.name + self.scaffold.source_suffix)
            paths.append(f"{base}/{pure.as_posix()}")
        return paths

    def _test_path(self, source_path: str) -> str:
        pure = PurePosixPath(source_path)
        return str(pure.with_name(pure.name[: -len(pure.suffix)] + self.scaffold.test_suffix))

    # --- Steps ---

    def _branch_step(self, task: Task) -> Step:
        return Step(
            id=f"create-branch-{task.task_id}",
            type="create-branch",
            action=StepAction(branch_name=self.branch_name(task)),
        )

    def _directory_step(self, task: Task) -> Step:
        return Step(
            id=f"create-directories-{task.task_id}",
            type="create-directories",
            action=StepAction(
                create_folders=FolderSpec(
                    base_path=self.base_path(task),
                    folders=list(LAYER_DIRECTORIES[task.layer]),
                )
            ),
        )

    @staticmethod
    def _file_step(step_id: str, path: str, template: str) -> Step:
        return Step(id=step_id, type="create-file", path=path, template=template)

    def _validation_step(self, task: Task) -> Step:
        pm = sanitize_script_name(self.validation.package_manager).strip() or "npm"
        lines = []
        for script in self.validation.scripts:
            name = sanitize_script_name(script).strip()
            if not name:
                continue
            lines.append(f"{pm} test" if name == "test" else f"{pm} run {name}")
        return Step(
            id=f"run-validation-{task.task_id}",
            type="run-validation",
            validation_script="\n".join(lines),
        )

    def _commit_step(self, task: Task) -> Step:
        subject = sanitize_shell_text(
            self.git_flow.commit_convention
            .replace("{layer}", task.layer)
            .replace("{task-id}", sanitize_shell_text(task.task_id))
            .replace("{description}", sanitize_shell_text(task.title))
        )
        body_lines = []
        description = sanitize_shell_text(task.description)
        if description:
            body_lines += [description, ""]
        criteria = [sanitize_shell_text(c) for c in task.acceptance_criteria]
        if criteria:
            body_lines.append("Acceptance Criteria:")
            body_lines += [f"- {c}" for c in criteria if c]
            body_lines.append("")
        body_lines += [
            f"Task: {sanitize_shell_text(task.task_id)}",
            f"Story Points: {task.story_points}",
            f"Layer: {task.layer}",
        ]
        return Step(
            id=f"commit-{task.task_id}",
            type="commit",
            action=StepAction(commit_message=_fit_commit_message(subject, "\n".join(body_lines))),
        )

    def _change_request_step(self, task: Task) -> Step:
        task_id = sanitize_shell_text(task.task_id)
        title = sanitize_shell_text(task.title)
        criteria = [sanitize_shell_text(c) for c in task.acceptance_criteria]
        dependencies = [sanitize_shell_text(d) for d in task.dependencies]
        body = "\n".join([
            f"## Task {task_id}: {title}",
            "",
            "### Description",
            sanitize_shell_text(task.description) or "No description provided.",
            "",
            "### Acceptance Criteria",
            *([f"- {c}" for c in criteria if c] or ["- None listed"]),
            "",
            "### Implementation Details",
            f"- Layer: {task.layer}",
            f"- Story Points: {task.story_points}",
            f"- Priority: {task.priority}",
            f"- Dependencies: {', '.join(d for d in dependencies if d) or 'None'}",
            "",
            "### Testing",
            "- All tests passing",
            "- Lint clean",
            "- Type check passing",
        ])
        return Step(
            id=f"open-change-request-{task.task_id}",
            type="open-change-request",
            action=StepAction(
                source_branch=self.branch_name(task),
                target_branch=sanitize_branch_name(self.git_flow.target_branch),
                title=sanitize_shell_text(f"feat({task.layer}): {task_id} - {title}"),
                body=body,
            ),
        )

    # --- Templates ---

    @staticmethod
    def _class_name(path: str) -> str:
        stem = PurePosixPath(path).name.split(".")[0]
        parts = re.split(r"[^A-Za-z0-9]+", stem)
        name = "".join(p[:1].upper() + p[1:] for p in parts if p)
        return name if name[:1].isalpha() else f"Task{name}"

    def _source_template(self, task: Task, path: str) -> str:
        return (
            f"// Generated for {task.task_id}: {task.title}\n"
            f"export class {self._class_name(path)} {{\n"
            f"  // Implementation\n"
            f"}}\n"
        )

    def _test_template(self, task: Task, path: str) -> str:
        return (
            f"// Test for {task.task_id}: {task.title}\n"
            f"import {{ describe, it, expect }} from 'vitest';\n"
            f"\n"
            f"describe('{self._class_name(path)}', () => {{\n"
            f"  it('should pass', () => {{\n"
            f"    expect(true).toBe(true);\n"
            f"  }});\n"
            f"}});\n"
        )


def build_workflow(task: Task) -> Workflow:
    """Expand a Task with the built-in git-flow and scaffold defaults."""
    return WorkflowTransformer().build_workflow(task)


# ---------------------------------------------------------------------------
# YAML I/O
# ---------------------------------------------------------------------------

def save_workflow_yaml(workflow: Workflow, output_path: Path) -> Path:
    output_path.parent.mkdir(parents=True, exist_ok=True)
    with open(output_path, "w", encoding="utf-8") as f:
        yaml.safe_dump(workflow.to_document(), f, sort_keys=False, allow_unicode=True, width=10_000)
    logger.info(f"[TRANSFORMER] Workflow written: {output_path}")
    return output_path


def load_workflow_yaml(path: Path) -> Workflow:
    with open(path, encoding="utf-8") as f:
        document = yaml.safe_load(f) or {}
    return Workflow.from_document(document)
