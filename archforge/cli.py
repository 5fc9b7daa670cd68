"""
ArchForge CLI — The Interface

Core commands:
  1. archforge plan    --repo <path> --task <id>   (task → workflow YAML)
  2. archforge run     --repo <path> --task <id>   (plan + execute)
  3. archforge migrate --repo <path>               (protect + install configs)

Plus utilities:
  - archforge prune    (drop old config backups)
  - archforge status   (tools, config and existing config files)
"""

from __future__ import annotations

import shutil
from pathlib import Path
from typing import Optional

import typer
from dotenv import load_dotenv
from loguru import logger
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.prompt import Confirm
from rich.table import Table

from archforge.audit_logger import AuditLogger
from archforge.config_loader import ArchforgeConfig, load_config
from archforge.errors import ArchforgeError
from archforge.event_bus import EventBus
from archforge.executor import LocalExecutor
from archforge.identity import BANNER, __codename__, __tagline__, __version__
from archforge.migration import (
    CONFIG_CANDIDATES,
    BACKUP_NAME_RE,
    ConfigMigrationGuard,
    ForceConfirmation,
    MigrationOptions,
    merge_ignore_entries,
    prune_old_backups,
)
from archforge.models import Workflow
from archforge.sanitizer import sanitize_path_against_escape
from archforge.transformer import WorkflowTransformer, load_task, save_workflow_yaml
from archforge.workspace import ProjectWorkspace

# Load .env from current directory or home
load_dotenv()
load_dotenv(Path.home() / ".archforge" / ".env")

app = typer.Typer(
    name="archforge",
    help=f"{__codename__} — {__tagline__}",
    no_args_is_help=True,
    rich_markup_mode="rich",
)

console = Console()


def version_callback(value: bool):
    if value:
        console.print(f"{__codename__} v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Optional[bool] = typer.Option(
        None,
        "--version",
        callback=version_callback,
        is_eager=True,
        help="Show the version and exit.",
    ),
):
    pass


# ---------------------------------------------------------------------------
# Banner
# ---------------------------------------------------------------------------


def _print_banner():
    console.print(f"[bright_cyan]{BANNER}[/]")
    console.print(f"  [dim]v{__version__} — {__tagline__}[/]\n")


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

@app.command()
def plan(
    repo: Path = typer.Option(Path("."), "--repo", "-r", help="Path to the target project"),
    task_id: str = typer.Option(..., "--task", "-t", help="Task id, e.g. T001"),
    task_file: Optional[Path] = typer.Option(None, "--task-file", "-f", help="Task list markdown file"),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Write the workflow YAML here"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Turn one task into its ordered workflow."""
    _configure_logging(verbose)
    repo = repo.resolve()
    config = load_config(repo)

    try:
        workflow = _build_workflow(repo, config, task_id, task_file)
    except ArchforgeError as e:
        _fail(str(e))

    _print_workflow(workflow)

    if output:
        save_workflow_yaml(workflow, output)
        console.print(f"[green]Workflow written to {output}[/]")


@app.command()
def run(
    repo: Path = typer.Option(..., "--repo", "-r", help="Path to the target project"),
    task_id: str = typer.Option(..., "--task", "-t", help="Task id, e.g. T001"),
    task_file: Optional[Path] = typer.Option(None, "--task-file", "-f", help="Task list markdown file"),
    auto_approve: bool = typer.Option(False, "--yes", "-y", help="Skip the confirmation prompt"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Walk the workflow without side effects"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Plan a task and execute its workflow against the project."""
    _print_banner()
    _configure_logging(verbose)

    repo = repo.resolve()
    if not repo.exists():
        _fail(f"Repository not found: {repo}")
    config = load_config(repo)

    try:
        workflow = _build_workflow(repo, config, task_id, task_file)
    except ArchforgeError as e:
        _fail(str(e))

    _print_workflow(workflow)

    workspace = ProjectWorkspace(repo, retries=config.workspace.git_retries)
    if workspace.is_git_repo() and workspace.has_uncommitted_changes():
        console.print("[yellow]⚠ Uncommitted changes in the project will be included in the commit step.[/]")

    if not auto_approve and not dry_run and not Confirm.ask("Execute this workflow?", default=True):
        console.print("[yellow]Cancelled. Nothing was changed.[/]")
        raise typer.Exit(0)

    bus = EventBus()
    if not dry_run:
        AuditLogger(repo / config.workspace.log_dir / "audit.jsonl", bus)
    executor = LocalExecutor(repo, workspace=workspace, event_bus=bus, dry_run=dry_run)
    report = executor.execute(workflow)

    if dry_run:
        for step in workflow.steps:
            console.print(f"  [dim]{escape(step.execution_log)}[/]", highlight=False)
    else:
        out_path = repo / config.workspace.workflow_dir / f"{task_id}.yaml"
        save_workflow_yaml(workflow, out_path)

    color = "green" if report.status == "succeeded" else "red"
    console.print(f"\n[bold {color}]Status: {report.status}[/] ({report.steps_run} steps run)")
    if report.error:
        console.print(f"[red]{report.failed_step}: {report.error}[/]")
        raise typer.Exit(1)


@app.command()
def migrate(
    repo: Path = typer.Option(Path("."), "--repo", "-r", help="Path to the target project"),
    templates: Optional[Path] = typer.Option(None, "--templates", help="Directory holding the generated config files"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Report what would be backed up, change nothing"),
    force: bool = typer.Option(False, "--force", help="Overwrite existing configs WITHOUT backups"),
    backup_dir: Optional[Path] = typer.Option(None, "--backup-dir", help="Where to keep backups"),
    keep: Optional[int] = typer.Option(None, "--keep", help="Backups to retain after pruning"),
    no_cleanup: bool = typer.Option(False, "--no-cleanup", help="Do not prune old backups"),
    auto_approve: bool = typer.Option(False, "--yes", "-y", help="Back up and replace without asking"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """Back up existing config files, then install the generated ones."""
    _print_banner()
    _configure_logging(verbose)

    repo = repo.resolve()
    config = load_config(repo)
    guard = ConfigMigrationGuard(repo, guidance=config.migration.guidance)
    effective_backup_dir = backup_dir or Path(config.migration.backup_dir)
    if dry_run and force:
        _fail("--dry-run and --force cannot be combined")

    try:
        generated = _generated_configs(repo, templates, effective_backup_dir)
        confirmation = _confirm_force() if force else None
        options = MigrationOptions(
            dry_run=dry_run,
            force=force,
            force_confirmation=confirmation,
            backup_dir=effective_backup_dir,
            keep_count=keep if keep is not None else config.migration.keep_count,
            cleanup_old_backups=config.migration.cleanup_old_backups and not no_cleanup,
        )

        answer = True
        if options.mode == "interactive":
            existing = guard.scan(list(generated))
            if existing and not auto_approve:
                _print_existing(existing)
                answer = Confirm.ask("Back up these files and replace them?", default=True)

        result = guard.run(generated, options, answer=answer)
    except (ArchforgeError, OSError) as e:
        _fail(str(e))

    if result.status == "dry-run":
        console.print(Panel(result.decision.message, title="Dry run — nothing changed", border_style="yellow"))
        return
    if result.status == "kept":
        console.print(f"[yellow]{result.decision.message}[/]")
        return

    table = Table(title="Config Migration", border_style="cyan")
    table.add_column("File")
    table.add_column("Backup")
    backups = {b.original_path: b.backup_path for b in result.backups}
    for path in result.written:
        backup = backups.get(path)
        table.add_row(str(path.relative_to(repo)), backup.name if backup else "[dim]—[/]")
    console.print(table)
    if result.pruned:
        console.print(f"[dim]Pruned {len(result.pruned)} old backups.[/]")
    console.print(f"[green]✅ {result.status}[/]")


@app.command()
def prune(
    repo: Path = typer.Option(Path("."), "--repo", "-r", help="Path to the target project"),
    backup_dir: Optional[Path] = typer.Option(None, "--backup-dir", help="Backup directory"),
    keep: Optional[int] = typer.Option(None, "--keep", help="Number of backups to retain"),
):
    """Delete all but the most recent config backups."""
    repo = repo.resolve()
    config = load_config(repo)
    try:
        target = sanitize_path_against_escape(backup_dir or config.migration.backup_dir, repo)
        removed = prune_old_backups(target, keep if keep is not None else config.migration.keep_count)
    except (ArchforgeError, ValueError) as e:
        _fail(str(e))
    console.print(f"[green]Removed {len(removed)} backups from {target}[/]")


@app.command()
def status(
    repo: Optional[Path] = typer.Option(None, "--repo", "-r"),
):
    """Check tools, configuration and existing config files."""
    _print_banner()

    tools_table = Table(title="System Tools", border_style="cyan")
    tools_table.add_column("Tool")
    tools_table.add_column("Status")
    for tool in ["git", "gh", "node", "npm", "pnpm", "yarn"]:
        found = shutil.which(tool)
        s = f"[green]✓ {found}[/]" if found else "[dim]✗ Not found[/]"
        tools_table.add_row(tool, s)
    console.print(tools_table)

    if not shutil.which("gh"):
        console.print("[dim]Install the GitHub CLI (gh) to let workflows open pull requests.[/]")

    if repo:
        repo = repo.resolve()
        config = load_config(repo)
        console.print("\n[bold]Git flow:[/]")
        console.print(f"  Branch prefix: {config.git_flow.branch_prefix}")
        console.print(f"  Target branch: {config.git_flow.target_branch}")
        console.print(f"  Package mgr:   {_package_manager(repo, config)}")

        guard = ConfigMigrationGuard(repo)
        existing = {f.relative_path for f in guard.scan()}
        cfg_table = Table(title="Config Files", border_style="magenta")
        cfg_table.add_column("File")
        cfg_table.add_column("Present")
        for rel in CONFIG_CANDIDATES:
            cfg_table.add_row(rel, "✓" if rel in existing else "[dim]✗[/]")
        console.print(cfg_table)

        backup_dir = repo / config.migration.backup_dir
        if backup_dir.is_dir():
            count = sum(1 for p in backup_dir.iterdir() if BACKUP_NAME_RE.search(p.name))
            console.print(f"  Backups: {count} in {backup_dir} (keeping {config.migration.keep_count})")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _fail(message: str) -> None:
    console.print(f"[red]{escape(message)}[/]")
    raise typer.Exit(1)


def _build_workflow(repo: Path, config: ArchforgeConfig, task_id: str, task_file: Path | None) -> Workflow:
    tf = task_file or (repo / config.workspace.task_file)
    task = load_task(task_id, tf)
    validation = config.validation.model_copy(update={"package_manager": _package_manager(repo, config)})
    transformer = WorkflowTransformer(config.git_flow, config.scaffold, validation)
    return transformer.build_workflow(task, source=tf)


def _package_manager(repo: Path, config: ArchforgeConfig) -> str:
    if config.validation.package_manager != "auto":
        return config.validation.package_manager
    return detect_package_manager(repo)


def detect_package_manager(repo: Path) -> str:
    """Pick the package manager from the lockfile present in the project."""
    if (repo / "pnpm-lock.yaml").exists():
        return "pnpm"
    if (repo / "yarn.lock").exists():
        return "yarn"
    return "npm"


def _generated_configs(repo: Path, templates: Path | None, backup_dir: Path) -> dict[str, str]:
    """Collect generated config contents keyed by project-relative path."""
    generated: dict[str, str] = {}
    if templates:
        for rel in CONFIG_CANDIDATES:
            src = templates / rel
            if src.is_file():
                generated[rel] = src.read_text(encoding="utf-8")

    ignore_entries = [".archforge/logs/"]
    if not backup_dir.is_absolute():
        ignore_entries.append(f"{backup_dir.as_posix().rstrip('/')}/")
    gitignore = repo / ".gitignore"
    current = gitignore.read_text(encoding="utf-8") if gitignore.is_file() else None
    merged = merge_ignore_entries(generated.get(".gitignore", current), ignore_entries)
    if merged == current:
        generated.pop(".gitignore", None)
    else:
        generated[".gitignore"] = merged
    return generated


def _confirm_force() -> ForceConfirmation:
    console.print("[bold red]⚠ Force mode overwrites existing configuration WITHOUT any backup.[/]")
    first = Confirm.ask("Overwrite existing config files without backups?", default=False)
    second = first and Confirm.ask("Are you absolutely sure? This cannot be undone.", default=False)
    if not (first and second):
        console.print("[yellow]Cancelled. Nothing was changed.[/]")
        raise typer.Exit(1)
    return ForceConfirmation.from_answers(first, second)


def _print_existing(existing) -> None:
    table = Table(title="Existing config files", border_style="yellow")
    table.add_column("File")
    table.add_column("Size", justify="right")
    for f in existing:
        table.add_row(f.relative_path, f"{f.size} B")
    console.print(table)


def _print_workflow(workflow: Workflow) -> None:
    meta = workflow.metadata
    table = Table(title=f"Workflow {meta.task_id} ({meta.layer}, {meta.story_points} pts)", border_style="cyan")
    table.add_column("#", style="dim")
    table.add_column("Step")
    table.add_column("Type")
    table.add_column("Target")
    table.add_column("Status")
    for i, step in enumerate(workflow.steps, 1):
        target = step.path or ""
        if step.action and step.action.branch_name:
            target = step.action.branch_name
        elif step.action and step.action.create_folders:
            target = step.action.create_folders.base_path
        elif step.action and step.action.title:
            target = step.action.title
        elif step.action and step.action.commit_message:
            target = step.action.commit_message.split("\n", 1)[0]
        color = {"SUCCEEDED": "green", "FAILED": "red", "RUNNING": "yellow"}.get(step.status, "dim")
        table.add_row(str(i), step.id, step.type, target[:60], f"[{color}]{step.status}[/]")
    console.print(table)
    if meta.dependencies:
        console.print(f"[dim]Depends on: {', '.join(meta.dependencies)}[/]")


def _configure_logging(verbose: bool) -> None:
    logger.remove()
    if verbose:
        logger.add(
            lambda msg: console.print(f"[dim]{escape(msg)}[/]", highlight=False),
            level="DEBUG",
            format="{time:HH:mm:ss} | {level:<7} | {message}",
        )
    else:
        logger.add(
            lambda msg: console.print(f"[dim]{escape(msg)}[/]", highlight=False),
            level="WARNING",
            format="{message}",
        )


# ---------------------------------------------------------------------------
# Entry
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    app()
