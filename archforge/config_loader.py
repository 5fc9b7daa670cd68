"""
Configuration loader for ArchForge.
Merges defaults with per-repo .archforge/config.yaml overrides.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

class GitFlowConfig(BaseModel):
    branch_prefix: str = "feature/"
    target_branch: str = "main"
    commit_convention: str = "feat({layer}): {task-id} - {description}"


class ScaffoldConfig(BaseModel):
    feature: str = "project-init"
    source_root: str = "src/features"
    source_suffix: str = ".ts"
    test_suffix: str = ".test.ts"
    project_type: str = "cli"


class ValidationConfig(BaseModel):
    package_manager: str = "npm"
    scripts: list[str] = Field(default_factory=lambda: ["test", "lint", "typecheck"])


class MigrationConfig(BaseModel):
    backup_dir: str = ".backups"
    keep_count: int = Field(default=10, ge=0)
    cleanup_old_backups: bool = True
    guidance: str = "docs/MIGRATION.md"


class WorkspaceConfig(BaseModel):
    task_file: str = ".specify/tasks/TASK-LIST.md"
    workflow_dir: str = ".archforge/workflows"
    log_dir: str = ".archforge/logs"
    git_retries: int = Field(default=3, ge=1)


class ArchforgeConfig(BaseModel):
    git_flow: GitFlowConfig = Field(default_factory=GitFlowConfig)
    scaffold: ScaffoldConfig = Field(default_factory=ScaffoldConfig)
    validation: ValidationConfig = Field(default_factory=ValidationConfig)
    migration: MigrationConfig = Field(default_factory=MigrationConfig)
    workspace: WorkspaceConfig = Field(default_factory=WorkspaceConfig)


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------

_DEFAULT_CONFIG_PATH = Path(__file__).parent / "config.yaml"

# env var -> (section, key)
_ENV_OVERRIDES = {
    "ARCHFORGE_BACKUP_DIR": ("migration", "backup_dir"),
    "ARCHFORGE_KEEP_BACKUPS": ("migration", "keep_count"),
    "ARCHFORGE_TARGET_BRANCH": ("git_flow", "target_branch"),
}


def _deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge override into base."""
    merged = base.copy()
    for key, value in override.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(repo_path: Path | None = None) -> ArchforgeConfig:
    """
    Load config by merging:
      1. Built-in defaults (archforge/config.yaml)
      2. Repo-level overrides (<repo>/.archforge/config.yaml)
      3. Environment variable overrides
    """
    # 1. Built-in defaults
    with open(_DEFAULT_CONFIG_PATH, "r") as f:
        base: dict[str, Any] = yaml.safe_load(f) or {}

    # 2. Repo overrides
    if repo_path:
        repo_config = repo_path / ".archforge" / "config.yaml"
        if repo_config.exists():
            with open(repo_config, "r") as f:
                overrides: dict[str, Any] = yaml.safe_load(f) or {}
            base = _deep_merge(base, overrides)

    # 3. Env overrides (pydantic coerces the strings)
    for env_name, (section, key) in _ENV_OVERRIDES.items():
        value = os.environ.get(env_name)
        if value:
            base = _deep_merge(base, {section: {key: value}})

    return ArchforgeConfig(**base)
