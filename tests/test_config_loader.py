from archforge.config_loader import _deep_merge, load_config


def test_defaults():
    config = load_config()
    assert config.git_flow.branch_prefix == "feature/"
    assert config.migration.keep_count == 10
    assert config.validation.scripts == ["test", "lint", "typecheck"]


def test_deep_merge_keeps_siblings():
    merged = _deep_merge({"a": {"x": 1, "y": 2}, "b": 1}, {"a": {"y": 3}})
    assert merged == {"a": {"x": 1, "y": 3}, "b": 1}


def test_repo_overrides(tmp_path):
    (tmp_path / ".archforge").mkdir()
    (tmp_path / ".archforge" / "config.yaml").write_text(
        "git_flow:\n  target_branch: develop\nvalidation:\n  package_manager: pnpm\n"
    )
    config = load_config(tmp_path)
    assert config.git_flow.target_branch == "develop"
    assert config.git_flow.branch_prefix == "feature/"
    assert config.validation.package_manager == "pnpm"


def test_env_overrides(tmp_path, monkeypatch):
    monkeypatch.setenv("ARCHFORGE_KEEP_BACKUPS", "4")
    monkeypatch.setenv("ARCHFORGE_BACKUP_DIR", "var/backups")
    config = load_config(tmp_path)
    assert config.migration.keep_count == 4
    assert config.migration.backup_dir == "var/backups"
