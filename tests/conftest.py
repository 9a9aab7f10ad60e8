# conftest.py - Shared pytest fixtures for all tests
"""Shared pytest fixtures for the ciworkspace test suite.

Provides:
- An isolated git environment (identity, HOME, default branch)
- Throwaway bare remotes and clones for real git operations
- A workspace root with a loaded WorkspaceConfig

Git fixtures run the real git executable; tests using them are skipped
when git is not installed.
"""

from __future__ import annotations

import os
import shutil
import subprocess
from collections.abc import Callable
from pathlib import Path

import pytest

from ciworkspace.core.config import WorkspaceConfig

requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")


def git(cwd: Path, *args: str) -> str:
    """Run git in ``cwd`` and return stripped stdout; fail the test on error."""
    result = subprocess.run(
        ["git", *args],
        cwd=cwd,
        capture_output=True,
        text=True,
    )
    assert result.returncode == 0, f"git {' '.join(args)} failed: {result.stderr}"
    return result.stdout.strip()


def head(cwd: Path) -> str:
    return git(cwd, "rev-parse", "HEAD")


def commit_file(repo: Path, name: str, content: str, message: str) -> str:
    """Write a file, commit it, and return the new HEAD."""
    path = repo / name
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)
    git(repo, "add", name)
    git(repo, "commit", "-q", "-m", message)
    return head(repo)


# =============================================================================
# Environment Fixtures
# =============================================================================


@pytest.fixture(autouse=True)
def isolated_git_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Isolate git from the developer's configuration.

    Sets a throwaway HOME, a fixed identity, master as default branch and
    allows file:// submodules (needed for local subrepository fixtures).
    """
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    monkeypatch.setenv("GIT_AUTHOR_NAME", "CI Bot")
    monkeypatch.setenv("GIT_AUTHOR_EMAIL", "ci@example.com")
    monkeypatch.setenv("GIT_COMMITTER_NAME", "CI Bot")
    monkeypatch.setenv("GIT_COMMITTER_EMAIL", "ci@example.com")
    monkeypatch.setenv("GIT_CONFIG_COUNT", "2")
    monkeypatch.setenv("GIT_CONFIG_KEY_0", "protocol.file.allow")
    monkeypatch.setenv("GIT_CONFIG_VALUE_0", "always")
    monkeypatch.setenv("GIT_CONFIG_KEY_1", "init.defaultBranch")
    monkeypatch.setenv("GIT_CONFIG_VALUE_1", "master")
    monkeypatch.delenv("VIRTUAL_ENV", raising=False)
    for name in list(os.environ):
        if name.startswith("CIWORKSPACE_"):
            monkeypatch.delenv(name)
    return home


# =============================================================================
# Git Repository Fixtures
# =============================================================================


def _init_bare(path: Path) -> Path:
    path.mkdir(parents=True)
    git(path, "init", "-q", "--bare")
    git(path, "symbolic-ref", "HEAD", "refs/heads/master")
    return path


def _seed(remote: Path, work: Path, files: dict[str, str]) -> None:
    git(work.parent, "clone", "-q", str(remote), work.name)
    git(work, "symbolic-ref", "HEAD", "refs/heads/master")
    for name, content in files.items():
        (work / name).write_text(content)
    git(work, "add", "-A")
    git(work, "commit", "-q", "-m", "Initial commit")
    git(work, "push", "-q", "origin", "master")


@pytest.fixture
def remote_repo(tmp_path: Path) -> Path:
    """A bare remote whose master holds one commit (C1) with README.md."""
    remote = _init_bare(tmp_path / "remote.git")
    _seed(remote, tmp_path / "seed", {"README.md": "# Project\n"})
    return remote


@pytest.fixture
def clone_repo(tmp_path: Path, remote_repo: Path) -> Callable[[str], Path]:
    """Factory cloning ``remote_repo`` into ``tmp_path/<name>`` on master."""

    def _clone(name: str) -> Path:
        git(tmp_path, "clone", "-q", str(remote_repo), name)
        return tmp_path / name

    return _clone


@pytest.fixture
def workspace(clone_repo: Callable[[str], Path]) -> Path:
    """A clone of ``remote_repo`` used as the CI workspace."""
    return clone_repo("workspace")


@pytest.fixture
def workspace_with_subrepo(tmp_path: Path, remote_repo: Path) -> dict[str, Path]:
    """A workspace whose ``sub/`` is a subrepository with its own remote.

    Returns:
        Mapping with keys ``workspace``, ``subrepo``, ``remote`` and
        ``sub_remote``.
    """
    sub_remote = _init_bare(tmp_path / "sub-remote.git")
    _seed(sub_remote, tmp_path / "sub-seed", {"lib.txt": "v1\n"})

    seed = tmp_path / "seed"
    git(seed, "submodule", "add", "-q", str(sub_remote), "sub")
    git(seed, "commit", "-q", "-m", "Add subrepo")
    git(seed, "push", "-q", "origin", "master")

    work = tmp_path / "workspace"
    git(tmp_path, "clone", "-q", "--recurse-submodules", str(remote_repo), "workspace")
    subrepo = work / "sub"
    git(subrepo, "checkout", "-q", "master")
    return {
        "workspace": work,
        "subrepo": subrepo,
        "remote": remote_repo,
        "sub_remote": sub_remote,
    }


# =============================================================================
# Configuration Fixtures
# =============================================================================


@pytest.fixture
def workspace_root(tmp_path: Path) -> Path:
    """An empty workspace root directory."""
    root = tmp_path / "ci-root"
    root.mkdir()
    return root


@pytest.fixture
def workspace_config(workspace_root: Path, tmp_path: Path) -> WorkspaceConfig:
    """Config for ``workspace_root`` with secrets kept under tmp_path."""
    return WorkspaceConfig(
        root=workspace_root,
        secrets_dir=tmp_path / "secrets",
        python="python3",
    )
