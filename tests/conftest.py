"""Shared fixtures: throwaway git repositories."""

from __future__ import annotations

import shutil
from pathlib import Path

import pytest
from git import Repo


def commit_file(repo_dir: str | Path, name: str, content: str, message: str | None = None) -> str:
    """Write ``name`` in ``repo_dir``, commit it, and return the new HEAD."""
    repo = Repo(repo_dir)
    (Path(repo_dir) / name).write_text(content)
    repo.git.add(name)
    repo.git.commit("-m", message or f"update {name}")
    return repo.git.rev_parse("HEAD")


@pytest.fixture
def git_repo(tmp_path: Path) -> Path:
    """A repository on ``main`` with one commit."""
    if shutil.which("git") is None:
        pytest.skip("git not installed")
    root = tmp_path / "repo"
    root.mkdir()
    repo = Repo.init(root)
    with repo.config_writer() as cw:
        cw.set_value("user", "name", "Test User")
        cw.set_value("user", "email", "test@example.com")
        cw.set_value("commit", "gpgsign", "false")
    repo.git.symbolic_ref("HEAD", "refs/heads/main")
    commit_file(root, "README.md", "hello\n", "initial")
    return root
