"""Tests for cwt.cli."""

from __future__ import annotations

from pathlib import Path

import pytest
from typer.testing import CliRunner

from cwt.cli import _require_program, app
from cwt.errors import CwtError

runner = CliRunner()


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    for name in ("CWT_COMMAND", "CWT_MERGE_COMMAND", "CWT_WORKTREE_DIR", "CWT_BRANCH_PREFIX"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)


# ---------------------------------------------------------------------------
# Session program check
# ---------------------------------------------------------------------------


class TestRequireProgram:
    def test_installed(self) -> None:
        _require_program(["sh", "-c", "true"])

    def test_missing(self) -> None:
        with pytest.raises(CwtError, match="not found on PATH"):
            _require_program(["/nonexistent/agent"])

    def test_empty(self) -> None:
        with pytest.raises(CwtError, match="No session command"):
            _require_program([])


class TestUiCommand:
    def test_missing_program_exits_before_ui(
        self, git_repo: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("CWT_COMMAND", "/nonexistent/agent --flag")
        result = runner.invoke(app, ["ui", "--repo", str(git_repo)])
        assert result.exit_code == 1
        assert "/nonexistent/agent" in result.output
        assert "not found on PATH" in result.output
        assert not (git_repo / ".worktrees").exists()
