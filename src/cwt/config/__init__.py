"""Configuration — Pydantic models for cwt settings."""

from __future__ import annotations

import json
import os
import shlex
from pathlib import Path
from typing import Any, Literal

from dotenv import find_dotenv, load_dotenv
from pydantic import BaseModel, Field

CONFIG_DIR = ".cwt"
CONFIG_FILE = "config.json"


class CwtConfig(BaseModel):
    """Top-level cwt configuration."""

    command: list[str] = Field(
        default_factory=lambda: ["claude"],
        description="Interactive program launched in every session",
    )
    rows: int = Field(default=24, ge=1)
    cols: int = Field(default=80, ge=1)
    scrollback: int = Field(default=1000, ge=0, description="Lines kept above the screen")
    terminal: Literal["pyte", "tail"] = Field(
        default="pyte",
        description=(
            "Terminal model: 'pyte' emulates a full screen; 'tail' keeps the "
            "trailing bytes of raw output"
        ),
    )
    tail_bytes: int = Field(default=64 * 1024, ge=1)
    tick_interval: float = Field(default=0.05, gt=0, description="UI redraw period (s)")
    worktree_dir: str = Field(default=".worktrees")
    branch_prefix: str = Field(default="cwt")
    id_prefix: str = Field(default="cwt")
    merge_command: list[str] | None = Field(
        default=None,
        description="External merge collaborator; receives a JSON request on stdin",
    )
    merge_timeout: float = Field(default=600.0, gt=0)
    max_sessions: int = Field(default=16, ge=1)

    @classmethod
    def default_path(cls, repo_root: str | os.PathLike[str]) -> Path:
        return Path(repo_root) / CONFIG_DIR / CONFIG_FILE

    @classmethod
    def load(cls, config_path: str | os.PathLike[str] | None = None) -> CwtConfig:
        """Load config from file, env vars, or defaults.

        Priority: env vars > config file > defaults.

        Env vars:
            CWT_COMMAND        - Session program, shell-split (e.g. "claude --resume")
            CWT_TERMINAL       - Terminal model: pyte or tail
            CWT_SCROLLBACK     - Scrollback lines
            CWT_MERGE_COMMAND  - External merge collaborator, shell-split
            CWT_BRANCH_PREFIX  - First component of agent branch names
            CWT_WORKTREE_DIR   - Worktree directory under the repository root
        """
        # .env next to where cwt runs; real environment variables win.
        load_dotenv(find_dotenv(usecwd=True))

        config_data: dict[str, Any] = {}
        if config_path and os.path.exists(config_path):
            with open(config_path, encoding="utf-8") as f:
                config_data = json.load(f)

        env_command = os.environ.get("CWT_COMMAND")
        if env_command:
            config_data["command"] = shlex.split(env_command)

        env_terminal = os.environ.get("CWT_TERMINAL")
        if env_terminal:
            config_data["terminal"] = env_terminal.lower()

        env_scrollback = os.environ.get("CWT_SCROLLBACK")
        if env_scrollback:
            config_data["scrollback"] = int(env_scrollback)

        env_merge = os.environ.get("CWT_MERGE_COMMAND")
        if env_merge:
            config_data["merge_command"] = shlex.split(env_merge)

        env_prefix = os.environ.get("CWT_BRANCH_PREFIX")
        if env_prefix:
            config_data["branch_prefix"] = env_prefix

        env_worktree_dir = os.environ.get("CWT_WORKTREE_DIR")
        if env_worktree_dir:
            config_data["worktree_dir"] = env_worktree_dir

        return cls.model_validate(config_data)
