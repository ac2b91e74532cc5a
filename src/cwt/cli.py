"""CLI entry point for cwt."""

from __future__ import annotations

import asyncio
import functools
import logging
import os
import shutil
from typing import Callable, TypeVar

import typer

from cwt.config import CwtConfig
from cwt.errors import CwtError, ResolverError
from cwt.worktree.manager import WorktreeManager, find_git_root
from cwt.worktree.resolver import run_merge_resolver
from cwt.worktree.state import AgentStatus

app = typer.Typer(
    name="cwt",
    help="Run coding agents side by side, each in its own git worktree.",
    no_args_is_help=True,
)

F = TypeVar("F", bound=Callable[..., None])

_STATUS_COLORS = {
    AgentStatus.PENDING: typer.colors.WHITE,
    AgentStatus.RUNNING: typer.colors.CYAN,
    AgentStatus.COMPLETED: typer.colors.GREEN,
    AgentStatus.MERGING: typer.colors.YELLOW,
    AgentStatus.MERGED: typer.colors.BLUE,
    AgentStatus.FAILED: typer.colors.RED,
}

RepoOption = typer.Option(
    None, "--repo", "-C", help="Repository to operate on (default: current directory)."
)
VerboseOption = typer.Option(False, "--verbose", "-v", help="Enable debug logging.")


def setup_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def _handle_errors(func: F) -> F:
    """Turn cwt errors into a red message and exit status 1."""

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except CwtError as e:
            typer.secho(f"Error: {e}", fg=typer.colors.RED, err=True)
            raise typer.Exit(1) from None

    return wrapper  # type: ignore[return-value]


def _require_program(command: list[str]) -> None:
    """Fail early when the session program is not installed."""
    if not command:
        raise CwtError("No session command configured (set CWT_COMMAND)")
    if shutil.which(command[0]) is None:
        raise CwtError(
            f"{command[0]!r} not found on PATH; install it or set CWT_COMMAND"
        )


def _open(repo: str | None) -> WorktreeManager:
    root = find_git_root(repo or os.getcwd())
    config = CwtConfig.load(CwtConfig.default_path(root))
    return WorktreeManager(root, config=config)


@app.command()
@_handle_errors
def ui(repo: str | None = RepoOption, verbose: bool = VerboseOption) -> None:
    """Open the tabbed terminal UI."""
    manager = _open(repo)
    _require_program(manager.config.command)

    # No basicConfig here: a stderr handler would corrupt the Textual
    # display. The app routes log records to its status bar.
    logging.getLogger().setLevel(logging.DEBUG if verbose else logging.INFO)
    for h in logging.getLogger().handlers[:]:
        logging.getLogger().removeHandler(h)

    from cwt.tui.app import CwtApp

    CwtApp(manager).run()


@app.command()
@_handle_errors
def new(
    task: str = typer.Argument(help="What the agent should work on."),
    repo: str | None = RepoOption,
    verbose: bool = VerboseOption,
) -> None:
    """Create a worktree and branch for a new agent."""
    setup_logging(verbose)
    agent = _open(repo).create_branch(task)
    typer.echo(agent.id)
    typer.echo(f"  branch:   {agent.branch}")
    typer.echo(f"  worktree: {agent.worktree}")


@app.command("list")
@_handle_errors
def list_agents(repo: str | None = RepoOption, verbose: bool = VerboseOption) -> None:
    """List tracked agents, oldest first."""
    setup_logging(verbose)
    agents = _open(repo).list_agents()
    if not agents:
        typer.echo("No agents.")
        return
    for agent in agents:
        status = typer.style(f"{agent.status.value:<10}", fg=_STATUS_COLORS[agent.status])
        created = agent.created_at.strftime("%Y-%m-%d %H:%M")
        typer.echo(f"{agent.id}  {status} {created}  {agent.task}")


@app.command()
@_handle_errors
def diff(
    agent_id: str = typer.Argument(help="Agent ID."),
    stat: bool = typer.Option(False, "--stat", help="Show a diffstat only."),
    repo: str | None = RepoOption,
    verbose: bool = VerboseOption,
) -> None:
    """Show what the agent changed since its branch point."""
    setup_logging(verbose)
    manager = _open(repo)
    output = manager.diff_stat(agent_id) if stat else manager.diff(agent_id)
    if output:
        typer.echo(output)


@app.command()
@_handle_errors
def log(
    agent_id: str = typer.Argument(help="Agent ID."),
    repo: str | None = RepoOption,
    verbose: bool = VerboseOption,
) -> None:
    """Show the agent's commits that are not on its base branch."""
    setup_logging(verbose)
    output = _open(repo).commit_log(agent_id)
    if output:
        typer.echo(output)


@app.command()
@_handle_errors
def conflicts(
    agent_id: str = typer.Argument(help="Agent ID."),
    repo: str | None = RepoOption,
    verbose: bool = VerboseOption,
) -> None:
    """Check whether merging the agent would conflict. Exits 2 if so."""
    setup_logging(verbose)
    if _open(repo).has_conflicts(agent_id):
        typer.secho("Conflicts expected.", fg=typer.colors.YELLOW)
        raise typer.Exit(2)
    typer.secho("No conflicts.", fg=typer.colors.GREEN)


@app.command()
@_handle_errors
def merge(
    agent_id: str = typer.Argument(help="Agent ID."),
    repo: str | None = RepoOption,
    verbose: bool = VerboseOption,
) -> None:
    """Merge the agent's branch into its base branch."""
    setup_logging(verbose)
    record = _open(repo).merge(agent_id)
    typer.secho(f"Merged {agent_id} as {record.merge_commit[:12]}", fg=typer.colors.GREEN)


@app.command()
@_handle_errors
def remove(
    agent_id: str = typer.Argument(help="Agent ID."),
    repo: str | None = RepoOption,
    verbose: bool = VerboseOption,
) -> None:
    """Delete the agent's worktree and branch and forget it."""
    setup_logging(verbose)
    _open(repo).remove_branch(agent_id)
    typer.echo(f"Removed {agent_id}")


@app.command()
@_handle_errors
def resolve(
    agent_id: str = typer.Argument(help="Agent ID."),
    repo: str | None = RepoOption,
    verbose: bool = VerboseOption,
) -> None:
    """Hand the agent's branch to the configured merge collaborator."""
    setup_logging(verbose)
    manager = _open(repo)
    command = manager.config.merge_command
    if not command:
        raise ResolverError(
            "No merge collaborator configured (set merge_command or CWT_MERGE_COMMAND)"
        )
    agent = asyncio.run(
        run_merge_resolver(manager, agent_id, command, timeout=manager.config.merge_timeout)
    )
    color = typer.colors.GREEN if agent.status == AgentStatus.MERGED else typer.colors.YELLOW
    typer.secho(f"{agent.id}: {agent.status.value}", fg=color)


@app.command()
@_handle_errors
def status(
    agent_id: str = typer.Argument(help="Agent ID."),
    new_status: AgentStatus = typer.Argument(help="Target status.", metavar="STATUS"),
    repo: str | None = RepoOption,
    verbose: bool = VerboseOption,
) -> None:
    """Move an agent to another status by hand."""
    setup_logging(verbose)
    agent = _open(repo).set_status(agent_id, new_status)
    typer.echo(f"{agent.id}: {agent.status.value}")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
