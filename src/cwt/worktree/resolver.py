"""External merge collaborator — hand a branch to an outside resolver.

The collaborator is any program that reads a JSON request on stdin and
prints a JSON :class:`~cwt.worktree.state.MergeOutcome` on stdout. cwt does
not resolve conflicts itself; it supplies the diff and the conflict probe,
then records whatever outcome comes back.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import signal
from typing import Any

from pydantic import ValidationError

from cwt.errors import ResolverError
from cwt.worktree.manager import WorktreeManager
from cwt.worktree.state import Agent, MergeOutcome

logger = logging.getLogger(__name__)


def build_request(manager: WorktreeManager, agent_id: str) -> dict[str, Any]:
    """The JSON document sent to the collaborator for ``agent_id``."""
    agent = manager.require_agent(agent_id)
    return {
        "agentId": agent.id,
        "branch": agent.branch,
        "baseBranch": agent.base_branch,
        "task": agent.task,
        "worktree": agent.worktree,
        "repoRoot": manager.repo_root,
        "hasConflicts": manager.has_conflicts(agent_id),
        "diff": manager.diff(agent_id),
    }


def parse_outcome(stdout: str) -> MergeOutcome:
    """Parse the collaborator's outcome.

    Accepts a single JSON document, or chatter followed by a JSON line; the
    last line that parses as JSON wins.
    """
    text = stdout.strip()
    candidates = [text] + [line.strip() for line in reversed(text.splitlines())]
    for candidate in candidates:
        if not candidate.startswith("{"):
            continue
        try:
            data = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        try:
            return MergeOutcome.model_validate(data)
        except ValidationError as e:
            raise ResolverError(f"Merge collaborator returned an invalid outcome: {e}") from e
    raise ResolverError("Merge collaborator did not print a JSON outcome")


async def run_merge_resolver(
    manager: WorktreeManager,
    agent_id: str,
    command: list[str],
    timeout: float = 600.0,
) -> Agent:
    """Run ``command`` for ``agent_id`` and record its outcome.

    Raises:
        ResolverError: The command could not run, timed out, exited
            non-zero, or printed no valid outcome. State is unchanged.
    """
    if not command:
        raise ResolverError("No merge collaborator configured")

    request = await asyncio.to_thread(build_request, manager, agent_id)
    payload = json.dumps(request).encode("utf-8")
    logger.info("Handing %s to merge collaborator: %s", agent_id, " ".join(command))

    try:
        process = await asyncio.create_subprocess_exec(
            *command,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=manager.repo_root,
            start_new_session=True,
        )
    except OSError as e:
        raise ResolverError(f"Cannot start merge collaborator {command[0]}: {e}") from e

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(payload), timeout=timeout)
    except asyncio.TimeoutError:
        try:
            os.killpg(os.getpgid(process.pid), signal.SIGKILL)
        except ProcessLookupError:
            pass
        await process.wait()
        raise ResolverError(f"Merge collaborator timed out after {timeout}s") from None

    if process.returncode != 0:
        detail = stderr.decode("utf-8", errors="replace").strip()
        raise ResolverError(
            f"Merge collaborator exited with {process.returncode}: {detail[:500]}"
        )

    outcome = parse_outcome(stdout.decode("utf-8", errors="replace"))
    logger.info(
        "Merge collaborator for %s: %s (resolved=%d escalated=%d)",
        agent_id,
        outcome.outcome,
        outcome.conflicts_resolved,
        outcome.conflicts_escalated,
    )
    return await asyncio.to_thread(manager.record_merge_outcome, agent_id, outcome)
