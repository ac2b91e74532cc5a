"""Agent ids and branch names."""

from __future__ import annotations

import re
import secrets
from collections.abc import Container
from datetime import datetime, timezone

SLUG_MAX_LEN = 30

_NON_ALNUM = re.compile(r"[^a-z0-9]+")


def slugify(text: str, max_len: int = SLUG_MAX_LEN) -> str:
    """Reduce a task description to a branch-safe ``[a-z0-9-]`` slug.

    Anything outside ASCII letters and digits (including non-ASCII letters)
    collapses into a single ``-``. May return an empty string.
    """
    slug = _NON_ALNUM.sub("-", text.lower()).strip("-")
    return slug[:max_len].rstrip("-")


def generate_id(prefix: str = "cwt", now: datetime | None = None) -> str:
    """``<prefix>-<YYYYMMDD>-<4 hex>``."""
    stamp = (now or datetime.now(timezone.utc)).strftime("%Y%m%d")
    return f"{prefix}-{stamp}-{secrets.token_hex(2)}"


def new_agent_id(taken: Container[str], prefix: str = "cwt", max_attempts: int = 1000) -> str:
    """Generate an id that is not in ``taken``."""
    for _ in range(max_attempts):
        candidate = generate_id(prefix)
        if candidate not in taken:
            return candidate
    # 4 hex digits give 65536 ids per day; fall back to a longer suffix.
    while True:
        candidate = f"{generate_id(prefix)}{secrets.token_hex(2)}"
        if candidate not in taken:
            return candidate


def branch_name(prefix: str, agent_id: str, task: str) -> str:
    """``<prefix>/<id>/<slug>``, or ``<prefix>/<id>`` when the slug is empty."""
    slug = slugify(task)
    if not slug:
        return f"{prefix}/{agent_id}"
    return f"{prefix}/{agent_id}/{slug}"
