"""Run identity derivation from the current branch or worktree."""

import re
from typing import Callable, Optional

from dockstage.errors import OrchestratorError
from dockstage.models import RunIdentity

FALLBACK_BRANCH = "unknown"
MAX_ID_LENGTH = 20

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9]")


def derive(branch_name: Optional[str]) -> str:
    """Map a branch name to a docker-safe namespace token.

    Empty names go through the same ``"unknown"`` fallback as an unresolvable
    branch, so the result always matches ``^[A-Za-z0-9-]{1,20}$``.
    """
    name = branch_name or FALLBACK_BRANCH
    return _UNSAFE_CHARS.sub("-", name)[:MAX_ID_LENGTH]


def current_branch(run_cmd: Callable, cwd: Optional[str] = None) -> str:
    try:
        result = run_cmd(
            ["git", "rev-parse", "--abbrev-ref", "HEAD"],
            check=False,
            capture_output=True,
            cwd=cwd,
        )
    except OrchestratorError:
        return FALLBACK_BRANCH

    branch = (result.stdout or "").strip() if result.returncode == 0 else ""
    # detached head
    if not branch or branch == "HEAD":
        return FALLBACK_BRANCH
    return branch


def resolve_identity(
    run_cmd: Callable,
    branch: Optional[str] = None,
    cwd: Optional[str] = None,
) -> RunIdentity:
    raw_branch = branch if branch else current_branch(run_cmd, cwd=cwd)
    return RunIdentity(raw_branch=raw_branch, sanitized_id=derive(raw_branch))
