from __future__ import annotations

from collections.abc import Sequence
import logging

from prseed.git_ops import GitWorkspaceManager, sanitize_remote_url
from prseed.observability import log_event, log_warning_event


LOGGER = logging.getLogger("prseed.collision")


class BranchCollisionError(RuntimeError):
    """A planned branch already exists remotely; the run id was reused against this repository."""

    def __init__(self, remote_url: str, branches: Sequence[str]) -> None:
        self.remote_url = sanitize_remote_url(remote_url)
        self.branches = tuple(branches)
        super().__init__(
            f"FATAL: Collision detected on {self.remote_url}: "
            f"{len(self.branches)} planned branch(es) already exist remotely: "
            + ", ".join(self.branches)
        )


def check_collisions(
    git_manager: GitWorkspaceManager,
    remote_url: str,
    credential: str,
    candidate_branches: Sequence[str],
) -> list[str]:
    remote_heads = git_manager.list_remote_heads(remote_url, credential)
    return [branch for branch in candidate_branches if branch in remote_heads]


def ensure_no_collisions(
    git_manager: GitWorkspaceManager,
    remote_url: str,
    credential: str,
    candidate_branches: Sequence[str],
) -> None:
    collisions = check_collisions(git_manager, remote_url, credential, candidate_branches)
    if collisions:
        log_warning_event(
            LOGGER,
            "branch_collision_detected",
            remote_url=sanitize_remote_url(remote_url),
            branches=collisions,
        )
        raise BranchCollisionError(remote_url, collisions)
    log_event(LOGGER, "branch_collision_check_passed", candidates=len(candidate_branches))
