from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Literal


MergeStatus = Literal["unset", "queued", "succeeded", "conflicts", "failure"]
PullRequestStatus = Literal["active", "completed", "abandoned"]
PlannedOutcome = Literal["complete", "abandon", "leave_open"]
VoteType = Literal["approve", "approve_with_suggestions", "reject", "no_vote"]

PENDING_MERGE_STATUSES: frozenset[MergeStatus] = frozenset({"unset", "queued"})
BRANCH_REF_PREFIX = "refs/heads/"
# Reviewer vote values understood by the pull request reviewers endpoint.
VOTE_VALUES: dict[VoteType, int] = {
    "approve": 10,
    "approve_with_suggestions": 5,
    "reject": -10,
    "no_vote": 0,
}


def branch_from_ref(ref_name: str) -> str:
    """Strip ``refs/heads/`` from a ref name, keeping any nested path intact."""
    if ref_name.startswith(BRANCH_REF_PREFIX):
        return ref_name[len(BRANCH_REF_PREFIX) :]
    return ref_name


@dataclass(frozen=True)
class PullRequestHandle:
    project: str
    repository_id: str
    pull_request_id: int
    source_branch: str
    target_branch: str
    remote_url: str


@dataclass(frozen=True)
class MergeEvaluation:
    status: MergeStatus
    # Commit the completion call must reference (the remote's lastMergeSourceCommit).
    merge_commit_id: str | None = None

    @property
    def is_pending(self) -> bool:
        return self.status in PENDING_MERGE_STATUSES


@dataclass(frozen=True)
class ConflictResolutionResult:
    resolved: bool
    new_commit_sha: str | None = None
    error: str | None = None


@dataclass
class CompletionAttemptState:
    attempt_index: int = 0
    conflict_resolution_attempted: bool = False


@dataclass(frozen=True)
class LocalWorkspace:
    path: Path
    branches_present: tuple[str, ...]


@dataclass(frozen=True)
class CleanupBacklogEntry:
    handle: PullRequestHandle
    is_draft: bool
    created_at: datetime


@dataclass(frozen=True)
class CleanupStats:
    drafts_published: int
    prs_completed: int
    prs_failed: int
    open_before: int
    open_after: int


@dataclass(frozen=True)
class Repository:
    repository_id: str
    name: str
    project: str
    remote_url: str


@dataclass(frozen=True)
class PullRequest:
    pull_request_id: int
    title: str
    status: PullRequestStatus
    source_ref: str
    target_ref: str
    is_draft: bool
    created_at: datetime


@dataclass(frozen=True)
class PullRequestDetails:
    pull_request_id: int
    status: PullRequestStatus
    merge_status: MergeStatus
    merge_commit_id: str | None
    source_ref: str
    target_ref: str
    is_draft: bool

    @property
    def evaluation(self) -> MergeEvaluation:
        return MergeEvaluation(status=self.merge_status, merge_commit_id=self.merge_commit_id)


@dataclass(frozen=True)
class PlannedCommit:
    message: str
    files: tuple[tuple[str, str], ...]


@dataclass(frozen=True)
class PlannedBranch:
    name: str
    commits: tuple[PlannedCommit, ...]


@dataclass(frozen=True)
class PlannedReviewer:
    email: str
    vote: VoteType


@dataclass(frozen=True)
class PlannedComment:
    author_email: str
    content: str


@dataclass(frozen=True)
class PlannedPullRequest:
    source_branch: str
    title: str
    description: str
    is_draft: bool
    outcome: PlannedOutcome
    follow_up_commits: tuple[PlannedCommit, ...] = ()
    creator_email: str | None = None
    reviewers: tuple[PlannedReviewer, ...] = ()
    comments: tuple[PlannedComment, ...] = ()
    target_branch: str = "main"


@dataclass(frozen=True)
class PlannedRepo:
    project: str
    name: str
    branches: tuple[PlannedBranch, ...]
    pull_requests: tuple[PlannedPullRequest, ...]

    @property
    def branch_names(self) -> tuple[str, ...]:
        return tuple(branch.name for branch in self.branches)


@dataclass(frozen=True)
class SeedPlan:
    run_id: str
    organization: str
    repos: tuple[PlannedRepo, ...] = field(default_factory=tuple)
