from __future__ import annotations

import logging
import random
import secrets
import time
from typing import cast

from prseed.config import AppConfig, OutcomeWeights, RepoConfig, ResolvedUser, VoteWeights
from prseed.models import (
    PlannedBranch,
    PlannedComment,
    PlannedCommit,
    PlannedOutcome,
    PlannedPullRequest,
    PlannedRepo,
    PlannedReviewer,
    SeedPlan,
    VoteType,
)
from prseed.observability import log_event


LOGGER = logging.getLogger("prseed.planner")
BRANCH_PREFIXES = ("feature", "bugfix", "chore", "refactor")
_MODULE_STEMS = ("billing", "catalog", "inventory", "search", "session", "telemetry", "users")
_FUNCTION_VERBS = ("load", "compute", "render", "sync", "validate", "merge", "export")
COMMENT_TEMPLATES = (
    "Looks good, thanks for splitting this up.",
    "Can we get a docstring on the new helper?",
    "This branch is getting long; worth a follow-up to simplify.",
    "Nice cleanup.",
    "Please add a test for the empty-input case.",
    "Approving with a couple of nits inline.",
    "What happens here when the upstream call times out?",
    "Thanks, this reads much better now.",
)


def generate_run_id() -> str:
    return f"run-{int(time.time() * 1000)}-{secrets.token_hex(3)}"


def create_plan(config: AppConfig, run_id: str) -> SeedPlan:
    """Build the full seeding plan.

    Output depends only on ``config`` and ``run_id``; the run id only shows up in
    names, so two runs with the same seed create the same shape of activity.
    """
    rng = random.Random(config.runtime.seed)
    repos = tuple(_plan_repo(rng, repo, config, run_id) for repo in config.repos)
    log_event(
        LOGGER,
        "plan_created",
        run_id=run_id,
        repos=len(repos),
        branches=sum(len(repo.branches) for repo in repos),
        pull_requests=sum(len(repo.pull_requests) for repo in repos),
    )
    return SeedPlan(run_id=run_id, organization=config.organization, repos=repos)


def _plan_repo(
    rng: random.Random,
    repo: RepoConfig,
    config: AppConfig,
    run_id: str,
) -> PlannedRepo:
    scale = config.scale
    branches: list[PlannedBranch] = []
    for index in range(scale.branches_per_repo):
        name = f"{rng.choice(BRANCH_PREFIXES)}/{run_id}-{index}"
        commit_count = rng.randint(scale.commits_per_branch_min, scale.commits_per_branch_max)
        commits = tuple(
            _plan_commit(rng, f"{name}: commit {number}") for number in range(1, commit_count + 1)
        )
        branches.append(PlannedBranch(name=name, commits=commits))

    usable = [branch.name for branch in branches]
    pull_requests: list[PlannedPullRequest] = []
    for _ in range(scale.prs_per_repo):
        if not usable:
            break
        source_branch = usable.pop(rng.randrange(len(usable)))
        follow_ups: tuple[PlannedCommit, ...] = ()
        if scale.follow_up_max > 0 and rng.random() < scale.follow_up_probability:
            count = rng.randint(1, scale.follow_up_max)
            follow_ups = tuple(
                _plan_commit(rng, f"{source_branch}: follow-up {number}")
                for number in range(1, count + 1)
            )
        is_draft = rng.random() < scale.draft_ratio
        outcome = _pick_outcome(rng, config.outcomes)
        creator = rng.choice(config.users)
        pull_requests.append(
            PlannedPullRequest(
                source_branch=source_branch,
                title=f"[{run_id}] {source_branch}",
                description=f"Seeded PR for testing. Run ID: {run_id}",
                is_draft=is_draft,
                outcome=outcome,
                follow_up_commits=follow_ups,
                creator_email=creator.email,
                reviewers=_plan_reviewers(rng, config, creator),
                comments=_plan_comments(rng, config),
            )
        )

    return PlannedRepo(
        project=repo.project,
        name=repo.name,
        branches=tuple(branches),
        pull_requests=tuple(pull_requests),
    )


def _plan_reviewers(
    rng: random.Random, config: AppConfig, creator: ResolvedUser
) -> tuple[PlannedReviewer, ...]:
    candidates = [user.email for user in config.users if user.email != creator.email]
    count = min(
        rng.randint(config.scale.reviewers_per_pr_min, config.scale.reviewers_per_pr_max),
        len(candidates),
    )
    return tuple(
        PlannedReviewer(email=email, vote=_pick_vote(rng, config.votes))
        for email in rng.sample(candidates, count)
    )


def _plan_comments(rng: random.Random, config: AppConfig) -> tuple[PlannedComment, ...]:
    count = rng.randint(config.scale.comments_per_pr_min, config.scale.comments_per_pr_max)
    return tuple(
        PlannedComment(
            author_email=rng.choice(config.users).email,
            content=rng.choice(COMMENT_TEMPLATES),
        )
        for _ in range(count)
    )


def _plan_commit(rng: random.Random, message: str) -> PlannedCommit:
    files: list[tuple[str, str]] = []
    for _ in range(rng.randint(1, 3)):
        stem = rng.choice(_MODULE_STEMS)
        verb = rng.choice(_FUNCTION_VERBS)
        token = rng.getrandbits(32)
        content = (
            f"def {verb}_{stem}_{token:08x}(value):\n"
            f"    return value * {rng.randint(2, 97)}\n"
        )
        files.append((f"src/{stem}/{verb}_{token:08x}.py", content))
    return PlannedCommit(message=message, files=tuple(files))


def _pick_outcome(rng: random.Random, weights: OutcomeWeights) -> PlannedOutcome:
    return cast(
        PlannedOutcome,
        _weighted_choice(
            rng,
            (
                ("complete", weights.complete),
                ("abandon", weights.abandon),
                ("leave_open", weights.leave_open),
            ),
        ),
    )


def _pick_vote(rng: random.Random, weights: VoteWeights) -> VoteType:
    return cast(
        VoteType,
        _weighted_choice(
            rng,
            (
                ("approve", weights.approve),
                ("approve_with_suggestions", weights.approve_with_suggestions),
                ("reject", weights.reject),
                ("no_vote", weights.no_vote),
            ),
        ),
    )


def _weighted_choice(rng: random.Random, options: tuple[tuple[str, float], ...]) -> str:
    total = sum(weight for _, weight in options)
    point = rng.random() * total
    cumulative = 0.0
    for value, weight in options:
        cumulative += weight
        if point < cumulative:
            return value
    # Float rounding can leave point == total.
    return options[-1][0]


def plan_to_dict(plan: SeedPlan) -> dict[str, object]:
    return {
        "run_id": plan.run_id,
        "organization": plan.organization,
        "repos": [
            {
                "project": repo.project,
                "name": repo.name,
                "branches": [
                    {
                        "name": branch.name,
                        "commits": [commit.message for commit in branch.commits],
                    }
                    for branch in repo.branches
                ],
                "pull_requests": [
                    {
                        "source_branch": pr.source_branch,
                        "target_branch": pr.target_branch,
                        "title": pr.title,
                        "is_draft": pr.is_draft,
                        "outcome": pr.outcome,
                        "follow_up_commits": len(pr.follow_up_commits),
                        "creator": pr.creator_email,
                        "reviewers": [
                            {"email": reviewer.email, "vote": reviewer.vote}
                            for reviewer in pr.reviewers
                        ],
                        "comments": len(pr.comments),
                    }
                    for pr in repo.pull_requests
                ],
            }
            for repo in plan.repos
        ],
    }
