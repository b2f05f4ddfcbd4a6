from __future__ import annotations

from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path
from typing import cast

import pytest

from prseed.ado_gateway import AdoApiError, AdoGateway, MissingRepositoryError
from prseed.completion import CompletionOrchestrator
from prseed.config import AppConfig, RepoConfig, RepoStrategy, ResolvedUser, RuntimeConfig
from prseed.git_ops import GitWorkspaceManager
from prseed.models import (
    LocalWorkspace,
    PlannedBranch,
    PlannedComment,
    PlannedCommit,
    PlannedOutcome,
    PlannedPullRequest,
    PlannedRepo,
    PlannedReviewer,
    PullRequest,
    PullRequestHandle,
    Repository,
    SeedPlan,
)
from prseed.runner import SeedRunner
from prseed.summary import ReviewerResult


_CREATED = datetime(2024, 1, 1, tzinfo=timezone.utc)


class FakeGateway:
    def __init__(self, events: list[str], *, open_prs: int = 0, label: str = "primary") -> None:
        self.events = events
        self.label = label
        self.missing_repos: set[str] = set()
        self.unknown_identities: set[str] = set()
        self.open_prs = open_prs
        self.next_pr_id = 100
        self.fail_repos: set[str] = set()
        self.fail_create_for: set[str] = set()
        self.published: list[int] = []
        self.abandoned: list[int] = []

    def _repository(self, project: str, name: str) -> Repository:
        return Repository(
            repository_id=f"id-{name}",
            name=name,
            project=project,
            remote_url=f"https://fake/{name}",
        )

    def get_repository(self, project: str, name: str) -> Repository | None:
        return self._repository(project, name)

    def ensure_repository(
        self, project: str, name: str, strategy: RepoStrategy | None = None
    ) -> Repository | None:
        strategy = strategy or RepoStrategy()
        if name in self.fail_repos:
            raise AdoApiError("repository create failed", status=403)
        self.events.append(f"ensure:{name}")
        if name in self.missing_repos:
            if not strategy.create_if_missing:
                if strategy.fail_if_missing:
                    raise MissingRepositoryError(project, name)
                return None
        elif strategy.skip_if_exists:
            return None
        return self._repository(project, name)

    def list_open_pull_requests(self, project: str, repo_id: str) -> list[PullRequest]:
        _ = project, repo_id
        return [
            PullRequest(
                pull_request_id=index,
                title=f"old {index}",
                status="active",
                source_ref=f"refs/heads/feature/old-{index}",
                target_ref="refs/heads/main",
                is_draft=False,
                created_at=_CREATED,
            )
            for index in range(self.open_prs)
        ]

    def create_pull_request(
        self,
        project: str,
        repo_id: str,
        *,
        source_branch: str,
        target_branch: str,
        title: str,
        description: str,
        is_draft: bool = False,
    ) -> PullRequest:
        _ = project, repo_id, description
        if source_branch in self.fail_create_for:
            raise AdoApiError("create failed", status=400)
        self.next_pr_id += 1
        self.events.append(f"create_pr:{source_branch}")
        return PullRequest(
            pull_request_id=self.next_pr_id,
            title=title,
            status="active",
            source_ref=f"refs/heads/{source_branch}",
            target_ref=f"refs/heads/{target_branch}",
            is_draft=is_draft,
            created_at=_CREATED,
        )

    def publish_draft(self, project: str, repo_id: str, pr_id: int) -> None:
        _ = project, repo_id
        self.events.append(f"publish:{pr_id}")
        self.published.append(pr_id)

    def abandon_pull_request(self, project: str, repo_id: str, pr_id: int) -> None:
        _ = project, repo_id
        self.events.append(f"abandon:{pr_id}")
        self.abandoned.append(pr_id)

    def resolve_identity(self, email: str) -> str:
        self.events.append(f"identity:{email}")
        if email in self.unknown_identities:
            raise AdoApiError(f"Identity not found for {email}", status=404)
        return f"id-{email}"

    def add_reviewer(self, project: str, repo_id: str, pr_id: int, reviewer_id: str) -> None:
        _ = project, repo_id
        self.events.append(f"{self.label}:reviewer:{pr_id}:{reviewer_id}")

    def cast_vote(
        self, project: str, repo_id: str, pr_id: int, reviewer_id: str, vote: int
    ) -> None:
        _ = project, repo_id
        self.events.append(f"{self.label}:vote:{pr_id}:{reviewer_id}:{vote}")

    def add_comment(self, project: str, repo_id: str, pr_id: int, content: str) -> None:
        _ = project, repo_id, content
        self.events.append(f"{self.label}:comment:{pr_id}")


class FakeWorkspaceGit:
    def __init__(self, events: list[str], tmp_path: Path) -> None:
        self.events = events
        self.tmp_path = tmp_path
        self.remote_heads: dict[str, dict[str, str]] = {}
        self.push_calls: list[tuple[str, tuple[str, ...], bool]] = []
        self.workspace_alive = False

    @contextmanager
    def materialize(self, planned: PlannedRepo) -> Iterator[LocalWorkspace]:
        self.events.append(f"materialize:{planned.name}")
        self.workspace_alive = True
        try:
            yield LocalWorkspace(path=self.tmp_path, branches_present=planned.branch_names)
        finally:
            self.workspace_alive = False
            self.events.append(f"workspace_removed:{planned.name}")

    def list_remote_heads(self, remote_url: str, credential: str) -> dict[str, str]:
        assert credential == "pat"
        return dict(self.remote_heads.get(remote_url, {}))

    def push_branches(
        self,
        workspace: LocalWorkspace,
        remote_url: str,
        credential: str,
        branches: Sequence[str],
        *,
        include_main: bool,
    ) -> None:
        _ = workspace, credential
        assert self.workspace_alive
        self.events.append(f"push:{remote_url}")
        self.push_calls.append((remote_url, tuple(branches), include_main))

    def add_follow_up_commit(
        self,
        workspace: LocalWorkspace,
        branch: str,
        commit: PlannedCommit,
        remote_url: str,
        credential: str,
    ) -> str:
        _ = workspace, commit, remote_url, credential
        assert self.workspace_alive
        self.events.append(f"follow_up:{branch}")
        return "f00d"


class FakeOrchestrator:
    def __init__(self, events: list[str], *, succeed: bool = True) -> None:
        self.events = events
        self.succeed = succeed
        self.handles: list[PullRequestHandle] = []

    def complete_with_resolution(self, handle: PullRequestHandle, credential: str) -> bool:
        assert credential == "pat"
        self.events.append(f"complete:{handle.pull_request_id}")
        self.handles.append(handle)
        return self.succeed


def _planned_repo(name: str, prs: Sequence[tuple[str, PlannedOutcome, bool, int]]) -> PlannedRepo:
    branches = tuple(
        PlannedBranch(name=branch, commits=(PlannedCommit(message=f"{branch}: commit 1", files=()),))
        for branch, _, _, _ in prs
    )
    pull_requests = tuple(
        PlannedPullRequest(
            source_branch=branch,
            title=f"[run-1] {branch}",
            description="Seeded PR for testing. Run ID: run-1",
            is_draft=is_draft,
            outcome=outcome,
            follow_up_commits=tuple(
                PlannedCommit(message=f"{branch}: follow-up {n}", files=())
                for n in range(1, follow_ups + 1)
            ),
        )
        for branch, outcome, is_draft, follow_ups in prs
    )
    return PlannedRepo(project="Platform", name=name, branches=branches, pull_requests=pull_requests)


_ALICE = ResolvedUser(alias="alice", email="alice@example.com", credential="pat")
_BOB = ResolvedUser(alias="bob", email="bob@example.com", credential="pat-bob")
_CAROL = ResolvedUser(alias="carol", email="carol@example.com", credential="pat-carol")


def _config(
    tmp_path: Path,
    names: Sequence[str],
    *,
    users: tuple[ResolvedUser, ...] = (_ALICE,),
    repo_strategy: RepoStrategy | None = None,
) -> AppConfig:
    return AppConfig(
        runtime=RuntimeConfig(base_dir=tmp_path, seed=1),
        organization="contoso",
        users=users,
        repos=tuple(RepoConfig(repo_id=name, project="Platform", name=name) for name in names),
        repo_strategy=repo_strategy or RepoStrategy(),
    )


def _runner(
    tmp_path: Path,
    plan_repos: Sequence[PlannedRepo],
    gateway: FakeGateway,
    git: FakeWorkspaceGit,
    orchestrator: FakeOrchestrator,
    *,
    users: tuple[ResolvedUser, ...] = (_ALICE,),
    repo_strategy: RepoStrategy | None = None,
    user_gateways: dict[str, FakeGateway] | None = None,
) -> SeedRunner:
    return SeedRunner(
        _config(
            tmp_path,
            [repo.name for repo in plan_repos],
            users=users,
            repo_strategy=repo_strategy,
        ),
        SeedPlan(run_id="run-1", organization="contoso", repos=tuple(plan_repos)),
        gateway=cast(AdoGateway, gateway),
        git_manager=cast(GitWorkspaceManager, git),
        orchestrator=cast(CompletionOrchestrator, orchestrator),
        credential="pat",
        user_gateways={
            email: cast(AdoGateway, fake) for email, fake in (user_gateways or {}).items()
        },
    )


def test_run_processes_outcomes_before_workspace_removal(tmp_path: Path) -> None:
    events: list[str] = []
    gateway = FakeGateway(events)
    git = FakeWorkspaceGit(events, tmp_path)
    orchestrator = FakeOrchestrator(events)
    repo = _planned_repo(
        "web",
        [
            ("feature/run-1-0", "complete", True, 2),
            ("bugfix/run-1-1", "abandon", False, 0),
            ("chore/run-1-2", "leave_open", False, 0),
        ],
    )

    summary = _runner(tmp_path, [repo], gateway, git, orchestrator).run(
        cleanup_enabled=False, cleanup_threshold=50
    )

    assert summary.fatal_failure is None
    assert summary.end_time is not None
    result = summary.repos[0]
    assert result.failures == []
    assert result.repository_id == "id-web"
    assert result.branches_created == 3
    assert [pr.outcome_applied for pr in result.pull_requests] == [True, True, True]
    assert result.pull_requests[0].follow_up_commits_added == 2
    assert events == [
        "ensure:web",
        "materialize:web",
        "push:https://fake/web",
        "create_pr:feature/run-1-0",
        "follow_up:feature/run-1-0",
        "follow_up:feature/run-1-0",
        "publish:101",
        "complete:101",
        "create_pr:bugfix/run-1-1",
        "abandon:102",
        "create_pr:chore/run-1-2",
        "workspace_removed:web",
    ]
    assert git.push_calls == [
        ("https://fake/web", ("feature/run-1-0", "bugfix/run-1-1", "chore/run-1-2"), True)
    ]
    handle = orchestrator.handles[0]
    assert handle.source_branch == "feature/run-1-0"
    assert handle.target_branch == "main"
    assert handle.remote_url == "https://fake/web"


def test_existing_main_is_not_pushed_again(tmp_path: Path) -> None:
    events: list[str] = []
    git = FakeWorkspaceGit(events, tmp_path)
    git.remote_heads["https://fake/web"] = {"main": "abc"}
    repo = _planned_repo("web", [("feature/run-1-0", "leave_open", False, 0)])

    _runner(tmp_path, [repo], FakeGateway(events), git, FakeOrchestrator(events)).run(
        cleanup_enabled=False
    )

    assert git.push_calls == [("https://fake/web", ("feature/run-1-0",), False)]


def test_collision_is_fatal_for_whole_run(tmp_path: Path) -> None:
    events: list[str] = []
    git = FakeWorkspaceGit(events, tmp_path)
    git.remote_heads["https://fake/web"] = {"main": "a", "feature/run-1-0": "b"}
    first = _planned_repo("web", [("feature/run-1-0", "complete", False, 0)])
    second = _planned_repo("api", [("feature/run-1-0", "complete", False, 0)])

    summary = _runner(
        tmp_path, [first, second], FakeGateway(events), git, FakeOrchestrator(events)
    ).run(cleanup_enabled=False)

    assert summary.fatal_failure is not None
    assert summary.fatal_failure.phase == "collision-check"
    assert "FATAL: Collision detected" in summary.fatal_failure.error
    assert [repo.name for repo in summary.repos] == ["web"]
    assert summary.repos[0].failures[0].is_fatal is True
    assert git.push_calls == []
    assert events[-1] == "workspace_removed:web"
    assert "ensure:api" not in events


def test_pr_failures_do_not_abort_siblings(tmp_path: Path) -> None:
    events: list[str] = []
    gateway = FakeGateway(events)
    gateway.fail_create_for.add("feature/run-1-0")
    orchestrator = FakeOrchestrator(events, succeed=False)
    repo = _planned_repo(
        "web",
        [("feature/run-1-0", "complete", False, 0), ("bugfix/run-1-1", "complete", False, 0)],
    )

    summary = _runner(
        tmp_path, [repo], gateway, FakeWorkspaceGit(events, tmp_path), orchestrator
    ).run(cleanup_enabled=False)

    result = summary.repos[0]
    assert summary.fatal_failure is None
    assert [pr.source_branch for pr in result.pull_requests] == ["bugfix/run-1-1"]
    assert result.pull_requests[0].outcome_applied is False
    assert [(failure.phase, failure.is_fatal) for failure in result.failures] == [
        ("create-pr", False),
        ("apply-outcome", False),
    ]
    assert result.failures[1].pull_request_id == 101


def test_repository_failure_is_recorded_and_next_repo_runs(tmp_path: Path) -> None:
    events: list[str] = []
    gateway = FakeGateway(events)
    gateway.fail_repos.add("web")
    first = _planned_repo("web", [("feature/run-1-0", "leave_open", False, 0)])
    second = _planned_repo("api", [("feature/run-1-0", "leave_open", False, 0)])

    summary = _runner(
        tmp_path, [first, second], gateway, FakeWorkspaceGit(events, tmp_path), FakeOrchestrator(events)
    ).run(cleanup_enabled=False)

    assert summary.fatal_failure is None
    assert summary.repos[0].failures[0].phase == "repo-creation"
    assert summary.repos[0].failures[0].is_fatal is True
    assert summary.repos[1].failures == []
    assert "materialize:api" in events
    assert "materialize:web" not in events


def test_cleanup_mode_drains_backlog_instead_of_seeding(tmp_path: Path) -> None:
    events: list[str] = []
    gateway = FakeGateway(events, open_prs=5)
    orchestrator = FakeOrchestrator(events)
    repo = _planned_repo("web", [("feature/run-1-0", "complete", False, 0)])

    summary = _runner(
        tmp_path, [repo], gateway, FakeWorkspaceGit(events, tmp_path), orchestrator
    ).run(cleanup_enabled=True, cleanup_threshold=3)

    assert summary.cleanup_mode is True
    assert summary.cleanup_stats is not None
    assert summary.cleanup_stats.prs_completed == 2
    assert summary.cleanup_stats.open_before == 5
    assert summary.repos == []
    assert "materialize:web" not in events


def test_cleanup_not_triggered_at_threshold(tmp_path: Path) -> None:
    events: list[str] = []
    gateway = FakeGateway(events, open_prs=3)
    repo = _planned_repo("web", [("feature/run-1-0", "leave_open", False, 0)])

    summary = _runner(
        tmp_path, [repo], gateway, FakeWorkspaceGit(events, tmp_path), FakeOrchestrator(events)
    ).run(cleanup_enabled=True, cleanup_threshold=3)

    assert summary.cleanup_mode is False
    assert "materialize:web" in events


def test_cleanup_check_failure_is_recorded_and_seeding_proceeds(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    events: list[str] = []
    gateway = FakeGateway(events)

    def broken(project: str, repo_id: str) -> list[PullRequest]:
        raise AdoApiError(f"cannot list {project}/{repo_id}", status=None)

    monkeypatch.setattr(gateway, "list_open_pull_requests", broken)
    repo = _planned_repo("web", [("feature/run-1-0", "leave_open", False, 0)])

    summary = _runner(
        tmp_path, [repo], gateway, FakeWorkspaceGit(events, tmp_path), FakeOrchestrator(events)
    ).run(cleanup_enabled=True, cleanup_threshold=0)

    assert summary.fatal_failure is None
    assert summary.cleanup_mode is False
    assert [(failure.phase, failure.is_fatal) for failure in summary.failures] == [
        ("cleanup", False)
    ]
    assert "cannot list Platform/id-web" in summary.failures[0].error
    assert summary.failure_count == 1
    assert [result.name for result in summary.repos] == ["web"]
    assert "create_pr:feature/run-1-0" in events


def _with_review_activity(
    repo: PlannedRepo,
    reviewers: tuple[PlannedReviewer, ...],
    comments: tuple[PlannedComment, ...],
) -> PlannedRepo:
    return replace(
        repo,
        pull_requests=tuple(
            replace(pr, creator_email=_ALICE.email, reviewers=reviewers, comments=comments)
            for pr in repo.pull_requests
        ),
    )


def test_reviewers_vote_and_comment_with_their_own_credentials(tmp_path: Path) -> None:
    events: list[str] = []
    primary = FakeGateway(events)
    bob = FakeGateway(events, label="bob")
    carol = FakeGateway(events, label="carol")
    repo = _with_review_activity(
        _planned_repo(
            "web",
            [("feature/run-1-0", "leave_open", False, 0), ("bugfix/run-1-1", "leave_open", False, 0)],
        ),
        reviewers=(
            PlannedReviewer(email=_BOB.email, vote="approve"),
            PlannedReviewer(email=_CAROL.email, vote="reject"),
        ),
        comments=(PlannedComment(author_email=_CAROL.email, content="Nice cleanup."),),
    )

    summary = _runner(
        tmp_path,
        [repo],
        primary,
        FakeWorkspaceGit(events, tmp_path),
        FakeOrchestrator(events),
        users=(_ALICE, _BOB, _CAROL),
        user_gateways={_ALICE.email: primary, _BOB.email: bob, _CAROL.email: carol},
    ).run(cleanup_enabled=False)

    result = summary.repos[0]
    assert result.failures == []
    assert events[3:-1] == [
        "create_pr:feature/run-1-0",
        "identity:bob@example.com",
        "primary:reviewer:101:id-bob@example.com",
        "bob:vote:101:id-bob@example.com:10",
        "identity:carol@example.com",
        "primary:reviewer:101:id-carol@example.com",
        "carol:vote:101:id-carol@example.com:-10",
        "carol:comment:101",
        "create_pr:bugfix/run-1-1",
        "primary:reviewer:102:id-bob@example.com",
        "bob:vote:102:id-bob@example.com:10",
        "primary:reviewer:102:id-carol@example.com",
        "carol:vote:102:id-carol@example.com:-10",
        "carol:comment:102",
    ]
    first = result.pull_requests[0]
    assert first.creator_email == _ALICE.email
    assert first.reviewers == [
        ReviewerResult(email=_BOB.email, vote="approve"),
        ReviewerResult(email=_CAROL.email, vote="reject"),
    ]
    assert first.comments_added == 1


def test_reviewer_and_comment_failures_do_not_block_outcome(tmp_path: Path) -> None:
    events: list[str] = []
    primary = FakeGateway(events)
    primary.unknown_identities.add("ghost@example.com")
    bob = FakeGateway(events, label="bob")
    repo = _with_review_activity(
        _planned_repo("web", [("feature/run-1-0", "abandon", False, 0)]),
        reviewers=(
            PlannedReviewer(email="ghost@example.com", vote="approve"),
            PlannedReviewer(email=_BOB.email, vote="approve_with_suggestions"),
        ),
        comments=(
            PlannedComment(author_email="ghost@example.com", content="Nice cleanup."),
            PlannedComment(author_email=_BOB.email, content="Nice cleanup."),
        ),
    )

    summary = _runner(
        tmp_path,
        [repo],
        primary,
        FakeWorkspaceGit(events, tmp_path),
        FakeOrchestrator(events),
        users=(_ALICE, _BOB),
        user_gateways={_ALICE.email: primary, _BOB.email: bob},
    ).run(cleanup_enabled=False)

    result = summary.repos[0]
    assert summary.fatal_failure is None
    assert [
        (failure.phase, failure.is_fatal, failure.pull_request_id) for failure in result.failures
    ] == [
        ("add-reviewer", False, 101),
        ("add-comment", False, 101),
    ]
    assert "Identity not found" in result.failures[0].error
    assert "No credential configured for user ghost@example.com" in result.failures[1].error
    pr = result.pull_requests[0]
    assert pr.reviewers == [ReviewerResult(email=_BOB.email, vote="approve_with_suggestions")]
    assert pr.comments_added == 1
    assert pr.outcome_applied is True
    assert "bob:vote:101:id-bob@example.com:5" in events
    assert "abandon:101" in events


def test_skip_if_exists_skips_existing_repo_and_creates_missing_one(tmp_path: Path) -> None:
    events: list[str] = []
    gateway = FakeGateway(events)
    gateway.missing_repos.add("api")
    first = _planned_repo("web", [("feature/run-1-0", "leave_open", False, 0)])
    second = _planned_repo("api", [("feature/run-1-0", "leave_open", False, 0)])

    summary = _runner(
        tmp_path,
        [first, second],
        gateway,
        FakeWorkspaceGit(events, tmp_path),
        FakeOrchestrator(events),
        repo_strategy=RepoStrategy(skip_if_exists=True),
    ).run(cleanup_enabled=False)

    web, api = summary.repos
    assert web.skipped is True
    assert web.failures == []
    assert web.repository_id is None
    assert api.skipped is False
    assert api.repository_id == "id-api"
    assert "materialize:web" not in events
    assert "materialize:api" in events


def test_fail_if_missing_records_fatal_repo_failure_and_continues(tmp_path: Path) -> None:
    events: list[str] = []
    gateway = FakeGateway(events)
    gateway.missing_repos.add("web")
    first = _planned_repo("web", [("feature/run-1-0", "leave_open", False, 0)])
    second = _planned_repo("api", [("feature/run-1-0", "leave_open", False, 0)])

    summary = _runner(
        tmp_path,
        [first, second],
        gateway,
        FakeWorkspaceGit(events, tmp_path),
        FakeOrchestrator(events),
        repo_strategy=RepoStrategy(create_if_missing=False, fail_if_missing=True),
    ).run(cleanup_enabled=False)

    assert summary.fatal_failure is None
    web, api = summary.repos
    assert [(failure.phase, failure.is_fatal) for failure in web.failures] == [
        ("repo-creation", True)
    ]
    assert web.failures[0].error.startswith("FATAL: Repository 'web' does not exist")
    assert web.skipped is False
    assert api.failures == []
    assert "materialize:api" in events


def test_missing_repo_without_create_or_fail_is_skipped(tmp_path: Path) -> None:
    events: list[str] = []
    gateway = FakeGateway(events)
    gateway.missing_repos.add("web")
    repo = _planned_repo("web", [("feature/run-1-0", "leave_open", False, 0)])

    summary = _runner(
        tmp_path,
        [repo],
        gateway,
        FakeWorkspaceGit(events, tmp_path),
        FakeOrchestrator(events),
        repo_strategy=RepoStrategy(create_if_missing=False),
    ).run(cleanup_enabled=False)

    assert summary.repos[0].skipped is True
    assert summary.repos[0].failures == []
    assert events == ["ensure:web"]
