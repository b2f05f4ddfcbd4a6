from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime, timezone
import logging

from prseed.ado_gateway import AdoGateway
from prseed.cleanup import CleanupPrioritizer, resolve_targets
from prseed.collision import BranchCollisionError, ensure_no_collisions
from prseed.completion import CompletionOrchestrator
from prseed.config import AppConfig
from prseed.git_ops import GitWorkspaceManager
from prseed.models import (
    VOTE_VALUES,
    LocalWorkspace,
    PlannedComment,
    PlannedPullRequest,
    PlannedRepo,
    PlannedReviewer,
    PullRequestHandle,
    Repository,
    SeedPlan,
)
from prseed.observability import log_event, log_warning_event
from prseed.summary import (
    FailureRecord,
    PullRequestResult,
    RepoResult,
    ReviewerResult,
    SeedSummary,
)


LOGGER = logging.getLogger("prseed.runner")


class SeedRunner:
    def __init__(
        self,
        config: AppConfig,
        plan: SeedPlan,
        *,
        gateway: AdoGateway,
        git_manager: GitWorkspaceManager,
        orchestrator: CompletionOrchestrator,
        credential: str,
        user_gateways: Mapping[str, AdoGateway] | None = None,
    ) -> None:
        self._config = config
        self._plan = plan
        self._gateway = gateway
        self._git = git_manager
        self._orchestrator = orchestrator
        self._credential = credential
        # Keyed by user email; votes and comments are made with that user's own credential.
        self._user_gateways = dict(user_gateways or {})
        self._identities: dict[str, str] = {}

    def run(self, *, cleanup_enabled: bool = True, cleanup_threshold: int = 50) -> SeedSummary:
        """Seed every planned repository, or drain the backlog when it is over threshold.

        A branch collision is fatal for the whole run. Every other failure is recorded
        against its repository (or on the summary, for the backlog check) and
        processing moves on.
        """
        summary = SeedSummary(
            run_id=self._plan.run_id,
            organization=self._plan.organization,
            start_time=datetime.now(timezone.utc),
        )
        log_event(
            LOGGER,
            "run_started",
            run_id=self._plan.run_id,
            repos=len(self._plan.repos),
            cleanup_enabled=cleanup_enabled,
        )

        if cleanup_enabled and self._run_cleanup_if_needed(summary, cleanup_threshold):
            return self._finish(summary)

        for planned in self._plan.repos:
            result = RepoResult(project=planned.project, name=planned.name)
            summary.repos.append(result)
            try:
                self._process_repo(planned, result)
            except BranchCollisionError as exc:
                summary.fatal_failure = FailureRecord(
                    phase="collision-check", error=str(exc), is_fatal=True
                )
                break
        return self._finish(summary)

    def build_cleanup_prioritizer(self) -> CleanupPrioritizer:
        targets = resolve_targets(self._gateway, self._config.repos)
        return CleanupPrioritizer(self._gateway, self._orchestrator, targets, self._credential)

    def _run_cleanup_if_needed(self, summary: SeedSummary, threshold: int) -> bool:
        try:
            prioritizer = self.build_cleanup_prioritizer()
            open_count = prioritizer.count_open()
        except Exception as exc:  # noqa: BLE001
            # Without a backlog count there is nothing to drain; seeding goes ahead.
            log_warning_event(LOGGER, "cleanup_check_failed", error_type=type(exc).__name__)
            summary.failures.append(FailureRecord(phase="cleanup", error=str(exc), is_fatal=False))
            return False
        if open_count <= threshold:
            log_event(LOGGER, "cleanup_not_needed", open_count=open_count, threshold=threshold)
            return False
        log_event(
            LOGGER,
            "cleanup_mode_entered",
            open_count=open_count,
            threshold=threshold,
        )
        summary.cleanup_mode = True
        try:
            summary.cleanup_stats = prioritizer.run_cleanup(open_count - threshold)
        except Exception as exc:  # noqa: BLE001
            log_warning_event(LOGGER, "cleanup_failed", error_type=type(exc).__name__)
            summary.failures.append(FailureRecord(phase="cleanup", error=str(exc), is_fatal=False))
        return True

    def _process_repo(self, planned: PlannedRepo, result: RepoResult) -> None:
        phase = "repo-creation"
        try:
            repository = self._gateway.ensure_repository(
                planned.project, planned.name, self._config.repo_strategy
            )
            if repository is None:
                result.skipped = True
                log_event(LOGGER, "repo_skipped", repo=result.full_name)
                return
            result.repository_id = repository.repository_id
            phase = "workspace"
            with self._git.materialize(planned) as workspace:
                phase = "collision-check"
                ensure_no_collisions(
                    self._git, repository.remote_url, self._credential, planned.branch_names
                )
                phase = "push"
                remote_heads = self._git.list_remote_heads(repository.remote_url, self._credential)
                self._git.push_branches(
                    workspace,
                    repository.remote_url,
                    self._credential,
                    workspace.branches_present,
                    include_main="main" not in remote_heads,
                )
                result.branches_created = len(workspace.branches_present)
                # Follow-up pushes need the workspace, so every PR is handled before it is removed.
                for planned_pr in planned.pull_requests:
                    self._process_pull_request(planned_pr, repository, workspace, result)
        except BranchCollisionError as exc:
            result.failures.append(FailureRecord(phase=phase, error=str(exc), is_fatal=True))
            raise
        except Exception as exc:  # noqa: BLE001
            log_warning_event(
                LOGGER,
                "repo_episode_failed",
                repo=result.full_name,
                phase=phase,
                error_type=type(exc).__name__,
            )
            result.failures.append(FailureRecord(phase=phase, error=str(exc), is_fatal=True))
        finally:
            log_event(
                LOGGER,
                "repo_episode_finished",
                repo=result.full_name,
                branches=result.branches_created,
                pull_requests=len(result.pull_requests),
                failures=len(result.failures),
            )

    def _process_pull_request(
        self,
        planned: PlannedPullRequest,
        repository: Repository,
        workspace: LocalWorkspace,
        result: RepoResult,
    ) -> None:
        try:
            pull_request = self._gateway.create_pull_request(
                repository.project,
                repository.repository_id,
                source_branch=planned.source_branch,
                target_branch=planned.target_branch,
                title=planned.title,
                description=planned.description,
                is_draft=planned.is_draft,
            )
        except Exception as exc:  # noqa: BLE001
            self._record_pr_failure(result, "create-pr", exc, None)
            return

        pr_id = pull_request.pull_request_id
        pr_result = PullRequestResult(
            pull_request_id=pr_id,
            title=planned.title,
            source_branch=planned.source_branch,
            is_draft=planned.is_draft,
            outcome=planned.outcome,
            creator_email=planned.creator_email,
        )
        result.pull_requests.append(pr_result)

        for reviewer in planned.reviewers:
            try:
                self._add_reviewer(repository, pr_id, reviewer)
            except Exception as exc:  # noqa: BLE001
                self._record_pr_failure(result, "add-reviewer", exc, pr_id)
                continue
            pr_result.reviewers.append(ReviewerResult(email=reviewer.email, vote=reviewer.vote))

        for comment in planned.comments:
            try:
                self._add_comment(repository, pr_id, comment)
            except Exception as exc:  # noqa: BLE001
                self._record_pr_failure(result, "add-comment", exc, pr_id)
                continue
            pr_result.comments_added += 1

        for commit in planned.follow_up_commits:
            try:
                self._git.add_follow_up_commit(
                    workspace,
                    planned.source_branch,
                    commit,
                    repository.remote_url,
                    self._credential,
                )
            except Exception as exc:  # noqa: BLE001
                self._record_pr_failure(result, "follow-up-commit", exc, pr_id)
                break
            pr_result.follow_up_commits_added += 1

        handle = PullRequestHandle(
            project=repository.project,
            repository_id=repository.repository_id,
            pull_request_id=pr_id,
            source_branch=planned.source_branch,
            target_branch=planned.target_branch,
            remote_url=repository.remote_url,
        )
        try:
            pr_result.outcome_applied = self._apply_outcome(planned, handle)
        except Exception as exc:  # noqa: BLE001
            self._record_pr_failure(result, "apply-outcome", exc, pr_id)
            return
        if not pr_result.outcome_applied:
            result.failures.append(
                FailureRecord(
                    phase="apply-outcome",
                    error=f"Completion of pull request {pr_id} did not succeed",
                    is_fatal=False,
                    pull_request_id=pr_id,
                )
            )

    def _add_reviewer(self, repository: Repository, pr_id: int, reviewer: PlannedReviewer) -> None:
        reviewer_id = self._identity_for(reviewer.email)
        self._gateway.add_reviewer(repository.project, repository.repository_id, pr_id, reviewer_id)
        self._gateway_for(reviewer.email).cast_vote(
            repository.project,
            repository.repository_id,
            pr_id,
            reviewer_id,
            VOTE_VALUES[reviewer.vote],
        )

    def _add_comment(self, repository: Repository, pr_id: int, comment: PlannedComment) -> None:
        self._gateway_for(comment.author_email).add_comment(
            repository.project, repository.repository_id, pr_id, comment.content
        )

    def _identity_for(self, email: str) -> str:
        identity_id = self._identities.get(email)
        if identity_id is None:
            identity_id = self._gateway.resolve_identity(email)
            self._identities[email] = identity_id
        return identity_id

    def _gateway_for(self, email: str) -> AdoGateway:
        gateway = self._user_gateways.get(email)
        if gateway is None:
            raise RuntimeError(f"No credential configured for user {email}")
        return gateway

    def _apply_outcome(self, planned: PlannedPullRequest, handle: PullRequestHandle) -> bool:
        if planned.outcome == "abandon":
            self._gateway.abandon_pull_request(
                handle.project, handle.repository_id, handle.pull_request_id
            )
            return True
        if planned.outcome == "leave_open":
            return True
        if planned.is_draft:
            self._gateway.publish_draft(handle.project, handle.repository_id, handle.pull_request_id)
        return self._orchestrator.complete_with_resolution(handle, self._credential)

    def _record_pr_failure(
        self,
        result: RepoResult,
        phase: str,
        exc: Exception,
        pr_id: int | None,
    ) -> None:
        log_warning_event(
            LOGGER,
            "pr_step_failed",
            repo=result.full_name,
            phase=phase,
            pr_id=pr_id,
            error_type=type(exc).__name__,
        )
        result.failures.append(
            FailureRecord(phase=phase, error=str(exc), is_fatal=False, pull_request_id=pr_id)
        )

    def _finish(self, summary: SeedSummary) -> SeedSummary:
        summary.finish()
        log_event(
            LOGGER,
            "run_finished",
            run_id=summary.run_id,
            repos=len(summary.repos),
            failures=summary.failure_count,
            fatal=summary.fatal_failure is not None,
            cleanup_mode=summary.cleanup_mode,
        )
        return summary
