from __future__ import annotations

from collections.abc import Sequence
import logging

from prseed.ado_gateway import AdoGateway
from prseed.completion import CompletionOrchestrator
from prseed.config import RepoConfig
from prseed.models import (
    CleanupBacklogEntry,
    CleanupStats,
    PullRequestHandle,
    Repository,
    branch_from_ref,
)
from prseed.observability import log_event, log_warning_event


LOGGER = logging.getLogger("prseed.cleanup")


def resolve_targets(gateway: AdoGateway, repos: Sequence[RepoConfig]) -> list[Repository]:
    """Look up the configured repositories, skipping any that do not exist remotely."""
    targets: list[Repository] = []
    for repo in repos:
        repository = gateway.get_repository(repo.project, repo.name)
        if repository is None:
            log_event(LOGGER, "cleanup_target_missing", repo=repo.full_name)
            continue
        targets.append(repository)
    return targets


class CleanupPrioritizer:
    """Drain the oldest open pull requests across a fixed set of repositories."""

    def __init__(
        self,
        gateway: AdoGateway,
        orchestrator: CompletionOrchestrator,
        targets: Sequence[Repository],
        credential: str,
    ) -> None:
        self._gateway = gateway
        self._orchestrator = orchestrator
        self._targets = tuple(targets)
        self._credential = credential

    def count_open(self) -> int:
        return len(self.collect_backlog())

    def collect_backlog(self) -> list[CleanupBacklogEntry]:
        entries: list[CleanupBacklogEntry] = []
        for repository in self._targets:
            for pull_request in self._gateway.list_open_pull_requests(
                repository.project, repository.repository_id
            ):
                handle = PullRequestHandle(
                    project=repository.project,
                    repository_id=repository.repository_id,
                    pull_request_id=pull_request.pull_request_id,
                    source_branch=branch_from_ref(pull_request.source_ref),
                    target_branch=branch_from_ref(pull_request.target_ref),
                    remote_url=repository.remote_url,
                )
                entries.append(
                    CleanupBacklogEntry(
                        handle=handle,
                        is_draft=pull_request.is_draft,
                        created_at=pull_request.created_at,
                    )
                )
        entries.sort(key=lambda entry: (entry.created_at, entry.handle.pull_request_id))
        return entries

    def run_cleanup(self, target_count: int) -> CleanupStats:
        """Complete up to ``target_count`` of the oldest non-draft PRs.

        Drafts encountered on the way are published and left for a later pass. A
        failure on one PR is counted and never stops the pass.
        """
        backlog = self.collect_backlog()
        log_event(
            LOGGER,
            "cleanup_started",
            open_before=len(backlog),
            target_count=target_count,
        )
        drafts_published = 0
        prs_completed = 0
        prs_failed = 0
        for entry in backlog:
            if prs_completed >= target_count:
                break
            handle = entry.handle
            try:
                if entry.is_draft:
                    self._gateway.publish_draft(
                        handle.project, handle.repository_id, handle.pull_request_id
                    )
                    drafts_published += 1
                    continue
                if self._orchestrator.complete_with_resolution(handle, self._credential):
                    prs_completed += 1
                else:
                    prs_failed += 1
            except Exception as exc:  # noqa: BLE001
                prs_failed += 1
                log_warning_event(
                    LOGGER,
                    "cleanup_pr_failed",
                    pr_id=handle.pull_request_id,
                    repository_id=handle.repository_id,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )

        stats = CleanupStats(
            drafts_published=drafts_published,
            prs_completed=prs_completed,
            prs_failed=prs_failed,
            open_before=len(backlog),
            open_after=self.count_open(),
        )
        log_event(
            LOGGER,
            "cleanup_finished",
            drafts_published=stats.drafts_published,
            prs_completed=stats.prs_completed,
            prs_failed=stats.prs_failed,
            open_before=stats.open_before,
            open_after=stats.open_after,
        )
        return stats
