from __future__ import annotations

import logging
import time

from prseed.ado_gateway import AdoApiError, AdoGateway
from prseed.config import CompletionConfig
from prseed.git_ops import GitWorkspaceManager
from prseed.merge_poller import wait_for_completion, wait_for_evaluation
from prseed.models import (
    CompletionAttemptState,
    MergeEvaluation,
    MergeStatus,
    PullRequestHandle,
)
from prseed.observability import log_event, log_warning_event


LOGGER = logging.getLogger("prseed.completion")


def needs_resolution(status: MergeStatus | None, state: CompletionAttemptState) -> bool:
    """Only a reported conflict that has not yet been repaired in this call needs git work."""
    return status == "conflicts" and not state.conflict_resolution_attempted


class CompletionOrchestrator:
    def __init__(
        self,
        gateway: AdoGateway,
        git_manager: GitWorkspaceManager,
        settings: CompletionConfig,
    ) -> None:
        self._gateway = gateway
        self._git = git_manager
        self._settings = settings

    def complete_with_resolution(
        self,
        handle: PullRequestHandle,
        credential: str,
        *,
        max_retries: int | None = None,
    ) -> bool:
        """Drive one pull request to ``completed``, repairing conflicts at most once.

        Returns ``False`` on a terminal API error or when every attempt was spent on
        retryable (409/400) failures. Never raises ``AdoApiError``.
        """
        attempts = self._settings.max_retries if max_retries is None else max_retries
        state = CompletionAttemptState()
        for attempt in range(1, attempts + 1):
            state.attempt_index = attempt
            try:
                if self._attempt(handle, credential, state):
                    log_event(
                        LOGGER,
                        "completion_succeeded",
                        pr_id=handle.pull_request_id,
                        attempt=attempt,
                        resolved_conflicts=state.conflict_resolution_attempted,
                    )
                    return True
                log_warning_event(
                    LOGGER,
                    "completion_unverified",
                    pr_id=handle.pull_request_id,
                    attempt=attempt,
                )
            except AdoApiError as exc:
                if not exc.retryable_for_completion:
                    log_warning_event(
                        LOGGER,
                        "completion_failed",
                        pr_id=handle.pull_request_id,
                        attempt=attempt,
                        status=exc.status,
                        error=str(exc),
                    )
                    return False
                log_warning_event(
                    LOGGER,
                    "completion_retryable_error",
                    pr_id=handle.pull_request_id,
                    attempt=attempt,
                    status=exc.status,
                )
            if attempt < attempts:
                time.sleep(self._settings.retry_backoff_seconds * attempt)

        log_warning_event(
            LOGGER,
            "completion_retries_exhausted",
            pr_id=handle.pull_request_id,
            attempts=attempts,
        )
        return False

    def _attempt(
        self,
        handle: PullRequestHandle,
        credential: str,
        state: CompletionAttemptState,
    ) -> bool:
        details = self._gateway.get_pull_request_details(
            handle.project, handle.repository_id, handle.pull_request_id
        )
        if details.status == "completed":
            return True
        evaluation = details.evaluation

        if state.attempt_index == 1 and evaluation.is_pending:
            evaluation = self._refresh(
                handle, evaluation, self._settings.initial_evaluation_wait_seconds
            )

        if needs_resolution(evaluation.status, state):
            result = self._git.resolve_conflicts(
                handle.remote_url,
                credential,
                handle.source_branch,
                handle.target_branch,
            )
            if result.resolved:
                state.conflict_resolution_attempted = True
                evaluation = self._refresh(
                    handle,
                    evaluation,
                    self._settings.post_resolution_wait_seconds,
                    expected_commit=result.new_commit_sha,
                )
            else:
                # Completion is still attempted; the bypass may accept the merge anyway.
                log_warning_event(
                    LOGGER,
                    "conflict_resolution_unsuccessful",
                    pr_id=handle.pull_request_id,
                    error=result.error,
                )

        commit_id = evaluation.merge_commit_id
        if not commit_id:
            raise AdoApiError(
                f"Pull request {handle.pull_request_id} has no merge source commit yet",
                status=409,
            )

        self._gateway.complete_pull_request(
            handle.project,
            handle.repository_id,
            handle.pull_request_id,
            commit_id,
            bypass_policy=True,
            bypass_reason=self._settings.bypass_reason,
        )
        log_event(
            LOGGER,
            "completion_requested",
            pr_id=handle.pull_request_id,
            commit_id=commit_id,
            attempt=state.attempt_index,
        )
        return wait_for_completion(
            self._gateway,
            handle,
            self._settings.completion_verify_seconds,
            interval_seconds=self._settings.poll_interval_seconds,
        )

    def _refresh(
        self,
        handle: PullRequestHandle,
        current: MergeEvaluation,
        max_wait_seconds: float,
        *,
        expected_commit: str | None = None,
    ) -> MergeEvaluation:
        refreshed = wait_for_evaluation(
            self._gateway,
            handle,
            max_wait_seconds,
            interval_seconds=self._settings.poll_interval_seconds,
            expected_commit=expected_commit,
        )
        return current if refreshed is None else refreshed
