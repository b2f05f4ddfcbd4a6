from __future__ import annotations

import logging
import time

from prseed.ado_gateway import AdoGateway
from prseed.models import MergeEvaluation, PullRequestHandle
from prseed.observability import log_event, log_warning_event


LOGGER = logging.getLogger("prseed.merge_poller")
DEFAULT_POLL_INTERVAL_SECONDS = 2.0


def wait_for_evaluation(
    gateway: AdoGateway,
    handle: PullRequestHandle,
    max_wait_seconds: float,
    *,
    interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
    expected_commit: str | None = None,
) -> MergeEvaluation | None:
    """Poll until the merge status leaves ``unset``/``queued`` or the deadline passes.

    With ``expected_commit``, a settled evaluation still counts as pending until it
    reports that merge source commit, so a read taken before a push landed is skipped.
    Returns ``None`` on timeout. Lookup errors are logged and treated as "still pending".
    """
    deadline = time.monotonic() + max_wait_seconds
    polls = 0
    while True:
        polls += 1
        try:
            evaluation = gateway.get_merge_evaluation(handle)
        except Exception as exc:  # noqa: BLE001
            log_warning_event(
                LOGGER,
                "merge_poll_error",
                pr_id=handle.pull_request_id,
                error_type=type(exc).__name__,
            )
        else:
            stale = expected_commit is not None and evaluation.merge_commit_id != expected_commit
            if not evaluation.is_pending and not stale:
                log_event(
                    LOGGER,
                    "merge_evaluation_ready",
                    pr_id=handle.pull_request_id,
                    merge_status=evaluation.status,
                    polls=polls,
                )
                return evaluation
        if time.monotonic() >= deadline:
            break
        time.sleep(interval_seconds)

    log_warning_event(
        LOGGER,
        "merge_evaluation_timeout",
        pr_id=handle.pull_request_id,
        waited_seconds=max_wait_seconds,
        polls=polls,
    )
    return None


def wait_for_completion(
    gateway: AdoGateway,
    handle: PullRequestHandle,
    max_wait_seconds: float,
    *,
    interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
) -> bool:
    deadline = time.monotonic() + max_wait_seconds
    while True:
        try:
            details = gateway.get_pull_request_details(
                handle.project, handle.repository_id, handle.pull_request_id
            )
        except Exception as exc:  # noqa: BLE001
            log_warning_event(
                LOGGER,
                "merge_poll_error",
                pr_id=handle.pull_request_id,
                error_type=type(exc).__name__,
            )
        else:
            if details.status == "completed":
                return True
        if time.monotonic() >= deadline:
            return False
        time.sleep(interval_seconds)
