from __future__ import annotations

from datetime import datetime, timezone
import logging
import time
from typing import cast

import httpx

from prseed.config import RepoStrategy
from prseed.models import (
    BRANCH_REF_PREFIX,
    MergeEvaluation,
    MergeStatus,
    PullRequest,
    PullRequestDetails,
    PullRequestHandle,
    PullRequestStatus,
    Repository,
)
from prseed.observability import log_event, log_warning_event
from prseed.shell import redact_secrets


LOGGER = logging.getLogger("prseed.ado_gateway")
API_VERSION = "7.1"
IDENTITY_API_VERSION = "7.1-preview.1"
_MAX_TRANSPORT_RETRIES = 3
_INITIAL_BACKOFF_SECONDS = 1.0
_COMPLETION_RETRYABLE_STATUSES = frozenset({400, 409})
_MERGE_STATUS_MAP: dict[str, MergeStatus] = {
    "notset": "unset",
    "queued": "queued",
    "succeeded": "succeeded",
    "conflicts": "conflicts",
    "failure": "failure",
    "rejectedbypolicy": "failure",
}
_PR_STATUSES = frozenset({"active", "completed", "abandoned"})


class AdoApiError(RuntimeError):
    """Structured REST failure; ``status`` is ``None`` for transport failures."""

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status

    @property
    def retryable_for_completion(self) -> bool:
        # 409/400 on completion mean the remote state has not settled yet.
        return self.status in _COMPLETION_RETRYABLE_STATUSES


class MissingRepositoryError(RuntimeError):
    def __init__(self, project: str, name: str) -> None:
        super().__init__(
            f"FATAL: Repository {name!r} does not exist in project {project!r} "
            "and create_if_missing is false"
        )
        self.project = project
        self.name = name


class AdoGateway:
    def __init__(
        self,
        organization: str,
        credential: str,
        *,
        client: httpx.Client | None = None,
    ) -> None:
        self.organization = organization
        self._credential = credential
        self._client = client or httpx.Client(
            base_url=f"https://dev.azure.com/{organization}",
            auth=httpx.BasicAuth("", credential),
            headers={"Content-Type": "application/json"},
            timeout=httpx.Timeout(30.0),
        )

    def close(self) -> None:
        self._client.close()

    def get_repository(self, project: str, name: str) -> Repository | None:
        path = f"/{project}/_apis/git/repositories/{name}"
        try:
            payload = self._api_json("GET", path)
        except AdoApiError as exc:
            if exc.status == 404:
                log_event(LOGGER, "ado_read", endpoint="repository", project=project, found=False)
                return None
            raise
        repository = _parse_repository(payload, project=project)
        log_event(
            LOGGER,
            "ado_read",
            endpoint="repository",
            project=project,
            repository_id=repository.repository_id,
            found=True,
        )
        return repository

    def ensure_repository(
        self, project: str, name: str, strategy: RepoStrategy | None = None
    ) -> Repository | None:
        """Return the repository to seed, or ``None`` when the strategy says to skip it."""
        strategy = strategy or RepoStrategy()
        existing = self.get_repository(project, name)
        if existing is not None:
            if strategy.skip_if_exists:
                log_event(LOGGER, "ado_repository_skipped", project=project, name=name, exists=True)
                return None
            return existing
        if not strategy.create_if_missing:
            if strategy.fail_if_missing:
                raise MissingRepositoryError(project, name)
            log_event(LOGGER, "ado_repository_skipped", project=project, name=name, exists=False)
            return None
        project_payload = _as_object_dict(self._api_json("GET", f"/_apis/projects/{project}"))
        if project_payload is None:
            raise AdoApiError("Unexpected Azure DevOps response: expected object for project")
        project_id = _as_string(project_payload.get("id"))
        payload = self._api_json(
            "POST",
            f"/{project}/_apis/git/repositories",
            payload={"name": name, "project": {"id": project_id}},
        )
        repository = _parse_repository(payload, project=project)
        log_event(
            LOGGER,
            "ado_repository_created",
            project=project,
            name=name,
            repository_id=repository.repository_id,
        )
        return repository

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
        payload = self._api_json(
            "POST",
            f"/{project}/_apis/git/repositories/{repo_id}/pullrequests",
            payload={
                "sourceRefName": f"{BRANCH_REF_PREFIX}{source_branch}",
                "targetRefName": f"{BRANCH_REF_PREFIX}{target_branch}",
                "title": title,
                "description": description,
                "isDraft": is_draft,
            },
        )
        pull_request = _parse_pull_request(payload)
        log_event(
            LOGGER,
            "ado_pr_created",
            project=project,
            repository_id=repo_id,
            pr_id=pull_request.pull_request_id,
            source_branch=source_branch,
            is_draft=is_draft,
        )
        return pull_request

    def get_pull_request_details(
        self, project: str, repo_id: str, pr_id: int
    ) -> PullRequestDetails:
        payload = _as_object_dict(
            self._api_json("GET", f"/{project}/_apis/git/repositories/{repo_id}/pullrequests/{pr_id}")
        )
        if payload is None:
            raise AdoApiError("Unexpected Azure DevOps response: expected object for pull request")
        last_merge_source = _as_object_dict(payload.get("lastMergeSourceCommit"))
        commit_id = _as_string(last_merge_source.get("commitId")) if last_merge_source else ""
        details = PullRequestDetails(
            pull_request_id=_as_int(payload.get("pullRequestId", pr_id), field="pullRequestId"),
            status=_as_pr_status(payload.get("status")),
            merge_status=normalize_merge_status(payload.get("mergeStatus")),
            merge_commit_id=commit_id or None,
            source_ref=_as_string(payload.get("sourceRefName")),
            target_ref=_as_string(payload.get("targetRefName")),
            is_draft=payload.get("isDraft") is True,
        )
        log_event(
            LOGGER,
            "ado_read",
            endpoint="pull_request",
            pr_id=pr_id,
            status=details.status,
            merge_status=details.merge_status,
            has_commit=details.merge_commit_id is not None,
        )
        return details

    def get_merge_evaluation(self, handle: PullRequestHandle) -> MergeEvaluation:
        details = self.get_pull_request_details(
            handle.project, handle.repository_id, handle.pull_request_id
        )
        return details.evaluation

    def complete_pull_request(
        self,
        project: str,
        repo_id: str,
        pr_id: int,
        merge_commit_id: str,
        *,
        bypass_policy: bool,
        bypass_reason: str | None,
    ) -> None:
        if not merge_commit_id:
            raise ValueError("merge_commit_id must be a non-empty commit id")
        completion_options: dict[str, object] = {
            "deleteSourceBranch": False,
            "mergeStrategy": "squash",
            "bypassPolicy": bypass_policy,
        }
        if bypass_policy and bypass_reason:
            completion_options["bypassReason"] = bypass_reason
        self._api_json(
            "PATCH",
            f"/{project}/_apis/git/repositories/{repo_id}/pullrequests/{pr_id}",
            payload={
                "status": "completed",
                "lastMergeSourceCommit": {"commitId": merge_commit_id},
                "completionOptions": completion_options,
            },
        )
        log_event(
            LOGGER,
            "ado_pr_complete_requested",
            pr_id=pr_id,
            commit_id=merge_commit_id,
            bypass_policy=bypass_policy,
        )

    def abandon_pull_request(self, project: str, repo_id: str, pr_id: int) -> None:
        self._api_json(
            "PATCH",
            f"/{project}/_apis/git/repositories/{repo_id}/pullrequests/{pr_id}",
            payload={"status": "abandoned"},
        )
        log_event(LOGGER, "ado_pr_abandoned", pr_id=pr_id)

    def publish_draft(self, project: str, repo_id: str, pr_id: int) -> None:
        self._api_json(
            "PATCH",
            f"/{project}/_apis/git/repositories/{repo_id}/pullrequests/{pr_id}",
            payload={"isDraft": False},
        )
        log_event(LOGGER, "ado_pr_draft_published", pr_id=pr_id)

    def list_open_pull_requests(self, project: str, repo_id: str) -> list[PullRequest]:
        payload = _as_object_dict(
            self._api_json(
                "GET",
                f"/{project}/_apis/git/repositories/{repo_id}/pullrequests",
                params={"searchCriteria.status": "active", "$top": "1000"},
            )
        )
        values = payload.get("value") if payload is not None else None
        if not isinstance(values, list):
            raise AdoApiError("Unexpected Azure DevOps response: expected value list for pull requests")
        pull_requests = [_parse_pull_request(item) for item in values if isinstance(item, dict)]
        log_event(
            LOGGER,
            "ado_read",
            endpoint="open_pull_requests",
            repository_id=repo_id,
            count=len(pull_requests),
        )
        return pull_requests

    def resolve_identity(self, email: str) -> str:
        """Look up the identity id for ``email`` in the organization's identity service."""
        payload = _as_object_dict(
            self._api_json(
                "GET",
                f"https://vssps.dev.azure.com/{self.organization}/_apis/identities",
                params={"searchFilter": "General", "filterValue": email},
                api_version=IDENTITY_API_VERSION,
            )
        )
        values = payload.get("value") if payload is not None else None
        first = _as_object_dict(values[0]) if isinstance(values, list) and values else None
        identity_id = _as_string(first.get("id")) if first is not None else ""
        if not identity_id:
            raise AdoApiError(f"Identity not found for {email}", status=404)
        log_event(LOGGER, "ado_identity_resolved", email=email, identity_id=identity_id)
        return identity_id

    def add_reviewer(self, project: str, repo_id: str, pr_id: int, reviewer_id: str) -> None:
        self._put_reviewer_vote(project, repo_id, pr_id, reviewer_id, 0)
        log_event(LOGGER, "ado_reviewer_added", pr_id=pr_id, reviewer_id=reviewer_id)

    def cast_vote(
        self, project: str, repo_id: str, pr_id: int, reviewer_id: str, vote: int
    ) -> None:
        self._put_reviewer_vote(project, repo_id, pr_id, reviewer_id, vote)
        log_event(LOGGER, "ado_vote_cast", pr_id=pr_id, reviewer_id=reviewer_id, vote=vote)

    def add_comment(self, project: str, repo_id: str, pr_id: int, content: str) -> None:
        self._api_json(
            "POST",
            f"/{project}/_apis/git/repositories/{repo_id}/pullrequests/{pr_id}/threads",
            payload={
                "comments": [{"parentCommentId": 0, "content": content, "commentType": 1}],
                "status": 1,
            },
        )
        log_event(LOGGER, "ado_comment_added", pr_id=pr_id)

    def _put_reviewer_vote(
        self, project: str, repo_id: str, pr_id: int, reviewer_id: str, vote: int
    ) -> None:
        self._api_json(
            "PUT",
            f"/{project}/_apis/git/repositories/{repo_id}/pullrequests/{pr_id}/reviewers/{reviewer_id}",
            payload={"vote": vote},
        )

    def _api_json(
        self,
        method: str,
        path: str,
        *,
        payload: dict[str, object] | None = None,
        params: dict[str, str] | None = None,
        api_version: str = API_VERSION,
    ) -> object:
        query = {"api-version": api_version, **(params or {})}
        retry_count = 0
        while True:
            try:
                response = self._client.request(method, path, params=query, json=payload)
            except httpx.TransportError as exc:
                message = redact_secrets(f"{method} {path} failed: {exc}", (self._credential,))
                log_warning_event(
                    LOGGER,
                    "ado_request_failed",
                    method=method,
                    path=path,
                    error_type=type(exc).__name__,
                )
                raise AdoApiError(message) from exc

            status = response.status_code
            if (status == 429 or status >= 500) and retry_count < _MAX_TRANSPORT_RETRIES:
                backoff = _INITIAL_BACKOFF_SECONDS * (2**retry_count)
                retry_count += 1
                log_event(
                    LOGGER,
                    "ado_request_retry",
                    method=method,
                    path=path,
                    status=status,
                    retry=retry_count,
                    backoff_seconds=backoff,
                )
                time.sleep(backoff)
                continue

            if status < 200 or status >= 300:
                body = redact_secrets(response.text.strip(), (self._credential,)) or "<empty>"
                log_warning_event(
                    LOGGER,
                    "ado_request_failed",
                    method=method,
                    path=path,
                    status=status,
                )
                raise AdoApiError(
                    f"Azure DevOps {method} {path} failed with status {status}: {body[:500]}",
                    status=status,
                )
            if not response.content:
                return {}
            return response.json()


def normalize_merge_status(value: object) -> MergeStatus:
    if value is None:
        return "unset"
    normalized = _as_string(value).strip().lower()
    if not normalized:
        return "unset"
    return _MERGE_STATUS_MAP.get(normalized, "failure")


def _parse_repository(payload: object, *, project: str) -> Repository:
    payload_obj = _as_object_dict(payload)
    if payload_obj is None:
        raise AdoApiError("Unexpected Azure DevOps response: expected object for repository")
    return Repository(
        repository_id=_as_string(payload_obj.get("id")),
        name=_as_string(payload_obj.get("name")),
        project=project,
        remote_url=_as_string(payload_obj.get("remoteUrl")),
    )


def _parse_pull_request(payload: object) -> PullRequest:
    payload_obj = _as_object_dict(payload)
    if payload_obj is None:
        raise AdoApiError("Unexpected Azure DevOps response: expected object for pull request")
    return PullRequest(
        pull_request_id=_as_int(payload_obj.get("pullRequestId"), field="pullRequestId"),
        title=_as_string(payload_obj.get("title")),
        status=_as_pr_status(payload_obj.get("status")),
        source_ref=_as_string(payload_obj.get("sourceRefName")),
        target_ref=_as_string(payload_obj.get("targetRefName")),
        is_draft=payload_obj.get("isDraft") is True,
        created_at=_as_datetime(payload_obj.get("creationDate")),
    )


def _as_object_dict(value: object) -> dict[str, object] | None:
    if not isinstance(value, dict):
        return None
    if not all(isinstance(key, str) for key in value.keys()):
        return None
    return cast(dict[str, object], value)


def _as_string(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return str(value)


def _as_int(value: object, *, field: str) -> int:
    if isinstance(value, bool):
        raise AdoApiError(f"Unexpected Azure DevOps response type for {field}")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError as exc:
            raise AdoApiError(f"Unexpected Azure DevOps response value for {field}: {value}") from exc
    raise AdoApiError(f"Unexpected Azure DevOps response type for {field}")


def _as_pr_status(value: object) -> PullRequestStatus:
    normalized = _as_string(value).strip().lower()
    if normalized in _PR_STATUSES:
        return cast(PullRequestStatus, normalized)
    return "active"


def _as_datetime(value: object) -> datetime:
    raw = _as_string(value).strip()
    if not raw:
        return datetime.fromtimestamp(0, tz=timezone.utc)
    # Azure DevOps emits 7 fractional digits; fromisoformat accepts at most 6.
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    head, sep, tail = raw.partition(".")
    if sep:
        digits = ""
        rest = tail
        while rest and rest[0].isdigit():
            digits += rest[0]
            rest = rest[1:]
        raw = f"{head}.{digits[:6]}{rest}" if digits else f"{head}{rest}"
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError as exc:
        raise AdoApiError(f"Unexpected Azure DevOps timestamp: {value!r}") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
