from __future__ import annotations

from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from datetime import datetime, timezone
import logging
from pathlib import Path
import shutil
import stat
import tempfile
from urllib.parse import urlsplit, urlunsplit

from prseed.models import (
    BRANCH_REF_PREFIX,
    ConflictResolutionResult,
    LocalWorkspace,
    PlannedCommit,
    PlannedRepo,
)
from prseed.observability import log_event, log_warning_event
from prseed.shell import CommandError, redact_secrets, run


LOGGER = logging.getLogger("prseed.git_ops")
GIT_USERNAME = "seeder"
COMMITTER_EMAIL = "seeder@example.com"
COMMITTER_NAME = "ADO Seeder"
_CREDENTIAL_ENV_VAR = "PRSEED_GIT_CREDENTIAL"
_ASKPASS_SCRIPT = f'#!/bin/sh\nprintf \'%s\\n\' "${_CREDENTIAL_ENV_VAR}"\n'


def sanitize_remote_url(remote_url: str) -> str:
    """Return ``remote_url`` with username ``seeder`` and no embedded password."""
    parts = urlsplit(remote_url)
    if not parts.scheme or not parts.hostname:
        return remote_url
    host = parts.hostname
    if parts.port is not None:
        host = f"{host}:{parts.port}"
    return urlunsplit((parts.scheme, f"{GIT_USERNAME}@{host}", parts.path, parts.query, ""))


@contextmanager
def credential_env(credential: str) -> Iterator[dict[str, str]]:
    """Yield subprocess env vars that feed ``credential`` to git via a throwaway askpass helper.

    The helper script lives in a private temp dir and only reads the credential from its
    environment; the directory is removed on every exit path.
    """
    helper_dir = Path(tempfile.mkdtemp(prefix="prseed-askpass-"))
    try:
        helper = helper_dir / "askpass.sh"
        helper.write_text(_ASKPASS_SCRIPT, encoding="utf-8")
        helper.chmod(stat.S_IRUSR | stat.S_IWUSR | stat.S_IXUSR)
        yield {
            "GIT_ASKPASS": str(helper),
            _CREDENTIAL_ENV_VAR: credential,
            "GIT_TERMINAL_PROMPT": "0",
        }
    finally:
        shutil.rmtree(helper_dir, ignore_errors=True)


class GitWorkspaceManager:
    def __init__(self, *, clone_depth: int = 200, temp_root: Path | None = None) -> None:
        self.clone_depth = clone_depth
        self.temp_root = temp_root

    @contextmanager
    def materialize(self, planned: PlannedRepo) -> Iterator[LocalWorkspace]:
        """Build the planned branches in a fresh local repository.

        The directory exists for exactly the lifetime of the ``with`` block, so every
        push that depends on it (including follow-up commits) must run inside it.
        """
        path = Path(tempfile.mkdtemp(prefix=f"prseed-{_safe_prefix(planned.name)}-", dir=self.temp_root))
        log_event(LOGGER, "git_workspace_created", repo=planned.name, path=str(path))
        try:
            self._git(path, ["init"])
            self._configure_identity(path)
            (path / "README.md").write_text(
                f"# {planned.name}\n\nSeeded repository.\n", encoding="utf-8"
            )
            self._git(path, ["add", "-A"])
            self._git(path, ["commit", "-m", "Initial commit"])
            self._git(path, ["branch", "-M", "main"])

            created: list[str] = []
            for branch in planned.branches:
                self._git(path, ["checkout", "-b", branch.name, "main"])
                for commit in branch.commits:
                    self._write_commit(path, commit)
                created.append(branch.name)
                self._git(path, ["checkout", "main"])
            yield LocalWorkspace(path=path, branches_present=tuple(created))
        finally:
            shutil.rmtree(path, ignore_errors=True)
            log_event(LOGGER, "git_workspace_removed", repo=planned.name, path=str(path))

    def list_remote_heads(self, remote_url: str, credential: str) -> dict[str, str]:
        url = sanitize_remote_url(remote_url)
        with credential_env(credential) as env:
            output = run(
                ["git", "ls-remote", "--heads", url],
                env=env,
                redact=(credential,),
            )
        heads = _parse_ls_remote(output)
        log_event(LOGGER, "git_remote_heads_listed", count=len(heads))
        return heads

    def push_branches(
        self,
        workspace: LocalWorkspace,
        remote_url: str,
        credential: str,
        branches: Sequence[str],
        *,
        include_main: bool,
    ) -> None:
        url = sanitize_remote_url(remote_url)
        refs = (["main"] if include_main else []) + list(branches)
        with credential_env(credential) as env:
            for branch in refs:
                self._push(workspace.path, url, branch, env=env, credential=credential)

    def add_follow_up_commit(
        self,
        workspace: LocalWorkspace,
        branch: str,
        commit: PlannedCommit,
        remote_url: str,
        credential: str,
    ) -> str:
        if branch not in workspace.branches_present:
            raise ValueError(f"Branch {branch!r} is not present in workspace {workspace.path}")
        self._git(workspace.path, ["checkout", branch])
        try:
            self._write_commit(workspace.path, commit)
            sha = self.current_head_sha(workspace.path)
            with credential_env(credential) as env:
                self._push(
                    workspace.path,
                    sanitize_remote_url(remote_url),
                    branch,
                    env=env,
                    credential=credential,
                )
        finally:
            self._git(workspace.path, ["checkout", "main"])
        log_event(LOGGER, "git_follow_up_pushed", branch=branch, commit_sha=sha)
        return sha

    def resolve_conflicts(
        self,
        remote_url: str,
        credential: str,
        source_branch: str,
        target_branch: str = "main",
    ) -> ConflictResolutionResult:
        """Merge ``target_branch`` into ``source_branch`` favoring the source, then force-push.

        Success is reported only once the remote branch tip equals the locally computed
        commit; any git failure is returned as ``resolved=False`` rather than raised.
        """
        url = sanitize_remote_url(remote_url)
        work_dir = Path(tempfile.mkdtemp(prefix="prseed-resolve-", dir=self.temp_root))
        checkout = work_dir / "repo"
        log_event(
            LOGGER,
            "conflict_resolution_started",
            source_branch=source_branch,
            target_branch=target_branch,
        )
        try:
            with credential_env(credential) as env:
                run(
                    ["git", "clone", "--depth", str(self.clone_depth), url, str(checkout)],
                    cwd=work_dir,
                    env=env,
                    redact=(credential,),
                )
                self._configure_identity(checkout)
                for branch in (source_branch, target_branch):
                    self._git(
                        checkout,
                        [
                            "fetch",
                            "--depth",
                            str(self.clone_depth),
                            "origin",
                            f"+{BRANCH_REF_PREFIX}{branch}:refs/remotes/origin/{branch}",
                        ],
                        env=env,
                        credential=credential,
                    )
                self._git(
                    checkout, ["checkout", "-B", source_branch, f"origin/{source_branch}"]
                )
                self._git(checkout, ["reset", "--hard", f"origin/{source_branch}"])
                before_sha = self.current_head_sha(checkout)

                merged = self._merge_favoring_source(checkout, source_branch, target_branch)
                new_sha = self.current_head_sha(checkout)
                if not merged or new_sha == before_sha:
                    self._write_marker_commit(checkout, source_branch)
                    new_sha = self.current_head_sha(checkout)

                self._git(
                    checkout,
                    ["push", "--force", "origin", f"HEAD:{BRANCH_REF_PREFIX}{source_branch}"],
                    env=env,
                    credential=credential,
                )
                remote_output = run(
                    ["git", "ls-remote", "--heads", url, f"{BRANCH_REF_PREFIX}{source_branch}"],
                    cwd=checkout,
                    env=env,
                    redact=(credential,),
                )
            remote_sha = _parse_ls_remote(remote_output).get(source_branch)
            if remote_sha != new_sha:
                error = (
                    f"Push did not move remote ref {BRANCH_REF_PREFIX}{source_branch}: "
                    f"expected {new_sha}, remote reports {remote_sha or '<missing>'}"
                )
                log_warning_event(
                    LOGGER,
                    "conflict_resolution_finished",
                    resolved=False,
                    source_branch=source_branch,
                    reason="push_not_visible",
                )
                return ConflictResolutionResult(resolved=False, error=error)
            log_event(
                LOGGER,
                "conflict_resolution_finished",
                resolved=True,
                source_branch=source_branch,
                commit_sha=new_sha,
            )
            return ConflictResolutionResult(resolved=True, new_commit_sha=new_sha)
        except (CommandError, OSError) as exc:
            error = redact_secrets(str(exc), (credential,))
            log_warning_event(
                LOGGER,
                "conflict_resolution_finished",
                resolved=False,
                source_branch=source_branch,
                error_type=type(exc).__name__,
            )
            return ConflictResolutionResult(resolved=False, error=error)
        finally:
            shutil.rmtree(work_dir, ignore_errors=True)

    def current_head_sha(self, checkout_path: Path) -> str:
        return run(["git", "-C", str(checkout_path), "rev-parse", "HEAD"]).strip()

    def _merge_favoring_source(self, checkout: Path, source_branch: str, target_branch: str) -> bool:
        try:
            self._git(
                checkout,
                [
                    "merge",
                    f"origin/{target_branch}",
                    "--allow-unrelated-histories",
                    "-X",
                    "ours",
                    "-m",
                    f"Merge {target_branch} into {source_branch} (auto-resolved conflicts)",
                ],
            )
        except CommandError:
            log_warning_event(
                LOGGER,
                "git_merge_failed",
                source_branch=source_branch,
                target_branch=target_branch,
            )
            run(["git", "-C", str(checkout), "merge", "--abort"], check=False)
            return False
        return True

    def _write_marker_commit(self, checkout: Path, source_branch: str) -> None:
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
        marker = checkout / ".prseed" / f"resolution-{stamp}.txt"
        marker.parent.mkdir(parents=True, exist_ok=True)
        marker.write_text(f"Automated conflict resolution marker {stamp}\n", encoding="utf-8")
        self._git(checkout, ["add", "-A"])
        self._git(
            checkout,
            ["commit", "-m", f"Automated conflict resolution marker for {source_branch} ({stamp})"],
        )
        log_event(LOGGER, "git_marker_commit", source_branch=source_branch)

    def _write_commit(self, path: Path, commit: PlannedCommit) -> None:
        for relative_path, content in commit.files:
            target = path / relative_path
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content, encoding="utf-8")
        self._git(path, ["add", "-A"])
        self._git(path, ["commit", "--allow-empty", "-m", commit.message])

    def _configure_identity(self, path: Path) -> None:
        self._git(path, ["config", "user.email", COMMITTER_EMAIL])
        self._git(path, ["config", "user.name", COMMITTER_NAME])

    def _push(
        self,
        path: Path,
        url: str,
        branch: str,
        *,
        env: Mapping[str, str],
        credential: str,
    ) -> None:
        log_event(LOGGER, "git_push", branch=branch)
        try:
            self._git(path, ["push", url, f"{branch}:{BRANCH_REF_PREFIX}{branch}"], env=env, credential=credential)
        except CommandError as exc:
            log_warning_event(
                LOGGER,
                "git_push_failed",
                branch=branch,
                error_type=type(exc).__name__,
            )
            raise

    def _git(
        self,
        path: Path,
        args: list[str],
        *,
        env: Mapping[str, str] | None = None,
        credential: str | None = None,
    ) -> str:
        return run(
            ["git", "-C", str(path), *args],
            env=env,
            redact=(credential,) if credential else (),
        )


def _parse_ls_remote(output: str) -> dict[str, str]:
    heads: dict[str, str] = {}
    for line in output.splitlines():
        parts = line.strip().split("\t")
        if len(parts) != 2:
            parts = line.strip().split()
        if len(parts) != 2:
            continue
        sha, ref = parts
        if ref.startswith(BRANCH_REF_PREFIX):
            heads[ref[len(BRANCH_REF_PREFIX) :]] = sha
    return heads


def _safe_prefix(name: str) -> str:
    cleaned = "".join(ch if ch.isalnum() or ch in "-_" else "-" for ch in name)
    return cleaned.strip("-")[:40] or "repo"


