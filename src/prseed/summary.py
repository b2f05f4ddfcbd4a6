from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
import json
from pathlib import Path

from prseed.models import CleanupStats, PlannedOutcome, VoteType


SUMMARY_VERSION = "1.0"


@dataclass(frozen=True)
class FailureRecord:
    phase: str
    error: str
    is_fatal: bool
    pull_request_id: int | None = None


@dataclass(frozen=True)
class ReviewerResult:
    email: str
    vote: VoteType


@dataclass
class PullRequestResult:
    pull_request_id: int
    title: str
    source_branch: str
    is_draft: bool
    outcome: PlannedOutcome
    outcome_applied: bool = False
    follow_up_commits_added: int = 0
    creator_email: str | None = None
    reviewers: list[ReviewerResult] = field(default_factory=list)
    comments_added: int = 0


@dataclass
class RepoResult:
    project: str
    name: str
    repository_id: str | None = None
    branches_created: int = 0
    skipped: bool = False
    pull_requests: list[PullRequestResult] = field(default_factory=list)
    failures: list[FailureRecord] = field(default_factory=list)

    @property
    def full_name(self) -> str:
        return f"{self.project}/{self.name}"


@dataclass
class SeedSummary:
    run_id: str
    organization: str
    start_time: datetime
    end_time: datetime | None = None
    version: str = SUMMARY_VERSION
    repos: list[RepoResult] = field(default_factory=list)
    fatal_failure: FailureRecord | None = None
    cleanup_mode: bool = False
    cleanup_stats: CleanupStats | None = None
    # Run-level failures that are not tied to one repository and do not halt the run.
    failures: list[FailureRecord] = field(default_factory=list)

    @property
    def failure_count(self) -> int:
        return len(self.failures) + sum(len(repo.failures) for repo in self.repos)

    def finish(self) -> None:
        self.end_time = datetime.now(timezone.utc)

    def to_dict(self) -> dict[str, object]:
        return {
            "version": self.version,
            "run_id": self.run_id,
            "organization": self.organization,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat() if self.end_time is not None else None,
            "repos": [asdict(repo) for repo in self.repos],
            "fatal_failure": asdict(self.fatal_failure) if self.fatal_failure is not None else None,
            "failures": [asdict(failure) for failure in self.failures],
            "cleanup_mode": self.cleanup_mode,
            "cleanup_stats": asdict(self.cleanup_stats) if self.cleanup_stats is not None else None,
        }


def write_summary(summary: SeedSummary, path: Path) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(summary.to_dict(), indent=2) + "\n", encoding="utf-8")
    return path


def render_markdown(summary: SeedSummary) -> str:
    lines = [
        "# Seed Run Summary",
        "",
        f"**Version:** {summary.version}",
        f"**Run ID:** {summary.run_id}",
        f"**Organization:** {summary.organization}",
        f"**Started:** {summary.start_time.isoformat()}",
        f"**Ended:** {summary.end_time.isoformat() if summary.end_time else 'N/A'}",
        "",
    ]

    if summary.fatal_failure is not None:
        lines.extend(
            [
                "## Fatal Failure",
                f"**Phase:** {summary.fatal_failure.phase}",
                f"**Error:** {summary.fatal_failure.error}",
                "",
            ]
        )

    if summary.failures:
        lines.append("## Run Failures")
        lines.extend(f"- [{failure.phase}]: {failure.error}" for failure in summary.failures)
        lines.append("")

    if summary.cleanup_mode and summary.cleanup_stats is not None:
        stats = summary.cleanup_stats
        lines.extend(
            [
                "## Cleanup Mode",
                f"- **Open Before:** {stats.open_before}",
                f"- **Drafts Published:** {stats.drafts_published}",
                f"- **PRs Completed:** {stats.prs_completed}",
                f"- **PRs Failed:** {stats.prs_failed}",
                f"- **Open After:** {stats.open_after}",
                "",
            ]
        )

    lines.extend(
        [
            "## Statistics",
            f"- **Repositories:** {len(summary.repos)}",
            f"- **Branches Created:** {sum(repo.branches_created for repo in summary.repos)}",
            f"- **Pull Requests:** {sum(len(repo.pull_requests) for repo in summary.repos)}",
            f"- **Failures:** {summary.failure_count}",
            "",
        ]
    )

    if summary.repos:
        lines.append("## Repository Details")
    for repo in summary.repos:
        lines.append(f"### {repo.full_name}")
        lines.append(f"- **Repo ID:** {repo.repository_id or 'N/A'}")
        if repo.skipped:
            lines.append("- **Skipped:** yes")
        lines.append(f"- **Branches:** {repo.branches_created}")
        lines.append(f"- **PRs:** {len(repo.pull_requests)}")
        if repo.pull_requests:
            lines.append("#### Pull Requests")
            for pr in repo.pull_requests:
                draft = " (draft)" if pr.is_draft else ""
                lines.append(f"- **#{pr.pull_request_id}** {pr.title}{draft}")
                if pr.creator_email:
                    lines.append(f"  - Creator: {pr.creator_email}")
                if pr.reviewers:
                    votes = ", ".join(f"{reviewer.email} ({reviewer.vote})" for reviewer in pr.reviewers)
                    lines.append(f"  - Reviewers: {votes}")
                if pr.comments_added:
                    lines.append(f"  - Comments: {pr.comments_added}")
                if pr.follow_up_commits_added:
                    lines.append(f"  - Follow-up Commits: {pr.follow_up_commits_added}")
                lines.append(f"  - Outcome: {pr.outcome} (applied: {pr.outcome_applied})")
        if repo.failures:
            lines.append("#### Failures")
            for failure in repo.failures:
                pr_info = (
                    f" (PR #{failure.pull_request_id})" if failure.pull_request_id is not None else ""
                )
                fatal = " [fatal]" if failure.is_fatal else ""
                lines.append(f"- [{failure.phase}]{pr_info}{fatal}: {failure.error}")
        lines.append("")

    return "\n".join(lines)
