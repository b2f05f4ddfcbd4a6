from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
import os
from pathlib import Path
import tomllib
from typing import cast


@dataclass(frozen=True)
class RuntimeConfig:
    base_dir: Path
    seed: int
    cleanup_enabled: bool = True
    cleanup_threshold: int = 50
    summary_dir: Path | None = None

    @property
    def log_dir(self) -> Path:
        return self.base_dir / "logs"

    @property
    def effective_summary_dir(self) -> Path:
        return self.summary_dir or self.base_dir / "summaries"


@dataclass(frozen=True)
class UserConfig:
    alias: str
    email: str
    pat_env_var: str


@dataclass(frozen=True)
class ResolvedUser:
    alias: str
    email: str
    credential: str = field(repr=False)


@dataclass(frozen=True)
class RepoConfig:
    repo_id: str
    project: str
    name: str

    @property
    def full_name(self) -> str:
        return f"{self.project}/{self.name}"


@dataclass(frozen=True)
class ScaleConfig:
    branches_per_repo: int = 4
    commits_per_branch_min: int = 1
    commits_per_branch_max: int = 3
    prs_per_repo: int = 4
    draft_ratio: float = 0.1
    follow_up_probability: float = 0.3
    follow_up_max: int = 2
    reviewers_per_pr_min: int = 1
    reviewers_per_pr_max: int = 2
    comments_per_pr_min: int = 0
    comments_per_pr_max: int = 3


@dataclass(frozen=True)
class OutcomeWeights:
    complete: float = 0.5
    abandon: float = 0.2
    leave_open: float = 0.3


@dataclass(frozen=True)
class VoteWeights:
    approve: float = 0.5
    approve_with_suggestions: float = 0.2
    reject: float = 0.1
    no_vote: float = 0.2


@dataclass(frozen=True)
class RepoStrategy:
    create_if_missing: bool = True
    fail_if_missing: bool = False
    skip_if_exists: bool = False


@dataclass(frozen=True)
class CompletionConfig:
    max_retries: int = 3
    initial_evaluation_wait_seconds: float = 10.0
    post_resolution_wait_seconds: float = 15.0
    completion_verify_seconds: float = 15.0
    poll_interval_seconds: float = 2.0
    retry_backoff_seconds: float = 2.0
    clone_depth: int = 200
    bypass_reason: str = "Automated seeding - conflict auto-resolution"


@dataclass(frozen=True)
class AppConfig:
    runtime: RuntimeConfig
    organization: str
    users: tuple[ResolvedUser, ...]
    repos: tuple[RepoConfig, ...]
    scale: ScaleConfig = ScaleConfig()
    outcomes: OutcomeWeights = OutcomeWeights()
    votes: VoteWeights = VoteWeights()
    repo_strategy: RepoStrategy = RepoStrategy()
    completion: CompletionConfig = CompletionConfig()

    @property
    def primary_user(self) -> ResolvedUser:
        if not self.users:
            raise RuntimeError("AppConfig.users is empty")
        return self.users[0]

    @property
    def credentials(self) -> tuple[str, ...]:
        return tuple(user.credential for user in self.users)


class ConfigError(ValueError):
    pass


def load_config(path: Path, *, environ: Mapping[str, str] | None = None) -> AppConfig:
    env = os.environ if environ is None else environ
    with path.open("rb") as fh:
        data = tomllib.load(fh)

    runtime_data = _require_table(data, "runtime")
    azure_data = _require_table(data, "azure")
    user_data = _require_table(data, "user")
    repo_data = _require_table(data, "repo")

    runtime = RuntimeConfig(
        base_dir=Path(_require_str(runtime_data, "base_dir")).expanduser(),
        seed=_require_int(runtime_data, "seed"),
        cleanup_enabled=_bool_with_default(runtime_data, "cleanup_enabled", True),
        cleanup_threshold=_int_with_default(runtime_data, "cleanup_threshold", 50),
        summary_dir=_optional_path(runtime_data, "summary_dir"),
    )
    if runtime.cleanup_threshold < 0:
        raise ConfigError("runtime.cleanup_threshold must be >= 0")

    users = tuple(_resolve_user(user, env) for user in _load_user_configs(user_data))
    repos = _load_repo_configs(repo_data)

    return AppConfig(
        runtime=runtime,
        organization=_require_str(azure_data, "organization"),
        users=users,
        repos=repos,
        scale=_parse_scale(_optional_table(data, "scale") or {}),
        outcomes=_parse_outcomes(_optional_table(data, "outcomes") or {}),
        votes=_parse_votes(_optional_table(data, "votes") or {}),
        repo_strategy=_parse_repo_strategy(_optional_table(data, "repo_strategy") or {}),
        completion=_parse_completion(_optional_table(data, "completion") or {}),
    )


def _load_user_configs(user_data: dict[str, object]) -> tuple[UserConfig, ...]:
    if not user_data:
        raise ConfigError("[user] must define at least one [user.<alias>] table")
    users: list[UserConfig] = []
    for alias, raw_value in sorted(user_data.items()):
        table = _require_sub_table(raw_value, table_name=f"[user.{alias}]")
        users.append(
            UserConfig(
                alias=alias,
                email=_require_str(table, "email"),
                pat_env_var=_require_str(table, "pat_env_var"),
            )
        )
    return tuple(users)


def _resolve_user(user: UserConfig, environ: Mapping[str, str]) -> ResolvedUser:
    credential = environ.get(user.pat_env_var, "").strip()
    if not credential:
        raise ConfigError(
            f"Missing environment variable {user.pat_env_var!r} for user {user.email!r}"
        )
    return ResolvedUser(alias=user.alias, email=user.email, credential=credential)


def _load_repo_configs(repo_data: dict[str, object]) -> tuple[RepoConfig, ...]:
    if not repo_data:
        raise ConfigError("[repo] must define at least one [repo.<id>] table")
    repos: list[RepoConfig] = []
    seen: dict[str, str] = {}
    for repo_id, raw_value in sorted(repo_data.items()):
        table = _require_sub_table(raw_value, table_name=f"[repo.{repo_id}]")
        repo = RepoConfig(
            repo_id=repo_id,
            project=_require_str(table, "project"),
            name=_str_with_default(table, "name", repo_id),
        )
        existing_id = seen.get(repo.full_name.lower())
        if existing_id is not None:
            raise ConfigError(
                f"Duplicate repository {repo.full_name!r} across repo ids "
                f"{existing_id!r} and {repo.repo_id!r}"
            )
        seen[repo.full_name.lower()] = repo.repo_id
        repos.append(repo)
    return tuple(repos)


def _parse_scale(data: dict[str, object]) -> ScaleConfig:
    defaults = ScaleConfig()
    scale = ScaleConfig(
        branches_per_repo=_int_with_default(data, "branches_per_repo", defaults.branches_per_repo),
        commits_per_branch_min=_int_with_default(
            data, "commits_per_branch_min", defaults.commits_per_branch_min
        ),
        commits_per_branch_max=_int_with_default(
            data, "commits_per_branch_max", defaults.commits_per_branch_max
        ),
        prs_per_repo=_int_with_default(data, "prs_per_repo", defaults.prs_per_repo),
        draft_ratio=_ratio_with_default(data, "draft_ratio", defaults.draft_ratio),
        follow_up_probability=_ratio_with_default(
            data, "follow_up_probability", defaults.follow_up_probability
        ),
        follow_up_max=_int_with_default(data, "follow_up_max", defaults.follow_up_max),
        reviewers_per_pr_min=_int_with_default(
            data, "reviewers_per_pr_min", defaults.reviewers_per_pr_min
        ),
        reviewers_per_pr_max=_int_with_default(
            data, "reviewers_per_pr_max", defaults.reviewers_per_pr_max
        ),
        comments_per_pr_min=_int_with_default(
            data, "comments_per_pr_min", defaults.comments_per_pr_min
        ),
        comments_per_pr_max=_int_with_default(
            data, "comments_per_pr_max", defaults.comments_per_pr_max
        ),
    )
    if scale.branches_per_repo < 1:
        raise ConfigError("scale.branches_per_repo must be >= 1")
    if scale.commits_per_branch_min < 1:
        raise ConfigError("scale.commits_per_branch_min must be >= 1")
    if scale.commits_per_branch_max < scale.commits_per_branch_min:
        raise ConfigError("scale.commits_per_branch_max must be >= commits_per_branch_min")
    if not 0 <= scale.prs_per_repo <= scale.branches_per_repo:
        raise ConfigError("scale.prs_per_repo must be between 0 and branches_per_repo")
    if scale.follow_up_max < 0:
        raise ConfigError("scale.follow_up_max must be >= 0")
    if scale.reviewers_per_pr_min < 0 or scale.reviewers_per_pr_max < scale.reviewers_per_pr_min:
        raise ConfigError("scale.reviewers_per_pr_max must be >= reviewers_per_pr_min >= 0")
    if scale.comments_per_pr_min < 0 or scale.comments_per_pr_max < scale.comments_per_pr_min:
        raise ConfigError("scale.comments_per_pr_max must be >= comments_per_pr_min >= 0")
    return scale


def _parse_outcomes(data: dict[str, object]) -> OutcomeWeights:
    defaults = OutcomeWeights()
    weights = OutcomeWeights(
        complete=_ratio_with_default(data, "complete", defaults.complete),
        abandon=_ratio_with_default(data, "abandon", defaults.abandon),
        leave_open=_ratio_with_default(data, "leave_open", defaults.leave_open),
    )
    if weights.complete + weights.abandon + weights.leave_open <= 0:
        raise ConfigError("[outcomes] weights must not all be zero")
    return weights


def _parse_votes(data: dict[str, object]) -> VoteWeights:
    defaults = VoteWeights()
    weights = VoteWeights(
        approve=_ratio_with_default(data, "approve", defaults.approve),
        approve_with_suggestions=_ratio_with_default(
            data, "approve_with_suggestions", defaults.approve_with_suggestions
        ),
        reject=_ratio_with_default(data, "reject", defaults.reject),
        no_vote=_ratio_with_default(data, "no_vote", defaults.no_vote),
    )
    if weights.approve + weights.approve_with_suggestions + weights.reject + weights.no_vote <= 0:
        raise ConfigError("[votes] weights must not all be zero")
    return weights


def _parse_repo_strategy(data: dict[str, object]) -> RepoStrategy:
    defaults = RepoStrategy()
    return RepoStrategy(
        create_if_missing=_bool_with_default(
            data, "create_if_missing", defaults.create_if_missing
        ),
        fail_if_missing=_bool_with_default(data, "fail_if_missing", defaults.fail_if_missing),
        skip_if_exists=_bool_with_default(data, "skip_if_exists", defaults.skip_if_exists),
    )


def _parse_completion(data: dict[str, object]) -> CompletionConfig:
    defaults = CompletionConfig()
    completion = CompletionConfig(
        max_retries=_int_with_default(data, "max_retries", defaults.max_retries),
        initial_evaluation_wait_seconds=_float_with_default(
            data, "initial_evaluation_wait_seconds", defaults.initial_evaluation_wait_seconds
        ),
        post_resolution_wait_seconds=_float_with_default(
            data, "post_resolution_wait_seconds", defaults.post_resolution_wait_seconds
        ),
        completion_verify_seconds=_float_with_default(
            data, "completion_verify_seconds", defaults.completion_verify_seconds
        ),
        poll_interval_seconds=_float_with_default(
            data, "poll_interval_seconds", defaults.poll_interval_seconds
        ),
        retry_backoff_seconds=_float_with_default(
            data, "retry_backoff_seconds", defaults.retry_backoff_seconds
        ),
        clone_depth=_int_with_default(data, "clone_depth", defaults.clone_depth),
        bypass_reason=_str_with_default(data, "bypass_reason", defaults.bypass_reason),
    )
    if completion.max_retries < 1:
        raise ConfigError("completion.max_retries must be >= 1")
    if completion.poll_interval_seconds <= 0:
        raise ConfigError("completion.poll_interval_seconds must be > 0")
    if completion.clone_depth < 1:
        raise ConfigError("completion.clone_depth must be >= 1")
    return completion


def _require_table(data: dict[str, object], key: str) -> dict[str, object]:
    value = data.get(key)
    if not isinstance(value, dict):
        raise ConfigError(f"[{key}] is required and must be a TOML table")
    if not all(isinstance(item, str) for item in value.keys()):
        raise ConfigError(f"[{key}] must have string keys")
    return cast(dict[str, object], value)


def _optional_table(data: dict[str, object], key: str) -> dict[str, object] | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, dict):
        raise ConfigError(f"[{key}] must be a TOML table when provided")
    return cast(dict[str, object], value)


def _require_sub_table(value: object, *, table_name: str) -> dict[str, object]:
    if not isinstance(value, dict):
        raise ConfigError(f"{table_name} must be a TOML table")
    return cast(dict[str, object], value)


def _require_str(data: dict[str, object], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} is required and must be a non-empty string")
    return value


def _optional_str(data: dict[str, object], key: str) -> str | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} must be a non-empty string if provided")
    return value


def _require_int(data: dict[str, object], key: str) -> int:
    value = data.get(key)
    if not isinstance(value, int) or isinstance(value, bool):
        raise ConfigError(f"{key} is required and must be an integer")
    return value


def _int_with_default(data: dict[str, object], key: str, default: int) -> int:
    value = data.get(key, default)
    if not isinstance(value, int) or isinstance(value, bool):
        raise ConfigError(f"{key} must be an integer")
    return value


def _float_with_default(data: dict[str, object], key: str, default: float) -> float:
    value = data.get(key, default)
    if not isinstance(value, int | float) or isinstance(value, bool):
        raise ConfigError(f"{key} must be a number")
    if value < 0:
        raise ConfigError(f"{key} must be >= 0")
    return float(value)


def _ratio_with_default(data: dict[str, object], key: str, default: float) -> float:
    value = _float_with_default(data, key, default)
    if value > 1:
        raise ConfigError(f"{key} must be between 0 and 1")
    return value


def _bool_with_default(data: dict[str, object], key: str, default: bool) -> bool:
    value = data.get(key, default)
    if not isinstance(value, bool):
        raise ConfigError(f"{key} must be a boolean")
    return value


def _str_with_default(data: dict[str, object], key: str, default: str) -> str:
    value = data.get(key, default)
    if not isinstance(value, str) or not value:
        raise ConfigError(f"{key} must be a non-empty string")
    return value


def _optional_path(data: dict[str, object], key: str) -> Path | None:
    value = _optional_str(data, key)
    if value is None:
        return None
    return Path(value).expanduser()
