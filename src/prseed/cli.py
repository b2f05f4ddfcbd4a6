from __future__ import annotations

import argparse
import json
from pathlib import Path

from prseed.ado_gateway import AdoGateway
from prseed.cleanup import CleanupPrioritizer, resolve_targets
from prseed.completion import CompletionOrchestrator
from prseed.config import AppConfig, load_config
from prseed.git_ops import GitWorkspaceManager
from prseed.observability import configure_logging
from prseed.planner import create_plan, generate_run_id, plan_to_dict
from prseed.runner import SeedRunner
from prseed.summary import render_markdown, write_summary


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="prseed")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser(
        "run", help="Seed the configured repositories with branches and pull requests"
    )
    run_parser.add_argument("--config", type=Path, default=Path("seed.toml"))
    run_parser.add_argument("--run-id", type=str, default=None, help="Reuse a specific run id")
    run_parser.add_argument(
        "--no-cleanup",
        action="store_true",
        help="Never switch to cleanup mode, even when the open-PR backlog is over threshold",
    )
    run_parser.add_argument(
        "--cleanup-threshold",
        type=int,
        default=None,
        help="Open-PR count above which the run drains the backlog instead of seeding",
    )
    run_parser.add_argument(
        "--summary", type=Path, default=None, help="Path for the JSON run summary"
    )
    _add_verbose_argument(run_parser)

    cleanup_parser = subparsers.add_parser(
        "cleanup", help="Complete the oldest open pull requests across the configured repositories"
    )
    cleanup_parser.add_argument("--config", type=Path, default=Path("seed.toml"))
    cleanup_parser.add_argument(
        "--target", type=int, required=True, help="Number of pull requests to complete"
    )
    _add_verbose_argument(cleanup_parser)

    plan_parser = subparsers.add_parser(
        "plan", help="Print the seeding plan as JSON without touching the remote"
    )
    plan_parser.add_argument("--config", type=Path, default=Path("seed.toml"))
    plan_parser.add_argument("--run-id", type=str, default=None)

    return parser


def _add_verbose_argument(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-v",
        "--verbose",
        nargs="?",
        const="high",
        default="low",
        choices=("low", "high"),
        help="Runtime logging to stderr: 'low' shows milestones, 'high' (or bare -v) shows every event",
    )


def main() -> None:
    args = build_parser().parse_args()
    config = load_config(args.config)
    run_id = getattr(args, "run_id", None) or generate_run_id()

    if args.command == "plan":
        configure_logging(None)
        _cmd_plan(config, run_id=run_id)
        return

    configure_logging(
        getattr(args, "verbose", "low"),
        log_dir=config.runtime.log_dir,
        run_id=run_id,
        secrets=config.credentials,
    )
    if args.command == "run":
        if not _cmd_run(
            config,
            run_id=run_id,
            cleanup_enabled=config.runtime.cleanup_enabled and not args.no_cleanup,
            cleanup_threshold=(
                config.runtime.cleanup_threshold
                if args.cleanup_threshold is None
                else args.cleanup_threshold
            ),
            summary_path=args.summary,
        ):
            raise SystemExit(1)
        return
    if args.command == "cleanup":
        _cmd_cleanup(config, target=int(args.target))
        return

    raise RuntimeError(f"Unknown command: {args.command}")


def _cmd_plan(config: AppConfig, *, run_id: str) -> None:
    plan = create_plan(config, run_id)
    print(json.dumps(plan_to_dict(plan), indent=2))


def _cmd_run(
    config: AppConfig,
    *,
    run_id: str,
    cleanup_enabled: bool,
    cleanup_threshold: int,
    summary_path: Path | None,
) -> bool:
    plan = create_plan(config, run_id)
    primary = config.primary_user
    gateway = AdoGateway(config.organization, primary.credential)
    user_gateways = {primary.email: gateway}
    try:
        for user in config.users:
            if user.email not in user_gateways:
                user_gateways[user.email] = AdoGateway(config.organization, user.credential)
        git_manager = GitWorkspaceManager(clone_depth=config.completion.clone_depth)
        runner = SeedRunner(
            config,
            plan,
            gateway=gateway,
            git_manager=git_manager,
            orchestrator=CompletionOrchestrator(gateway, git_manager, config.completion),
            credential=primary.credential,
            user_gateways=user_gateways,
        )
        summary = runner.run(cleanup_enabled=cleanup_enabled, cleanup_threshold=cleanup_threshold)
    finally:
        for user_gateway in user_gateways.values():
            user_gateway.close()

    json_path = summary_path or config.runtime.effective_summary_dir / f"summary-{run_id}.json"
    write_summary(summary, json_path)
    markdown = render_markdown(summary)
    json_path.with_suffix(".md").write_text(markdown + "\n", encoding="utf-8")
    print(markdown)
    print(f"Summary written to {json_path}")
    return summary.fatal_failure is None


def _cmd_cleanup(config: AppConfig, *, target: int) -> None:
    if target < 0:
        raise ValueError("--target must be >= 0")
    credential = config.primary_user.credential
    gateway = AdoGateway(config.organization, credential)
    try:
        git_manager = GitWorkspaceManager(clone_depth=config.completion.clone_depth)
        prioritizer = CleanupPrioritizer(
            gateway,
            CompletionOrchestrator(gateway, git_manager, config.completion),
            resolve_targets(gateway, config.repos),
            credential,
        )
        stats = prioritizer.run_cleanup(target)
    finally:
        gateway.close()

    print(f"Open before: {stats.open_before}")
    print(f"Drafts published: {stats.drafts_published}")
    print(f"PRs completed: {stats.prs_completed}")
    print(f"PRs failed: {stats.prs_failed}")
    print(f"Open after: {stats.open_after}")
