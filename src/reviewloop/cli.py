from __future__ import annotations

import argparse
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import replace
import json
from pathlib import Path
import signal
from types import FrameType

from reviewloop.agent_adapter import AgentRunner
from reviewloop.config import AppConfig, ConfigError, is_valid_model_name, load_config
from reviewloop.conflicts import ConflictResolver
from reviewloop.git_ops import GitRepoManager
from reviewloop.github_gateway import GitHubGateway, PullRequestRefError, parse_pr_ref
from reviewloop.lessons import lessons_to_json, lessons_to_markdown
from reviewloop.llm_client import OracleError, build_completion_client
from reviewloop.models import ExitReason, ResolutionOutcome
from reviewloop.observability import configure_logging
from reviewloop.oracle import Oracle
from reviewloop.process_lock import ProcessLockError, lock_path_for, session_lock
from reviewloop.resolver import ResolutionLoop
from reviewloop.runners import build_runners, detect_runners
from reviewloop.session import SessionState
from reviewloop.session_tui import run_session_tui
from reviewloop.stalemate import format_bail_out
from reviewloop.state import StateStore
from reviewloop.timing import CancellationToken


DEFAULT_CONFIG_PATH = Path("reviewloop.toml")
SUCCESS_EXIT_REASONS: frozenset[ExitReason] = frozenset(
    {
        "no_comments",
        "audit_passed",
        "all_fixed",
        "all_resolved",
        "dry_run",
        "no_commit_mode",
        "no_push_mode",
        "committed_locally",
    }
)
INTERRUPTED_EXIT_CODE = 130


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="reviewloop")
    subparsers = parser.add_subparsers(dest="command", required=True)

    resolve_parser = subparsers.add_parser(
        "resolve", help="Fix review comments on a pull request until they are resolved"
    )
    resolve_parser.add_argument("pr", help="Pull request URL or owner/repo#number")
    _add_common_arguments(resolve_parser)
    resolve_parser.add_argument("--tool", type=str, help="Editing tool to try first")
    resolve_parser.add_argument("--model", type=str, help="Pin the editing model")
    resolve_parser.add_argument(
        "--auto-push",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Push after committing and wait for another review round",
    )
    resolve_parser.add_argument(
        "--max-fix-iterations", type=int, help="Fix attempts per push round (0 = unlimited)"
    )
    resolve_parser.add_argument(
        "--max-push-iterations", type=int, help="Push rounds before stopping (0 = unlimited)"
    )
    resolve_parser.add_argument(
        "--max-stale-cycles", type=int, help="Rotation cycles without progress before bailing out"
    )
    resolve_parser.add_argument(
        "--poll-interval", type=int, help="Seconds to wait for bots when no timing data exists"
    )
    resolve_parser.add_argument(
        "--max-context", type=int, help="Character budget for one oracle prompt"
    )
    resolve_parser.add_argument(
        "--dry-run", action="store_true", help="Only report which issues still need fixing"
    )
    resolve_parser.add_argument(
        "--no-commit", action="store_true", help="Leave verified fixes uncommitted"
    )
    resolve_parser.add_argument("--no-push", action="store_true", help="Never push commits")
    resolve_parser.add_argument(
        "--no-batch", action="store_true", help="Ask the oracle about one issue at a time"
    )
    resolve_parser.add_argument(
        "--reverify", action="store_true", help="Ignore cached verification results"
    )
    resolve_parser.add_argument(
        "--merge-base",
        action="store_true",
        help="Merge the base branch into the pull request branch before fixing",
    )

    status_parser = subparsers.add_parser("status", help="Show persisted session state")
    status_parser.add_argument("pr", nargs="?", help="Pull request URL or owner/repo#number")
    _add_common_arguments(status_parser)
    status_output = status_parser.add_mutually_exclusive_group()
    status_output.add_argument("--json", action="store_true", help="Print status as JSON")
    status_output.add_argument(
        "--tui", action="store_true", help="Open the read-only session dashboard"
    )

    lessons_parser = subparsers.add_parser("lessons", help="Export lessons for a pull request")
    lessons_parser.add_argument("pr", help="Pull request URL or owner/repo#number")
    _add_common_arguments(lessons_parser)
    lessons_parser.add_argument(
        "--branch", type=str, help="Branch to read lessons for (defaults to the session's)"
    )
    lessons_parser.add_argument(
        "--format",
        choices=("markdown", "json"),
        default="markdown",
        help="Output format",
    )
    return parser


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--config", type=Path, default=None)
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose runtime logging to stderr",
    )


def main() -> None:
    args = build_parser().parse_args()
    try:
        config = _load_app_config(args.config)
        configure_logging(
            bool(getattr(args, "verbose", False)),
            state_dir=config.runtime.base_dir,
        )
        if args.command == "resolve":
            exit_code = _cmd_resolve(_apply_overrides(config, args), args)
        elif args.command == "status":
            exit_code = _cmd_status(config, args)
        elif args.command == "lessons":
            exit_code = _cmd_lessons(config, args)
        else:
            raise RuntimeError(f"Unknown command: {args.command}")
    except (ConfigError, PullRequestRefError, ProcessLockError, OracleError) as exc:
        raise SystemExit(f"reviewloop: {exc}") from None
    if exit_code:
        raise SystemExit(exit_code)


def _load_app_config(path: Path | None) -> AppConfig:
    if path is not None:
        return load_config(path)
    return load_config(DEFAULT_CONFIG_PATH if DEFAULT_CONFIG_PATH.exists() else None)


def _apply_overrides(config: AppConfig, args: argparse.Namespace) -> AppConfig:
    resolver = config.resolver
    overrides: dict[str, object] = {}
    if args.auto_push is not None:
        overrides["auto_push"] = bool(args.auto_push)
    for attr, field_name in (
        ("max_fix_iterations", "max_fix_iterations"),
        ("max_push_iterations", "max_push_iterations"),
        ("max_stale_cycles", "max_stale_cycles"),
        ("max_context", "max_context_chars"),
    ):
        value = getattr(args, attr)
        if value is None:
            continue
        if value < 0 or (field_name == "max_stale_cycles" and value < 1):
            raise ConfigError(f"--{attr.replace('_', '-')} must be a positive number")
        overrides[field_name] = int(value)
    for flag in ("dry_run", "no_commit", "no_push", "reverify", "merge_base"):
        if getattr(args, flag):
            overrides[flag] = True
    if args.no_batch:
        overrides["batch_verification"] = False

    runtime = config.runtime
    if args.poll_interval is not None:
        if args.poll_interval < 5:
            raise ConfigError("--poll-interval must be >= 5")
        runtime = replace(runtime, poll_interval_seconds=int(args.poll_interval))

    agents = config.agents
    if args.tool is not None:
        agents = replace(agents, preferred=str(args.tool))
    if args.model is not None:
        if not is_valid_model_name(args.model):
            raise ConfigError(f"Invalid model name: {args.model}")
        agents = replace(agents, model=str(args.model))

    return replace(
        config,
        runtime=runtime,
        resolver=replace(resolver, **overrides),  # type: ignore[arg-type]
        agents=agents,
    )


def _cmd_resolve(config: AppConfig, args: argparse.Namespace) -> int:
    pr = parse_pr_ref(str(args.pr))
    config.runtime.base_dir.mkdir(parents=True, exist_ok=True)
    store = StateStore(config.runtime.state_db_path)
    github = GitHubGateway.for_pr(pr)
    snapshot = github.get_pull_request(pr.number)
    repo = GitRepoManager(config.runtime, pr, snapshot.head_branch)
    runners = _ready_runners(config, required_tool=args.tool)
    oracle = Oracle(
        build_completion_client(config.oracle),
        max_context_chars=config.resolver.max_context_chars,
    )
    conflicts = ConflictResolver(repo=repo, oracle=oracle, base_dir=config.runtime.workdirs_root)
    token = CancellationToken()

    with session_lock(lock_path=lock_path_for(repo.checkout_path), pr=pr, command="resolve"):
        with _cancel_on_signals(token):
            outcome = ResolutionLoop(
                config,
                pr=pr,
                github=github,
                repo=repo,
                oracle=oracle,
                runners=runners,
                state_store=store,
                conflicts=conflicts,
                token=token,
            ).run()

    _print_outcome(outcome, workdir=repo.checkout_path)
    if outcome.exit_reason in SUCCESS_EXIT_REASONS:
        return 0
    if outcome.exit_reason == "interrupted":
        return INTERRUPTED_EXIT_CODE
    return 1


def _ready_runners(config: AppConfig, *, required_tool: str | None) -> list[AgentRunner]:
    detected = detect_runners(build_runners(config.agents), preferred=config.agents.preferred)
    if not detected:
        raise ConfigError(
            "No editing tool is ready. Install one of codex, claude, aider, opencode or "
            "cursor-agent, or set ANTHROPIC_API_KEY / OPENAI_API_KEY for the llm-api tool."
        )
    if required_tool is not None and detected[0].runner.name != required_tool:
        raise ConfigError(f"Requested tool {required_tool!r} is not ready")
    return [item.runner for item in detected]


@contextmanager
def _cancel_on_signals(token: CancellationToken) -> Iterator[None]:
    def _handle(signum: int, _frame: FrameType | None) -> None:
        token.cancel(signal.Signals(signum).name)

    previous = {sig: signal.signal(sig, _handle) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        yield
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)


def _print_outcome(outcome: ResolutionOutcome, *, workdir: Path) -> None:
    print(f"exit_reason={outcome.exit_reason}")
    print(
        f"fixed={outcome.fixed_count} remaining={outcome.remaining_count} "
        f"iterations={outcome.iterations}"
    )
    print(f"workdir={workdir}")
    if outcome.detail:
        print(outcome.detail)


def _cmd_status(config: AppConfig, args: argparse.Namespace) -> int:
    store = StateStore(config.runtime.state_db_path)
    if args.tui:
        run_session_tui(db_path=config.runtime.state_db_path)
        return 0
    if args.pr is None:
        _print_session_list(store, as_json=bool(args.json))
        return 0

    pr = parse_pr_ref(str(args.pr))
    state = store.load_session(pr)
    if state is None:
        print(f"No session recorded for {pr}.")
        return 1
    if args.json:
        print(json.dumps(session_payload(state), indent=2))
        return 0
    for line in session_lines(state):
        print(line)
    return 0


def _print_session_list(store: StateStore, *, as_json: bool) -> None:
    sessions = store.list_sessions()
    if as_json:
        payload = [
            {
                "pr": f"{item.repo_full_name}#{item.pr_number}",
                "branch": item.branch,
                "head_sha": item.head_sha,
                "iteration": item.iteration,
                "phase": item.phase,
                "interrupted": item.interrupted,
                "exit_reason": item.exit_reason,
                "verified": item.verified_count,
                "dismissed": item.dismissed_count,
                "no_progress_cycles": item.no_progress_cycles,
                "updated_at": item.updated_at,
            }
            for item in sessions
        ]
        print(json.dumps(payload, indent=2))
        return

    if not sessions:
        print("No sessions recorded.")
        return
    for item in sessions:
        print(
            f"pr={item.repo_full_name}#{item.pr_number} branch={item.branch} "
            f"iteration={item.iteration} phase={item.phase} "
            f"exit_reason={item.exit_reason or '-'} verified={item.verified_count} "
            f"dismissed={item.dismissed_count} updated_at={item.updated_at}"
        )


def session_payload(state: SessionState) -> dict[str, object]:
    counters = state.counters
    return {
        "pr": str(state.pr),
        "branch": state.branch,
        "head_sha": state.head_sha,
        "iteration": state.iteration,
        "phase": state.phase,
        "interrupted": state.interrupted,
        "exit_reason": state.exit_reason,
        "exit_detail": state.exit_detail,
        "runner_index": state.runner_index,
        "tools": {
            name: {
                "model_index": tool.model_index,
                "fixes": tool.fixes,
                "failures": tool.failures,
                "no_changes": tool.no_changes,
                "errors": tool.errors,
            }
            for name, tool in sorted(state.tools.items())
        },
        "counters": {
            "consecutive_failures": counters.consecutive_failures,
            "model_failures_in_cycle": counters.model_failures_in_cycle,
            "models_tried_this_tool_round": counters.models_tried_this_tool_round,
            "progress_this_cycle": counters.progress_this_cycle,
            "no_progress_cycles": counters.no_progress_cycles,
        },
        "verified": sorted(state.verified),
        "dismissed": [
            {"issue_id": record.issue_id, "category": record.category, "reason": record.reason}
            for record in state.dismissed.values()
        ],
        "model_stats": [
            {
                "tool": stats.tool,
                "model": stats.model,
                "fixes": stats.fixes,
                "failures": stats.failures,
                "no_changes": stats.no_changes,
                "errors": stats.errors,
            }
            for _key, stats in sorted(state.model_stats.items())
        ],
        "bail_out": format_bail_out(state.bail_out) if state.bail_out is not None else None,
    }


def session_lines(state: SessionState) -> list[str]:
    counters = state.counters
    lines = [
        f"pr={state.pr} branch={state.branch} head_sha={state.head_sha}",
        f"iteration={state.iteration} phase={state.phase} interrupted={state.interrupted}",
        f"exit_reason={state.exit_reason or '-'}",
        f"rotation runner_index={state.runner_index} "
        + " ".join(
            f"{name}:{tool.model_index}" for name, tool in sorted(state.tools.items())
        ),
        f"counters consecutive_failures={counters.consecutive_failures} "
        f"models_tried_this_tool_round={counters.models_tried_this_tool_round} "
        f"no_progress_cycles={counters.no_progress_cycles}",
        f"verified={len(state.verified)} dismissed={len(state.dismissed)}",
    ]
    lines.extend(
        f"model {stats.tool}/{stats.model} fixes={stats.fixes} failures={stats.failures} "
        f"no_changes={stats.no_changes} errors={stats.errors}"
        for _key, stats in sorted(state.model_stats.items())
    )
    if state.bail_out is not None:
        lines.append(format_bail_out(state.bail_out))
    if state.exit_detail:
        lines.append(state.exit_detail)
    return lines


def _cmd_lessons(config: AppConfig, args: argparse.Namespace) -> int:
    pr = parse_pr_ref(str(args.pr))
    store = StateStore(config.runtime.state_db_path)
    branch = args.branch
    if branch is None:
        state = store.load_session(pr)
        if state is None:
            print(f"No session recorded for {pr}; pass --branch.")
            return 1
        branch = state.branch
    book = store.load_lessons(pr.full_name, str(branch))
    if args.format == "json":
        print(lessons_to_json(book))
    else:
        print(lessons_to_markdown(book, title=f"{pr} ({branch})"), end="")
    return 0
